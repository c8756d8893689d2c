"""
Package manifest model.

A view of an installed package's package.json limited to the fields used
for entry-point resolution. Instances are treated as immutable once parsed;
resolvers are cached per instance (identity), so the class keeps identity
equality and hashing.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from lambda_plugins.lib.errors import ManifestError

MANIFEST_FILE = "package.json"


@dataclass(eq=False)
class PackageManifest:
    """Fields of package.json relevant for entry-point resolution."""

    name: Optional[str] = None
    version: Optional[str] = None
    main: Optional[str] = None
    module: Optional[str] = None
    type: Optional[str] = None
    exports: Any = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PackageManifest":
        def text(key: str) -> Optional[str]:
            value = data.get(key)
            return value if isinstance(value, str) else None

        return cls(
            name=text("name"),
            version=text("version"),
            main=text("main"),
            module=text("module"),
            type=text("type"),
            exports=data.get("exports"),
            raw=data,
        )

    @classmethod
    def read(cls, package_dir: Path) -> "PackageManifest":
        """Read package.json from a package directory.

        A missing file yields an empty manifest (headless package).

        Raises:
            ManifestError: If the file exists but is not a JSON object
        """
        path = package_dir / MANIFEST_FILE
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return cls()
        except OSError as e:
            raise ManifestError(str(path), str(e)) from e
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ManifestError(str(path), str(e)) from e
        if not isinstance(data, dict):
            raise ManifestError(str(path), f"expected an object, got {type(data).__name__}")
        return cls.from_dict(data)
