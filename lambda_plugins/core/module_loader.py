"""
Loading of a resolved entry file into a runtime value.

The host process does not execute package code itself. A ModuleLoader turns
a resolved file into a value; the default loaders ask node to require() or
import() the file and print its exports as JSON. Functions and other values
JSON cannot represent are dropped by node's serializer.

Loading executes third-party code from the installed package. That is the
trust boundary of the whole system: only configure plugins you trust.
"""

import json
import logging
from pathlib import Path
from typing import Any, Optional, Protocol

from lambda_plugins.config import Settings
from lambda_plugins.core.exports import ModuleSystem
from lambda_plugins.core.process import run_process
from lambda_plugins.lib.errors import ModuleLoadError, ProcessError

logger = logging.getLogger(__name__)

_SERIALIZE = "process.stdout.write(JSON.stringify(exported) ?? 'null');"

REQUIRE_SCRIPT = "const exported = require(process.argv[1]);" + _SERIALIZE
IMPORT_SCRIPT = (
    "const ns = await import(process.argv[1]);"
    "const exported = { ...ns };" + _SERIALIZE
)


class ModuleLoader(Protocol):
    async def load(self, path: Path) -> Any:
        """Load the file at path and return its exported value."""
        ...


class NodeModuleLoader:
    """Loads an entry file through a node subprocess for one module system."""

    def __init__(
        self,
        module_system: ModuleSystem,
        node_path: str = "node",
        timeout: Optional[float] = None,
    ):
        self.module_system = module_system
        self.node_path = node_path
        self.timeout = timeout

    def build_args(self, path: Path) -> list[str]:
        if self.module_system == "module":
            return ["--input-type=module", "-e", IMPORT_SCRIPT, path.resolve().as_uri()]
        return ["-e", REQUIRE_SCRIPT, str(path.resolve())]

    async def load(self, path: Path) -> Any:
        """Evaluate path and return its JSON-serializable exports.

        Raises:
            ModuleLoadError: node failed or printed something that is not JSON
        """
        logger.debug(f"Loading {path} as {self.module_system}")
        try:
            result = await run_process(
                self.node_path,
                self.build_args(path),
                cwd=path.parent,
                timeout=self.timeout,
            )
        except ProcessError as e:
            raise ModuleLoadError(str(path), self.module_system, str(e)) from e
        try:
            return json.loads(result.text or "null")
        except json.JSONDecodeError as e:
            raise ModuleLoadError(
                str(path), self.module_system, f"exports are not JSON serializable: {e}"
            ) from e


def default_loaders(settings: Settings) -> dict[str, ModuleLoader]:
    """One node-backed loader per module system."""
    return {
        system: NodeModuleLoader(system, settings.node_path, settings.load_timeout)
        for system in ("module", "commonjs")
    }
