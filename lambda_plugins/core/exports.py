"""
Entry-point resolution for installed npm packages.

Given a package.json and a requested sub-path ("." for the package root),
decide which file implements it for a module system:

- "module"   (ES modules, loaded with import())
- "commonjs" (loaded with require())

Two strategies exist, chosen by the presence of the "exports" field:

Legacy (no exports):
    "main" serves the module system matching "type" ("module" only when
    type == "module"); "module" additionally serves ES module loading. The
    requested sub-path is not consulted.

Conditional exports:
    A mapping of sub-path patterns to definitions. Patterns may contain one
    "*" which captures the rest of the path (prefix match) or the middle
    segment (prefix + suffix match). Longer patterns win. A definition is a
    path, null (explicitly not exposed) or an object of conditions:
    import / default for "module", node / require / default for "commonjs".

A result with location None is a deliberate dead end and is different from
no result at all (None), which lets the caller fall back to another lookup.
"""

import os
import weakref
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Literal, Optional

from lambda_plugins.models.manifest import PackageManifest

ModuleSystem = Literal["module", "commonjs"]
MODULE_SYSTEMS: tuple[ModuleSystem, ...] = ("module", "commonjs")

CONDITIONS: dict[str, tuple[str, ...]] = {
    "module": ("import", "default"),
    "commonjs": ("node", "require", "default"),
}
DEFINITION_KEYS = frozenset({"import", "require", "node", "default"})


@dataclass(frozen=True)
class Resolution:
    """Outcome of a successful match: the file to load, or None if blocked."""

    location: Optional[Path]
    cause: str


Matcher = Callable[[Optional[str], ModuleSystem], Optional[Resolution]]
_Target = Callable[[str], Optional[str]]


def normalize_sub_path(sub_path: Optional[str]) -> str:
    """Normalize a requested sub-path to the "./x" form used by exports keys."""
    name = (sub_path or "").strip()
    if name in ("", "."):
        return "."
    if not name.startswith("./"):
        name = f"./{name}"
    if name.endswith("/"):
        name = name[:-1]
    return name


def _join(package_root: Path, location: str) -> Path:
    return Path(os.path.normpath(package_root / location))


def is_definition(value: Any) -> bool:
    """True if an exports value is a single definition rather than a sub-path map."""
    if isinstance(value, str):
        return True
    return isinstance(value, dict) and any(key in value for key in DEFINITION_KEYS)


# ---------------------------------------------------------------------------
# Legacy strategy
# ---------------------------------------------------------------------------

def _legacy_matcher(package_root: Path, manifest: PackageManifest) -> Matcher:
    package_type: ModuleSystem = "module" if manifest.type == "module" else "commonjs"

    def match(sub_path: Optional[str], module_system: ModuleSystem) -> Optional[Resolution]:
        if manifest.main is not None and module_system == package_type:
            return Resolution(
                location=_join(package_root, manifest.main),
                cause=".main and .type=module" if module_system == "module" else ".main",
            )
        if module_system == "module" and manifest.module is not None:
            return Resolution(location=_join(package_root, manifest.module), cause=".module")
        return None

    return match


# ---------------------------------------------------------------------------
# Exports strategy
# ---------------------------------------------------------------------------

def _pattern_matcher(pattern: str) -> Callable[[str], Optional[str]]:
    """Build a function returning the "*" capture for a path, or None."""
    star = pattern.find("*")
    if star == -1:
        return lambda test: "" if test == pattern else None

    prefix = pattern[:star]
    suffix = pattern[star + 1:]
    if not suffix:
        return lambda test: test[len(prefix):] if test.startswith(prefix) else None

    def match(test: str) -> Optional[str]:
        if (
            len(test) >= len(prefix) + len(suffix)
            and test.startswith(prefix)
            and test.endswith(suffix)
        ):
            return test[len(prefix):len(test) - len(suffix)]
        return None

    return match


def _target(value: Optional[str]) -> _Target:
    if value is None:
        return lambda capture: None
    if "*" in value:
        return lambda capture: value.replace("*", capture)
    return lambda capture: value


def _definition_resolver(
    module_system: ModuleSystem, cause: str, definition: Any
) -> Optional[tuple[str, _Target]]:
    """Pick the condition of a definition that applies to a module system.

    Returns (cause, target) or None if the definition has nothing for it.
    """
    if definition is None or isinstance(definition, str):
        return cause, _target(definition)
    if not isinstance(definition, dict):
        return None
    for condition in CONDITIONS[module_system]:
        if condition not in definition:
            continue
        value = definition[condition]
        if value is None or isinstance(value, str):
            return f"{cause}.{condition}", _target(value)
    return None


def _exports_matcher(package_root: Path, exports: dict[str, Any]) -> Matcher:
    matchers: dict[str, list[tuple[Callable[[str], Optional[str]], str, _Target]]] = {
        system: [] for system in MODULE_SYSTEMS
    }
    # Stable sort: equally long patterns keep manifest order
    for pattern, definition in sorted(exports.items(), key=lambda item: len(item[0]), reverse=True):
        cause = f".exports['{pattern}']"
        pattern_match = _pattern_matcher(pattern)
        for system in MODULE_SYSTEMS:
            resolved = _definition_resolver(system, cause, definition)
            if resolved is not None:
                matchers[system].append((pattern_match, *resolved))

    def match(sub_path: Optional[str], module_system: ModuleSystem) -> Optional[Resolution]:
        name = normalize_sub_path(sub_path)
        for pattern_match, cause, target in matchers[module_system]:
            capture = pattern_match(name)
            if capture is None:
                continue
            location = target(capture)
            return Resolution(
                location=_join(package_root, location) if location is not None else None,
                cause=cause,
            )
        return None

    return match


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def create_matcher(package_root: Path, manifest: PackageManifest) -> Matcher:
    """Build the entry-point matcher for a package."""
    exports = manifest.exports
    if is_definition(exports):
        exports = {".": exports}
    if isinstance(exports, dict):
        return _exports_matcher(package_root, exports)
    return _legacy_matcher(package_root, manifest)


_cache: "weakref.WeakKeyDictionary[PackageManifest, Matcher]" = weakref.WeakKeyDictionary()


def get_matcher(package_root: Path, manifest: PackageManifest) -> Matcher:
    """Matcher for a manifest, built once per manifest object."""
    matcher = _cache.get(manifest)
    if matcher is None:
        matcher = create_matcher(package_root, manifest)
        _cache[manifest] = matcher
    return matcher


def resolve(
    package_root: Path,
    manifest: PackageManifest,
    sub_path: Optional[str],
    module_system: ModuleSystem,
) -> Optional[Resolution]:
    return get_matcher(package_root, manifest)(sub_path, module_system)


def default_entry(package_root: Path, sub_path: Optional[str]) -> Optional[Path]:
    """Platform default lookup used when a package declares no entry point."""
    name = normalize_sub_path(sub_path)
    if name == ".":
        candidates = [package_root / "index.js", package_root / "index.json"]
    else:
        base = _join(package_root, name)
        candidates = [
            base,
            base.with_name(f"{base.name}.js"),
            base.with_name(f"{base.name}.json"),
            base / "index.js",
        ]
    for candidate in candidates:
        if candidate.is_file():
            return candidate
    return None
