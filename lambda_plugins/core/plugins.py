"""
Plugin loading facade.

load_plugins() makes sure the desired packages are installed and returns one
PluginHandle per installed package. Nothing is read or executed until a
handle is used: manifest() parses package.json, data() resolves and loads an
entry point. Both are memoized per handle; concurrent callers share a single
in-flight load and force=True starts over.

Handles point into the install root of the reconcile that created them and
should not be kept across invocations.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Hashable, Mapping, Optional

from lambda_plugins.config import Settings, get_settings
from lambda_plugins.core.exports import (
    MODULE_SYSTEMS,
    ModuleSystem,
    default_entry,
    get_matcher,
    normalize_sub_path,
)
from lambda_plugins.core.module_loader import ModuleLoader, default_loaders
from lambda_plugins.core.npm import NpmInstaller
from lambda_plugins.core.s3_fetch import ObjectFetcher
from lambda_plugins.core.state import DesiredPlugins, Installer, reconcile
from lambda_plugins.lib.errors import NoEntryPointError
from lambda_plugins.models.manifest import PackageManifest

logger = logging.getLogger(__name__)


def _retrieve_exception(task: asyncio.Future) -> None:
    # Every caller may have been cancelled before a failure arrives
    if not task.cancelled():
        task.exception()


def package_path(install_root: Path, name: str) -> Path:
    """Directory of an installed package (global installs use lib/node_modules)."""
    return install_root.joinpath("lib", "node_modules", *name.split("/"))


class PluginHandle:
    """Lazy access to one installed package."""

    def __init__(
        self,
        name: str,
        installed_path: Path,
        loaders: Mapping[str, ModuleLoader],
    ):
        self.name = name
        self.installed_path = installed_path
        self._loaders = loaders
        self._manifest_tasks: dict[Hashable, asyncio.Future] = {}
        self._data_tasks: dict[Hashable, asyncio.Future] = {}

    def __repr__(self) -> str:
        return f"PluginHandle(name={self.name!r}, installed_path={str(self.installed_path)!r})"

    async def _memoized(
        self,
        cache: dict[Hashable, asyncio.Future],
        key: Hashable,
        factory: Callable[[], Awaitable[Any]],
        force: bool,
    ) -> Any:
        if force:
            cache.pop(key, None)
        task = cache.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            task.add_done_callback(_retrieve_exception)
            cache[key] = task
        try:
            # shield: a cancelled caller must not cancel the shared load
            return await asyncio.shield(task)
        except Exception:
            if cache.get(key) is task:
                del cache[key]
            raise

    async def manifest(self, force: bool = False) -> PackageManifest:
        """Parsed package.json (empty if the package has none)."""
        return await self._memoized(
            self._manifest_tasks,
            None,
            lambda: asyncio.to_thread(PackageManifest.read, self.installed_path),
            force,
        )

    async def resolve(self, sub_path: Optional[str] = None) -> tuple[ModuleSystem, Path]:
        """Find the file implementing sub_path and the module system to load it with.

        ES module resolution is tried first, then CommonJS. If the package
        declares nothing for the path, the platform default (index.js, x.js,
        x/index.js) is used as CommonJS.

        Raises:
            NoEntryPointError: nothing resolvable, or explicitly not exported
        """
        key = normalize_sub_path(sub_path)
        manifest = await self.manifest()
        matcher = get_matcher(self.installed_path, manifest)

        matched = False
        for module_system in MODULE_SYSTEMS:
            resolution = matcher(key, module_system)
            if resolution is None:
                continue
            matched = True
            if resolution.location is not None:
                logger.debug(f"{self.name}: {key} -> {resolution.location} ({resolution.cause})")
                return module_system, resolution.location

        if not matched:
            location = await asyncio.to_thread(default_entry, self.installed_path, key)
            if location is not None:
                logger.debug(f"{self.name}: {key} -> {location} (default lookup)")
                return "commonjs", location

        raise NoEntryPointError(self.name, key)

    async def _load(self, key: str) -> Any:
        module_system, location = await self.resolve(key)
        return await self._loaders[module_system].load(location)

    async def data(self, sub_path: Optional[str] = None, force: bool = False) -> Any:
        """Runtime value exported by the package for sub_path (default: package root)."""
        key = normalize_sub_path(sub_path)
        return await self._memoized(self._data_tasks, key, lambda: self._load(key), force)


async def load_plugins(
    plugins: DesiredPlugins,
    settings: Optional[Settings] = None,
    *,
    installer: Optional[Installer] = None,
    fetcher: Optional[ObjectFetcher] = None,
    loaders: Optional[Mapping[str, ModuleLoader]] = None,
    cancel: Optional[asyncio.Event] = None,
) -> dict[str, PluginHandle]:
    """Install the desired plugins (if needed) and return a handle per package.

    Args:
        plugins: name -> exact version or URL; may also be a callable or
            awaitable producing that mapping, evaluated only when the
            installed state is not fresh
        settings: Loader settings (defaults to the global settings)
        installer: Installer override (defaults to npm)
        fetcher: Remote object fetcher override (defaults to S3)
        loaders: ModuleLoader per module system (defaults to node)
        cancel: Event that aborts a running npm invocation when set

    Raises:
        PluginValidationError: invalid plugin definitions
        FetchError: an s3 plugin could not be downloaded
        PluginInstallError: installation failed and settings.quiet is off
    """
    settings = settings or get_settings()
    names = await reconcile(
        plugins,
        tmp_dir=settings.tmp_dir,
        max_age_ms=settings.max_age_ms,
        installer=installer or NpmInstaller(settings),
        strict=settings.strict,
        quiet=settings.quiet,
        fetcher=fetcher,
        fetch_concurrency=settings.fetch_concurrency,
        cancel=cancel,
    )
    loaders = loaders or default_loaders(settings)
    install_root = settings.install_root
    return {name: PluginHandle(name, package_path(install_root, name), loaders) for name in names}
