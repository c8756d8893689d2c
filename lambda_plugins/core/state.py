"""
Installation state tracking.

Decides, on every invocation, whether the installed plugin set can be
trusted as-is, and otherwise applies the minimal remove/install delta.

The state file lives next to the install root in the function's ephemeral
storage and survives across warm invocations. Its mtime is the freshness
clock: within max_age_ms of the last check nothing is validated or installed
at all, which keeps warm invocations cheap.

There is no inter-process locking. Two invocations sharing the same storage
may race; the freshness window narrows but does not close that gap.
"""

import asyncio
import inspect
import logging
import os
import shutil
import tempfile
import time
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence, Union

from pydantic import ValidationError

from lambda_plugins.config import PLUGINS_FILE, PLUGINS_FOLDER
from lambda_plugins.core.s3_fetch import ObjectFetcher, S3ObjectFetcher
from lambda_plugins.core.validation import (
    fingerprint,
    install_reference,
    is_remote_object,
    validate_plugin_definitions,
)
from lambda_plugins.lib.errors import FetchError, PluginInstallError, ProcessError
from lambda_plugins.models.state import InstalledState

logger = logging.getLogger(__name__)

DEFAULT_FETCH_CONCURRENCY = 10

DesiredPlugins = Union[
    Mapping[str, str],
    Awaitable[Mapping[str, str]],
    Callable[[], Union[Mapping[str, str], Awaitable[Mapping[str, str]]]],
]


class Installer(Protocol):
    async def run(
        self,
        operation: str,
        references: Sequence[str],
        install_root: Path,
        tmp_dir: Optional[Path] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> bytes:
        ...


# ---------------------------------------------------------------------------
# State file
# ---------------------------------------------------------------------------

def read_state(path: Path) -> InstalledState:
    """Read the persisted state. Missing, unreadable or corrupt -> empty state."""
    try:
        stat = path.stat()
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return InstalledState()
    except OSError as e:
        logger.warning(f"Failed to read plugin state at {path}: {e}")
        return InstalledState()
    try:
        state = InstalledState.model_validate_json(text)
    except ValidationError as e:
        logger.warning(f"Ignoring corrupt plugin state at {path}: {e}")
        return InstalledState()
    state.last_checked_at_ms = int(stat.st_mtime * 1000)
    return state


def write_state(path: Path, state: InstalledState, now_ms: Optional[int] = None) -> None:
    """Atomically write the state file and set its mtime to now_ms."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp", prefix=".plugins-")
    closed = False
    try:
        os.write(fd, state.to_json().encode("utf-8"))
        os.fsync(fd)
        os.close(fd)
        closed = True
        os.rename(tmp_path, path)
    except Exception:
        if not closed:
            os.close(fd)
        if Path(tmp_path).exists():
            os.unlink(tmp_path)
        raise
    if now_ms is not None:
        touch_state(path, now_ms)


def touch_state(path: Path, now_ms: int) -> None:
    """Reset the freshness clock without rewriting the file."""
    seconds = now_ms / 1000
    os.utime(path, (seconds, seconds))


# ---------------------------------------------------------------------------
# Scratch space for remote objects
# ---------------------------------------------------------------------------

class ScratchDir:
    """A download directory created on first use and removed by cleanup()."""

    def __init__(self, parent: Path):
        self.parent = parent
        self._path: Optional[Path] = None

    @property
    def path(self) -> Path:
        if self._path is None:
            self.parent.mkdir(parents=True, exist_ok=True)
            self._path = Path(tempfile.mkdtemp(prefix="plugin-fetch-", dir=self.parent))
        return self._path

    def cleanup(self) -> None:
        if self._path is not None:
            shutil.rmtree(self._path, ignore_errors=True)
            self._path = None


async def fetch_remote_objects(
    entries: Mapping[str, str],
    fetcher: ObjectFetcher,
    scratch: ScratchDir,
    concurrency: int = DEFAULT_FETCH_CONCURRENCY,
) -> dict[str, Path]:
    """Download all entries with at most `concurrency` transfers in flight.

    Returns name -> local file. The first failure cancels the remaining
    downloads and is re-raised.
    """
    semaphore = asyncio.Semaphore(concurrency)

    async def fetch_one(name: str, url: str) -> tuple[str, Path]:
        async with semaphore:
            destination = scratch.path / f"{name.replace('/', '+')}.tgz"
            await fetcher.fetch(url, destination)
            return name, destination

    tasks = [asyncio.ensure_future(fetch_one(name, url)) for name, url in entries.items()]
    try:
        results = await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
    return dict(results)


# ---------------------------------------------------------------------------
# Reconcile
# ---------------------------------------------------------------------------

async def resolve_desired(desired: DesiredPlugins) -> Any:
    """Evaluate a desired-plugins input that may be lazy (callable/awaitable)."""
    if callable(desired) and not isinstance(desired, Mapping):
        desired = desired()
    if inspect.isawaitable(desired):
        desired = await desired
    return desired


def compute_delta(
    installed: Mapping[str, str], desired: Mapping[str, str]
) -> tuple[list[str], dict[str, str]]:
    """Return (names to remove, name -> value to install)."""
    to_remove = sorted(name for name, value in installed.items() if desired.get(name) != value)
    to_install = {name: value for name, value in desired.items() if installed.get(name) != value}
    return to_remove, to_install


async def reconcile(
    desired: DesiredPlugins,
    *,
    tmp_dir: Path,
    max_age_ms: int,
    installer: Installer,
    strict: bool = True,
    quiet: bool = True,
    fetcher: Optional[ObjectFetcher] = None,
    fetch_concurrency: int = DEFAULT_FETCH_CONCURRENCY,
    now_ms: Optional[int] = None,
    cancel: Optional[asyncio.Event] = None,
) -> list[str]:
    """Make the install root match the desired plugins and return installed names.

    Raises:
        PluginValidationError: desired plugins are invalid (always raised)
        FetchError: an s3 object could not be downloaded (always raised)
        PluginInstallError: npm failed and quiet is off
    """
    state_path = tmp_dir / PLUGINS_FILE
    install_root = tmp_dir / PLUGINS_FOLDER
    if now_ms is None:
        now_ms = int(time.time() * 1000)

    state = await asyncio.to_thread(read_state, state_path)
    if state.last_checked_at_ms is not None:
        age = now_ms - state.last_checked_at_ms
        if age < max_age_ms:
            logger.debug(f"State is fresh ({age}ms < {max_age_ms}ms), skip checking plugins.")
            return state.installed_names

    definitions = validate_plugin_definitions(await resolve_desired(desired), strict)
    new_hash = fingerprint(definitions)
    if new_hash == state.hash:
        logger.debug("All required plugins installed, nothing to do.")
        await asyncio.to_thread(touch_state, state_path, now_ms)
        return state.installed_names

    names = list(definitions)
    new_state = InstalledState(hash=new_hash, plugins_map=definitions)
    to_remove, to_install = compute_delta(state.plugins_map, definitions)
    if not to_remove and not to_install:
        logger.debug("Installed plugins already match, refreshing state.")
        await asyncio.to_thread(write_state, state_path, new_state, now_ms)
        return names

    scratch = ScratchDir(tmp_dir)
    try:
        await asyncio.to_thread(install_root.mkdir, parents=True, exist_ok=True)

        # Remove first to free space as the space is limited.
        if to_remove:
            await installer.run("remove", to_remove, install_root, tmp_dir, cancel=cancel)

        if to_install:
            remote = {name: value for name, value in to_install.items() if is_remote_object(value)}
            local_files: dict[str, Path] = {}
            if remote:
                local_files = await fetch_remote_objects(
                    remote, fetcher or S3ObjectFetcher(), scratch, fetch_concurrency
                )
            references = [
                install_reference(name, str(local_files[name]) if name in local_files else value)
                for name, value in to_install.items()
            ]
            await installer.run("install", references, install_root, tmp_dir, cancel=cancel)

        await asyncio.to_thread(write_state, state_path, new_state, now_ms)
    except FetchError:
        raise
    except (ProcessError, OSError) as e:
        if quiet:
            logger.error(f"Failed to install plugins {names}, continuing without plugins: {e}")
            return []
        raise PluginInstallError(names, e) from e
    finally:
        scratch.cleanup()

    logger.info(
        f"Plugins updated: removed [{', '.join(to_remove)}], "
        f"installed [{', '.join(to_install)}]"
    )
    return names
