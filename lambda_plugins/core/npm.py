"""
npm invocation with a locked-down configuration.

Plugins are installed with `npm --global --prefix=<install_root>` so that no
project-level package.json, lockfile or extra cache is involved. Registry
credentials and TLS material go into a transient .npmrc next to the install
root; they are never passed on the command line where process listings would
reveal them.
"""

import asyncio
import logging
import os
import tempfile
from pathlib import Path
from typing import Literal, Optional, Sequence
from urllib.parse import urlparse

from lambda_plugins.config import PLUGINS_CACHE_FOLDER, Settings
from lambda_plugins.core.process import run_process
from lambda_plugins.lib.errors import InstallerProcessError

logger = logging.getLogger(__name__)

Operation = Literal["install", "remove"]

HARDENED_FLAGS = (
    "--global",  # Global install avoids any project-level lookup
    "--no-fund",  # Nobody reads the output
    "--no-audit",  # Auditing would reveal the plugin list to the registry
    "--no-bin-links",  # Linking binaries is not needed and could be dangerous
    "--prefer-offline",  # Use cached tarballs whenever possible
    "--loglevel=error",
    "--no-package-lock",
    "--no-update-notifier",
)


def _escape_pem(value: str) -> str:
    return value.strip().replace("\r\n", "\n").replace("\n", "\\n")


def _registry_key(url: str) -> str:
    """Turn a registry URL into the nerf-darted form npm expects for auth keys."""
    parsed = urlparse(url)
    path = parsed.path if parsed.path.endswith("/") else f"{parsed.path}/"
    return f"//{parsed.netloc}{path}"


def render_npmrc(settings: Settings) -> str:
    """Render the .npmrc lines for the configured registry/TLS options."""
    lines: list[str] = []
    if settings.cert:
        lines.append(f"cert={_escape_pem(settings.cert)}")
    if settings.key:
        lines.append(f"key={_escape_pem(settings.key)}")
    if settings.ca:
        lines.append(f"ca={_escape_pem(settings.ca)}")
    if settings.registry:
        lines.append(f"registry={settings.registry}")
    for scope, url in sorted(settings.scoped_registries.items()):
        scope = scope if scope.startswith("@") else f"@{scope}"
        lines.append(f"{scope}:registry={url}")
    for url, token in sorted(settings.registry_tokens.items()):
        lines.append(f"{_registry_key(url)}:_authToken={token}")
    return "\n".join(lines) + "\n" if lines else ""


def _write_npmrc(directory: Path, content: str) -> Path:
    """Write a private (0600) npmrc file and return its path."""
    directory.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".npmrc-", suffix=".tmp")
    closed = False
    try:
        os.fchmod(fd, 0o600)
        os.write(fd, content.encode("utf-8"))
        os.close(fd)
        closed = True
        return Path(tmp_path)
    except Exception:
        if not closed:
            os.close(fd)
        Path(tmp_path).unlink(missing_ok=True)
        raise


class NpmInstaller:
    """Runs `npm install` / `npm remove` against an isolated install root."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def build_args(
        self,
        operation: Operation,
        references: Sequence[str],
        install_root: Path,
        cache_dir: Path,
        userconfig: Optional[Path] = None,
    ) -> list[str]:
        args = [
            *HARDENED_FLAGS,
            f"--cache={cache_dir}",
            f"--prefix={install_root}",
        ]
        if userconfig is not None:
            args.append(f"--userconfig={userconfig}")
        args.append(operation)
        args.extend(references)
        return args

    async def run(
        self,
        operation: Operation,
        references: Sequence[str],
        install_root: Path,
        tmp_dir: Optional[Path] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> bytes:
        """Run an npm operation and return its stdout.

        Raises:
            InstallerProcessError: npm could not start, failed, timed out or was cancelled
        """
        tmp_dir = tmp_dir or install_root.parent
        cache_dir = tmp_dir / PLUGINS_CACHE_FOLDER

        npmrc: Optional[Path] = None
        content = render_npmrc(self.settings)
        if content:
            npmrc = await asyncio.to_thread(_write_npmrc, tmp_dir, content)

        args = self.build_args(operation, references, install_root, cache_dir, npmrc)
        logger.info(f"Running npm {operation} for {', '.join(references)}")
        try:
            result = await run_process(
                self.settings.npm_path,
                args,
                timeout=self.settings.install_timeout,
                cancel=cancel,
                error_type=InstallerProcessError,
            )
        except InstallerProcessError as e:
            logger.error(f"npm {operation} failed: {e}")
            raise
        finally:
            if npmrc is not None:
                npmrc.unlink(missing_ok=True)

        logger.debug(f"npm {operation} output: {result.text}")
        return result.stdout
