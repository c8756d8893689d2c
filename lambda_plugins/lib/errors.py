"""
Typed errors for plugin resolution and installation.

Every error raised by the loader derives from PluginError and carries an
ErrorCode so callers (e.g. a function handler building a response) can map
failures without parsing messages.
"""

from enum import Enum
from typing import Any, Optional, Sequence


class ErrorCode(str, Enum):
    """Error codes for programmatic handling."""

    # Validation errors
    INVALID_DEFINITIONS = "invalid_definitions"
    INVALID_NAME = "invalid_name"
    VAGUE_VERSION = "vague_version"
    UNPINNED_GITHUB_REF = "unpinned_github_ref"
    UNSUPPORTED_PROTOCOL = "unsupported_protocol"
    MALFORMED_SPECIFIER = "malformed_specifier"

    # Installation errors
    PROCESS_FAILED = "process_failed"
    INSTALLER_FAILED = "installer_failed"
    FETCH_FAILED = "fetch_failed"
    INSTALL_FAILED = "install_failed"

    # Loading errors
    MANIFEST_INVALID = "manifest_invalid"
    MODULE_LOAD_FAILED = "module_load_failed"
    NO_ENTRY_POINT = "no_entry_point"


class PluginError(Exception):
    """Base class for all plugin loader errors."""

    code: ErrorCode = ErrorCode.INSTALL_FAILED

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class PluginValidationError(PluginError):
    """The desired plugin mapping itself is unusable."""

    code = ErrorCode.INVALID_DEFINITIONS

    def __init__(self, message: str, index: Optional[int] = None, name: Optional[str] = None):
        super().__init__(message, index=index, name=name)
        self.index = index
        self.name = name


class InvalidNameError(PluginValidationError):
    code = ErrorCode.INVALID_NAME


class VagueVersionError(PluginValidationError):
    code = ErrorCode.VAGUE_VERSION


class UnpinnedGithubRefError(PluginValidationError):
    code = ErrorCode.UNPINNED_GITHUB_REF


class UnsupportedProtocolError(PluginValidationError):
    code = ErrorCode.UNSUPPORTED_PROTOCOL


class MalformedSpecifierError(PluginValidationError):
    code = ErrorCode.MALFORMED_SPECIFIER


# ---------------------------------------------------------------------------
# Installation
# ---------------------------------------------------------------------------


class ProcessError(PluginError):
    """A subprocess could not be spawned, exited non-zero, timed out or was cancelled."""

    code = ErrorCode.PROCESS_FAILED

    def __init__(
        self,
        cmd: str,
        args: Sequence[str],
        exit_code: Optional[int],
        stdout: bytes = b"",
        stderr: bytes = b"",
        reason: Optional[str] = None,
    ):
        combined = (stdout + stderr).decode("utf-8", errors="replace").strip()
        if reason is None:
            reason = f"exited with code [{exit_code}]"
        message = f'"{cmd}" {reason}'
        if combined:
            message = f"{message}: {combined}"
        super().__init__(message, cmd=cmd, args=list(args), exit_code=exit_code, reason=reason)
        self.cmd = cmd
        self.args_list = list(args)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        self.reason = reason

    @property
    def output(self) -> str:
        return (self.stdout + self.stderr).decode("utf-8", errors="replace")


class InstallerProcessError(ProcessError):
    code = ErrorCode.INSTALLER_FAILED


class FetchError(PluginError):
    """A remote object could not be downloaded."""

    code = ErrorCode.FETCH_FAILED

    def __init__(self, url: str, message: str):
        super().__init__(f"Failed to fetch {url}: {message}", url=url)
        self.url = url


class PluginInstallError(PluginError):
    """Installing or removing plugins failed; wraps the underlying cause."""

    code = ErrorCode.INSTALL_FAILED

    def __init__(self, names: Sequence[str], cause: BaseException):
        names = list(names)
        super().__init__(
            f"Failed to install plugins [{', '.join(names)}]: {cause}",
            names=names,
        )
        self.names = names
        self.cause = cause


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


class ManifestError(PluginError):
    code = ErrorCode.MANIFEST_INVALID

    def __init__(self, path: str, message: str):
        super().__init__(f"Invalid package manifest {path}: {message}", path=path)
        self.path = path


class ModuleLoadError(PluginError):
    code = ErrorCode.MODULE_LOAD_FAILED

    def __init__(self, path: str, module_system: str, message: str):
        super().__init__(
            f"Failed to load {path} as {module_system}: {message}",
            path=path,
            module_system=module_system,
        )
        self.path = path
        self.module_system = module_system


class NoEntryPointError(PluginError):
    code = ErrorCode.NO_ENTRY_POINT

    def __init__(self, name: str, sub_path: str):
        super().__init__(
            f'Plugin "{name}" has no entry point for "{sub_path}"',
            name=name,
            sub_path=sub_path,
        )
        self.name = name
        self.sub_path = sub_path
