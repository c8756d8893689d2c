"""
Validation of desired plugin definitions.

A plugin definition maps a package name to either an exact version or a URL
with an allow-listed scheme. Vague versions ("*", ranges, 1.x) are rejected
in strict mode because they can neither be cached nor audited.
"""

import hashlib
import json
import re
from collections.abc import Mapping
from typing import Any

from lambda_plugins.lib.errors import (
    InvalidNameError,
    MalformedSpecifierError,
    PluginValidationError,
    UnpinnedGithubRefError,
    UnsupportedProtocolError,
    VagueVersionError,
)

_VERSION_PATTERN = re.compile(
    r"^(?P<range>\^|~|>=|<=|>|<|==)?"
    r"(?P<parts>(?:\d+|x)(?:\.(?:\d+|x)){0,2})?"
    r"(?P<pre>-[0-9A-Za-z.-]+)?"
    r"(?P<build>\+[0-9A-Za-z.-]+)?$"
)
_URL_PATTERN = re.compile(r"^(?P<scheme>[A-Za-z][A-Za-z0-9+.-]*):(?P<rest>.*)$", re.DOTALL)
_GITHUB_REF = re.compile(r"^#[0-9a-f]{40}$", re.IGNORECASE)
# Host part of an https URL (leading slashes are optional)
_HTTPS_HOST = re.compile(r"^/*[^/?#\s]")
_WHITESPACE = re.compile(r"\s")

SUPPORTED_PROTOCOLS = ("https", "s3", "github")
REMOTE_OBJECT_PROTOCOL = "s3"
EXAMPLE_VERSION = "1.2.3"
EXAMPLE_HASH = "abcdef0123456789abcdef0123456789abcdef01"


def _entry(index: int, name: str) -> str:
    return f'Entry #{index} "{name}"'


def _malformed(index: int, name: str, value: Any) -> MalformedSpecifierError:
    shown = value if isinstance(value, str) else repr(value)
    return MalformedSpecifierError(
        f"{_entry(index, name)} needs to be either a (semver-)version like "
        f"{EXAMPLE_VERSION} or a valid URL: {shown}",
        index=index,
        name=name,
    )


def _check_version(index: int, name: str, value: str, strict: bool) -> bool:
    """Return True if value is a version specifier (raising if strict forbids it)."""
    match = _VERSION_PATTERN.match(value)
    if match is None:
        return False
    range_token = match.group("range")
    parts = match.group("parts") or ""
    if not strict:
        return True
    if range_token:
        remainder = value[len(range_token):] or EXAMPLE_VERSION
        raise VagueVersionError(
            f'{_entry(index, name)} can not specify a version range "{range_token}" '
            f"and needs to be just the version: {remainder}",
            index=index,
            name=name,
        )
    components = parts.split(".") if parts else []
    components += ["x"] * (3 - len(components))
    if "x" in components:
        raise VagueVersionError(
            f'{_entry(index, name)} can not specify a vague version range '
            f'"{".".join(components)} (x needs to be defined!)',
            index=index,
            name=name,
        )
    return True


def _check_url(index: int, name: str, value: str) -> None:
    match = _URL_PATTERN.match(value)
    if match is None:
        raise _malformed(index, name, value)
    scheme = match.group("scheme").lower()
    if scheme == "github":
        rest = match.group("rest")
        repo, sep, fragment = rest.partition("#")
        fragment = sep + fragment
        if not _GITHUB_REF.match(fragment):
            raise UnpinnedGithubRefError(
                f"{_entry(index, name)} is pointing to a github repository but it needs "
                f'to specify a version hash like "github:{repo}#{EXAMPLE_HASH}" '
                f'instead of "{fragment}"',
                index=index,
                name=name,
            )
        return
    if scheme == "https":
        if not _HTTPS_HOST.match(match.group("rest")):
            raise _malformed(index, name, value)
        return
    if scheme == REMOTE_OBJECT_PROTOCOL:
        return
    raise UnsupportedProtocolError(
        f"{_entry(index, name)} is specified with an unsupported protocol ({scheme}:), "
        f"supported protocols: {', '.join(SUPPORTED_PROTOCOLS)}. Input: {value}",
        index=index,
        name=name,
    )


def validate_entry(index: int, name: Any, value: Any, strict: bool = True) -> str:
    """Validate a single name/value pair and return the value unchanged."""
    if not isinstance(name, str) or name == "":
        raise InvalidNameError(
            f'Entry #{index} has an empty name, but needs to be defined "{name or ""}"',
            index=index,
            name=name if isinstance(name, str) else None,
        )
    if _WHITESPACE.search(name):
        raise InvalidNameError(
            f"Entry #{index} has a name with a space in it, this is not acceptable. "
            f"Use names without spaces!",
            index=index,
            name=name,
        )
    if value == "" or value == "*":
        raise VagueVersionError(
            f'{_entry(index, name)} can not be marked as "*" as a vague version '
            f"is not cachable or secure!",
            index=index,
            name=name,
        )
    if not isinstance(value, str):
        raise _malformed(index, name, value)
    if _check_version(index, name, value, strict):
        return value
    _check_url(index, name, value)
    return value


def validate_plugin_definitions(definitions: Any, strict: bool = True) -> dict[str, str]:
    """Validate a name -> version/URL mapping.

    Entries are checked in ascending name order; the returned dict keeps that
    order so it can be fingerprinted directly.

    Raises:
        PluginValidationError: (or a subclass) for the first invalid entry
    """
    if not isinstance(definitions, Mapping):
        raise PluginValidationError(
            f"input needs to be a key/value mapping, is "
            f"({type(definitions).__name__}) {definitions!r}"
        )
    validated: dict[str, str] = {}
    for index, name in enumerate(sorted(definitions, key=str)):
        validated[name] = validate_entry(index, name, definitions[name], strict)
    return validated


def fingerprint(definitions: Mapping[str, str]) -> str:
    """Stable hash of a definitions mapping, independent of key order."""
    normalized = json.dumps(
        {name: definitions[name] for name in sorted(definitions)},
        separators=(",", ":"),
    )
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def is_remote_object(value: str) -> bool:
    """True if the value points to a private object-storage object."""
    return value.lower().startswith(f"{REMOTE_OBJECT_PROTOCOL}:")


def install_reference(name: str, value: str) -> str:
    """Installer-ready reference for a validated entry (or a fetched local file)."""
    return f"{name}@{value}"
