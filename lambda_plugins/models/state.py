"""
Persisted installation state.

Stored as JSON in <tmp_dir>/.plugins.installed:

    {"hash": "<fingerprint>", "pluginsMap": {"<name>": "<version or URL>"}}

The file's modification time is the freshness clock; it is not part of the
JSON body.
"""

from typing import Optional

from pydantic import BaseModel, Field


class InstalledState(BaseModel):
    """What is currently installed, and when it was last checked."""

    hash: str = ""
    plugins_map: dict[str, str] = Field(alias="pluginsMap", default_factory=dict)
    last_checked_at_ms: Optional[int] = Field(default=None, exclude=True)

    model_config = {"populate_by_name": True}

    @property
    def installed_names(self) -> list[str]:
        return sorted(self.plugins_map)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2) + "\n"
