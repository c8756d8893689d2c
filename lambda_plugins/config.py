"""
Configuration management for the plugin loader.

Precedence: env vars > YAML config file > defaults

Env vars use the LAMBDA_PLUGINS_ prefix (e.g. LAMBDA_PLUGINS_TMP_DIR).
Dict-valued settings (scoped_registries, registry_tokens) are read from env
as JSON. An optional YAML file can be named with LAMBDA_PLUGINS_CONFIG_FILE.

The desired plugin set itself is not part of Settings; callers usually read
it with plugins_from_env() from the LAMBDA_PLUGINS variable.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings

from lambda_plugins.lib.errors import PluginValidationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "LAMBDA_PLUGINS_"
CONFIG_FILE_ENV = "LAMBDA_PLUGINS_CONFIG_FILE"
PLUGINS_ENV = "LAMBDA_PLUGINS"

PLUGINS_FOLDER = "plugins"
PLUGINS_CACHE_FOLDER = "plugins_cache"
PLUGINS_FILE = ".plugins.installed"


def _load_yaml_config(config_file: Optional[Path]) -> dict[str, Any]:
    """Load a YAML config file. Missing or invalid files yield an empty dict."""
    if config_file is None or not config_file.exists():
        return {}
    try:
        with open(config_file) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            logger.warning(f"Config file is not a mapping, ignoring: {config_file}")
            return {}
        return data
    except Exception as e:
        logger.warning(f"Error loading config file {config_file}: {e}")
        return {}


def plugins_from_env(var: str = PLUGINS_ENV) -> dict[str, str]:
    """Parse the desired plugin mapping from a JSON environment variable."""
    raw = os.environ.get(var, "").strip()
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise PluginValidationError(f"{var} needs to contain a JSON object: {e}") from e
    if not isinstance(data, dict):
        raise PluginValidationError(
            f"{var} needs to contain a JSON object, is ({type(data).__name__}) {raw}"
        )
    return data


class Settings(BaseSettings):
    """Loader configuration. Precedence: env vars > YAML config file > defaults."""

    # Storage
    tmp_dir: Path = Field(
        default=Path("/tmp"),
        description="Writable directory holding the install root, npm cache and state file",
    )
    max_age_ms: int = Field(
        default=1000 * 60 * 2,
        description="Freshness window during which a previous resolution is trusted",
    )

    # Behaviour
    strict: bool = Field(default=True, description="Only accept exact versions")
    quiet: bool = Field(
        default=True,
        description="Return no plugins instead of raising when installation fails",
    )
    fetch_concurrency: int = Field(
        default=10, ge=1, description="Parallel S3 downloads per reconcile"
    )
    install_timeout: Optional[float] = Field(
        default=None, description="Seconds before an npm invocation is killed"
    )
    load_timeout: Optional[float] = Field(
        default=None, description="Seconds before a module load is killed"
    )

    # Tooling
    npm_path: str = Field(default="npm", description="npm executable")
    node_path: str = Field(default="node", description="node executable")

    # Registry access (written to a transient .npmrc, never to argv)
    registry: Optional[str] = Field(default=None, description="Default registry URL")
    scoped_registries: dict[str, str] = Field(
        default_factory=dict, description="Registry URL per @scope"
    )
    registry_tokens: dict[str, str] = Field(
        default_factory=dict, description="Bearer token per registry URL"
    )
    cert: Optional[str] = Field(default=None, description="TLS client certificate (PEM)")
    key: Optional[str] = Field(default=None, description="TLS client key (PEM)")
    ca: Optional[str] = Field(default=None, description="Custom CA bundle (PEM)")

    # Logging
    log_level: str = Field(default="INFO", description="Log level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format string",
    )

    model_config = {
        "env_prefix": ENV_PREFIX,
        "extra": "ignore",
    }

    @model_validator(mode="before")
    @classmethod
    def _inject_yaml_config(cls, data: Any) -> Any:
        """Inject YAML config values as fallbacks below env vars and explicit values."""
        if not isinstance(data, dict):
            data = {}

        raw_path = os.environ.get(CONFIG_FILE_ENV, "")
        config_file = Path(raw_path).expanduser() if raw_path else None
        yaml_config = _load_yaml_config(config_file)

        for key, value in yaml_config.items():
            if key not in data or data[key] is None:
                env_val = os.environ.get(f"{ENV_PREFIX}{key.upper()}")
                if env_val is None:
                    data[key] = value

        return data

    @property
    def install_root(self) -> Path:
        """npm --prefix; packages land in install_root/lib/node_modules."""
        return self.tmp_dir / PLUGINS_FOLDER


# Global settings instance
settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global settings
    if settings is None:
        settings = Settings()
    return settings


def reload_settings() -> Settings:
    """Reload settings from environment."""
    global settings
    settings = Settings()
    return settings
