"""
Install and load npm packages as plugins at cold start of a serverless function.
"""

from lambda_plugins.config import Settings, get_settings, plugins_from_env
from lambda_plugins.core.plugins import PluginHandle, load_plugins
from lambda_plugins.lib.errors import (
    FetchError,
    NoEntryPointError,
    PluginError,
    PluginInstallError,
    PluginValidationError,
)
from lambda_plugins.lib.logger import setup_logging

__version__ = "0.1.0"

__all__ = [
    "FetchError",
    "NoEntryPointError",
    "PluginError",
    "PluginHandle",
    "PluginInstallError",
    "PluginValidationError",
    "Settings",
    "get_settings",
    "load_plugins",
    "plugins_from_env",
    "setup_logging",
]
