"""
Pytest configuration and fixtures.
"""

import os
from pathlib import Path

import pytest

import lambda_plugins.config as config
from lambda_plugins.config import Settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Isolate tests from LAMBDA_PLUGINS* variables and the global settings."""
    for key in list(os.environ):
        if key.startswith("LAMBDA_PLUGINS"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr(config, "settings", None)


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """A fresh function-local storage directory."""
    path = tmp_path / "lambda-tmp"
    path.mkdir()
    return path


@pytest.fixture
def settings(tmp_dir: Path) -> Settings:
    return Settings(tmp_dir=tmp_dir)
