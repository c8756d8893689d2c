"""Tests for settings, YAML config fallback and the plugin env variable."""

import logging
import os
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

import lambda_plugins
import lambda_plugins.config as config
from lambda_plugins.config import (
    Settings,
    _load_yaml_config,
    get_settings,
    plugins_from_env,
    reload_settings,
)
from lambda_plugins.lib.errors import PluginValidationError
from lambda_plugins.lib.logger import NOISY_LOGGERS, setup_logging


@pytest.fixture
def config_file(tmp_path) -> Path:
    return tmp_path / "config" / "plugins.yaml"


def write_yaml(config_file: Path, data: dict) -> None:
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(yaml.safe_dump(data))


class TestYamlConfig:
    def test_missing_file(self, config_file):
        assert _load_yaml_config(config_file) == {}

    def test_no_file_configured(self):
        assert _load_yaml_config(None) == {}

    def test_load_values(self, config_file):
        write_yaml(config_file, {"max_age_ms": 5000, "quiet": False})
        loaded = _load_yaml_config(config_file)
        assert loaded == {"max_age_ms": 5000, "quiet": False}

    def test_invalid_yaml_returns_empty(self, config_file):
        config_file.parent.mkdir(parents=True)
        config_file.write_text("[ invalid yaml {{{")
        assert _load_yaml_config(config_file) == {}

    def test_non_dict_yaml_returns_empty(self, config_file):
        config_file.parent.mkdir(parents=True)
        config_file.write_text("- just\n- a\n- list\n")
        assert _load_yaml_config(config_file) == {}


class TestSettings:
    def test_defaults(self):
        settings = Settings()
        assert settings.tmp_dir == Path("/tmp")
        assert settings.max_age_ms == 120_000
        assert settings.strict is True
        assert settings.quiet is True
        assert settings.fetch_concurrency == 10
        assert settings.npm_path == "npm"

    def test_install_root(self, tmp_path):
        settings = Settings(tmp_dir=tmp_path)
        assert settings.install_root == tmp_path / "plugins"

    def test_env_vars(self, tmp_path):
        env = {
            "LAMBDA_PLUGINS_TMP_DIR": str(tmp_path),
            "LAMBDA_PLUGINS_QUIET": "false",
            "LAMBDA_PLUGINS_MAX_AGE_MS": "1000",
            "LAMBDA_PLUGINS_REGISTRY_TOKENS": '{"https://npm.acme.dev/": "t"}',
        }
        with patch.dict(os.environ, env):
            settings = Settings()
        assert settings.tmp_dir == tmp_path
        assert settings.quiet is False
        assert settings.max_age_ms == 1000
        assert settings.registry_tokens == {"https://npm.acme.dev/": "t"}

    def test_yaml_values_used_as_fallback(self, config_file):
        write_yaml(config_file, {"max_age_ms": 5000, "strict": False})
        with patch.dict(os.environ, {"LAMBDA_PLUGINS_CONFIG_FILE": str(config_file)}):
            settings = Settings()
        assert settings.max_age_ms == 5000
        assert settings.strict is False

    def test_env_overrides_yaml(self, config_file):
        write_yaml(config_file, {"max_age_ms": 5000})
        env = {
            "LAMBDA_PLUGINS_CONFIG_FILE": str(config_file),
            "LAMBDA_PLUGINS_MAX_AGE_MS": "7000",
        }
        with patch.dict(os.environ, env):
            assert Settings().max_age_ms == 7000

    def test_explicit_overrides_yaml(self, config_file):
        write_yaml(config_file, {"max_age_ms": 5000})
        with patch.dict(os.environ, {"LAMBDA_PLUGINS_CONFIG_FILE": str(config_file)}):
            assert Settings(max_age_ms=1).max_age_ms == 1

    def test_unknown_yaml_keys_ignored(self, config_file):
        write_yaml(config_file, {"no_such_setting": 1})
        with patch.dict(os.environ, {"LAMBDA_PLUGINS_CONFIG_FILE": str(config_file)}):
            settings = Settings()
        assert not hasattr(settings, "no_such_setting")

    def test_fetch_concurrency_must_be_positive(self):
        with pytest.raises(ValueError):
            Settings(fetch_concurrency=0)

    def test_global_settings(self, tmp_path):
        first = get_settings()
        assert get_settings() is first
        with patch.dict(os.environ, {"LAMBDA_PLUGINS_TMP_DIR": str(tmp_path)}):
            reloaded = reload_settings()
        assert reloaded is not first
        assert config.settings is reloaded
        assert reloaded.tmp_dir == tmp_path


class TestPluginsFromEnv:
    def test_missing(self):
        assert plugins_from_env() == {}

    def test_blank(self):
        with patch.dict(os.environ, {"LAMBDA_PLUGINS": "  "}):
            assert plugins_from_env() == {}

    def test_object(self):
        with patch.dict(os.environ, {"LAMBDA_PLUGINS": '{"a": "1.0.0"}'}):
            assert plugins_from_env() == {"a": "1.0.0"}

    def test_custom_variable(self):
        with patch.dict(os.environ, {"MY_PLUGINS": '{"b": "2.0.0"}'}):
            assert plugins_from_env("MY_PLUGINS") == {"b": "2.0.0"}

    def test_invalid_json(self):
        with patch.dict(os.environ, {"LAMBDA_PLUGINS": "{nope"}):
            with pytest.raises(PluginValidationError):
                plugins_from_env()

    def test_not_an_object(self):
        with patch.dict(os.environ, {"LAMBDA_PLUGINS": '["a"]'}):
            with pytest.raises(PluginValidationError, match="JSON object"):
                plugins_from_env()


class TestLogging:
    def test_setup_logging(self):
        root = logging.getLogger()
        saved = root.handlers[:], root.level
        try:
            setup_logging(level="debug")
            assert root.level == logging.DEBUG
            assert len(root.handlers) == 1
            for name in NOISY_LOGGERS:
                assert logging.getLogger(name).level == logging.WARNING
        finally:
            root.handlers[:] = saved[0]
            root.setLevel(saved[1])

    def test_format_from_settings(self, capsys):
        root = logging.getLogger()
        saved = root.handlers[:], root.level
        try:
            lambda_plugins.setup_logging(Settings(log_level="INFO", log_format="plugins: %(message)s"))
            logging.getLogger("lambda_plugins.test").info("hello")
        finally:
            root.handlers[:] = saved[0]
            root.setLevel(saved[1])
        assert "plugins: hello" in capsys.readouterr().out
