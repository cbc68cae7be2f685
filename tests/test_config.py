"""
Tests for the configuration module.

This test module validates:
- Configuration loading from YAML files
- Environment variable overrides
- CLI argument overrides
- Configuration precedence (defaults < YAML < env vars < CLI args)
- The ConfigProvider view used by the orchestrator
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any
from unittest import mock

import pytest
import yaml
from pydantic import ValidationError

from selfupdater.config import (
    AppConfig,
    AppConfigProvider,
    LoggingConfig,
    UpdatesConfig,
    _deep_merge,
    _load_env_config,
    _load_yaml_config,
    _parse_env_value,
    build_arg_parser,
    cli_overrides,
    load_config,
)

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def temp_config_file(tmp_path: Path) -> Path:
    """Create a temporary config file path for testing."""
    return tmp_path / "config.yml"


@pytest.fixture
def sample_yaml_config() -> dict[str, Any]:
    """Sample YAML configuration for testing."""
    return {
        "logging": {"level": "debug"},
        "updates": {
            "allow_automatic_updates": False,
            "staging_dir": "/srv/staging",
        },
        "database": {"path": "/srv/data/app.db"},
    }


@pytest.fixture
def clean_env() -> Any:
    """Remove SELFUPDATER_* variables for the duration of a test."""
    env = {k: v for k, v in os.environ.items() if not k.startswith("SELFUPDATER_")}
    with mock.patch.dict(os.environ, env, clear=True):
        yield


# =============================================================================
# Tests for Default Configuration
# =============================================================================


class TestDefaultConfiguration:
    """Tests for default configuration values."""

    def test_app_config_defaults(self) -> None:
        """Test AppConfig has the expected defaults."""
        config = AppConfig()

        assert config.logging.level == "info"
        assert config.logging.json_format is True
        assert config.updates.allow_automatic_updates is True
        assert config.updates.backup_database_on_update is True
        assert config.updates.always_backup_core_database is False
        assert config.security.capabilities == {"performUpdates": "admin"}

    def test_updates_config_defaults(self) -> None:
        """Test UpdatesConfig return URLs and timeouts."""
        config = UpdatesConfig()

        assert config.whats_new_url == "/whats-new"
        assert config.post_update_url == "/dashboard"
        assert config.download_timeout_seconds == 300.0
        assert config.stale_session_max_age_hours == 72.0


# =============================================================================
# Tests for Configuration Validation
# =============================================================================


class TestConfigurationValidation:
    """Tests for configuration validation."""

    def test_log_level_validation_valid(self) -> None:
        """Test valid log levels are normalized."""
        assert LoggingConfig(level="DEBUG").level == "debug"
        assert LoggingConfig(level="warn").level == "warning"

    def test_log_level_validation_invalid(self) -> None:
        """Test invalid log level raises."""
        with pytest.raises(ValidationError):
            LoggingConfig(level="verbose")

    def test_package_url_requires_handle_placeholder(self) -> None:
        """Test package URL template must contain {handle}."""
        with pytest.raises(ValidationError):
            UpdatesConfig(package_url_template="https://updates.test/latest.zip")

    def test_download_timeout_must_be_positive(self) -> None:
        """Test download timeout of zero is rejected."""
        with pytest.raises(ValidationError):
            UpdatesConfig(download_timeout_seconds=0)


# =============================================================================
# Tests for YAML Configuration Loading
# =============================================================================


class TestYAMLConfigLoading:
    """Tests for YAML configuration file loading."""

    def test_load_yaml_config_success(
        self, temp_config_file: Path, sample_yaml_config: dict[str, Any]
    ) -> None:
        """Test loading a valid YAML config file."""
        with open(temp_config_file, "w") as f:
            yaml.dump(sample_yaml_config, f)

        result = _load_yaml_config(temp_config_file)

        assert result["updates"]["staging_dir"] == "/srv/staging"

    def test_load_yaml_config_file_not_found(self, tmp_path: Path) -> None:
        """Test loading a missing YAML file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            _load_yaml_config(tmp_path / "missing.yml")

    def test_load_yaml_config_empty_file(self, temp_config_file: Path) -> None:
        """Test loading an empty YAML file returns an empty dict."""
        temp_config_file.write_text("")
        assert _load_yaml_config(temp_config_file) == {}

    def test_load_config_with_yaml_file(
        self,
        temp_config_file: Path,
        sample_yaml_config: dict[str, Any],
        clean_env: Any,
    ) -> None:
        """Test load_config applies YAML values over defaults."""
        with open(temp_config_file, "w") as f:
            yaml.dump(sample_yaml_config, f)

        config = load_config(config_path=temp_config_file, cli_args=[])

        assert config.logging.level == "debug"
        assert config.updates.allow_automatic_updates is False
        assert config.updates.staging_dir == "/srv/staging"
        assert config.updates.app_root == "/opt/selfupdater/app"


# =============================================================================
# Tests for Environment Variable Loading
# =============================================================================


class TestEnvironmentVariableLoading:
    """Tests for environment variable configuration."""

    def test_parse_env_value_booleans(self) -> None:
        """Test boolean spellings are parsed."""
        for value in ("true", "TRUE", "yes", "on"):
            assert _parse_env_value(value) is True
        for value in ("false", "no", "Off"):
            assert _parse_env_value(value) is False

    def test_parse_env_value_numbers(self) -> None:
        """Test integers and floats are parsed."""
        assert _parse_env_value("72") == 72
        assert _parse_env_value("1.5") == 1.5

    def test_parse_env_value_string(self) -> None:
        """Test other values stay strings."""
        assert _parse_env_value("/opt/app") == "/opt/app"

    def test_load_env_config_nested(self) -> None:
        """Test double underscore nests keys."""
        env_vars = {
            "SELFUPDATER_UPDATES__ALLOW_AUTOMATIC_UPDATES": "false",
            "SELFUPDATER_LOGGING__LEVEL": "error",
        }

        with mock.patch.dict(os.environ, env_vars, clear=False):
            config_dict = _load_env_config()

        assert config_dict["updates"]["allow_automatic_updates"] is False
        assert config_dict["logging"]["level"] == "error"

    def test_load_config_with_env_vars(
        self, temp_config_file: Path, clean_env: Any
    ) -> None:
        """Test environment variables override YAML."""
        with open(temp_config_file, "w") as f:
            yaml.dump({"updates": {"staging_dir": "/yaml", "app_root": "/yaml-app"}}, f)

        with mock.patch.dict(os.environ, {"SELFUPDATER_UPDATES__STAGING_DIR": "/env"}):
            config = load_config(config_path=temp_config_file, cli_args=[])

        assert config.updates.staging_dir == "/env"
        assert config.updates.app_root == "/yaml-app"


# =============================================================================
# Tests for CLI Argument Parsing
# =============================================================================


class TestCLIArgumentParsing:
    """Tests for the shared command-line options."""

    def test_config_path(self) -> None:
        """Test --config is returned under _config_path."""
        parsed = build_arg_parser().parse_args(["--config", "/etc/custom.yml"])
        assert cli_overrides(parsed) == {"_config_path": "/etc/custom.yml"}

    def test_log_level(self) -> None:
        """Test --log-level overrides logging.level."""
        parsed = build_arg_parser().parse_args(["--log-level", "warning"])
        assert cli_overrides(parsed) == {"logging": {"level": "warning"}}

    def test_debug_wins_over_log_level(self) -> None:
        """Test --debug forces debug level."""
        parsed = build_arg_parser().parse_args(["--log-level", "error", "--debug"])
        assert cli_overrides(parsed)["logging"]["level"] == "debug"

    def test_empty(self) -> None:
        """Test no options give no overrides."""
        assert cli_overrides(build_arg_parser().parse_args([])) == {}


# =============================================================================
# Tests for Configuration Precedence
# =============================================================================


class TestConfigurationPrecedence:
    """Tests for the defaults < YAML < env < CLI chain."""

    def test_cli_overrides_env_and_yaml(
        self, temp_config_file: Path, clean_env: Any
    ) -> None:
        """Test CLI options win over env vars and YAML."""
        with open(temp_config_file, "w") as f:
            yaml.dump({"logging": {"level": "info"}}, f)

        with mock.patch.dict(os.environ, {"SELFUPDATER_LOGGING__LEVEL": "warning"}):
            config = load_config(
                cli_args=["--config", str(temp_config_file), "--log-level", "error"]
            )

        assert config.logging.level == "error"

    def test_overrides_argument(self, temp_config_file: Path, clean_env: Any) -> None:
        """Test pre-parsed overrides are honoured, including the config path."""
        with open(temp_config_file, "w") as f:
            yaml.dump({"updates": {"whats_new_url": "/news"}}, f)

        config = load_config(
            overrides={"_config_path": str(temp_config_file), "logging": {"level": "debug"}}
        )

        assert config.updates.whats_new_url == "/news"
        assert config.logging.level == "debug"

    def test_explicit_missing_file_raises(self, tmp_path: Path, clean_env: Any) -> None:
        """Test a named config file that does not exist is an error."""
        with pytest.raises(FileNotFoundError):
            load_config(config_path=tmp_path / "nope.yml", cli_args=[])


class TestDeepMerge:
    """Tests for _deep_merge."""

    def test_deep_merge_nested(self) -> None:
        """Test nested dictionaries are merged key by key."""
        base = {"updates": {"a": 1, "b": 2}, "x": 1}
        override = {"updates": {"b": 3}}

        assert _deep_merge(base, override) == {"updates": {"a": 1, "b": 3}, "x": 1}

    def test_deep_merge_does_not_modify_original(self) -> None:
        """Test the base dictionary is left untouched."""
        base = {"updates": {"a": 1}}
        _deep_merge(base, {"updates": {"a": 2}})
        assert base == {"updates": {"a": 1}}


# =============================================================================
# Tests for AppConfigProvider
# =============================================================================


class TestAppConfigProvider:
    """Tests for the ConfigProvider backed by AppConfig."""

    def test_switch_names(self) -> None:
        """Test the camelCase switch names resolve to update settings."""
        provider = AppConfigProvider(
            AppConfig(
                updates={
                    "allow_automatic_updates": False,
                    "always_backup_core_database": True,
                    "whats_new_url": "/news",
                }
            )
        )

        assert provider.get("allowAutomaticUpdates") is False
        assert provider.get("backupDatabaseOnUpdate") is True
        assert provider.get("alwaysBackupCoreDatabase") is True
        assert provider.get("whatsNewUrl") == "/news"
        assert provider.get("postUpdateUrl") == "/dashboard"

    def test_dotted_path(self) -> None:
        """Test dotted paths walk nested models."""
        provider = AppConfigProvider(AppConfig())
        assert provider.get("database.path") == "/opt/selfupdater/data/app.db"
        assert provider.get("logging.level") == "info"

    def test_unknown_key_raises(self) -> None:
        """Test unknown keys raise KeyError."""
        provider = AppConfigProvider(AppConfig())

        with pytest.raises(KeyError):
            provider.get("autoUpdate")
        with pytest.raises(KeyError):
            provider.get("updates.nope")
        with pytest.raises(KeyError):
            provider.get("updates.staging_dir.extra")
