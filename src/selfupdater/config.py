"""
Configuration management for the self-updater.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (/etc/selfupdater/config.yml or --config path)
3. Environment variables (SELFUPDATER_* prefix, __ for nesting)
4. Command-line arguments (highest precedence)

The orchestrator does not read AppConfig directly; it asks a narrow
ConfigProvider for individual switches.
"""

from __future__ import annotations

import argparse
import os
from pathlib import Path
from typing import Any, Protocol

import yaml
from pydantic import BaseModel, Field, field_validator

DEFAULT_CONFIG_PATH = Path("/etc/selfupdater/config.yml")
DEFAULT_ENV_PREFIX = "SELFUPDATER_"

# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level.
        log_to_stdout: Whether to log to stdout.
        json_format: Emit JSON records instead of plain text.
        log_file: Optional log file path.
        max_bytes: Optional max log file size before rotation.
        backup_count: Optional number of rotated files to keep.
    """

    level: str = Field(
        default="info",
        description="Log level: debug, info, warn, error",
    )
    log_to_stdout: bool = Field(
        default=True,
        description="Whether to log to stdout",
    )
    json_format: bool = Field(
        default=True,
        description="Emit JSON-formatted log records",
    )
    log_file: str | None = Field(
        default=None,
        description="Log file path (disabled when unset)",
    )
    max_bytes: int | None = Field(
        default=None,
        description="Maximum log file size in bytes",
    )
    backup_count: int | None = Field(
        default=None,
        description="Number of backup log files to keep",
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"debug", "info", "warn", "warning", "error", "critical"}
        v_lower = v.lower()
        if v_lower not in valid_levels:
            raise ValueError(
                f"Invalid log level: {v}. Must be one of: {', '.join(sorted(valid_levels))}"
            )
        if v_lower == "warn":
            return "warning"
        return v_lower


# =============================================================================
# Updates Configuration
# =============================================================================


class UpdatesConfig(BaseModel):
    """Update pipeline configuration.

    Attributes:
        allow_automatic_updates: Permit updates fetched from the remote feed.
        backup_database_on_update: Dump the database before migrations.
        always_backup_core_database: Back up for the core unit even when it
            has no pending migrations.
        app_root: Root of the core application file tree.
        plugins_dir: Directory holding one sub-directory per plugin.
        staging_dir: Directory holding one staging area per session.
        package_url_template: URL of a unit's package; "{handle}" is substituted.
        download_timeout_seconds: Timeout for package downloads.
        stale_session_max_age_hours: Age after which the maintenance sweep
            purges abandoned staging areas.
        whats_new_url: Where to send the operator after an upgrade.
        post_update_url: Where to send the operator otherwise.
    """

    allow_automatic_updates: bool = Field(
        default=True,
        description="Allow updates downloaded from the remote feed",
    )
    backup_database_on_update: bool = Field(
        default=True,
        description="Dump the database before applying migrations",
    )
    always_backup_core_database: bool = Field(
        default=False,
        description="Back up the database for the core unit even without pending migrations",
    )
    app_root: str = Field(
        default="/opt/selfupdater/app",
        description="Core application root directory",
    )
    plugins_dir: str = Field(
        default="/opt/selfupdater/plugins",
        description="Plugins root directory",
    )
    staging_dir: str = Field(
        default="/opt/selfupdater/staging",
        description="Staging directory path",
    )
    package_url_template: str = Field(
        default="https://updates.example.invalid/{handle}/latest.zip",
        description="Package download URL; '{handle}' is replaced by the unit handle",
    )
    download_timeout_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Timeout for package downloads in seconds",
    )
    stale_session_max_age_hours: float = Field(
        default=72.0,
        gt=0,
        description="Age after which abandoned staging areas are swept",
    )
    whats_new_url: str = Field(
        default="/whats-new",
        description="Return URL when the installed version is newer",
    )
    post_update_url: str = Field(
        default="/dashboard",
        description="Return URL after an update that did not raise the version",
    )

    @field_validator("package_url_template")
    @classmethod
    def validate_package_url_template(cls, v: str) -> str:
        """Require the {handle} placeholder."""
        if "{handle}" not in v:
            raise ValueError("package_url_template must contain '{handle}'")
        return v


# =============================================================================
# Database Configuration
# =============================================================================


class DatabaseConfig(BaseModel):
    """Database configuration.

    Attributes:
        path: Path to the SQLite database file.
        migrations_dir: Directory with one sub-directory of *.sql per handle.
    """

    path: str = Field(
        default="/opt/selfupdater/data/app.db",
        description="SQLite database path",
    )
    migrations_dir: str = Field(
        default="/opt/selfupdater/migrations",
        description="Directory containing <handle>/*.sql migrations",
    )


# =============================================================================
# Security Configuration
# =============================================================================


class SecurityConfig(BaseModel):
    """Capability-to-role configuration.

    Attributes:
        role_hierarchy: Roles from least to most privileged.
        capabilities: Mapping from capability name to the minimum role.
    """

    role_hierarchy: list[str] = Field(
        default_factory=lambda: ["viewer", "operator", "admin"],
        description="Roles ordered from least to most privileged",
    )
    capabilities: dict[str, str] = Field(
        default_factory=lambda: {"performUpdates": "admin"},
        description="Minimum role required per capability",
    )


# =============================================================================
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """
    Main application configuration model.

    Attributes:
        logging: Logging configuration.
        updates: Update pipeline configuration.
        database: Database configuration.
        security: Capability configuration.
    """

    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging configuration",
    )
    updates: UpdatesConfig = Field(
        default_factory=UpdatesConfig,
        description="Update configuration",
    )
    database: DatabaseConfig = Field(
        default_factory=DatabaseConfig,
        description="Database configuration",
    )
    security: SecurityConfig = Field(
        default_factory=SecurityConfig,
        description="Capability configuration",
    )


# =============================================================================
# Config Provider
# =============================================================================


class ConfigProvider(Protocol):
    """Narrow read-only view of configuration used by the orchestrator."""

    def get(self, key: str) -> Any:
        """Return the value for key; raise KeyError when unknown."""
        ...


# Switch names used by the step orchestrator
_KEY_ALIASES: dict[str, str] = {
    "allowAutomaticUpdates": "updates.allow_automatic_updates",
    "backupDatabaseOnUpdate": "updates.backup_database_on_update",
    "alwaysBackupCoreDatabase": "updates.always_backup_core_database",
    "whatsNewUrl": "updates.whats_new_url",
    "postUpdateUrl": "updates.post_update_url",
}


class AppConfigProvider:
    """
    ConfigProvider backed by an AppConfig.

    Keys are either one of the camelCase switch names (e.g.
    "allowAutomaticUpdates") or a dotted path into AppConfig
    (e.g. "updates.staging_dir").
    """

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    @property
    def config(self) -> AppConfig:
        """Get the wrapped AppConfig."""
        return self._config

    def get(self, key: str) -> Any:
        path = _KEY_ALIASES.get(key, key)
        value: Any = self._config
        for part in path.split("."):
            if not isinstance(value, BaseModel) or part not in type(value).model_fields:
                raise KeyError(key)
            value = getattr(value, part)
        return value


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a YAML file.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the YAML is invalid.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def _parse_env_value(value: str) -> Any:
    """
    Parse an environment variable value to appropriate Python type.

    Args:
        value: String value from environment variable.

    Returns:
        Parsed value (bool, int, float, or string).
    """
    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    return value


def _load_env_config(prefix: str = DEFAULT_ENV_PREFIX) -> dict[str, Any]:
    """
    Load configuration from environment variables.

    - Prefix: SELFUPDATER_ (configurable)
    - Nested keys: Double underscore (__) separator
    - Example: SELFUPDATER_UPDATES__ALLOW_AUTOMATIC_UPDATES=false
    """
    result: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        parts = key[len(prefix) :].lower().split("__")

        current = result
        for part in parts[:-1]:
            current = current.setdefault(part, {})

        current[parts[-1]] = _parse_env_value(value)

    return result


def build_arg_parser(description: str = "Self-updater") -> argparse.ArgumentParser:
    """
    Build the parser for the options shared by every command.

    Returns:
        ArgumentParser with --config, --log-level and --debug.
    """
    parser = argparse.ArgumentParser(
        description=description,
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--config",
        "-c",
        type=str,
        help="Path to configuration file",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        help="Override log level",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    return parser


def cli_overrides(parsed: argparse.Namespace) -> dict[str, Any]:
    """
    Turn parsed shared options into a config override dictionary.

    The config path, if given, is returned under the "_config_path" key.
    """
    result: dict[str, Any] = {}

    if getattr(parsed, "config", None):
        result["_config_path"] = parsed.config

    if getattr(parsed, "log_level", None):
        result["logging"] = {"level": parsed.log_level}

    if getattr(parsed, "debug", False):
        result.setdefault("logging", {})["level"] = "debug"

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
    cli_args: list[str] | None = None,
    *,
    overrides: dict[str, Any] | None = None,
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Args:
        config_path: Path to YAML configuration file. If None, uses the
            --config argument or the default path when it exists.
        env_prefix: Prefix for environment variables.
        cli_args: Command-line arguments parsed with the shared options.
            Ignored when overrides is given.
        overrides: Pre-parsed CLI overrides (see cli_overrides).

    Returns:
        Fully configured AppConfig instance.

    Raises:
        FileNotFoundError: If specified config file doesn't exist.
        ValidationError: If configuration is invalid.

    Example:
        >>> config = load_config(cli_args=[])
        >>> config.updates.allow_automatic_updates
        True
    """
    config_dict: dict[str, Any] = {}

    if overrides is not None:
        cli_config = dict(overrides)
    else:
        parsed = build_arg_parser().parse_args(cli_args or [])
        cli_config = cli_overrides(parsed)

    cli_path = cli_config.pop("_config_path", None)
    if config_path is None:
        if cli_path is not None:
            config_path = Path(cli_path)
        elif DEFAULT_CONFIG_PATH.exists():
            config_path = DEFAULT_CONFIG_PATH
    elif isinstance(config_path, str):
        config_path = Path(config_path)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix))
    config_dict = _deep_merge(config_dict, cli_config)

    return AppConfig(**config_dict)
