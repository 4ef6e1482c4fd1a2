"""
Configuration management for ipfs-update.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (~/.config/ipfs-update/config.yml or --config path)
3. Environment variables (IPFS_UPDATE_* prefix, __ for nesting)
4. Command-line overrides (highest precedence)

The conventional ipfs variables are honoured as well: IPFS_PATH selects the
ipfs directory and IPFS_DIST_PATH the distribution root, unless set
explicitly in a higher layer.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

DEFAULT_CONFIG_PATH = Path("~/.config/ipfs-update/config.yml")
DEFAULT_DIST_PATH = "/ipns/dist.ipfs.tech"
DEFAULT_FETCH_LIMIT = 1024 * 1024 * 512

# =============================================================================
# Updater Configuration
# =============================================================================


class UpdaterConfig(BaseModel):
    """Settings for fetching, installing and migrating.

    Attributes:
        ipfs_dir: The ipfs directory (repo and stash root).
        dist_path: Root of the distribution tree on IPFS.
        gateway_url: Public gateway used by the HTTP fetcher.
        distribution: Distribution name of the ipfs binary.
        binary_name: Canonical executable name.
        fetch_limit_bytes: Byte ceiling per fetch, 0 for unlimited.
        max_retries: Attempts made by the retry fetcher.
        retry_delay_seconds: Base delay between retry attempts.
        http_timeout_seconds: Timeout for gateway and API transfers.
        api_check_timeout_seconds: Timeout for the daemon liveness probe.
        migration_distribution: Distribution name of the migration runner.
        use_lock_file: Hold an exclusive lock on the stash directory.
    """

    ipfs_dir: str | None = Field(
        default=None,
        description="ipfs directory; defaults to $IPFS_PATH or ~/.ipfs",
    )
    dist_path: str = Field(
        default=DEFAULT_DIST_PATH,
        description="Root path of the distribution tree",
    )
    gateway_url: str = Field(
        default="https://ipfs.io",
        description="Public gateway base URL",
    )
    distribution: str = Field(
        default="kubo",
        description=(
            "Distribution name of the ipfs binary; kubo releases before "
            "v0.14.0 are fetched from go-ipfs"
        ),
    )
    binary_name: str = Field(
        default="ipfs",
        description="Canonical name of the installed executable",
    )
    fetch_limit_bytes: int = Field(
        default=DEFAULT_FETCH_LIMIT,
        ge=0,
        description="Maximum bytes read per fetch (0 disables the cap)",
    )
    max_retries: int = Field(
        default=3,
        ge=1,
        description="Number of fetch attempts before giving up",
    )
    retry_delay_seconds: float = Field(
        default=0.0,
        ge=0,
        description="Base delay between fetch attempts, doubled each retry",
    )
    http_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Timeout for content transfers",
    )
    api_check_timeout_seconds: float = Field(
        default=2.0,
        gt=0,
        description="Timeout for checking that the local daemon is up",
    )
    migration_distribution: str = Field(
        default="fs-repo-migrations",
        description="Distribution name of the migration runner",
    )
    use_lock_file: bool = Field(
        default=True,
        description="Guard the stash directory with an exclusive lock file",
    )

    @field_validator("dist_path")
    @classmethod
    def validate_dist_path(cls, v: str) -> str:
        """Ensure the distribution path is rooted."""
        v = v.rstrip("/")
        if not v.startswith("/"):
            v = "/" + v
        return v

    @field_validator("gateway_url")
    @classmethod
    def validate_gateway_url(cls, v: str) -> str:
        """Strip the trailing slash so paths can be appended."""
        return v.rstrip("/")

    def resolved_ipfs_dir(self) -> Path:
        """Return the ipfs directory as an absolute path."""
        if self.ipfs_dir:
            return Path(self.ipfs_dir).expanduser().absolute()
        return (Path.home() / ".ipfs").absolute()


# =============================================================================
# Verification Configuration
# =============================================================================


class VerificationConfig(BaseModel):
    """Settings for the smoke test run against a downloaded binary.

    Attributes:
        daemon_ready_attempts: Readiness polls before giving up.
        daemon_ready_backoff_seconds: Backoff unit, multiplied by the attempt.
        command_timeout_seconds: Timeout for each binary invocation.
        daemon_stop_timeout_seconds: Grace period before killing the daemon.
    """

    daemon_ready_attempts: int = Field(default=10, ge=1)
    daemon_ready_backoff_seconds: float = Field(default=0.1, ge=0)
    command_timeout_seconds: float = Field(default=60.0, gt=0)
    daemon_stop_timeout_seconds: float = Field(default=5.0, gt=0)


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level.
        json_format: Emit JSON records instead of plain lines.
        log_to_stderr: Write logs to stderr (stdout otherwise).
    """

    level: str = Field(
        default="info",
        description="Log level: debug, info, warning, error",
    )
    json_format: bool = Field(
        default=False,
        description="Emit structured JSON log records",
    )
    log_to_stderr: bool = Field(
        default=True,
        description="Write logs to stderr instead of stdout",
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
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """
    Main application configuration model.

    Attributes:
        updater: Fetch/install/migration settings.
        verification: Smoke test settings.
        logging: Logging configuration.
    """

    updater: UpdaterConfig = Field(default_factory=UpdaterConfig)
    verification: VerificationConfig = Field(default_factory=VerificationConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


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


def _load_env_config(
    prefix: str = "IPFS_UPDATE_",
    environ: dict[str, str] | None = None,
) -> dict[str, Any]:
    """
    Load configuration from environment variables.

    Nested keys use a double underscore, e.g.
    IPFS_UPDATE_UPDATER__MAX_RETRIES=5. IPFS_PATH and IPFS_DIST_PATH map to
    updater.ipfs_dir and updater.dist_path.

    Args:
        prefix: Environment variable prefix.
        environ: Environment mapping; defaults to os.environ.

    Returns:
        Dictionary with configuration values.
    """
    if environ is None:
        environ = dict(os.environ)

    result: dict[str, Any] = {}

    if environ.get("IPFS_PATH"):
        result["updater"] = {"ipfs_dir": environ["IPFS_PATH"]}
    if environ.get("IPFS_DIST_PATH"):
        result.setdefault("updater", {})["dist_path"] = environ["IPFS_DIST_PATH"]

    for key, value in environ.items():
        if not key.startswith(prefix):
            continue

        config_key = key[len(prefix) :].lower()
        parts = config_key.split("__")

        current = result
        for part in parts[:-1]:
            if part not in current:
                current[part] = {}
            current = current[part]

        current[parts[-1]] = _parse_env_value(value)

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = "IPFS_UPDATE_",
    overrides: dict[str, Any] | None = None,
    environ: dict[str, str] | None = None,
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Args:
        config_path: Path to a YAML configuration file. If None, the default
            path is used when it exists.
        env_prefix: Prefix for environment variables.
        overrides: Values from the command line, applied last.
        environ: Environment mapping; defaults to os.environ.

    Returns:
        Fully configured AppConfig instance.

    Raises:
        FileNotFoundError: If an explicitly given config file doesn't exist.
        ValidationError: If configuration is invalid.

    Example:
        >>> config = load_config(overrides={"updater": {"dist_path": "/ipfs/Qm..."}})
        >>> config.updater.max_retries
        3
    """
    config_dict: dict[str, Any] = {}

    if config_path is None:
        default_path = DEFAULT_CONFIG_PATH.expanduser()
        if default_path.exists():
            config_path = default_path
    elif isinstance(config_path, str):
        config_path = Path(config_path)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix, environ))

    if overrides:
        config_dict = _deep_merge(config_dict, overrides)

    return AppConfig(**config_dict)
