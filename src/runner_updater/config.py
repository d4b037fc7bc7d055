"""
Runner updater configuration.

AppConfig is assembled from four layers, later ones winning:

1. model defaults
2. YAML file (/etc/runner-updater/config.yml, or --config)
3. RUNNER_UPDATER_* environment variables, "__" separating nested keys
4. command-line overrides
"""

from __future__ import annotations

import argparse
import os
from pathlib import Path, PurePosixPath
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

DEFAULT_CONFIG_PATH = Path("/etc/runner-updater/config.yml")
DEFAULT_ENV_PREFIX = "RUNNER_UPDATER_"

_VALID_LOG_LEVELS = {"debug", "info", "warn", "warning", "error", "critical"}

# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level.
        log_to_stdout: Whether to log to stdout.
        json_format: Whether to emit JSON lines instead of plain text.
        log_file: Optional log file path.
        max_bytes: Optional max log file size before rotation.
        backup_count: Optional number of rotated files to keep.
        debug_mode: Enable extra diagnostic logging.
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
        description="Whether to emit JSON-formatted log lines",
    )
    log_file: str | None = Field(
        default=None,
        description="Optional log file path (e.g. /var/log/runner-updater/updater.log)",
    )
    max_bytes: int | None = Field(
        default=None,
        description="Maximum log file size in bytes",
    )
    backup_count: int | None = Field(
        default=None,
        description="Number of backup log files to keep",
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable extra diagnostic logging",
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        v_lower = v.lower()
        if v_lower not in _VALID_LOG_LEVELS:
            raise ValueError(
                f"Invalid log level: {v}. Must be one of: {', '.join(sorted(_VALID_LOG_LEVELS))}"
            )
        if v_lower == "warn":
            return "warning"
        return v_lower


# =============================================================================
# Runner (managed agent) Configuration
# =============================================================================


class RunnerConfig(BaseModel):
    """Managed runner installation and service configuration.

    Attributes:
        install_dir: Runner installation root (where config.sh lives).
        service_manager: How the runner is supervised: 'systemd', 'launchd'
            or 'process'.
        service_name: Service unit/label. Read from the runner's .service
            file when not set.
        start_command: Command used by the 'process' service manager.
        pid_file: Pid file used by the 'process' service manager.
        listener_binary: Listener binary, relative to install_dir.
        listener_process_name: Process name of the long-running listener.
        worker_process_name: Process name of a job worker.
    """

    install_dir: str = Field(
        default="/opt/actions-runner",
        description="Runner installation root",
    )
    service_manager: str = Field(
        default="systemd",
        description="Service manager: 'systemd', 'launchd', 'process'",
    )
    service_name: str | None = Field(
        default=None,
        description="Service unit or launchd label (defaults to the runner's .service file)",
    )
    start_command: list[str] = Field(
        default_factory=lambda: ["./run.sh"],
        description="Command to launch the runner when supervised as a plain process",
    )
    pid_file: str | None = Field(
        default=None,
        description="Pid file for the supervised process (defaults to <state_dir>/runner.pid)",
    )
    listener_binary: str = Field(
        default="bin/Runner.Listener",
        description="Listener binary path relative to install_dir",
    )
    listener_process_name: str = Field(
        default="Runner.Listener",
        description="Process name of the runner listener",
    )
    worker_process_name: str = Field(
        default="Runner.Worker",
        description="Process name of a job worker",
    )

    @field_validator("service_manager")
    @classmethod
    def validate_service_manager(cls, v: str) -> str:
        """Validate service manager type."""
        valid = {"systemd", "launchd", "process"}
        v_lower = v.lower()
        if v_lower not in valid:
            raise ValueError(
                f"Invalid service manager: {v}. Must be one of: {', '.join(sorted(valid))}"
            )
        return v_lower


# =============================================================================
# Version Source Configuration
# =============================================================================


class SourceConfig(BaseModel):
    """Version source configuration.

    Attributes:
        kind: Source type: 'github' (releases API) or 'manifest' (JSON file).
        repository: GitHub repository publishing runner releases.
        api_url: GitHub API base URL (GitHub Enterprise Server compatible).
        manifest_url: URL of a JSON release manifest (kind='manifest').
        channel: Release channel: 'stable' or 'prerelease'.
        platform: Runner platform (e.g. 'linux-x64'); detected when unset.
        token: Optional API token.
        request_timeout_seconds: HTTP timeout for metadata queries.
    """

    kind: str = Field(
        default="github",
        description="Version source: 'github' or 'manifest'",
    )
    repository: str = Field(
        default="actions/runner",
        description="Repository publishing runner releases",
    )
    api_url: str = Field(
        default="https://api.github.com",
        description="GitHub API base URL",
    )
    manifest_url: str = Field(
        default="",
        description="Release manifest URL for kind='manifest'",
    )
    channel: str = Field(
        default="stable",
        description="Release channel: 'stable' or 'prerelease'",
    )
    platform: str | None = Field(
        default=None,
        description="Runner platform, e.g. linux-x64 (auto-detected when unset)",
    )
    token: str | None = Field(
        default=None,
        description="Optional API token for the version source",
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="HTTP request timeout in seconds",
    )

    @field_validator("kind")
    @classmethod
    def validate_kind(cls, v: str) -> str:
        """Validate source kind."""
        valid = {"github", "manifest"}
        v_lower = v.lower()
        if v_lower not in valid:
            raise ValueError(
                f"Invalid source kind: {v}. Must be one of: {', '.join(sorted(valid))}"
            )
        return v_lower

    @field_validator("channel")
    @classmethod
    def validate_channel(cls, v: str) -> str:
        """Validate release channel."""
        valid = {"stable", "prerelease"}
        v_lower = v.lower()
        if v_lower not in valid:
            raise ValueError(
                f"Invalid channel: {v}. Must be one of: {', '.join(sorted(valid))}"
            )
        return v_lower


# =============================================================================
# Updates Configuration
# =============================================================================


class StatefulFileConfig(BaseModel):
    """A file that must survive every update unchanged.

    Attributes:
        path: Path relative to the runner install_dir.
        required: Whether a snapshot fails when the file is missing.
    """

    path: str = Field(..., description="Path relative to install_dir")
    required: bool = Field(default=True, description="Fail the backup if missing")

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Stateful paths must stay inside the installation."""
        pure = PurePosixPath(v)
        if not v or pure.is_absolute() or ".." in pure.parts:
            raise ValueError(
                f"Stateful file path must be relative to install_dir: {v!r}"
            )
        return v


def _default_stateful_files() -> list[StatefulFileConfig]:
    """Return the runner's identity, credential and path records."""
    return [
        StatefulFileConfig(path=".runner"),
        StatefulFileConfig(path=".credentials"),
        StatefulFileConfig(path=".credentials_rsaparams"),
        StatefulFileConfig(path=".path"),
        StatefulFileConfig(path=".env", required=False),
        StatefulFileConfig(path=".service", required=False),
    ]


class UpdatesConfig(BaseModel):
    """Update orchestration configuration.

    Attributes:
        state_dir: Directory for version.json, snapshots, staging and the
            session marker.
        drain_timeout_seconds: Default max wait for in-flight jobs.
        drain_poll_interval_seconds: Interval between activity polls.
        liveness_timeout_seconds: Max wait for the agent to become healthy.
        liveness_poll_interval_seconds: Interval between health polls.
        stop_grace_seconds: Grace period before a forced stop.
        session_stale_after_seconds: Age after which a session marker is stale.
        snapshot_retention: Number of snapshots to keep (None keeps all).
        stateful_files: Files preserved across updates.
        preserved_entries: Installation entries left in place by the installer.
        required_entries: Entries a package must contain to be installable.
    """

    state_dir: str = Field(
        default="/var/lib/runner-updater",
        description="Updater state directory",
    )
    drain_timeout_seconds: float = Field(
        default=3600.0,
        ge=0,
        description="Default maximum time to wait for running jobs",
    )
    drain_poll_interval_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Interval between job activity polls",
    )
    liveness_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Maximum time to wait for the runner to become healthy",
    )
    liveness_poll_interval_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Interval between health polls",
    )
    stop_grace_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Grace period before a stop escalates to a forced kill",
    )
    session_stale_after_seconds: float = Field(
        default=86400.0,
        gt=0,
        description="Age after which an update session marker is considered stale",
    )
    snapshot_retention: int | None = Field(
        default=5,
        ge=1,
        description="Number of backup snapshots to keep (null keeps all)",
    )
    stateful_files: list[StatefulFileConfig] = Field(
        default_factory=_default_stateful_files,
        description="Files that must survive every update",
    )
    preserved_entries: list[str] = Field(
        default_factory=lambda: ["_work", "_diag"],
        description="Installation entries that are never moved or replaced",
    )
    required_entries: list[str] = Field(
        default_factory=lambda: ["config.sh", "run.sh"],
        description="Entries a runner package must contain",
    )

    @property
    def state_path(self) -> Path:
        """Get the state directory path."""
        return Path(self.state_dir)

    @property
    def version_file(self) -> Path:
        """Get the version.json path."""
        return self.state_path / "version.json"

    @property
    def version_backup_file(self) -> Path:
        """Get the version.json backup path."""
        return self.state_path / "version.json.backup"

    @property
    def session_file(self) -> Path:
        """Get the session marker path."""
        return self.state_path / "update_session.json"

    @property
    def snapshot_dir(self) -> Path:
        """Get the snapshot directory path."""
        return self.state_path / "snapshots"

    @property
    def staging_dir(self) -> Path:
        """Get the package staging directory path."""
        return self.state_path / "staging"

    @property
    def previous_dir(self) -> Path:
        """Get the directory holding the previous version's files."""
        return self.state_path / "previous"


# =============================================================================
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """
    Main application configuration model.

    Built from multiple layers following the precedence rules:
    1. Built-in defaults (defined in this model)
    2. YAML config file
    3. Environment variables (RUNNER_UPDATER_* prefix)
    4. Command-line arguments

    Attributes:
        logging: Logging configuration.
        runner: Managed runner configuration.
        source: Version source configuration.
        updates: Update orchestration configuration.
    """

    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging configuration",
    )
    runner: RunnerConfig = Field(
        default_factory=RunnerConfig,
        description="Managed runner configuration",
    )
    source: SourceConfig = Field(
        default_factory=SourceConfig,
        description="Version source configuration",
    )
    updates: UpdatesConfig = Field(
        default_factory=UpdatesConfig,
        description="Update orchestration configuration",
    )


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively overlay `override` onto a copy of `base`."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Read the YAML layer. An empty file yields {}.

    Raises:
        FileNotFoundError: If config_path is missing.
        yaml.YAMLError: If the file is not valid YAML.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def _parse_env_value(value: str) -> Any:
    """Coerce an environment string to bool, int, float, comma list or str."""
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

    if "," in value:
        return [_parse_env_value(item.strip()) for item in value.split(",")]

    return value


def _load_env_config(prefix: str = DEFAULT_ENV_PREFIX) -> dict[str, Any]:
    """
    Build the environment layer.

    RUNNER_UPDATER_UPDATES__DRAIN_TIMEOUT_SECONDS=600 becomes
    {"updates": {"drain_timeout_seconds": 600}}.
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


def _parse_cli_args(args: list[str] | None = None) -> dict[str, Any]:
    """
    Build the command-line layer.

    Unknown arguments are ignored so the caller can share argv. The config
    file path is returned under the "_config_path" key.
    """
    parser = argparse.ArgumentParser(
        description="Runner updater",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--config",
        "-c",
        type=str,
        help="YAML configuration file",
    )

    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        help="Log level override",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Debug logging",
    )
    parser.add_argument(
        "--install-dir",
        help="Runner installation root",
    )
    parser.add_argument(
        "--state-dir",
        help="Updater state directory",
    )

    parsed, _ = parser.parse_known_args(args)

    result: dict[str, Any] = {}

    if parsed.config:
        result["_config_path"] = parsed.config

    if parsed.log_level:
        result["logging"] = {"level": parsed.log_level}

    if parsed.debug:
        result.setdefault("logging", {})
        result["logging"]["debug_mode"] = True
        result["logging"]["level"] = "debug"

    if parsed.install_dir:
        result["runner"] = {"install_dir": parsed.install_dir}

    if parsed.state_dir:
        result["updates"] = {"state_dir": parsed.state_dir}

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
    cli_args: list[str] | None = None,
) -> AppConfig:
    """
    Build AppConfig from defaults, YAML, environment and command line, each
    layer overriding the previous one.

    Args:
        config_path: Path to YAML configuration file. If None, uses the
            --config argument or the default path when it exists.
        env_prefix: Environment variable prefix.
        cli_args: Arguments to parse; sys.argv when None.

    Raises:
        FileNotFoundError: If an explicit config file is missing.
        ValidationError: If the merged configuration is invalid.

    Example:
        >>> config = load_config(config_path="/etc/runner-updater/config.yml")
        >>> print(config.runner.install_dir)
        '/opt/actions-runner'
    """
    config_dict: dict[str, Any] = {}

    cli_config = _parse_cli_args(cli_args)

    if config_path is None:
        if "_config_path" in cli_config:
            config_path = Path(cli_config.pop("_config_path"))
        elif DEFAULT_CONFIG_PATH.exists():
            config_path = DEFAULT_CONFIG_PATH
    elif isinstance(config_path, str):
        config_path = Path(config_path)
    cli_config.pop("_config_path", None)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix))
    config_dict = _deep_merge(config_dict, cli_config)

    return AppConfig(**config_dict)
