"""Configuration loading with hot-reload support.

Loads config.yaml, validates it against the Pydantic schema, and lets a
long-running server pick up edits without a restart. The watcher is an
explicit object owned by whoever runs the process (the web lifespan or the
CLI); there is no module-level config singleton.

Usage:
    from mailsync.config import ConfigWatcher, load_config

    watcher = ConfigWatcher.from_env()
    config = watcher.config

    # Once per scheduled job
    if watcher.reload_if_changed():
        config = watcher.config
"""

from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from mailsync.config_schema import CURRENT_SCHEMA_VERSION, AppConfig
from mailsync.core.errors import ConfigLoadError, ConfigValidationError
from mailsync.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = Path("config/config.yaml")
CONFIG_PATH_ENV = "MAILSYNC_CONFIG_PATH"


def get_config_path() -> Path:
    """Get the config file path from environment or default."""
    env_path = os.environ.get(CONFIG_PATH_ENV)
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def _format_validation_errors(error: ValidationError) -> str:
    """Format Pydantic validation errors into actionable messages."""
    messages = []
    for err in error.errors():
        field_path = ".".join(str(loc) for loc in err["loc"])
        if err["type"] == "missing":
            messages.append(f"  - Missing required field '{field_path}'")
        else:
            messages.append(f"  - Field '{field_path}': {err['msg']}")
    return "\n".join(messages)


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load and parse a YAML mapping.

    Raises:
        ConfigLoadError: If the file is missing, unparsable, or not a mapping
    """
    if not path.exists():
        raise ConfigLoadError(
            f"Configuration file not found: {path}\n"
            f"Create it by copying config/config.yaml.example to {path}"
        )

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigLoadError(f"Failed to parse YAML in {path}:\n{e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigLoadError(
            f"Configuration file must be a YAML mapping, got {type(data).__name__}"
        )
    return data


def parse_config(data: dict[str, Any], source: str = "<memory>") -> AppConfig:
    """Validate raw config data against the schema.

    Raises:
        ConfigValidationError: If validation fails or the schema is too new
    """
    try:
        config = AppConfig(**data)
    except ValidationError as e:
        raise ConfigValidationError(
            f"Configuration validation failed for {source}:\n{_format_validation_errors(e)}"
        ) from e

    if config.schema_version > CURRENT_SCHEMA_VERSION:
        raise ConfigValidationError(
            f"Config schema version {config.schema_version} is newer than "
            f"supported version {CURRENT_SCHEMA_VERSION}. "
            "Please upgrade mailsync or downgrade the config."
        )
    return config


def load_config(path: Path | None = None) -> AppConfig:
    """Load and validate configuration from a YAML file.

    Args:
        path: Config file; defaults to MAILSYNC_CONFIG_PATH or config/config.yaml

    Raises:
        ConfigLoadError: If the file cannot be loaded
        ConfigValidationError: If validation fails
    """
    config_path = path or get_config_path()
    logger.debug("config_loading", path=str(config_path))

    config = parse_config(_load_yaml(config_path), str(config_path))

    logger.info(
        "config_loaded",
        path=str(config_path),
        schema_version=config.schema_version,
        providers=sorted(config.plugins.providers),
        ai_layer_configured=config.plugins.ai_layer is not None,
    )
    return config


def validate_config_file(path: Path | None = None) -> tuple[bool, str]:
    """Validate a config file for the CLI.

    Returns:
        Tuple of (is_valid, message)
    """
    config_path = path or get_config_path()

    try:
        config = load_config(config_path)
    except ConfigLoadError as e:
        return (False, f"Load error: {e}")
    except ConfigValidationError as e:
        return (False, f"Validation error: {e}")

    providers = ", ".join(sorted(config.plugins.providers)) or "none"
    return (
        True,
        f"Configuration valid (schema version {config.schema_version})\n"
        f"  - database: {config.storage.db_path}\n"
        f"  - providers: {providers}\n"
        f"  - sync every {config.sync.interval_minutes} min, "
        f"lookback {config.sync.max_lookback_days} days\n"
        f"  - learning {config.learning.day_of_week} {config.learning.time}\n"
        f"  - milestones: {config.milestones.thresholds}",
    )


class ConfigWatcher:
    """Holds the current config and reloads it when the file changes.

    Thread-safe: the APScheduler thread and the event loop both read it.
    An invalid edit keeps the previous config and logs a warning.
    """

    def __init__(self, path: Path):
        self._path = path
        self._lock = threading.Lock()
        self._config = load_config(path)
        self._mtime = path.stat().st_mtime

    @classmethod
    def from_env(cls) -> ConfigWatcher:
        """Create a watcher for the configured path."""
        return cls(get_config_path())

    @property
    def path(self) -> Path:
        return self._path

    @property
    def config(self) -> AppConfig:
        with self._lock:
            return self._config

    def reload_if_changed(self) -> bool:
        """Reload the config if the file's mtime moved.

        Returns:
            True if a new config was loaded, False if unchanged or invalid
        """
        with self._lock:
            try:
                current_mtime = self._path.stat().st_mtime
            except OSError as e:
                logger.warning("config_mtime_check_failed", path=str(self._path), error=str(e))
                return False

            if current_mtime <= self._mtime:
                return False

            # Don't retry the same broken file on every check
            self._mtime = current_mtime
            try:
                self._config = load_config(self._path)
            except (ConfigLoadError, ConfigValidationError) as e:
                logger.warning(
                    "config_reload_failed_keeping_previous",
                    path=str(self._path),
                    error=str(e),
                )
                return False

            logger.info("config_reloaded", path=str(self._path))
            return True
