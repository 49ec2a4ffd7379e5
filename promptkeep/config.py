"""promptkeep configuration management with environment variable overrides.

This module provides:
- ``PromptKeepConfig``: process configuration (paths, polling and image
  timing knobs) loaded from environment variables (PROMPTKEEP_*), an optional
  YAML file, and StoragePathResolver defaults
- ``SettingsStore``: the persisted key-value store holding user settings such
  as the archive root, the record toggle and the retention policy

Priority order for configuration values:
1. YAML config file (passed as init values)
2. Environment variables (PROMPTKEEP_*)
3. StoragePathResolver for paths
4. Pydantic defaults (lowest priority)
"""

from __future__ import annotations

import copy
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from promptkeep.storage.path_resolver import get_default_resolver

logger = logging.getLogger(__name__)

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS


class IngestionConfig(BaseModel):
    """Tail watcher and image pipeline timing.

    Attributes:
        poll_interval_seconds: How often the source log is checked for growth
        image_wait_attempts: Polls for an image-cache directory to appear
        image_wait_interval_seconds: Delay between those polls
        image_settle_seconds: Delay before listing a found image-cache directory
        timestamp_match_window_ms: Max mtime distance for unmarked image matching
    """

    poll_interval_seconds: float = Field(default=0.5, gt=0)
    image_wait_attempts: int = Field(default=30, ge=0)
    image_wait_interval_seconds: float = Field(default=0.1, ge=0)
    image_settle_seconds: float = Field(default=0.3, ge=0)
    timestamp_match_window_ms: int = Field(default=5000, ge=0)


class RetentionConfig(BaseModel):
    """Retention scheduler timing.

    Attributes:
        tick_interval_seconds: Countdown broadcast interval
    """

    tick_interval_seconds: float = Field(default=1.0, gt=0)


class RetentionPolicy(BaseModel):
    """Age-based retention policy persisted in the settings store.

    Attributes:
        enabled: Whether automatic cleanup runs
        interval_ms: Delay between cleanup passes
        retain_ms: Maximum record age kept by a pass
        last_cleanup_time: Epoch ms of the last completed pass
        next_cleanup_time: Epoch ms of the next scheduled pass
        show_floating_ball: UI hint kept for the settings collaborator
    """

    enabled: bool = False
    interval_ms: int = Field(default=DAY_MS, gt=0)
    retain_ms: int = Field(default=12 * HOUR_MS, ge=0)
    last_cleanup_time: int | None = None
    next_cleanup_time: int | None = None
    show_floating_ball: bool = True


class PromptKeepConfig(BaseSettings):
    """Main promptkeep configuration.

    Attributes:
        archive_root_path: Default archive root when the settings store has none
        content_cache_root: Source tool home (history log, paste-cache, image-cache, projects)
        source_log_path: Append-only log to tail
        settings_path: YAML file backing the SettingsStore
        record_enabled: Default for the record toggle
        ingestion: Tail watcher and image pipeline timing
        retention: Retention scheduler timing
        metrics_enabled: Expose Prometheus metrics from long-running commands
        prometheus_port: Port for the metrics endpoint
    """

    archive_root_path: Path | None = None
    content_cache_root: Path | None = None
    source_log_path: Path | None = None
    settings_path: Path | None = None
    record_enabled: bool = True

    ingestion: IngestionConfig = Field(default_factory=IngestionConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)

    # Monitoring
    metrics_enabled: bool = False
    prometheus_port: int = Field(default_factory=lambda: int(os.getenv("PROMPTKEEP_PROMETHEUS_PORT", "9464")))

    model_config = SettingsConfigDict(
        env_file=".env",
        env_nested_delimiter="__",
        env_prefix="promptkeep_",
    )

    @model_validator(mode="after")
    def resolve_paths(self) -> "PromptKeepConfig":
        """Resolve unset paths using StoragePathResolver."""
        resolver = get_default_resolver()
        if self.archive_root_path is None:
            self.archive_root_path = resolver.get_archive_path()
        if self.content_cache_root is None:
            self.content_cache_root = resolver.get_content_cache_root()
        if self.source_log_path is None:
            self.source_log_path = self.content_cache_root / "history.jsonl"
        if self.settings_path is None:
            self.settings_path = resolver.get_settings_path()
        return self


def load_config_from_file(config_path: str) -> dict[str, Any]:
    """Load configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Configuration dictionary
    """
    path = Path(config_path).expanduser()
    if not path.exists():
        logger.warning(f"Config file not found: {config_path}")
        return {}

    try:
        with open(path) as f:
            config = yaml.safe_load(f) or {}
        logger.info(f"Loaded configuration from {config_path}")
        return config
    except Exception as e:
        logger.error(f"Failed to load config from {config_path}: {e}")
        return {}


def get_config(config_path: str | None = None) -> PromptKeepConfig:
    """Get configuration instance.

    Args:
        config_path: Optional path to YAML config file

    Returns:
        PromptKeepConfig instance
    """
    if config_path:
        file_config = load_config_from_file(config_path)
        return PromptKeepConfig(**file_config)

    return PromptKeepConfig()


class SettingsStore:
    """Persisted key-value settings backed by a YAML file.

    Keys are addressed with dots (``auto_cleanup.next_cleanup_time``). Every
    ``set`` is written through synchronously and fsynced, so the next read
    (including one from a timer that fires right after) sees it.
    """

    RECORD_ENABLED_KEY = "record_enabled"
    ARCHIVE_ROOT_KEY = "archive_root_path"
    RETENTION_KEY = "auto_cleanup"

    def __init__(self, path: Path, defaults: dict[str, Any] | None = None) -> None:
        """Initialize settings store.

        Args:
            path: YAML file holding the settings
            defaults: Values returned for keys that were never set
        """
        self.path = Path(path)
        self.defaults = defaults or {}
        self._data: dict[str, Any] = self._load()

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to read settings from {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Ignoring malformed settings file {self.path}")
            return {}
        return data

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".settings_", suffix=".yaml", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                yaml.safe_dump(self._data, f, sort_keys=True, allow_unicode=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except Exception:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def get(self, key: str, default: Any = None) -> Any:
        """Get a value by dotted key."""
        node: Any = self._data
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                return copy.deepcopy(self.defaults.get(key, default))
            node = node[part]
        return copy.deepcopy(node)

    def set(self, key: str, value: Any) -> None:
        """Set a value by dotted key and persist it immediately."""
        parts = key.split(".")
        node = self._data
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value
        self._flush()

    def archive_root(self) -> Path | None:
        """Archive root chosen by the user, if any."""
        value = self.get(self.ARCHIVE_ROOT_KEY)
        return Path(value).expanduser() if value else None

    def record_config(self) -> tuple[bool, Path | None]:
        """Return the record toggle and archive root."""
        return bool(self.get(self.RECORD_ENABLED_KEY, False)), self.archive_root()

    def save_record_config(self, enabled: bool, archive_root: Path | str | None) -> None:
        """Persist the record toggle and archive root."""
        self.set(self.RECORD_ENABLED_KEY, bool(enabled))
        self.set(self.ARCHIVE_ROOT_KEY, str(archive_root) if archive_root else "")

    def retention_policy(self) -> RetentionPolicy:
        """Read the retention policy, falling back to defaults."""
        raw = self.get(self.RETENTION_KEY)
        if not isinstance(raw, dict):
            return RetentionPolicy()
        try:
            return RetentionPolicy(**raw)
        except ValueError as e:
            logger.warning(f"Invalid retention policy in settings, using defaults: {e}")
            return RetentionPolicy()

    def save_retention_policy(self, policy: RetentionPolicy) -> None:
        """Persist the whole retention policy."""
        self.set(self.RETENTION_KEY, policy.model_dump())

    def update_retention_policy(self, **changes: Any) -> RetentionPolicy:
        """Apply field changes to the retention policy and persist it.

        Returns:
            The validated, updated policy
        """
        policy = RetentionPolicy(**{**self.retention_policy().model_dump(), **changes})
        self.save_retention_policy(policy)
        return policy
