"""Pydantic configuration schema for the mail sync engine.

This module defines the configuration schema that mirrors config.yaml.
All configuration is validated against these models on startup and
hot-reload.

Usage:
    from mailsync.config_schema import AppConfig

    config = AppConfig(**yaml_data)
"""

from typing import Literal

from pydantic import BaseModel, Field, field_validator

# Current schema version - increment when adding new required fields
CURRENT_SCHEMA_VERSION = 1

ProviderName = Literal["google", "microsoft", "imap"]

Weekday = Literal["mon", "tue", "wed", "thu", "fri", "sat", "sun"]


def _validate_import_path(v: str) -> str:
    """Check a 'package.module:attribute' plugin reference."""
    import regex  # Use regex library with timeout, not re

    if not regex.match(r"^[A-Za-z_][\w.]*:[A-Za-z_]\w*$", v, timeout=1):
        raise ValueError(f"Plugin reference '{v}' must look like 'package.module:attribute'")
    return v


class StorageConfig(BaseModel):
    """SQLite storage configuration."""

    db_path: str = Field(
        default="data/mailsync.db",
        description="Path to the SQLite database file",
    )

    @field_validator("db_path")
    @classmethod
    def validate_db_path(cls, v: str) -> str:
        """Ensure the database path doesn't contain path traversal."""
        if not v or not v.strip():
            raise ValueError("Database path cannot be empty")
        if ".." in v:
            raise ValueError("Database path cannot contain '..' (path traversal)")
        return v


class SyncConfig(BaseModel):
    """Sync orchestrator and cursor configuration."""

    interval_minutes: int = Field(
        default=5,
        ge=1,
        le=1440,
        description="How often the scheduled sync of all active accounts runs (minutes)",
    )
    max_lookback_days: int = Field(
        default=7,
        ge=1,
        le=90,
        description=(
            "Cursors older than this fall back to a full window, and a full "
            "window never reaches further back than this (days)"
        ),
    )
    max_messages_per_run: int = Field(
        default=200,
        ge=1,
        le=10000,
        description="Stop paging an account once this many new messages were collected",
    )
    page_size: int = Field(
        default=50,
        ge=1,
        le=500,
        description="Messages requested per provider page",
    )
    fetch_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        le=600,
        description="Timeout for a single provider page fetch",
    )
    max_concurrent_accounts: int = Field(
        default=4,
        ge=1,
        le=64,
        description="Accounts synced in parallel",
    )
    provider_rate_per_second: float = Field(
        default=5.0,
        gt=0,
        description="Provider page requests allowed per second, per provider kind",
    )
    lock_lease_minutes: int = Field(
        default=30,
        ge=1,
        description="A sync lock older than this is considered abandoned",
    )
    skip_after_consecutive_failures: int | None = Field(
        default=None,
        ge=1,
        description="Skip accounts in scheduled runs after N consecutive failures (None = never)",
    )


class DedupConfig(BaseModel):
    """Duplicate reconciliation configuration."""

    reconcile_interval_hours: int = Field(
        default=24,
        ge=1,
        le=24 * 30,
        description="How often the full duplicate reconciliation pass runs (hours)",
    )


class BatchConfig(BaseModel):
    """Background AI batch processor configuration."""

    max_concurrency: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Messages sent to the AI layer concurrently",
    )
    item_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Timeout for one classify-and-draft call",
    )
    min_batch_for_learning_signal: int = Field(
        default=5,
        ge=1,
        description="Batches at least this large signal the learning scheduler",
    )
    queue_max_size: int = Field(
        default=100,
        ge=1,
        description="Pending batches held in the AI handoff queue",
    )
    overflow_policy: Literal["drop_newest", "drop_oldest"] = Field(
        default="drop_newest",
        description="Which batch is discarded when the handoff queue is full",
    )


class LearningConfig(BaseModel):
    """Learning scheduler configuration."""

    day_of_week: Weekday = Field(default="sun", description="Day the weekly learning job runs")
    time: str = Field(default="02:00", description="Local time the weekly job runs (HH:MM)")
    min_days_between_runs: int = Field(
        default=5,
        ge=0,
        description="Skip users whose last completed learning run is more recent than this",
    )
    max_window_days: int = Field(
        default=7,
        ge=1,
        description="Never look further back than this when counting new messages",
    )
    min_new_messages: int = Field(
        default=10,
        ge=1,
        description="Skip users with fewer new messages than this",
    )
    updated_notify_threshold: int = Field(
        default=5,
        ge=0,
        description="Weekly update is sent when more patterns than this were updated",
    )
    max_concurrent_users: int = Field(
        default=2,
        ge=1,
        le=32,
        description="Users learned in parallel",
    )
    timeout_seconds: float = Field(
        default=600.0,
        gt=0,
        description="Timeout for one incremental learning call",
    )
    require_real_time_sync: bool = Field(
        default=True,
        description="Only consider accounts with real-time sync enabled",
    )
    signal_check_interval_hours: int = Field(
        default=6,
        ge=1,
        description="How often users with a pending learning signal are checked",
    )

    @field_validator("time")
    @classmethod
    def validate_time_format(cls, v: str) -> str:
        """Validate the schedule time is in HH:MM format."""
        import regex  # Use regex library with timeout, not re

        if not regex.match(r"^\d{2}:\d{2}$", v, timeout=1):
            raise ValueError("Time must be in HH:MM format (e.g., '02:00')")
        hours, minutes = map(int, v.split(":"))
        if hours > 23:
            raise ValueError("Hours must be 00-23")
        if minutes > 59:
            raise ValueError("Minutes must be 00-59")
        return v


class MilestoneConfig(BaseModel):
    """Volume milestone notifications."""

    thresholds: list[int] = Field(
        default=[100, 1000, 5000, 10000],
        description="Email counts that trigger a one-time milestone notification",
    )
    one_per_run: bool = Field(
        default=True,
        description="Announce at most one newly reached milestone per user per run",
    )

    @field_validator("thresholds")
    @classmethod
    def validate_ascending(cls, v: list[int]) -> list[int]:
        """Thresholds must be positive and strictly ascending."""
        if not v:
            raise ValueError("At least one milestone threshold is required")
        if any(t <= 0 for t in v):
            raise ValueError("Milestone thresholds must be positive")
        if any(b <= a for a, b in zip(v, v[1:], strict=False)):
            raise ValueError("Milestone thresholds must be strictly ascending")
        return v


class PluginsConfig(BaseModel):
    """External collaborators loaded by import path."""

    providers: dict[ProviderName, str] = Field(
        default_factory=dict,
        description="Adapter factory per provider kind ('package.module:attribute')",
    )
    ai_layer: str | None = Field(
        default=None,
        description="AI layer factory ('package.module:attribute')",
    )
    notification_sink: str | None = Field(
        default=None,
        description="Notification sink factory; defaults to the store-backed sink",
    )

    @field_validator("providers")
    @classmethod
    def validate_providers(cls, v: dict[str, str]) -> dict[str, str]:
        """Validate each adapter reference."""
        for path in v.values():
            _validate_import_path(path)
        return v

    @field_validator("ai_layer", "notification_sink")
    @classmethod
    def validate_optional_path(cls, v: str | None) -> str | None:
        """Validate optional plugin references."""
        if v is None:
            return v
        return _validate_import_path(v)


class AppConfig(BaseModel):
    """Root configuration schema for the mail sync engine.

    If validation fails on startup, the application exits with a clear error.
    If validation fails on hot-reload, the previous valid config is kept.
    """

    schema_version: int = Field(
        default=CURRENT_SCHEMA_VERSION,
        ge=1,
        description="Config schema version for migration tracking",
    )
    timezone: str = Field(
        default="UTC",
        description="Timezone for the weekly learning schedule",
    )

    storage: StorageConfig = Field(default_factory=StorageConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    dedup: DedupConfig = Field(default_factory=DedupConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    learning: LearningConfig = Field(default_factory=LearningConfig)
    milestones: MilestoneConfig = Field(default_factory=MilestoneConfig)
    plugins: PluginsConfig = Field(default_factory=PluginsConfig)
