"""Per-account sync cursor tracking.

Decides whether the next fetch for an account is a delta (since the
cursor) or a bounded full window, and moves the cursor after a run.

Rules:
- Delta: a cursor exists and is younger than max_lookback_days.
  since = cursor.
- Full: no cursor, a stale cursor, or a forced resync.
  since = now - max_lookback_days, regardless of how old the account is.
- On success the cursor becomes the time the sync started, so mail that
  arrives while the run is in flight is picked up next time.
- On failure the cursor is untouched; only error fields move.

Usage:
    tracker = SyncStateTracker(store, config.sync)
    window = tracker.next_window(account, now)
    ...
    await tracker.advance(account.id, SyncOutcome.succeeded(started_at, now))
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from mailsync.core.logging import get_logger
from mailsync.providers.base import FetchMode, FetchWindow

if TYPE_CHECKING:
    from mailsync.config_schema import SyncConfig
    from mailsync.db.store import Account, DatabaseStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class SyncOutcome:
    """Result of one account sync, as far as the cursor is concerned."""

    attempted_at: datetime
    started_at: datetime | None = None
    error: str | None = None
    requires_reauth: bool = False
    # False when the run stopped at the message cap with mail left over
    complete: bool = True

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def succeeded(
        cls, started_at: datetime, attempted_at: datetime, complete: bool = True
    ) -> SyncOutcome:
        return cls(attempted_at=attempted_at, started_at=started_at, complete=complete)

    @classmethod
    def failed(
        cls, error: str, attempted_at: datetime, requires_reauth: bool = False
    ) -> SyncOutcome:
        return cls(attempted_at=attempted_at, error=error, requires_reauth=requires_reauth)


class SyncStateTracker:
    """Owns cursor reads and writes for the orchestrator."""

    def __init__(self, store: DatabaseStore, config: SyncConfig):
        self._store = store
        self._config = config

    def update_config(self, config: SyncConfig) -> None:
        self._config = config

    @property
    def max_lookback(self) -> timedelta:
        return timedelta(days=self._config.max_lookback_days)

    def next_window(
        self, account: Account, now: datetime, force_full: bool = False
    ) -> FetchWindow:
        """Compute the fetch window for the account's next sync."""
        last_sync_at = account.cursor.last_sync_at
        floor = now - self.max_lookback

        if force_full or last_sync_at is None or last_sync_at <= floor:
            mode, since = FetchMode.FULL, floor
        else:
            mode, since = FetchMode.DELTA, last_sync_at

        return FetchWindow(
            mode=mode,
            since=since,
            page_size=self._config.page_size,
            max_messages=self._config.max_messages_per_run,
        )

    def skip_reason(self, account: Account) -> str | None:
        """Why a scheduled run should leave this account alone, if at all.

        Manual syncs ignore this so an operator can retry after re-auth.
        """
        if account.cursor.requires_reauth:
            return "requires_reauth"

        limit = self._config.skip_after_consecutive_failures
        if limit is not None and account.cursor.consecutive_failures >= limit:
            return "too_many_consecutive_failures"
        return None

    async def advance(self, account_id: str, outcome: SyncOutcome) -> None:
        """Persist the outcome of a sync run."""
        if outcome.ok:
            if outcome.started_at is None:
                raise ValueError("A successful outcome needs the run start time")
            await self._store.record_sync_success(
                account_id,
                cursor_at=outcome.started_at if outcome.complete else None,
                attempted_at=outcome.attempted_at,
            )
            if not outcome.complete:
                logger.info("sync_cursor_held_after_cap", account_id=account_id)
            return

        failures = await self._store.record_sync_failure(
            account_id,
            error=outcome.error or "unknown error",
            attempted_at=outcome.attempted_at,
            requires_reauth=outcome.requires_reauth,
        )
        logger.info(
            "sync_cursor_unchanged_after_failure",
            account_id=account_id,
            consecutive_failures=failures,
            requires_reauth=outcome.requires_reauth,
        )

    async def reset(self, account_id: str) -> None:
        """Drop the cursor so the next window is a bounded full one."""
        await self._store.reset_sync_cursor(account_id)
        logger.info("sync_cursor_reset", account_id=account_id)
