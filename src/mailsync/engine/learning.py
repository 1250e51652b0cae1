"""Learning scheduler: decides per user when an incremental learning pass runs.

Per user (grouping all of the user's eligible accounts):
1. days_since_last_learning from the latest completed LearningRun
   (a user who never learned counts as infinitely stale)
2. Skip if days_since_last_learning < min_days_between_runs
3. since = max(last completed run, now - max_window_days)
4. Count messages first seen since `since` across the user's accounts
5. Skip if fewer than min_new_messages
6. Count patterns, run the AI layer's incremental learning, count again:
   created = after - before, updated = patterns_found - created.
   Either going negative is a DataIntegrityAnomaly.
7. Record a completed LearningRun
8. If created > 0 or updated > updated_notify_threshold and the user has
   an organization, send the weekly update (once per LearningRun)

Skips are expected policy outcomes: they are logged and reported as
"skipped", and no LearningRun is written for them. Failures are recorded
as a failed LearningRun and never abort other users.

Usage:
    scheduler = LearningScheduler(store, ai_layer, sink, config.learning)
    report = await scheduler.run_weekly_learning()
"""

from __future__ import annotations

import asyncio
import math
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, Literal

from mailsync.core.errors import DatabaseError, DataIntegrityAnomaly
from mailsync.core.logging import get_logger, run_scope
from mailsync.engine.batch_processor import LEARNING_SIGNAL_PREFIX, learning_signal_key
from mailsync.interfaces import LearningWindow, WeeklyMetrics

if TYPE_CHECKING:
    from mailsync.config_schema import LearningConfig
    from mailsync.db.store import Account, DatabaseStore
    from mailsync.engine.milestones import MilestoneGate
    from mailsync.interfaces import AILayer, LearningResult, NotificationSink

logger = get_logger(__name__)

WEEKLY_UPDATE_RECORD = "weekly_update"

UserStatus = Literal["processed", "skipped", "failed"]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def week_number(days_since_last_learning: float) -> int:
    """Consecutive learning week: 1 for a first run, else floor(days / 7) + 1."""
    if math.isinf(days_since_last_learning):
        return 1
    return int(days_since_last_learning // 7) + 1


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------


@dataclass
class UserLearningResult:
    """Outcome of the learning decision for one user."""

    user_id: str
    status: UserStatus = "skipped"
    reason: str | None = None
    days_since_last_learning: float | None = None
    window_since: datetime | None = None
    new_messages: int = 0
    patterns_found: int = 0
    patterns_created: int = 0
    patterns_updated: int = 0
    quality_score: float | None = None
    learning_run_id: int | None = None
    notified: bool = False
    error: str | None = None
    error_type: str | None = None


@dataclass
class LearningReport:
    """Aggregate of one learning run."""

    run_id: str
    trigger: str = "weekly"
    duration_ms: int = 0
    considered: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    patterns_created: int = 0
    patterns_updated: int = 0
    users: list[UserLearningResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed == 0

    def add(self, result: UserLearningResult) -> None:
        self.users.append(result)
        self.considered += 1
        if result.status == "processed":
            self.processed += 1
            self.patterns_created += result.patterns_created
            self.patterns_updated += result.patterns_updated
        elif result.status == "skipped":
            self.skipped += 1
        else:
            self.failed += 1

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["success"] = self.success
        for user in data["users"]:
            days = user["days_since_last_learning"]
            if days is not None and math.isinf(days):
                user["days_since_last_learning"] = None
            if user["window_since"] is not None:
                user["window_since"] = user["window_since"].isoformat()
        return data


class LearningScheduler:
    """Runs incremental learning for users with enough new signal.

    Attributes:
        _store: DatabaseStore for runs, counts and notification records
        _ai_layer: AI layer providing run_incremental_learning
        _sink: Notification sink for weekly updates
        _config: Learning configuration section
        _milestones: Optional milestone gate run for every considered user
        _clock: Returns the current UTC time
    """

    def __init__(
        self,
        store: DatabaseStore,
        ai_layer: AILayer,
        sink: NotificationSink,
        config: LearningConfig,
        milestones: MilestoneGate | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self._ai_layer = ai_layer
        self._sink = sink
        self._config = config
        self._milestones = milestones
        self._clock = clock

    def update_config(self, config: LearningConfig) -> None:
        self._config = config

    async def run_weekly_learning(self) -> LearningReport:
        """Evaluate every user with eligible accounts."""
        return await self._run(trigger="weekly", only_users=None)

    async def run_signalled_learning(self) -> LearningReport:
        """Evaluate only users the batch processor left a learning signal for.

        The same skip rules apply; a signal is cleared once its user is
        processed.
        """
        try:
            signals = await self._store.list_state(LEARNING_SIGNAL_PREFIX)
        except DatabaseError as e:
            logger.error("learning_signals_lookup_failed", error=str(e))
            with run_scope() as run_id:
                return LearningReport(run_id=run_id, trigger="signalled", failed=1)

        users = {key.removeprefix(LEARNING_SIGNAL_PREFIX) for key in signals}
        return await self._run(trigger="signalled", only_users=users)

    async def _run(self, trigger: str, only_users: set[str] | None) -> LearningReport:
        with run_scope() as run_id:
            start_time = time.monotonic()
            report = LearningReport(run_id=run_id, trigger=trigger)
            logger.info("learning_run_start", trigger=trigger)

            try:
                grouped = await self._eligible_users()
                if only_users is not None:
                    grouped = {u: a for u, a in grouped.items() if u in only_users}

                semaphore = asyncio.Semaphore(self._config.max_concurrent_users)

                async def bounded(user_id: str, accounts: list[Account]) -> UserLearningResult:
                    async with semaphore:
                        return await self._learn_isolated(user_id, accounts)

                results = await asyncio.gather(*(bounded(u, a) for u, a in grouped.items()))
                for result in results:
                    report.add(result)

                await self._store.set_state(
                    f"last_{trigger}_learning_run", self._clock().isoformat()
                )

                if self._milestones is not None and grouped:
                    await self._milestones.check_users(grouped)
            except DatabaseError as e:
                logger.error("learning_run_error", error=str(e), error_type=type(e).__name__)
                report.failed += 1
            finally:
                report.duration_ms = int((time.monotonic() - start_time) * 1000)
                logger.info(
                    "learning_run_complete",
                    trigger=trigger,
                    duration_ms=report.duration_ms,
                    considered=report.considered,
                    processed=report.processed,
                    skipped=report.skipped,
                    failed=report.failed,
                    patterns_created=report.patterns_created,
                    patterns_updated=report.patterns_updated,
                )

        return report

    async def _eligible_users(self) -> dict[str, list[Account]]:
        accounts = await self._store.list_active_accounts(
            real_time_only=self._config.require_real_time_sync
        )
        grouped: dict[str, list[Account]] = {}
        for account in accounts:
            grouped.setdefault(account.user_id, []).append(account)
        return grouped

    async def _learn_isolated(self, user_id: str, accounts: list[Account]) -> UserLearningResult:
        """Run the per-user pipeline; any error becomes a failed result."""
        result = UserLearningResult(user_id=user_id)
        started_at = self._clock()
        try:
            await self._learn_for_user(user_id, accounts, result, started_at)
        except Exception as e:
            if not isinstance(e, DataIntegrityAnomaly | DatabaseError | TimeoutError):
                logger.exception("user_learning_unexpected_error", user_id=user_id)
            result.status = "failed"
            result.error = str(e) or type(e).__name__
            result.error_type = type(e).__name__
            logger.error(
                "user_learning_failed",
                user_id=user_id,
                error=result.error,
                error_type=result.error_type,
            )
            if result.window_since is not None:
                await self._record_failed_run(result, started_at)
        return result

    async def _learn_for_user(
        self,
        user_id: str,
        accounts: list[Account],
        result: UserLearningResult,
        started_at: datetime,
    ) -> None:
        now = started_at

        last_run = await self._store.get_last_completed_learning_run(user_id)
        last_at = last_run.completed_at if last_run else None
        if last_at is None:
            days = math.inf
        else:
            days = (now - last_at).total_seconds() / 86400
        result.days_since_last_learning = days

        if days < self._config.min_days_between_runs:
            result.reason = "recent_learning"
            logger.info(
                "user_learning_skipped",
                user_id=user_id,
                reason=result.reason,
                days_since_last_learning=round(days, 2),
            )
            return

        since = now - timedelta(days=self._config.max_window_days)
        if last_at is not None and last_at > since:
            since = last_at

        account_ids = [a.id for a in accounts]
        result.new_messages = await self._store.count_messages_since(account_ids, since)

        if result.new_messages < self._config.min_new_messages:
            result.reason = "insufficient_messages"
            logger.info(
                "user_learning_skipped",
                user_id=user_id,
                reason=result.reason,
                new_messages=result.new_messages,
            )
            return

        # From here on a failure is recorded as a failed LearningRun
        result.window_since = since

        before = await self._store.count_patterns(user_id)
        learned: LearningResult = await asyncio.wait_for(
            self._ai_layer.run_incremental_learning(
                user_id, LearningWindow(since=since, until=now), account_ids[0]
            ),
            timeout=self._config.timeout_seconds,
        )
        after = await self._store.count_patterns(user_id)

        created = after - before
        updated = learned.patterns_found - created
        if created < 0 or updated < 0:
            raise DataIntegrityAnomaly(
                f"Learning for user {user_id} produced an inconsistent pattern delta "
                f"(before={before}, after={after}, patterns_found={learned.patterns_found})"
            )

        result.status = "processed"
        result.patterns_found = learned.patterns_found
        result.patterns_created = created
        result.patterns_updated = updated
        result.quality_score = learned.quality_score

        result.learning_run_id = await self._store.record_learning_run(
            user_id,
            status="completed",
            started_at=started_at,
            completed_at=self._clock(),
            window_since=since,
            new_messages=result.new_messages,
            patterns_found=learned.patterns_found,
            patterns_created=created,
            patterns_updated=updated,
            quality_score=learned.quality_score,
        )

        logger.info(
            "user_learning_processed",
            user_id=user_id,
            new_messages=result.new_messages,
            patterns_created=created,
            patterns_updated=updated,
            quality_score=learned.quality_score,
        )

        try:
            if created > 0 or updated > self._config.updated_notify_threshold:
                result.notified = await self._notify_weekly(user_id, result, days)
            await self._store.delete_state(learning_signal_key(user_id))
        except DatabaseError as e:
            # The run itself is already recorded as completed
            logger.warning("user_learning_followup_failed", user_id=user_id, error=str(e))

    async def _notify_weekly(
        self, user_id: str, result: UserLearningResult, days: float
    ) -> bool:
        organization_id = await self._store.get_user_organization(user_id)
        if not organization_id:
            logger.debug("weekly_update_skipped", user_id=user_id, reason="no_organization")
            return False

        run_key = str(result.learning_run_id)
        claimed = await self._store.claim_notification_record(
            user_id, WEEKLY_UPDATE_RECORD, run_key
        )
        if not claimed:
            logger.info("weekly_update_already_sent", user_id=user_id, learning_run_id=run_key)
            return False

        metrics = WeeklyMetrics(
            new_messages=result.new_messages,
            patterns_created=result.patterns_created,
            patterns_updated=result.patterns_updated,
            patterns_found=result.patterns_found,
            quality_score=result.quality_score,
            week_number=week_number(days),
        )
        try:
            await self._sink.send_weekly_update(user_id, organization_id, metrics)
        except Exception as e:
            logger.warning(
                "weekly_update_delivery_failed",
                user_id=user_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False
        return True

    async def _record_failed_run(self, result: UserLearningResult, started_at: datetime) -> None:
        try:
            await self._store.record_learning_run(
                result.user_id,
                status="failed",
                started_at=started_at,
                completed_at=self._clock(),
                window_since=result.window_since,
                new_messages=result.new_messages,
                error=result.error,
            )
        except DatabaseError as e:
            logger.error("learning_failure_record_failed", user_id=result.user_id, error=str(e))
