"""Volume milestone announcements.

For each user, the total number of indexed messages across their active
accounts is compared against the ascending threshold list. Every reached
threshold is claimed with an insert-if-absent on notification_records,
so a milestone is announced at most once even when two runs overlap. By
default a run announces only the first newly claimed milestone; the rest
follow on later runs.

Users without an organization are skipped and nothing is recorded for
them, so their milestones are still announced once they join one.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from mailsync.core.errors import DatabaseError
from mailsync.core.logging import get_logger
from mailsync.interfaces import MilestoneEvent

if TYPE_CHECKING:
    from mailsync.config_schema import MilestoneConfig
    from mailsync.db.store import DatabaseStore
    from mailsync.interfaces import NotificationSink

logger = get_logger(__name__)

EMAILS_PROCESSED = "emails_processed"


@dataclass
class MilestoneResult:
    """Milestones handled for one user in one check."""

    user_id: str
    total_messages: int = 0
    announced: list[int] = field(default_factory=list)
    skipped_reason: str | None = None
    error: str | None = None


class MilestoneGate:
    """Announces volume milestones exactly once per user."""

    def __init__(self, store: DatabaseStore, sink: NotificationSink, config: MilestoneConfig):
        self._store = store
        self._sink = sink
        self._config = config

    def update_config(self, config: MilestoneConfig) -> None:
        self._config = config

    async def check_milestones(
        self, user_id: str, account_ids: Sequence[str]
    ) -> MilestoneResult:
        """Announce newly reached milestones for one user.

        Raises:
            DatabaseError: If counting or claiming fails
        """
        result = MilestoneResult(user_id=user_id)

        organization_id = await self._store.get_user_organization(user_id)
        if not organization_id:
            result.skipped_reason = "no_organization"
            logger.debug("milestone_check_skipped", user_id=user_id, reason="no_organization")
            return result

        result.total_messages = await self._store.count_messages(account_ids)

        for threshold in self._config.thresholds:
            if result.total_messages < threshold:
                break

            claimed = await self._store.claim_notification_record(
                user_id, EMAILS_PROCESSED, str(threshold)
            )
            if not claimed:
                continue

            await self._send(user_id, organization_id, threshold)
            result.announced.append(threshold)
            if self._config.one_per_run:
                break

        return result

    async def check_users(self, user_ids: Iterable[str]) -> list[MilestoneResult]:
        """Check milestones for several users with per-user isolation."""
        wanted = set(user_ids)
        if not wanted:
            return []

        try:
            accounts = await self._store.list_active_accounts()
        except DatabaseError as e:
            logger.error("milestone_accounts_lookup_failed", error=str(e))
            return [MilestoneResult(user_id=u, error=str(e)) for u in sorted(wanted)]

        by_user: dict[str, list[str]] = {}
        for account in accounts:
            if account.user_id in wanted:
                by_user.setdefault(account.user_id, []).append(account.id)

        results = []
        for user_id, account_ids in sorted(by_user.items()):
            try:
                results.append(await self.check_milestones(user_id, account_ids))
            except DatabaseError as e:
                logger.error("milestone_check_failed", user_id=user_id, error=str(e))
                results.append(MilestoneResult(user_id=user_id, error=str(e)))
        return results

    async def _send(self, user_id: str, organization_id: str, threshold: int) -> None:
        """Deliver a claimed milestone. Delivery failures are logged, not retried."""
        try:
            await self._sink.send_milestone(
                user_id, organization_id, MilestoneEvent(type=EMAILS_PROCESSED, value=threshold)
            )
        except Exception as e:
            logger.warning(
                "milestone_delivery_failed",
                user_id=user_id,
                threshold=threshold,
                error=str(e),
                error_type=type(e).__name__,
            )
            return

        logger.info("milestone_announced", user_id=user_id, threshold=threshold)
