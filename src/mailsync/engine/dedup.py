"""Message deduplication keyed on the provider message ID.

Two entry points:

- reconcile(): per-sync filter. Drops incoming messages whose message_id is
  already indexed for the account (or repeated earlier in the same batch).
- reconcile_account() / reconcile_all(): periodic cleanup. Groups stored
  rows by message_id and deletes every row but the first-seen one,
  removing their cached content first.

Messages without a message_id are never treated as duplicates of each
other: an unknown identity is kept rather than risk merging two different
emails.

Usage:
    engine = DedupEngine(store)
    result = await engine.reconcile("acc-1", fetched_messages)
    await store.insert_messages("acc-1", result.new, created_at=now)
"""

from __future__ import annotations

import time
from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from mailsync.core.errors import DatabaseError, DataIntegrityAnomaly
from mailsync.core.logging import get_logger, run_scope

if TYPE_CHECKING:
    from mailsync.db.store import DatabaseStore, IndexedMessage
    from mailsync.providers.base import ProviderMessage

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------


@dataclass
class DedupResult:
    """Incoming messages split into new and redundant."""

    new: list[ProviderMessage] = field(default_factory=list)
    duplicates: list[ProviderMessage] = field(default_factory=list)


@dataclass
class AccountReconcileResult:
    """Outcome of the cleanup pass for one account."""

    account_id: str
    rows_scanned: int = 0
    duplicate_groups: int = 0
    messages_deleted: int = 0
    content_deleted: int = 0
    error: str | None = None
    error_type: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class ReconcileReport:
    """Aggregate of a cleanup pass over one or more accounts."""

    run_id: str
    duration_ms: int = 0
    accounts_processed: int = 0
    accounts_failed: int = 0
    duplicate_groups: int = 0
    messages_deleted: int = 0
    content_deleted: int = 0
    accounts: list[AccountReconcileResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.accounts_failed == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "run_id": self.run_id,
            "duration_ms": self.duration_ms,
            "accounts_processed": self.accounts_processed,
            "accounts_failed": self.accounts_failed,
            "duplicate_groups": self.duplicate_groups,
            "messages_deleted": self.messages_deleted,
            "content_deleted": self.content_deleted,
            "accounts": [
                {
                    "account_id": r.account_id,
                    "rows_scanned": r.rows_scanned,
                    "duplicate_groups": r.duplicate_groups,
                    "messages_deleted": r.messages_deleted,
                    "error": r.error,
                }
                for r in self.accounts
            ],
        }


# ---------------------------------------------------------------------------
# Survivor selection
# ---------------------------------------------------------------------------


def select_duplicates(rows: Sequence[IndexedMessage]) -> tuple[int, list[int]]:
    """Pick the rows to delete so each message_id keeps one survivor.

    The survivor of a group is the row first seen by this system (earliest
    created_at), not the earliest received_at, which is provider-supplied
    and can shift between re-fetches. Equal created_at falls back to the
    lowest row id.

    Args:
        rows: Indexed messages of a single account

    Returns:
        Tuple of (number of duplicate groups, row ids to delete)

    Raises:
        DataIntegrityAnomaly: If a duplicate group has a row without created_at
    """
    groups: dict[str, list[IndexedMessage]] = defaultdict(list)
    for row in rows:
        if row.message_id is None:
            continue
        groups[row.message_id].append(row)

    duplicate_groups = 0
    to_delete: list[int] = []
    for message_id, group in groups.items():
        if len(group) < 2:
            continue
        if any(row.created_at is None for row in group):
            raise DataIntegrityAnomaly(
                f"Duplicate group {message_id!r} has rows without a first-seen "
                "timestamp; cannot choose a survivor"
            )
        duplicate_groups += 1
        survivor = min(group, key=lambda r: (r.created_at, r.id))
        to_delete.extend(row.id for row in group if row.id != survivor.id)

    return duplicate_groups, sorted(to_delete)


class DedupEngine:
    """Filters incoming batches and reconciles stored duplicates."""

    def __init__(self, store: DatabaseStore):
        self._store = store

    async def reconcile(
        self,
        account_id: str,
        incoming: Sequence[ProviderMessage],
        seen: set[str] | None = None,
    ) -> DedupResult:
        """Split a freshly fetched batch into new and duplicate messages.

        A message is new if its message_id isn't indexed for the account yet
        and didn't already appear earlier in this batch. Pass the same `seen`
        set for successive pages of one run to treat them as a single batch;
        it is updated with the ids accepted as new.
        """
        keyed_ids = [m.message_id for m in incoming if m.message_id is not None]
        existing = await self._store.find_existing_message_ids(account_id, keyed_ids)

        result = DedupResult()
        seen_in_batch: set[str] = seen if seen is not None else set()
        for message in incoming:
            key = message.message_id
            if key is None:
                result.new.append(message)
            elif key in existing or key in seen_in_batch:
                result.duplicates.append(message)
            else:
                seen_in_batch.add(key)
                result.new.append(message)

        if result.duplicates:
            logger.debug(
                "dedup_discarded_duplicates",
                account_id=account_id,
                incoming=len(incoming),
                duplicates=len(result.duplicates),
            )
        return result

    async def reconcile_account(self, account_id: str) -> AccountReconcileResult:
        """Delete stored duplicates for one account.

        Running it again on the same data deletes nothing more.

        Raises:
            DataIntegrityAnomaly: If a group has no orderable survivor
            DatabaseError: If reading or deleting fails
        """
        result = AccountReconcileResult(account_id=account_id)
        rows = await self._store.list_messages(account_id)
        result.rows_scanned = len(rows)

        result.duplicate_groups, to_delete = select_duplicates(rows)
        if to_delete:
            deletion = await self._store.delete_messages(to_delete)
            result.messages_deleted = deletion.messages_deleted
            result.content_deleted = deletion.content_deleted
            logger.info(
                "duplicates_purged",
                account_id=account_id,
                duplicate_groups=result.duplicate_groups,
                messages_deleted=result.messages_deleted,
                content_deleted=result.content_deleted,
            )
        return result

    async def reconcile_all(self, account_ids: Sequence[str] | None = None) -> ReconcileReport:
        """Run the cleanup pass for the given accounts, or every active one.

        A failing account is recorded in the report and the pass continues.
        """
        with run_scope() as run_id:
            start_time = time.monotonic()
            report = ReconcileReport(run_id=run_id)
            logger.info("reconcile_run_start")

            try:
                if account_ids is None:
                    accounts = await self._store.list_active_accounts()
                    account_ids = [a.id for a in accounts]

                for account_id in account_ids:
                    try:
                        result = await self.reconcile_account(account_id)
                    except (DataIntegrityAnomaly, DatabaseError) as e:
                        logger.error(
                            "reconcile_account_failed",
                            account_id=account_id,
                            error=str(e),
                            error_type=type(e).__name__,
                        )
                        result = AccountReconcileResult(
                            account_id=account_id,
                            error=str(e),
                            error_type=type(e).__name__,
                        )

                    report.accounts.append(result)
                    if result.ok:
                        report.accounts_processed += 1
                        report.duplicate_groups += result.duplicate_groups
                        report.messages_deleted += result.messages_deleted
                        report.content_deleted += result.content_deleted
                    else:
                        report.accounts_failed += 1

                await self._store.set_state(
                    "last_reconcile_run", datetime.now(UTC).isoformat()
                )
            except DatabaseError as e:
                logger.error("reconcile_run_error", error=str(e), error_type=type(e).__name__)
                report.accounts_failed += 1
            finally:
                report.duration_ms = int((time.monotonic() - start_time) * 1000)
                logger.info(
                    "reconcile_run_complete",
                    duration_ms=report.duration_ms,
                    accounts_processed=report.accounts_processed,
                    accounts_failed=report.accounts_failed,
                    duplicate_groups=report.duplicate_groups,
                    messages_deleted=report.messages_deleted,
                )

        return report
