"""Sync orchestrator: fetch, dedup, persist and advance for every account.

Per account, strictly in order:
1. Skip if a scheduled run and the account needs re-auth (or has failed
   too often, when that limit is configured)
2. Take the per-account lease so overlapping runs never sync the same
   account twice
3. Compute the window (delta or bounded full) from the cursor
4. Page through the provider adapter, each page under the rate limiter
   and a timeout, dropping messages already indexed, until the per-run
   cap of new messages is reached
5. Persist the new messages with their content
6. Advance the cursor to the run start time and clear the error. A
   capped run clears the error but holds the cursor, so the next run
   re-reads the same window and picks up the overflow
7. Hand the new rows to the AI queue without waiting for them

Any failure in steps 3-6 leaves the cursor alone, records sync_error and
bumps consecutive_failures. Failures are retried by the next scheduled
run; nothing is retried in-loop. Accounts run in parallel up to
max_concurrent_accounts, and one account's failure never affects another.

Usage:
    orchestrator = SyncOrchestrator(
        store=store,
        adapters=registry,
        tracker=SyncStateTracker(store, config.sync),
        dedup=DedupEngine(store),
        config=config.sync,
        handoff=handoff_queue,
    )
    report = await orchestrator.sync_all_active_accounts()
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, Literal

from mailsync.core.errors import (
    AuthError,
    DatabaseError,
    DataIntegrityAnomaly,
    ProviderError,
    ProviderNotConfiguredError,
    ProviderTimeoutError,
    RateLimitExceeded,
    SyncInProgressError,
)
from mailsync.core.logging import get_logger, run_scope
from mailsync.core.rate_limiter import ProviderRateLimiter
from mailsync.engine.batch_processor import HandoffBatch
from mailsync.engine.dedup import DedupResult
from mailsync.engine.sync_state import SyncOutcome

if TYPE_CHECKING:
    from mailsync.config_schema import SyncConfig
    from mailsync.db.store import Account, DatabaseStore
    from mailsync.engine.batch_processor import AIHandoffQueue
    from mailsync.engine.dedup import DedupEngine
    from mailsync.engine.milestones import MilestoneGate
    from mailsync.engine.sync_state import SyncStateTracker
    from mailsync.providers.base import AdapterRegistry, FetchWindow, ProviderAdapter

logger = get_logger(__name__)

AccountStatus = Literal["succeeded", "failed", "skipped"]

# Errors that end one account's sync and are recorded on its cursor
_ACCOUNT_FAILURES = (
    ProviderError,
    ProviderNotConfiguredError,
    RateLimitExceeded,
    DataIntegrityAnomaly,
    DatabaseError,
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------


@dataclass
class AccountSyncResult:
    """What happened to one account in one run."""

    account_id: str
    user_id: str | None = None
    provider: str | None = None
    status: AccountStatus = "failed"
    mode: str | None = None
    pages: int = 0
    fetched: int = 0
    new_messages: int = 0
    duplicates: int = 0
    capped: bool = False
    handed_off: bool = False
    error: str | None = None
    error_type: str | None = None


@dataclass
class SyncReport:
    """Aggregate of one orchestrator run."""

    run_id: str
    trigger: str = "scheduled"
    duration_ms: int = 0
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    new_messages: int = 0
    duplicates: int = 0
    accounts: list[AccountSyncResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed == 0

    def add(self, result: AccountSyncResult) -> None:
        self.accounts.append(result)
        if result.status == "skipped":
            self.skipped += 1
            return
        self.attempted += 1
        if result.status == "succeeded":
            self.succeeded += 1
            self.new_messages += result.new_messages
            self.duplicates += result.duplicates
        else:
            self.failed += 1

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["success"] = self.success
        return data


class SyncOrchestrator:
    """Drives every active account through one sync attempt.

    Attributes:
        _store: DatabaseStore for accounts and messages
        _adapters: AdapterRegistry resolving each account's provider
        _tracker: SyncStateTracker owning the cursor
        _dedup: DedupEngine filtering already-indexed messages
        _config: Sync configuration section
        _handoff: Optional AI handoff queue for new messages
        _milestones: Optional milestone gate run after each sync pass
        _rate_limiter: Per-provider token buckets
        _clock: Returns the current UTC time
    """

    def __init__(
        self,
        store: DatabaseStore,
        adapters: AdapterRegistry,
        tracker: SyncStateTracker,
        dedup: DedupEngine,
        config: SyncConfig,
        handoff: AIHandoffQueue | None = None,
        milestones: MilestoneGate | None = None,
        rate_limiter: ProviderRateLimiter | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self._adapters = adapters
        self._tracker = tracker
        self._dedup = dedup
        self._config = config
        self._handoff = handoff
        self._milestones = milestones
        self._rate_limiter = rate_limiter or ProviderRateLimiter(config.provider_rate_per_second)
        self._clock = clock

    def update_config(self, config: SyncConfig) -> None:
        """Update the config reference for hot-reload support."""
        self._config = config
        self._tracker.update_config(config)
        self._rate_limiter.update_rate(config.provider_rate_per_second)

    async def sync_all_active_accounts(self) -> SyncReport:
        """Run one scheduled sync over every active account.

        Returns:
            SyncReport; success is False if any attempted account failed
        """
        with run_scope() as run_id:
            start_time = time.monotonic()
            report = SyncReport(run_id=run_id, trigger="scheduled")
            logger.info("sync_run_start", max_concurrent=self._config.max_concurrent_accounts)

            try:
                accounts = await self._store.list_active_accounts()
                semaphore = asyncio.Semaphore(self._config.max_concurrent_accounts)

                async def bounded(account: Account) -> AccountSyncResult:
                    async with semaphore:
                        return await self._sync_isolated(account, force_full=False, scheduled=True)

                for result in await asyncio.gather(*(bounded(a) for a in accounts)):
                    report.add(result)

                await self._store.set_state("last_sync_run", self._clock().isoformat())
                await self._check_milestones(report)
            except DatabaseError as e:
                logger.error("sync_run_error", error=str(e), error_type=type(e).__name__)
                report.failed += 1
            finally:
                report.duration_ms = int((time.monotonic() - start_time) * 1000)
                self._log_summary(report)

        return report

    async def sync_account(self, account_id: str, force_full: bool = False) -> SyncReport:
        """Manually sync one account.

        Runs even if the account is flagged for re-auth, so an operator can
        retry after fixing credentials. force_full clears the cursor first.
        """
        with run_scope() as run_id:
            start_time = time.monotonic()
            report = SyncReport(run_id=run_id, trigger="manual")
            logger.info("manual_sync_start", account_id=account_id, force_full=force_full)

            try:
                account = await self._store.get_account(account_id)
                if account is None or not account.is_active:
                    reason = "not found" if account is None else "inactive"
                    report.add(
                        AccountSyncResult(
                            account_id=account_id,
                            status="failed",
                            error=f"Account {account_id} is {reason}",
                            error_type="AccountUnavailable",
                        )
                    )
                else:
                    report.add(
                        await self._sync_isolated(account, force_full=force_full, scheduled=False)
                    )
                    await self._check_milestones(report)
            except DatabaseError as e:
                logger.error("manual_sync_error", account_id=account_id, error=str(e))
                report.add(
                    AccountSyncResult(
                        account_id=account_id,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                )
            finally:
                report.duration_ms = int((time.monotonic() - start_time) * 1000)
                self._log_summary(report)

        return report

    # -----------------------------------------------------------------------
    # Per-account work
    # -----------------------------------------------------------------------

    async def _sync_isolated(
        self, account: Account, force_full: bool, scheduled: bool
    ) -> AccountSyncResult:
        """Sync one account; every error becomes a recorded result."""
        result = AccountSyncResult(
            account_id=account.id, user_id=account.user_id, provider=account.provider
        )

        if scheduled:
            reason = self._tracker.skip_reason(account)
            if reason is not None:
                result.status = "skipped"
                result.error = reason
                logger.info("account_sync_skipped", account_id=account.id, reason=reason)
                return result

        lease = timedelta(minutes=self._config.lock_lease_minutes)
        try:
            claimed = await self._store.try_claim_account(account.id, self._clock(), lease)
        except DatabaseError as e:
            result.error, result.error_type = str(e), type(e).__name__
            logger.error("account_lock_failed", account_id=account.id, error=str(e))
            return result

        if not claimed:
            err = SyncInProgressError(
                f"Account {account.id} is already being synced", account_id=account.id
            )
            result.status = "skipped"
            result.error, result.error_type = str(err), type(err).__name__
            logger.info("account_sync_in_progress", account_id=account.id)
            return result

        try:
            await self._sync_locked(account, force_full, result)
        except AuthError as e:
            await self._record_failure(account, result, e, requires_reauth=True)
        except _ACCOUNT_FAILURES as e:
            await self._record_failure(account, result, e)
        except Exception as e:
            logger.exception("account_sync_unexpected_error", account_id=account.id)
            await self._record_failure(account, result, e)
        finally:
            try:
                await self._store.release_account(account.id)
            except DatabaseError as e:
                logger.warning("account_lock_release_failed", account_id=account.id, error=str(e))

        return result

    async def _sync_locked(
        self, account: Account, force_full: bool, result: AccountSyncResult
    ) -> None:
        started_at = self._clock()
        if force_full:
            await self._tracker.reset(account.id)

        window = self._tracker.next_window(account, started_at, force_full=force_full)
        result.mode = window.mode.value
        adapter = self._adapters.adapter_for(account)

        logger.info(
            "account_sync_start",
            account_id=account.id,
            provider=account.provider,
            mode=window.mode.value,
            since=window.since.isoformat(),
        )

        dedup = await self._fetch_window(adapter, account, window, result)
        inserted = await self._store.insert_messages(
            account.id, dedup.new, created_at=self._clock()
        )
        await self._tracker.advance(
            account.id,
            SyncOutcome.succeeded(started_at, self._clock(), complete=not result.capped),
        )

        result.status = "succeeded"
        result.new_messages = len(inserted)
        result.duplicates = len(dedup.duplicates)

        if inserted and self._handoff is not None:
            result.handed_off = self._handoff.submit(
                HandoffBatch(user_id=account.user_id, account_id=account.id, messages=inserted)
            )

        logger.info(
            "account_sync_complete",
            account_id=account.id,
            mode=result.mode,
            pages=result.pages,
            fetched=result.fetched,
            new_messages=result.new_messages,
            duplicates=result.duplicates,
            capped=result.capped,
        )

    async def _fetch_window(
        self,
        adapter: ProviderAdapter,
        account: Account,
        window: FetchWindow,
        result: AccountSyncResult,
    ) -> DedupResult:
        """Page through the provider until exhausted or capped.

        Each page is filtered against the index as it arrives, so the cap
        counts new messages only and a re-read window makes progress.

        Raises:
            ProviderTimeoutError: If a page fetch exceeds the timeout
            ProviderError: Propagated from the adapter
            RateLimitExceeded: If the provider's bucket can't grant a slot
        """
        collected = DedupResult()
        seen: set[str] = set()
        page_cursor: str | None = None

        while True:
            await self._rate_limiter.acquire(account.provider)
            try:
                page = await asyncio.wait_for(
                    adapter.fetch_page(account, window, page_cursor),
                    timeout=self._config.fetch_timeout_seconds,
                )
            except TimeoutError as e:
                raise ProviderTimeoutError(
                    f"Fetching a page for account {account.id} timed out after "
                    f"{self._config.fetch_timeout_seconds}s",
                    provider=account.provider,
                    account_id=account.id,
                ) from e

            result.pages += 1
            result.fetched += len(page.messages)
            page_dedup = await self._dedup.reconcile(account.id, page.messages, seen=seen)
            collected.new.extend(page_dedup.new)
            collected.duplicates.extend(page_dedup.duplicates)

            if len(collected.new) >= window.max_messages:
                result.capped = len(collected.new) > window.max_messages or bool(
                    page.next_page_cursor
                )
                collected.new = collected.new[: window.max_messages]
                if result.capped:
                    logger.warning(
                        "account_sync_capped",
                        account_id=account.id,
                        max_messages=window.max_messages,
                    )
                break

            if not page.next_page_cursor:
                break
            if page.next_page_cursor == page_cursor:
                logger.warning(
                    "provider_page_cursor_repeated",
                    account_id=account.id,
                    page_cursor=page_cursor,
                )
                break
            page_cursor = page.next_page_cursor

        return collected

    async def _record_failure(
        self,
        account: Account,
        result: AccountSyncResult,
        error: Exception,
        requires_reauth: bool = False,
    ) -> None:
        result.status = "failed"
        result.error = str(error) or type(error).__name__
        result.error_type = type(error).__name__

        log = logger.warning if requires_reauth else logger.error
        log(
            "account_sync_failed",
            account_id=account.id,
            provider=account.provider,
            error=result.error,
            error_type=result.error_type,
            requires_reauth=requires_reauth,
        )

        try:
            await self._tracker.advance(
                account.id,
                SyncOutcome.failed(result.error, self._clock(), requires_reauth=requires_reauth),
            )
        except DatabaseError as e:
            logger.error("sync_failure_record_failed", account_id=account.id, error=str(e))

    async def _check_milestones(self, report: SyncReport) -> None:
        """Check milestones for users that received new mail in this run."""
        if self._milestones is None or report.new_messages == 0:
            return

        touched = sorted({r.user_id for r in report.accounts if r.new_messages > 0 and r.user_id})
        await self._milestones.check_users(touched)

    def _log_summary(self, report: SyncReport) -> None:
        logger.info(
            "sync_run_complete",
            trigger=report.trigger,
            duration_ms=report.duration_ms,
            attempted=report.attempted,
            succeeded=report.succeeded,
            failed=report.failed,
            skipped=report.skipped,
            new_messages=report.new_messages,
            duplicates=report.duplicates,
        )
