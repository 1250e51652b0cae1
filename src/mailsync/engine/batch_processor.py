"""Background AI processing of freshly synced messages.

Two pieces:

- BackgroundBatchProcessor fans a batch out to the AI layer with bounded
  concurrency. Each message succeeds or fails on its own; a failure is
  logged and counted, never raised. A message already being processed
  (e.g. handed off twice) is awaited rather than sent to the AI layer
  again.
- AIHandoffQueue decouples the sync loop from AI processing. The
  orchestrator submits batches without awaiting them; a worker task
  drains the queue. The queue is bounded and its overflow policy, depth
  and drop count are observable.

Batches of at least min_batch_for_learning_signal messages leave a
learning signal for the user in agent_state. The signal is advisory: the
learning scheduler still applies its own skip rules.

Usage:
    processor = BackgroundBatchProcessor(ai_layer, store, config.batch)
    queue = AIHandoffQueue(processor, config.batch)
    queue.start()
    queue.submit(HandoffBatch(user_id="u-1", account_id="acc-1", messages=rows))
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from mailsync.core.errors import AIProcessingError, DatabaseError
from mailsync.core.logging import get_logger

if TYPE_CHECKING:
    from mailsync.config_schema import BatchConfig
    from mailsync.db.store import DatabaseStore, IndexedMessage
    from mailsync.interfaces import AILayer

logger = get_logger(__name__)

LEARNING_SIGNAL_PREFIX = "learning_signal:"


def learning_signal_key(user_id: str) -> str:
    return f"{LEARNING_SIGNAL_PREFIX}{user_id}"


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ItemFailure:
    """One message the AI layer could not process."""

    indexed_message_id: int
    message_id: str | None
    error: str
    error_type: str


@dataclass
class BatchResult:
    """Aggregate outcome of one batch."""

    user_id: str
    account_id: str | None = None
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    coalesced: int = 0
    learning_signalled: bool = False
    failures: list[ItemFailure] = field(default_factory=list)


@dataclass(frozen=True)
class HandoffBatch:
    """Newly persisted messages of one account awaiting AI processing."""

    user_id: str
    account_id: str
    messages: list[IndexedMessage]


class BackgroundBatchProcessor:
    """Sends messages to the AI layer with per-item failure isolation.

    The concurrency bound is shared by every batch this processor handles,
    so two overlapping batches don't double the load on the AI layer.
    """

    def __init__(self, ai_layer: AILayer, store: DatabaseStore, config: BatchConfig):
        self._ai_layer = ai_layer
        self._store = store
        self._config = config
        self._semaphore = asyncio.Semaphore(config.max_concurrency)
        self._in_flight: dict[int, asyncio.Future[Any]] = {}

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def update_config(self, config: BatchConfig) -> None:
        """Update the config reference for hot-reload support.

        A new concurrency bound applies to items that start after the change.
        """
        if config.max_concurrency != self._config.max_concurrency:
            self._semaphore = asyncio.Semaphore(config.max_concurrency)
        self._config = config

    async def process(
        self,
        messages: Sequence[IndexedMessage],
        user_id: str,
        account_id: str | None = None,
    ) -> BatchResult:
        """Classify and draft every message in the batch.

        Returns:
            BatchResult with succeeded/failed counts; never raises for
            per-item failures
        """
        result = BatchResult(user_id=user_id, account_id=account_id, total=len(messages))
        if not messages:
            return result

        outcomes = await asyncio.gather(
            *(self._process_item(m) for m in messages), return_exceptions=True
        )

        for message, outcome in zip(messages, outcomes, strict=True):
            if isinstance(outcome, Exception):
                result.failed += 1
                result.failures.append(
                    ItemFailure(
                        indexed_message_id=message.id,
                        message_id=message.message_id,
                        error=str(outcome),
                        error_type=type(outcome).__name__,
                    )
                )
                logger.warning(
                    "ai_item_failed",
                    user_id=user_id,
                    account_id=account_id,
                    indexed_message_id=message.id,
                    error=str(outcome),
                    error_type=type(outcome).__name__,
                )
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                result.succeeded += 1
                if outcome:
                    result.coalesced += 1

        if result.total >= self._config.min_batch_for_learning_signal:
            result.learning_signalled = await self._signal_learning(user_id)

        logger.info(
            "ai_batch_complete",
            user_id=user_id,
            account_id=account_id,
            total=result.total,
            succeeded=result.succeeded,
            failed=result.failed,
            coalesced=result.coalesced,
            learning_signalled=result.learning_signalled,
        )
        return result

    async def _process_item(self, message: IndexedMessage) -> bool:
        """Process one message, joining an in-flight call for the same row.

        Returns:
            True if the result came from an already running call
        """
        existing = self._in_flight.get(message.id)
        if existing is not None:
            await asyncio.shield(existing)
            return True

        future = asyncio.ensure_future(self._invoke(message))
        self._in_flight[message.id] = future
        try:
            await future
        finally:
            self._in_flight.pop(message.id, None)
        return False

    async def _invoke(self, message: IndexedMessage) -> Any:
        async with self._semaphore:
            try:
                return await asyncio.wait_for(
                    self._ai_layer.classify_and_draft(message),
                    timeout=self._config.item_timeout_seconds,
                )
            except TimeoutError as e:
                raise AIProcessingError(
                    f"AI processing timed out after {self._config.item_timeout_seconds}s",
                    message_key=message.message_id,
                ) from e

    async def _signal_learning(self, user_id: str) -> bool:
        try:
            await self._store.set_state(learning_signal_key(user_id), datetime.now(UTC).isoformat())
        except DatabaseError as e:
            logger.warning("learning_signal_failed", user_id=user_id, error=str(e))
            return False
        logger.debug("learning_signalled", user_id=user_id)
        return True


class AIHandoffQueue:
    """Bounded queue between the sync loop and the batch processor.

    Overflow policies:
    - drop_newest: the batch being submitted is discarded
    - drop_oldest: the oldest pending batch is discarded to make room

    Dropped batches stay indexed; only their AI processing is skipped.
    """

    def __init__(self, processor: BackgroundBatchProcessor, config: BatchConfig):
        self._processor = processor
        self._overflow_policy = config.overflow_policy
        self._queue: asyncio.Queue[HandoffBatch] = asyncio.Queue(maxsize=config.queue_max_size)
        self._worker: asyncio.Task[None] | None = None
        self.submitted = 0
        self.dropped = 0
        self.processed = 0

    @property
    def depth(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def stats(self) -> dict[str, Any]:
        return {
            "depth": self.depth,
            "submitted": self.submitted,
            "dropped": self.dropped,
            "processed": self.processed,
            "overflow_policy": self._overflow_policy,
            "worker_running": self.running,
        }

    def update_config(self, config: BatchConfig) -> None:
        """Apply a new overflow policy. The queue size is fixed at startup."""
        self._overflow_policy = config.overflow_policy

    def submit(self, batch: HandoffBatch) -> bool:
        """Enqueue a batch without waiting.

        Returns:
            True if the submitted batch was queued, False if it was dropped
        """
        self.submitted += 1
        try:
            self._queue.put_nowait(batch)
            return True
        except asyncio.QueueFull:
            pass

        self.dropped += 1
        if self._overflow_policy == "drop_newest":
            logger.warning(
                "ai_handoff_dropped",
                policy="drop_newest",
                user_id=batch.user_id,
                account_id=batch.account_id,
                messages=len(batch.messages),
            )
            return False

        evicted = self._queue.get_nowait()
        self._queue.task_done()
        self._queue.put_nowait(batch)
        logger.warning(
            "ai_handoff_dropped",
            policy="drop_oldest",
            user_id=evicted.user_id,
            account_id=evicted.account_id,
            messages=len(evicted.messages),
        )
        return True

    async def drain(self) -> list[BatchResult]:
        """Process everything pending now. Used by one-shot CLI runs."""
        results = []
        while not self._queue.empty():
            batch = self._queue.get_nowait()
            try:
                results.append(await self._handle(batch))
            finally:
                self._queue.task_done()
        return results

    def start(self) -> None:
        """Start the worker task on the running event loop."""
        if self.running:
            return
        self._worker = asyncio.create_task(self._run(), name="ai-handoff-worker")
        logger.info("ai_handoff_worker_started")

    async def stop(self) -> None:
        """Cancel the worker. Pending batches are left in the queue."""
        if self._worker is None:
            return
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        logger.info("ai_handoff_worker_stopped", pending=self.depth)

    async def _run(self) -> None:
        while True:
            batch = await self._queue.get()
            try:
                await self._handle(batch)
            except Exception:
                logger.exception(
                    "ai_handoff_batch_error",
                    user_id=batch.user_id,
                    account_id=batch.account_id,
                )
            finally:
                self._queue.task_done()

    async def _handle(self, batch: HandoffBatch) -> BatchResult:
        result = await self._processor.process(
            batch.messages, user_id=batch.user_id, account_id=batch.account_id
        )
        self.processed += 1
        return result
