"""Database store with async operations for all tables.

DatabaseStore encapsulates every query the sync, dedup, learning and
notification components need. It uses aiosqlite, opens one short-lived
connection per operation, and converts rows into dataclasses.

Usage:
    from mailsync.db.store import DatabaseStore

    store = DatabaseStore("data/mailsync.db")
    await store.initialize()

    account = await store.create_account("acc-1", user_id="u-1", provider="imap")
    existing = await store.find_existing_message_ids("acc-1", ["<a@x>", "<b@x>"])
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Iterable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

import aiosqlite

from mailsync.core.errors import DatabaseError
from mailsync.core.logging import get_logger
from mailsync.db.models import init_database

if TYPE_CHECKING:
    from mailsync.providers.base import ProviderMessage

logger = get_logger(__name__)

# SQLite's default host parameter limit is 999; stay well below it
_IN_CHUNK = 500

LearningStatus = Literal["completed", "failed"]


def _ts(value: datetime | None) -> str | None:
    """Serialize a datetime as a sortable UTC ISO-8601 string."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _chunks(items: Sequence[Any], size: int = _IN_CHUNK) -> Iterable[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


@dataclass(frozen=True)
class SyncCursor:
    """Per-account synchronization state."""

    last_sync_at: datetime | None = None
    last_sync_attempt_at: datetime | None = None
    sync_error: str | None = None
    consecutive_failures: int = 0
    requires_reauth: bool = False


@dataclass
class Account:
    """A connected mailbox."""

    id: str
    user_id: str
    provider: str
    email: str | None = None
    credentials_ref: str | None = None
    is_active: bool = True
    real_time_sync: bool = True
    cursor: SyncCursor = field(default_factory=SyncCursor)
    created_at: datetime | None = None


@dataclass
class IndexedMessage:
    """Metadata record for one fetched email."""

    id: int
    account_id: str
    message_id: str | None
    created_at: datetime
    folder: str | None = None
    message_type: str = "inbox"
    subject: str | None = None
    sender_email: str | None = None
    received_at: datetime | None = None


@dataclass(frozen=True)
class ContentEntry:
    """Cached message body."""

    indexed_message_id: int
    message_id: str | None
    body_text: str | None
    body_html: str | None
    cached_at: datetime | None


@dataclass
class LearningRun:
    """One incremental learning pass for a user."""

    id: int
    user_id: str
    status: LearningStatus
    started_at: datetime | None = None
    completed_at: datetime | None = None
    window_since: datetime | None = None
    new_messages: int = 0
    patterns_found: int = 0
    patterns_created: int = 0
    patterns_updated: int = 0
    quality_score: float | None = None
    error: str | None = None


@dataclass(frozen=True)
class Notification:
    """A rendered notification delivered to a user."""

    id: int
    user_id: str
    organization_id: str | None
    event: str
    title: str
    message: str
    metadata: dict[str, Any]
    created_at: datetime | None


@dataclass(frozen=True)
class MessageDeletion:
    """Rows removed by a duplicate purge."""

    messages_deleted: int
    content_deleted: int


class DatabaseStore:
    """Database store for all mail sync engine data.

    Attributes:
        db_path: Path to the SQLite database file
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self._initialized = False

    async def initialize(self) -> None:
        """Create tables if needed. Must be called before any other operation."""
        await init_database(self.db_path)
        self._initialized = True

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[aiosqlite.Connection]:
        """Get a configured database connection.

        - busy_timeout: 10s to handle the scheduler thread and web UI writing together
        - foreign_keys: ON so content rows can't outlive their message
        - synchronous: NORMAL (safe with WAL)
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout = 10000")
            await db.execute("PRAGMA foreign_keys = ON")
            await db.execute("PRAGMA synchronous = NORMAL")
            await db.execute("PRAGMA temp_store = MEMORY")
            db.row_factory = aiosqlite.Row
            yield db

    async def checkpoint_wal(self) -> None:
        """Run a WAL checkpoint to keep the WAL file bounded."""
        try:
            async with self._db() as db:
                await db.execute("PRAGMA wal_checkpoint(TRUNCATE)")
        except aiosqlite.Error as e:
            logger.warning("wal_checkpoint_failed", error=str(e))

    # =========================================================================
    # Users and Accounts
    # =========================================================================

    async def upsert_user(
        self,
        user_id: str,
        organization_id: str | None = None,
        email: str | None = None,
    ) -> None:
        """Create a user or update its organization and email."""
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO users (id, organization_id, email, created_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        organization_id = COALESCE(excluded.organization_id, organization_id),
                        email = COALESCE(excluded.email, email)
                    """,
                    (user_id, organization_id, email, _ts(datetime.now(UTC))),
                )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("user_upsert_failed", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to upsert user {user_id}: {e}") from e

    async def get_user_organization(self, user_id: str) -> str | None:
        """Return the user's organization ID, or None."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT organization_id FROM users WHERE id = ?", (user_id,)
                )
                row = await cursor.fetchone()
                return row["organization_id"] if row else None
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get organization for user {user_id}: {e}") from e

    async def create_account(
        self,
        account_id: str,
        user_id: str,
        provider: str,
        email: str | None = None,
        credentials_ref: str | None = None,
        is_active: bool = True,
        real_time_sync: bool = True,
    ) -> Account:
        """Connect a new mailbox. Creates the owning user row if missing.

        Raises:
            DatabaseError: If the account already exists or the insert fails
        """
        now = datetime.now(UTC)
        try:
            async with self._db() as db:
                await db.execute(
                    "INSERT OR IGNORE INTO users (id, created_at) VALUES (?, ?)",
                    (user_id, _ts(now)),
                )
                await db.execute(
                    """
                    INSERT INTO accounts (
                        id, user_id, email, provider, credentials_ref,
                        is_active, real_time_sync, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        account_id,
                        user_id,
                        email,
                        provider,
                        credentials_ref,
                        1 if is_active else 0,
                        1 if real_time_sync else 0,
                        _ts(now),
                    ),
                )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("account_create_failed", account_id=account_id, error=str(e))
            raise DatabaseError(f"Failed to create account {account_id}: {e}") from e

        logger.info("account_created", account_id=account_id, user_id=user_id, provider=provider)
        return Account(
            id=account_id,
            user_id=user_id,
            provider=provider,
            email=email,
            credentials_ref=credentials_ref,
            is_active=is_active,
            real_time_sync=real_time_sync,
            created_at=now,
        )

    async def get_account(self, account_id: str) -> Account | None:
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM accounts WHERE id = ?", (account_id,))
                row = await cursor.fetchone()
                return self._row_to_account(row) if row else None
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get account {account_id}: {e}") from e

    async def list_active_accounts(self, real_time_only: bool = False) -> list[Account]:
        """List accounts with is_active set, oldest first.

        Args:
            real_time_only: Also require real_time_sync to be enabled
        """
        query = "SELECT * FROM accounts WHERE is_active = 1"
        if real_time_only:
            query += " AND real_time_sync = 1"
        query += " ORDER BY created_at, id"
        try:
            async with self._db() as db:
                cursor = await db.execute(query)
                return [self._row_to_account(row) for row in await cursor.fetchall()]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to list active accounts: {e}") from e

    async def set_account_active(self, account_id: str, is_active: bool) -> None:
        """Activate or deactivate (revoke) an account."""
        try:
            async with self._db() as db:
                await db.execute(
                    "UPDATE accounts SET is_active = ? WHERE id = ?",
                    (1 if is_active else 0, account_id),
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to update account {account_id}: {e}") from e

    async def list_accounts_needing_reauth(self) -> list[Account]:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM accounts WHERE is_active = 1 AND requires_reauth = 1 ORDER BY id"
                )
                return [self._row_to_account(row) for row in await cursor.fetchall()]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to list accounts needing re-auth: {e}") from e

    def _row_to_account(self, row: aiosqlite.Row) -> Account:
        return Account(
            id=row["id"],
            user_id=row["user_id"],
            provider=row["provider"],
            email=row["email"],
            credentials_ref=row["credentials_ref"],
            is_active=bool(row["is_active"]),
            real_time_sync=bool(row["real_time_sync"]),
            cursor=SyncCursor(
                last_sync_at=_parse_ts(row["last_sync_at"]),
                last_sync_attempt_at=_parse_ts(row["last_sync_attempt_at"]),
                sync_error=row["sync_error"],
                consecutive_failures=row["consecutive_failures"] or 0,
                requires_reauth=bool(row["requires_reauth"]),
            ),
            created_at=_parse_ts(row["created_at"]),
        )

    # =========================================================================
    # Sync Cursor and Lock
    # =========================================================================

    async def try_claim_account(
        self, account_id: str, now: datetime, lease: timedelta
    ) -> bool:
        """Atomically take the per-account sync lock.

        The lock is a lease: a holder that crashed without releasing loses it
        once `lease` has passed.

        Returns:
            True if this caller now holds the lock
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    UPDATE accounts SET sync_lock_at = ?
                    WHERE id = ? AND (sync_lock_at IS NULL OR sync_lock_at < ?)
                    """,
                    (_ts(now), account_id, _ts(now - lease)),
                )
                await db.commit()
                return cursor.rowcount == 1
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to claim sync lock for {account_id}: {e}") from e

    async def release_account(self, account_id: str) -> None:
        try:
            async with self._db() as db:
                await db.execute(
                    "UPDATE accounts SET sync_lock_at = NULL WHERE id = ?", (account_id,)
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to release sync lock for {account_id}: {e}") from e

    async def record_sync_success(
        self, account_id: str, cursor_at: datetime | None, attempted_at: datetime
    ) -> None:
        """Advance the cursor and clear error state.

        The cursor never moves backwards: an older cursor_at leaves the
        stored value in place, and None leaves it untouched.
        """
        cursor_ts = _ts(cursor_at)
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    UPDATE accounts SET
                        last_sync_at = CASE
                            WHEN ? IS NULL THEN last_sync_at
                            WHEN last_sync_at IS NULL OR last_sync_at < ? THEN ?
                            ELSE last_sync_at
                        END,
                        last_sync_attempt_at = ?,
                        sync_error = NULL,
                        consecutive_failures = 0,
                        requires_reauth = 0
                    WHERE id = ?
                    """,
                    (cursor_ts, cursor_ts, cursor_ts, _ts(attempted_at), account_id),
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to record sync success for {account_id}: {e}") from e

    async def record_sync_failure(
        self,
        account_id: str,
        error: str,
        attempted_at: datetime,
        requires_reauth: bool = False,
    ) -> int:
        """Record a failed attempt without touching the cursor.

        Returns:
            The account's consecutive failure count after this failure
        """
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    UPDATE accounts SET
                        sync_error = ?,
                        last_sync_attempt_at = ?,
                        consecutive_failures = consecutive_failures + 1,
                        requires_reauth = CASE WHEN ? THEN 1 ELSE requires_reauth END
                    WHERE id = ?
                    """,
                    (error, _ts(attempted_at), 1 if requires_reauth else 0, account_id),
                )
                cursor = await db.execute(
                    "SELECT consecutive_failures FROM accounts WHERE id = ?", (account_id,)
                )
                row = await cursor.fetchone()
                await db.commit()
                return row["consecutive_failures"] if row else 0
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to record sync failure for {account_id}: {e}") from e

    async def reset_sync_cursor(self, account_id: str) -> None:
        """Forget the cursor so the next sync uses a full window."""
        try:
            async with self._db() as db:
                await db.execute(
                    "UPDATE accounts SET last_sync_at = NULL WHERE id = ?", (account_id,)
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to reset sync cursor for {account_id}: {e}") from e

    # =========================================================================
    # Indexed Messages and Content Cache
    # =========================================================================

    async def find_existing_message_ids(
        self, account_id: str, message_ids: Sequence[str]
    ) -> set[str]:
        """Return which of the given provider message IDs are already indexed."""
        if not message_ids:
            return set()

        found: set[str] = set()
        try:
            async with self._db() as db:
                for chunk in _chunks(list(dict.fromkeys(message_ids))):
                    placeholders = ",".join("?" * len(chunk))
                    cursor = await db.execute(
                        f"""
                        SELECT DISTINCT message_id FROM indexed_messages
                        WHERE account_id = ? AND message_id IN ({placeholders})
                        """,
                        (account_id, *chunk),
                    )
                    found.update(row["message_id"] for row in await cursor.fetchall())
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to look up message IDs for {account_id}: {e}") from e
        return found

    async def insert_messages(
        self,
        account_id: str,
        messages: Sequence[ProviderMessage],
        created_at: datetime,
    ) -> list[IndexedMessage]:
        """Persist messages and their bodies in a single transaction.

        Args:
            account_id: Owning account
            messages: Messages already filtered by the dedup engine
            created_at: First-seen time stamped on every row

        Returns:
            The inserted rows, in input order
        """
        if not messages:
            return []

        created_ts = _ts(created_at)
        inserted: list[IndexedMessage] = []
        try:
            async with self._db() as db:
                for msg in messages:
                    cursor = await db.execute(
                        """
                        INSERT INTO indexed_messages (
                            account_id, message_id, folder, message_type,
                            subject, sender_email, received_at, created_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            account_id,
                            msg.message_id,
                            msg.folder,
                            msg.message_type,
                            msg.subject,
                            msg.sender_email,
                            _ts(msg.received_at),
                            created_ts,
                        ),
                    )
                    row_id = cursor.lastrowid
                    if msg.has_content:
                        await db.execute(
                            """
                            INSERT INTO content_cache (
                                indexed_message_id, message_id, body_text, body_html, cached_at
                            ) VALUES (?, ?, ?, ?, ?)
                            """,
                            (row_id, msg.message_id, msg.body_text, msg.body_html, created_ts),
                        )
                    inserted.append(
                        IndexedMessage(
                            id=row_id,
                            account_id=account_id,
                            message_id=msg.message_id,
                            created_at=created_at,
                            folder=msg.folder,
                            message_type=msg.message_type,
                            subject=msg.subject,
                            sender_email=msg.sender_email,
                            received_at=msg.received_at,
                        )
                    )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error(
                "message_insert_failed", account_id=account_id, count=len(messages), error=str(e)
            )
            raise DatabaseError(f"Failed to insert messages for {account_id}: {e}") from e

        logger.debug("messages_inserted", account_id=account_id, count=len(inserted))
        return inserted

    async def list_messages(self, account_id: str) -> list[IndexedMessage]:
        """All indexed messages for an account, in insertion order."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM indexed_messages WHERE account_id = ? ORDER BY id",
                    (account_id,),
                )
                return [self._row_to_message(row) for row in await cursor.fetchall()]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to list messages for {account_id}: {e}") from e

    async def delete_messages(self, row_ids: Sequence[int]) -> MessageDeletion:
        """Delete message rows, their content first, in one transaction."""
        if not row_ids:
            return MessageDeletion(messages_deleted=0, content_deleted=0)

        content_deleted = 0
        messages_deleted = 0
        try:
            async with self._db() as db:
                for chunk in _chunks(list(row_ids)):
                    placeholders = ",".join("?" * len(chunk))
                    cursor = await db.execute(
                        f"DELETE FROM content_cache WHERE indexed_message_id IN ({placeholders})",
                        tuple(chunk),
                    )
                    content_deleted += cursor.rowcount
                    cursor = await db.execute(
                        f"DELETE FROM indexed_messages WHERE id IN ({placeholders})",
                        tuple(chunk),
                    )
                    messages_deleted += cursor.rowcount
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("message_delete_failed", count=len(row_ids), error=str(e))
            raise DatabaseError(f"Failed to delete {len(row_ids)} messages: {e}") from e

        return MessageDeletion(messages_deleted=messages_deleted, content_deleted=content_deleted)

    async def count_messages(self, account_ids: Sequence[str]) -> int:
        """Total indexed messages across the given accounts."""
        return await self._count_messages(account_ids, since=None)

    async def count_messages_since(self, account_ids: Sequence[str], since: datetime) -> int:
        """Messages first seen by the system at or after `since`."""
        return await self._count_messages(account_ids, since=since)

    async def _count_messages(self, account_ids: Sequence[str], since: datetime | None) -> int:
        if not account_ids:
            return 0

        total = 0
        try:
            async with self._db() as db:
                for chunk in _chunks(list(account_ids)):
                    placeholders = ",".join("?" * len(chunk))
                    query = (
                        "SELECT COUNT(*) AS n FROM indexed_messages "
                        f"WHERE account_id IN ({placeholders})"
                    )
                    params: list[Any] = list(chunk)
                    if since is not None:
                        query += " AND created_at >= ?"
                        params.append(_ts(since))
                    cursor = await db.execute(query, params)
                    row = await cursor.fetchone()
                    total += row["n"]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to count messages: {e}") from e
        return total

    async def get_content(self, indexed_message_id: int) -> ContentEntry | None:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM content_cache WHERE indexed_message_id = ?",
                    (indexed_message_id,),
                )
                row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get content for {indexed_message_id}: {e}") from e

        if not row:
            return None
        return ContentEntry(
            indexed_message_id=row["indexed_message_id"],
            message_id=row["message_id"],
            body_text=row["body_text"],
            body_html=row["body_html"],
            cached_at=_parse_ts(row["cached_at"]),
        )

    async def count_content(self, account_id: str) -> int:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT COUNT(*) AS n FROM content_cache c
                    JOIN indexed_messages m ON m.id = c.indexed_message_id
                    WHERE m.account_id = ?
                    """,
                    (account_id,),
                )
                row = await cursor.fetchone()
                return row["n"]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to count content for {account_id}: {e}") from e

    def _row_to_message(self, row: aiosqlite.Row) -> IndexedMessage:
        return IndexedMessage(
            id=row["id"],
            account_id=row["account_id"],
            message_id=row["message_id"],
            created_at=_parse_ts(row["created_at"]),
            folder=row["folder"],
            message_type=row["message_type"],
            subject=row["subject"],
            sender_email=row["sender_email"],
            received_at=_parse_ts(row["received_at"]),
        )

    # =========================================================================
    # Learning Runs and Patterns
    # =========================================================================

    async def get_last_completed_learning_run(self, user_id: str) -> LearningRun | None:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM learning_runs
                    WHERE user_id = ? AND status = 'completed'
                    ORDER BY completed_at DESC, id DESC
                    LIMIT 1
                    """,
                    (user_id,),
                )
                row = await cursor.fetchone()
                return self._row_to_learning_run(row) if row else None
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get last learning run for {user_id}: {e}") from e

    async def record_learning_run(
        self,
        user_id: str,
        status: LearningStatus,
        started_at: datetime,
        completed_at: datetime,
        window_since: datetime | None = None,
        new_messages: int = 0,
        patterns_found: int = 0,
        patterns_created: int = 0,
        patterns_updated: int = 0,
        quality_score: float | None = None,
        error: str | None = None,
    ) -> int:
        """Insert a learning run and return its ID."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO learning_runs (
                        user_id, status, started_at, completed_at, window_since,
                        new_messages, patterns_found, patterns_created, patterns_updated,
                        quality_score, error
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        user_id,
                        status,
                        _ts(started_at),
                        _ts(completed_at),
                        _ts(window_since),
                        new_messages,
                        patterns_found,
                        patterns_created,
                        patterns_updated,
                        quality_score,
                        error,
                    ),
                )
                await db.commit()
                return cursor.lastrowid
        except aiosqlite.Error as e:
            logger.error("learning_run_record_failed", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to record learning run for {user_id}: {e}") from e

    async def list_learning_runs(self, user_id: str) -> list[LearningRun]:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM learning_runs WHERE user_id = ? ORDER BY id",
                    (user_id,),
                )
                return [self._row_to_learning_run(row) for row in await cursor.fetchall()]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to list learning runs for {user_id}: {e}") from e

    def _row_to_learning_run(self, row: aiosqlite.Row) -> LearningRun:
        return LearningRun(
            id=row["id"],
            user_id=row["user_id"],
            status=row["status"],
            started_at=_parse_ts(row["started_at"]),
            completed_at=_parse_ts(row["completed_at"]),
            window_since=_parse_ts(row["window_since"]),
            new_messages=row["new_messages"],
            patterns_found=row["patterns_found"],
            patterns_created=row["patterns_created"],
            patterns_updated=row["patterns_updated"],
            quality_score=row["quality_score"],
            error=row["error"],
        )

    async def count_patterns(self, user_id: str) -> int:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT COUNT(*) AS n FROM patterns WHERE user_id = ?", (user_id,)
                )
                row = await cursor.fetchone()
                return row["n"]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to count patterns for {user_id}: {e}") from e

    async def create_pattern(
        self,
        user_id: str,
        pattern_type: str,
        description: str,
        confidence: float | None = None,
    ) -> int:
        """Store a learned pattern. Called by AI layer implementations."""
        now = _ts(datetime.now(UTC))
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO patterns (
                        user_id, pattern_type, description, confidence, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (user_id, pattern_type, description, confidence, now, now),
                )
                await db.commit()
                return cursor.lastrowid
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to create pattern for {user_id}: {e}") from e

    # =========================================================================
    # Notification Records and Notifications
    # =========================================================================

    async def claim_notification_record(
        self, user_id: str, record_type: str, record_value: str
    ) -> bool:
        """Insert an idempotency marker if it does not exist yet.

        Relies on the UNIQUE constraint, so two overlapping runs can't both
        claim the same key.

        Returns:
            True if this call created the record
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT OR IGNORE INTO notification_records (
                        user_id, record_type, record_value, created_at
                    ) VALUES (?, ?, ?, ?)
                    """,
                    (user_id, record_type, record_value, _ts(datetime.now(UTC))),
                )
                await db.commit()
                return cursor.rowcount == 1
        except aiosqlite.Error as e:
            raise DatabaseError(
                f"Failed to claim notification record {record_type}={record_value} "
                f"for {user_id}: {e}"
            ) from e

    async def has_notification_record(
        self, user_id: str, record_type: str, record_value: str
    ) -> bool:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT 1 FROM notification_records
                    WHERE user_id = ? AND record_type = ? AND record_value = ?
                    """,
                    (user_id, record_type, record_value),
                )
                return await cursor.fetchone() is not None
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to check notification record for {user_id}: {e}") from e

    async def save_notification(
        self,
        user_id: str,
        organization_id: str | None,
        event: str,
        title: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO notifications (
                        user_id, organization_id, event, title, message, metadata_json, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        user_id,
                        organization_id,
                        event,
                        title,
                        message,
                        json.dumps(metadata or {}),
                        _ts(datetime.now(UTC)),
                    ),
                )
                await db.commit()
                return cursor.lastrowid
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to save notification for {user_id}: {e}") from e

    async def list_notifications(self, user_id: str) -> list[Notification]:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM notifications WHERE user_id = ? ORDER BY id", (user_id,)
                )
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to list notifications for {user_id}: {e}") from e

        return [
            Notification(
                id=row["id"],
                user_id=row["user_id"],
                organization_id=row["organization_id"],
                event=row["event"],
                title=row["title"],
                message=row["message"],
                metadata=json.loads(row["metadata_json"]) if row["metadata_json"] else {},
                created_at=_parse_ts(row["created_at"]),
            )
            for row in rows
        ]

    # =========================================================================
    # Agent State
    # =========================================================================

    async def get_state(self, key: str) -> str | None:
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT value FROM agent_state WHERE key = ?", (key,))
                row = await cursor.fetchone()
                return row["value"] if row else None
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get state {key}: {e}") from e

    async def set_state(self, key: str, value: str) -> None:
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO agent_state (key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (key, value, _ts(datetime.now(UTC))),
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to set state {key}: {e}") from e

    async def delete_state(self, key: str) -> None:
        try:
            async with self._db() as db:
                await db.execute("DELETE FROM agent_state WHERE key = ?", (key,))
                await db.commit()
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to delete state {key}: {e}") from e

    async def list_state(self, prefix: str) -> dict[str, str]:
        """All state entries whose key starts with `prefix`."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT key, value FROM agent_state WHERE substr(key, 1, ?) = ? ORDER BY key",
                    (len(prefix), prefix),
                )
                return {row["key"]: row["value"] for row in await cursor.fetchall()}
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to list state with prefix {prefix}: {e}") from e

    # =========================================================================
    # Status
    # =========================================================================

    async def get_stats(self) -> dict[str, Any]:
        """Counts for the status surface."""
        try:
            async with self._db() as db:
                stats: dict[str, Any] = {}
                for key, query in (
                    ("active_accounts", "SELECT COUNT(*) AS n FROM accounts WHERE is_active = 1"),
                    (
                        "accounts_with_errors",
                        "SELECT COUNT(*) AS n FROM accounts "
                        "WHERE is_active = 1 AND sync_error IS NOT NULL",
                    ),
                    (
                        "accounts_needing_reauth",
                        "SELECT COUNT(*) AS n FROM accounts "
                        "WHERE is_active = 1 AND requires_reauth = 1",
                    ),
                    ("indexed_messages", "SELECT COUNT(*) AS n FROM indexed_messages"),
                    ("patterns", "SELECT COUNT(*) AS n FROM patterns"),
                    (
                        "completed_learning_runs",
                        "SELECT COUNT(*) AS n FROM learning_runs WHERE status = 'completed'",
                    ),
                    ("notifications", "SELECT COUNT(*) AS n FROM notifications"),
                ):
                    cursor = await db.execute(query)
                    row = await cursor.fetchone()
                    stats[key] = row["n"]
                return stats
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get stats: {e}") from e
