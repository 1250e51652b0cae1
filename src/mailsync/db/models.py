"""SQLite database schema and initialization for the mail sync engine.

Tables:
- users: tenant users and their organization
- accounts: connected mailboxes plus their sync cursor and lock lease
- indexed_messages: one row per fetched email (metadata only)
- content_cache: heavier message bodies, child of indexed_messages
- learning_runs: completed or failed incremental learning passes
- patterns: learned response patterns per user
- notification_records: idempotency markers for milestones and weekly updates
- notifications: rendered notifications written by the default sink
- agent_state: key-value state (last run timestamps, learning signals)

Usage:
    from mailsync.db.models import init_database

    await init_database("data/mailsync.db")
"""

import stat
from pathlib import Path

import aiosqlite

from mailsync.core.errors import DatabaseError
from mailsync.core.logging import get_logger

logger = get_logger(__name__)

# Schema version for migrations (increment when schema changes)
SCHEMA_VERSION = 1

REQUIRED_TABLES = (
    "users",
    "accounts",
    "indexed_messages",
    "content_cache",
    "learning_runs",
    "patterns",
    "notification_records",
    "notifications",
    "agent_state",
)

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    organization_id TEXT,                   -- NULL = no organization, no notifications
    email TEXT,
    created_at DATETIME
);

-- Connected mailboxes. The sync cursor lives on the account row and is
-- only mutated by the orchestrator holding sync_lock_at.
CREATE TABLE IF NOT EXISTS accounts (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id),
    email TEXT,
    provider TEXT NOT NULL,                 -- 'google', 'microsoft', 'imap'
    credentials_ref TEXT,                   -- Opaque reference into the credential store
    is_active INTEGER DEFAULT 1,
    real_time_sync INTEGER DEFAULT 1,
    last_sync_at DATETIME,                  -- Start time of the last successful sync
    last_sync_attempt_at DATETIME,
    sync_error TEXT,
    consecutive_failures INTEGER DEFAULT 0,
    requires_reauth INTEGER DEFAULT 0,      -- 1 after an auth error until a sync succeeds
    sync_lock_at DATETIME,                  -- Lease held by a running sync
    created_at DATETIME
);

CREATE INDEX IF NOT EXISTS idx_accounts_user ON accounts(user_id);
CREATE INDEX IF NOT EXISTS idx_accounts_active ON accounts(is_active);

-- No UNIQUE(account_id, message_id): historic duplicates must be storable
-- so the reconciliation pass can find and remove them.
CREATE TABLE IF NOT EXISTS indexed_messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id TEXT NOT NULL REFERENCES accounts(id),
    message_id TEXT,                        -- Provider-issued dedup key, NULL if unknown
    folder TEXT,
    message_type TEXT DEFAULT 'inbox',      -- 'inbox', 'sent'
    subject TEXT,
    sender_email TEXT,
    received_at DATETIME,                   -- Provider-supplied
    created_at DATETIME NOT NULL            -- First seen by this system
);

CREATE INDEX IF NOT EXISTS idx_messages_account_message
    ON indexed_messages(account_id, message_id);
CREATE INDEX IF NOT EXISTS idx_messages_account_created
    ON indexed_messages(account_id, created_at);

CREATE TABLE IF NOT EXISTS content_cache (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    indexed_message_id INTEGER NOT NULL REFERENCES indexed_messages(id),
    message_id TEXT,
    body_text TEXT,
    body_html TEXT,
    cached_at DATETIME
);

CREATE INDEX IF NOT EXISTS idx_content_indexed_message ON content_cache(indexed_message_id);

CREATE TABLE IF NOT EXISTS learning_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    status TEXT NOT NULL,                   -- 'completed', 'failed'
    started_at DATETIME,
    completed_at DATETIME,
    window_since DATETIME,
    new_messages INTEGER DEFAULT 0,
    patterns_found INTEGER DEFAULT 0,
    patterns_created INTEGER DEFAULT 0,
    patterns_updated INTEGER DEFAULT 0,
    quality_score REAL,
    error TEXT
);

CREATE INDEX IF NOT EXISTS idx_learning_runs_user_status
    ON learning_runs(user_id, status, completed_at DESC);

CREATE TABLE IF NOT EXISTS patterns (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    pattern_type TEXT,
    description TEXT,
    confidence REAL,
    created_at DATETIME,
    updated_at DATETIME
);

CREATE INDEX IF NOT EXISTS idx_patterns_user ON patterns(user_id);

-- Insert-if-absent on this key is the critical section that prevents
-- double-sending when two runs overlap.
CREATE TABLE IF NOT EXISTS notification_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    record_type TEXT NOT NULL,              -- 'emails_processed', 'weekly_update'
    record_value TEXT NOT NULL,             -- Threshold or learning run id
    created_at DATETIME,
    UNIQUE(user_id, record_type, record_value)
);

CREATE TABLE IF NOT EXISTS notifications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    organization_id TEXT,
    event TEXT,                             -- 'milestone_achieved', 'weekly_learning_update'
    title TEXT,
    message TEXT,
    metadata_json TEXT,
    created_at DATETIME
);

CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id);

CREATE TABLE IF NOT EXISTS agent_state (
    key TEXT PRIMARY KEY,
    value TEXT,
    updated_at DATETIME
);
-- Keys: 'last_sync_run', 'last_reconcile_run', 'last_weekly_learning_run',
--       'last_signalled_learning_run', 'learning_signal:<user_id>'
"""


async def init_database(db_path: str | Path) -> None:
    """Initialize the SQLite database with schema and WAL mode.

    Creates the database file if it doesn't exist and creates all tables
    and indexes.

    Raises:
        DatabaseError: If database initialization fails
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            cursor = await db.execute("PRAGMA journal_mode")
            mode = await cursor.fetchone()
            if mode and mode[0].lower() != "wal":
                logger.warning(
                    "wal_mode_not_enabled",
                    actual=mode[0],
                    db_path=str(db_path),
                )

            await db.executescript(SCHEMA_SQL)
            await db.commit()

            cursor = await db.execute("SELECT COUNT(*) FROM sqlite_master WHERE type='table'")
            table_count = (await cursor.fetchone())[0]

        # Message metadata is user PII: owner read/write only
        db_path.chmod(stat.S_IRUSR | stat.S_IWUSR)
        for suffix in ["-wal", "-shm"]:
            wal_file = db_path.with_suffix(db_path.suffix + suffix)
            if wal_file.exists():
                wal_file.chmod(stat.S_IRUSR | stat.S_IWUSR)

        logger.info(
            "database_initialized",
            db_path=str(db_path),
            schema_version=SCHEMA_VERSION,
            tables=table_count,
        )

    except aiosqlite.Error as e:
        logger.error("database_init_failed", db_path=str(db_path), error=str(e))
        raise DatabaseError(
            f"Failed to initialize database at {db_path}: {e}. "
            "Check that the directory is writable and the database file is not corrupted."
        ) from e


async def verify_schema(db_path: str | Path) -> bool:
    """Check that all required tables exist.

    Returns:
        True if all tables exist, False otherwise
    """
    try:
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("SELECT name FROM sqlite_master WHERE type='table'")
            existing = {row[0] for row in await cursor.fetchall()}
    except aiosqlite.Error as e:
        logger.error("schema_verification_failed", db_path=str(db_path), error=str(e))
        return False

    missing = set(REQUIRED_TABLES) - existing
    if missing:
        logger.warning("schema_tables_missing", missing=sorted(missing), db_path=str(db_path))
        return False
    return True
