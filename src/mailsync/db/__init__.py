"""Database layer for the mail sync engine.

This module provides SQLite database access with async operations.

Usage:
    from mailsync.db import DatabaseStore

    store = DatabaseStore("data/mailsync.db")
    await store.initialize()

    await store.create_account("acc-1", user_id="u-1", provider="google")
    rows = await store.insert_messages("acc-1", messages, created_at=now)
"""

from mailsync.db.models import (
    REQUIRED_TABLES,
    SCHEMA_VERSION,
    init_database,
    verify_schema,
)
from mailsync.db.store import (
    Account,
    ContentEntry,
    DatabaseStore,
    IndexedMessage,
    LearningRun,
    MessageDeletion,
    Notification,
    SyncCursor,
)

__all__ = [
    # Models
    "SCHEMA_VERSION",
    "REQUIRED_TABLES",
    "init_database",
    "verify_schema",
    # Store
    "DatabaseStore",
    # Dataclasses
    "Account",
    "SyncCursor",
    "IndexedMessage",
    "ContentEntry",
    "LearningRun",
    "MessageDeletion",
    "Notification",
]
