"""Tests for the database layer.

Covers schema initialization and the store operations used by the sync,
dedup, learning and notification components.
"""

import stat
from datetime import timedelta
from pathlib import Path

import aiosqlite
import pytest
from fakes import T0, make_message

from mailsync.core.errors import DatabaseError
from mailsync.db import (
    REQUIRED_TABLES,
    DatabaseStore,
    init_database,
    verify_schema,
)


@pytest.fixture
async def db_path(data_dir: Path) -> Path:
    """Create a test database path."""
    return data_dir / "schema.db"


@pytest.fixture
async def account_store(store: DatabaseStore) -> DatabaseStore:
    """Store with one user and one account."""
    await store.upsert_user("u-1", organization_id="org-1", email="u1@example.com")
    await store.create_account("acc-1", user_id="u-1", provider="imap")
    return store


class TestDatabaseInitialization:
    """Tests for database initialization."""

    async def test_init_database_creates_file(self, db_path: Path) -> None:
        assert not db_path.exists()
        await init_database(db_path)
        assert db_path.exists()

    async def test_init_database_enables_wal_mode(self, db_path: Path) -> None:
        await init_database(db_path)

        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("PRAGMA journal_mode")
            row = await cursor.fetchone()
            assert row[0].lower() == "wal"

    async def test_init_database_creates_all_tables(self, db_path: Path) -> None:
        await init_database(db_path)

        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("SELECT name FROM sqlite_master WHERE type='table'")
            tables = {row[0] for row in await cursor.fetchall()}

        assert set(REQUIRED_TABLES).issubset(tables)
        assert await verify_schema(db_path)

    async def test_init_database_is_idempotent(self, db_path: Path) -> None:
        await init_database(db_path)
        await init_database(db_path)
        assert await verify_schema(db_path)

    async def test_database_file_is_owner_only(self, db_path: Path) -> None:
        await init_database(db_path)
        mode = stat.S_IMODE(db_path.stat().st_mode)
        assert mode == stat.S_IRUSR | stat.S_IWUSR

    async def test_verify_schema_reports_missing_tables(self, db_path: Path) -> None:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("CREATE TABLE users (id TEXT)")
            await db.commit()
        assert not await verify_schema(db_path)


class TestAccounts:
    """Tests for accounts and the sync cursor columns."""

    async def test_create_and_get_account(self, account_store: DatabaseStore) -> None:
        account = await account_store.get_account("acc-1")

        assert account is not None
        assert account.user_id == "u-1"
        assert account.provider == "imap"
        assert account.is_active
        assert account.cursor.last_sync_at is None
        assert account.cursor.consecutive_failures == 0

    async def test_duplicate_account_raises(self, account_store: DatabaseStore) -> None:
        with pytest.raises(DatabaseError):
            await account_store.create_account("acc-1", user_id="u-1", provider="imap")

    async def test_list_active_accounts_filters(self, account_store: DatabaseStore) -> None:
        await account_store.create_account(
            "acc-2", user_id="u-1", provider="google", real_time_sync=False
        )
        await account_store.create_account("acc-3", user_id="u-2", provider="microsoft")
        await account_store.set_account_active("acc-3", False)

        active = [a.id for a in await account_store.list_active_accounts()]
        realtime = [a.id for a in await account_store.list_active_accounts(real_time_only=True)]

        assert active == ["acc-1", "acc-2"]
        assert realtime == ["acc-1"]

    async def test_cursor_never_moves_backwards(self, account_store: DatabaseStore) -> None:
        await account_store.record_sync_success("acc-1", cursor_at=T0, attempted_at=T0)
        await account_store.record_sync_success(
            "acc-1", cursor_at=T0 - timedelta(hours=1), attempted_at=T0
        )

        account = await account_store.get_account("acc-1")
        assert account.cursor.last_sync_at == T0

    async def test_failure_keeps_cursor_and_counts(self, account_store: DatabaseStore) -> None:
        await account_store.record_sync_success("acc-1", cursor_at=T0, attempted_at=T0)

        later = T0 + timedelta(minutes=5)
        first = await account_store.record_sync_failure("acc-1", "boom", attempted_at=later)
        second = await account_store.record_sync_failure(
            "acc-1", "expired", attempted_at=later, requires_reauth=True
        )

        account = await account_store.get_account("acc-1")
        assert (first, second) == (1, 2)
        assert account.cursor.last_sync_at == T0
        assert account.cursor.last_sync_attempt_at == later
        assert account.cursor.sync_error == "expired"
        assert account.cursor.requires_reauth

    async def test_success_clears_error_state(self, account_store: DatabaseStore) -> None:
        await account_store.record_sync_failure(
            "acc-1", "expired", attempted_at=T0, requires_reauth=True
        )
        await account_store.record_sync_success("acc-1", cursor_at=T0, attempted_at=T0)

        account = await account_store.get_account("acc-1")
        assert account.cursor.sync_error is None
        assert account.cursor.consecutive_failures == 0
        assert not account.cursor.requires_reauth

    async def test_claim_is_exclusive_until_released(self, account_store: DatabaseStore) -> None:
        lease = timedelta(minutes=30)

        assert await account_store.try_claim_account("acc-1", T0, lease)
        assert not await account_store.try_claim_account("acc-1", T0, lease)

        await account_store.release_account("acc-1")
        assert await account_store.try_claim_account("acc-1", T0, lease)

    async def test_expired_lease_can_be_taken_over(self, account_store: DatabaseStore) -> None:
        lease = timedelta(minutes=30)
        assert await account_store.try_claim_account("acc-1", T0, lease)
        assert await account_store.try_claim_account("acc-1", T0 + timedelta(minutes=31), lease)


class TestMessages:
    """Tests for indexed messages and the content cache."""

    async def test_insert_messages_with_content(self, account_store: DatabaseStore) -> None:
        rows = await account_store.insert_messages(
            "acc-1",
            [make_message("<a@x>"), make_message("<b@x>", body=None)],
            created_at=T0,
        )

        assert [r.message_id for r in rows] == ["<a@x>", "<b@x>"]
        assert (await account_store.get_content(rows[0].id)).body_text == "hello"
        assert await account_store.get_content(rows[1].id) is None
        assert await account_store.count_content("acc-1") == 1

    async def test_find_existing_message_ids(self, account_store: DatabaseStore) -> None:
        await account_store.insert_messages("acc-1", [make_message("<a@x>")], created_at=T0)

        found = await account_store.find_existing_message_ids("acc-1", ["<a@x>", "<z@x>"])
        other = await account_store.find_existing_message_ids("acc-2", ["<a@x>"])

        assert found == {"<a@x>"}
        assert other == set()

    async def test_find_existing_handles_large_batches(self, account_store: DatabaseStore) -> None:
        await account_store.insert_messages(
            "acc-1", [make_message(f"<{i}@x>") for i in range(0, 1200, 2)], created_at=T0
        )

        found = await account_store.find_existing_message_ids(
            "acc-1", [f"<{i}@x>" for i in range(1200)]
        )
        assert len(found) == 600

    async def test_delete_messages_removes_content(self, account_store: DatabaseStore) -> None:
        rows = await account_store.insert_messages(
            "acc-1", [make_message("<a@x>"), make_message("<b@x>")], created_at=T0
        )

        deletion = await account_store.delete_messages([rows[0].id])

        assert deletion.messages_deleted == 1
        assert deletion.content_deleted == 1
        remaining = await account_store.list_messages("acc-1")
        assert [r.message_id for r in remaining] == ["<b@x>"]

    async def test_count_messages_since_uses_first_seen(
        self, account_store: DatabaseStore
    ) -> None:
        await account_store.insert_messages(
            "acc-1", [make_message("<old@x>")], created_at=T0 - timedelta(days=10)
        )
        await account_store.insert_messages("acc-1", [make_message("<new@x>")], created_at=T0)

        assert await account_store.count_messages(["acc-1"]) == 2
        assert await account_store.count_messages_since(["acc-1"], T0 - timedelta(days=1)) == 1
        assert await account_store.count_messages([]) == 0


class TestNotificationsAndState:
    """Tests for idempotency records, notifications and agent state."""

    async def test_claim_notification_record_once(self, store: DatabaseStore) -> None:
        assert await store.claim_notification_record("u-1", "emails_processed", "1000")
        assert not await store.claim_notification_record("u-1", "emails_processed", "1000")
        assert await store.claim_notification_record("u-2", "emails_processed", "1000")
        assert await store.has_notification_record("u-1", "emails_processed", "1000")

    async def test_save_and_list_notifications(self, store: DatabaseStore) -> None:
        await store.save_notification(
            "u-1", "org-1", event="milestone_achieved", title="T", message="M", metadata={"v": 1}
        )

        [notification] = await store.list_notifications("u-1")
        assert notification.title == "T"
        assert notification.metadata == {"v": 1}

    async def test_state_round_trip_and_prefix(self, store: DatabaseStore) -> None:
        await store.set_state("learning_signal:u-1", "a")
        await store.set_state("learning_signal:u-2", "b")
        await store.set_state("last_sync_run", "c")
        await store.set_state("learning_signal:u-1", "a2")

        assert await store.get_state("learning_signal:u-1") == "a2"
        assert await store.list_state("learning_signal:") == {
            "learning_signal:u-1": "a2",
            "learning_signal:u-2": "b",
        }

        await store.delete_state("learning_signal:u-1")
        assert await store.get_state("learning_signal:u-1") is None

    async def test_last_completed_learning_run_ignores_failures(
        self, store: DatabaseStore
    ) -> None:
        await store.record_learning_run(
            "u-1", status="completed", started_at=T0, completed_at=T0
        )
        await store.record_learning_run(
            "u-1",
            status="failed",
            started_at=T0 + timedelta(days=1),
            completed_at=T0 + timedelta(days=1),
            error="boom",
        )

        last = await store.get_last_completed_learning_run("u-1")
        assert last.completed_at == T0
        assert len(await store.list_learning_runs("u-1")) == 2
