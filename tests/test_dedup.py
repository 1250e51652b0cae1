"""Tests for incoming-batch dedup and stored duplicate reconciliation."""

from datetime import datetime, timedelta

import aiosqlite
import pytest
from fakes import T0, make_message

from mailsync.core.errors import DataIntegrityAnomaly
from mailsync.db.store import DatabaseStore, IndexedMessage
from mailsync.engine.dedup import DedupEngine, select_duplicates


@pytest.fixture
async def engine(store: DatabaseStore) -> DedupEngine:
    await store.create_account("acc-1", user_id="u-1", provider="imap")
    await store.create_account("acc-2", user_id="u-1", provider="google")
    return DedupEngine(store)


async def _insert_raw_duplicate(
    store: DatabaseStore, account_id: str, message_id: str, at: datetime
) -> None:
    """Insert a row directly, bypassing the store's duplicate filter."""
    async with aiosqlite.connect(store.db_path) as db:
        cursor = await db.execute(
            "INSERT INTO indexed_messages (account_id, message_id, message_type, created_at) "
            "VALUES (?, ?, 'inbox', ?)",
            (account_id, message_id, at.isoformat(timespec="microseconds")),
        )
        await db.execute(
            "INSERT INTO content_cache (indexed_message_id, message_id, body_text) "
            "VALUES (?, ?, 'copy')",
            (cursor.lastrowid, message_id),
        )
        await db.commit()


class TestReconcileIncoming:
    async def test_overlap_is_filtered(self, engine: DedupEngine, store: DatabaseStore) -> None:
        await store.insert_messages(
            "acc-1", [make_message(f"<{i}@x>") for i in range(4)], created_at=T0
        )

        incoming = [make_message(f"<{i}@x>") for i in range(10)]
        result = await engine.reconcile("acc-1", incoming)

        assert len(result.new) == 6
        assert len(result.duplicates) == 4
        assert {m.message_id for m in result.duplicates} == {f"<{i}@x>" for i in range(4)}

    async def test_same_id_in_other_account_is_new(
        self, engine: DedupEngine, store: DatabaseStore
    ) -> None:
        await store.insert_messages("acc-1", [make_message("<a@x>")], created_at=T0)

        result = await engine.reconcile("acc-2", [make_message("<a@x>")])

        assert len(result.new) == 1

    async def test_repeat_within_batch_is_duplicate(self, engine: DedupEngine) -> None:
        result = await engine.reconcile(
            "acc-1", [make_message("<a@x>"), make_message("<a@x>"), make_message("<b@x>")]
        )

        assert [m.message_id for m in result.new] == ["<a@x>", "<b@x>"]
        assert len(result.duplicates) == 1

    async def test_missing_message_id_is_always_new(self, engine: DedupEngine) -> None:
        result = await engine.reconcile("acc-1", [make_message(None), make_message(None)])

        assert len(result.new) == 2
        assert result.duplicates == []

    async def test_empty_batch(self, engine: DedupEngine) -> None:
        result = await engine.reconcile("acc-1", [])
        assert result.new == [] and result.duplicates == []


class TestSelectDuplicates:
    def _row(self, row_id: int, message_id: str | None, minutes: int | None) -> IndexedMessage:
        created = None if minutes is None else T0 + timedelta(minutes=minutes)
        return IndexedMessage(
            id=row_id, account_id="acc-1", message_id=message_id, created_at=created
        )

    def test_earliest_first_seen_survives(self) -> None:
        rows = [self._row(1, "<a@x>", 10), self._row(2, "<a@x>", 5), self._row(3, "<b@x>", 0)]

        groups, to_delete = select_duplicates(rows)

        assert groups == 1
        assert to_delete == [1]

    def test_tie_keeps_lowest_row_id(self) -> None:
        rows = [self._row(7, "<a@x>", 0), self._row(3, "<a@x>", 0), self._row(9, "<a@x>", 0)]

        assert select_duplicates(rows) == (1, [7, 9])

    def test_rows_without_message_id_ignored(self) -> None:
        rows = [self._row(1, None, 0), self._row(2, None, 0)]

        assert select_duplicates(rows) == (0, [])

    def test_missing_first_seen_in_group_is_anomaly(self) -> None:
        rows = [self._row(1, "<a@x>", 0), self._row(2, "<a@x>", None)]

        with pytest.raises(DataIntegrityAnomaly):
            select_duplicates(rows)


class TestReconcileStored:
    async def test_purges_later_copies_and_content(
        self, engine: DedupEngine, store: DatabaseStore
    ) -> None:
        [original] = await store.insert_messages("acc-1", [make_message("<a@x>")], created_at=T0)
        await _insert_raw_duplicate(store, "acc-1", "<a@x>", T0 + timedelta(hours=1))
        await _insert_raw_duplicate(store, "acc-1", "<a@x>", T0 + timedelta(hours=2))

        result = await engine.reconcile_account("acc-1")

        assert result.duplicate_groups == 1
        assert result.messages_deleted == 2
        assert result.content_deleted == 2
        remaining = await store.list_messages("acc-1")
        assert [r.id for r in remaining] == [original.id]
        assert (await store.get_content(original.id)).body_text == "hello"

    async def test_second_pass_deletes_nothing(
        self, engine: DedupEngine, store: DatabaseStore
    ) -> None:
        await store.insert_messages("acc-1", [make_message("<a@x>")], created_at=T0)
        await _insert_raw_duplicate(store, "acc-1", "<a@x>", T0 + timedelta(hours=1))

        first = await engine.reconcile_account("acc-1")
        second = await engine.reconcile_account("acc-1")

        assert first.messages_deleted == 1
        assert second.messages_deleted == 0
        assert second.duplicate_groups == 0

    async def test_reconcile_all_covers_active_accounts(
        self, engine: DedupEngine, store: DatabaseStore
    ) -> None:
        for account_id in ("acc-1", "acc-2"):
            await store.insert_messages(account_id, [make_message("<a@x>")], created_at=T0)
            await _insert_raw_duplicate(store, account_id, "<a@x>", T0 + timedelta(minutes=1))

        report = await engine.reconcile_all()

        assert report.success
        assert report.accounts_processed == 2
        assert report.messages_deleted == 2
        assert await store.get_state("last_reconcile_run") is not None

    async def test_failing_account_does_not_stop_others(
        self, engine: DedupEngine, store: DatabaseStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        await store.insert_messages("acc-2", [make_message("<a@x>")], created_at=T0)
        await _insert_raw_duplicate(store, "acc-2", "<a@x>", T0 + timedelta(minutes=1))

        original = store.list_messages

        async def flaky_list(account_id: str):
            if account_id == "acc-1":
                return [
                    IndexedMessage(id=1, account_id="acc-1", message_id="<z@x>", created_at=T0),
                    IndexedMessage(id=2, account_id="acc-1", message_id="<z@x>", created_at=None),
                ]
            return await original(account_id)

        monkeypatch.setattr(store, "list_messages", flaky_list)

        report = await engine.reconcile_all(["acc-1", "acc-2"])

        assert not report.success
        assert report.accounts_failed == 1
        assert report.accounts_processed == 1
        assert report.messages_deleted == 1
        failed = report.to_dict()["accounts"][0]
        assert failed["account_id"] == "acc-1"
        assert "first-seen" in failed["error"]
