"""Tests for notification rendering and the store-backed sink."""

from mailsync.db.store import DatabaseStore
from mailsync.engine.notifications import (
    MILESTONE_EVENT,
    WEEKLY_UPDATE_EVENT,
    StoreNotificationSink,
    render_milestone,
    render_weekly_update,
)
from mailsync.interfaces import MilestoneEvent, WeeklyMetrics


def _metrics(created: int, updated: int, quality: float | None = 0.3) -> WeeklyMetrics:
    return WeeklyMetrics(
        new_messages=40,
        patterns_created=created,
        patterns_updated=updated,
        patterns_found=created + updated,
        quality_score=quality,
        week_number=3,
    )


class TestRendering:
    def test_milestone_tiers(self) -> None:
        assert render_milestone(MilestoneEvent("emails_processed", 100))[0].startswith("First 100")
        assert render_milestone(MilestoneEvent("emails_processed", 1000))[0].startswith("1,000")
        assert render_milestone(MilestoneEvent("emails_processed", 25000))[0].startswith("10,000")

    def test_milestone_below_lowest_tier(self) -> None:
        title, message = render_milestone(MilestoneEvent("emails_processed", 50))
        assert title == "50 Emails Processed!"
        assert "50" in message

    def test_weekly_created_and_updated(self) -> None:
        _, message = render_weekly_update(_metrics(created=2, updated=7))
        assert "learned 2 new response patterns and improved 7" in message
        assert "improved by 3%" in message

    def test_weekly_created_only_mentions_week(self) -> None:
        _, message = render_weekly_update(_metrics(created=4, updated=0))
        assert "Discovered 4 new patterns" in message
        assert "Week 3" in message

    def test_weekly_updated_only(self) -> None:
        _, message = render_weekly_update(_metrics(created=0, updated=6))
        assert message.startswith("Refined 6 response patterns")

    def test_weekly_nothing_to_report(self) -> None:
        assert render_weekly_update(_metrics(created=0, updated=0)) is None

    def test_accuracy_improvement_without_quality(self) -> None:
        assert _metrics(1, 1, quality=None).accuracy_improvement == 0


class TestStoreNotificationSink:
    async def test_milestone_saved(self, store: DatabaseStore) -> None:
        sink = StoreNotificationSink(store)

        await sink.send_milestone("u-1", "org-1", MilestoneEvent("emails_processed", 1000))

        [notification] = await store.list_notifications("u-1")
        assert notification.event == MILESTONE_EVENT
        assert notification.organization_id == "org-1"
        assert notification.metadata["value"] == 1000

    async def test_weekly_update_saved_with_stats(self, store: DatabaseStore) -> None:
        sink = StoreNotificationSink(store)

        await sink.send_weekly_update("u-1", "org-1", _metrics(created=1, updated=0))

        [notification] = await store.list_notifications("u-1")
        assert notification.event == WEEKLY_UPDATE_EVENT
        assert notification.metadata["stats"]["patterns_created"] == 1
        assert notification.metadata["stats"]["accuracy_improvement"] == 3

    async def test_empty_weekly_update_not_saved(self, store: DatabaseStore) -> None:
        await StoreNotificationSink(store).send_weekly_update("u-1", "org-1", _metrics(0, 0))

        assert await store.list_notifications("u-1") == []
