"""Default notification sink: renders messages and stores them.

Hosts with their own delivery channel (email, push, in-app feed) plug in
a different sink via plugins.notification_sink.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from mailsync.core.logging import get_logger

if TYPE_CHECKING:
    from mailsync.db.store import DatabaseStore
    from mailsync.interfaces import MilestoneEvent, WeeklyMetrics

logger = get_logger(__name__)

MILESTONE_EVENT = "milestone_achieved"
WEEKLY_UPDATE_EVENT = "weekly_learning_update"

# Highest tier first; a value renders with the first tier it reaches
_EMAIL_MILESTONE_TIERS: tuple[tuple[int, str, str], ...] = (
    (
        10000,
        "10,000 Emails Mastered!",
        "Your AI has now processed over 10,000 emails. That's enterprise-level learning.",
    ),
    (
        5000,
        "5,000 Email Milestone!",
        "Half way to email mastery! Your AI has learned from 5,000 emails and counting.",
    ),
    (
        1000,
        "1,000 Emails Analyzed!",
        "Your AI assistant has now studied 1,000 of your emails. The learning curve is "
        "accelerating!",
    ),
    (
        100,
        "First 100 Emails Complete!",
        "Milestone reached! Your AI has learned from 100 emails and gets better with "
        "every message.",
    ),
)

WEEKLY_UPDATE_TITLE = "AI Brain Upgrade Complete!"


def render_milestone(milestone: MilestoneEvent) -> tuple[str, str]:
    """Return (title, message) for an emails_processed milestone."""
    for threshold, title, message in _EMAIL_MILESTONE_TIERS:
        if milestone.value >= threshold:
            return title, message
    return (
        f"{milestone.value:,} Emails Processed!",
        f"Your AI has learned from {milestone.value:,} emails so far.",
    )


def render_weekly_update(metrics: WeeklyMetrics) -> tuple[str, str] | None:
    """Return (title, message), or None when nothing changed worth reporting."""
    created = metrics.patterns_created
    updated = metrics.patterns_updated

    if created > 0 and updated > 0:
        message = (
            f"This week I learned {created} new response patterns and improved {updated} "
            f"existing ones from your {metrics.new_messages} emails. "
        )
        if metrics.accuracy_improvement > 0:
            message += f"Draft accuracy improved by {metrics.accuracy_improvement}%! "
        message += "Your AI is getting smarter every week!"
    elif created > 0:
        message = (
            f"Discovered {created} new patterns this week! Your AI keeps evolving with "
            f"your communication style. Week {metrics.week_number} of continuous learning "
            "complete."
        )
    elif updated > 0:
        message = (
            f"Refined {updated} response patterns for even better accuracy. "
            "Your AI assistant is fine-tuning to perfection!"
        )
    else:
        return None

    return WEEKLY_UPDATE_TITLE, message


class StoreNotificationSink:
    """Writes rendered notifications to the notifications table."""

    def __init__(self, store: DatabaseStore):
        self._store = store

    async def send_milestone(
        self, user_id: str, organization_id: str, milestone: MilestoneEvent
    ) -> None:
        title, message = render_milestone(milestone)
        await self._store.save_notification(
            user_id,
            organization_id,
            event=MILESTONE_EVENT,
            title=title,
            message=message,
            metadata={"category": "ai", "type": milestone.type, "value": milestone.value},
        )

    async def send_weekly_update(
        self, user_id: str, organization_id: str, metrics: WeeklyMetrics
    ) -> None:
        rendered = render_weekly_update(metrics)
        if rendered is None:
            logger.debug("weekly_update_nothing_to_report", user_id=user_id)
            return

        title, message = rendered
        await self._store.save_notification(
            user_id,
            organization_id,
            event=WEEKLY_UPDATE_EVENT,
            title=title,
            message=message,
            metadata={"category": "ai", "stats": metrics.to_dict()},
        )
