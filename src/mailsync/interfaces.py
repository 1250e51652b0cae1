"""Interfaces of the external collaborators this engine drives.

The AI layer (classification, drafting, pattern learning) and the
notification sink are supplied by the host application. Both are plain
Protocols so tests and plugins can satisfy them without inheritance.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from mailsync.db.store import IndexedMessage


@dataclass(frozen=True)
class LearningWindow:
    """Bounded window of new mail a learning pass should look at."""

    since: datetime
    until: datetime


@dataclass(frozen=True)
class LearningResult:
    """What the AI layer reports after an incremental learning pass.

    Attributes:
        patterns_found: Total patterns touched (created or updated)
        quality_score: Model-reported quality between 0 and 1, if any
    """

    patterns_found: int
    quality_score: float | None = None


@dataclass(frozen=True)
class MilestoneEvent:
    """A volume milestone, e.g. ('emails_processed', 1000)."""

    type: str
    value: int


@dataclass(frozen=True)
class WeeklyMetrics:
    """Metrics passed to the weekly learning update notification."""

    new_messages: int
    patterns_created: int
    patterns_updated: int
    patterns_found: int
    quality_score: float | None
    week_number: int

    @property
    def accuracy_improvement(self) -> int:
        """Quality score mapped onto a 0-10 percentage-point scale."""
        if self.quality_score is None:
            return 0
        return round(self.quality_score * 10)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["accuracy_improvement"] = self.accuracy_improvement
        return data


class AILayer(Protocol):
    """Classification, drafting and learning entry points."""

    async def classify_and_draft(self, message: IndexedMessage) -> Any:
        """Classify one message and prepare a draft. Raises on failure."""
        ...

    async def run_incremental_learning(
        self,
        user_id: str,
        window: LearningWindow,
        account_hint: str | None,
    ) -> LearningResult:
        """Mine the window for response patterns and persist them."""
        ...


class NotificationSink(Protocol):
    """Delivers user-facing notifications. Fire-and-forget from the engine's side."""

    async def send_milestone(
        self, user_id: str, organization_id: str, milestone: MilestoneEvent
    ) -> None: ...

    async def send_weekly_update(
        self, user_id: str, organization_id: str, metrics: WeeklyMetrics
    ) -> None: ...
