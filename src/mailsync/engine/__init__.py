"""Sync, dedup, AI handoff, learning and milestone engines.

This package provides:
- Sync state tracker deciding delta vs. bounded full windows
- Dedup engine for per-sync filtering and periodic reconciliation
- Sync orchestrator driving every account with failure isolation
- Background AI batch processor and its bounded handoff queue
- Learning scheduler for weekly and signalled incremental learning
- Milestone gate and the default store-backed notification sink
"""

from mailsync.engine.batch_processor import (
    AIHandoffQueue,
    BackgroundBatchProcessor,
    BatchResult,
    HandoffBatch,
)
from mailsync.engine.dedup import DedupEngine, DedupResult, ReconcileReport
from mailsync.engine.learning import LearningReport, LearningScheduler
from mailsync.engine.milestones import MilestoneGate, MilestoneResult
from mailsync.engine.notifications import StoreNotificationSink
from mailsync.engine.orchestrator import AccountSyncResult, SyncOrchestrator, SyncReport
from mailsync.engine.sync_state import SyncOutcome, SyncStateTracker

__all__ = [
    # Sync
    "AccountSyncResult",
    "SyncOrchestrator",
    "SyncOutcome",
    "SyncReport",
    "SyncStateTracker",
    # Dedup
    "DedupEngine",
    "DedupResult",
    "ReconcileReport",
    # AI handoff
    "AIHandoffQueue",
    "BackgroundBatchProcessor",
    "BatchResult",
    "HandoffBatch",
    # Learning and notifications
    "LearningReport",
    "LearningScheduler",
    "MilestoneGate",
    "MilestoneResult",
    "StoreNotificationSink",
]
