"""Service construction and plugin loading.

Every component is an explicit object built once from the config and
handed to whoever drives it (web lifespan, scheduler, CLI). Nothing here
is a module-level singleton.

Plugins are referenced as 'package.module:attribute'. The attribute is a
factory called with the DatabaseStore and returns the collaborator:

    plugins:
      providers:
        imap: "myhost.mail.imap:make_adapter"
      ai_layer: "myhost.ai:make_ai_layer"

Usage:
    services = await build_services(config)
    report = await services.orchestrator.sync_all_active_accounts()
"""

from __future__ import annotations

import importlib
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from mailsync.core.errors import ConfigValidationError, DatabaseError
from mailsync.core.logging import get_logger
from mailsync.core.rate_limiter import ProviderRateLimiter
from mailsync.db.store import DatabaseStore
from mailsync.engine.batch_processor import (
    LEARNING_SIGNAL_PREFIX,
    AIHandoffQueue,
    BackgroundBatchProcessor,
)
from mailsync.engine.dedup import DedupEngine
from mailsync.engine.learning import LearningScheduler
from mailsync.engine.milestones import MilestoneGate
from mailsync.engine.notifications import StoreNotificationSink
from mailsync.engine.orchestrator import SyncOrchestrator
from mailsync.engine.sync_state import SyncStateTracker
from mailsync.providers.base import AdapterRegistry, ProviderKind

if TYPE_CHECKING:
    from mailsync.config_schema import AppConfig
    from mailsync.interfaces import AILayer, NotificationSink

logger = get_logger(__name__)

STATE_KEYS = (
    "last_sync_run",
    "last_weekly_learning_run",
    "last_signalled_learning_run",
    "last_reconcile_run",
)


def load_object(path: str) -> Any:
    """Import 'package.module:attribute' and return the attribute.

    Raises:
        ConfigValidationError: If the module or attribute can't be found
    """
    module_name, _, attr = path.partition(":")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigValidationError(f"Cannot import plugin module '{module_name}': {e}") from e
    try:
        return getattr(module, attr)
    except AttributeError as e:
        raise ConfigValidationError(f"Plugin module '{module_name}' has no '{attr}'") from e


def _build_plugin(path: str, store: DatabaseStore) -> Any:
    factory = load_object(path)
    if not callable(factory):
        raise ConfigValidationError(f"Plugin '{path}' is not callable")
    return factory(store)


@dataclass
class Services:
    """All long-lived components of one process."""

    config: AppConfig
    store: DatabaseStore
    adapters: AdapterRegistry
    dedup: DedupEngine
    tracker: SyncStateTracker
    sink: NotificationSink
    milestones: MilestoneGate
    orchestrator: SyncOrchestrator
    processor: BackgroundBatchProcessor | None = None
    handoff: AIHandoffQueue | None = None
    learning: LearningScheduler | None = None

    def apply_config(self, config: AppConfig) -> None:
        """Push a hot-reloaded config into the running components.

        Storage, plugins and batch.queue_max_size need a restart; schedules
        are handled by the job runner.
        """
        self.config = config
        self.orchestrator.update_config(config.sync)
        self.milestones.update_config(config.milestones)
        if self.processor is not None:
            self.processor.update_config(config.batch)
        if self.handoff is not None:
            self.handoff.update_config(config.batch)
        if self.learning is not None:
            self.learning.update_config(config.learning)
        logger.info("services_config_applied")

    async def status(self) -> dict[str, Any]:
        """Snapshot for the CLI status command and the /api/status route."""
        stats = await self.store.get_stats()
        last_runs = {key: await self.store.get_state(key) for key in STATE_KEYS}
        signals = await self.store.list_state(LEARNING_SIGNAL_PREFIX)
        reauth = await self.store.list_accounts_needing_reauth()

        return {
            "generated_at": datetime.now(UTC).isoformat(),
            "stats": stats,
            "last_runs": last_runs,
            "pending_learning_signals": len(signals),
            "accounts_needing_reauth": [a.id for a in reauth],
            "providers": [k.value for k in self.adapters.kinds],
            "ai_layer_configured": self.learning is not None,
            "handoff_queue": self.handoff.stats() if self.handoff else None,
        }


async def build_services(
    config: AppConfig,
    *,
    adapters: AdapterRegistry | None = None,
    ai_layer: AILayer | None = None,
    sink: NotificationSink | None = None,
    clock: Callable[[], datetime] | None = None,
) -> Services:
    """Initialize the database and wire every component.

    Explicit adapters, ai_layer and sink take precedence over the plugin
    references in the config.

    Raises:
        DatabaseError: If the database can't be initialized
        ConfigValidationError: If a plugin reference can't be loaded
    """
    store = DatabaseStore(config.storage.db_path)
    try:
        await store.initialize()
    except DatabaseError:
        logger.error("services_store_init_failed", db_path=config.storage.db_path)
        raise

    if adapters is None:
        adapters = AdapterRegistry()
        for kind, path in config.plugins.providers.items():
            adapters.register(ProviderKind(kind), _build_plugin(path, store))

    if ai_layer is None and config.plugins.ai_layer:
        ai_layer = _build_plugin(config.plugins.ai_layer, store)

    if sink is None:
        if config.plugins.notification_sink:
            sink = _build_plugin(config.plugins.notification_sink, store)
        else:
            sink = StoreNotificationSink(store)

    clock_kwargs: dict[str, Any] = {"clock": clock} if clock is not None else {}

    tracker = SyncStateTracker(store, config.sync)
    dedup = DedupEngine(store)
    milestones = MilestoneGate(store, sink, config.milestones)

    processor = None
    handoff = None
    learning = None
    if ai_layer is not None:
        processor = BackgroundBatchProcessor(ai_layer, store, config.batch)
        handoff = AIHandoffQueue(processor, config.batch)
        learning = LearningScheduler(
            store, ai_layer, sink, config.learning, milestones=milestones, **clock_kwargs
        )
    else:
        logger.warning("ai_layer_not_configured", effect="AI handoff and learning disabled")

    orchestrator = SyncOrchestrator(
        store=store,
        adapters=adapters,
        tracker=tracker,
        dedup=dedup,
        config=config.sync,
        handoff=handoff,
        milestones=milestones,
        rate_limiter=ProviderRateLimiter(config.sync.provider_rate_per_second),
        **clock_kwargs,
    )

    logger.info(
        "services_built",
        db_path=config.storage.db_path,
        providers=[k.value for k in adapters.kinds],
        ai_layer_configured=ai_layer is not None,
    )
    return Services(
        config=config,
        store=store,
        adapters=adapters,
        dedup=dedup,
        tracker=tracker,
        sink=sink,
        milestones=milestones,
        orchestrator=orchestrator,
        processor=processor,
        handoff=handoff,
        learning=learning,
    )
