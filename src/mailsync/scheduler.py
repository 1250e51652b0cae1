"""Recurring jobs on APScheduler's BackgroundScheduler.

The scheduler runs in its own thread alongside uvicorn. Each job bridges
into the server's event loop with run_coroutine_threadsafe, so every
coroutine touches the store, queue and semaphores from one loop.

Jobs (all max_instances=1, coalesce=True):
- sync_all_accounts: every sync.interval_minutes
- weekly_learning: cron on learning.day_of_week at learning.time
- signalled_learning: every learning.signal_check_interval_hours
- dedup_reconcile: every dedup.reconcile_interval_hours

Before each job the config file is checked for changes; a valid edit is
applied to the services and the job triggers are rescheduled.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from mailsync.core.logging import get_logger

if TYPE_CHECKING:
    from mailsync.config import ConfigWatcher
    from mailsync.config_schema import AppConfig
    from mailsync.runtime import Services

logger = get_logger(__name__)

# Upper bounds on how long the scheduler thread waits for one job
SYNC_JOB_TIMEOUT_SECONDS = 30 * 60
LEARNING_JOB_TIMEOUT_SECONDS = 2 * 60 * 60
RECONCILE_JOB_TIMEOUT_SECONDS = 60 * 60

# Delay before the first sync so the server finishes starting
FIRST_SYNC_DELAY_SECONDS = 60


def build_triggers(config: AppConfig) -> dict[str, Any]:
    """APScheduler triggers for every job, keyed by job id."""
    hour, minute = map(int, config.learning.time.split(":"))
    triggers: dict[str, Any] = {
        "sync_all_accounts": IntervalTrigger(minutes=config.sync.interval_minutes),
        "dedup_reconcile": IntervalTrigger(hours=config.dedup.reconcile_interval_hours),
    }
    triggers["weekly_learning"] = CronTrigger(
        day_of_week=config.learning.day_of_week,
        hour=hour,
        minute=minute,
        timezone=config.timezone,
    )
    triggers["signalled_learning"] = IntervalTrigger(
        hours=config.learning.signal_check_interval_hours
    )
    return triggers


class JobRunner:
    """Owns the BackgroundScheduler and its jobs for one server process."""

    def __init__(
        self,
        services: Services,
        loop: asyncio.AbstractEventLoop,
        watcher: ConfigWatcher | None = None,
    ):
        self._services = services
        self._loop = loop
        self._watcher = watcher
        self._scheduler: BackgroundScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def job_ids(self) -> list[str]:
        if self._scheduler is None:
            return []
        return sorted(job.id for job in self._scheduler.get_jobs())

    def start(self) -> None:
        services = self._services
        config = services.config
        triggers = build_triggers(config)

        scheduler = BackgroundScheduler(timezone=config.timezone)
        scheduler.add_job(
            self._bridge(
                "sync_all_accounts",
                services.orchestrator.sync_all_active_accounts,
                SYNC_JOB_TIMEOUT_SECONDS,
            ),
            triggers["sync_all_accounts"],
            id="sync_all_accounts",
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now() + timedelta(seconds=FIRST_SYNC_DELAY_SECONDS),
        )
        scheduler.add_job(
            self._bridge(
                "dedup_reconcile", services.dedup.reconcile_all, RECONCILE_JOB_TIMEOUT_SECONDS
            ),
            triggers["dedup_reconcile"],
            id="dedup_reconcile",
            max_instances=1,
            coalesce=True,
        )

        if services.learning is not None:
            scheduler.add_job(
                self._bridge(
                    "weekly_learning",
                    services.learning.run_weekly_learning,
                    LEARNING_JOB_TIMEOUT_SECONDS,
                ),
                triggers["weekly_learning"],
                id="weekly_learning",
                max_instances=1,
                coalesce=True,
            )
            scheduler.add_job(
                self._bridge(
                    "signalled_learning",
                    services.learning.run_signalled_learning,
                    LEARNING_JOB_TIMEOUT_SECONDS,
                ),
                triggers["signalled_learning"],
                id="signalled_learning",
                max_instances=1,
                coalesce=True,
            )

        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            "scheduler_started",
            jobs=self.job_ids(),
            sync_interval_minutes=config.sync.interval_minutes,
            learning_day=config.learning.day_of_week,
            learning_time=config.learning.time,
        )

    def shutdown(self) -> None:
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("scheduler_stopped")

    def _bridge(
        self,
        name: str,
        job: Callable[[], Coroutine[Any, Any, Any]],
        timeout: float,
    ) -> Callable[[], None]:
        """Wrap an async job so the scheduler thread can run it on the loop."""

        def run() -> None:
            self._reload_config()
            try:
                future = asyncio.run_coroutine_threadsafe(job(), self._loop)
                future.result(timeout=timeout)
            except Exception as e:
                logger.error("scheduled_job_failed", job=name, error=str(e))

        return run

    def _reload_config(self) -> None:
        if self._watcher is None or not self._watcher.reload_if_changed():
            return

        config = self._watcher.config
        self._services.apply_config(config)
        if self._scheduler is None:
            return
        for job_id, trigger in build_triggers(config).items():
            if self._scheduler.get_job(job_id) is not None:
                self._scheduler.reschedule_job(job_id, trigger=trigger)
        logger.info("scheduler_rescheduled_after_reload", jobs=self.job_ids())
