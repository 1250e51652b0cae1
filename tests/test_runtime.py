"""Tests for service wiring, plugin loading and the job runner."""

import asyncio
import os
from pathlib import Path

import pytest
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from fakes import FakeAdapter, FakeAILayer

from mailsync.config import ConfigWatcher, load_config
from mailsync.config_schema import AppConfig
from mailsync.core.errors import ConfigValidationError
from mailsync.engine.notifications import StoreNotificationSink
from mailsync.providers.base import AdapterRegistry, ProviderKind
from mailsync.runtime import build_services, load_object
from mailsync.scheduler import JobRunner, build_triggers


class TestLoadObject:
    def test_loads_attribute(self) -> None:
        assert load_object("mailsync.runtime:load_object") is load_object

    def test_missing_module(self) -> None:
        with pytest.raises(ConfigValidationError, match="Cannot import"):
            load_object("mailsync.nonexistent:thing")

    def test_missing_attribute(self) -> None:
        with pytest.raises(ConfigValidationError, match="has no 'nothing'"):
            load_object("mailsync.runtime:nothing")


class TestBuildServices:
    async def test_without_ai_layer(self, sample_config: AppConfig) -> None:
        services = await build_services(sample_config)

        assert services.learning is None
        assert services.handoff is None
        assert isinstance(services.sink, StoreNotificationSink)
        assert services.adapters.kinds == []

    async def test_plugins_loaded_from_config(self, sample_config_dict: dict) -> None:
        sample_config_dict["plugins"] = {"ai_layer": "fakes:FakeAILayer"}
        services = await build_services(AppConfig(**sample_config_dict))

        assert services.learning is not None
        assert services.handoff is not None
        assert (await services.status())["ai_layer_configured"] is True

    async def test_uncallable_plugin_rejected(self, sample_config_dict: dict) -> None:
        sample_config_dict["plugins"] = {"ai_layer": "mailsync.runtime:STATE_KEYS"}

        with pytest.raises(ConfigValidationError, match="not callable"):
            await build_services(AppConfig(**sample_config_dict))

    async def test_apply_config_reaches_components(
        self, sample_config: AppConfig, adapter: FakeAdapter
    ) -> None:
        services = await build_services(
            sample_config, adapters=AdapterRegistry({ProviderKind.IMAP: adapter})
        )
        updated = sample_config.model_copy(deep=True)
        updated.sync.max_lookback_days = 2

        services.apply_config(updated)

        assert services.config is updated
        assert services.tracker.max_lookback.days == 2

    async def test_apply_config_reaches_batch_and_rate_limits(
        self, sample_config: AppConfig, store
    ) -> None:
        services = await build_services(sample_config, ai_layer=FakeAILayer(store))
        updated = sample_config.model_copy(deep=True)
        updated.batch.overflow_policy = "drop_oldest"
        updated.batch.max_concurrency = 1
        updated.sync.provider_rate_per_second = 1.0

        services.apply_config(updated)

        assert services.handoff.stats()["overflow_policy"] == "drop_oldest"
        assert services.processor._config is updated.batch
        assert services.orchestrator._rate_limiter.rate == 1.0


class TestScheduler:
    def test_build_triggers(self, sample_config: AppConfig) -> None:
        triggers = build_triggers(sample_config)

        assert set(triggers) == {
            "sync_all_accounts",
            "dedup_reconcile",
            "weekly_learning",
            "signalled_learning",
        }
        assert isinstance(triggers["sync_all_accounts"], IntervalTrigger)
        assert triggers["sync_all_accounts"].interval.total_seconds() == 300
        assert isinstance(triggers["weekly_learning"], CronTrigger)

    async def test_job_runner_registers_jobs(self, sample_config: AppConfig, store) -> None:
        services = await build_services(sample_config, ai_layer=FakeAILayer(store))
        runner = JobRunner(services, asyncio.get_running_loop())

        runner.start()
        try:
            assert runner.running
            assert runner.job_ids() == [
                "dedup_reconcile",
                "signalled_learning",
                "sync_all_accounts",
                "weekly_learning",
            ]
        finally:
            runner.shutdown()
        assert not runner.running

    async def test_learning_jobs_need_ai_layer(self, sample_config: AppConfig) -> None:
        services = await build_services(sample_config)
        runner = JobRunner(services, asyncio.get_running_loop())

        runner.start()
        try:
            assert runner.job_ids() == ["dedup_reconcile", "sync_all_accounts"]
        finally:
            runner.shutdown()

    async def test_bridge_runs_job_on_loop(self, sample_config: AppConfig) -> None:
        services = await build_services(sample_config)
        runner = JobRunner(services, asyncio.get_running_loop())
        calls = []

        async def job() -> None:
            calls.append(asyncio.get_running_loop())

        await asyncio.to_thread(runner._bridge("test", job, timeout=5))

        assert calls == [asyncio.get_running_loop()]

    async def test_reload_applies_new_config(self, config_file: Path) -> None:
        watcher = ConfigWatcher(config_file)
        services = await build_services(load_config(config_file))
        runner = JobRunner(services, asyncio.get_running_loop(), watcher=watcher)

        text = config_file.read_text().replace("max_lookback_days: 7", "max_lookback_days: 3")
        config_file.write_text(text)
        stat = config_file.stat()
        os.utime(config_file, (stat.st_atime + 10, stat.st_mtime + 10))

        runner._reload_config()

        assert services.config.sync.max_lookback_days == 3
        assert services.tracker.max_lookback.days == 3
