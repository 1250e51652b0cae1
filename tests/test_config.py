"""Tests for config loading, validation and hot-reload."""

import os
from pathlib import Path
from typing import Any

import pytest

from mailsync.config import ConfigWatcher, load_config, parse_config, validate_config_file
from mailsync.config_schema import AppConfig
from mailsync.core.errors import ConfigLoadError, ConfigValidationError


class TestSchemaDefaults:
    def test_defaults_match_documented_policy(self) -> None:
        config = AppConfig()

        assert config.sync.max_lookback_days == 7
        assert config.sync.max_messages_per_run == 200
        assert config.batch.max_concurrency == 5
        assert config.batch.min_batch_for_learning_signal == 5
        assert config.learning.min_days_between_runs == 5
        assert config.learning.min_new_messages == 10
        assert config.learning.updated_notify_threshold == 5
        assert config.milestones.thresholds == [100, 1000, 5000, 10000]
        assert config.milestones.one_per_run is True
        assert config.sync.skip_after_consecutive_failures is None

    @pytest.mark.parametrize(
        "thresholds",
        [[], [100, 100], [1000, 100], [0, 100]],
    )
    def test_milestone_thresholds_must_ascend(self, thresholds: list[int]) -> None:
        with pytest.raises(ConfigValidationError):
            parse_config({"milestones": {"thresholds": thresholds}})

    @pytest.mark.parametrize("value", ["2:00", "24:00", "12:60", "noon"])
    def test_learning_time_format(self, value: str) -> None:
        with pytest.raises(ConfigValidationError, match="learning.time"):
            parse_config({"learning": {"time": value}})

    def test_db_path_rejects_traversal(self) -> None:
        with pytest.raises(ConfigValidationError, match="storage.db_path"):
            parse_config({"storage": {"db_path": "../etc/mailsync.db"}})

    def test_plugin_reference_format(self) -> None:
        config = parse_config({"plugins": {"providers": {"imap": "pkg.mail:make_adapter"}}})
        assert config.plugins.providers == {"imap": "pkg.mail:make_adapter"}

        with pytest.raises(ConfigValidationError):
            parse_config({"plugins": {"ai_layer": "not a path"}})

    def test_unknown_provider_kind_rejected(self) -> None:
        with pytest.raises(ConfigValidationError):
            parse_config({"plugins": {"providers": {"pop3": "pkg.mail:make"}}})

    def test_newer_schema_version_rejected(self, sample_config_dict: dict[str, Any]) -> None:
        sample_config_dict["schema_version"] = 99
        with pytest.raises(ConfigValidationError, match="newer than"):
            parse_config(sample_config_dict)


class TestLoadConfig:
    def test_load_valid_file(self, config_file: Path) -> None:
        config = load_config(config_file)

        assert config.sync.interval_minutes == 10
        assert config.learning.day_of_week == "mon"

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigLoadError, match="not found"):
            load_config(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, temp_config_dir: Path) -> None:
        path = temp_config_dir / "config.yaml"
        path.write_text("sync: [unclosed")
        with pytest.raises(ConfigLoadError, match="parse YAML"):
            load_config(path)

    def test_non_mapping_yaml(self, temp_config_dir: Path) -> None:
        path = temp_config_dir / "config.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ConfigLoadError, match="mapping"):
            load_config(path)

    def test_env_var_selects_path(self, set_config_env: None) -> None:
        assert load_config().sync.interval_minutes == 10

    def test_validate_config_file_messages(self, config_file: Path, tmp_path: Path) -> None:
        ok, message = validate_config_file(config_file)
        assert ok
        assert "Configuration valid" in message

        ok, message = validate_config_file(tmp_path / "missing.yaml")
        assert not ok
        assert message.startswith("Load error")


class TestConfigWatcher:
    def _touch_later(self, path: Path) -> None:
        stat = path.stat()
        os.utime(path, (stat.st_atime + 10, stat.st_mtime + 10))

    def test_reload_picks_up_changes(self, config_file: Path) -> None:
        watcher = ConfigWatcher(config_file)
        assert not watcher.reload_if_changed()

        text = config_file.read_text().replace("interval_minutes: 10", "interval_minutes: 20")
        config_file.write_text(text)
        self._touch_later(config_file)

        assert watcher.reload_if_changed()
        assert watcher.config.sync.interval_minutes == 20

    def test_invalid_edit_keeps_previous_config(self, config_file: Path) -> None:
        watcher = ConfigWatcher(config_file)

        config_file.write_text("sync:\n  interval_minutes: -5\n")
        self._touch_later(config_file)

        assert not watcher.reload_if_changed()
        assert watcher.config.sync.interval_minutes == 10
        # Same broken file is not retried
        assert not watcher.reload_if_changed()
