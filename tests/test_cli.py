"""Tests for the click CLI: exit codes and basic output."""

from pathlib import Path

import pytest
from click.testing import CliRunner

from mailsync.cli import cli


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


def _invoke(runner: CliRunner, config_file: Path, *args: str):
    return runner.invoke(cli, ["--config", str(config_file), *args])


class TestValidateConfig:
    def test_valid_config(self, runner: CliRunner, config_file: Path) -> None:
        result = _invoke(runner, config_file, "validate-config")

        assert result.exit_code == 0
        assert "Configuration valid" in result.output

    def test_missing_config(self, runner: CliRunner, tmp_path: Path) -> None:
        result = _invoke(runner, tmp_path / "missing.yaml", "validate-config")

        assert result.exit_code == 1
        assert "Load error" in result.output

    def test_invalid_config(self, runner: CliRunner, temp_config_dir: Path) -> None:
        path = temp_config_dir / "bad.yaml"
        path.write_text("milestones:\n  thresholds: [1000, 100]\n")

        result = _invoke(runner, path, "validate-config")

        assert result.exit_code == 1
        assert "Validation error" in result.output


class TestRunCommands:
    def test_init_db(self, runner: CliRunner, config_file: Path, data_dir: Path) -> None:
        result = _invoke(runner, config_file, "init-db")

        assert result.exit_code == 0
        assert (data_dir / "mailsync.db").exists()

    def test_sync_with_no_accounts_succeeds(self, runner: CliRunner, config_file: Path) -> None:
        result = _invoke(runner, config_file, "sync")

        assert result.exit_code == 0
        assert "Sync Summary" in result.output

    def test_sync_unknown_account_exits_1(self, runner: CliRunner, config_file: Path) -> None:
        result = _invoke(runner, config_file, "sync", "--account-id", "nope")

        assert result.exit_code == 1

    def test_force_full_requires_account(self, runner: CliRunner, config_file: Path) -> None:
        result = _invoke(runner, config_file, "sync", "--force-full")

        assert result.exit_code == 2
        assert "--force-full requires --account-id" in result.output

    def test_learn_without_ai_layer_exits_1(self, runner: CliRunner, config_file: Path) -> None:
        result = _invoke(runner, config_file, "learn")

        assert result.exit_code == 1
        assert "No AI layer configured" in result.output

    def test_learn_with_plugin_ai_layer(
        self, runner: CliRunner, config_file: Path
    ) -> None:
        config_file.write_text(
            config_file.read_text() + '\nplugins:\n  ai_layer: "fakes:FakeAILayer"\n'
        )

        result = _invoke(runner, config_file, "learn", "--signalled-only")

        assert result.exit_code == 0
        assert "Learning Summary" in result.output

    def test_reconcile(self, runner: CliRunner, config_file: Path) -> None:
        result = _invoke(runner, config_file, "reconcile")

        assert result.exit_code == 0
        assert "Reconciliation Summary" in result.output

    def test_status(self, runner: CliRunner, config_file: Path) -> None:
        result = _invoke(runner, config_file, "status")

        assert result.exit_code == 0
        assert "Mail Sync Status" in result.output

    def test_bad_config_reports_and_exits(self, runner: CliRunner, tmp_path: Path) -> None:
        result = _invoke(runner, tmp_path / "missing.yaml", "status")

        assert result.exit_code == 1
        assert "Config error" in result.output
