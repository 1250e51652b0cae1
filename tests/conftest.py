"""Pytest fixtures and configuration for mail sync engine tests.

Provides common fixtures for configuration, database, a deterministic
clock, and fakes for the provider adapter, AI layer and notification sink.
"""

import os
from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest
from fakes import FakeAdapter, FakeAILayer, FakeClock, RecordingSink

from mailsync.config_schema import AppConfig
from mailsync.db.store import DatabaseStore


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def temp_config_dir(tmp_path: Path) -> Path:
    """Create a temporary config directory."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Create a temporary data directory."""
    data = tmp_path / "data"
    data.mkdir()
    return data


@pytest.fixture
def sample_config_yaml(data_dir: Path) -> str:
    """Return a minimal valid config.yaml content."""
    return f"""
schema_version: 1
timezone: "UTC"

storage:
  db_path: "{data_dir / 'mailsync.db'}"

sync:
  interval_minutes: 10
  max_lookback_days: 7

learning:
  day_of_week: "mon"
  time: "03:30"
"""


@pytest.fixture
def sample_config_dict(data_dir: Path) -> dict[str, Any]:
    """Return a minimal valid config as a dictionary."""
    return {
        "schema_version": 1,
        "timezone": "UTC",
        "storage": {"db_path": str(data_dir / "mailsync.db")},
        "sync": {"fetch_timeout_seconds": 1, "provider_rate_per_second": 100.0},
    }


@pytest.fixture
def sample_config(sample_config_dict: dict[str, Any]) -> AppConfig:
    """Return a minimal valid AppConfig instance."""
    return AppConfig(**sample_config_dict)


@pytest.fixture
def config_file(temp_config_dir: Path, sample_config_yaml: str) -> Path:
    """Create a temporary config file with valid content."""
    config_path = temp_config_dir / "config.yaml"
    config_path.write_text(sample_config_yaml)
    return config_path


@pytest.fixture
def set_config_env(config_file: Path) -> Generator[None, None, None]:
    """Set the MAILSYNC_CONFIG_PATH environment variable."""
    old_value = os.environ.get("MAILSYNC_CONFIG_PATH")
    os.environ["MAILSYNC_CONFIG_PATH"] = str(config_file)
    yield
    if old_value is None:
        del os.environ["MAILSYNC_CONFIG_PATH"]
    else:
        os.environ["MAILSYNC_CONFIG_PATH"] = old_value


# ---------------------------------------------------------------------------
# Store and fakes
# ---------------------------------------------------------------------------


@pytest.fixture
async def store(data_dir: Path) -> DatabaseStore:
    """Return an initialized DatabaseStore."""
    s = DatabaseStore(data_dir / "test.db")
    await s.initialize()
    return s


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def ai_layer(store: DatabaseStore) -> FakeAILayer:
    return FakeAILayer(store)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()
