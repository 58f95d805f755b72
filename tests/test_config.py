"""Test configuration functionality."""

import tempfile
from pathlib import Path

import pytest

from hooplatent.config import (
    HooplatentConfig,
    LogLevel,
    get_config,
    reset_config,
    update_config,
)


def test_config_defaults(monkeypatch):
    """Test default configuration values."""
    for name in ("HOOPLATENT_LOG_LEVEL", "HOOPLATENT_SEED", "HOOPLATENT_STORE_PATH"):
        monkeypatch.delenv(name, raising=False)
    config = HooplatentConfig()

    assert config.log_level == LogLevel.INFO
    assert config.seed is None
    assert config.store_path is None
    assert config.engine_config_path == Path("config/engine.yaml")


def test_config_from_env(monkeypatch):
    """Test configuration from environment variables."""
    monkeypatch.delenv("HOOPLATENT_LOG_LEVEL", raising=False)
    monkeypatch.delenv("HOOPLATENT_SEED", raising=False)

    monkeypatch.setenv("HOOPLATENT_LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("HOOPLATENT_SEED", "123")
    monkeypatch.setenv("HOOPLATENT_DATA_DIR", "/tmp/hooplatent-data")

    config = HooplatentConfig()

    assert config.log_level == LogLevel.DEBUG
    assert config.seed == 123
    assert config.data_dir == Path("/tmp/hooplatent-data")


def test_get_config():
    """Test getting global configuration."""
    config = get_config()
    assert isinstance(config, HooplatentConfig)


def test_update_config():
    """Test updating configuration."""
    update_config(seed=99)
    assert get_config().seed == 99

    # Reset for other tests
    reset_config()


def test_update_config_invalid_key():
    """Test updating configuration with invalid key."""
    with pytest.raises(ValueError, match="Unknown configuration option"):
        update_config(invalid_key="value")


def test_reset_config(monkeypatch):
    """Test resetting configuration to defaults."""
    monkeypatch.delenv("HOOPLATENT_LOG_LEVEL", raising=False)
    update_config(log_level=LogLevel.ERROR)
    assert get_config().log_level == LogLevel.ERROR

    reset_config()
    assert get_config().log_level == LogLevel.INFO


def test_store_path_falls_back_to_data_dir():
    """Test the posterior database defaults to a file inside the data dir."""
    with tempfile.TemporaryDirectory() as temp_dir:
        config = HooplatentConfig(HOOPLATENT_DATA_DIR=Path(temp_dir) / "data")

        assert config.resolved_store_path() == Path(temp_dir) / "data" / "posteriors.sqlite3"

        explicit = HooplatentConfig(HOOPLATENT_STORE_PATH=Path(temp_dir) / "custom.sqlite3")
        assert explicit.resolved_store_path() == Path(temp_dir) / "custom.sqlite3"
