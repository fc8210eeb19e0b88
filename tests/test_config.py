"""
Tests for purge configuration.
"""

import json

import pytest
from pydantic import ValidationError

from rx_purge import config as config_module
from rx_purge.config import LogLevel, PurgeConfig, configure, get_config, set_config


@pytest.fixture(autouse=True)
def reset_global_config():
    """Keep the process-wide configuration isolated per test."""
    saved = config_module._config
    config_module._config = None
    yield
    config_module._config = saved


class TestPurgeConfig:
    """Test defaults and validation."""

    def test_defaults(self):
        config = PurgeConfig()

        assert config.block_size == 100000
        assert config.max_to_delete == 25000000
        assert config.chunk_days == 7
        assert config.max_execs_per_chunk == 1000
        assert config.retention_days == 36500
        assert config.reclaim_prescribers is True
        assert config.log_level == LogLevel.INFO

    @pytest.mark.parametrize(
        "field, value",
        [
            ("block_size", 0),
            ("block_size", 2000000),
            ("retention_days", 0),
            ("chunk_days", 0),
            ("max_to_delete", -1),
            ("reference_check_chunk_size", 10000),
        ],
    )
    def test_rejects_bad_values(self, field, value):
        with pytest.raises(ValidationError):
            PurgeConfig(**{field: value})

    def test_to_dict_is_json_ready(self):
        data = PurgeConfig().to_dict()
        assert data["log_level"] == "INFO"
        json.dumps(data)


class TestConfigSources:
    """Test environment and file loading."""

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("RXPURGE_RETENTION_DAYS", "730")
        monkeypatch.setenv("RXPURGE_RECLAIM_PRESCRIBERS", "no")
        monkeypatch.setenv("RXPURGE_INTER_CHUNK_PAUSE_SECONDS", "1.5")
        monkeypatch.setenv("RXPURGE_LOG_LEVEL", "debug")

        config = PurgeConfig.from_env()

        assert config.retention_days == 730
        assert config.reclaim_prescribers is False
        assert config.inter_chunk_pause_seconds == 1.5
        assert config.log_level == LogLevel.DEBUG

    def test_from_env_bad_value_fails_validation(self, monkeypatch):
        monkeypatch.setenv("RXPURGE_BLOCK_SIZE", "lots")
        with pytest.raises(ValidationError):
            PurgeConfig.from_env()

    def test_from_json_file(self, tmp_path):
        path = tmp_path / "purge.json"
        path.write_text(json.dumps({"block_size": 5000, "chunk_days": 3}))

        config = PurgeConfig.from_file(path)

        assert config.block_size == 5000
        assert config.chunk_days == 3

    def test_from_yaml_file(self, tmp_path):
        path = tmp_path / "purge.yaml"
        path.write_text("retention_days: 400\nmax_group_depth: 4\n")

        config = PurgeConfig.from_file(path)

        assert config.retention_days == 400
        assert config.max_group_depth == 4

    def test_unsupported_file_type(self, tmp_path):
        path = tmp_path / "purge.ini"
        path.write_text("[purge]\n")
        with pytest.raises(ValueError):
            PurgeConfig.from_file(path)


class TestGlobalConfig:
    """Test the process-wide default configuration."""

    def test_get_config_reads_environment(self, monkeypatch):
        monkeypatch.setenv("RXPURGE_CHUNK_DAYS", "14")
        assert get_config().chunk_days == 14

    def test_set_and_configure(self):
        set_config(PurgeConfig(block_size=10))
        updated = configure(max_to_delete=99)

        assert updated.block_size == 10
        assert updated.max_to_delete == 99
        assert get_config() is updated
