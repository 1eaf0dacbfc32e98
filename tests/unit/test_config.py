"""
Unit tests for engine configuration.
"""

import pytest

from collab.recsync_engine.config import (
    EngineConfig,
    PendingPolicy,
    RestoreConfig,
    SchedulerConfig,
    StorageBackend,
    StorageConfig,
)
from collab.recsync_engine.stores import (
    InMemoryChangeLogStore,
    InMemoryRecordStore,
    SqliteChangeLogStore,
    SqliteRecordStore,
    create_stores,
)


class TestEngineConfig:
    """Tests for loading and validating configuration."""

    def test_defaults(self, monkeypatch):
        for name in ("RECSYNC_QUIET_PERIOD_MS", "RECSYNC_STORAGE", "RECSYNC_RESTORE_PENDING"):
            monkeypatch.delenv(name, raising=False)

        config = EngineConfig.from_env()

        assert config.scheduler.quiet_period_ms == 500
        assert config.scheduler.flush_on_close is True
        assert config.restore.pending_policy == PendingPolicy.FLUSH
        assert config.storage.backend == StorageBackend.MEMORY

    def test_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("RECSYNC_QUIET_PERIOD_MS", "250")
        monkeypatch.setenv("RECSYNC_FLUSH_ON_CLOSE", "false")
        monkeypatch.setenv("RECSYNC_RESTORE_PENDING", "DISCARD")
        monkeypatch.setenv("RECSYNC_STORAGE", "sqlite")
        monkeypatch.setenv("RECSYNC_DATA_DIR", str(tmp_path))

        config = EngineConfig.from_env()

        assert config.scheduler == SchedulerConfig(quiet_period_ms=250, flush_on_close=False)
        assert config.restore.pending_policy == PendingPolicy.DISCARD
        assert config.storage.backend == StorageBackend.SQLITE
        assert config.storage.data_dir == str(tmp_path)

    def test_invalid_policy(self, monkeypatch):
        monkeypatch.setenv("RECSYNC_RESTORE_PENDING", "ignore")
        with pytest.raises(ValueError, match="RECSYNC_RESTORE_PENDING"):
            RestoreConfig.from_env()

    def test_invalid_backend(self, monkeypatch):
        monkeypatch.setenv("RECSYNC_STORAGE", "postgres")
        with pytest.raises(ValueError, match="RECSYNC_STORAGE"):
            StorageConfig.from_env()

    def test_negative_quiet_period(self):
        config = EngineConfig(scheduler=SchedulerConfig(quiet_period_ms=-1))
        with pytest.raises(ValueError, match="QUIET_PERIOD"):
            config.validate()

    def test_configs_are_frozen(self):
        with pytest.raises(AttributeError):
            SchedulerConfig().quiet_period_ms = 1


class TestCreateStores:
    def test_memory(self):
        record_store, change_log = create_stores(EngineConfig())
        assert isinstance(record_store, InMemoryRecordStore)
        assert isinstance(change_log, InMemoryChangeLogStore)

    def test_sqlite(self, tmp_path):
        config = EngineConfig(
            storage=StorageConfig(backend=StorageBackend.SQLITE, data_dir=str(tmp_path))
        )
        record_store, change_log = create_stores(config)
        assert isinstance(record_store, SqliteRecordStore)
        assert isinstance(change_log, SqliteChangeLogStore)
