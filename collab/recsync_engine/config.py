"""
Configuration management for the RecSync engine.

Engine configuration is done via environment variables with sensible
defaults for local development. This module provides typed configuration
classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set an explicit storage backend and data dir
    - Secrets are never logged

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Deprecate settings by logging warnings but continuing to support them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class StorageBackend(Enum):
    """Supported record / change log store back-ends."""

    MEMORY = "memory"
    SQLITE = "sqlite"


class PendingPolicy(Enum):
    """What a restore does with pending drafts of the fields it restores."""

    FLUSH = "flush"
    DISCARD = "discard"


@dataclass(frozen=True)
class SchedulerConfig:
    """Coalescing scheduler configuration.

    Attributes:
        quiet_period_ms: Time without edits to a record before it is flushed
        flush_on_close: Whether closing a view flushes dirty drafts
    """

    quiet_period_ms: int = 500
    flush_on_close: bool = True

    @classmethod
    def from_env(cls) -> SchedulerConfig:
        """Load configuration from environment variables."""
        return cls(
            quiet_period_ms=int(os.getenv("RECSYNC_QUIET_PERIOD_MS", "500")),
            flush_on_close=os.getenv("RECSYNC_FLUSH_ON_CLOSE", "true").lower() == "true",
        )


@dataclass(frozen=True)
class RestoreConfig:
    """Restore engine configuration.

    Attributes:
        pending_policy: flush pending drafts before restoring, or discard them
    """

    pending_policy: PendingPolicy = PendingPolicy.FLUSH

    @classmethod
    def from_env(cls) -> RestoreConfig:
        """Load configuration from environment variables."""
        raw = os.getenv("RECSYNC_RESTORE_PENDING", "flush").lower()
        try:
            policy = PendingPolicy(raw)
        except ValueError:
            raise ValueError(
                f"Invalid RECSYNC_RESTORE_PENDING '{raw}'. Must be one of: flush, discard"
            )
        return cls(pending_policy=policy)


@dataclass(frozen=True)
class StorageConfig:
    """Store configuration.

    Attributes:
        backend: Which store back-end to use
        data_dir: Directory for SQLite database files
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    backend: StorageBackend = StorageBackend.MEMORY
    data_dir: str = "./data"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        raw = os.getenv("RECSYNC_STORAGE", "memory").lower()
        try:
            backend = StorageBackend(raw)
        except ValueError:
            raise ValueError(f"Invalid RECSYNC_STORAGE '{raw}'. Must be one of: memory, sqlite")

        return cls(
            backend=backend,
            data_dir=os.getenv("RECSYNC_DATA_DIR", "./data"),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class FeedConfig:
    """Change feed configuration.

    Attributes:
        subscriber_queue_size: Maximum buffered notifications per subscriber
    """

    subscriber_queue_size: int = 1000

    @classmethod
    def from_env(cls) -> FeedConfig:
        """Load configuration from environment variables."""
        return cls(
            subscriber_queue_size=int(os.getenv("RECSYNC_FEED_QUEUE_SIZE", "1000")),
        )


@dataclass(frozen=True)
class HistoryConfig:
    """Change history paging configuration.

    Attributes:
        page_size: Entries fetched per change log query
    """

    page_size: int = 50

    @classmethod
    def from_env(cls) -> HistoryConfig:
        """Load configuration from environment variables."""
        return cls(page_size=int(os.getenv("RECSYNC_HISTORY_PAGE_SIZE", "50")))


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class EngineConfig:
    """Complete engine configuration.

    Attributes:
        scheduler: Coalescing scheduler configuration
        restore: Restore engine configuration
        storage: Store configuration
        feed: Change feed configuration
        history: Change history configuration
        observability: Logging configuration
    """

    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    restore: RestoreConfig = field(default_factory=RestoreConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    feed: FeedConfig = field(default_factory=FeedConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If configuration is missing or invalid.
        """
        config = cls(
            scheduler=SchedulerConfig.from_env(),
            restore=RestoreConfig.from_env(),
            storage=StorageConfig.from_env(),
            feed=FeedConfig.from_env(),
            history=HistoryConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.scheduler.quiet_period_ms < 0:
            raise ValueError("RECSYNC_QUIET_PERIOD_MS must be >= 0")
        if self.feed.subscriber_queue_size <= 0:
            raise ValueError("RECSYNC_FEED_QUEUE_SIZE must be > 0")
        if self.history.page_size <= 0:
            raise ValueError("RECSYNC_HISTORY_PAGE_SIZE must be > 0")
        if self.observability.log_format not in ("json", "text"):
            raise ValueError("LOG_FORMAT must be one of: json, text")

        if self.storage.backend == StorageBackend.SQLITE:
            if not self.storage.data_dir:
                raise ValueError("RECSYNC_DATA_DIR is required when RECSYNC_STORAGE=sqlite")
            if not os.path.exists(self.storage.data_dir):
                logger.warning(
                    f"Data directory does not exist: {self.storage.data_dir}. "
                    "It will be created on first write."
                )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Engine configuration loaded",
            extra={
                "storage_backend": self.storage.backend.value,
                "data_dir": self.storage.data_dir
                if self.storage.backend == StorageBackend.SQLITE
                else None,
                "quiet_period_ms": self.scheduler.quiet_period_ms,
                "restore_pending_policy": self.restore.pending_policy.value,
                "history_page_size": self.history.page_size,
                "log_level": self.observability.log_level,
            },
        )
