"""
Store back-ends for the RecSync engine.

The engine depends only on the RecordStore and ChangeLogStore protocols;
this package provides in-memory and SQLite implementations plus the
in-process change feed both record stores publish to.
"""

from __future__ import annotations

import logging
from typing import Tuple

from ..config import EngineConfig, StorageBackend
from .base import ChangeLogStore, NotificationPredicate, RecordStore
from .feed import ChangeFeed, Subscription
from .memory import InMemoryChangeLogStore, InMemoryRecordStore
from .sqlite import SqliteChangeLogStore, SqliteRecordStore

logger = logging.getLogger(__name__)


def create_stores(config: EngineConfig) -> Tuple[RecordStore, ChangeLogStore]:
    """Create the record store and change log store for a configuration.

    Args:
        config: Engine configuration

    Returns:
        Tuple of (record store, change log store)
    """
    feed = ChangeFeed(queue_size=config.feed.subscriber_queue_size)
    storage = config.storage

    if storage.backend == StorageBackend.SQLITE:
        logger.info("Using SQLite stores", extra={"data_dir": storage.data_dir})
        return (
            SqliteRecordStore(
                storage.data_dir,
                feed=feed,
                wal_mode=storage.wal_mode,
                busy_timeout_ms=storage.busy_timeout_ms,
            ),
            SqliteChangeLogStore(
                storage.data_dir,
                wal_mode=storage.wal_mode,
                busy_timeout_ms=storage.busy_timeout_ms,
            ),
        )

    logger.info("Using in-memory stores")
    return InMemoryRecordStore(feed=feed), InMemoryChangeLogStore()


__all__ = [
    "ChangeFeed",
    "ChangeLogStore",
    "InMemoryChangeLogStore",
    "InMemoryRecordStore",
    "NotificationPredicate",
    "RecordStore",
    "SqliteChangeLogStore",
    "SqliteRecordStore",
    "Subscription",
    "create_stores",
]
