"""
SQLite record and change log stores.

This module keeps records and their change log in two SQLite files under a
data directory:
- records.db: current record state with version and last-modified stamps
- change_log.db: the append-only audit trail

Invariants:
    - All write operations are atomic (single BEGIN IMMEDIATE transaction)
    - records.version is bumped in the same transaction as the field write
    - change_log rows are never updated or deleted (enforced by triggers)
    - change_log.sequence is monotonic in append order

How to change safely:
    - Schema migrations must be backward compatible
    - Use transactions for all write operations
    - Publish to the change feed only after COMMIT

Table schema:
    records:
        - record_id TEXT PRIMARY KEY
        - fields_json TEXT
        - version INTEGER
        - last_modified_by TEXT
        - last_modified_at INTEGER (Unix ms)

    change_log:
        - sequence INTEGER PRIMARY KEY AUTOINCREMENT
        - entry_id TEXT UNIQUE
        - record_id TEXT
        - action_type TEXT
        - fields_json TEXT
        - before_json TEXT
        - after_json TEXT
        - actor_id TEXT
        - created_at INTEGER (Unix ms)
        - metadata_json TEXT
        - INDEX on (record_id, sequence DESC)
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from ..errors import LogEntryNotFoundError, RecordNotFoundError, StoreError
from ..model import ActionType, ChangeLogEntry, ChangeNotification, CommittedUpdate, Record, now_ms
from .base import NotificationPredicate
from .feed import ChangeFeed, Subscription

logger = logging.getLogger(__name__)


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


class _SqliteDatabase:
    """One SQLite file with per-operation connections.

    Thread safety:
        Each database connection is created per-operation.
        SQLite handles concurrent access via WAL mode.
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        path: Path,
        schema: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        self.path = path
        self.schema = schema
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._initialized = False

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Get a configured connection, creating the schema on first use."""
        self.path.parent.mkdir(parents=True, exist_ok=True)

        try:
            conn = sqlite3.connect(
                str(self.path),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,  # Autocommit by default, explicit transactions
            )
        except sqlite3.Error as e:
            raise StoreError(f"Cannot open {self.path}: {e}", operation="connect") from e

        conn.row_factory = sqlite3.Row
        try:
            try:
                conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
                if self.wal_mode:
                    conn.execute("PRAGMA journal_mode = WAL")
                conn.execute("PRAGMA synchronous = NORMAL")
                if not self._initialized:
                    conn.executescript(self.schema)
                    self._initialized = True
            except sqlite3.Error as e:
                raise StoreError(f"Cannot prepare {self.path}: {e}", operation="connect") from e
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Run a block inside BEGIN IMMEDIATE ... COMMIT.

        sqlite3 errors are wrapped into StoreError; engine errors raised
        inside the block roll back and propagate unchanged.
        """
        with self.connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                conn.execute("ROLLBACK")
                raise StoreError(f"{operation} failed: {e}", operation=operation) from e
            except Exception:
                conn.execute("ROLLBACK")
                raise


_RECORDS_SCHEMA = """
    CREATE TABLE IF NOT EXISTS schema_version (
        version INTEGER PRIMARY KEY,
        applied_at INTEGER NOT NULL
    );

    CREATE TABLE IF NOT EXISTS records (
        record_id TEXT PRIMARY KEY,
        fields_json TEXT NOT NULL DEFAULT '{}',
        version INTEGER NOT NULL,
        last_modified_by TEXT,
        last_modified_at INTEGER
    );

    INSERT OR IGNORE INTO schema_version (version, applied_at)
    VALUES (1, strftime('%s', 'now') * 1000);
"""

_CHANGE_LOG_SCHEMA = """
    CREATE TABLE IF NOT EXISTS schema_version (
        version INTEGER PRIMARY KEY,
        applied_at INTEGER NOT NULL
    );

    CREATE TABLE IF NOT EXISTS change_log (
        sequence INTEGER PRIMARY KEY AUTOINCREMENT,
        entry_id TEXT NOT NULL UNIQUE,
        record_id TEXT NOT NULL,
        action_type TEXT NOT NULL,
        fields_json TEXT NOT NULL,
        before_json TEXT,
        after_json TEXT,
        actor_id TEXT NOT NULL,
        created_at INTEGER NOT NULL,
        metadata_json TEXT NOT NULL DEFAULT '{}'
    );

    CREATE INDEX IF NOT EXISTS idx_change_log_record
        ON change_log(record_id, sequence DESC);

    -- Append-only
    CREATE TRIGGER IF NOT EXISTS change_log_no_update
        BEFORE UPDATE ON change_log
        BEGIN SELECT RAISE(ABORT, 'change_log is append-only'); END;

    CREATE TRIGGER IF NOT EXISTS change_log_no_delete
        BEFORE DELETE ON change_log
        BEGIN SELECT RAISE(ABORT, 'change_log is append-only'); END;

    INSERT OR IGNORE INTO schema_version (version, applied_at)
    VALUES (1, strftime('%s', 'now') * 1000);
"""


def _row_to_record(row: sqlite3.Row) -> Record:
    return Record(
        record_id=row["record_id"],
        fields=json.loads(row["fields_json"]),
        version=row["version"],
        last_modified_by=row["last_modified_by"],
        last_modified_at=row["last_modified_at"],
    )


def _row_to_entry(row: sqlite3.Row) -> ChangeLogEntry:
    return ChangeLogEntry(
        entry_id=row["entry_id"],
        record_id=row["record_id"],
        action_type=ActionType(row["action_type"]),
        fields=tuple(json.loads(row["fields_json"])),
        before_value=json.loads(row["before_json"]) if row["before_json"] is not None else None,
        after_value=json.loads(row["after_json"]) if row["after_json"] is not None else None,
        actor_id=row["actor_id"],
        created_at=row["created_at"],
        metadata=json.loads(row["metadata_json"]),
        sequence=row["sequence"],
    )


class SqliteRecordStore:
    """SQLite implementation of RecordStore.

    Example:
        >>> store = SqliteRecordStore("/var/lib/recsync")
        >>> await store.create("P1", {"name": "홍길동"}, actor_id="admin")
        >>> committed = await store.update("P1", {"memo": "VIP"}, actor_id="user:42")
    """

    def __init__(
        self,
        data_dir: str,
        feed: ChangeFeed | None = None,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        self.data_dir = Path(data_dir)
        self.feed = feed or ChangeFeed()
        self._db = _SqliteDatabase(
            self.data_dir / "records.db",
            _RECORDS_SCHEMA,
            wal_mode=wal_mode,
            busy_timeout_ms=busy_timeout_ms,
        )
        self._lock = asyncio.Lock()

    async def create(
        self,
        record_id: str,
        fields: dict[str, Any],
        actor_id: str,
    ) -> Record:
        now = now_ms()
        async with self._lock:
            with self._db.transaction("create") as conn:
                cursor = conn.execute("SELECT 1 FROM records WHERE record_id = ?", (record_id,))
                if cursor.fetchone() is not None:
                    raise StoreError(f"Record already exists: {record_id}", operation="create")
                conn.execute(
                    """
                    INSERT INTO records (record_id, fields_json, version,
                                         last_modified_by, last_modified_at)
                    VALUES (?, ?, 1, ?, ?)
                    """,
                    (record_id, _dumps(fields), actor_id, now),
                )

        logger.debug("Created record", extra={"record_id": record_id})
        self.feed.publish(
            ChangeNotification(
                record_id=record_id,
                changed_fields=dict(fields),
                version=1,
                actor_id=actor_id,
            )
        )
        return Record(
            record_id=record_id,
            fields=dict(fields),
            version=1,
            last_modified_by=actor_id,
            last_modified_at=now,
        )

    async def get(self, record_id: str) -> Record:
        try:
            with self._db.connect() as conn:
                row = conn.execute(
                    "SELECT * FROM records WHERE record_id = ?", (record_id,)
                ).fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"get failed: {e}", operation="get") from e

        if row is None:
            raise RecordNotFoundError(record_id)
        return _row_to_record(row)

    async def update(
        self,
        record_id: str,
        patch: dict[str, Any],
        *,
        actor_id: str,
        origin: str | None = None,
    ) -> CommittedUpdate:
        """Merge a patch into a record and bump its version.

        Uses PATCH semantics - merges with the existing fields. The
        pre-image of the patched fields is read in the same transaction.
        """
        now = now_ms()
        async with self._lock:
            with self._db.transaction("update") as conn:
                row = conn.execute(
                    "SELECT * FROM records WHERE record_id = ?", (record_id,)
                ).fetchone()
                if row is None:
                    raise RecordNotFoundError(record_id)

                fields = json.loads(row["fields_json"])
                previous = {name: fields.get(name) for name in patch}
                fields.update(patch)
                version = row["version"] + 1

                conn.execute(
                    """
                    UPDATE records
                    SET fields_json = ?, version = ?, last_modified_by = ?, last_modified_at = ?
                    WHERE record_id = ?
                    """,
                    (_dumps(fields), version, actor_id, now, record_id),
                )

        self.feed.publish(
            ChangeNotification(
                record_id=record_id,
                changed_fields=dict(patch),
                version=version,
                actor_id=actor_id,
                origin=origin,
            )
        )
        logger.debug(
            "Updated record",
            extra={"record_id": record_id, "version": version, "fields": list(patch)},
        )
        record = Record(
            record_id=record_id,
            fields=fields,
            version=version,
            last_modified_by=actor_id,
            last_modified_at=now,
        )
        return CommittedUpdate(record=record, previous=previous)

    def subscribe(self, predicate: NotificationPredicate | None = None) -> Subscription:
        return self.feed.subscribe(predicate)


class SqliteChangeLogStore:
    """SQLite implementation of ChangeLogStore.

    Example:
        >>> log = SqliteChangeLogStore("/var/lib/recsync")
        >>> await log.append(entry)
        >>> entries = await log.list("P1", limit=20)
    """

    def __init__(
        self,
        data_dir: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        self.data_dir = Path(data_dir)
        self._db = _SqliteDatabase(
            self.data_dir / "change_log.db",
            _CHANGE_LOG_SCHEMA,
            wal_mode=wal_mode,
            busy_timeout_ms=busy_timeout_ms,
        )
        self._lock = asyncio.Lock()

    async def append(self, entry: ChangeLogEntry) -> str:
        async with self._lock:
            with self._db.transaction("append") as conn:
                conn.execute(
                    """
                    INSERT OR IGNORE INTO change_log (
                        entry_id, record_id, action_type, fields_json, before_json,
                        after_json, actor_id, created_at, metadata_json
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        entry.entry_id,
                        entry.record_id,
                        entry.action_type.value,
                        _dumps(list(entry.fields)),
                        _dumps(entry.before_value),
                        _dumps(entry.after_value),
                        entry.actor_id,
                        entry.created_at,
                        _dumps(entry.metadata),
                    ),
                )

        logger.debug(
            "Appended change log entry",
            extra={
                "entry_id": entry.entry_id,
                "record_id": entry.record_id,
                "action_type": entry.action_type.value,
            },
        )
        return entry.entry_id

    async def get(self, entry_id: str) -> ChangeLogEntry:
        try:
            with self._db.connect() as conn:
                row = conn.execute(
                    "SELECT * FROM change_log WHERE entry_id = ?", (entry_id,)
                ).fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"get failed: {e}", operation="get") from e

        if row is None:
            raise LogEntryNotFoundError(entry_id)
        return _row_to_entry(row)

    async def list(
        self,
        record_id: str,
        limit: int = 50,
        before_sequence: int | None = None,
    ) -> list[ChangeLogEntry]:
        query = "SELECT * FROM change_log WHERE record_id = ?"
        params: list[Any] = [record_id]
        if before_sequence is not None:
            query += " AND sequence < ?"
            params.append(before_sequence)
        query += " ORDER BY sequence DESC LIMIT ?"
        params.append(limit)

        try:
            with self._db.connect() as conn:
                rows = conn.execute(query, params).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"list failed: {e}", operation="list") from e

        return [_row_to_entry(row) for row in rows]
