"""
In-memory record and change log stores.

This module provides store back-ends that keep everything in memory for:
- Unit tests
- Integration tests of the sync engine
- Local development without a database

Invariants:
    - All data is lost on process exit
    - Provides the same ordering and atomicity guarantees as the SQLite stores
    - Returned records are copies; callers cannot mutate stored state

How to change safely:
    - Keep interfaces compatible with the protocols in base.py
    - Add failure-injection helpers rather than special-casing tests elsewhere
"""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any, Dict, List, Optional

from ..errors import LogEntryNotFoundError, RecordNotFoundError, StoreError
from ..model import ChangeLogEntry, ChangeNotification, CommittedUpdate, Record, now_ms
from .base import NotificationPredicate
from .feed import ChangeFeed, Subscription

logger = logging.getLogger(__name__)


class InMemoryRecordStore:
    """In-memory implementation of RecordStore.

    Writes are serialized by an asyncio lock. Tests can inject failures and
    hold writes "in flight" to exercise races deterministically.

    Example:
        >>> store = InMemoryRecordStore()
        >>> await store.create("P1", {"call_status": "대기중"}, actor_id="admin")
        >>> store.hold_updates()
        >>> task = asyncio.create_task(store.update("P1", {...}, actor_id="u1"))
        >>> # the update is now in flight
        >>> store.release_updates()
    """

    def __init__(self, feed: Optional[ChangeFeed] = None) -> None:
        self.feed = feed or ChangeFeed()
        self._records: Dict[str, Record] = {}
        self._lock = asyncio.Lock()
        self._failures: List[Exception] = []
        self._gate: Optional[asyncio.Event] = None
        self._in_flight = 0
        self.update_count = 0

    async def create(
        self,
        record_id: str,
        fields: Dict[str, Any],
        actor_id: str,
    ) -> Record:
        """Create a record at version 1."""
        async with self._lock:
            if record_id in self._records:
                raise StoreError(f"Record already exists: {record_id}", operation="create")

            record = Record(
                record_id=record_id,
                fields=copy.deepcopy(fields),
                version=1,
                last_modified_by=actor_id,
                last_modified_at=now_ms(),
            )
            self._records[record_id] = record

        self.feed.publish(
            ChangeNotification(
                record_id=record_id,
                changed_fields=copy.deepcopy(fields),
                version=1,
                actor_id=actor_id,
            )
        )
        return copy.deepcopy(record)

    async def get(self, record_id: str) -> Record:
        record = self._records.get(record_id)
        if record is None:
            raise RecordNotFoundError(record_id)
        return copy.deepcopy(record)

    async def update(
        self,
        record_id: str,
        patch: Dict[str, Any],
        *,
        actor_id: str,
        origin: Optional[str] = None,
    ) -> CommittedUpdate:
        """Merge a patch into a record.

        Raises:
            RecordNotFoundError: If the record does not exist
            StoreError: If a failure was injected
        """
        self._in_flight += 1
        try:
            if self._gate is not None:
                await self._gate.wait()

            if self._failures:
                error = self._failures.pop(0)
                logger.debug("Injected update failure", extra={"record_id": record_id})
                raise error

            async with self._lock:
                current = self._records.get(record_id)
                if current is None:
                    raise RecordNotFoundError(record_id)

                previous = {name: copy.deepcopy(current.fields.get(name)) for name in patch}
                fields = copy.deepcopy(current.fields)
                fields.update(copy.deepcopy(patch))
                record = Record(
                    record_id=record_id,
                    fields=fields,
                    version=current.version + 1,
                    last_modified_by=actor_id,
                    last_modified_at=now_ms(),
                )
                self._records[record_id] = record
                self.update_count += 1
        finally:
            self._in_flight -= 1

        self.feed.publish(
            ChangeNotification(
                record_id=record_id,
                changed_fields=copy.deepcopy(patch),
                version=record.version,
                actor_id=actor_id,
                origin=origin,
            )
        )
        logger.debug(
            "Record updated",
            extra={"record_id": record_id, "version": record.version, "fields": list(patch)},
        )
        return CommittedUpdate(record=copy.deepcopy(record), previous=previous)

    def subscribe(self, predicate: Optional[NotificationPredicate] = None) -> Subscription:
        return self.feed.subscribe(predicate)

    # Testing helpers

    def fail_next_update(self, error: Optional[Exception] = None) -> None:
        """Make the next update() raise (StoreError by default)."""
        self._failures.append(error or StoreError("Injected update failure", operation="update"))

    def hold_updates(self) -> None:
        """Block update() calls until release_updates() is called."""
        if self._gate is None:
            self._gate = asyncio.Event()

    def release_updates(self) -> None:
        """Let held update() calls proceed."""
        if self._gate is not None:
            self._gate.set()
            self._gate = None

    @property
    def in_flight(self) -> int:
        """Number of update() calls currently executing."""
        return self._in_flight

    async def wait_for_in_flight(self, count: int = 1, timeout: float = 2.0) -> bool:
        """Wait until at least `count` updates are in flight."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            if self._in_flight >= count:
                return True
            await asyncio.sleep(0)
        return False

    def peek(self, record_id: str) -> Optional[Record]:
        """Get a record without going through the async API."""
        record = self._records.get(record_id)
        return copy.deepcopy(record) if record else None


class InMemoryChangeLogStore:
    """In-memory implementation of ChangeLogStore.

    Example:
        >>> log = InMemoryChangeLogStore()
        >>> entry_id = await log.append(entry)
        >>> recent = await log.list("P1", limit=10)
    """

    def __init__(self) -> None:
        self._entries: List[ChangeLogEntry] = []
        self._by_id: Dict[str, ChangeLogEntry] = {}
        self._next_sequence = 1
        self._failures: List[Exception] = []
        self._lock = asyncio.Lock()

    async def append(self, entry: ChangeLogEntry) -> str:
        if self._failures:
            raise self._failures.pop(0)

        async with self._lock:
            if entry.entry_id in self._by_id:
                return entry.entry_id

            stored = entry.with_sequence(self._next_sequence)
            self._next_sequence += 1
            self._entries.append(stored)
            self._by_id[stored.entry_id] = stored

        logger.debug(
            "Change log entry appended",
            extra={
                "entry_id": entry.entry_id,
                "record_id": entry.record_id,
                "action_type": entry.action_type.value,
            },
        )
        return entry.entry_id

    async def get(self, entry_id: str) -> ChangeLogEntry:
        entry = self._by_id.get(entry_id)
        if entry is None:
            raise LogEntryNotFoundError(entry_id)
        return entry

    async def list(
        self,
        record_id: str,
        limit: int = 50,
        before_sequence: Optional[int] = None,
    ) -> List[ChangeLogEntry]:
        result = []
        for entry in reversed(self._entries):
            if entry.record_id != record_id:
                continue
            if before_sequence is not None and (entry.sequence or 0) >= before_sequence:
                continue
            result.append(entry)
            if len(result) >= limit:
                break
        return result

    # Testing helpers

    def fail_next_append(self, error: Optional[Exception] = None) -> None:
        """Make the next append() raise (StoreError by default)."""
        self._failures.append(error or StoreError("Injected append failure", operation="append"))

    def count(self, record_id: Optional[str] = None) -> int:
        if record_id is None:
            return len(self._entries)
        return sum(1 for e in self._entries if e.record_id == record_id)

    def all_entries(self) -> List[ChangeLogEntry]:
        """All entries in append order."""
        return list(self._entries)
