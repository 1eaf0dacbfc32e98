"""
Coalescing persistence scheduler for the RecSync engine.

The scheduler carries dirty drafts to the record store. Edits to a record
restart its quiet-period timer; when the timer fires, every field edited
since the last flush started is written in one update, and the write is
recorded in the change log.

Per-record state machine:

    IDLE --edit--> DIRTY --quiet period--> FLUSHING --ok--> IDLE
                     ^                         |
                     +---- edits in flight ----+---- failure ----> DIRTY

Invariants:
    - At most one flush per record is in flight (the record's exclusive lock)
    - A flush carries the union of fields edited since the last flush start
    - A flush whose fields all equal the confirmed values writes nothing
    - A failed flush keeps its drafts dirty and is reported, never retried
      silently
    - The change log entry is appended inside the exclusive section, so
      entries of one record follow commit order
    - Logged before values come from the store's pre-image of the write,
      not from this session's confirmed copy, which may lag other writers

How to change safely:
    - Never await anything between begin_flush() and the store update
      other than the update itself
    - Restore shares exclusive(); keep the lock per record, not global
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum

from ..errors import AuditError, ConflictWarning, PersistenceError
from ..model import ChangeLogEntry, Record, new_id, now_ms
from ..stores.base import RecordStore
from .audit import AuditWriter
from .drafts import DraftBuffer
from .timer import AsyncioTimerFactory, TimerFactory, TimerHandle

logger = logging.getLogger(__name__)


class FlushState(Enum):
    """Per-record scheduler state."""

    IDLE = "idle"
    DIRTY = "dirty"
    FLUSHING = "flushing"


@dataclass
class FlushResult:
    """Result of flushing one record.

    Attributes:
        record_id: Flushed record
        flush_id: Write token, stored in the log entry metadata
        fields: Fields written (empty when skipped)
        record: Committed record
        log_entry: Appended change log entry
        conflicts: Fields also changed remotely to a different value
        error: Set when the store write failed
        audit_error: Set when the write committed but the log append failed
        skipped: Nothing needed writing
        committed_at: Commit time (Unix ms)
    """

    record_id: str
    flush_id: str
    fields: tuple[str, ...] = ()
    record: Record | None = None
    log_entry: ChangeLogEntry | None = None
    conflicts: list[ConflictWarning] = field(default_factory=list)
    error: PersistenceError | None = None
    audit_error: AuditError | None = None
    skipped: bool = False
    committed_at: int | None = None

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class _RecordSchedule:
    state: FlushState = FlushState.IDLE
    pending: set[str] = field(default_factory=set)
    timer: TimerHandle | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    tasks: set[asyncio.Task] = field(default_factory=set)
    last_error: PersistenceError | None = None


class CoalescingScheduler:
    """Debounced, coalescing writer of dirty drafts.

    Example:
        >>> scheduler = CoalescingScheduler(buffer, store, audit, actor_id="user:42")
        >>> buffer.set_field("P1", "memo", "VIP")
        >>> scheduler.schedule("P1", ["memo"])
        >>> result = await scheduler.flush("P1")   # or wait for the quiet period
        >>> result.success
        True
    """

    def __init__(
        self,
        buffer: DraftBuffer,
        record_store: RecordStore,
        audit: AuditWriter,
        actor_id: str,
        *,
        origin: str | None = None,
        timers: TimerFactory | None = None,
        quiet_period_ms: int = 500,
        on_result: Callable[[FlushResult], None] | None = None,
    ) -> None:
        self.buffer = buffer
        self.record_store = record_store
        self.audit = audit
        self.actor_id = actor_id
        self.origin = origin
        self.timers = timers or AsyncioTimerFactory()
        self.quiet_period_ms = quiet_period_ms
        self.on_result = on_result
        self._records: dict[str, _RecordSchedule] = {}
        self._closed = False

    def _schedule_of(self, record_id: str) -> _RecordSchedule:
        sched = self._records.get(record_id)
        if sched is None:
            sched = _RecordSchedule()
            self._records[record_id] = sched
        return sched

    def state(self, record_id: str) -> FlushState:
        sched = self._records.get(record_id)
        return sched.state if sched else FlushState.IDLE

    def last_error(self, record_id: str) -> PersistenceError | None:
        sched = self._records.get(record_id)
        return sched.last_error if sched else None

    def pending_fields(self, record_id: str) -> set[str]:
        sched = self._records.get(record_id)
        return set(sched.pending) if sched else set()

    # Scheduling

    def schedule(self, record_id: str, fields: Iterable[str]) -> None:
        """Note edited fields and restart the record's quiet-period timer."""
        if self._closed:
            raise RuntimeError("Scheduler is closed")

        sched = self._schedule_of(record_id)
        sched.pending.update(fields)
        if sched.state == FlushState.IDLE:
            sched.state = FlushState.DIRTY

        if sched.timer is not None:
            sched.timer.cancel()
        sched.timer = self.timers.call_later(
            self.quiet_period_ms, lambda: self._on_timer(record_id)
        )

    def cancel(self, record_id: str, fields: Iterable[str] | None = None) -> None:
        """Stop flushing some (or all) fields of a record.

        Drafts are untouched; callers discard them explicitly.
        """
        sched = self._records.get(record_id)
        if sched is None:
            return

        if fields is None:
            sched.pending.clear()
        else:
            sched.pending.difference_update(fields)

        if not sched.pending and sched.timer is not None:
            sched.timer.cancel()
            sched.timer = None
        if sched.state == FlushState.DIRTY and not sched.pending:
            if not self.buffer.dirty_fields(record_id):
                sched.state = FlushState.IDLE

    def _on_timer(self, record_id: str) -> None:
        sched = self._schedule_of(record_id)
        sched.timer = None
        task = asyncio.get_running_loop().create_task(self._background_flush(record_id))
        sched.tasks.add(task)
        task.add_done_callback(sched.tasks.discard)

    async def _background_flush(self, record_id: str) -> None:
        result = await self.flush(record_id)
        if result.error is not None:
            logger.error(
                "Background flush failed",
                extra={"record_id": record_id, "fields": list(result.fields)},
            )

    # Flushing

    @asynccontextmanager
    async def exclusive(self, record_id: str) -> AsyncIterator[None]:
        """Hold the record's write section (no flush or restore runs meanwhile)."""
        sched = self._schedule_of(record_id)
        async with sched.lock:
            yield

    async def flush(self, record_id: str, fields: Iterable[str] | None = None) -> FlushResult:
        """Flush dirty drafts of a record now.

        Args:
            record_id: Record to flush
            fields: Only flush these fields (default: every dirty field)

        Returns:
            FlushResult; failures are reported in `error`, never raised
        """
        sched = self._schedule_of(record_id)
        if fields is None and sched.timer is not None:
            sched.timer.cancel()
            sched.timer = None

        async with sched.lock:
            return await self.flush_locked(record_id, fields)

    async def retry(self, record_id: str) -> FlushResult:
        """Retry after a failed flush (same as flush)."""
        return await self.flush(record_id)

    async def flush_locked(
        self,
        record_id: str,
        fields: Iterable[str] | None = None,
    ) -> FlushResult:
        """Flush while the caller already holds exclusive(record_id)."""
        sched = self._schedule_of(record_id)
        flush_id = new_id()
        wanted = None if fields is None else set(fields)

        targets = [
            name
            for name in self.buffer.dirty_fields(record_id)
            if wanted is None or name in wanted
        ]
        sched.pending.difference_update(targets)

        patch = self.buffer.begin_flush(record_id, targets, flush_id) if targets else {}
        if not patch:
            self._settle(record_id, sched)
            return FlushResult(record_id=record_id, flush_id=flush_id, skipped=True)

        sched.state = FlushState.FLUSHING
        result = FlushResult(record_id=record_id, flush_id=flush_id, fields=tuple(patch))

        logger.debug(
            "Flushing record",
            extra={"record_id": record_id, "flush_id": flush_id, "fields": list(patch)},
        )

        try:
            committed = await self.record_store.update(
                record_id, patch, actor_id=self.actor_id, origin=self.origin
            )
        except asyncio.CancelledError:
            self.buffer.fail_flush(record_id, flush_id, "cancelled")
            sched.pending.update(patch)
            self._settle(record_id, sched)
            raise
        except Exception as e:
            self.buffer.fail_flush(record_id, flush_id, str(e))
            sched.pending.update(patch)
            result.error = PersistenceError(
                f"Saving {record_id} failed: {e}",
                record_id=record_id,
                fields=list(patch),
            )
            sched.last_error = result.error
            logger.error(
                "Flush failed",
                extra={
                    "record_id": record_id,
                    "flush_id": flush_id,
                    "fields": list(patch),
                    "error": str(e),
                },
            )
        else:
            record = committed.record
            result.record = record
            result.committed_at = record.last_modified_at or now_ms()
            result.conflicts = self.buffer.commit_flush(record_id, flush_id, record)
            sched.last_error = None

            try:
                result.log_entry = await self.audit.record_change(
                    record_id,
                    None,
                    committed.previous,
                    patch,
                    self.actor_id,
                    metadata={"flush_id": flush_id, "session_id": self.origin},
                )
            except AuditError as e:
                result.audit_error = e

            logger.debug(
                "Flush committed",
                extra={
                    "record_id": record_id,
                    "flush_id": flush_id,
                    "version": record.version,
                },
            )

        self._settle(record_id, sched)
        if self.on_result is not None:
            self.on_result(result)
        return result

    def _settle(self, record_id: str, sched: _RecordSchedule) -> None:
        if self.buffer.dirty_fields(record_id) or sched.pending:
            sched.state = FlushState.DIRTY
        else:
            sched.state = FlushState.IDLE

    async def flush_all(self) -> list[FlushResult]:
        """Flush every record with dirty drafts or a pending timer."""
        record_ids = [
            rid
            for rid in set(self.buffer.records()) | set(self._records)
            if self.buffer.dirty_fields(rid) or self.pending_fields(rid)
        ]
        results = []
        for record_id in sorted(record_ids):
            results.append(await self.flush(record_id))
        return results

    async def wait_idle(self, record_id: str | None = None) -> None:
        """Wait for timer-started flushes to finish.

        Timers that have not fired yet are not waited for.
        """
        while True:
            if record_id is None:
                tasks = {t for s in self._records.values() for t in s.tasks}
            else:
                sched = self._records.get(record_id)
                tasks = set(sched.tasks) if sched else set()
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    async def close(self) -> None:
        """Cancel timers and wait for running flushes."""
        self._closed = True
        for sched in self._records.values():
            if sched.timer is not None:
                sched.timer.cancel()
                sched.timer = None
        await self.wait_idle()

    def forget(self, record_id: str) -> None:
        """Drop scheduling state of a record with nothing pending."""
        sched = self._records.get(record_id)
        if sched is None:
            return
        if sched.timer is not None:
            sched.timer.cancel()
        if not sched.tasks and not sched.lock.locked():
            self._records.pop(record_id, None)
