"""
Editing session: the boundary between a user interface and the engine.

One EditingSession belongs to one actor (one browser tab, one API client).
It owns a draft buffer, a coalescing scheduler, a reconciliation
subscriber and a restore engine, all explicitly constructed; nothing is a
module-level singleton.

Invariants:
    - edit() is synchronous: the value is visible immediately and a flush
      is scheduled; invalid values raise ValidationError before anything
      is scheduled
    - Closing a view flushes its dirty drafts or discards them visibly
    - Every outcome the user should see is delivered as a SessionEvent

How to change safely:
    - Route every write through the scheduler or the restore engine
    - Keep start()/close() idempotent
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from ..config import EngineConfig
from ..errors import ValidationError, ViewNotOpenError
from ..model import ChangeNotification, DraftState, RestoreResult, new_id
from ..schema.types import RecordTypeDef
from ..schema.validate import validate_field
from ..stores.base import ChangeLogStore, RecordStore
from .audit import AuditWriter, ChangeHistory
from .drafts import DraftBuffer
from .events import EventEmitter, EventKind, Listener, SessionEvent
from .reconcile import ReconciliationSubscriber
from .restore import LogRestorer, RestoreEngine, RestorePrimitive
from .scheduler import CoalescingScheduler, FlushResult
from .timer import TimerFactory

logger = logging.getLogger(__name__)


class EditingSession:
    """An actor's editing session over shared records.

    Example:
        >>> async with EditingSession(store, change_log, "user:42", record_type=PARTICIPANT) as s:
        ...     await s.open_view("P1")
        ...     s.edit("P1", "call_status", "응답(참석)")
        ...     s.current_value("P1", "call_status")
        '응답(참석)'
    """

    def __init__(
        self,
        record_store: RecordStore,
        change_log: ChangeLogStore,
        actor_id: str,
        *,
        record_type: RecordTypeDef | None = None,
        config: EngineConfig | None = None,
        timers: TimerFactory | None = None,
        restorer: RestorePrimitive | None = None,
        session_id: str | None = None,
        passive_cache: Callable[[ChangeNotification], None] | None = None,
    ) -> None:
        self.record_store = record_store
        self.change_log = change_log
        self.actor_id = actor_id
        self.record_type = record_type
        self.config = config or EngineConfig()
        self.session_id = session_id or new_id()

        self._views: set[str] = set()
        self._events = EventEmitter()
        self._started = False
        self._closed = False

        self.buffer = DraftBuffer()
        self.audit = AuditWriter(
            change_log,
            record_type=record_type,
            page_size=self.config.history.page_size,
        )
        self.scheduler = CoalescingScheduler(
            self.buffer,
            record_store,
            self.audit,
            actor_id,
            origin=self.session_id,
            timers=timers,
            quiet_period_ms=self.config.scheduler.quiet_period_ms,
            on_result=self._on_flush_result,
        )
        self.reconciler = ReconciliationSubscriber(
            record_store,
            self.buffer,
            is_open=self.is_open,
            emit=self._events.emit,
            origin=self.session_id,
            passive_cache=passive_cache,
        )
        if restorer is None:
            restorer = LogRestorer(record_store, change_log, record_type=record_type).restore_from_log
        self.restore_engine = RestoreEngine(
            restorer,
            self.scheduler,
            self.buffer,
            change_log,
            actor_id,
            pending_policy=self.config.restore.pending_policy,
            emit=self._events.emit,
        )

    # Lifecycle

    async def start(self) -> None:
        """Start reconciling remote changes."""
        if self._started:
            return
        self._started = True
        self.reconciler.start()
        logger.info(
            "Editing session started",
            extra={"session_id": self.session_id, "actor_id": self.actor_id},
        )

    async def close(self) -> list[FlushResult]:
        """Flush (or visibly discard) all drafts and stop background work."""
        if self._closed:
            return []
        self._closed = True

        results: list[FlushResult] = []
        if self.config.scheduler.flush_on_close:
            results = await self.scheduler.flush_all()
        else:
            for record_id in list(self._views):
                self._discard(record_id, None, reason="session_closed")

        await self.scheduler.close()
        await self.reconciler.stop()

        failed = [r.record_id for r in results if r.error is not None]
        if failed:
            logger.error(
                "Editing session closed with unsaved drafts",
                extra={"session_id": self.session_id, "records": failed},
            )
        logger.info("Editing session closed", extra={"session_id": self.session_id})
        return results

    async def __aenter__(self) -> EditingSession:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    # Listeners

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Register an event listener; returns a function that removes it."""
        return self._events.add_listener(listener)

    def remove_listener(self, listener: Listener) -> None:
        self._events.remove_listener(listener)

    # Views

    def is_open(self, record_id: str) -> bool:
        return record_id in self._views

    @property
    def open_views(self) -> list[str]:
        return sorted(self._views)

    async def open_view(self, record_id: str) -> dict[str, Any]:
        """Open a record for editing and return its displayed values.

        Raises:
            RecordNotFoundError: If the record does not exist
        """
        if record_id not in self._views:
            record = await self.record_store.get(record_id)
            self.buffer.load(record)
            self._views.add(record_id)
            logger.debug(
                "Opened view",
                extra={"session_id": self.session_id, "record_id": record_id, "version": record.version},
            )
        return self.buffer.snapshot(record_id)

    async def close_view(self, record_id: str, discard: bool = False) -> FlushResult | None:
        """Close a record's view.

        Dirty drafts are flushed first. If that flush fails the view stays
        open and the failed result is returned. With discard=True the drafts
        are dropped and a drafts_discarded event is emitted.
        """
        if record_id not in self._views:
            return None

        result = None
        if discard:
            self._discard(record_id, None, reason="view_closed")
        else:
            result = await self.scheduler.flush(record_id)
            if result.error is not None:
                return result

        self._views.discard(record_id)
        self.buffer.drop(record_id)
        self.scheduler.forget(record_id)
        logger.debug("Closed view", extra={"session_id": self.session_id, "record_id": record_id})
        return result

    def _discard(self, record_id: str, fields: Any, reason: str) -> list[str]:
        self.scheduler.cancel(record_id, fields)
        discarded = self.buffer.discard(record_id, fields)
        if discarded:
            logger.warning(
                "Discarded unsaved drafts",
                extra={"record_id": record_id, "fields": discarded, "reason": reason},
            )
            self._events.emit(
                SessionEvent.create(
                    EventKind.DRAFTS_DISCARDED,
                    record_id,
                    discarded,
                    detail={"reason": reason},
                )
            )
        return discarded

    # Editing

    def _require_view(self, record_id: str) -> None:
        if record_id not in self._views:
            raise ViewNotOpenError(record_id)

    def edit(self, record_id: str, field_name: str, value: Any) -> Any:
        """Set a field locally and schedule a flush.

        Returns:
            The normalized value now displayed

        Raises:
            ViewNotOpenError: If the record's view is not open
            ValidationError: If the value is invalid
        """
        self._require_view(record_id)
        normalized = validate_field(self.record_type, field_name, value)
        self.buffer.set_field(record_id, field_name, normalized)
        self.scheduler.schedule(record_id, [field_name])
        return normalized

    async def set_status(self, record_id: str, field_name: str, value: Any) -> FlushResult:
        """Set a status field and flush it immediately."""
        if self.record_type is not None and not self.record_type.is_status(field_name):
            raise ValidationError(f"Field '{field_name}' is not a status field", field_name=field_name)
        self.edit(record_id, field_name, value)
        return await self.scheduler.flush(record_id)

    def discard(self, record_id: str, fields: Any = None) -> list[str]:
        """Visibly drop drafts of a record (all fields by default)."""
        self._require_view(record_id)
        return self._discard(record_id, fields, reason="discarded")

    def current_value(self, record_id: str, field_name: str) -> Any:
        """The value to display: the dirty draft if any, else the confirmed value."""
        self._require_view(record_id)
        return self.buffer.get_field(record_id, field_name)

    def snapshot(self, record_id: str) -> dict[str, Any]:
        self._require_view(record_id)
        return self.buffer.snapshot(record_id)

    def is_dirty(self, record_id: str, field_name: str | None = None) -> bool:
        return self.buffer.is_dirty(record_id, field_name)

    def draft_state(self, record_id: str, field_name: str) -> DraftState:
        return self.buffer.state(record_id, field_name)

    async def flush(self, record_id: str) -> FlushResult:
        return await self.scheduler.flush(record_id)

    async def retry(self, record_id: str) -> FlushResult:
        """Retry saving a record after a failed flush."""
        return await self.scheduler.retry(record_id)

    # History and restore

    def change_history(self, record_id: str, page_size: int | None = None) -> ChangeHistory:
        """Lazy, restartable change history, most recent first."""
        return self.audit.history(record_id, page_size)

    async def request_restore(self, entry_id: str) -> RestoreResult:
        """Restore a record from a change log entry."""
        return await self.restore_engine.request_restore(entry_id)

    # Flush reporting

    def _on_flush_result(self, result: FlushResult) -> None:
        if result.skipped:
            return

        if result.error is not None:
            self._events.emit(
                SessionEvent.create(
                    EventKind.FLUSH_FAILED,
                    result.record_id,
                    result.fields,
                    detail={"flush_id": result.flush_id},
                    error=result.error,
                )
            )
            return

        detail = {
            "flush_id": result.flush_id,
            "version": result.record.version if result.record else None,
            "log_entry_id": result.log_entry.entry_id if result.log_entry else None,
        }
        self._events.emit(SessionEvent.create(EventKind.SAVED, result.record_id, result.fields, detail))

        if result.audit_error is not None:
            self._events.emit(
                SessionEvent.create(
                    EventKind.AUDIT_MISSING,
                    result.record_id,
                    result.fields,
                    detail={"flush_id": result.flush_id},
                    error=result.audit_error,
                )
            )
        for conflict in result.conflicts:
            self._events.emit(
                SessionEvent.create(
                    EventKind.CONFLICT,
                    result.record_id,
                    (conflict.field_name,),
                    detail={
                        "local_value": conflict.local_value,
                        "remote_value": conflict.remote_value,
                    },
                    error=conflict,
                )
            )
