"""
Restore engine for the RecSync engine.

Restoring rolls a record's field(s) or status back to the values recorded
as `before` in a chosen change log entry. The restore is itself logged, so
it can be restored from in turn.

Two layers:
    - LogRestorer.restore_from_log(): the atomic restore primitive (read the
      entry, write the record, append a restore entry)
    - RestoreEngine.request_restore(): the per-session operation that makes
      sure no pending local draft races the restore

Operation state machine:

    IDLE -> REQUESTED -> FLUSHING -> APPLYING -> COMMITTED
                              \\           \\
                               +-----------+--> FAILED

Invariants:
    - Pending drafts of the restored fields are flushed (or visibly
      discarded) before the restore is applied, inside the record's
      exclusive section
    - A failed restore leaves the record unchanged
    - The restore entry's before values are the pre-image of the restore
      write itself, so a write that lands just before it is never misreported
    - A restore whose log append failed is a success with audit_error set

How to change safely:
    - The engine only relies on the primitive's result, never its internals
    - Status restores must keep emitting status_restored; downstream
      subsystems react to it
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..config import PendingPolicy
from ..errors import AuditError, RestoreError
from ..model import (
    ActionType,
    ChangeLogEntry,
    RestoreRequest,
    RestoreResult,
    RestoreStatus,
    new_id,
    now_ms,
)
from ..schema.types import RecordTypeDef
from ..stores.base import ChangeLogStore, RecordStore
from .audit import AuditWriter
from .drafts import DraftBuffer
from .events import EventKind, SessionEvent
from .scheduler import CoalescingScheduler

logger = logging.getLogger(__name__)

RestorePrimitive = Callable[[str, str], Awaitable[RestoreResult]]


def _failure(reason: str, entry_id: str, actor_id: str, record_id: str | None = None) -> RestoreResult:
    return RestoreResult(
        status=RestoreStatus.ERROR,
        record_id=record_id,
        source_entry_id=entry_id,
        actor_id=actor_id,
        error=reason,
    )


class LogRestorer:
    """The restore primitive.

    Example:
        >>> restorer = LogRestorer(record_store, change_log, record_type=PARTICIPANT)
        >>> result = await restorer.restore_from_log(entry_id, actor_id="user:42")
        >>> result.restored_status, result.new_value
        ('call_status', '대기중')
    """

    def __init__(
        self,
        record_store: RecordStore,
        change_log: ChangeLogStore,
        record_type: RecordTypeDef | None = None,
    ) -> None:
        self.record_store = record_store
        self.change_log = change_log
        self.record_type = record_type
        self.audit = AuditWriter(change_log, record_type=record_type)

    def _is_status(self, entry: ChangeLogEntry) -> bool:
        if len(entry.fields) != 1:
            return False
        if self.record_type is not None:
            return self.record_type.is_status(entry.fields[0])
        return entry.action_type == ActionType.STATUS_CHANGE or bool(entry.metadata.get("is_status"))

    async def restore_from_log(self, entry_id: str, actor_id: str) -> RestoreResult:
        """Restore the `before` values recorded in a change log entry.

        Returns:
            RestoreResult; failures are reported, not raised
        """
        try:
            entry = await self.change_log.get(entry_id)
        except Exception as e:
            logger.warning("Restore source entry unavailable", extra={"entry_id": entry_id, "error": str(e)})
            return _failure(f"Change log entry not found: {entry_id}", entry_id, actor_id)

        target = entry.before_patch()
        record_id = entry.record_id

        try:
            committed = await self.record_store.update(
                record_id,
                target,
                actor_id=actor_id,
                origin=f"restore:{entry_id}",
            )
        except Exception as e:
            logger.error(
                "Restore write failed",
                extra={"entry_id": entry_id, "record_id": record_id, "error": str(e)},
            )
            return _failure(f"Record {record_id} could not be restored: {e}", entry_id, actor_id, record_id)

        record = committed.record
        previous = committed.previous
        is_status = self._is_status(entry)
        single = len(entry.fields) == 1

        result = RestoreResult(
            status=RestoreStatus.SUCCESS,
            record_id=record_id,
            restored_fields=entry.fields,
            is_status=is_status,
            new_value=target[entry.fields[0]] if single else dict(target),
            previous_value=previous[entry.fields[0]] if single else previous,
            source_entry_id=entry_id,
            actor_id=actor_id,
            committed_at=record.last_modified_at or now_ms(),
            record=record,
        )

        try:
            result.log_entry = await self.audit.record_change(
                record_id,
                ActionType.RESTORE,
                previous,
                target,
                actor_id,
                metadata={"restored_from": entry_id, "is_status": is_status},
            )
        except AuditError as e:
            result.audit_error = e.message

        logger.info(
            "Restored record from change log",
            extra={
                "entry_id": entry_id,
                "record_id": record_id,
                "fields": list(entry.fields),
                "version": record.version,
            },
        )
        return result


class RestoreState(Enum):
    IDLE = "idle"
    REQUESTED = "requested"
    FLUSHING = "flushing"
    APPLYING = "applying"
    COMMITTED = "committed"
    FAILED = "failed"


@dataclass
class RestoreOperation:
    """One restore request and the states it went through."""

    operation_id: str
    request: RestoreRequest
    state: RestoreState = RestoreState.IDLE
    states: list[RestoreState] = field(default_factory=lambda: [RestoreState.IDLE])
    record_id: str | None = None
    discarded_fields: list[str] = field(default_factory=list)
    result: RestoreResult | None = None
    reason: str | None = None

    @property
    def entry_id(self) -> str:
        return self.request.target_log_entry_id

    @property
    def actor_id(self) -> str:
        return self.request.actor_id

    def advance(self, state: RestoreState) -> None:
        self.state = state
        self.states.append(state)


class RestoreEngine:
    """Runs restores for one editing session.

    Example:
        >>> engine = RestoreEngine(restorer.restore_from_log, scheduler, buffer, change_log,
        ...                        actor_id="user:42", emit=events.emit)
        >>> result = await engine.request_restore(entry_id)
    """

    def __init__(
        self,
        restore: RestorePrimitive,
        scheduler: CoalescingScheduler,
        buffer: DraftBuffer,
        change_log: ChangeLogStore,
        actor_id: str,
        *,
        pending_policy: PendingPolicy = PendingPolicy.FLUSH,
        emit: Callable[[SessionEvent], None] | None = None,
    ) -> None:
        self.restore = restore
        self.scheduler = scheduler
        self.buffer = buffer
        self.change_log = change_log
        self.actor_id = actor_id
        self.pending_policy = pending_policy
        self.emit = emit
        self.operations: list[RestoreOperation] = []

    def _emit(self, event: SessionEvent) -> None:
        if self.emit is not None:
            self.emit(event)

    async def request_restore(self, entry_id: str) -> RestoreResult:
        """Restore a record from a change log entry.

        Returns:
            RestoreResult; on failure `error` holds a human-readable reason
        """
        request = RestoreRequest(target_log_entry_id=entry_id, actor_id=self.actor_id)
        op = RestoreOperation(operation_id=new_id(), request=request)
        self.operations.append(op)
        op.advance(RestoreState.REQUESTED)

        try:
            entry = await self.change_log.get(entry_id)
        except Exception as e:
            logger.warning("Restore requested for unknown entry", extra={"entry_id": entry_id})
            return self._fail(op, f"Change log entry not found: {entry_id}", cause=e)

        record_id = entry.record_id
        fields = list(entry.fields)
        op.record_id = record_id

        # No timer may start a flush of these fields behind our back
        self.scheduler.cancel(record_id, fields)

        async with self.scheduler.exclusive(record_id):
            op.advance(RestoreState.FLUSHING)
            if self.pending_policy == PendingPolicy.DISCARD:
                discarded = self.buffer.discard(record_id, fields)
                op.discarded_fields = discarded
                if discarded:
                    logger.warning(
                        "Discarded drafts before restore",
                        extra={"record_id": record_id, "fields": discarded, "entry_id": entry_id},
                    )
                    self._emit(
                        SessionEvent.create(
                            EventKind.DRAFTS_DISCARDED,
                            record_id,
                            discarded,
                            detail={"reason": "restore", "entry_id": entry_id},
                        )
                    )
            elif any(self.buffer.is_dirty(record_id, name) for name in fields):
                flushed = await self.scheduler.flush_locked(record_id, fields)
                if flushed.error is not None:
                    return self._fail(
                        op,
                        f"Pending edits could not be saved before restoring: {flushed.error.message}",
                        cause=flushed.error,
                    )

            op.advance(RestoreState.APPLYING)
            try:
                result = await self.restore(entry_id, self.actor_id)
            except Exception as e:
                return self._fail(op, f"Restore failed: {e}", cause=e)

            if not result.success:
                return self._fail(op, result.error or "Restore failed", result=result)

            if result.record is not None and self.buffer.is_loaded(record_id):
                self.buffer.apply_record(result.record)

        op.result = result
        op.advance(RestoreState.COMMITTED)
        self._report_success(result)
        return result

    def _report_success(self, result: RestoreResult) -> None:
        detail: dict[str, Any] = {
            "entry_id": result.source_entry_id,
            "new_value": result.new_value,
            "previous_value": result.previous_value,
            "log_entry_id": result.log_entry.entry_id if result.log_entry else None,
        }
        if result.record is not None:
            detail["version"] = result.record.version

        self._emit(SessionEvent.create(EventKind.RESTORED, result.record_id, result.restored_fields, detail))
        if result.is_status:
            self._emit(
                SessionEvent.create(EventKind.STATUS_RESTORED, result.record_id, result.restored_fields, detail)
            )
        if result.audit_error:
            self._emit(
                SessionEvent.create(
                    EventKind.AUDIT_MISSING,
                    result.record_id,
                    result.restored_fields,
                    detail={"action_type": ActionType.RESTORE.value},
                    error=AuditError(result.audit_error, record_id=result.record_id, action_type="restore"),
                )
            )

    def _fail(
        self,
        op: RestoreOperation,
        reason: str,
        cause: Exception | None = None,
        result: RestoreResult | None = None,
    ) -> RestoreResult:
        op.reason = reason
        op.advance(RestoreState.FAILED)
        if result is None:
            result = _failure(reason, op.entry_id, op.actor_id, op.record_id)
        op.result = result

        logger.error(
            "Restore failed",
            extra={"entry_id": op.entry_id, "record_id": op.record_id, "reason": reason},
        )
        self._emit(
            SessionEvent.create(
                EventKind.RESTORE_FAILED,
                op.record_id,
                detail={"entry_id": op.entry_id, "cause": str(cause) if cause else None},
                error=RestoreError(reason, entry_id=op.entry_id),
            )
        )
        return result
