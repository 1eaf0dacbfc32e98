"""
API routes for the RecSync HTTP gateway.

Provides REST endpoints over per-actor editing sessions: open a record's
view, edit fields, flush, read the change history and restore from it.

Error mapping (see app.py):
    ValidationError -> 422, not found -> 404, view not open -> 409,
    PersistenceError / StoreError -> 503, restore failure -> 409
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from ..errors import RestoreError
from ..model import ChangeLogEntry, Record, new_id
from ..schema.validate import validate_or_raise
from ..sync.audit import describe
from ..sync.events import SessionEvent
from ..sync.scheduler import FlushResult
from ..sync.session import EditingSession
from .sessions import SessionManager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["RecSync Gateway"])


# --- Request/Response Models ---


class RecordCreateRequest(BaseModel):
    """Request to create a record."""

    record_id: str | None = Field(None, description="Record ID (generated if omitted)")
    fields: dict[str, Any] = Field(..., description="Initial field values")


class FieldEditRequest(BaseModel):
    """Request to edit one field."""

    value: Any = Field(None, description="New field value")


class RestoreRequestBody(BaseModel):
    """Request to restore from a change log entry."""

    target_log_entry_id: str = Field(..., description="Change log entry to restore from")


class RecordResponse(BaseModel):
    """Committed record state."""

    record_id: str
    fields: dict[str, Any]
    version: int
    last_modified_by: str | None = None
    last_modified_at: int | None = None


class ViewResponse(BaseModel):
    """Displayed state of an open record view."""

    record_id: str
    values: dict[str, Any]
    dirty_fields: list[str]


class FieldResponse(BaseModel):
    """Displayed value of one field."""

    record_id: str
    field: str
    value: Any = None
    dirty: bool
    state: str


class FlushResponse(BaseModel):
    """Outcome of a flush."""

    record_id: str
    fields: list[str]
    skipped: bool
    version: int | None = None
    log_entry_id: str | None = None
    audit_warning: str | None = None
    conflicts: list[dict[str, Any]] = Field(default_factory=list)


class LogEntryResponse(BaseModel):
    """Change log entry with its display label."""

    entry_id: str
    record_id: str
    action_type: str
    label: str
    summary: str
    fields: list[str]
    before_value: Any = None
    after_value: Any = None
    actor_id: str
    created_at: int
    metadata: dict[str, Any] = Field(default_factory=dict)
    sequence: int | None = None


class RestoreResponse(BaseModel):
    """Outcome of a successful restore."""

    status: str
    record_id: str | None
    restored_field: str | None = None
    restored_status: str | None = None
    restored_fields: list[str]
    new_value: Any = None
    previous_value: Any = None
    source_entry_id: str | None = None
    version: int | None = None
    log_entry_id: str | None = None
    audit_warning: str | None = None


class SessionCloseResponse(BaseModel):
    """Outcome of closing an actor's session."""

    actor_id: str
    closed: bool
    saved: list[FlushResponse] = Field(default_factory=list)


class EventResponse(BaseModel):
    """A session event."""

    kind: str
    record_id: str | None
    fields: list[str]
    detail: dict[str, Any]
    message: str | None = None
    error: dict[str, Any] | None = None


# --- Dependencies ---


def get_sessions(request: Request) -> SessionManager:
    """Get session manager from app state."""
    return request.app.state.sessions


def get_actor(request: Request) -> str:
    """Get actor from the X-Actor header."""
    actor = request.headers.get("X-Actor")
    return actor or request.app.state.settings.default_actor


async def get_session(
    sessions: SessionManager = Depends(get_sessions),
    actor: str = Depends(get_actor),
) -> EditingSession:
    return await sessions.get(actor)


# --- Helpers ---


def _record_response(record: Record) -> RecordResponse:
    return RecordResponse(**record.to_dict())


def _view_response(session: EditingSession, record_id: str) -> ViewResponse:
    return ViewResponse(
        record_id=record_id,
        values=session.snapshot(record_id),
        dirty_fields=session.buffer.dirty_fields(record_id),
    )


def _flush_response(result: FlushResult) -> FlushResponse:
    if result.error is not None:
        raise result.error
    return FlushResponse(
        record_id=result.record_id,
        fields=list(result.fields),
        skipped=result.skipped,
        version=result.record.version if result.record else None,
        log_entry_id=result.log_entry.entry_id if result.log_entry else None,
        audit_warning=result.audit_error.message if result.audit_error else None,
        conflicts=[c.details for c in result.conflicts],
    )


def _entry_response(entry: ChangeLogEntry) -> LogEntryResponse:
    description = describe(entry)
    return LogEntryResponse(
        entry_id=entry.entry_id,
        record_id=entry.record_id,
        action_type=entry.action_type.value,
        label=description.label,
        summary=description.summary,
        fields=list(entry.fields),
        before_value=entry.before_value,
        after_value=entry.after_value,
        actor_id=entry.actor_id,
        created_at=entry.created_at,
        metadata=dict(entry.metadata),
        sequence=entry.sequence,
    )


def _event_response(event: SessionEvent) -> EventResponse:
    return EventResponse(
        kind=event.kind.value,
        record_id=event.record_id,
        fields=list(event.fields),
        detail=event.detail,
        message=event.message,
        error=event.error.to_dict() if event.error else None,
    )


# --- Record Routes ---


@router.post("/records", response_model=RecordResponse, status_code=201)
async def create_record(
    body: RecordCreateRequest,
    request: Request,
    actor: str = Depends(get_actor),
):
    """Create a record with validated initial fields."""
    fields = validate_or_raise(request.app.state.record_type, body.fields)
    record = await request.app.state.record_store.create(
        body.record_id or new_id(), fields, actor_id=actor
    )
    return _record_response(record)


@router.get("/records/{record_id}", response_model=RecordResponse)
async def get_record(record_id: str, request: Request):
    """Get the committed state of a record."""
    record = await request.app.state.record_store.get(record_id)
    return _record_response(record)


# --- View Routes ---


@router.post("/records/{record_id}/view", response_model=ViewResponse)
async def open_view(record_id: str, session: EditingSession = Depends(get_session)):
    """Open a record for editing in the actor's session."""
    await session.open_view(record_id)
    return _view_response(session, record_id)


@router.delete("/records/{record_id}/view", response_model=FlushResponse | None)
async def close_view(
    record_id: str,
    discard: bool = Query(False, description="Discard unsaved drafts instead of saving them"),
    session: EditingSession = Depends(get_session),
):
    """Close a record's view, saving (or explicitly discarding) its drafts."""
    result = await session.close_view(record_id, discard=discard)
    if result is None:
        return None
    return _flush_response(result)


# --- Field Routes ---


@router.get("/records/{record_id}/fields/{field_name}", response_model=FieldResponse)
async def get_field(
    record_id: str,
    field_name: str,
    session: EditingSession = Depends(get_session),
):
    """Get the displayed value of a field."""
    value = session.current_value(record_id, field_name)
    return FieldResponse(
        record_id=record_id,
        field=field_name,
        value=value,
        dirty=session.is_dirty(record_id, field_name),
        state=type(session.draft_state(record_id, field_name)).__name__.lower(),
    )


@router.patch("/records/{record_id}/fields/{field_name}", response_model=FieldResponse)
async def edit_field(
    record_id: str,
    field_name: str,
    body: FieldEditRequest,
    session: EditingSession = Depends(get_session),
):
    """Edit a field; the value is saved after the quiet period."""
    value = session.edit(record_id, field_name, body.value)
    return FieldResponse(
        record_id=record_id,
        field=field_name,
        value=value,
        dirty=session.is_dirty(record_id, field_name),
        state=type(session.draft_state(record_id, field_name)).__name__.lower(),
    )


@router.post("/records/{record_id}/flush", response_model=FlushResponse)
async def flush_record(record_id: str, session: EditingSession = Depends(get_session)):
    """Save a record's dirty drafts now."""
    return _flush_response(await session.flush(record_id))


# --- History and Restore Routes ---


@router.get("/records/{record_id}/history", response_model=list[LogEntryResponse])
async def get_history(
    record_id: str,
    request: Request,
    limit: int | None = Query(None, ge=1, description="Maximum entries"),
    session: EditingSession = Depends(get_session),
):
    """Get the change history of a record, most recent first."""
    settings = request.app.state.settings
    limit = min(limit or settings.default_history_limit, settings.max_history_limit)
    entries = await session.change_history(record_id).first(limit)
    return [_entry_response(e) for e in entries]


@router.post("/restore", response_model=RestoreResponse)
async def restore(body: RestoreRequestBody, session: EditingSession = Depends(get_session)):
    """Restore a record's field or status from a change log entry."""
    result = await session.request_restore(body.target_log_entry_id)
    if not result.success:
        if result.record_id is None:
            raise HTTPException(status_code=404, detail=result.error)
        raise RestoreError(result.error or "Restore failed", entry_id=body.target_log_entry_id)

    return RestoreResponse(
        status=result.status.value,
        record_id=result.record_id,
        restored_field=result.restored_field,
        restored_status=result.restored_status,
        restored_fields=list(result.restored_fields),
        new_value=result.new_value,
        previous_value=result.previous_value,
        source_entry_id=result.source_entry_id,
        version=result.record.version if result.record else None,
        log_entry_id=result.log_entry.entry_id if result.log_entry else None,
        audit_warning=result.audit_error,
    )


# --- Events ---


@router.get("/events", response_model=list[EventResponse])
async def get_events(
    limit: int | None = Query(None, ge=1, description="Maximum events"),
    sessions: SessionManager = Depends(get_sessions),
    actor: str = Depends(get_actor),
):
    """Get recent session events of the actor, oldest first."""
    await sessions.get(actor)
    return [_event_response(e) for e in sessions.events(actor, limit)]


# --- Session ---


@router.delete("/session", response_model=SessionCloseResponse)
async def close_session(
    discard: bool = Query(False, description="Discard unsaved drafts instead of saving them"),
    sessions: SessionManager = Depends(get_sessions),
    actor: str = Depends(get_actor),
):
    """Close the actor's session, saving (or explicitly discarding) its drafts."""
    results = await sessions.close(actor, discard=discard)
    return SessionCloseResponse(
        actor_id=actor,
        closed=results is not None,
        saved=[_flush_response(r) for r in results or []],
    )
