"""
Session events.

Everything the engine wants the user to see (saves, failures, conflicts,
remote updates, restores) is delivered to session listeners as a
SessionEvent. Background work reports through here instead of raising.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..errors import RecSyncError

logger = logging.getLogger(__name__)


class EventKind(Enum):
    SAVED = "saved"
    FLUSH_FAILED = "flush_failed"
    AUDIT_MISSING = "audit_missing"
    CONFLICT = "conflict"
    REMOTE_UPDATE = "remote_update"
    DRAFTS_DISCARDED = "drafts_discarded"
    RESTORED = "restored"
    STATUS_RESTORED = "status_restored"
    RESTORE_FAILED = "restore_failed"


# User-facing messages (participant drawer toasts)
MESSAGES = {
    EventKind.SAVED: "저장되었습니다",
    EventKind.FLUSH_FAILED: "저장 중 오류가 발생했습니다.",
    EventKind.AUDIT_MISSING: "저장되었지만 변경 이력을 남기지 못했습니다.",
    EventKind.CONFLICT: "다른 사용자가 같은 항목을 수정했습니다.",
    EventKind.DRAFTS_DISCARDED: "저장하지 않은 변경 사항을 취소했습니다.",
    EventKind.RESTORED: "복원되었습니다",
    EventKind.STATUS_RESTORED: "상태가 복원되었습니다",
    EventKind.RESTORE_FAILED: "복원에 실패했습니다.",
}


@dataclass(frozen=True)
class SessionEvent:
    """Something a session reports to its listeners.

    Attributes:
        kind: Event kind
        record_id: Affected record
        fields: Affected fields
        detail: Kind-specific data (version, log entry id, values)
        error: The error or warning behind the event, if any
        message: User-facing message
    """

    kind: EventKind
    record_id: str | None
    fields: tuple[str, ...] = ()
    detail: dict[str, Any] = field(default_factory=dict)
    error: RecSyncError | None = None
    message: str | None = None

    @classmethod
    def create(
        cls,
        kind: EventKind,
        record_id: str | None,
        fields: Any = (),
        detail: dict[str, Any] | None = None,
        error: RecSyncError | None = None,
    ) -> SessionEvent:
        message = MESSAGES.get(kind)
        if kind == EventKind.RESTORE_FAILED and error is not None:
            message = f"{message} {error.message}"
        return cls(
            kind=kind,
            record_id=record_id,
            fields=tuple(fields),
            detail=dict(detail or {}),
            error=error,
            message=message,
        )


Listener = Callable[[SessionEvent], None]


class EventEmitter:
    """Synchronous fan-out of session events to listeners.

    A listener that raises is logged and does not stop delivery to the others.
    """

    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that removes it."""
        self._listeners.append(listener)
        return lambda: self.remove_listener(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(self, event: SessionEvent) -> None:
        logger.debug(
            "Session event",
            extra={"kind": event.kind.value, "record_id": event.record_id, "fields": list(event.fields)},
        )
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(
                    "Session listener failed",
                    extra={"kind": event.kind.value, "record_id": event.record_id},
                )
