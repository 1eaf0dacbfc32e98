"""
Synchronization engine.

Components, in data-flow order:
- DraftBuffer: local edits on top of the confirmed copy
- CoalescingScheduler: debounced, coalesced writes to the record store
- AuditWriter: change log entries for committed writes, change history
- ReconciliationSubscriber: remote changes folded into the draft buffer
- RestoreEngine / LogRestorer: roll fields back to logged values
- EditingSession: the UI boundary wiring them together
"""

from .audit import AuditWriter, ChangeHistory, EntryDescription, describe
from .drafts import DraftBuffer, RemoteApplyResult
from .events import EventEmitter, EventKind, SessionEvent
from .reconcile import ReconciliationSubscriber
from .restore import LogRestorer, RestoreEngine, RestoreOperation, RestoreState
from .scheduler import CoalescingScheduler, FlushResult, FlushState
from .session import EditingSession
from .timer import AsyncioTimerFactory, ManualTimerFactory, TimerFactory

__all__ = [
    "AsyncioTimerFactory",
    "AuditWriter",
    "ChangeHistory",
    "CoalescingScheduler",
    "DraftBuffer",
    "EditingSession",
    "EntryDescription",
    "EventEmitter",
    "EventKind",
    "FlushResult",
    "FlushState",
    "LogRestorer",
    "ManualTimerFactory",
    "ReconciliationSubscriber",
    "RemoteApplyResult",
    "RestoreEngine",
    "RestoreOperation",
    "RestoreState",
    "SessionEvent",
    "TimerFactory",
    "describe",
]
