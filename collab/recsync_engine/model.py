"""
Core data model for the RecSync engine.

This module defines the value types shared by every component:
- Record: current state of a durable entity
- ChangeLogEntry: immutable audit trail entry
- ChangeNotification: one item of the record store's change feed
- DraftEntry and its tagged state (Confirmed | Pending | Failed)
- RestoreRequest / RestoreResult

Invariants:
    - Every committed Record carries last_modified_by and last_modified_at
    - Record.version increases by one with every committed write
    - ChangeLogEntry is frozen; restores append new entries
    - Timestamps are Unix milliseconds

How to change safely:
    - Add new fields with defaults so stored dicts keep loading
    - Never change the meaning of before_value / after_value
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Union


def now_ms() -> int:
    """Current time as Unix milliseconds."""
    return int(time.time() * 1000)


def new_id() -> str:
    """Generate a unique identifier."""
    return str(uuid.uuid4())


class ActionType(Enum):
    """Kinds of change log entries."""

    FIELD_UPDATE = "field_update"
    STATUS_CHANGE = "status_change"
    RESTORE = "restore"


@dataclass
class Record:
    """A uniquely identified mutable entity with a flat set of named fields.

    Attributes:
        record_id: Unique record identifier
        fields: Field values (strings, numbers, status values, small objects)
        version: Monotonic write counter, bumped on every committed write
        last_modified_by: Actor of the last committed write
        last_modified_at: Time of the last committed write (Unix ms)
    """

    record_id: str
    fields: dict[str, Any] = field(default_factory=dict)
    version: int = 0
    last_modified_by: str | None = None
    last_modified_at: int | None = None

    def get(self, name: str, default: Any = None) -> Any:
        return self.fields.get(name, default)

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "fields": dict(self.fields),
            "version": self.version,
            "last_modified_by": self.last_modified_by,
            "last_modified_at": self.last_modified_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Record:
        return cls(
            record_id=data["record_id"],
            fields=dict(data.get("fields", {})),
            version=data.get("version", 0),
            last_modified_by=data.get("last_modified_by"),
            last_modified_at=data.get("last_modified_at"),
        )


@dataclass(frozen=True)
class CommittedUpdate:
    """Outcome of RecordStore.update().

    Attributes:
        record: The record as committed
        previous: Pre-image of the patched fields, read atomically with the
            write (None for fields the record did not have)
    """

    record: Record
    previous: dict[str, Any] = field(default_factory=dict)

    @property
    def version(self) -> int:
        return self.record.version


@dataclass(frozen=True)
class ChangeLogEntry:
    """An immutable, append-only record of one committed mutation.

    When the entry describes a single field, before_value and after_value
    hold that field's values. When a coalesced flush committed several
    fields together they hold dicts keyed by field name. Use before_patch()
    and after_patch() to get the dict form in both cases.

    Attributes:
        entry_id: Unique entry identifier
        record_id: Record the change applies to
        action_type: field_update, status_change or restore
        fields: Names of the fields the entry describes
        before_value: Value(s) before the change
        after_value: Value(s) after the change
        actor_id: Actor who made the change
        created_at: Commit time (Unix ms)
        metadata: Correlation data (flush_id, restored_from, session_id)
        sequence: Store-assigned monotonic position, None until appended

    Example:
        >>> entry = ChangeLogEntry.from_patches(
        ...     record_id="P1",
        ...     action_type=ActionType.STATUS_CHANGE,
        ...     before={"call_status": "대기중"},
        ...     after={"call_status": "응답(참석)"},
        ...     actor_id="user:42",
        ... )
        >>> entry.before_value
        '대기중'
    """

    entry_id: str
    record_id: str
    action_type: ActionType
    fields: tuple[str, ...]
    before_value: Any
    after_value: Any
    actor_id: str
    created_at: int
    metadata: dict[str, Any] = field(default_factory=dict)
    sequence: int | None = None

    @property
    def field_name(self) -> str | None:
        """The described field when the entry covers exactly one field."""
        if len(self.fields) == 1:
            return self.fields[0]
        return None

    def before_patch(self) -> dict[str, Any]:
        return self._as_patch(self.before_value)

    def after_patch(self) -> dict[str, Any]:
        return self._as_patch(self.after_value)

    def _as_patch(self, value: Any) -> dict[str, Any]:
        if len(self.fields) == 1:
            return {self.fields[0]: value}
        return {name: (value or {}).get(name) for name in self.fields}

    @classmethod
    def from_patches(
        cls,
        record_id: str,
        action_type: ActionType,
        before: dict[str, Any],
        after: dict[str, Any],
        actor_id: str,
        created_at: int | None = None,
        metadata: dict[str, Any] | None = None,
        entry_id: str | None = None,
    ) -> ChangeLogEntry:
        """Build an entry from before/after patches covering the same fields."""
        names = tuple(after.keys())
        if len(names) == 1:
            before_value: Any = before.get(names[0])
            after_value: Any = after[names[0]]
        else:
            before_value = {name: before.get(name) for name in names}
            after_value = dict(after)

        return cls(
            entry_id=entry_id or new_id(),
            record_id=record_id,
            action_type=action_type,
            fields=names,
            before_value=before_value,
            after_value=after_value,
            actor_id=actor_id,
            created_at=created_at or now_ms(),
            metadata=dict(metadata or {}),
        )

    def with_sequence(self, sequence: int) -> ChangeLogEntry:
        """Return a copy carrying the store-assigned sequence."""
        return replace(self, sequence=sequence)

    def to_dict(self) -> dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "record_id": self.record_id,
            "action_type": self.action_type.value,
            "fields": list(self.fields),
            "before_value": self.before_value,
            "after_value": self.after_value,
            "actor_id": self.actor_id,
            "created_at": self.created_at,
            "metadata": dict(self.metadata),
            "sequence": self.sequence,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChangeLogEntry:
        required = ["entry_id", "record_id", "action_type", "fields", "actor_id"]
        missing = [f for f in required if f not in data]
        if missing:
            raise ValueError(f"Missing required fields: {missing}")

        return cls(
            entry_id=data["entry_id"],
            record_id=data["record_id"],
            action_type=ActionType(data["action_type"]),
            fields=tuple(data["fields"]),
            before_value=data.get("before_value"),
            after_value=data.get("after_value"),
            actor_id=data["actor_id"],
            created_at=data.get("created_at") or now_ms(),
            metadata=dict(data.get("metadata") or {}),
            sequence=data.get("sequence"),
        )


@dataclass(frozen=True)
class ChangeNotification:
    """One item of the record store's change feed.

    Delivery is at-least-once; duplicates and reordering across records are
    possible. Within one record, version is monotonic.

    Attributes:
        record_id: Changed record
        changed_fields: New values of the fields that changed
        version: Record version after the change
        actor_id: Actor who made the change
        origin: Opaque tag of the writer (e.g. session id), if known
    """

    record_id: str
    changed_fields: dict[str, Any]
    version: int
    actor_id: str | None = None
    origin: str | None = None


# Tagged draft state


@dataclass(frozen=True)
class Confirmed:
    """The draft's value is the confirmed remote value."""

    value: Any


@dataclass(frozen=True)
class Pending:
    """A write carrying the draft is queued or in flight."""

    write_id: str | None = None


@dataclass(frozen=True)
class Failed:
    """The last write carrying the draft failed."""

    reason: str


DraftState = Union[Confirmed, Pending, Failed]


@dataclass
class DraftEntry:
    """Local state of one field of one record in one editing session.

    Attributes:
        record_id: Owning record
        field_name: Field name
        local_value: Last value the user typed or set
        dirty: True until a flush carrying local_value succeeds
        pending_write_id: Token of the flush currently carrying this field
        state: Tagged state (Confirmed, Pending or Failed)
        remote_value: Value pushed remotely while the field was dirty
        remote_seen: Whether remote_value is meaningful
        edit_seq: Incremented on every local edit
    """

    record_id: str
    field_name: str
    local_value: Any
    dirty: bool = True
    pending_write_id: str | None = None
    state: DraftState = field(default_factory=Pending)
    remote_value: Any = None
    remote_seen: bool = False
    edit_seq: int = 0


class RestoreStatus(Enum):
    """Outcome of a restore."""

    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class RestoreRequest:
    """Request to restore a record field or status from a change log entry."""

    target_log_entry_id: str
    actor_id: str


@dataclass
class RestoreResult:
    """Result of a restore.

    Attributes:
        status: success or error
        record_id: Restored record (None if the entry was not found)
        restored_fields: Fields written by the restore
        is_status: Whether a status field was restored
        new_value: Restored value(s), same shape as ChangeLogEntry.after_value
        previous_value: Value(s) replaced by the restore
        source_entry_id: Entry the values were taken from
        actor_id: Actor who requested the restore
        committed_at: Commit time (Unix ms)
        record: The committed record after the restore
        log_entry: The appended restore entry (None if the append failed)
        error: Human-readable reason when status is error
        audit_error: Set when the record changed but the log append failed
    """

    status: RestoreStatus
    record_id: str | None = None
    restored_fields: tuple[str, ...] = ()
    is_status: bool = False
    new_value: Any = None
    previous_value: Any = None
    source_entry_id: str | None = None
    actor_id: str | None = None
    committed_at: int | None = None
    record: Record | None = None
    log_entry: ChangeLogEntry | None = None
    error: str | None = None
    audit_error: str | None = None

    @property
    def success(self) -> bool:
        return self.status == RestoreStatus.SUCCESS

    @property
    def restored_field(self) -> str | None:
        if len(self.restored_fields) == 1 and not self.is_status:
            return self.restored_fields[0]
        return None

    @property
    def restored_status(self) -> str | None:
        if len(self.restored_fields) == 1 and self.is_status:
            return self.restored_fields[0]
        return None

    def to_log_entry(self) -> ChangeLogEntry:
        """The change log entry documenting this restore.

        Returns the appended entry when available, otherwise builds the
        entry that should have been appended.

        Raises:
            ValueError: If the restore did not succeed
        """
        if not self.success or self.record_id is None:
            raise ValueError("Only successful restores are represented in the change log")
        if self.log_entry is not None:
            return self.log_entry

        if len(self.restored_fields) == 1:
            before = {self.restored_fields[0]: self.previous_value}
            after = {self.restored_fields[0]: self.new_value}
        else:
            before = dict(self.previous_value or {})
            after = dict(self.new_value or {})

        return ChangeLogEntry.from_patches(
            record_id=self.record_id,
            action_type=ActionType.RESTORE,
            before=before,
            after=after,
            actor_id=self.actor_id or "unknown",
            created_at=self.committed_at,
            metadata={"restored_from": self.source_entry_id, "is_status": self.is_status},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "record_id": self.record_id,
            "restored_field": self.restored_field,
            "restored_status": self.restored_status,
            "restored_fields": list(self.restored_fields),
            "new_value": self.new_value,
            "previous_value": self.previous_value,
            "source_entry_id": self.source_entry_id,
            "version": self.record.version if self.record else None,
            "log_entry_id": self.log_entry.entry_id if self.log_entry else None,
            "error": self.error,
            "audit_error": self.audit_error,
        }
