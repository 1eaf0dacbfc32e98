"""
Draft buffer for the RecSync engine.

The draft buffer holds, per open record, the last confirmed copy of the
record and the local edits made on top of it. Edits land here
synchronously; the scheduler later carries them to the record store.

Invariants:
    - A dirty draft is never overwritten by a remote change
    - A dirty draft becomes clean only when a flush carrying its current
      local value commits (edits made while the flush was in flight keep
      the draft dirty)
    - The confirmed copy tracks the latest known committed value of every
      field, including fields with a dirty draft on top
    - Remote changes older than or equal to the known version are ignored

How to change safely:
    - Keep every method synchronous; callers rely on no awaits in between
    - The buffer is owned by one session; never share instances
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any

from ..errors import ConflictWarning
from ..model import Confirmed, DraftEntry, DraftState, Failed, Pending, Record

logger = logging.getLogger(__name__)

_MISSING = object()


@dataclass
class RemoteApplyResult:
    """Outcome of applying a remote change to the buffer.

    Attributes:
        overwritten: Clean fields whose value changed
        held: Dirty fields whose draft was kept
    """

    overwritten: list[str] = field(default_factory=list)
    held: list[str] = field(default_factory=list)


@dataclass
class _RecordDrafts:
    record_id: str
    confirmed: dict[str, Any] = field(default_factory=dict)
    version: int = 0
    drafts: dict[str, DraftEntry] = field(default_factory=dict)
    # write_id -> {field: (edit_seq, value)} for flushes in flight
    in_flight: dict[str, dict[str, tuple[int, Any]]] = field(default_factory=dict)
    edit_seq: int = 0


class DraftBuffer:
    """Per-session store of confirmed values and local drafts.

    Example:
        >>> buffer = DraftBuffer()
        >>> buffer.load(record)
        >>> buffer.set_field("P1", "call_status", "응답(참석)")
        >>> buffer.get_field("P1", "call_status")
        '응답(참석)'
        >>> buffer.dirty_fields("P1")
        ['call_status']
    """

    def __init__(self) -> None:
        self._records: dict[str, _RecordDrafts] = {}

    def _slot(self, record_id: str) -> _RecordDrafts:
        slot = self._records.get(record_id)
        if slot is None:
            slot = _RecordDrafts(record_id=record_id)
            self._records[record_id] = slot
        return slot

    # Loading

    def load(self, record: Record) -> None:
        """Load (or refresh) the confirmed copy of a record."""
        slot = self._records.get(record.record_id)
        if slot is None:
            self._records[record.record_id] = _RecordDrafts(
                record_id=record.record_id,
                confirmed=copy.deepcopy(record.fields),
                version=record.version,
            )
            return
        self.apply_record(record)

    def is_loaded(self, record_id: str) -> bool:
        return record_id in self._records

    def records(self) -> list[str]:
        return list(self._records)

    def version(self, record_id: str) -> int:
        slot = self._records.get(record_id)
        return slot.version if slot else 0

    # Local edits

    def set_field(self, record_id: str, field_name: str, value: Any) -> DraftEntry:
        """Store a local value and mark the field dirty."""
        slot = self._slot(record_id)
        slot.edit_seq += 1

        entry = slot.drafts.get(field_name)
        if entry is None:
            entry = DraftEntry(record_id=record_id, field_name=field_name, local_value=None)
            slot.drafts[field_name] = entry

        entry.local_value = copy.deepcopy(value)
        entry.dirty = True
        entry.edit_seq = slot.edit_seq
        entry.state = Pending(entry.pending_write_id)
        return entry

    def get_field(self, record_id: str, field_name: str, default: Any = None) -> Any:
        """Dirty local value if present, else the confirmed value."""
        slot = self._records.get(record_id)
        if slot is None:
            return default
        entry = slot.drafts.get(field_name)
        if entry is not None and entry.dirty:
            return copy.deepcopy(entry.local_value)
        return copy.deepcopy(slot.confirmed.get(field_name, default))

    def confirmed_values(self, record_id: str, fields: Any) -> dict[str, Any]:
        slot = self._records.get(record_id)
        if slot is None:
            return {name: None for name in fields}
        return {name: copy.deepcopy(slot.confirmed.get(name)) for name in fields}

    def draft(self, record_id: str, field_name: str) -> DraftEntry | None:
        slot = self._records.get(record_id)
        if slot is None:
            return None
        return slot.drafts.get(field_name)

    def state(self, record_id: str, field_name: str) -> DraftState:
        """Tagged state of one field."""
        entry = self.draft(record_id, field_name)
        if entry is None or not entry.dirty:
            slot = self._records.get(record_id)
            value = slot.confirmed.get(field_name) if slot else None
            return Confirmed(copy.deepcopy(value))
        return entry.state

    def dirty_fields(self, record_id: str) -> list[str]:
        slot = self._records.get(record_id)
        if slot is None:
            return []
        return [name for name, entry in slot.drafts.items() if entry.dirty]

    def is_dirty(self, record_id: str, field_name: str | None = None) -> bool:
        if field_name is None:
            return bool(self.dirty_fields(record_id))
        entry = self.draft(record_id, field_name)
        return entry is not None and entry.dirty

    def snapshot(self, record_id: str) -> dict[str, Any]:
        """Displayed values: the confirmed copy overlaid with dirty drafts."""
        slot = self._records.get(record_id)
        if slot is None:
            return {}
        values = copy.deepcopy(slot.confirmed)
        for name, entry in slot.drafts.items():
            if entry.dirty:
                values[name] = copy.deepcopy(entry.local_value)
        return values

    # Flush lifecycle

    def begin_flush(self, record_id: str, fields: Any, write_id: str) -> dict[str, Any]:
        """Mark dirty fields as carried by a write and return the patch.

        Fields whose local value equals the confirmed value are marked clean
        and left out of the patch.
        """
        slot = self._slot(record_id)
        patch: dict[str, Any] = {}
        carried: dict[str, tuple[int, Any]] = {}

        for name in fields:
            entry = slot.drafts.get(name)
            if entry is None or not entry.dirty:
                continue

            if slot.confirmed.get(name, _MISSING) == entry.local_value:
                self._mark_clean(entry, entry.local_value)
                continue

            value = copy.deepcopy(entry.local_value)
            patch[name] = value
            carried[name] = (entry.edit_seq, value)
            entry.pending_write_id = write_id
            entry.state = Pending(write_id)

        if carried:
            slot.in_flight[write_id] = carried
        return patch

    def commit_flush(
        self,
        record_id: str,
        write_id: str,
        record: Record | None = None,
    ) -> list[ConflictWarning]:
        """Confirm a committed write.

        Args:
            record_id: Written record
            write_id: Token passed to begin_flush
            record: Committed record returned by the store, used to refresh
                the other fields and the known version

        Returns:
            Conflicts for fields that were changed remotely to a value other
            than the one just written
        """
        slot = self._records.get(record_id)
        if slot is None:
            # Dropped while the write was in flight
            return []
        carried = slot.in_flight.pop(write_id, {})
        conflicts: list[ConflictWarning] = []

        for name, (edit_seq, value) in carried.items():
            slot.confirmed[name] = copy.deepcopy(value)
            entry = slot.drafts.get(name)
            if entry is None:
                continue

            if entry.remote_seen and entry.remote_value != value:
                conflicts.append(ConflictWarning(record_id, name, value, entry.remote_value))
            entry.remote_seen = False
            entry.remote_value = None

            if entry.pending_write_id == write_id:
                entry.pending_write_id = None
            if entry.edit_seq == edit_seq:
                self._mark_clean(entry, value)
            else:
                entry.state = Pending(entry.pending_write_id)

        if record is not None:
            for name, value in record.fields.items():
                if name not in carried:
                    self._apply_value(slot, name, value)
            slot.version = max(slot.version, record.version)

        for conflict in conflicts:
            logger.warning(
                "Field changed remotely while being edited",
                extra={"record_id": record_id, "field": conflict.field_name},
            )
        return conflicts

    def fail_flush(self, record_id: str, write_id: str, reason: str) -> list[str]:
        """Record a failed write; the carried drafts stay dirty.

        Returns:
            Fields the failed write carried
        """
        slot = self._records.get(record_id)
        if slot is None:
            return []
        carried = slot.in_flight.pop(write_id, {})
        for name in carried:
            entry = slot.drafts.get(name)
            if entry is None:
                continue
            if entry.pending_write_id == write_id:
                entry.pending_write_id = None
            entry.state = Failed(reason)
        return list(carried)

    # Remote changes

    def apply_remote(
        self,
        record_id: str,
        changes: dict[str, Any],
        version: int,
    ) -> RemoteApplyResult | None:
        """Apply a remote change.

        Returns:
            None when the change is stale or a duplicate, else which fields
            were overwritten and which were held because of a dirty draft
        """
        slot = self._records.get(record_id)
        if slot is None or version <= slot.version:
            return None

        slot.version = version
        result = RemoteApplyResult()
        for name, value in changes.items():
            outcome = self._apply_value(slot, name, value)
            if outcome == "held":
                result.held.append(name)
            elif outcome == "overwritten":
                result.overwritten.append(name)
        return result

    def apply_record(self, record: Record) -> RemoteApplyResult:
        """Refresh the confirmed copy from a full committed record."""
        slot = self._slot(record.record_id)
        result = RemoteApplyResult()
        for name, value in record.fields.items():
            outcome = self._apply_value(slot, name, value)
            if outcome == "held":
                result.held.append(name)
            elif outcome == "overwritten":
                result.overwritten.append(name)
        slot.version = max(slot.version, record.version)
        return result

    def _apply_value(self, slot: _RecordDrafts, name: str, value: Any) -> str | None:
        previous = slot.confirmed.get(name, _MISSING)
        if previous == value:
            return None
        slot.confirmed[name] = copy.deepcopy(value)

        entry = slot.drafts.get(name)
        if entry is not None and entry.dirty:
            entry.remote_value = copy.deepcopy(value)
            entry.remote_seen = True
            return "held"
        return "overwritten"

    # Discarding

    def discard(self, record_id: str, fields: Any = None) -> list[str]:
        """Drop drafts; the fields revert to their confirmed values.

        Returns:
            Dirty fields whose local value was discarded
        """
        slot = self._records.get(record_id)
        if slot is None:
            return []
        names = list(slot.drafts) if fields is None else [n for n in fields if n in slot.drafts]
        discarded = []
        for name in names:
            entry = slot.drafts.pop(name)
            if entry.dirty:
                discarded.append(name)
        return discarded

    def drop(self, record_id: str) -> None:
        """Forget a record entirely."""
        self._records.pop(record_id, None)

    @staticmethod
    def _mark_clean(entry: DraftEntry, value: Any) -> None:
        entry.dirty = False
        entry.pending_write_id = None
        entry.state = Confirmed(copy.deepcopy(value))
