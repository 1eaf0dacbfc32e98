"""
Audit writer for the RecSync engine.

The audit writer turns confirmed writes into change log entries and reads
the change history back.

Invariants:
    - record_change() is only called after the record store confirmed the write
    - Entries of one record are appended in commit order (callers hold the
      record's exclusive section while appending)
    - A single-field write to a status field is a status_change entry
    - A failed append raises AuditError; the primary write stands

How to change safely:
    - Keep history() lazy; a record's log can be long
    - New action types need a label in ACTION_LABELS
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from typing import Any

from ..errors import AuditError
from ..model import ActionType, ChangeLogEntry
from ..schema.types import RecordTypeDef
from ..stores.base import ChangeLogStore

logger = logging.getLogger(__name__)

# Labels shown in the participant log viewer
ACTION_LABELS = {
    ActionType.FIELD_UPDATE: "수정",
    ActionType.STATUS_CHANGE: "상태 변경",
    ActionType.RESTORE: "복원",
}

ACTION_VARIANTS = {
    ActionType.FIELD_UPDATE: "secondary",
    ActionType.STATUS_CHANGE: "default",
    ActionType.RESTORE: "outline",
}


@dataclass(frozen=True)
class EntryDescription:
    """Human-readable rendering of a change log entry."""

    label: str
    variant: str
    summary: str


def _format_value(value: Any) -> str:
    if value is None or value == "":
        return "(없음)"
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value)
    return str(value)


def describe(entry: ChangeLogEntry) -> EntryDescription:
    """Render an entry for display, e.g. ``call_status: 대기중 → 응답(참석)``."""
    before = entry.before_patch()
    after = entry.after_patch()
    parts = [
        f"{name}: {_format_value(before.get(name))} → {_format_value(after.get(name))}"
        for name in entry.fields
    ]
    summary = "; ".join(parts)
    restored_from = entry.metadata.get("restored_from")
    if entry.action_type == ActionType.RESTORE and restored_from:
        summary += f" (기록 {restored_from}에서 복원)"

    return EntryDescription(
        label=ACTION_LABELS.get(entry.action_type, entry.action_type.value),
        variant=ACTION_VARIANTS.get(entry.action_type, "outline"),
        summary=summary,
    )


class ChangeHistory:
    """Change history of one record, most recent first.

    A finite async iterable that pages through the change log lazily. Every
    iteration starts a fresh query, so iterating again sees new entries.

    Example:
        >>> async for entry in writer.history("P1"):
        ...     print(entry.action_type, entry.after_value)
        >>> latest = await writer.history("P1").first(5)
    """

    def __init__(self, change_log: ChangeLogStore, record_id: str, page_size: int = 50) -> None:
        self.change_log = change_log
        self.record_id = record_id
        self.page_size = page_size

    def __aiter__(self) -> AsyncIterator[ChangeLogEntry]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ChangeLogEntry]:
        before_sequence = None
        while True:
            page = await self.change_log.list(
                self.record_id,
                limit=self.page_size,
                before_sequence=before_sequence,
            )
            for entry in page:
                yield entry
            if len(page) < self.page_size:
                return
            before_sequence = page[-1].sequence
            if before_sequence is None:
                return

    async def first(self, limit: int) -> list[ChangeLogEntry]:
        """Collect up to `limit` most recent entries."""
        entries: list[ChangeLogEntry] = []
        if limit <= 0:
            return entries
        async for entry in self:
            entries.append(entry)
            if len(entries) >= limit:
                break
        return entries


class AuditWriter:
    """Appends change log entries for confirmed writes.

    Example:
        >>> writer = AuditWriter(change_log, record_type=PARTICIPANT)
        >>> entry = await writer.record_change(
        ...     "P1",
        ...     ActionType.STATUS_CHANGE,
        ...     before={"call_status": "대기중"},
        ...     after={"call_status": "응답(참석)"},
        ...     actor_id="user:42",
        ... )
    """

    def __init__(
        self,
        change_log: ChangeLogStore,
        record_type: RecordTypeDef | None = None,
        page_size: int = 50,
    ) -> None:
        self.change_log = change_log
        self.record_type = record_type
        self.page_size = page_size

    def classify(self, patch: dict[str, Any]) -> ActionType:
        """Action type of a write carrying `patch`."""
        if len(patch) == 1 and self.record_type is not None:
            (name,) = patch
            if self.record_type.is_status(name):
                return ActionType.STATUS_CHANGE
        return ActionType.FIELD_UPDATE

    async def record_change(
        self,
        record_id: str,
        action_type: ActionType | None,
        before: dict[str, Any],
        after: dict[str, Any],
        actor_id: str,
        *,
        fields: Sequence[str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ChangeLogEntry:
        """Append the entry describing a confirmed write.

        Args:
            record_id: Written record
            action_type: Entry type; classified from `after` when None
            before: Values before the write
            after: Values written
            actor_id: Actor who made the write
            fields: Restrict the entry to these fields (default: all of `after`)
            metadata: Correlation data stored with the entry

        Returns:
            The appended entry

        Raises:
            AuditError: If the change log append failed
        """
        if fields is not None:
            after = {name: after[name] for name in fields if name in after}
        if not after:
            raise ValueError("record_change needs at least one written field")
        if action_type is None:
            action_type = self.classify(after)

        entry = ChangeLogEntry.from_patches(
            record_id=record_id,
            action_type=action_type,
            before=before,
            after=after,
            actor_id=actor_id,
            metadata=metadata,
        )

        try:
            await self.change_log.append(entry)
        except Exception as e:
            logger.warning(
                "Change log append failed",
                extra={
                    "record_id": record_id,
                    "action_type": action_type.value,
                    "fields": list(entry.fields),
                    "error": str(e),
                },
            )
            raise AuditError(
                f"Change log append failed for {record_id}: {e}",
                record_id=record_id,
                action_type=action_type.value,
            ) from e

        logger.debug(
            "Recorded change",
            extra={
                "entry_id": entry.entry_id,
                "record_id": record_id,
                "action_type": action_type.value,
                "fields": list(entry.fields),
            },
        )
        return entry

    def history(self, record_id: str, page_size: int | None = None) -> ChangeHistory:
        """Lazily paged change history of a record, most recent first."""
        return ChangeHistory(self.change_log, record_id, page_size or self.page_size)

    async def get(self, entry_id: str) -> ChangeLogEntry:
        return await self.change_log.get(entry_id)
