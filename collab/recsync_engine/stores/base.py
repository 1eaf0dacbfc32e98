"""
Base protocols for the record store and change log store.

The engine treats both stores as external, durable collaborators and only
relies on the interfaces defined here:
- RecordStore: current state of records plus a change-notification feed
- ChangeLogStore: append-only table of change log entries

Invariants:
    - RecordStore.update() returns only after the write is committed
    - RecordStore.update() reports the pre-image of the patched fields as of
      the write itself, never from an earlier read
    - Every committed update bumps Record.version and stamps
      last_modified_by / last_modified_at atomically with the field write
    - Every committed update is published to subscribers (at-least-once)
    - ChangeLogStore never updates or deletes an appended entry
    - ChangeLogStore.list() returns entries most recent first

How to change safely:
    - Protocol changes require updating all implementations
    - Add new methods as optional keyword arguments with defaults
"""

from __future__ import annotations

from abc import abstractmethod
from collections.abc import Callable
from typing import (
    Any,
    AsyncIterator,
    Dict,
    List,
    Optional,
    Protocol,
    runtime_checkable,
)

from ..model import ChangeLogEntry, ChangeNotification, CommittedUpdate, Record

NotificationPredicate = Callable[[ChangeNotification], bool]


@runtime_checkable
class RecordStore(Protocol):
    """Protocol for record store back-ends.

    Durability contract:
        - update() returns only after the write is durably committed
        - A failed update() leaves the record unchanged

    Ordering contract:
        - Writes to one record are totally ordered by version
        - Notifications for one record are published in version order

    Example:
        >>> committed = await store.update("P1", {"call_status": "응답(참석)"}, actor_id="user:42")
        >>> committed.record.version, committed.previous
        (2, {"call_status": "대기중"})
    """

    @abstractmethod
    async def create(
        self,
        record_id: str,
        fields: Dict[str, Any],
        actor_id: str,
    ) -> Record:
        """Create a record.

        Raises:
            StoreError: If the record already exists or the write fails
        """
        ...

    @abstractmethod
    async def get(self, record_id: str) -> Record:
        """Get the current state of a record.

        Raises:
            RecordNotFoundError: If the record does not exist
            StoreError: If the read fails
        """
        ...

    @abstractmethod
    async def update(
        self,
        record_id: str,
        patch: Dict[str, Any],
        *,
        actor_id: str,
        origin: Optional[str] = None,
    ) -> CommittedUpdate:
        """Apply a patch (merge semantics) and return the committed record.

        The returned CommittedUpdate also carries the values the patched
        fields had just before the write, read in the same atomic step.

        Args:
            record_id: Record to update
            patch: Field values to write
            actor_id: Actor performing the write
            origin: Opaque writer tag copied into the change notification

        Raises:
            RecordNotFoundError: If the record does not exist
            StoreError: If the write fails
        """
        ...

    @abstractmethod
    def subscribe(
        self,
        predicate: Optional[NotificationPredicate] = None,
    ) -> AsyncIterator[ChangeNotification]:
        """Subscribe to committed changes.

        The subscription is registered when this method returns, so no
        change committed afterwards is missed.

        Args:
            predicate: Optional filter; only matching notifications are delivered
        """
        ...


@runtime_checkable
class ChangeLogStore(Protocol):
    """Protocol for change log back-ends.

    The log is append-only: entries are never updated or deleted. Each
    appended entry gets a store-assigned, monotonically increasing sequence.
    """

    @abstractmethod
    async def append(self, entry: ChangeLogEntry) -> str:
        """Append an entry and return its id.

        Appending an entry id that already exists is a no-op.

        Raises:
            StoreError: If the append fails
        """
        ...

    @abstractmethod
    async def get(self, entry_id: str) -> ChangeLogEntry:
        """Get one entry.

        Raises:
            LogEntryNotFoundError: If the entry does not exist
        """
        ...

    @abstractmethod
    async def list(
        self,
        record_id: str,
        limit: int = 50,
        before_sequence: Optional[int] = None,
    ) -> List[ChangeLogEntry]:
        """List entries of a record, most recent first.

        Args:
            record_id: Record whose entries to list
            limit: Maximum entries to return
            before_sequence: Only return entries older than this sequence
        """
        ...
