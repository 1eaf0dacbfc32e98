"""
Reconciliation subscriber for the RecSync engine.

The reconciliation subscriber consumes the record store's change feed and
folds remote changes into one session's draft buffer.

Notification handling:
    1. No open view for the record -> forwarded to the passive cache, if any
    2. Version not newer than the buffer's copy -> dropped (stale/duplicate)
    3. Clean fields -> overwritten with the remote value
    4. Dirty fields -> draft kept, remote value remembered; a divergence is
       reported as a conflict once the local flush commits

Invariants:
    - A dirty local draft is never overwritten by a remote change
    - Processing is idempotent: replaying a notification changes nothing
    - An error processing one notification does not stop the loop

How to change safely:
    - Keep process() synchronous so a notification is applied atomically
      with respect to edits
    - Never write to the record store from here
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from ..model import ChangeNotification
from ..stores.base import RecordStore
from .drafts import DraftBuffer, RemoteApplyResult
from .events import EventKind, SessionEvent

logger = logging.getLogger(__name__)


class ReconciliationSubscriber:
    """Applies remote changes to a session's draft buffer.

    Example:
        >>> reconciler = ReconciliationSubscriber(store, buffer, is_open=views.__contains__)
        >>> reconciler.start()
        >>> ...
        >>> await reconciler.stop()
    """

    def __init__(
        self,
        record_store: RecordStore,
        buffer: DraftBuffer,
        *,
        is_open: Callable[[str], bool],
        emit: Callable[[SessionEvent], None] | None = None,
        origin: str | None = None,
        passive_cache: Callable[[ChangeNotification], None] | None = None,
    ) -> None:
        self.record_store = record_store
        self.buffer = buffer
        self.is_open = is_open
        self.emit = emit
        self.origin = origin
        self.passive_cache = passive_cache

        self._subscription: Any = None
        self._task: asyncio.Task | None = None
        self._running = False
        self._received = 0
        self._applied = 0
        self._held = 0
        self._dropped_no_view = 0
        self._dropped_stale = 0
        self._error_count = 0

    def start(self) -> None:
        """Subscribe to the change feed and start the processing loop.

        The subscription is registered before this method returns.
        """
        if self._running:
            logger.warning("Reconciliation subscriber already running")
            return

        self._running = True
        self._subscription = self.record_store.subscribe()
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info("Starting reconciliation subscriber", extra={"origin": self.origin})

    async def _run(self) -> None:
        try:
            async for notification in self._subscription:
                if not self._running:
                    break
                try:
                    self.process(notification)
                except Exception as e:
                    self._error_count += 1
                    logger.error(
                        f"Error reconciling notification: {e}",
                        exc_info=True,
                        extra={"record_id": notification.record_id, "version": notification.version},
                    )
        except asyncio.CancelledError:
            logger.info("Reconciliation subscriber cancelled")
        finally:
            self._running = False

    async def stop(self) -> None:
        """Close the subscription and wait for the loop to end."""
        self._running = False
        logger.info("Stopping reconciliation subscriber")
        if self._subscription is not None and hasattr(self._subscription, "close"):
            self._subscription.close()
        if self._task is not None:
            if not self._task.done():
                try:
                    await asyncio.wait_for(self._task, timeout=1.0)
                except asyncio.TimeoutError:
                    self._task.cancel()
            self._task = None
        self._subscription = None

    def process(self, notification: ChangeNotification) -> RemoteApplyResult | None:
        """Apply one notification to the draft buffer.

        Returns:
            What was applied, or None if the notification was dropped
        """
        self._received += 1
        record_id = notification.record_id

        if not self.is_open(record_id):
            self._dropped_no_view += 1
            if self.passive_cache is not None:
                self.passive_cache(notification)
            return None

        result = self.buffer.apply_remote(record_id, notification.changed_fields, notification.version)
        if result is None:
            self._dropped_stale += 1
            logger.debug(
                "Dropped stale notification",
                extra={"record_id": record_id, "version": notification.version},
            )
            return None

        self._applied += 1
        self._held += len(result.held)

        own_write = self.origin is not None and notification.origin == self.origin
        if result.held:
            logger.debug(
                "Remote change held behind local drafts",
                extra={"record_id": record_id, "fields": result.held},
            )
        if self.emit is not None and not own_write and (result.overwritten or result.held):
            self.emit(
                SessionEvent.create(
                    EventKind.REMOTE_UPDATE,
                    record_id,
                    result.overwritten,
                    detail={
                        "version": notification.version,
                        "actor_id": notification.actor_id,
                        "held": list(result.held),
                    },
                )
            )
        return result

    @property
    def running(self) -> bool:
        return self._running

    @property
    def stats(self) -> dict[str, Any]:
        """Get reconciliation statistics."""
        return {
            "running": self._running,
            "received": self._received,
            "applied": self._applied,
            "held_fields": self._held,
            "dropped_no_view": self._dropped_no_view,
            "dropped_stale": self._dropped_stale,
            "error_count": self._error_count,
        }
