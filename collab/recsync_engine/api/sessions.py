"""
Per-actor editing sessions for the HTTP gateway.

Every actor (X-Actor header) gets one EditingSession over the shared
stores. Sessions are created on first use and closed either by the actor
(DELETE /api/v1/session) or with the gateway.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any

from ..config import EngineConfig
from ..schema.types import RecordTypeDef
from ..stores.base import ChangeLogStore, RecordStore
from ..sync.events import SessionEvent
from ..sync.scheduler import FlushResult
from ..sync.session import EditingSession
from ..sync.timer import TimerFactory

logger = logging.getLogger(__name__)


class SessionManager:
    """Holds one started EditingSession per actor.

    Example:
        >>> manager = SessionManager(store, change_log, engine_config, PARTICIPANT)
        >>> session = await manager.get("user:42")
        >>> await manager.close_all()
    """

    def __init__(
        self,
        record_store: RecordStore,
        change_log: ChangeLogStore,
        config: EngineConfig,
        record_type: RecordTypeDef | None = None,
        timers: TimerFactory | None = None,
        event_buffer_size: int = 100,
    ) -> None:
        self.record_store = record_store
        self.change_log = change_log
        self.config = config
        self.record_type = record_type
        self.timers = timers
        self.event_buffer_size = event_buffer_size
        self._sessions: dict[str, EditingSession] = {}
        self._events: dict[str, deque[SessionEvent]] = {}
        self._lock = asyncio.Lock()

    async def get(self, actor_id: str) -> EditingSession:
        """Get (or create and start) the session of an actor."""
        session = self._sessions.get(actor_id)
        if session is not None:
            return session

        async with self._lock:
            session = self._sessions.get(actor_id)
            if session is None:
                session = EditingSession(
                    self.record_store,
                    self.change_log,
                    actor_id,
                    record_type=self.record_type,
                    config=self.config,
                    timers=self.timers,
                )
                events: deque[SessionEvent] = deque(maxlen=self.event_buffer_size)
                session.add_listener(events.append)
                await session.start()
                self._sessions[actor_id] = session
                self._events[actor_id] = events
                logger.info("Created editing session", extra={"actor_id": actor_id})
        return session

    def events(self, actor_id: str, limit: int | None = None) -> list[SessionEvent]:
        """Most recent session events of an actor, oldest first."""
        events = list(self._events.get(actor_id, ()))
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events

    async def close(self, actor_id: str, discard: bool = False) -> list[FlushResult] | None:
        """Close and forget the session of an actor.

        Every open view is closed first, saving its drafts (or discarding
        them with discard=True). If a save fails, the session stays
        registered with that view open and the error is raised.

        Returns:
            Results of the saves, or None if the actor had no session

        Raises:
            PersistenceError: If saving a view's drafts failed
        """
        session = self._sessions.get(actor_id)
        if session is None:
            return None

        results: list[FlushResult] = []
        for record_id in session.open_views:
            result = await session.close_view(record_id, discard=discard)
            if result is None:
                continue
            if result.error is not None:
                raise result.error
            results.append(result)

        async with self._lock:
            if self._sessions.get(actor_id) is session:
                del self._sessions[actor_id]
                self._events.pop(actor_id, None)
        await session.close()
        logger.info("Closed editing session", extra={"actor_id": actor_id, "discard": discard})
        return results

    async def close_all(self) -> None:
        """Close every session (flushing dirty drafts)."""
        async with self._lock:
            sessions = list(self._sessions.items())
            self._sessions.clear()
            self._events.clear()
        for actor_id, session in sessions:
            try:
                await session.close()
            except Exception as e:
                logger.error(f"Error closing session of {actor_id}: {e}", exc_info=True)

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "sessions": len(self._sessions),
            "open_views": sum(len(s.open_views) for s in self._sessions.values()),
        }
