"""
Timer factories for the coalescing scheduler.

The scheduler never sleeps itself; it asks an injected TimerFactory to call
it back after the quiet period:
- AsyncioTimerFactory: production, backed by loop.call_later
- ManualTimerFactory: tests, fires timers only when told to

Invariants:
    - A cancelled timer never fires
    - A timer fires at most once
    - Callbacks run on the event loop thread
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

logger = logging.getLogger(__name__)


class TimerHandle(Protocol):
    """A scheduled callback that can be cancelled."""

    def cancel(self) -> None: ...


class TimerFactory(Protocol):
    """Schedules callbacks after a delay in milliseconds."""

    def call_later(self, delay_ms: int, callback: Callable[[], None]) -> TimerHandle: ...


class AsyncioTimerFactory:
    """TimerFactory backed by the running event loop."""

    def call_later(self, delay_ms: int, callback: Callable[[], None]) -> asyncio.TimerHandle:
        loop = asyncio.get_running_loop()
        return loop.call_later(delay_ms / 1000.0, callback)


@dataclass
class ManualTimer:
    """A timer owned by a ManualTimerFactory."""

    due_ms: int
    callback: Callable[[], None]
    seq: int
    cancelled: bool = False
    fired: bool = False

    def cancel(self) -> None:
        self.cancelled = True


@dataclass
class ManualTimerFactory:
    """Deterministic TimerFactory driven by a virtual clock.

    Example:
        >>> timers = ManualTimerFactory()
        >>> scheduler = CoalescingScheduler(..., timers=timers)
        >>> session.edit("P1", "memo", "hi")
        >>> timers.advance(500)   # quiet period elapses, flush starts
    """

    now_ms: int = 0
    _timers: list[ManualTimer] = field(default_factory=list)
    _seq: int = 0

    def call_later(self, delay_ms: int, callback: Callable[[], None]) -> ManualTimer:
        self._seq += 1
        timer = ManualTimer(due_ms=self.now_ms + delay_ms, callback=callback, seq=self._seq)
        self._timers.append(timer)
        return timer

    @property
    def pending(self) -> int:
        """Number of timers that are neither fired nor cancelled."""
        return len(self._live())

    def _live(self) -> list[ManualTimer]:
        return [t for t in self._timers if not t.cancelled and not t.fired]

    def advance(self, ms: int) -> int:
        """Move the clock forward and fire every timer that became due.

        Returns:
            Number of timers fired
        """
        self.now_ms += ms
        due = sorted(
            (t for t in self._live() if t.due_ms <= self.now_ms),
            key=lambda t: (t.due_ms, t.seq),
        )
        for timer in due:
            self._fire(timer)
        self._timers = self._live()
        return len(due)

    def fire_all(self) -> int:
        """Fire every pending timer regardless of its due time."""
        live = sorted(self._live(), key=lambda t: (t.due_ms, t.seq))
        if live:
            self.now_ms = max(self.now_ms, live[-1].due_ms)
        for timer in live:
            self._fire(timer)
        self._timers = self._live()
        return len(live)

    def _fire(self, timer: ManualTimer) -> None:
        # A callback may cancel a later timer
        if timer.cancelled or timer.fired:
            return
        timer.fired = True
        timer.callback()
