"""
In-process change feed.

Record stores publish a ChangeNotification for every committed write; the
feed fans it out to every subscription whose predicate matches.

Invariants:
    - A subscription receives notifications published after it was opened
    - Notifications for one record reach a subscriber in publish order
    - Closing the feed ends every open subscription

How to change safely:
    - Keep publish() synchronous; it runs inside store write paths
    - Subscribers that fall behind by more than queue_size notifications
      lose the overflow (logged); reconciliation tolerates gaps by version
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Dict, Optional

from ..model import ChangeNotification
from .base import NotificationPredicate

logger = logging.getLogger(__name__)

_CLOSED = object()


class Subscription:
    """An open subscription to a ChangeFeed.

    Async-iterable; iteration ends when the subscription or the feed is
    closed.

    Example:
        >>> sub = feed.subscribe(lambda n: n.record_id == "P1")
        >>> async for notification in sub:
        ...     print(notification.changed_fields)
    """

    def __init__(
        self,
        feed: ChangeFeed,
        subscription_id: int,
        predicate: Optional[NotificationPredicate],
        queue_size: int,
    ) -> None:
        self._feed = feed
        self.subscription_id = subscription_id
        self.predicate = predicate
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size + 1)
        self._queue_size = queue_size
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def _offer(self, notification: ChangeNotification) -> None:
        if self._closed:
            return
        if self.predicate is not None and not self.predicate(notification):
            return
        if self._queue.qsize() >= self._queue_size:
            self.dropped += 1
            logger.warning(
                "Change feed subscriber is full, dropping notification",
                extra={
                    "subscription_id": self.subscription_id,
                    "record_id": notification.record_id,
                    "version": notification.version,
                },
            )
            return
        self._queue.put_nowait(notification)

    def close(self) -> None:
        """Close the subscription; a pending iteration ends."""
        if self._closed:
            return
        self._closed = True
        self._feed._unregister(self.subscription_id)
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> ChangeNotification:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item


class ChangeFeed:
    """Fan-out of change notifications to subscriptions.

    Example:
        >>> feed = ChangeFeed()
        >>> sub = feed.subscribe()
        >>> feed.publish(ChangeNotification("P1", {"memo": "hi"}, version=2))
    """

    def __init__(self, queue_size: int = 1000) -> None:
        self.queue_size = queue_size
        self._subscriptions: Dict[int, Subscription] = {}
        self._ids = itertools.count(1)
        self._published = 0

    def subscribe(self, predicate: Optional[NotificationPredicate] = None) -> Subscription:
        """Open a subscription (registered immediately)."""
        sub = Subscription(self, next(self._ids), predicate, self.queue_size)
        self._subscriptions[sub.subscription_id] = sub
        logger.debug("Change feed subscription opened", extra={"subscription_id": sub.subscription_id})
        return sub

    def publish(self, notification: ChangeNotification) -> None:
        """Deliver a notification to every matching subscription."""
        self._published += 1
        for sub in list(self._subscriptions.values()):
            sub._offer(notification)

    def close(self) -> None:
        """Close every open subscription."""
        for sub in list(self._subscriptions.values()):
            sub.close()

    def _unregister(self, subscription_id: int) -> None:
        self._subscriptions.pop(subscription_id, None)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    @property
    def published_count(self) -> int:
        return self._published
