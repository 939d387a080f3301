"""Fan-out of comment notifications to any number of subscribers.

Publishing never blocks: each subscriber owns a bounded queue and, when it
falls behind, loses its oldest entries. Subscribers that see ``lagged > 0``
should re-read the thread through the query path.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Optional

from threadbridge.core.identity import TenantId
from threadbridge.core.models import Notification

LOGGER = logging.getLogger(__name__)


class Subscription:
    """One subscriber's view of the notification stream."""

    def __init__(
        self,
        broadcaster: "Broadcaster",
        maxsize: int,
        tenant: Optional[TenantId] = None,
        slug: Optional[str] = None,
    ) -> None:
        self._broadcaster = broadcaster
        self._queue: asyncio.Queue[Notification] = asyncio.Queue(maxsize=maxsize)
        self._tenant = tenant
        self._slug = slug
        self.lagged = 0

    def wants(self, notification: Notification) -> bool:
        if self._tenant is not None and notification.tenant != self._tenant:
            return False
        if self._slug is not None and notification.slug != self._slug:
            return False
        return True

    def offer(self, notification: Notification) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.lagged += 1
        self._queue.put_nowait(notification)

    async def get(self) -> Notification:
        return await self._queue.get()

    def get_nowait(self) -> Notification:
        return self._queue.get_nowait()

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        self._broadcaster.unsubscribe(self)

    def __aiter__(self) -> AsyncIterator[Notification]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Notification]:
        while True:
            yield await self._queue.get()


class Broadcaster:
    """Best-effort publisher of CommentSaved/CommentDeleted notifications."""

    def __init__(self, subscriber_queue_size: int = 100) -> None:
        self._queue_size = subscriber_queue_size
        self._subscribers: set[Subscription] = set()

    def subscribe(self, tenant: Optional[TenantId] = None, slug: Optional[str] = None) -> Subscription:
        subscription = Subscription(self, self._queue_size, tenant, slug)
        self._subscribers.add(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        self._subscribers.discard(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, notification: Notification) -> int:
        """Deliver to every interested subscriber; returns how many received it."""

        delivered = 0
        for subscription in list(self._subscribers):
            if not subscription.wants(notification):
                continue
            subscription.offer(notification)
            delivered += 1
        LOGGER.debug("Published %s to %s subscriber(s)", notification.kind, delivered)
        return delivered
