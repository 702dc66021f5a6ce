"""In-process fan-out of change notifications.

The live transport (websocket or otherwise) subscribes here; ingestion only
ever calls :meth:`EventBroadcaster.publish`, which never blocks.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from agentlog.models import ChangeNotification

logger = logging.getLogger("agentlog.events")


class EventBroadcaster:
    """Manages subscriber queues for change notifications."""

    def __init__(self, max_queue_size: int = 256):
        self.max_queue_size = max_queue_size
        self._subscribers: set[asyncio.Queue[ChangeNotification]] = set()

    def subscribe(self) -> asyncio.Queue[ChangeNotification]:
        queue: asyncio.Queue[ChangeNotification] = asyncio.Queue(maxsize=self.max_queue_size)
        self._subscribers.add(queue)
        logger.debug("Subscriber added. Active subscribers: %d", len(self._subscribers))
        return queue

    def unsubscribe(self, queue: asyncio.Queue[ChangeNotification]) -> None:
        self._subscribers.discard(queue)
        logger.debug("Subscriber removed. Active subscribers: %d", len(self._subscribers))

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, topic: str, payload: dict[str, Any] | None = None) -> ChangeNotification:
        notification = ChangeNotification(
            topic=topic,
            payload=payload or {},
            timestamp=int(time.time() * 1000),
        )
        for queue in list(self._subscribers):
            if queue.full():
                # Slow subscriber: drop its oldest notification
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            queue.put_nowait(notification)
        return notification
