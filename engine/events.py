"""Fire-and-forget notification fan-out.

Every event is an envelope ``{"timestamp", "type", **payload}`` delivered to
the subscribers connected at publish time. There is no backlog for late
joiners, and a subscriber whose queue is full misses events rather than
slowing the publisher down.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from engine.json_utils import safe_json

logger = logging.getLogger(__name__)

SUBSCRIBER_QUEUE_SIZE = 256


class EventBroadcaster:
    def __init__(self, queue_size: int = SUBSCRIBER_QUEUE_SIZE) -> None:
        self._queue_size = queue_size
        self._subscribers: set[asyncio.Queue] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    def publish(self, event_type: str, **payload) -> dict:
        envelope = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "type": event_type,
            **safe_json(payload),
        }
        dropped = 0
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(envelope)
            except asyncio.QueueFull:
                dropped += 1
        if dropped:
            logger.debug("Dropped %s event for %s slow subscriber(s)", event_type, dropped)
        return envelope
