"""In-memory pub/sub event bus for distributing engine events."""
from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Any, Callable, Dict, List

from devicelab.services.logging_service import logging_service

EventFilter = Callable[[Dict[str, Any]], bool]

_logger = logging_service.get_logger(__name__)


class EventBus:
    """Async pub/sub bus used to forward events to WebSocket connections.

    Each subscriber owns a bounded queue. Publishing never waits: when a
    subscriber falls behind, its oldest queued event is dropped.
    """

    def __init__(self, max_queue_size: int = 1000) -> None:
        self.max_queue_size = max_queue_size
        self._subscribers: Dict[str, List[asyncio.Queue]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def publish(self, channel: str, message: Dict[str, Any]) -> None:
        """Publish a message to all listeners of *channel*."""
        async with self._lock:
            queues = list(self._subscribers.get(channel, []))
        for queue in queues:
            if queue.full():
                queue.get_nowait()
                _logger.debug("Subscriber on %s is lagging, dropped oldest event", channel)
            queue.put_nowait(message)

    async def get_queue(self, channel: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        async with self._lock:
            self._subscribers[channel].append(queue)
        return queue

    async def unsubscribe(self, channel: str, queue: asyncio.Queue) -> None:
        async with self._lock:
            subscribers = self._subscribers.get(channel, [])
            if queue in subscribers:
                subscribers.remove(queue)
            if not subscribers:
                self._subscribers.pop(channel, None)
