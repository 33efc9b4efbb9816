"""
In-process event fan-out for the realtime channel.

A transport (websocket handler, push service bridge) subscribes and forwards
events to clients. Publishing never raises into the caller.
"""
import asyncio
import logging
from collections import deque
from typing import Any, Deque, Dict, List, Set

from core.models import utcnow

logger = logging.getLogger(__name__)

SUBSCRIBER_QUEUE_SIZE = 100
HISTORY_SIZE = 50


class Broadcaster:
    def __init__(self, queue_size: int = SUBSCRIBER_QUEUE_SIZE, history_size: int = HISTORY_SIZE):
        self.queue_size = queue_size
        self._subscribers: Set[asyncio.Queue] = set()
        self._history: Deque[Dict[str, Any]] = deque(maxlen=history_size)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def publish(self, event_type: str, data: Dict[str, Any]) -> None:
        event = {"type": event_type, "data": data, "timestamp": utcnow().isoformat()}
        self._history.append(event)

        for queue in list(self._subscribers):
            try:
                if queue.full():
                    # Slow consumer: drop its oldest event
                    queue.get_nowait()
                queue.put_nowait(event)
            except Exception as e:
                logger.warning(f"[broadcast] Failed to deliver {event_type} to subscriber: {e}")

        logger.debug(f"[broadcast] {event_type} -> {len(self._subscribers)} subscriber(s)")

    def recent_events(self, limit: int = 10) -> List[Dict[str, Any]]:
        return list(self._history)[-limit:]
