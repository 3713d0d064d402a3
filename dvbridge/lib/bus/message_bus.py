"""
In-Process Message Bus
Pub/sub that exposes bridge state transitions to the API layer
"""

import asyncio
from typing import Dict, List, Any
from collections import defaultdict
import logging

logger = logging.getLogger(__name__)


class Topic:
    LINK_STATUS = "link_status"
    RX_FRAME = "rx_frame"
    GAMEPAD_EVENT = "gamepad_event"
    CONTROL_STATUS = "control_status"


class MessageBus:
    """
    Lightweight in-process message bus using asyncio queues.
    Slow subscribers lose messages instead of blocking publishers.
    """

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._subscribers: Dict[str, List[asyncio.Queue]] = defaultdict(list)
        self._stats: Dict[str, int] = defaultdict(int)

    def subscribe(self, topic: str) -> asyncio.Queue:
        """Return a queue that receives every later message on topic"""
        queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers[topic].append(queue)
        logger.debug(f"Subscribed to topic: {topic}")
        return queue

    def unsubscribe(self, topic: str, queue: asyncio.Queue):
        if topic in self._subscribers:
            try:
                self._subscribers[topic].remove(queue)
                logger.debug(f"Unsubscribed from topic: {topic}")
            except ValueError:
                pass

    def publish(self, topic: str, message: Any):
        """Deliver to every subscriber without blocking; full queues drop"""
        subscribers = self._subscribers.get(topic)
        if not subscribers:
            return

        self._stats[f"pub_{topic}"] += 1

        for queue in list(subscribers):
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                logger.warning(f"Subscriber queue full for topic: {topic}")
                self._stats[f"drop_{topic}"] += 1

    def get_stats(self) -> Dict[str, int]:
        return dict(self._stats)

    def get_topics(self) -> List[str]:
        return list(self._subscribers.keys())
