"""In-process fan-out of chat events to conversation subscribers.

The streaming caller owns the primary fragment sequence. Other clients
watching the same conversation subscribe here and receive a best-effort
copy: a subscriber whose queue is full misses events rather than slowing
the stream down.
"""

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager

import structlog

from lmchat.config import settings

logger = structlog.get_logger()


def conversation_topic(conversation_id: int) -> str:
    return f"conversation-{conversation_id}"


class ConversationBroadcaster:
    def __init__(self, max_queue_size: int | None = None) -> None:
        self.max_queue_size = max_queue_size or settings.chat_broadcast_queue_size
        self._subscribers: dict[str, set[asyncio.Queue]] = defaultdict(set)

    def subscriber_count(self, conversation_id: int) -> int:
        return len(self._subscribers.get(conversation_topic(conversation_id), ()))

    @asynccontextmanager
    async def subscribe(self, conversation_id: int):
        """Register a queue for the conversation for the duration of the block."""
        topic = conversation_topic(conversation_id)
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._subscribers[topic].add(queue)
        logger.debug("broadcast_subscribed", topic=topic)
        try:
            yield queue
        finally:
            subscribers = self._subscribers.get(topic)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    del self._subscribers[topic]
            logger.debug("broadcast_unsubscribed", topic=topic)

    def publish(self, conversation_id: int, event: dict) -> int:
        """Hand ``event`` to every subscriber; returns how many accepted it."""
        topic = conversation_topic(conversation_id)
        delivered = 0
        for queue in list(self._subscribers.get(topic, ())):
            try:
                queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning("broadcast_dropped", topic=topic, event_type=event.get("type"))
        return delivered


broadcaster = ConversationBroadcaster()


def get_broadcaster() -> ConversationBroadcaster:
    """FastAPI dependency: the process-wide broadcaster."""
    return broadcaster
