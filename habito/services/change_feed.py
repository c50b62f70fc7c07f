from __future__ import annotations
import asyncio
import json
from typing import AsyncIterator, Dict, List, Protocol
from redis.asyncio import Redis
from loguru import logger

from ..config import settings
from ..models.events import ChangeEvent


class ChangeFeed(Protocol):
    async def publish(self, event: ChangeEvent) -> None: ...

    def subscribe(self, user_id: str) -> AsyncIterator[ChangeEvent]: ...

    async def close(self) -> None: ...


class InMemoryChangeFeed:
    """
    Per-user fan-out over asyncio queues. Each subscriber gets its own queue;
    cancelling the consuming task unsubscribes it.
    """

    def __init__(self):
        self._subscribers: Dict[str, List[asyncio.Queue]] = {}

    async def publish(self, event: ChangeEvent) -> None:
        for queue in list(self._subscribers.get(event.user_id, [])):
            queue.put_nowait(event)

    async def subscribe(self, user_id: str) -> AsyncIterator[ChangeEvent]:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.setdefault(user_id, []).append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscribers[user_id].remove(queue)

    def subscriber_count(self, user_id: str) -> int:
        return len(self._subscribers.get(user_id, []))

    async def close(self) -> None:
        self._subscribers.clear()


class RedisChangeFeed:
    """
    Change notifications over Redis pub/sub, one channel per user.
    Payloads are ChangeEvent JSON.
    """
    CHANNEL_PREFIX = "changes:"

    def __init__(self, redis: Redis | None = None):
        self.redis = redis or Redis.from_url(settings.REDIS_URL, decode_responses=True)

    @classmethod
    def channel(cls, user_id: str) -> str:
        return f"{cls.CHANNEL_PREFIX}{user_id}"

    async def publish(self, event: ChangeEvent) -> None:
        await self.redis.publish(self.channel(event.user_id), event.model_dump_json())

    async def subscribe(self, user_id: str) -> AsyncIterator[ChangeEvent]:
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(self.channel(user_id))
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    yield ChangeEvent.model_validate(json.loads(message["data"]))
                except (json.JSONDecodeError, TypeError, ValueError) as e:
                    logger.warning("Could not decode change event for user {}: {}", user_id, e)
        finally:
            await pubsub.unsubscribe(self.channel(user_id))
            await pubsub.aclose()

    async def close(self) -> None:
        await self.redis.aclose()


def create_change_feed() -> ChangeFeed:
    if settings.CHANGE_FEED_BACKEND == "redis":
        return RedisChangeFeed()
    return InMemoryChangeFeed()
