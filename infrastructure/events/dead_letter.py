"""死信存储 - 进程内与 Redis 列表实现"""
from __future__ import annotations

import asyncio
from collections import deque
from typing import Optional

from application.ports.event_bus import DeadLetter
from core.logging_config import get_logger
from infrastructure.external.cache.redis_client import RedisClient

logger = get_logger(__name__)


class InMemoryDeadLetterStore:
    """进程内死信队列，超过上限时丢弃最旧的记录"""

    def __init__(self, max_items: int = 1000) -> None:
        self._items: deque[DeadLetter] = deque(maxlen=max_items)
        self._lock = asyncio.Lock()

    async def push(self, letter: DeadLetter) -> None:
        async with self._lock:
            if len(self._items) == self._items.maxlen:
                dropped = self._items[0]
                logger.warning("dead_letter_dropped", letter_id=dropped.id, handler=dropped.handler)
            self._items.append(letter)

    async def list(self) -> list[DeadLetter]:
        return list(self._items)

    async def drain(self) -> list[DeadLetter]:
        async with self._lock:
            items = list(self._items)
            self._items.clear()
            return items


class RedisDeadLetterStore:
    """Redis 列表死信队列，进程重启后仍可重放"""

    def __init__(self, client: RedisClient, key: str, max_items: Optional[int] = None) -> None:
        self._client = client
        self._key = key
        self._max_items = max_items

    async def push(self, letter: DeadLetter) -> None:
        await self._client.rpush(self._key, letter.model_dump(mode="json"))
        if self._max_items:
            await self._client.ltrim(self._key, -self._max_items, -1)

    async def list(self) -> list[DeadLetter]:
        return [DeadLetter.model_validate(item) for item in await self._client.lrange(self._key)]

    async def drain(self) -> list[DeadLetter]:
        return [DeadLetter.model_validate(item) for item in await self._client.drain_list(self._key)]
