"""幂等守卫 - 基于 SET NX EX 的处理标记（Redis 与进程内实现）"""
from __future__ import annotations

import asyncio
import time
from typing import Optional

from application.ports.idempotency import IN_PROGRESS_MARKER
from core.logging_config import get_logger
from infrastructure.external.cache.redis_client import RedisClient

logger = get_logger(__name__)


class RedisIdempotencyGuard:
    """
    Redis 幂等守卫

    标记只通过 SET NX EX 写入并随 TTL 过期，多副本共享同一命名空间即可互斥。
    Redis 故障直接抛出，由调用方决定是否让上游重试。
    """

    def __init__(self, client: RedisClient) -> None:
        self._client = client

    async def is_processed(self, key: str) -> bool:
        return bool(await self._client.exists(key))

    async def mark_processed(self, key: str, ttl_seconds: int, value: str = "1") -> bool:
        created = await self._client.set(key, value, ttl=ttl_seconds, nx=True)
        if not created:
            logger.info("idempotency_key_exists", key=key)
        return created

    async def get(self, key: str) -> Optional[str]:
        value = await self._client.get(key)
        return None if value is None else str(value)

    async def claim(self, key: str, ttl_seconds: int) -> bool:
        return await self._client.set(key, IN_PROGRESS_MARKER, ttl=ttl_seconds, nx=True)

    async def complete(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._client.set(key, value, ttl=ttl_seconds)

    async def release(self, key: str) -> None:
        await self._client.delete(key)


class InMemoryIdempotencyGuard:
    """进程内幂等守卫（单进程与测试使用）"""

    def __init__(self) -> None:
        self._entries: dict[str, tuple[str, float]] = {}
        self._lock = asyncio.Lock()

    def _purge(self, key: str) -> None:
        entry = self._entries.get(key)
        if entry is not None and entry[1] <= time.monotonic():
            del self._entries[key]

    async def is_processed(self, key: str) -> bool:
        self._purge(key)
        return key in self._entries

    async def mark_processed(self, key: str, ttl_seconds: int, value: str = "1") -> bool:
        async with self._lock:
            self._purge(key)
            if key in self._entries:
                logger.info("idempotency_key_exists", key=key)
                return False
            self._entries[key] = (value, time.monotonic() + ttl_seconds)
            return True

    async def get(self, key: str) -> Optional[str]:
        self._purge(key)
        entry = self._entries.get(key)
        return entry[0] if entry else None

    async def claim(self, key: str, ttl_seconds: int) -> bool:
        return await self.mark_processed(key, ttl_seconds, IN_PROGRESS_MARKER)

    async def complete(self, key: str, value: str, ttl_seconds: int) -> None:
        async with self._lock:
            self._entries[key] = (value, time.monotonic() + ttl_seconds)

    async def release(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)
