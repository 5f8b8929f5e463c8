"""缓存适配器 - CachePort 的 Redis 与进程内实现"""
from __future__ import annotations

import fnmatch
import time
from typing import Any, Optional

from redis.exceptions import RedisError

from core.config import settings
from core.logging_config import get_logger
from infrastructure.external.cache.redis_client import RedisClient

logger = get_logger(__name__)


class RedisCache:
    """基于 RedisClient 的读模型缓存，后端故障只记录日志"""

    def __init__(self, client: RedisClient, default_ttl: Optional[int] = None) -> None:
        self._client = client
        self._default_ttl = settings.redis.default_ttl if default_ttl is None else default_ttl

    async def get(self, key: str) -> Any:
        try:
            return await self._client.get(key)
        except RedisError as e:
            logger.warning("cache_get_failed", key=key, error=str(e))
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        try:
            await self._client.set(key, value, ttl=self._default_ttl if ttl is None else ttl)
        except RedisError as e:
            logger.warning("cache_set_failed", key=key, error=str(e))

    async def delete(self, *keys: str) -> int:
        try:
            return await self._client.delete(*keys)
        except RedisError as e:
            logger.warning("cache_delete_failed", keys=list(keys), error=str(e))
            return 0

    async def delete_pattern(self, pattern: str) -> int:
        try:
            return await self._client.delete_pattern(pattern)
        except RedisError as e:
            logger.warning("cache_delete_pattern_failed", pattern=pattern, error=str(e))
            return 0


class InMemoryCache:
    """进程内缓存（未配置 Redis 的开发环境与测试使用）"""

    def __init__(self, default_ttl: Optional[int] = None) -> None:
        self._default_ttl = settings.redis.default_ttl if default_ttl is None else default_ttl
        self._data: dict[str, tuple[Any, Optional[float]]] = {}

    def _alive(self, key: str) -> bool:
        entry = self._data.get(key)
        if entry is None:
            return False
        _, expires_at = entry
        if expires_at is not None and expires_at <= time.monotonic():
            self._data.pop(key, None)
            return False
        return True

    async def get(self, key: str) -> Any:
        if not self._alive(key):
            return None
        return self._data[key][0]

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        expire = self._default_ttl if ttl is None else ttl
        expires_at = time.monotonic() + expire if expire and expire > 0 else None
        self._data[key] = (value, expires_at)

    async def delete(self, *keys: str) -> int:
        return sum(1 for k in keys if self._data.pop(k, None) is not None)

    async def delete_pattern(self, pattern: str) -> int:
        matched = [k for k in self._data if fnmatch.fnmatchcase(k, pattern)]
        for k in matched:
            self._data.pop(k, None)
        return len(matched)
