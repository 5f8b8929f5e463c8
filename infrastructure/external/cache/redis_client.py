"""
Redis客户端 - 命名空间隔离、JSON序列化与生命周期管理

本客户端不吞掉 RedisError：缓存适配器按"尽力而为"处理，
幂等守卫需要把错误传给调用方（webhook 返回 5xx 让网关重投）。
"""
from __future__ import annotations

import asyncio
import json
import socket
from typing import Any, List, Optional

from redis import asyncio as aioredis

from core.config import settings
from core.logging_config import get_logger

logger = get_logger(__name__)


class RedisClient:
    """
    Redis客户端封装

    特性:
    - 命名空间隔离（所有键自动加前缀）
    - 自动序列化/反序列化（JSON）
    - SET NX EX 原子写入，用于幂等标记
    - 基于 SCAN 的模式删除
    """

    def __init__(self, client: aioredis.Redis, namespace: str = ""):
        self._client = client
        self._namespace = namespace.strip(":")

    # ============= 工具方法 =============

    def _format_key(self, key: str) -> str:
        """格式化键名，添加命名空间前缀"""
        if not self._namespace:
            return key
        return f"{self._namespace}:{key}"

    def _strip_namespace(self, key: str) -> str:
        prefix = f"{self._namespace}:" if self._namespace else ""
        return key[len(prefix):] if prefix and key.startswith(prefix) else key

    @staticmethod
    def _serialize(value: Any) -> str:
        if isinstance(value, str):
            return value
        return json.dumps(value, default=str, ensure_ascii=False)

    @staticmethod
    def _deserialize(value: Optional[str]) -> Any:
        if value is None:
            return None
        try:
            return json.loads(value)
        except (TypeError, ValueError):
            return value

    # ============= String 操作 =============

    async def get(self, key: str, default: Any = None) -> Any:
        value = await self._client.get(self._format_key(key))
        if value is None:
            logger.debug("redis_cache_miss", key=key)
            return default
        return self._deserialize(value)

    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[int] = None,
        nx: bool = False,  # 仅当key不存在时设置
    ) -> bool:
        expire = settings.redis.default_ttl if ttl is None else ttl
        result = await self._client.set(
            self._format_key(key),
            self._serialize(value),
            ex=expire if expire and expire > 0 else None,
            nx=nx,
        )
        return bool(result)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self._client.delete(*[self._format_key(k) for k in keys])

    async def exists(self, *keys: str) -> int:
        return await self._client.exists(*[self._format_key(k) for k in keys])

    async def keys(self, pattern: str = "*") -> List[str]:
        """查找匹配的键（使用 SCAN 迭代，避免 KEYS 阻塞）"""
        collected: List[str] = []
        async for k in self._client.scan_iter(match=self._format_key(pattern)):
            collected.append(self._strip_namespace(k))
        return collected

    async def delete_pattern(self, pattern: str) -> int:
        """按模式删除（SCAN + pipeline）"""
        deleted = 0
        async with self._client.pipeline(transaction=False) as pipe:
            async for k in self._client.scan_iter(match=self._format_key(pattern), count=100):
                pipe.delete(k)
            results = await pipe.execute()
            deleted = sum(results)
        return deleted

    # ============= List 操作 =============

    async def rpush(self, key: str, *values: Any) -> int:
        return await self._client.rpush(self._format_key(key), *[self._serialize(v) for v in values])

    async def lrange(self, key: str, start: int = 0, stop: int = -1) -> List[Any]:
        values = await self._client.lrange(self._format_key(key), start, stop)
        return [self._deserialize(v) for v in values]

    async def ltrim(self, key: str, start: int, stop: int) -> bool:
        return bool(await self._client.ltrim(self._format_key(key), start, stop))

    async def drain_list(self, key: str) -> List[Any]:
        """原子地读出并清空列表"""
        formatted = self._format_key(key)
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.lrange(formatted, 0, -1)
            pipe.delete(formatted)
            values, _ = await pipe.execute()
        return [self._deserialize(v) for v in values]

    async def health_check(self) -> bool:
        """健康检查"""
        try:
            return await self._client.ping()
        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            return False

    @property
    def client(self) -> aioredis.Redis:
        """获取原始Redis客户端（谨慎使用）"""
        return self._client


# ============= 单例模式管理 =============

_redis_client: Optional[aioredis.Redis] = None
_cache_instance: Optional[RedisClient] = None
_lock = asyncio.Lock()


def _connection_kwargs() -> dict:
    # 构建跨平台 keepalive 选项（若可用）
    keepalive_opts = {}
    if hasattr(socket, "TCP_KEEPIDLE") and hasattr(socket, "TCP_KEEPINTVL") and hasattr(socket, "TCP_KEEPCNT"):
        keepalive_opts = {
            socket.TCP_KEEPIDLE: 1,
            socket.TCP_KEEPINTVL: 1,
            socket.TCP_KEEPCNT: 3,
        }
    return {
        "encoding": "utf-8",
        "decode_responses": True,
        "max_connections": settings.redis.max_connections,
        "socket_keepalive": True,
        "socket_keepalive_options": keepalive_opts,
    }


async def init_redis_client(namespace: Optional[str] = None, **kwargs) -> RedisClient:
    """
    初始化Redis客户端

    Args:
        namespace: 命名空间（默认 settings.redis.namespace）
        **kwargs: 其他Redis连接参数
    """
    global _redis_client, _cache_instance

    if _cache_instance is not None:
        return _cache_instance

    async with _lock:
        if _cache_instance is not None:
            return _cache_instance

        if not settings.redis.url:
            raise RuntimeError("REDIS__URL 未配置，无法初始化Redis客户端")

        try:
            client = aioredis.from_url(settings.redis.url, **{**_connection_kwargs(), **kwargs})
            # 测试连接
            await client.ping()

            _redis_client = client
            _cache_instance = RedisClient(
                client=client,
                namespace=namespace or settings.redis.namespace,
            )
            logger.info("redis_client_initialized", namespace=namespace or settings.redis.namespace)
            return _cache_instance

        except Exception as e:
            logger.error("redis_client_init_failed", error=str(e))
            raise


async def get_redis_client() -> RedisClient:
    """获取全局Redis客户端实例"""
    if _cache_instance is None:
        return await init_redis_client()
    return _cache_instance


async def shutdown_redis_client() -> None:
    """关闭Redis连接"""
    global _redis_client, _cache_instance

    if _redis_client is not None:
        try:
            await _redis_client.aclose()
            logger.info("redis_client_closed")
        except Exception as e:
            logger.error("redis_client_close_failed", error=str(e))
        finally:
            _redis_client = None
            _cache_instance = None


__all__ = [
    'RedisClient',
    'init_redis_client',
    'get_redis_client',
    'shutdown_redis_client',
]
