"""缓存层对外暴露的接口"""
from .redis_cache import RedisCache, InMemoryCache
from .idempotency import RedisIdempotencyGuard, InMemoryIdempotencyGuard

__all__ = [
    "RedisCache",
    "InMemoryCache",
    "RedisIdempotencyGuard",
    "InMemoryIdempotencyGuard",
]
