"""
Read-model cache port and the key layout shared by readers and invalidators.
"""
from __future__ import annotations

from typing import Any, Optional, Protocol, runtime_checkable


def order_key(order_id: str) -> str:
    return f"order:{order_id}"


def order_status_key(order_id: str) -> str:
    return f"order:{order_id}:status"


def eligibility_key(order_id: str) -> str:
    return f"refund:eligibility:{order_id}"


def summary_key(order_id: str) -> str:
    return f"refund:summary:{order_id}"


def refund_key(refund_id: int | str) -> str:
    return f"refund:{refund_id}"


def order_refunds_pattern(order_id: str) -> str:
    return f"refunds:order:{order_id}*"


@runtime_checkable
class CachePort(Protocol):
    """Best-effort cache: implementations log and swallow backend errors."""

    async def get(self, key: str) -> Any: ...

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None: ...

    async def delete(self, *keys: str) -> int: ...

    async def delete_pattern(self, pattern: str) -> int: ...
