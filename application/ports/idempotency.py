"""
Idempotency guard port.

Markers are written set-if-absent with a TTL and never updated in place,
so any number of API replicas can share one store.
"""
from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable


WEBHOOK_NAMESPACE = "webhook"
REFUND_REQUEST_NAMESPACE = "refund-request"

# Value stored while a client request is still running
IN_PROGRESS_MARKER = "in-progress"


def webhook_key(provider: str, event_id: str) -> str:
    return f"{WEBHOOK_NAMESPACE}:{provider}:{event_id}"


def refund_request_key(key: str) -> str:
    return f"{REFUND_REQUEST_NAMESPACE}:{key}"


@runtime_checkable
class IdempotencyGuard(Protocol):
    async def is_processed(self, key: str) -> bool: ...

    async def mark_processed(self, key: str, ttl_seconds: int, value: str = "1") -> bool:
        """Set-if-absent. Returns False when the key already existed."""
        ...

    async def get(self, key: str) -> Optional[str]: ...

    async def claim(self, key: str, ttl_seconds: int) -> bool:
        """Reserve ``key`` for an in-flight request (set-if-absent with the in-progress marker)."""
        ...

    async def complete(self, key: str, value: str, ttl_seconds: int) -> None:
        """Replace the in-progress marker with the final result."""
        ...

    async def release(self, key: str) -> None: ...
