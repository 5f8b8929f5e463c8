"""
Base payment client implementing shared concerns: timeouts, retry and logging.

Concrete providers subclass it and implement provider-specific logic. Blocking
SDK calls run in a worker thread and are bounded by ``timeouts.total``; a call
that does not finish in time raises ``PaymentGatewayTimeoutException`` because
its outcome at the provider is unknown.
"""
from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

import httpx
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from core.logging_config import get_logger
from domain.common.exceptions import PaymentGatewayTimeoutException


logger = get_logger(__name__)


class BasePaymentClient:
    provider: str = "base"
    # Errors worth retrying with the same idempotency key
    transient_errors: tuple[type[BaseException], ...] = (httpx.TimeoutException, httpx.TransportError)

    def __init__(
        self,
        *,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
    ) -> None:
        self._timeouts_cfg = timeouts or {"connect": 1.0, "read": 3.0, "write": 3.0, "total": 5.0}
        self._retry_cfg = retry or {"max": 2, "base": 0.2}

    async def _retry(self, fn: Callable[[], Any]):
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(int(self._retry_cfg["max"]) + 1),
            wait=wait_exponential(multiplier=self._retry_cfg["base"], min=0.1, max=2.0),
            retry=retry_if_exception_type(self.transient_errors),
            reraise=True,
        ):
            with attempt:
                return await fn()

    async def _call(self, operation: str, fn: Callable[..., Any], /, **kwargs: Any) -> Any:
        """Run a blocking SDK call in a thread, bounded by the total timeout, with retries."""
        total = float(self._timeouts_cfg["total"])

        async def _once():
            return await asyncio.wait_for(asyncio.to_thread(fn, **kwargs), timeout=total)

        try:
            return await self._retry(_once)
        except asyncio.TimeoutError as exc:
            self._log("gateway_call_timeout", operation=operation, timeout=total)
            raise PaymentGatewayTimeoutException(
                f"{self.provider} {operation} timed out after {total}s",
                provider=self.provider,
                details={"operation": operation},
            ) from exc

    def _log(self, event: str, **kwargs) -> None:
        logger.info(
            event,
            provider=self.provider,
            **kwargs,
        )
