"""
请求/响应日志中间件

记录退款与 webhook 请求的入口和结果、耗时，请求体按开关截断并脱敏。
webhook 原始报文不落日志（验签用的是原始字节，且可能含卡号等信息）。
"""
import json
import time
from typing import Any

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from core.config import settings
from core.logging_config import get_logger


logger = get_logger(__name__)


class LoggingMiddleware(BaseHTTPMiddleware):
    """记录请求开始、完成/失败以及处理耗时（X-Process-Time）"""

    SKIP_PATHS = {"/health", f"{settings.API_PREFIX}/health", "/docs", "/redoc", "/openapi.json"}

    SKIP_BODY_PREFIXES = (f"{settings.API_PREFIX}/webhooks/",)

    # 小写比较
    SENSITIVE_FIELDS = {
        "secret", "api_key", "card", "card_number", "iban", "email", "phone",
        "stripe-signature", "x-razorpay-signature", "idempotency-key", "idempotencykey",
    }

    def __init__(self, app: ASGIApp):
        super().__init__(app)
        self.enable_body_log_default: bool = settings.LOG_REQUEST_BODY_ENABLE_BY_DEFAULT
        self.max_body_log_bytes: int = settings.LOG_REQUEST_BODY_MAX_BYTES

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.SKIP_PATHS:
            return await call_next(request)

        start_time = time.perf_counter()
        request_info = await self._request_info(request)
        logger.info("request_started", **request_info)

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "request_failed",
                duration=round(time.perf_counter() - start_time, 4),
                error=str(exc),
                error_type=type(exc).__name__,
                **request_info,
                exc_info=True,
            )
            raise

        duration = time.perf_counter() - start_time
        self._log_response(response, duration, request_info)
        response.headers["X-Process-Time"] = f"{duration:.3f}"
        return response

    async def _request_info(self, request: Request) -> dict:
        info: dict[str, Any] = {
            "method": request.method,
            "path": request.url.path,
        }
        if request.query_params:
            info["query_params"] = dict(request.query_params)
        actor = request.headers.get("X-Actor-ID")
        if actor:
            info["actor"] = actor.strip()[:100]
        # 只记录是否携带，键本身可能被客户端当作凭据复用
        if request.headers.get("Idempotency-Key"):
            info["idempotent"] = True

        if request.method in ("POST", "PUT", "PATCH") and self._should_log_body(request):
            body = await self._sanitized_body(request)
            if body is not None:
                info["body"] = body

        user_agent = request.headers.get("User-Agent")
        if user_agent:
            info["user_agent"] = user_agent
        return info

    def _should_log_body(self, request: Request) -> bool:
        if request.url.path.startswith(self.SKIP_BODY_PREFIXES):
            return False
        # X-Log-Body: true/false 可按请求覆盖
        header = (request.headers.get("X-Log-Body") or "").lower()
        if header in {"true", "1", "yes"}:
            return True
        if header in {"false", "0", "no"}:
            return False
        return bool(self.enable_body_log_default and settings.DEBUG)

    async def _sanitized_body(self, request: Request) -> Any:
        body = await request.body()
        if not body:
            return None

        snippet = body[: self.max_body_log_bytes].decode("utf-8", errors="ignore")
        if "application/json" not in request.headers.get("content-type", "").lower():
            return snippet
        try:
            parsed = json.loads(snippet)
        except ValueError:
            # 截断后的 JSON 通常无法解析，按文本记录
            return snippet
        return self._mask(parsed)

    def _mask(self, data: Any) -> Any:
        if isinstance(data, dict):
            return {
                k: "***" if str(k).lower() in self.SENSITIVE_FIELDS else self._mask(v)
                for k, v in data.items()
            }
        if isinstance(data, list):
            return [self._mask(v) for v in data]
        return data

    def _log_response(self, response: Response, duration: float, request_info: dict) -> None:
        status_code = response.status_code
        log_data = {"status_code": status_code, "duration": round(duration, 4), **request_info}

        if status_code < 400:
            logger.info("request_completed", **log_data)
        elif status_code < 500:
            logger.warning("request_client_error", **log_data)
        else:
            # 502/504 多半是支付网关问题
            logger.error("request_server_error", **log_data)
