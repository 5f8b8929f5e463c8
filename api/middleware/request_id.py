"""
Request ID 中间件

生成或透传追踪ID，并把请求上下文绑定到 structlog contextvars。
事件总线以 request_id 作为事件信封的 correlation_id，因此一次退款请求
产生的日志、领域事件和通知任务可以用同一个ID串起来。
"""
import uuid
from typing import Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

import structlog

from core.config import settings


_WEBHOOK_PREFIX = f"{settings.API_PREFIX}/webhooks/"


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Request ID 追踪中间件

    - 优先使用 X-Request-ID，其次 X-Correlation-ID，都没有时生成新的
    - 操作人（X-Actor-ID）与 webhook 网关名一并写入日志上下文
    - 响应头回写 X-Request-ID
    """

    HEADER_NAME = "X-Request-ID"
    CORRELATION_HEADER = "X-Correlation-ID"
    ACTOR_HEADER = "X-Actor-ID"

    async def dispatch(self, request: Request, call_next):
        request_id = (
            request.headers.get(self.HEADER_NAME)
            or request.headers.get(self.CORRELATION_HEADER)
            or str(uuid.uuid4())
        )
        request.state.request_id = request_id

        context = {
            "request_id": request_id,
            "client_ip": _client_ip(request),
            "method": request.method,
            "path": request.url.path,
        }
        actor = (request.headers.get(self.ACTOR_HEADER) or "").strip()
        if actor:
            context["actor"] = actor[:100]
        gateway = _webhook_gateway(request.url.path)
        if gateway:
            context["gateway"] = gateway

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(**context)
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars(*context)

        response.headers[self.HEADER_NAME] = request_id
        return response


def _client_ip(request: Request) -> str:
    # 代理链取第一个地址
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip
    return request.client.host if request.client else "unknown"


def _webhook_gateway(path: str) -> Optional[str]:
    if not path.startswith(_WEBHOOK_PREFIX):
        return None
    return path[len(_WEBHOOK_PREFIX):].strip("/").lower() or None

