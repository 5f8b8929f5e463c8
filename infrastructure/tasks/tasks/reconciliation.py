"""Refund reconciliation Celery tasks"""
from __future__ import annotations

import asyncio
from typing import Any

from celery import shared_task

from ..utils.base_task import BaseTask
from core.config import settings
from core.logging_config import get_logger

logger = get_logger(__name__)


async def _reconcile() -> dict[str, Any]:
    # Imported lazily so the worker only builds engines/clients when the task runs
    from infrastructure.bootstrap import build_task_container
    from infrastructure.external.cache import init_redis_client, shutdown_redis_client
    from ..utils.dispatcher import TaskDispatcher

    redis_client = await init_redis_client() if settings.redis.url else None
    container = build_task_container(redis_client=redis_client, dispatcher=TaskDispatcher())
    try:
        report = await container.reconciliation_service.run_once()
        return report.model_dump()
    finally:
        await container.aclose()
        if redis_client is not None:
            await shutdown_redis_client()


@shared_task(
    name="refunds.reconcile_stale",
    bind=True,
    base=BaseTask,
    max_retries=0,
    ignore_result=False,
)
def reconcile_stale_refunds(self) -> dict[str, Any]:
    """Resolve PENDING/PROCESSING refunds the gateway has not reported on.

    Each run uses its own event loop, engine and Redis connection.
    """
    report = asyncio.run(_reconcile())
    logger.info("reconcile_stale_refunds_done", task_id=self.request.id, **report)
    return report
