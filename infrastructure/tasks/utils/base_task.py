"""Common base task for Celery jobs"""
from __future__ import annotations

import structlog
from celery import Task
from core.logging_config import get_logger

logger = get_logger(__name__)

_TASK_CONTEXT_KEYS = ("task_id", "task_name")


class BaseTask(Task):
    """Binds the task identity into the log context and records the outcome."""

    def before_start(self, task_id, args, kwargs):  # type: ignore[override]
        structlog.contextvars.bind_contextvars(task_id=task_id, task_name=self.name)
        super().before_start(task_id, args, kwargs)

    def after_return(self, status, retval, task_id, args, kwargs, einfo):  # type: ignore[override]
        structlog.contextvars.unbind_contextvars(*_TASK_CONTEXT_KEYS)
        super().after_return(status, retval, task_id, args, kwargs, einfo)

    def on_failure(self, exc, task_id, args, kwargs, einfo):  # type: ignore[override]
        # kwargs may carry whole event envelopes, only the keys are logged
        logger.error(
            "celery_task_failure",
            task_id=task_id,
            task_name=self.name,
            retries=self.request.retries,
            kwargs_keys=sorted(kwargs or {}),
            exc=str(exc),
        )
        super().on_failure(exc, task_id, args, kwargs, einfo)

    def on_retry(self, exc, task_id, args, kwargs, einfo):  # type: ignore[override]
        logger.warning(
            "celery_task_retry",
            task_id=task_id,
            task_name=self.name,
            retries=self.request.retries,
            exc=str(exc),
        )
        super().on_retry(exc, task_id, args, kwargs, einfo)

    def on_success(self, retval, task_id, args, kwargs):  # type: ignore[override]
        logger.info(
            "celery_task_success",
            task_id=task_id,
            task_name=self.name,
        )
        super().on_success(retval, task_id, args, kwargs)
