"""Celery beat schedule configuration.

Entries follow the layout of the Celery docs; intervals come from settings so
operators can tune them per environment.
"""
from __future__ import annotations

from core.config import settings

CELERY_BEAT_SCHEDULE = {
    "reconcile-stale-refunds": {
        "task": "refunds.reconcile_stale",
        "schedule": float(settings.refund.reconcile_interval_seconds),
        "options": {"queue": "high", "expires": settings.refund.reconcile_interval_seconds},
    },
}
