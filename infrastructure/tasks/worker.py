"""Convenience entry point for running Celery worker.

Most deployments will invoke the standard Celery CLI, but keeping a small
script makes local testing or Procfile-style runners straightforward.
Pass ``--beat`` to embed the scheduler that drives refund reconciliation.
"""
from __future__ import annotations

import sys

from .config.celery import celery_app


def main(argv: list[str] | None = None) -> None:
    args = list(sys.argv[1:] if argv is None else argv)
    celery_app.worker_main([
        "worker",
        "--hostname=worker@%h",
        "--queues=high,default,low",
        "--loglevel=INFO",
        *args,
    ])


if __name__ == "__main__":
    main()
