"""Failed owner alert re-delivery."""

from __future__ import annotations

import asyncio

from app.celery_app import celery_app
from app.services.container import run_sweep


@celery_app.task(name="app.workers.notifications.retry_failed", bind=True, max_retries=3)
def retry_failed(self):  # noqa: D401
    try:
        stats = asyncio.run(run_sweep("retry"))
    except Exception as exc:  # noqa: BLE001
        raise self.retry(exc=exc)
    return {
        "attempted": stats.attempted,
        "succeeded": stats.succeeded,
        "rescheduled": stats.rescheduled,
        "exhausted": stats.exhausted,
    }
