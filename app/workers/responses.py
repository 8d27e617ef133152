"""Posts approved replies to their review platforms."""

from __future__ import annotations

import asyncio

from app.celery_app import celery_app
from app.services.container import run_sweep


@celery_app.task(name="app.workers.responses.post_approved", bind=True, max_retries=3)
def post_approved(self):  # noqa: D401
    """Post every approved draft that has no recorded response yet."""
    try:
        stats = asyncio.run(run_sweep("post"))
    except Exception as exc:  # noqa: BLE001
        raise self.retry(exc=exc)
    return {"posted": stats.posted, "failed": stats.failed, "skipped": stats.skipped}
