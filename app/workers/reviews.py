"""Periodic review polling task."""

from __future__ import annotations

import asyncio
import logging

from app.celery_app import celery_app
from app.services.container import run_sweep

_LOGGER = logging.getLogger(__name__)


@celery_app.task(name="app.workers.reviews.poll", bind=True, max_retries=3)
def poll(self):  # noqa: D401
    """Fetch new reviews for every active business and alert the owners."""
    try:
        stats = asyncio.run(run_sweep("poll"))
    except Exception as exc:  # noqa: BLE001
        _LOGGER.exception("Review poll failed")
        raise self.retry(exc=exc, countdown=60)
    return {"new": stats.new, "skipped": stats.skipped, "failed_sources": stats.failed_sources}
