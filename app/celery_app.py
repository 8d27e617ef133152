"""Celery application instance shared across the backend.

Start a worker (with the beat scheduler embedded) with:
    celery -A app.celery_app worker -B -Q reviews,notifications,responses -l info --concurrency=2
"""

from celery import Celery

from config import settings

BROKER_URL = settings.REDIS_URL

celery_app = Celery("review_desk", broker=BROKER_URL, backend=BROKER_URL)

# Global task settings
celery_app.conf.task_acks_late = True
celery_app.conf.task_reject_on_worker_lost = True
celery_app.conf.task_default_retry_delay = 30  # seconds

celery_app.conf.task_routes = {
    "app.workers.reviews.poll": {"queue": "reviews"},
    "app.workers.notifications.retry_failed": {"queue": "notifications"},
    "app.workers.responses.post_approved": {"queue": "responses"},
}

# Beat schedule: the three periodic sweeps
celery_app.conf.beat_schedule = {
    "poll-reviews": {
        "task": "app.workers.reviews.poll",
        "schedule": float(settings.POLL_INTERVAL_SECONDS),
    },
    "retry-failed-alerts": {
        "task": "app.workers.notifications.retry_failed",
        "schedule": float(settings.SMS_RETRY_INTERVAL_SECONDS),
    },
    "post-approved-responses": {
        "task": "app.workers.responses.post_approved",
        "schedule": float(settings.RESPONSE_POST_INTERVAL_SECONDS),
    },
}

# --- Ensure tasks are registered ---
import app.workers.reviews
import app.workers.notifications
import app.workers.responses
