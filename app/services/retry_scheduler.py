"""Re-send failed owner alerts with exponential back-off.

State lives in ``alert_retry_states`` (one row per failed alert), so the
scheduler itself holds nothing between runs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import db
from app.services.notifications import NotificationDispatcher
from config import settings
from db.models import AlertRetryState, Business, DraftStatus, Review, utcnow

_LOGGER = logging.getLogger(__name__)


@dataclass
class RetryStats:
    attempted: int = 0
    succeeded: int = 0
    rescheduled: int = 0
    exhausted: int = 0
    resolved: int = 0


def backoff_delay(attempts: int, base_delay: timedelta) -> timedelta:
    """Delay before the next try after ``attempts`` failed retries."""
    return base_delay * (2 ** attempts)


class RetryScheduler:
    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        dispatcher: NotificationDispatcher,
        max_attempts: int | None = None,
        base_delay: timedelta | None = None,
        batch_size: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._sessions = sessions
        self._dispatcher = dispatcher
        self.max_attempts = max_attempts or settings.SMS_RETRY_MAX_ATTEMPTS
        self.base_delay = base_delay or timedelta(seconds=settings.SMS_RETRY_BASE_DELAY_SECONDS)
        self.batch_size = batch_size or settings.SMS_RETRY_BATCH_SIZE
        self._clock = clock

    async def _due(self, now: datetime) -> list[AlertRetryState]:
        async with self._sessions() as s:
            stmt = (
                select(AlertRetryState)
                .join(Review, Review.id == AlertRetryState.review_id)
                .where(
                    AlertRetryState.permanently_failed.is_(False),
                    AlertRetryState.attempts < self.max_attempts,
                    or_(AlertRetryState.retry_after.is_(None), AlertRetryState.retry_after <= now),
                )
                .order_by(Review.ingested_at.asc())
                .limit(self.batch_size)
            )
            return list((await s.execute(stmt)).scalars())

    async def run_once(self, now: datetime | None = None) -> RetryStats:
        now = now or self._clock()
        stats = RetryStats()
        due = await self._due(now)
        if not due:
            _LOGGER.info("SMS retry: no failed alerts to retry")
            return stats

        _LOGGER.info("SMS retry: found %d failed alerts to retry", len(due))
        for state in due:
            await self._retry_one(state, now, stats)
        _LOGGER.info("SMS retry complete: %s", stats)
        return stats

    async def _retry_one(self, state: AlertRetryState, now: datetime, stats: RetryStats) -> None:
        async with self._sessions() as s:
            review = await s.get(Review, state.review_id)
            business = await s.get(Business, review.business_id) if review else None
            draft = await db.latest_draft(s, review.id) if review else None

        if business is None or not business.owner_phone or business.sms_opted_out or draft is None:
            await self._update(state.notification_id, permanently_failed=True,
                               last_error="no retry context: owner phone or draft missing")
            stats.exhausted += 1
            return

        if draft.status is not DraftStatus.PENDING:
            # answered some other way while the alert was failing
            await self._clear(state.notification_id)
            stats.resolved += 1
            return

        stats.attempted += 1
        try:
            await self._dispatcher.send(review, draft, business, business.owner_phone)
        except Exception as exc:  # noqa: BLE001
            attempts = state.attempts + 1
            if attempts >= self.max_attempts:
                await self._update(state.notification_id, attempts=attempts,
                                   permanently_failed=True, last_error=str(exc)[:1000])
                stats.exhausted += 1
                _LOGGER.error("SMS retry exhausted for review %s after %d attempts", review.id, attempts)
            else:
                retry_after = now + backoff_delay(attempts, self.base_delay)
                await self._update(state.notification_id, attempts=attempts,
                                   retry_after=retry_after, last_error=str(exc)[:1000])
                stats.rescheduled += 1
                _LOGGER.info("SMS retry %d/%d for review %s, next after %s",
                             attempts, self.max_attempts, review.id, retry_after.isoformat())
            return

        await self._clear(state.notification_id)
        stats.succeeded += 1
        _LOGGER.info("SMS retry succeeded for review %s", review.id)

    async def _update(self, notification_id: str, **values) -> None:
        async with self._sessions() as s, s.begin():
            state = await s.get(AlertRetryState, notification_id)
            if state is None:
                return
            for key, value in values.items():
                setattr(state, key, value)

    async def _clear(self, notification_id: str) -> None:
        async with self._sessions() as s, s.begin():
            state = await s.get(AlertRetryState, notification_id)
            if state is not None:
                await s.delete(state)
