"""
Review ingestion: fetch -> dedup -> classify -> draft -> alert.

Each new review and its first draft are written in one transaction, so a
review never exists without a draft. The owner alert goes out after commit;
a failed alert is parked in ``alert_retry_states`` for ``RetryScheduler``
instead of undoing the durable rows.

Routing: every new review waits for owner approval over SMS. A business that
opted into ``auto_post_positive`` gets positive, non-escalated drafts created
``approved`` (no alert); the response poster picks those up directly.
"""

from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import db
from app.services.errors import PlatformAuthError, SourceFetchError
from app.services.notifications import NotificationDispatcher
from app.services.platforms import PlatformRegistry
from app.services.reply_generator import ReplyGenerator, TemplateReplyGenerator
from app.services.sentiment import classify_sentiment, detect_escalations
from app.types.review_contract import RawReview, ReplyOutput, SentimentLabel
from db.models import (
    AlertRetryState, Business, DraftStatus, PlatformAccount, ReplyDraft, Review, utcnow,
)

_LOGGER = logging.getLogger(__name__)

INACTIVE_SUBSCRIPTION_STATES = ("canceled", "past_due")
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class IngestResult:
    new: int = 0
    skipped: int = 0
    auto_approved: int = 0
    alerts_failed: int = 0


@dataclass
class IngestStats:
    businesses: int = 0
    accounts: int = 0
    new: int = 0
    skipped: int = 0
    failed_sources: int = 0
    alerts_failed: int = 0


class IngestionCoordinator:
    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        platforms: PlatformRegistry,
        generator: ReplyGenerator,
        dispatcher: NotificationDispatcher,
        fallback_generator: ReplyGenerator | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._sessions = sessions
        self._platforms = platforms
        self._generator = generator
        self._fallback = fallback_generator or TemplateReplyGenerator(confidence=0.0)
        self._dispatcher = dispatcher
        self._clock = clock

    # ------------------------------------------------------------------
    # Poll cycle
    # ------------------------------------------------------------------
    async def run_once(self) -> IngestStats:
        """Ingest every active business's accounts, one at a time."""
        stats = IngestStats()
        async with self._sessions() as s:
            businesses = list((await s.execute(
                select(Business)
                .where(
                    Business.monitoring_paused.is_(False),
                    Business.subscription_state.not_in(INACTIVE_SUBSCRIPTION_STATES),
                )
                .order_by(Business.created_at)
            )).scalars())
            accounts: dict[str, list[PlatformAccount]] = defaultdict(list)
            if businesses:
                rows = (await s.execute(
                    select(PlatformAccount)
                    .where(PlatformAccount.business_id.in_([b.id for b in businesses]))
                    .order_by(PlatformAccount.created_at)
                )).scalars()
                for account in rows:
                    accounts[account.business_id].append(account)

        for business in businesses:
            stats.businesses += 1
            for account in accounts[business.id]:
                if account.reauth_required:
                    _LOGGER.info("Skipping %s account of %s: re-authorization required",
                                 account.platform, business.name)
                    continue
                stats.accounts += 1
                try:
                    result = await self.ingest(business, account)
                except PlatformAuthError as exc:
                    stats.failed_sources += 1
                    _LOGGER.error("Credentials rejected for %s account of %s: %s",
                                  account.platform, business.name, exc)
                    async with self._sessions() as s, s.begin():
                        await db.mark_reauth_required(s, account.id, str(exc))
                    continue
                except Exception:  # noqa: BLE001
                    stats.failed_sources += 1
                    _LOGGER.exception("Error ingesting %s reviews for %s", account.platform, business.name)
                    continue
                stats.new += result.new
                stats.skipped += result.skipped
                stats.alerts_failed += result.alerts_failed

        _LOGGER.info("Poll complete: %d new reviews across %d businesses", stats.new, stats.businesses)
        return stats

    # ------------------------------------------------------------------
    # One business + platform
    # ------------------------------------------------------------------
    async def ingest(self, business: Business, account: PlatformAccount) -> IngestResult:
        source = self._platforms.source_for(account)
        if source is None:
            raise SourceFetchError(f"no review source for platform {account.platform!r}")

        async with self._sessions() as s:
            since = await db.latest_review_date(s, business.id, account.platform)

        raw_reviews = await source.fetch_reviews(account.source_id, since)
        # oldest first, so the watermark only moves past reviews already stored
        raw_reviews = sorted(raw_reviews, key=lambda r: r.date or _EPOCH)

        result = IngestResult()
        for raw in raw_reviews:
            stored = await self._store(business, account.platform, raw)
            if stored is None:
                result.skipped += 1
                continue
            review, draft = stored
            result.new += 1
            _LOGGER.info("New %d-star %s review -> %s -> draft %s",
                         review.rating, review.platform, review.sentiment, draft.id)
            if draft.status is DraftStatus.APPROVED:
                result.auto_approved += 1
                continue
            if not await self._alert(business, review, draft):
                result.alerts_failed += 1
        return result

    async def _store(self, business: Business, platform: str, raw: RawReview) -> tuple[Review, ReplyDraft] | None:
        """Insert review + draft atomically; ``None`` when the review is already stored."""
        try:
            async with self._sessions() as s, s.begin():
                if await db.review_exists(s, platform, raw.external_id):
                    return None

                sentiment = classify_sentiment(raw.rating, raw.text)
                escalations = detect_escalations(raw.text)
                review = Review(
                    business_id=business.id,
                    platform=platform,
                    external_review_id=raw.external_id,
                    author=raw.author,
                    rating=raw.rating,
                    text=raw.text,
                    review_date=raw.date,
                    ingested_at=self._clock(),
                    sentiment=sentiment.sentiment.value,
                    sentiment_score=sentiment.score,
                    signals=sentiment.signals,
                    escalation_reasons=escalations,
                    extra=dict(raw.metadata),
                )
                s.add(review)
                await s.flush()

                reply, draft_meta = await self._generate(review, business)
                reasons = list(dict.fromkeys([*escalations, *reply.escalation_reasons]))
                escalated = reply.escalation_flag or bool(reasons)
                auto_approve = (
                    business.auto_post_positive
                    and sentiment.sentiment is SentimentLabel.POSITIVE
                    and not escalated
                )
                draft = ReplyDraft(
                    review_id=review.id,
                    draft_text=reply.draft_text,
                    escalation_flag=escalated,
                    escalation_reasons=reasons,
                    status=DraftStatus.APPROVED if auto_approve else DraftStatus.PENDING,
                    confidence=reply.confidence,
                    approved_at=self._clock() if auto_approve else None,
                    extra=draft_meta,
                )
                s.add(draft)
        except IntegrityError:
            # lost an insert race with another poller; the review is stored
            _LOGGER.info("Review %s/%s already stored", platform, raw.external_id)
            return None
        return review, draft

    async def _generate(self, review: Review, business: Business) -> tuple[ReplyOutput, dict]:
        try:
            return await self._generator.generate_reply(review, business), {}
        except Exception as exc:  # noqa: BLE001
            _LOGGER.error("Reply generation failed for review %s, using template: %s", review.id, exc)
            reply = await self._fallback.generate_reply(review, business)
            return reply, {"generator_failed": True, "generator_error": str(exc)[:500]}

    async def _alert(self, business: Business, review: Review, draft: ReplyDraft) -> bool:
        """Send the owner alert; on failure park it for retry. Returns success."""
        if not business.owner_phone or business.sms_opted_out:
            _LOGGER.info("No SMS route for %s, draft %s waits for manual approval", business.name, draft.id)
            return True
        try:
            await self._dispatcher.send(review, draft, business, business.owner_phone)
            return True
        except Exception as exc:  # noqa: BLE001
            _LOGGER.error("SMS alert for review %s failed: %s", review.id, exc)
            notification_id = getattr(exc, "notification_id", None) or str(uuid.uuid4())
            await self._mark_alert_failed(review.id, notification_id, str(exc))
            return False

    async def _mark_alert_failed(self, review_id: str, notification_id: str, error: str) -> None:
        try:
            async with self._sessions() as s, s.begin():
                s.add(AlertRetryState(
                    notification_id=notification_id,
                    review_id=review_id,
                    attempts=0,
                    last_error=error[:1000],
                ))
        except IntegrityError:
            _LOGGER.info("Review %s already queued for alert retry", review_id)
