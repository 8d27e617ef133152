"""
Response posting reconciler.

Posts approved drafts that have no ``PostedResponse`` yet. The row's
existence is the idempotency guard; a failed post leaves the draft
``approved`` so the next sweep tries again (no back-off).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy import exists, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import db
from app.services.errors import PlatformAuthError
from app.services.notifications import first_option
from app.services.platforms import PlatformRegistry
from app.types.review_contract import PostResult
from config import settings
from db.models import (
    DraftStatus, PlatformAccount, PostedResponse, ReplyDraft, Review, utcnow,
)

_LOGGER = logging.getLogger(__name__)


@dataclass
class PostStats:
    posted: int = 0
    failed: int = 0
    skipped: int = 0


def response_text(draft_text: str) -> str:
    """The text that goes public: option 1 of a labelled draft, else the draft."""
    return first_option(draft_text)


class ResponsePoster:
    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        platforms: PlatformRegistry,
        batch_size: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._sessions = sessions
        self._platforms = platforms
        self.batch_size = batch_size or settings.RESPONSE_POST_BATCH_SIZE
        self._clock = clock

    async def _unposted(self) -> list[tuple[ReplyDraft, Review]]:
        already_posted = exists().where(PostedResponse.draft_id == ReplyDraft.id)
        async with self._sessions() as s:
            stmt = (
                select(ReplyDraft, Review)
                .join(Review, Review.id == ReplyDraft.review_id)
                .where(ReplyDraft.status == DraftStatus.APPROVED, ~already_posted)
                .order_by(ReplyDraft.approved_at.asc(), ReplyDraft.created_at.asc())
                .limit(self.batch_size)
            )
            return [(draft, review) for draft, review in (await s.execute(stmt)).all()]

    async def run_once(self) -> PostStats:
        stats = PostStats()
        batch = await self._unposted()
        if not batch:
            return stats

        _LOGGER.info("Processing %d approved drafts", len(batch))
        for draft, review in batch:
            outcome = await self.post_response(draft, review)
            if outcome is None:
                stats.skipped += 1
            elif outcome.success:
                stats.posted += 1
            else:
                stats.failed += 1
        return stats

    async def post_response(self, draft: ReplyDraft, review: Review) -> PostResult | None:
        """Post one draft. ``None`` means skipped (account awaiting re-authorization)."""
        async with self._sessions() as s:
            account = (await s.execute(
                select(PlatformAccount).where(
                    PlatformAccount.business_id == review.business_id,
                    PlatformAccount.platform == review.platform,
                )
            )).scalar_one_or_none()

        if account is not None and account.reauth_required:
            return None

        text = response_text(draft.draft_text)
        poster = self._platforms.poster_for(account) if account is not None else None
        if poster is None:
            result = PostResult(success=False, platform=review.platform,
                                error=f"Unsupported platform: {review.platform}")
        else:
            resource_ref = (review.extra or {}).get("resource_name") or review.external_review_id
            _LOGGER.info("Posting response for review %s on %s", review.id, review.platform)
            try:
                result = await poster.post_reply(resource_ref, text)
            except PlatformAuthError as exc:
                async with self._sessions() as s, s.begin():
                    await db.mark_reauth_required(s, account.id, str(exc))
                result = PostResult(success=False, platform=review.platform, error=str(exc))
            except Exception as exc:  # noqa: BLE001
                _LOGGER.exception("Posting to %s failed", review.platform)
                result = PostResult(success=False, platform=review.platform, error=str(exc))

        await self._record(draft.id, review, text, result)
        return result

    async def _record(self, draft_id: str, review: Review, text: str, result: PostResult) -> None:
        outcome = {**result.model_dump(), "attempted_at": self._clock().isoformat()}
        try:
            async with self._sessions() as s, s.begin():
                draft = await s.get(ReplyDraft, draft_id)
                draft.extra = {**(draft.extra or {}), "post_result": outcome}
                if not result.success:
                    _LOGGER.warning("Post failed for draft %s: %s", draft_id, result.error)
                    return
                draft.status = DraftStatus.SENT
                s.add(PostedResponse(
                    draft_id=draft_id,
                    review_id=review.id,
                    platform=review.platform,
                    response_text=text,
                    external_response_id=result.external_response_id,
                    posted_at=self._clock(),
                ))
        except IntegrityError:
            # a concurrent sweep recorded this draft first
            _LOGGER.info("Draft %s already recorded as posted", draft_id)
            return
        _LOGGER.info("Posted response for draft %s", draft_id)
