from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from app.services.errors import PlatformAuthError
from app.services.platforms import PlatformRegistry
from app.services.response_poster import ResponsePoster
from conftest import FakePoster, add_account, add_business
from db.models import DraftStatus, PlatformAccount, PostedResponse, ReplyDraft, Review


async def seed_approved(sessions, business, external_id="r1", minutes_ago=0, status=DraftStatus.APPROVED,
                        text="Option 1: Thanks so much!\nOption 2: We appreciate you."):
    async with sessions() as s, s.begin():
        review = Review(
            business_id=business.id, platform="google", external_review_id=external_id,
            author="Dana", rating=5, text="Lovely", sentiment="positive", sentiment_score=1.0,
            extra={"resource_name": f"accounts/1/locations/2/reviews/{external_id}"},
        )
        s.add(review)
        await s.flush()
        draft = ReplyDraft(
            review_id=review.id, draft_text=text, status=status,
            approved_at=datetime.now(timezone.utc) - timedelta(minutes=minutes_ago),
        )
        s.add(draft)
    return draft


def make_poster(sessions, poster):
    return ResponsePoster(sessions, PlatformRegistry(posters={"google": lambda account: poster}))


async def posted_count(sessions):
    async with sessions() as s:
        return (await s.execute(select(func.count(PostedResponse.id)))).scalar_one()


@pytest.mark.asyncio
async def test_posts_first_option_and_marks_sent(sessions):
    business = await add_business(sessions)
    await add_account(sessions, business)
    draft = await seed_approved(sessions, business)
    poster = FakePoster()

    stats = await make_poster(sessions, poster).run_once()

    assert stats.posted == 1
    assert poster.posted == [("accounts/1/locations/2/reviews/r1", "Thanks so much!")]
    async with sessions() as s:
        stored = await s.get(ReplyDraft, draft.id)
        posted = (await s.execute(select(PostedResponse))).scalar_one()
    assert stored.status is DraftStatus.SENT
    assert stored.extra["post_result"]["success"] is True
    assert posted.draft_id == draft.id
    assert posted.response_text == "Thanks so much!"
    assert posted.external_response_id == "reply-accounts/1/locations/2/reviews/r1"


@pytest.mark.asyncio
async def test_posting_is_idempotent(sessions):
    business = await add_business(sessions)
    await add_account(sessions, business)
    await seed_approved(sessions, business)
    poster = FakePoster()
    reconciler = make_poster(sessions, poster)

    await reconciler.run_once()
    second = await reconciler.run_once()

    assert second.posted == 0
    assert len(poster.posted) == 1
    assert await posted_count(sessions) == 1


@pytest.mark.asyncio
async def test_failed_post_stays_approved_for_next_run(sessions):
    business = await add_business(sessions)
    await add_account(sessions, business)
    draft = await seed_approved(sessions, business)

    stats = await make_poster(sessions, FakePoster(success=False)).run_once()

    assert stats.failed == 1
    async with sessions() as s:
        stored = await s.get(ReplyDraft, draft.id)
    assert stored.status is DraftStatus.APPROVED
    assert stored.extra["post_result"]["error"] == "HTTP 500: boom"
    assert "attempted_at" in stored.extra["post_result"]
    assert await posted_count(sessions) == 0

    # picked up again without back-off
    retried = await make_poster(sessions, FakePoster()).run_once()
    assert retried.posted == 1


@pytest.mark.asyncio
async def test_auth_error_requires_reauthorization(sessions):
    business = await add_business(sessions)
    account = await add_account(sessions, business)
    draft = await seed_approved(sessions, business)
    poster = FakePoster(error=PlatformAuthError("Google rejected credentials (401)"))

    stats = await make_poster(sessions, poster).run_once()

    assert stats.failed == 1
    async with sessions() as s:
        stored_account = await s.get(PlatformAccount, account.id)
        stored_draft = await s.get(ReplyDraft, draft.id)
    assert stored_account.reauth_required is True
    assert stored_account.access_token is None
    assert stored_draft.status is DraftStatus.APPROVED

    skipped = await make_poster(sessions, FakePoster()).run_once()
    assert skipped.skipped == 1
    assert skipped.posted == 0


@pytest.mark.asyncio
async def test_unsupported_platform_is_recorded_as_failure(sessions):
    business = await add_business(sessions)
    await add_account(sessions, business)
    draft = await seed_approved(sessions, business)

    stats = await ResponsePoster(sessions, PlatformRegistry()).run_once()

    assert stats.failed == 1
    async with sessions() as s:
        stored = await s.get(ReplyDraft, draft.id)
    assert stored.extra["post_result"]["error"] == "Unsupported platform: google"


@pytest.mark.asyncio
async def test_oldest_approvals_go_first_and_pending_is_ignored(sessions):
    business = await add_business(sessions)
    await add_account(sessions, business)
    await seed_approved(sessions, business, "new", minutes_ago=1)
    await seed_approved(sessions, business, "old", minutes_ago=30)
    await seed_approved(sessions, business, "waiting", status=DraftStatus.PENDING)
    poster = FakePoster()

    await ResponsePoster(
        sessions, PlatformRegistry(posters={"google": lambda account: poster}), batch_size=1
    ).run_once()

    assert [ref for ref, _ in poster.posted] == ["accounts/1/locations/2/reviews/old"]


@pytest.mark.asyncio
async def test_plain_draft_is_posted_verbatim(sessions):
    business = await add_business(sessions)
    await add_account(sessions, business)
    await seed_approved(sessions, business, text="Thanks, come back soon!")
    poster = FakePoster()

    await make_poster(sessions, poster).run_once()

    assert poster.posted[0][1] == "Thanks, come back soon!"
