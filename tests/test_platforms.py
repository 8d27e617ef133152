from datetime import datetime, timezone

import pytest

from app.services import platforms
from app.services.errors import PlatformAuthError
from app.services.platforms import GoogleReviewSource

NOON = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeResponse:
    def __init__(self, payload=None, status_code=200):
        self._payload = payload or {}
        self.status_code = status_code
        self.ok = status_code < 400
        self.text = ""

    def json(self):
        return self._payload


def gbp_review(review_id, create_time, stars="FIVE"):
    return {
        "name": f"accounts/1/locations/2/reviews/{review_id}",
        "reviewId": review_id,
        "starRating": stars,
        "comment": f"Review {review_id}",
        "createTime": create_time,
        "reviewer": {"displayName": "Dana"},
    }


@pytest.fixture
def google_reviews(monkeypatch):
    calls = []

    def install(items, status_code=200):
        def fake_get(url, headers=None, params=None, timeout=None):
            calls.append((url, headers, params))
            return FakeResponse({"reviews": items}, status_code)
        monkeypatch.setattr(platforms.requests, "get", fake_get)
        return calls

    return install


@pytest.mark.asyncio
async def test_reviews_at_the_watermark_are_kept(google_reviews):
    google_reviews([
        gbp_review("a", "2026-01-01T12:00:00Z"),
        gbp_review("b", "2026-01-01T12:00:00Z"),
        gbp_review("old", "2026-01-01T11:59:59Z"),
    ])

    reviews = await GoogleReviewSource("tok").fetch_reviews("accounts/1/locations/2", since=NOON)

    assert sorted(r.external_id for r in reviews) == ["a", "b"]
    assert all(r.date == NOON for r in reviews)


@pytest.mark.asyncio
async def test_reviews_are_mapped_from_google(google_reviews):
    calls = google_reviews([gbp_review("a", "2026-01-01T12:00:00Z", stars="TWO")])

    [review] = await GoogleReviewSource("tok").fetch_reviews("accounts/1/locations/2")

    assert review.rating == 2
    assert review.author == "Dana"
    assert review.metadata["resource_name"] == "accounts/1/locations/2/reviews/a"
    assert calls[0][1]["Authorization"] == "Bearer tok"


@pytest.mark.asyncio
async def test_rejected_token_raises_auth_error(google_reviews):
    google_reviews([], status_code=401)

    with pytest.raises(PlatformAuthError):
        await GoogleReviewSource("tok").fetch_reviews("accounts/1/locations/2")
