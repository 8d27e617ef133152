"""Review platform adapters: fetch reviews from, and post replies to, a platform.

Only Google Business Profile ships a concrete adapter. Adapters are built per
``PlatformAccount`` by ``PlatformRegistry`` so each carries its own token.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Protocol

import requests

from app.services.errors import PlatformAuthError, SourceFetchError
from app.types.review_contract import PostResult, RawReview
from config import settings
from db.models import PlatformAccount

_LOGGER = logging.getLogger(__name__)

GBP_BASE = "https://mybusiness.googleapis.com/v4"

_STAR_RATINGS = {"ONE": 1, "TWO": 2, "THREE": 3, "FOUR": 4, "FIVE": 5}


class ReviewSource(Protocol):
    async def fetch_reviews(self, source_id: str, since: Optional[datetime] = None) -> List[RawReview]:
        ...


class PlatformPoster(Protocol):
    platform: str

    async def post_reply(self, resource_ref: str, text: str) -> PostResult:
        ...


# ──────────────────────────────────────────────────────────────────────────
# Google Business Profile
# ──────────────────────────────────────────────────────────────────────────

def _auth_headers(access_token: Optional[str]) -> Dict[str, str]:
    if not access_token:
        raise PlatformAuthError("No Google access token. Owner must re-authorize.")
    return {"Authorization": f"Bearer {access_token}", "Content-Type": "application/json"}


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class GoogleReviewSource:
    def __init__(self, access_token: Optional[str], timeout: Optional[int] = None):
        self.access_token = access_token
        self.timeout = timeout or settings.HTTP_TIMEOUT

    def _get(self, url: str, params: dict) -> dict:
        resp = requests.get(url, headers=_auth_headers(self.access_token), params=params, timeout=self.timeout)
        if resp.status_code in (401, 403):
            raise PlatformAuthError(f"Google rejected credentials ({resp.status_code})")
        if not resp.ok:
            raise SourceFetchError(f"Google reviews fetch failed {resp.status_code}: {resp.text[:200]}")
        return resp.json()

    async def fetch_reviews(self, source_id: str, since: Optional[datetime] = None) -> List[RawReview]:
        url = f"{GBP_BASE}/{source_id}/reviews"
        try:
            payload = await asyncio.to_thread(self._get, url, {"orderBy": "updateTime desc", "pageSize": 50})
        except requests.RequestException as exc:
            raise SourceFetchError(f"Google reviews fetch failed: {exc}") from exc

        reviews: List[RawReview] = []
        for item in payload.get("reviews", []):
            created = _parse_time(item.get("createTime"))
            if since and created and created < since:
                continue
            rating = _STAR_RATINGS.get(item.get("starRating", ""), 0)
            if not rating:
                continue
            reviews.append(RawReview(
                external_id=item.get("reviewId") or item["name"],
                rating=rating,
                text=item.get("comment", ""),
                author=(item.get("reviewer") or {}).get("displayName"),
                date=created,
                metadata={"resource_name": item.get("name")},
            ))
        return reviews


class GooglePlatformPoster:
    platform = "google"

    def __init__(self, access_token: Optional[str], timeout: Optional[int] = None):
        self.access_token = access_token
        self.timeout = timeout or settings.HTTP_TIMEOUT

    def _put(self, resource_ref: str, text: str) -> requests.Response:
        return requests.put(
            f"{GBP_BASE}/{resource_ref}/reply",
            headers=_auth_headers(self.access_token),
            json={"comment": text},
            timeout=self.timeout,
        )

    async def post_reply(self, resource_ref: str, text: str) -> PostResult:
        try:
            resp = await asyncio.to_thread(self._put, resource_ref, text)
        except requests.RequestException as exc:
            return PostResult(success=False, platform=self.platform, error=str(exc))

        if resp.status_code in (401, 403):
            raise PlatformAuthError(f"Google rejected credentials ({resp.status_code})")
        if not resp.ok:
            _LOGGER.error("[GBP] Reply failed %s: %s", resp.status_code, resp.text[:200])
            return PostResult(success=False, platform=self.platform,
                              error=f"HTTP {resp.status_code}: {resp.text[:200]}")
        return PostResult(success=True, platform=self.platform, external_response_id=resource_ref)


# ──────────────────────────────────────────────────────────────────────────
# Registry
# ──────────────────────────────────────────────────────────────────────────

SourceFactory = Callable[[PlatformAccount], ReviewSource]
PosterFactory = Callable[[PlatformAccount], PlatformPoster]


class PlatformRegistry:
    """Maps a platform name to the adapters that talk to it."""

    def __init__(
        self,
        sources: Optional[Dict[str, SourceFactory]] = None,
        posters: Optional[Dict[str, PosterFactory]] = None,
    ):
        self._sources = dict(sources or {})
        self._posters = dict(posters or {})

    def source_for(self, account: PlatformAccount) -> Optional[ReviewSource]:
        factory = self._sources.get(account.platform)
        return factory(account) if factory else None

    def poster_for(self, account: PlatformAccount) -> Optional[PlatformPoster]:
        factory = self._posters.get(account.platform)
        return factory(account) if factory else None


def default_registry() -> PlatformRegistry:
    return PlatformRegistry(
        sources={"google": lambda acct: GoogleReviewSource(acct.access_token)},
        posters={"google": lambda acct: GooglePlatformPoster(acct.access_token)},
    )
