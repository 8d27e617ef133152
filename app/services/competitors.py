"""Competitor lookups for the COMPETITOR SMS commands (Google Places)."""

from __future__ import annotations

import asyncio
from typing import List, Optional, Protocol

import requests

from app.services.errors import CompetitorLookupError
from app.types.review_contract import PlaceResult
from config import settings

PLACES_BASE = "https://places.googleapis.com/v1/places"
_FIELD_MASK = "places.id,places.displayName,places.rating,places.userRatingCount,places.location"

NEARBY_RADIUS_M = 8000.0  # ~5 miles
MIN_REVIEW_COUNT = 50


class CompetitorDirectory(Protocol):
    async def nearby(self, lat: float, lng: float, exclude_place_id: Optional[str] = None) -> List[PlaceResult]:
        ...

    async def search(self, name: str, lat: float, lng: float) -> List[PlaceResult]:
        ...


def _to_place(item: dict) -> PlaceResult:
    loc = item.get("location") or {}
    return PlaceResult(
        place_id=item["id"],
        name=(item.get("displayName") or {}).get("text", item["id"]),
        rating=item.get("rating"),
        review_count=item.get("userRatingCount"),
        lat=loc.get("latitude"),
        lng=loc.get("longitude"),
    )


class GooglePlacesDirectory:
    def __init__(self, api_key: Optional[str] = None, timeout: Optional[int] = None):
        self.api_key = api_key if api_key is not None else settings.GOOGLE_PLACES_API_KEY
        self.timeout = timeout or settings.HTTP_TIMEOUT

    def _post(self, path: str, body: dict) -> List[PlaceResult]:
        if not self.api_key:
            raise CompetitorLookupError("GOOGLE_PLACES_API_KEY not configured")
        try:
            resp = requests.post(
                f"{PLACES_BASE}:{path}",
                json=body,
                headers={"X-Goog-Api-Key": self.api_key, "X-Goog-FieldMask": _FIELD_MASK},
                timeout=self.timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as exc:
            raise CompetitorLookupError(f"places {path} failed: {exc}") from exc
        return [_to_place(p) for p in resp.json().get("places", [])]

    async def nearby(self, lat: float, lng: float, exclude_place_id: Optional[str] = None) -> List[PlaceResult]:
        body = {
            "includedTypes": ["restaurant"],
            "maxResultCount": 20,
            "locationRestriction": {
                "circle": {"center": {"latitude": lat, "longitude": lng}, "radius": NEARBY_RADIUS_M}
            },
        }
        places = await asyncio.to_thread(self._post, "searchNearby", body)
        return [
            p for p in places
            if p.place_id != exclude_place_id and (p.review_count or 0) >= MIN_REVIEW_COUNT
        ]

    async def search(self, name: str, lat: float, lng: float) -> List[PlaceResult]:
        body = {
            "textQuery": name,
            "locationBias": {
                "circle": {"center": {"latitude": lat, "longitude": lng}, "radius": NEARBY_RADIUS_M}
            },
        }
        return await asyncio.to_thread(self._post, "searchText", body)
