"""Pydantic models for the data shapes exchanged with external collaborators.

Review sources produce ``RawReview``; reply generators return ``ReplyOutput``;
platform posters return ``PostResult``. The classifier's ``SentimentResult``
lives here too since ingestion stores it alongside the review.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class SentimentLabel(str, enum.Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


class SentimentResult(BaseModel):
    sentiment: SentimentLabel
    score: float = Field(ge=-1.0, le=1.0)
    signals: List[str] = Field(default_factory=list)


class RawReview(BaseModel):
    """A review as returned by a platform source, before it is stored."""

    external_id: str
    rating: int
    text: str = ""
    author: Optional[str] = None
    date: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("external_id")
    def _non_empty_id(cls, v: str):  # noqa: N805
        if not v or not v.strip():
            raise ValueError("external_id must be a non-empty string")
        return v.strip()

    @field_validator("rating")
    def _rating_range(cls, v: int):  # noqa: N805
        if not 1 <= v <= 5:
            raise ValueError("rating must be between 1 and 5")
        return v


class ReplyOutput(BaseModel):
    draft_text: str
    escalation_flag: bool = False
    escalation_reasons: List[str] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _flag_follows_reasons(self):  # noqa: N805
        if self.escalation_reasons and not self.escalation_flag:
            self.escalation_flag = True
        return self


class PostResult(BaseModel):
    success: bool
    platform: str
    external_response_id: Optional[str] = None
    error: Optional[str] = None


class PlaceResult(BaseModel):
    """A business found by the competitor directory."""

    place_id: str
    name: str
    rating: Optional[float] = None
    review_count: Optional[int] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
