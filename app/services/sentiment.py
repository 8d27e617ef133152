"""Rating + keyword sentiment classifier and escalation detector.

Pure functions, no I/O: the same review always yields the same result, so a
retried ingestion re-classifies identically.
"""

from __future__ import annotations

import re

from app.types.review_contract import SentimentLabel, SentimentResult

POSITIVE_KEYWORDS = (
    "amazing", "awesome", "best", "delicious", "excellent", "fantastic",
    "friendly", "great", "helpful", "love", "loved", "perfect",
    "recommend", "wonderful", "attentive", "fresh", "tasty", "clean",
)

NEGATIVE_KEYWORDS = (
    "awful", "bad", "cold", "dirty", "disappointed", "disappointing",
    "horrible", "overpriced", "poor", "rude", "slow", "terrible",
    "worst", "bland", "stale", "gross", "unprofessional", "waited",
)

# Substring matches, checked against the lowercased text.
ESCALATION_KEYWORDS: dict[str, tuple[str, ...]] = {
    "health_issue": ("food poisoning", "sick", "illness", "contaminated", "hygiene",
                     "health department", "unclean"),
    "threat": ("sue", "lawsuit", "lawyer", "attorney", "police", "assault", "violence"),
    "discrimination": ("racist", "sexist", "discriminat", "prejudice", "homophobic",
                       "transphobic"),
    "refund_request": ("refund", "money back", "charge back", "chargeback", "reimburse",
                       "compensation"),
    "legal_concern": ("violation", "illegal", "regulation", "compliance"),
    "extreme_negativity": ("worst", "horrible", "disgusting", "never again",
                           "warning others"),
}

MAX_KEYWORD_SWING = 4
KEYWORD_WEIGHT = 0.05
LABEL_THRESHOLD = 0.1

_WORD_RE = re.compile(r"[a-z']+")


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def classify_sentiment(rating: int, text: str | None) -> SentimentResult:
    """Score a review from its star rating, nudged by keyword counts."""
    stars = _clamp(int(rating), 1, 5)
    base = (stars - 3) / 2

    words = _WORD_RE.findall((text or "").lower())
    signals: list[str] = []
    pos = neg = 0
    for word in words:
        if word in POSITIVE_KEYWORDS:
            pos += 1
            signals.append(f"+{word}")
        elif word in NEGATIVE_KEYWORDS:
            neg += 1
            signals.append(f"-{word}")

    adjustment = _clamp(pos - neg, -MAX_KEYWORD_SWING, MAX_KEYWORD_SWING) * KEYWORD_WEIGHT
    score = round(_clamp(base + adjustment, -1.0, 1.0), 2)

    if score > LABEL_THRESHOLD:
        label = SentimentLabel.POSITIVE
    elif score < -LABEL_THRESHOLD:
        label = SentimentLabel.NEGATIVE
    else:
        label = SentimentLabel.NEUTRAL

    return SentimentResult(sentiment=label, score=score, signals=signals)


def detect_escalations(text: str | None) -> list[str]:
    """Return the sensitive categories the text touches, in a fixed order."""
    lowered = (text or "").lower()
    return [
        category
        for category, keywords in ESCALATION_KEYWORDS.items()
        if any(_matches(keyword, lowered) for keyword in keywords)
    ]


def _matches(keyword: str, text: str) -> bool:
    # "sue" must not fire on "issue"; stems like "discriminat" match as prefixes
    return re.search(rf"\b{re.escape(keyword)}", text) is not None
