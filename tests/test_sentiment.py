import pytest

from app.services.sentiment import classify_sentiment, detect_escalations
from app.types.review_contract import SentimentLabel


def test_food_poisoning_review_is_negative_and_escalated():
    text = "Got food poisoning after eating here. Worst meal ever."
    result = classify_sentiment(1, text)
    assert result.sentiment is SentimentLabel.NEGATIVE
    assert result.score == -1.0
    assert "-worst" in result.signals
    assert "health_issue" in detect_escalations(text)


def test_five_star_with_praise_is_positive():
    result = classify_sentiment(5, "Amazing pasta and friendly staff")
    assert result.sentiment is SentimentLabel.POSITIVE
    assert result.score == 1.0
    assert result.signals == ["+amazing", "+friendly"]


def test_keywords_nudge_a_three_star_review():
    assert classify_sentiment(3, "It was fine").sentiment is SentimentLabel.NEUTRAL
    # one keyword stays inside the neutral band
    assert classify_sentiment(3, "great").score == 0.05
    assert classify_sentiment(3, "great").sentiment is SentimentLabel.NEUTRAL
    nudged = classify_sentiment(3, "great service, friendly and clean")
    assert nudged.score == 0.15
    assert nudged.sentiment is SentimentLabel.POSITIVE
    assert classify_sentiment(3, "rude, slow and dirty").sentiment is SentimentLabel.NEGATIVE


def test_keyword_swing_is_capped():
    gushing = " ".join(["great"] * 10)
    result = classify_sentiment(1, gushing)
    assert result.score == -0.8
    assert result.sentiment is SentimentLabel.NEGATIVE


def test_out_of_range_rating_is_clamped():
    assert classify_sentiment(9, "").score == 1.0
    assert classify_sentiment(0, "").score == -1.0


def test_classification_is_deterministic():
    text = "Loved the brunch but the coffee was cold"
    assert classify_sentiment(4, text) == classify_sentiment(4, text)


@pytest.mark.parametrize("text, category", [
    ("I want a refund for this", "refund_request"),
    ("My lawyer will hear about this", "threat"),
    ("The staff were racist to us", "discrimination"),
    ("Discriminated against at the door", "discrimination"),
    ("This is a health code violation", "legal_concern"),
])
def test_escalation_categories(text, category):
    assert category in detect_escalations(text)


def test_escalation_matches_whole_words_only():
    assert detect_escalations("There was an issue with the pursuit of dessert") == []
    assert detect_escalations(None) == []
