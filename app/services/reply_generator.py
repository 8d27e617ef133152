"""
Reply drafting for new reviews.

``OpenAIReplyGenerator`` asks the model for two labelled options
("Option 1:" / "Option 2:"); ``TemplateReplyGenerator`` is the deterministic
local-dev shortcut and the fallback used when the model call fails.
"""

from __future__ import annotations

import logging
from typing import List, Protocol

import openai
from openai import AsyncOpenAI
from tenacity import (
    retry,
    stop_after_attempt,
    wait_random_exponential,
    retry_if_exception_type,
)

from app.services.errors import ReplyGenerationError
from app.services.sentiment import classify_sentiment, detect_escalations
from app.types.review_contract import ReplyOutput, SentimentLabel
from config import settings
from db.models import Business, Review

_LOGGER = logging.getLogger(__name__)


class ReplyGenerator(Protocol):
    async def generate_reply(self, review: Review, business: Business) -> ReplyOutput:
        ...


# ──────────────────────────────────────────────────────────────────────────
# Prompts
# ──────────────────────────────────────────────────────────────────────────

_SYSTEM_PROMPT = (
    "You are a customer service assistant for {name}. "
    "Write thoughtful, empathetic public replies to customer reviews.\n\n"
    "GUIDELINES:\n"
    "1. Thank the customer for their feedback.\n"
    "2. Positive reviews: express genuine appreciation and invite them back.\n"
    "3. Negative reviews: acknowledge concerns with empathy, apologise where "
    "appropriate, offer to make it right without specific promises.\n"
    "4. Keep replies concise (2-4 sentences positive, 3-5 negative).\n"
    "5. Never be defensive or argumentative.\n\n"
    "For SERIOUS ISSUES (health, threats, discrimination, legal): keep the reply "
    "brief and professional, invite the customer to continue offline, and do NOT "
    "admit fault or make commitments."
)


def _user_prompt(review: Review, escalations: List[str]) -> str:
    prompt = (
        f"Generate a reply to this {review.rating}-star review:\n\n"
        f"Platform: {review.platform}\n"
        f"Author: {review.author or 'Anonymous'}\n"
        f"Rating: {review.rating}/5\n"
        f"Review: \"{review.text}\"\n\n"
    )
    if escalations:
        prompt += (
            f"ESCALATION DETECTED: {', '.join(escalations)}\n"
            "Keep this reply brief and professional. Invite them to contact you directly.\n\n"
        )
    prompt += (
        'Generate TWO different reply options (label them "Option 1:" and "Option 2:"). '
        "Make them distinctly different in approach while keeping the brand voice."
    )
    return prompt


# Retry only on transport / rate-limit / backend errors
RETRY_ERRORS = (
    openai.APIStatusError,
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.APITimeoutError,
)


class OpenAIReplyGenerator:
    def __init__(self, client: AsyncOpenAI | None = None, model: str | None = None,
                 timeout: float | None = None):
        self._client = client or AsyncOpenAI(api_key=settings.OPENAI_API_KEY)
        self.model = model or settings.OPENAI_MODEL
        self.timeout = timeout or settings.OPENAI_TIMEOUT

    @retry(
        wait=wait_random_exponential(multiplier=1, max=30),
        stop=stop_after_attempt(3),
        retry=retry_if_exception_type(RETRY_ERRORS),
        reraise=True,
    )
    async def _complete(self, system: str, user: str):
        return await self._client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            temperature=0.7,
            max_tokens=500,
            timeout=self.timeout,
        )

    async def generate_reply(self, review: Review, business: Business) -> ReplyOutput:
        escalations = detect_escalations(review.text)
        if escalations:
            _LOGGER.info("Escalation detected for review %s: %s", review.id, ", ".join(escalations))
        try:
            completion = await self._complete(
                _SYSTEM_PROMPT.format(name=business.name), _user_prompt(review, escalations)
            )
        except openai.OpenAIError as exc:
            raise ReplyGenerationError(f"reply generation failed: {exc}") from exc

        choice = completion.choices[0]
        draft_text = (choice.message.content or "").strip()
        if not draft_text:
            raise ReplyGenerationError("model returned an empty reply")
        return ReplyOutput(
            draft_text=draft_text,
            escalation_flag=bool(escalations),
            escalation_reasons=escalations,
            confidence=0.9 if choice.finish_reason == "stop" else 0.7,
        )


class TemplateReplyGenerator:
    """Deterministic drafts keyed on sentiment; no network."""

    def __init__(self, confidence: float = 0.5):
        self.confidence = confidence

    async def generate_reply(self, review: Review, business: Business) -> ReplyOutput:
        escalations = detect_escalations(review.text)
        name = review.author.split()[0] if review.author else "there"
        sentiment = classify_sentiment(review.rating, review.text).sentiment

        if escalations:
            text = (
                f"Hi {name}, thank you for letting us know. We take this seriously and "
                f"would like to speak with you directly. Please contact {business.name} "
                "so we can look into it."
            )
        elif sentiment is SentimentLabel.POSITIVE:
            text = f"Thank you so much, {name}! We're thrilled you enjoyed {business.name} and hope to see you again soon."
        elif sentiment is SentimentLabel.NEUTRAL:
            text = f"Thanks for the feedback, {name}. We're always working to improve and hope to make your next visit even better."
        else:
            text = (
                f"Hi {name}, we're sorry your visit fell short. We'd love the chance to "
                "make it right; please reach out to us directly."
            )
        return ReplyOutput(
            draft_text=text,
            escalation_flag=bool(escalations),
            escalation_reasons=escalations,
            confidence=self.confidence,
        )


def default_reply_generator() -> ReplyGenerator:
    if not settings.OPENAI_API_KEY:
        # local dev shortcut
        return TemplateReplyGenerator()
    return OpenAIReplyGenerator()
