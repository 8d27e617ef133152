"""Outbound SMS: review alerts to owners plus plain conversational replies.

Every attempt lands in ``notification_logs``; failures are re-raised to the
caller after logging.
"""

from __future__ import annotations

import logging
import re

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import db
from app.services.errors import NotificationSendError
from app.utils.sms import SmsGateway
from db.models import Business, ConversationState, ReplyDraft, Review

_LOGGER = logging.getLogger(__name__)

HELP_SUFFIX = "\nReply HELP anytime."
COMMAND_HINT = "APPROVE to post | EDIT for custom reply | IGNORE to skip."

REVIEW_SNIPPET_CHARS = 120
DRAFT_SNIPPET_CHARS = 300

_OPTION_ONE_RE = re.compile(r"Option 1[:\s]*(.+?)(?=Option 2|$)", re.IGNORECASE | re.DOTALL)


def first_option(draft_text: str) -> str:
    """Return the "Option 1" reply from a labelled draft, else the whole draft."""
    match = _OPTION_ONE_RE.search(draft_text or "")
    if match and match.group(1).strip():
        return match.group(1).strip()
    return (draft_text or "").strip()


def format_review_alert(review: Review, draft: ReplyDraft) -> str:
    text = review.text or ""
    snippet = text[:REVIEW_SNIPPET_CHARS] + ("..." if len(text) > REVIEW_SNIPPET_CHARS else "")
    draft_snippet = first_option(draft.draft_text)[:DRAFT_SNIPPET_CHARS]
    return (
        f"New review from {review.author or 'Anonymous'}: \"{snippet}\" ({review.rating}★)\n"
        f"Draft reply: \"{draft_snippet}\"\n"
        f"{COMMAND_HINT}{HELP_SUFFIX}"
    )


class NotificationDispatcher:
    def __init__(self, sessions: async_sessionmaker[AsyncSession], gateway: SmsGateway):
        self._sessions = sessions
        self._gateway = gateway

    async def send(self, review: Review, draft: ReplyDraft, business: Business, phone: str) -> str:
        """Alert ``phone`` about ``review`` and return the notification id."""
        body = format_review_alert(review, draft)

        # Point the owner's context at this review before the SMS goes out so a
        # fast reply resolves against it.
        async with self._sessions() as s, s.begin():
            ctx = await db.get_or_create_context(s, phone, business.id)
            ctx.state = ConversationState.IDLE
            ctx.pending_review_id = review.id
            ctx.business_id = business.id

        return await self._deliver(phone, body, review_id=review.id, business_id=business.id)

    async def send_text(self, phone: str, body: str, business_id: str | None = None) -> str:
        return await self._deliver(phone, body, business_id=business_id)

    async def _deliver(self, phone: str, body: str, review_id: str | None = None,
                       business_id: str | None = None) -> str:
        try:
            message_id = await self._gateway.send(phone, body)
        except Exception as exc:  # noqa: BLE001
            notification_id = await self._log(phone, body, "failed", review_id, business_id, error=str(exc))
            _LOGGER.error("SMS to %s failed: %s", phone, exc)
            raise NotificationSendError(str(exc), notification_id=notification_id) from exc

        return await self._log(phone, body, "sent", review_id, business_id, gateway_message_id=message_id)

    async def _log(self, phone, body, status, review_id, business_id, **extra) -> str:
        async with self._sessions() as s, s.begin():
            entry = await db.log_notification(
                s,
                direction="outbound",
                from_phone=getattr(self._gateway, "from_number", "") or "",
                to_phone=phone,
                body=body,
                status=status,
                review_id=review_id,
                business_id=business_id,
                **extra,
            )
            return entry.id
