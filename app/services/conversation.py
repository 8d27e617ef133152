"""
SMS conversation engine.

Interprets an owner's inbound SMS against their per-phone
``ConversationContext``, runs the matching command handler inside one
transaction and returns the reply text.

Every handler that leaves a waiting state also clears what made the state
reachable, so a context never waits on a review that is already resolved.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import db
from app.services.billing import BillingGateway
from app.services.command_parser import CommandType, ParsedCommand, parse_command
from app.services.competitors import CompetitorDirectory
from app.services.errors import BillingError, CompetitorLookupError
from app.services.notifications import HELP_SUFFIX
from config import settings
from db.models import (
    Business, Competitor, ConversationContext, ConversationState, DraftStatus,
    PlatformAccount, ReplyDraft, Review, utcnow,
)

_LOGGER = logging.getLogger(__name__)

MAX_COMPETITORS = 25
SCAN_LIST_SIZE = 10

TEMPLATES = {
    "help": (
        "SMS Commands:\n\n"
        "When a review arrives:\n"
        "APPROVE - post reply instantly\n"
        "EDIT - revise before posting\n"
        "IGNORE - skip without replying\n\n"
        "On Your Radar:\n"
        "COMPETITOR SCAN - find nearby competitors\n"
        "COMPETITOR ADD [name] - track competitor\n"
        "COMPETITOR LIST - see your list\n"
        "COMPETITOR REMOVE [name] - stop tracking\n\n"
        "Your Account:\n"
        "PAUSE · RESUME · STATUS · BILLING · CANCEL\n\n"
        "{support}"
    ),
    "stop": "You've been unsubscribed from review alerts. Text RESUME to turn them back on.",
    "approve": f"Response approved! It will be posted shortly.{HELP_SUFFIX}",
    "edit_prompt": f"Type your custom reply now. Your next message will be posted as the response.{HELP_SUFFIX}",
    "custom_reply": f"Your custom response has been approved and will be posted shortly.{HELP_SUFFIX}",
    "ignore": f"Review dismissed. No reply will be posted.{HELP_SUFFIX}",
    "already_handled": f"That review has already been handled.{HELP_SUFFIX}",
    "pause": f"Review monitoring paused. Text RESUME to restart.{HELP_SUFFIX}",
    "resume": f"Review monitoring resumed! You'll receive alerts for new reviews.{HELP_SUFFIX}",
    "cancel_prompt": (
        "Are you sure you want to cancel your subscription? "
        f"Reply YES to confirm or NO to keep your account.{HELP_SUFFIX}"
    ),
    "cancel_done": f"Subscription canceled. You won't be charged again.{HELP_SUFFIX}",
    "cancel_failed": f"Cancellation failed, please try again or contact {{support}}.{HELP_SUFFIX}",
    "cancel_deny": f"Great, your account remains active!{HELP_SUFFIX}",
    "no_pending": f"No pending review to respond to. We'll notify you when the next one arrives.{HELP_SUFFIX}",
    "no_account": f"No account found for this phone number. Contact {{support}} for help.{HELP_SUFFIX}",
    "no_billing": f"No billing account found. Complete signup first at {{signup}}{HELP_SUFFIX}",
    "billing_link": f"Manage billing: {{url}} (expires in 1 hour).{HELP_SUFFIX}",
    "billing_failed": f"Unable to generate billing link. Contact {{support}} for help.{HELP_SUFFIX}",
    "unknown": "Sorry, I didn't understand that.\n\nReply HELP for the full command list.",
    "error": "Something went wrong. Please try again.",
    "no_location": f"We need your business location to look up competitors. Contact {{support}}.{HELP_SUFFIX}",
    "scan_empty": f"No competitors found nearby with 50+ reviews.{HELP_SUFFIX}",
    "scan_list": f"Nearby competitors:\n{{places}}\n\nReply with a name to track one.{HELP_SUFFIX}",
    "lookup_failed": f"Competitor lookup is temporarily unavailable. Try again later.{HELP_SUFFIX}",
    "add_usage": f"Please specify a name: COMPETITOR ADD <name>{HELP_SUFFIX}",
    "add_limit": f"You've reached the {MAX_COMPETITORS} competitor limit. Remove one first: COMPETITOR REMOVE <name>{HELP_SUFFIX}",
    "add_none": f"No results found for \"{{name}}\". Try a more specific name.{HELP_SUFFIX}",
    "add_exists": f"{{name}} is already on your competitor watch.{HELP_SUFFIX}",
    "added": f"Added {{name}} ({{rating}}★) to your competitor watch.{HELP_SUFFIX}",
    "list_empty": f"No competitors tracked yet. Reply COMPETITOR SCAN to find nearby competitors.{HELP_SUFFIX}",
    "list": f"Tracked competitors ({{count}}/{MAX_COMPETITORS}):\n{{names}}\n\nReply COMPETITOR REMOVE <name> to remove one.{HELP_SUFFIX}",
    "remove_usage": f"Please specify: COMPETITOR REMOVE <name or number>{HELP_SUFFIX}",
    "remove_none": f"No competitor matching \"{{name}}\". Reply COMPETITOR LIST to see your list.{HELP_SUFFIX}",
    "removed": f"Removed {{name}} from your competitor watch.{HELP_SUFFIX}",
}


@dataclass
class InboundResult:
    reply: Optional[str]
    command: Optional[CommandType] = None
    duplicate: bool = False


Handler = Callable[
    ["ConversationStateMachine", AsyncSession, ConversationContext, Optional[Business], ParsedCommand],
    Awaitable[str],
]


class ConversationStateMachine:
    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        billing: BillingGateway,
        competitors: CompetitorDirectory,
        own_number: str = "",
        clock: Callable[[], datetime] = utcnow,
    ):
        self._sessions = sessions
        self._billing = billing
        self._competitors = competitors
        self._own_number = own_number
        self._clock = clock

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    async def handle_inbound(self, phone: str, body: str, message_id: str | None = None) -> InboundResult:
        """Process one inbound SMS. Never raises; internal errors get a fixed reply."""
        try:
            return await self._handle(phone, body, message_id)
        except Exception:  # noqa: BLE001
            _LOGGER.exception("Inbound SMS from %s failed", phone)
            return InboundResult(reply=TEMPLATES["error"])

    async def _handle(self, phone: str, body: str, message_id: str | None) -> InboundResult:
        async with self._sessions() as s, s.begin():
            if message_id and await db.inbound_message_seen(s, message_id):
                _LOGGER.info("Duplicate inbound %s from %s ignored", message_id, phone)
                return InboundResult(reply=None, duplicate=True)

            ctx = await db.get_or_create_context(s, phone)
            parsed = parse_command(body, ctx.state)
            if ctx.business_id:
                business = await s.get(Business, ctx.business_id)
            else:
                # the owner may have signed up after first texting us
                business = await db.business_for_phone(s, phone)
                if business is not None:
                    ctx.business_id = business.id

            try:
                async with s.begin_nested():
                    await db.log_notification(
                        s,
                        direction="inbound",
                        from_phone=phone,
                        to_phone=self._own_number,
                        body=body,
                        command=parsed.type.value,
                        status="received",
                        gateway_message_id=message_id or None,
                        business_id=ctx.business_id,
                    )
            except IntegrityError:
                # a concurrent delivery of the same message got there first
                return InboundResult(reply=None, duplicate=True)

            handler = _HANDLERS[parsed.type]
            reply = await handler(self, s, ctx, business, parsed)
            _LOGGER.info("SMS %s from %s -> state %s", parsed.type.value, phone, ctx.state.value)
            return InboundResult(reply=reply, command=parsed.type)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _to_idle(ctx: ConversationContext, clear_pending: bool = False) -> None:
        ctx.state = ConversationState.IDLE
        if clear_pending:
            ctx.pending_review_id = None

    @staticmethod
    async def _pending_draft(s: AsyncSession, review_id: str) -> ReplyDraft | None:
        stmt = (
            select(ReplyDraft)
            .where(ReplyDraft.review_id == review_id, ReplyDraft.status == DraftStatus.PENDING)
            .order_by(ReplyDraft.created_at.desc())
            .limit(1)
        )
        return (await s.execute(stmt)).scalar_one_or_none()

    @staticmethod
    def _fmt(key: str, **kwargs) -> str:
        return TEMPLATES[key].format(support=settings.SUPPORT_EMAIL, signup=settings.SIGNUP_URL, **kwargs)

    # ------------------------------------------------------------------
    # Review approval
    # ------------------------------------------------------------------
    async def _on_approve(self, s, ctx, business, cmd) -> str:
        if not ctx.pending_review_id:
            return TEMPLATES["no_pending"]
        draft = await self._pending_draft(s, ctx.pending_review_id)
        self._to_idle(ctx, clear_pending=True)
        if draft is None:
            return TEMPLATES["already_handled"]
        draft.status = DraftStatus.APPROVED
        draft.approved_at = self._clock()
        _LOGGER.info("Review %s approved via SMS", draft.review_id)
        return TEMPLATES["approve"]

    async def _on_edit(self, s, ctx, business, cmd) -> str:
        if not ctx.pending_review_id:
            return TEMPLATES["no_pending"]
        ctx.state = ConversationState.AWAITING_CUSTOM_REPLY
        return TEMPLATES["edit_prompt"]

    async def _on_custom_reply(self, s, ctx, business, cmd) -> str:
        if not ctx.pending_review_id:
            self._to_idle(ctx)
            return TEMPLATES["no_pending"]
        text = (cmd.body or "").strip()
        if not text:
            # nothing to post; keep waiting for the reply text
            return TEMPLATES["edit_prompt"]
        draft = await self._pending_draft(s, ctx.pending_review_id)
        self._to_idle(ctx, clear_pending=True)
        if draft is None:
            return TEMPLATES["already_handled"]
        draft.draft_text = text
        draft.status = DraftStatus.APPROVED
        draft.approved_at = self._clock()
        draft.extra = {**(draft.extra or {}), "custom_response": True}
        _LOGGER.info("Review %s approved with custom reply", draft.review_id)
        return TEMPLATES["custom_reply"]

    async def _on_ignore(self, s, ctx, business, cmd) -> str:
        if not ctx.pending_review_id:
            return TEMPLATES["no_pending"]
        draft = await self._pending_draft(s, ctx.pending_review_id)
        if draft is not None:
            draft.status = DraftStatus.REJECTED
        _LOGGER.info("Review %s ignored via SMS", ctx.pending_review_id)
        self._to_idle(ctx, clear_pending=True)
        return TEMPLATES["ignore"]

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------
    async def _on_stop(self, s, ctx, business, cmd) -> str:
        if business is not None:
            business.sms_opted_out = True
            business.monitoring_paused = True
        self._to_idle(ctx, clear_pending=True)
        return TEMPLATES["stop"]

    async def _on_help(self, s, ctx, business, cmd) -> str:
        return self._fmt("help")

    async def _on_pause(self, s, ctx, business, cmd) -> str:
        if business is not None:
            business.monitoring_paused = True
        self._to_idle(ctx)
        return TEMPLATES["pause"]

    async def _on_resume(self, s, ctx, business, cmd) -> str:
        if business is not None:
            business.monitoring_paused = False
            business.sms_opted_out = False
        self._to_idle(ctx)
        return TEMPLATES["resume"]

    async def _on_status(self, s, ctx, business, cmd) -> str:
        if business is None:
            return self._fmt("no_account")

        review_count = (await s.execute(
            select(func.count(Review.id)).where(Review.business_id == business.id)
        )).scalar_one()
        awaiting = (await s.execute(
            select(func.count(ReplyDraft.id))
            .join(Review, Review.id == ReplyDraft.review_id)
            .where(Review.business_id == business.id, ReplyDraft.status == DraftStatus.PENDING)
        )).scalar_one()
        reauth = (await s.execute(
            select(PlatformAccount.platform).where(
                PlatformAccount.business_id == business.id,
                PlatformAccount.reauth_required.is_(True),
            )
        )).scalars().all()

        lines = [
            business.name,
            f"Status: {'Paused' if business.monitoring_paused else 'Active'}",
            f"Reviews tracked: {review_count}",
            f"Awaiting approval: {awaiting}",
            f"Billing: {business.subscription_state.replace('_', ' ').title()}",
        ]
        for platform in reauth:
            lines.append(f"{platform.title()} connection needs re-authorization. Reconnect from your dashboard.")
        return "\n".join(lines) + HELP_SUFFIX

    async def _on_billing(self, s, ctx, business, cmd) -> str:
        if business is None:
            return self._fmt("no_account")
        if not business.stripe_customer_id:
            return self._fmt("no_billing")
        try:
            url = await self._billing.create_portal_session(business.stripe_customer_id)
        except BillingError as exc:
            _LOGGER.error("Billing portal for business %s failed: %s", business.id, exc)
            return self._fmt("billing_failed")
        return self._fmt("billing_link", url=url)

    async def _on_cancel(self, s, ctx, business, cmd) -> str:
        ctx.state = ConversationState.AWAITING_CANCEL_CONFIRM
        return TEMPLATES["cancel_prompt"]

    async def _on_cancel_confirm(self, s, ctx, business, cmd) -> str:
        self._to_idle(ctx)
        if business is None:
            return self._fmt("no_account")

        if business.stripe_subscription_id:
            try:
                await self._billing.cancel_subscription(business.stripe_subscription_id)
            except BillingError as exc:
                # local state stays active; billing still considers the subscription live
                _LOGGER.error("Subscription cancel failed for business %s: %s", business.id, exc)
                return self._fmt("cancel_failed")

        business.subscription_state = "canceled"
        business.monitoring_paused = True
        _LOGGER.info("Cancellation confirmed for business %s", business.id)
        return TEMPLATES["cancel_done"]

    async def _on_cancel_deny(self, s, ctx, business, cmd) -> str:
        self._to_idle(ctx)
        return TEMPLATES["cancel_deny"]

    # ------------------------------------------------------------------
    # Competitor watch
    # ------------------------------------------------------------------
    async def _on_competitor_scan(self, s, ctx, business, cmd) -> str:
        if business is None:
            return self._fmt("no_account")
        if business.latitude is None or business.longitude is None:
            return self._fmt("no_location")
        try:
            places = await self._competitors.nearby(business.latitude, business.longitude)
        except CompetitorLookupError as exc:
            _LOGGER.error("Competitor scan failed: %s", exc)
            return TEMPLATES["lookup_failed"]
        if not places:
            self._to_idle(ctx)
            return TEMPLATES["scan_empty"]

        listing = "\n".join(
            f"{i}. {p.name} ({p.rating if p.rating is not None else '?'}★, "
            f"{p.review_count if p.review_count is not None else '?'} reviews)"
            for i, p in enumerate(places[:SCAN_LIST_SIZE], start=1)
        )
        ctx.state = ConversationState.AWAITING_COMPETITOR_ADD
        return self._fmt("scan_list", places=listing)

    async def _on_competitor_add(self, s, ctx, business, cmd) -> str:
        self._to_idle(ctx)
        if business is None:
            return self._fmt("no_account")
        if not cmd.argument:
            return TEMPLATES["add_usage"]

        count = (await s.execute(
            select(func.count(Competitor.id)).where(Competitor.business_id == business.id)
        )).scalar_one()
        if count >= MAX_COMPETITORS:
            return TEMPLATES["add_limit"]
        if business.latitude is None or business.longitude is None:
            return self._fmt("no_location")

        try:
            places = await self._competitors.search(cmd.argument, business.latitude, business.longitude)
        except CompetitorLookupError as exc:
            _LOGGER.error("Competitor search failed: %s", exc)
            return TEMPLATES["lookup_failed"]
        if not places:
            return self._fmt("add_none", name=cmd.argument)

        place = places[0]
        existing = (await s.execute(
            select(Competitor.id).where(
                Competitor.business_id == business.id, Competitor.place_id == place.place_id
            )
        )).scalar_one_or_none()
        if existing:
            return self._fmt("add_exists", name=place.name)

        s.add(Competitor(business_id=business.id, place_id=place.place_id, name=place.name,
                         rating=place.rating, added_by="user"))
        rating = place.rating if place.rating is not None else "?"
        return self._fmt("added", name=place.name, rating=rating)

    async def _tracked(self, s, business_id: str) -> list[Competitor]:
        stmt = (
            select(Competitor)
            .where(Competitor.business_id == business_id)
            .order_by(Competitor.created_at)
            .limit(MAX_COMPETITORS)
        )
        return list((await s.execute(stmt)).scalars())

    async def _on_competitor_list(self, s, ctx, business, cmd) -> str:
        self._to_idle(ctx)
        if business is None:
            return self._fmt("no_account")
        tracked = await self._tracked(s, business.id)
        if not tracked:
            return TEMPLATES["list_empty"]
        names = "\n".join(f"{i}. {c.name}" for i, c in enumerate(tracked, start=1))
        return self._fmt("list", count=len(tracked), names=names)

    async def _on_competitor_remove(self, s, ctx, business, cmd) -> str:
        self._to_idle(ctx)
        if business is None:
            return self._fmt("no_account")
        if not cmd.argument:
            return TEMPLATES["remove_usage"]

        target: Competitor | None = None
        if cmd.argument.isdigit():
            tracked = await self._tracked(s, business.id)
            index = int(cmd.argument) - 1
            target = tracked[index] if 0 <= index < len(tracked) else None
        else:
            target = (await s.execute(
                select(Competitor)
                .where(Competitor.business_id == business.id,
                       func.lower(Competitor.name).contains(cmd.argument.lower(), autoescape=True))
                .order_by(Competitor.created_at)
                .limit(1)
            )).scalar_one_or_none()

        if target is None:
            return self._fmt("remove_none", name=cmd.argument)
        await s.delete(target)
        return self._fmt("removed", name=target.name)

    async def _on_unknown(self, s, ctx, business, cmd) -> str:
        return TEMPLATES["unknown"]


_HANDLERS: Dict[CommandType, Handler] = {
    CommandType.APPROVE: ConversationStateMachine._on_approve,
    CommandType.EDIT: ConversationStateMachine._on_edit,
    CommandType.CUSTOM_REPLY: ConversationStateMachine._on_custom_reply,
    CommandType.IGNORE: ConversationStateMachine._on_ignore,
    CommandType.STOP: ConversationStateMachine._on_stop,
    CommandType.HELP: ConversationStateMachine._on_help,
    CommandType.PAUSE: ConversationStateMachine._on_pause,
    CommandType.RESUME: ConversationStateMachine._on_resume,
    CommandType.STATUS: ConversationStateMachine._on_status,
    CommandType.BILLING: ConversationStateMachine._on_billing,
    CommandType.CANCEL: ConversationStateMachine._on_cancel,
    CommandType.CANCEL_CONFIRM: ConversationStateMachine._on_cancel_confirm,
    CommandType.CANCEL_DENY: ConversationStateMachine._on_cancel_deny,
    CommandType.COMPETITOR_SCAN: ConversationStateMachine._on_competitor_scan,
    CommandType.COMPETITOR_ADD: ConversationStateMachine._on_competitor_add,
    CommandType.COMPETITOR_LIST: ConversationStateMachine._on_competitor_list,
    CommandType.COMPETITOR_REMOVE: ConversationStateMachine._on_competitor_remove,
    CommandType.UNKNOWN: ConversationStateMachine._on_unknown,
}

_missing = set(CommandType) - set(_HANDLERS)
if _missing:
    raise RuntimeError(f"no SMS handler for: {sorted(c.value for c in _missing)}")
