"""
Async DB helpers for the review workflow.
Uses SQLAlchemy 2.0 + asyncpg driver – no raw SQL strings in app code.

Services receive an ``async_sessionmaker`` and own their transactions; the
helpers below all take the caller's session so they compose inside one unit
of work.
"""

from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
)

from app.services.errors import ConfigurationError
from db.models import (
    Base, ConversationContext, ConversationState, Business, NotificationLog,
    PlatformAccount, ReplyDraft, Review,
)

# ──────────────────────────────────────────────────────────────────────
# 1. Lazy engine / session factory
# ──────────────────────────────────────────────────────────────────────
_engine: AsyncEngine | None = None
_session_maker: async_sessionmaker[AsyncSession] | None = None

def _build_url() -> str:
    url = os.getenv("DATABASE_URL") or os.getenv("DATABASE_PUBLIC_URL")
    if not url:
        raise ConfigurationError("DATABASE_URL not set")
    if "+asyncpg" not in url and "+aiosqlite" not in url:
        url = url.replace("postgres://", "postgresql+asyncpg://", 1).replace(
            "postgresql://", "postgresql+asyncpg://", 1
        )
    return url

def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = create_async_engine(_build_url(), pool_size=5, max_overflow=5)
    return _engine

def get_session_maker() -> async_sessionmaker[AsyncSession]:
    global _session_maker
    if _session_maker is None:
        _session_maker = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _session_maker


# ──────────────────────────────────────────────────────────────────────
# 2. DDL helper (tests and local dev; production uses Alembic)
# ──────────────────────────────────────────────────────────────────────
async def create_all(engine: AsyncEngine | None = None):
    async with (engine or get_engine()).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine():
    global _engine, _session_maker
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_maker = None


# ──────────────────────────────────────────────────────────────────────
# 3. Time helpers
# ──────────────────────────────────────────────────────────────────────
def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive timestamps read back from drivers that drop tzinfo."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# ──────────────────────────────────────────────────────────────────────
# 4. Review helpers
# ──────────────────────────────────────────────────────────────────────
async def review_exists(s: AsyncSession, platform: str, external_review_id: str) -> bool:
    stmt = select(Review.id).where(
        Review.platform == platform,
        Review.external_review_id == external_review_id,
    ).limit(1)
    return (await s.execute(stmt)).scalar_one_or_none() is not None


async def latest_review_date(s: AsyncSession, business_id: str, platform: str) -> datetime | None:
    stmt = select(func.max(Review.review_date)).where(
        Review.business_id == business_id,
        Review.platform == platform,
    )
    return as_utc((await s.execute(stmt)).scalar_one_or_none())


async def latest_draft(s: AsyncSession, review_id: str) -> ReplyDraft | None:
    stmt = (
        select(ReplyDraft)
        .where(ReplyDraft.review_id == review_id)
        .order_by(ReplyDraft.created_at.desc())
        .limit(1)
    )
    return (await s.execute(stmt)).scalar_one_or_none()


# ──────────────────────────────────────────────────────────────────────
# 5. Conversation context helpers
# ──────────────────────────────────────────────────────────────────────
async def business_for_phone(s: AsyncSession, phone: str) -> Business | None:
    stmt = select(Business).where(Business.owner_phone == phone).order_by(Business.created_at).limit(1)
    return (await s.execute(stmt)).scalar_one_or_none()


async def get_or_create_context(
    s: AsyncSession, phone: str, business_id: str | None = None
) -> ConversationContext:
    """Return the context row for ``phone``, inserting it on first contact.

    The insert runs under a savepoint; losing a race to a concurrent insert
    falls back to reading the winner's row.
    """
    ctx = await s.get(ConversationContext, phone)
    if ctx is not None:
        return ctx

    if business_id is None:
        business = await business_for_phone(s, phone)
        business_id = business.id if business else None

    ctx = ConversationContext(
        phone=phone,
        state=ConversationState.IDLE,
        pending_review_id=None,
        business_id=business_id,
    )
    try:
        async with s.begin_nested():
            s.add(ctx)
    except IntegrityError:
        ctx = await s.get(ConversationContext, phone, populate_existing=True)
    return ctx


# ──────────────────────────────────────────────────────────────────────
# 6. Notification log helpers
# ──────────────────────────────────────────────────────────────────────
async def log_notification(s: AsyncSession, **fields: Any) -> NotificationLog:
    entry = NotificationLog(**fields)
    s.add(entry)
    await s.flush()
    return entry


async def inbound_message_seen(s: AsyncSession, gateway_message_id: str) -> bool:
    stmt = select(NotificationLog.id).where(
        NotificationLog.gateway_message_id == gateway_message_id,
        NotificationLog.direction == "inbound",
    ).limit(1)
    return (await s.execute(stmt)).scalar_one_or_none() is not None


async def update_delivery_status(s: AsyncSession, gateway_message_id: str, status: str) -> int:
    res = await s.execute(
        update(NotificationLog)
        .where(NotificationLog.gateway_message_id == gateway_message_id)
        .values(status=status, updated_at=datetime.now(timezone.utc))
    )
    return res.rowcount or 0


# ──────────────────────────────────────────────────────────────────────
# 7. Platform credential helpers
# ──────────────────────────────────────────────────────────────────────
async def mark_reauth_required(s: AsyncSession, account_id: str, error: str) -> None:
    """Drop rejected credentials; the owner has to reconnect out of band."""
    await s.execute(
        update(PlatformAccount)
        .where(PlatformAccount.id == account_id)
        .values(access_token=None, reauth_required=True, last_error=error)
    )
