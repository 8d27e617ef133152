from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON, Boolean, DateTime, Enum, Float, ForeignKey, Index, Integer, String,
    Text, UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


# ──────────────────────────────────────────────────────────────────────
# Enums
# ──────────────────────────────────────────────────────────────────────
class DraftStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SENT = "sent"


class ConversationState(str, enum.Enum):
    IDLE = "idle"
    AWAITING_CUSTOM_REPLY = "awaiting_custom_reply"
    AWAITING_CANCEL_CONFIRM = "awaiting_cancel_confirm"
    AWAITING_COMPETITOR_ADD = "awaiting_competitor_add"


def _enum(cls: type[enum.Enum], name: str) -> Enum:
    # store the lowercase values, not the member names
    return Enum(cls, name=name, values_callable=lambda e: [m.value for m in e],
                native_enum=False, length=32)


# ──────────────────────────────────────────────────────────────────────
# Businesses and their platform accounts
# ──────────────────────────────────────────────────────────────────────
class Business(Base):
    __tablename__ = "businesses"

    id:                     Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name:                   Mapped[str] = mapped_column(String(200))
    owner_phone:            Mapped[str | None] = mapped_column(String(32), index=True)
    auto_post_positive:     Mapped[bool] = mapped_column(Boolean, default=False)
    monitoring_paused:      Mapped[bool] = mapped_column(Boolean, default=False)
    sms_opted_out:          Mapped[bool] = mapped_column(Boolean, default=False)
    subscription_state:     Mapped[str] = mapped_column(String(32), default="trialing")
    stripe_customer_id:     Mapped[str | None] = mapped_column(String(64))
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(64))
    latitude:               Mapped[float | None] = mapped_column(Float)
    longitude:              Mapped[float | None] = mapped_column(Float)
    created_at:             Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at:             Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class PlatformAccount(Base):
    __tablename__ = "platform_accounts"

    id:              Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    business_id:     Mapped[str] = mapped_column(ForeignKey("businesses.id", ondelete="CASCADE"))
    platform:        Mapped[str] = mapped_column(String(32))
    source_id:       Mapped[str] = mapped_column(String(255))
    access_token:    Mapped[str | None] = mapped_column(Text)
    reauth_required: Mapped[bool] = mapped_column(Boolean, default=False)
    last_error:      Mapped[str | None] = mapped_column(Text)
    created_at:      Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("business_id", "platform", name="uq_platform_accounts_business_platform"),
    )


# ──────────────────────────────────────────────────────────────────────
# Reviews, drafts and posted responses
# ──────────────────────────────────────────────────────────────────────
class Review(Base):
    __tablename__ = "reviews"

    id:                 Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    business_id:        Mapped[str] = mapped_column(ForeignKey("businesses.id", ondelete="CASCADE"))
    platform:           Mapped[str] = mapped_column(String(32))
    external_review_id: Mapped[str] = mapped_column(String(255))
    author:             Mapped[str | None] = mapped_column(String(200))
    rating:             Mapped[int] = mapped_column(Integer)
    text:               Mapped[str] = mapped_column(Text, default="")
    review_date:        Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    ingested_at:        Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    sentiment:          Mapped[str] = mapped_column(String(16))
    sentiment_score:    Mapped[float] = mapped_column(Float)
    signals:            Mapped[list[str]] = mapped_column(JSON, default=list)
    escalation_reasons: Mapped[list[str]] = mapped_column(JSON, default=list)
    extra:              Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict)

    __table_args__ = (
        UniqueConstraint("platform", "external_review_id", name="uq_reviews_platform_external_id"),
        Index("ix_reviews_business_platform_date", "business_id", "platform", "review_date"),
    )


class ReplyDraft(Base):
    __tablename__ = "reply_drafts"

    id:                 Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    review_id:          Mapped[str] = mapped_column(ForeignKey("reviews.id", ondelete="CASCADE"), index=True)
    draft_text:         Mapped[str] = mapped_column(Text)
    escalation_flag:    Mapped[bool] = mapped_column(Boolean, default=False)
    escalation_reasons: Mapped[list[str]] = mapped_column(JSON, default=list)
    status:             Mapped[DraftStatus] = mapped_column(_enum(DraftStatus, "draft_status"), default=DraftStatus.PENDING)
    confidence:         Mapped[float] = mapped_column(Float, default=0.0)
    approved_at:        Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at:         Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    extra:              Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict)

    __table_args__ = (
        Index("ix_reply_drafts_status", "status"),
    )


class PostedResponse(Base):
    __tablename__ = "posted_responses"

    id:                   Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    draft_id:             Mapped[str] = mapped_column(ForeignKey("reply_drafts.id", ondelete="CASCADE"), unique=True)
    review_id:            Mapped[str] = mapped_column(ForeignKey("reviews.id", ondelete="CASCADE"))
    platform:             Mapped[str] = mapped_column(String(32))
    response_text:        Mapped[str] = mapped_column(Text)
    external_response_id: Mapped[str | None] = mapped_column(String(255))
    posted_at:            Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


# ──────────────────────────────────────────────────────────────────────
# SMS conversation, audit log and alert retries
# ──────────────────────────────────────────────────────────────────────
class ConversationContext(Base):
    __tablename__ = "conversation_contexts"

    phone:             Mapped[str] = mapped_column(String(32), primary_key=True)
    state:             Mapped[ConversationState] = mapped_column(
        _enum(ConversationState, "conversation_state"), default=ConversationState.IDLE
    )
    pending_review_id: Mapped[str | None] = mapped_column(String(36))
    business_id:       Mapped[str | None] = mapped_column(String(36))
    updated_at:        Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class NotificationLog(Base):
    __tablename__ = "notification_logs"

    id:                 Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    direction:          Mapped[str] = mapped_column(String(10))  # inbound | outbound
    from_phone:         Mapped[str] = mapped_column(String(32))
    to_phone:           Mapped[str] = mapped_column(String(32))
    body:               Mapped[str] = mapped_column(Text)
    command:            Mapped[str | None] = mapped_column(String(32))
    status:             Mapped[str] = mapped_column(String(20))
    gateway_message_id: Mapped[str | None] = mapped_column(String(128), unique=True)
    review_id:          Mapped[str | None] = mapped_column(String(36))
    business_id:        Mapped[str | None] = mapped_column(String(36))
    error:              Mapped[str | None] = mapped_column(Text)
    created_at:         Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at:         Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class AlertRetryState(Base):
    __tablename__ = "alert_retry_states"

    notification_id:    Mapped[str] = mapped_column(String(36), primary_key=True)
    review_id:          Mapped[str] = mapped_column(ForeignKey("reviews.id", ondelete="CASCADE"), unique=True)
    attempts:           Mapped[int] = mapped_column(Integer, default=0)
    retry_after:        Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    permanently_failed: Mapped[bool] = mapped_column(Boolean, default=False)
    last_error:         Mapped[str | None] = mapped_column(Text)
    created_at:         Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at:         Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# ──────────────────────────────────────────────────────────────────────
# Competitor watch list
# ──────────────────────────────────────────────────────────────────────
class Competitor(Base):
    __tablename__ = "competitors"

    id:          Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    business_id: Mapped[str] = mapped_column(ForeignKey("businesses.id", ondelete="CASCADE"))
    place_id:    Mapped[str] = mapped_column(String(255))
    name:        Mapped[str] = mapped_column(String(255))
    rating:      Mapped[float | None] = mapped_column(Float)
    added_by:    Mapped[str] = mapped_column(String(16), default="user")
    created_at:  Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("business_id", "place_id", name="uq_competitors_business_place"),
    )
