"""baseline review desk schema

Revision ID: 3f1c2a9d7e01
Revises:
Create Date: 2026-03-01 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '3f1c2a9d7e01'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _ts(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.TIMESTAMP(timezone=True), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        "businesses",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("owner_phone", sa.String(32)),
        sa.Column("auto_post_positive", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("monitoring_paused", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("sms_opted_out", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("subscription_state", sa.String(32), nullable=False, server_default="trialing"),
        sa.Column("stripe_customer_id", sa.String(64)),
        sa.Column("stripe_subscription_id", sa.String(64)),
        sa.Column("latitude", sa.Float),
        sa.Column("longitude", sa.Float),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index("ix_businesses_owner_phone", "businesses", ["owner_phone"])

    op.create_table(
        "platform_accounts",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("business_id", sa.String(36), sa.ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False),
        sa.Column("platform", sa.String(32), nullable=False),
        sa.Column("source_id", sa.String(255), nullable=False),
        sa.Column("access_token", sa.Text),
        sa.Column("reauth_required", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("last_error", sa.Text),
        _ts("created_at"),
        sa.UniqueConstraint("business_id", "platform", name="uq_platform_accounts_business_platform"),
    )

    # reviews: (platform, external_review_id) is the dedup key
    op.create_table(
        "reviews",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("business_id", sa.String(36), sa.ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False),
        sa.Column("platform", sa.String(32), nullable=False),
        sa.Column("external_review_id", sa.String(255), nullable=False),
        sa.Column("author", sa.String(200)),
        sa.Column("rating", sa.Integer, nullable=False),
        sa.Column("text", sa.Text, nullable=False),
        _ts("review_date", nullable=True),
        _ts("ingested_at"),
        sa.Column("sentiment", sa.String(16), nullable=False),
        sa.Column("sentiment_score", sa.Float, nullable=False),
        sa.Column("signals", sa.JSON, nullable=False),
        sa.Column("escalation_reasons", sa.JSON, nullable=False),
        sa.Column("metadata", sa.JSON, nullable=False),
        sa.UniqueConstraint("platform", "external_review_id", name="uq_reviews_platform_external_id"),
    )
    op.create_index(
        "ix_reviews_business_platform_date", "reviews", ["business_id", "platform", "review_date"]
    )

    op.create_table(
        "reply_drafts",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("review_id", sa.String(36), sa.ForeignKey("reviews.id", ondelete="CASCADE"), nullable=False),
        sa.Column("draft_text", sa.Text, nullable=False),
        sa.Column("escalation_flag", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("escalation_reasons", sa.JSON, nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("confidence", sa.Float, nullable=False, server_default="0"),
        _ts("approved_at", nullable=True),
        _ts("created_at"),
        sa.Column("metadata", sa.JSON, nullable=False),
    )
    op.create_index("ix_reply_drafts_review_id", "reply_drafts", ["review_id"])
    op.create_index("ix_reply_drafts_status", "reply_drafts", ["status"])

    op.create_table(
        "posted_responses",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("draft_id", sa.String(36), sa.ForeignKey("reply_drafts.id", ondelete="CASCADE"),
                  nullable=False, unique=True),
        sa.Column("review_id", sa.String(36), sa.ForeignKey("reviews.id", ondelete="CASCADE"), nullable=False),
        sa.Column("platform", sa.String(32), nullable=False),
        sa.Column("response_text", sa.Text, nullable=False),
        sa.Column("external_response_id", sa.String(255)),
        _ts("posted_at"),
    )

    op.create_table(
        "conversation_contexts",
        sa.Column("phone", sa.String(32), primary_key=True),
        sa.Column("state", sa.String(32), nullable=False, server_default="idle"),
        sa.Column("pending_review_id", sa.String(36)),
        sa.Column("business_id", sa.String(36)),
        _ts("updated_at"),
    )

    op.create_table(
        "notification_logs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("direction", sa.String(10), nullable=False),
        sa.Column("from_phone", sa.String(32), nullable=False),
        sa.Column("to_phone", sa.String(32), nullable=False),
        sa.Column("body", sa.Text, nullable=False),
        sa.Column("command", sa.String(32)),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("gateway_message_id", sa.String(128), unique=True),
        sa.Column("review_id", sa.String(36)),
        sa.Column("business_id", sa.String(36)),
        sa.Column("error", sa.Text),
        _ts("created_at"),
        _ts("updated_at"),
    )

    op.create_table(
        "alert_retry_states",
        sa.Column("notification_id", sa.String(36), primary_key=True),
        sa.Column("review_id", sa.String(36), sa.ForeignKey("reviews.id", ondelete="CASCADE"),
                  nullable=False, unique=True),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        _ts("retry_after", nullable=True),
        sa.Column("permanently_failed", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("last_error", sa.Text),
        _ts("created_at"),
        _ts("updated_at"),
    )

    op.create_table(
        "competitors",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("business_id", sa.String(36), sa.ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False),
        sa.Column("place_id", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("rating", sa.Float),
        sa.Column("added_by", sa.String(16), nullable=False, server_default="user"),
        _ts("created_at"),
        sa.UniqueConstraint("business_id", "place_id", name="uq_competitors_business_place"),
    )


def downgrade() -> None:
    op.drop_table("competitors")
    op.drop_table("alert_retry_states")
    op.drop_table("notification_logs")
    op.drop_table("conversation_contexts")
    op.drop_table("posted_responses")
    op.drop_index("ix_reply_drafts_status", table_name="reply_drafts")
    op.drop_index("ix_reply_drafts_review_id", table_name="reply_drafts")
    op.drop_table("reply_drafts")
    op.drop_index("ix_reviews_business_platform_date", table_name="reviews")
    op.drop_table("reviews")
    op.drop_table("platform_accounts")
    op.drop_index("ix_businesses_owner_phone", table_name="businesses")
    op.drop_table("businesses")
