from .db import (
    get_engine,
    get_session_maker,
    create_all,
    dispose_engine,
    as_utc,
    review_exists,
    latest_review_date,
    latest_draft,
    business_for_phone,
    get_or_create_context,
    log_notification,
    inbound_message_seen,
    update_delivery_status,
    mark_reauth_required,
)  # noqa: F401
