"""Wire the services with their production collaborators.

The API process, Celery tasks and the cron script all build their services
here; tests construct the classes directly with fakes.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import db
from app.services.billing import StripeBillingGateway
from app.services.competitors import GooglePlacesDirectory
from app.services.conversation import ConversationStateMachine
from app.services.ingestion import IngestionCoordinator
from app.services.notifications import NotificationDispatcher
from app.services.platforms import default_registry
from app.services.reply_generator import default_reply_generator
from app.services.response_poster import ResponsePoster
from app.services.retry_scheduler import RetryScheduler
from app.utils.sms import TelnyxSmsGateway


@dataclass
class Services:
    sessions: async_sessionmaker[AsyncSession]
    dispatcher: NotificationDispatcher
    conversation: ConversationStateMachine
    ingestion: IngestionCoordinator
    retry: RetryScheduler
    poster: ResponsePoster


def build_services(sessions: async_sessionmaker[AsyncSession] | None = None) -> Services:
    sessions = sessions or db.get_session_maker()
    gateway = TelnyxSmsGateway()
    platforms = default_registry()
    dispatcher = NotificationDispatcher(sessions, gateway)
    return Services(
        sessions=sessions,
        dispatcher=dispatcher,
        conversation=ConversationStateMachine(
            sessions,
            billing=StripeBillingGateway(),
            competitors=GooglePlacesDirectory(),
            own_number=gateway.from_number,
        ),
        ingestion=IngestionCoordinator(sessions, platforms, default_reply_generator(), dispatcher),
        retry=RetryScheduler(sessions, dispatcher),
        poster=ResponsePoster(sessions, platforms),
    )


SWEEPS = ("poll", "retry", "post")


async def run_sweep(name: str):
    """Run one sweep against a fresh engine and release it afterwards.

    Celery tasks and the cron script each drive this from ``asyncio.run``,
    so the connection pool must not outlive the event loop.
    """
    services = build_services()
    try:
        if name == "poll":
            return await services.ingestion.run_once()
        if name == "retry":
            return await services.retry.run_once()
        if name == "post":
            return await services.poster.run_once()
        raise ValueError(f"unknown sweep {name!r}")
    finally:
        await db.dispose_engine()
