"""Billing collaborator used by the BILLING and CANCEL commands."""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

import stripe

from app.services.errors import BillingError
from config import settings

_LOGGER = logging.getLogger(__name__)


class BillingGateway(Protocol):
    async def create_portal_session(self, customer_id: str) -> str:
        """Return a short-lived billing portal URL."""
        ...

    async def cancel_subscription(self, subscription_id: str) -> None:
        ...


class StripeBillingGateway:
    def __init__(self, api_key: str | None = None, return_url: str | None = None):
        self.api_key = api_key if api_key is not None else settings.STRIPE_SECRET_KEY
        self.return_url = return_url or settings.BILLING_RETURN_URL

    def _require_key(self) -> None:
        if not self.api_key:
            raise BillingError("STRIPE_SECRET_KEY not configured")
        stripe.api_key = self.api_key

    async def create_portal_session(self, customer_id: str) -> str:
        self._require_key()
        try:
            session = await asyncio.to_thread(
                stripe.billing_portal.Session.create,
                customer=customer_id,
                return_url=self.return_url,
            )
        except stripe.error.StripeError as exc:
            raise BillingError(f"portal session failed: {exc}") from exc
        return session.url

    async def cancel_subscription(self, subscription_id: str) -> None:
        self._require_key()
        try:
            await asyncio.to_thread(stripe.Subscription.delete, subscription_id)
        except stripe.error.StripeError as exc:
            raise BillingError(f"subscription cancel failed: {exc}") from exc
        _LOGGER.info("Stripe subscription %s canceled", subscription_id)
