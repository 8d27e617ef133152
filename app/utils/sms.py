from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Protocol

import telnyx

from config import settings

_LOGGER = logging.getLogger(__name__)


class SmsGateway(Protocol):
    from_number: str

    async def send(self, to: str, body: str) -> str:
        """Send ``body`` to ``to`` and return the gateway message id."""
        ...


class TelnyxSmsGateway:
    """Outbound SMS through Telnyx; logs instead of sending when unconfigured."""

    def __init__(self, api_key: str | None = None, from_number: str | None = None):
        self.api_key = api_key if api_key is not None else settings.TELNYX_API_KEY
        self.from_number = from_number if from_number is not None else settings.TELNYX_FROM_NUMBER
        if self.api_key:
            telnyx.api_key = self.api_key

    @property
    def dev_mode(self) -> bool:
        return not self.api_key or not self.from_number

    async def send(self, to: str, body: str) -> str:
        if self.dev_mode:
            _LOGGER.info("[SMS] DEV mode: would send to %s: %s", to, body)
            return f"dev-{uuid.uuid4()}"
        message = await asyncio.to_thread(
            telnyx.Message.create, from_=self.from_number, to=to, text=body
        )
        return message.id
