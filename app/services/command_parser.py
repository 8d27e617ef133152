"""
Inbound SMS command parsing.

Case-insensitive, whitespace-trimmed, tolerant of common typos. Parsing is
state-aware: the same text means different things while the owner is typing
a custom reply or confirming a cancellation.
"""

from __future__ import annotations

import enum
import re
from typing import Optional

from pydantic import BaseModel

from db.models import ConversationState


class CommandType(str, enum.Enum):
    APPROVE = "APPROVE"
    EDIT = "EDIT"
    IGNORE = "IGNORE"
    PAUSE = "PAUSE"
    RESUME = "RESUME"
    STATUS = "STATUS"
    BILLING = "BILLING"
    CANCEL = "CANCEL"
    HELP = "HELP"
    STOP = "STOP"
    CANCEL_CONFIRM = "CANCEL_CONFIRM"
    CANCEL_DENY = "CANCEL_DENY"
    CUSTOM_REPLY = "CUSTOM_REPLY"
    COMPETITOR_SCAN = "COMPETITOR_SCAN"
    COMPETITOR_ADD = "COMPETITOR_ADD"
    COMPETITOR_LIST = "COMPETITOR_LIST"
    COMPETITOR_REMOVE = "COMPETITOR_REMOVE"
    UNKNOWN = "UNKNOWN"


class ParsedCommand(BaseModel):
    type: CommandType
    raw: str
    body: Optional[str] = None      # CUSTOM_REPLY text
    argument: Optional[str] = None  # COMPETITOR ADD / REMOVE target


EXACT_COMMANDS: dict[str, CommandType] = {
    "APPROVE": CommandType.APPROVE,
    "EDIT": CommandType.EDIT,
    "IGNORE": CommandType.IGNORE,
    "PAUSE": CommandType.PAUSE,
    "RESUME": CommandType.RESUME,
    "STATUS": CommandType.STATUS,
    "BILLING": CommandType.BILLING,
    "CANCEL": CommandType.CANCEL,
    "HELP": CommandType.HELP,
    "STOP": CommandType.STOP,
}

TYPO_COMMANDS: dict[str, CommandType] = {
    "APROVE": CommandType.APPROVE,
    "APPROV": CommandType.APPROVE,
    "APRROVE": CommandType.APPROVE,
    "APORVE": CommandType.APPROVE,
    "APPORVE": CommandType.APPROVE,
    "EDTI": CommandType.EDIT,
    "EDT": CommandType.EDIT,
    "IGNOR": CommandType.IGNORE,
    "INGNORE": CommandType.IGNORE,
    "IGONRE": CommandType.IGNORE,
    "PAUS": CommandType.PAUSE,
    "PASUE": CommandType.PAUSE,
    "RESUM": CommandType.RESUME,
    "RSUME": CommandType.RESUME,
    "STAUTS": CommandType.STATUS,
    "STATS": CommandType.STATUS,
    "STAUS": CommandType.STATUS,
    "BILING": CommandType.BILLING,
    "BILLIN": CommandType.BILLING,
    "CANCLE": CommandType.CANCEL,
    "CANEL": CommandType.CANCEL,
    "HLEP": CommandType.HELP,
    "HEPL": CommandType.HELP,
    "STPO": CommandType.STOP,
    "SOTP": CommandType.STOP,
}

YES_WORDS = frozenset({"YES", "Y", "YEP", "YEAH", "YA", "YUP"})
NO_WORDS = frozenset({"NO", "N", "NOPE", "NAH"})

_COMPETITOR = "COMPETITOR"
_REMOVE_RE = re.compile(r"^(REMOVE|DELETE)\s*", re.IGNORECASE)


def _match_command(normalized: str) -> Optional[CommandType]:
    return EXACT_COMMANDS.get(normalized) or TYPO_COMMANDS.get(normalized)


def _parse_competitor(raw: str) -> ParsedCommand:
    rest = raw[len(_COMPETITOR):].strip()
    rest_upper = rest.upper()
    if rest_upper in ("", "SCAN"):
        return ParsedCommand(type=CommandType.COMPETITOR_SCAN, raw=raw)
    if rest_upper == "LIST":
        return ParsedCommand(type=CommandType.COMPETITOR_LIST, raw=raw)
    if rest_upper.startswith("ADD"):
        name = rest[3:].strip()
        return ParsedCommand(type=CommandType.COMPETITOR_ADD, raw=raw, argument=name or None)
    if rest_upper.startswith(("REMOVE", "DELETE")):
        identifier = _REMOVE_RE.sub("", rest).strip()
        return ParsedCommand(type=CommandType.COMPETITOR_REMOVE, raw=raw, argument=identifier or None)
    return ParsedCommand(type=CommandType.UNKNOWN, raw=raw)


def parse_command(body: str, state: ConversationState = ConversationState.IDLE) -> ParsedCommand:
    """Parse an inbound SMS body against the sender's conversation state."""
    raw = (body or "").strip()
    normalized = " ".join(raw.upper().split())

    if state is ConversationState.AWAITING_CUSTOM_REPLY:
        # only an exact command overrides; YES/NO are reply text here
        override = EXACT_COMMANDS.get(normalized)
        if override:
            return ParsedCommand(type=override, raw=raw)
        return ParsedCommand(type=CommandType.CUSTOM_REPLY, raw=raw, body=raw)

    if state is ConversationState.AWAITING_CANCEL_CONFIRM:
        if normalized in YES_WORDS:
            return ParsedCommand(type=CommandType.CANCEL_CONFIRM, raw=raw)
        # anything that is not an explicit yes keeps the account
        return ParsedCommand(type=CommandType.CANCEL_DENY, raw=raw)

    if normalized.startswith(_COMPETITOR):
        return _parse_competitor(raw)

    command = _match_command(normalized)
    if command:
        return ParsedCommand(type=command, raw=raw)

    if state is ConversationState.AWAITING_COMPETITOR_ADD and raw and normalized not in YES_WORDS | NO_WORDS:
        return ParsedCommand(type=CommandType.COMPETITOR_ADD, raw=raw, argument=raw)

    return ParsedCommand(type=CommandType.UNKNOWN, raw=raw)
