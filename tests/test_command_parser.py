import pytest

from app.services.command_parser import CommandType, parse_command
from db.models import ConversationState


@pytest.mark.parametrize("body, expected", [
    ("APPROVE", CommandType.APPROVE),
    ("  approve  ", CommandType.APPROVE),
    ("Edit", CommandType.EDIT),
    ("ignore", CommandType.IGNORE),
    ("PAUSE", CommandType.PAUSE),
    ("resume", CommandType.RESUME),
    ("status", CommandType.STATUS),
    ("billing", CommandType.BILLING),
    ("cancel", CommandType.CANCEL),
    ("help", CommandType.HELP),
    ("STOP", CommandType.STOP),
])
def test_exact_commands_are_case_insensitive(body, expected):
    assert parse_command(body).type is expected


@pytest.mark.parametrize("body, expected", [
    ("aprove", CommandType.APPROVE),
    ("IGNOR", CommandType.IGNORE),
    ("stauts", CommandType.STATUS),
    ("hlep", CommandType.HELP),
])
def test_common_typos(body, expected):
    assert parse_command(body).type is expected


def test_yes_outside_a_confirmation_is_unknown():
    assert parse_command("YES").type is CommandType.UNKNOWN
    assert parse_command("what does this do?").type is CommandType.UNKNOWN
    assert parse_command("").type is CommandType.UNKNOWN


def test_custom_reply_state_takes_free_text():
    parsed = parse_command("  Thanks, come back soon!  ", ConversationState.AWAITING_CUSTOM_REPLY)
    assert parsed.type is CommandType.CUSTOM_REPLY
    assert parsed.body == "Thanks, come back soon!"
    # yes/no are ordinary reply text here
    assert parse_command("yes", ConversationState.AWAITING_CUSTOM_REPLY).type is CommandType.CUSTOM_REPLY


def test_exact_command_overrides_custom_reply_state():
    assert parse_command("HELP", ConversationState.AWAITING_CUSTOM_REPLY).type is CommandType.HELP
    assert parse_command("ignore", ConversationState.AWAITING_CUSTOM_REPLY).type is CommandType.IGNORE


@pytest.mark.parametrize("body, expected", [
    ("YES", CommandType.CANCEL_CONFIRM),
    ("y", CommandType.CANCEL_CONFIRM),
    ("yeah", CommandType.CANCEL_CONFIRM),
    ("NO", CommandType.CANCEL_DENY),
    ("maybe later", CommandType.CANCEL_DENY),
    ("APPROVE", CommandType.CANCEL_DENY),
])
def test_cancel_confirmation(body, expected):
    assert parse_command(body, ConversationState.AWAITING_CANCEL_CONFIRM).type is expected


def test_competitor_commands():
    assert parse_command("COMPETITOR").type is CommandType.COMPETITOR_SCAN
    assert parse_command("competitor scan").type is CommandType.COMPETITOR_SCAN
    assert parse_command("Competitor List").type is CommandType.COMPETITOR_LIST

    add = parse_command("COMPETITOR ADD Luigi's Trattoria")
    assert add.type is CommandType.COMPETITOR_ADD
    assert add.argument == "Luigi's Trattoria"
    assert parse_command("COMPETITOR ADD").argument is None

    remove = parse_command("competitor remove 2")
    assert remove.type is CommandType.COMPETITOR_REMOVE
    assert remove.argument == "2"
    assert parse_command("COMPETITOR DELETE Harbor").argument == "Harbor"
    assert parse_command("COMPETITOR dance").type is CommandType.UNKNOWN


def test_name_after_scan_becomes_competitor_add():
    parsed = parse_command("Harbor Grill", ConversationState.AWAITING_COMPETITOR_ADD)
    assert parsed.type is CommandType.COMPETITOR_ADD
    assert parsed.argument == "Harbor Grill"
    assert parse_command("STATUS", ConversationState.AWAITING_COMPETITOR_ADD).type is CommandType.STATUS
    assert parse_command("no", ConversationState.AWAITING_COMPETITOR_ADD).type is CommandType.UNKNOWN
