"""Reply keyword grammar."""

import pytest

from notifyhub.services.inbound.commands import CANCEL, CONFIRM, HELP, RESCHEDULE, match_command, normalize_reply


@pytest.mark.parametrize(
    "text, expected",
    [
        ("  CANCEL ", CANCEL),
        ("Yes!", CONFIRM),
        ("sim, confirmo", CONFIRM),
        ("cancelar", CANCEL),
        ("No problem, see you tomorrow", None),
        ("no worries", None),
        ("Não", None),
        ("STOP", None),
        ("reagendar por favor", RESCHEDULE),
        ("?", HELP),
        ("Menu", HELP),
        ("what time is it", None),
        ("", None),
        (None, None),
    ],
)
def test_match_command(text, expected):
    assert match_command(text) == expected


def test_normalize_reply_keeps_first_word_only():
    assert normalize_reply("  Confirmed.  see you ") == "confirmed"
    assert normalize_reply("ÁJUDA") == "ajuda"
