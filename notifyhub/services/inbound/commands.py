"""Reply command grammar."""

import unicodedata


CONFIRM = "confirm"
CANCEL = "cancel"
RESCHEDULE = "reschedule"
HELP = "help"

KEYWORDS: dict[str, frozenset[str]] = {
    CONFIRM: frozenset({"yes", "y", "confirm", "confirmed", "ok", "sim", "confirmar"}),
    CANCEL: frozenset({"cancel", "cancelar"}),
    RESCHEDULE: frozenset({"reschedule", "reagendar", "remarcar"}),
    HELP: frozenset({"help", "menu", "ajuda", "?"}),
}


def normalize_reply(text: str | None) -> str:
    """Trim, case-fold and strip accents; keep only the first word."""

    if not text:
        return ""
    folded = unicodedata.normalize("NFKD", text.strip().casefold())
    stripped = "".join(char for char in folded if not unicodedata.combining(char))
    words = stripped.split()
    if not words:
        return ""
    first = words[0]
    return first if first == "?" else first.strip(".,!?;:")


def match_command(text: str | None) -> str | None:
    """Return the command a reply maps to, or None for free text."""

    word = normalize_reply(text)
    for command, keywords in KEYWORDS.items():
        if word in keywords:
            return command
    return None
