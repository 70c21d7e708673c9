"""Notification job state machine and delivery status ordering."""

from notifyhub.common.errors import InvalidTransitionError


CHANNELS = ("whatsapp", "sms", "email")
NOTIFICATION_TYPES = ("confirmation", "reminder", "cancellation", "reschedule", "custom")
ERROR_KINDS = ("TRANSIENT", "PERMANENT", "UNAUTHENTICATED", "RATE_LIMITED")
RECORD_SOURCES = ("DISPATCHER", "PROVIDER_CALLBACK", "OPERATOR")

# Jobs in these states block a duplicate enqueue for the same dedupe key.
# SENT is not terminal until a receipt moves it on.
ACTIVE_STATUSES = ("PENDING", "IN_FLIGHT", "FAILED", "SENT")
TERMINAL_STATUSES = ("DELIVERED", "READ", "DEAD")
SUCCESS_STATUSES = ("SENT", "DELIVERED", "READ")

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "PENDING": {"IN_FLIGHT", "DEAD"},
    "IN_FLIGHT": {"SENT", "FAILED", "DEAD", "PENDING"},
    "FAILED": {"PENDING", "DEAD"},
    "SENT": {"DELIVERED", "READ", "DEAD"},
    "DELIVERED": {"READ"},
    "READ": set(),
    "DEAD": {"PENDING"},
}

# Lease order lanes; lower is served first.
PRIORITY_HIGH = 0
PRIORITY_NORMAL = 1
PRIORITY_BY_TYPE: dict[str, int] = {
    "confirmation": PRIORITY_HIGH,
    "cancellation": PRIORITY_HIGH,
    "reschedule": PRIORITY_HIGH,
    "reminder": PRIORITY_NORMAL,
    "custom": PRIORITY_NORMAL,
}

# Provider callbacks may arrive in any order; the job only ever moves forward.
DELIVERY_RANK: dict[str, int] = {"SENT": 1, "DELIVERED": 2, "READ": 3}


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidTransitionError(f"Invalid transition: {current} -> {new}")


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def delivery_rank(status: str) -> int:
    return DELIVERY_RANK.get(status, 0)


def priority_for(notification_type: str) -> int:
    return PRIORITY_BY_TYPE.get(notification_type, PRIORITY_NORMAL)
