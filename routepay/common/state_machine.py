"""Transaction state machine transitions enforced by orchestrator and webhooks."""

from routepay.common.errors import InvalidTransition

PENDING = "pending"
PROCESSING = "processing"
SUCCESS = "success"
FAILED = "failed"
REFUNDED = "refunded"
CANCELLED = "cancelled"

TERMINAL_STATUSES = frozenset({SUCCESS, FAILED, REFUNDED, CANCELLED})

# `cancelled` is reachable from every non-cancelled state through administrative
# action only; retries never move a transaction back to `pending`.
ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    PENDING: {PROCESSING, CANCELLED},
    PROCESSING: {SUCCESS, FAILED, CANCELLED},
    SUCCESS: {REFUNDED, CANCELLED},
    FAILED: {CANCELLED},
    REFUNDED: {CANCELLED},
    CANCELLED: set(),
}


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidTransition(f"Invalid transition: {current} -> {new}")


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES
