"""Payment session state machine transitions enforced by the orchestrator."""

from ilppay.common.errors import InvalidStateError

PENDING_AUTHORIZATION = "PENDING_AUTHORIZATION"
COMPLETED = "COMPLETED"
CANCELLED = "CANCELLED"
ERRORED = "ERRORED"

# Sessions only exist once initiation succeeded, so there is no stored idle state.
ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    PENDING_AUTHORIZATION: {COMPLETED, CANCELLED, ERRORED},
    COMPLETED: set(),
    CANCELLED: set(),
    ERRORED: set(),
}

SESSION_STATUSES = tuple(ALLOWED_TRANSITIONS)


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidStateError(f"Invalid transition: {current} -> {new}")


def is_terminal(status: str) -> bool:
    return not ALLOWED_TRANSITIONS.get(status)
