"""Order state machine and the canonical Status Resolver.

`resolve_status` is the only place that turns gateway payment attempts into an
order status. The webhook path, the status-poll path and the reconciliation
loop all call it, so they cannot disagree.
"""

from typing import Iterable, Protocol


CREATED = "CREATED"
PENDING = "PENDING"
SUCCESS = "SUCCESS"
FAILED = "FAILED"

ORDER_STATUSES = (CREATED, PENDING, SUCCESS, FAILED)
ATTEMPT_STATUSES = (SUCCESS, PENDING, FAILED)
TERMINAL_STATES = frozenset({SUCCESS, FAILED})

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    CREATED: {PENDING, SUCCESS, FAILED},
    PENDING: {SUCCESS, FAILED},
    SUCCESS: set(),
    FAILED: set(),
}

# What the customer is told for each canonical status.
CUSTOMER_MESSAGES: dict[str, str] = {
    CREATED: "needs payment",
    PENDING: "payment pending",
    SUCCESS: "payment succeeded",
    FAILED: "payment failed - retry",
}


class HasAttemptStatus(Protocol):
    status: str


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATES


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")


def resolve_status(current: str, attempts: Iterable[HasAttemptStatus]) -> str:
    """Compute the canonical order status from `current` and known attempts.

    Terminal statuses are sticky. Otherwise any SUCCESS attempt wins, then any
    PENDING attempt, then FAILED when every known attempt failed. With no
    attempts the order keeps its current status, so PENDING never regresses
    to CREATED.
    """

    if current not in ALLOWED_TRANSITIONS:
        raise ValueError(f"Unknown order status: {current}")
    if current in TERMINAL_STATES:
        return current

    statuses = [attempt.status for attempt in attempts]
    unknown = set(statuses) - set(ATTEMPT_STATUSES)
    if unknown:
        raise ValueError(f"Unknown attempt status: {sorted(unknown)}")

    if SUCCESS in statuses:
        return SUCCESS
    if PENDING in statuses:
        return PENDING
    if statuses:
        return FAILED
    return current
