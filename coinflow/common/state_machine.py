"""Lifecycle transition tables for show sessions and billable sessions."""

from coinflow.common.errors import InvalidStateTransition

SHOW_TRANSITIONS: dict[str, set[str]] = {
    "scheduled": {"live"},
    "live": {"ended"},
    "ended": set(),
}

BILLABLE_SESSION_TRANSITIONS: dict[str, set[str]] = {
    "active": {"finalized"},
    "finalized": set(),
}


def validate_transition(current: str, new: str, transitions: dict[str, set[str]] = SHOW_TRANSITIONS) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in transitions.get(current, set()):
        raise InvalidStateTransition(current, new)
