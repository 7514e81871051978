"""Citizen request status state machine.

    new -> in_progress -> waiting <-> in_progress -> completed
    rejected is reachable from any non-terminal state.

completed and rejected are terminal. There is no reopen transition.
"""

from __future__ import annotations

from enum import Enum

from ..errors import ValidationError


class RequestStatus(str, Enum):
    """Citizen request states."""

    NEW = "new"
    IN_PROGRESS = "in_progress"
    WAITING = "waiting"
    COMPLETED = "completed"
    REJECTED = "rejected"


TERMINAL_STATUSES: frozenset[RequestStatus] = frozenset(
    {RequestStatus.COMPLETED, RequestStatus.REJECTED}
)

TRANSITIONS: dict[RequestStatus, frozenset[RequestStatus]] = {
    RequestStatus.NEW: frozenset({RequestStatus.IN_PROGRESS, RequestStatus.REJECTED}),
    RequestStatus.IN_PROGRESS: frozenset(
        {RequestStatus.WAITING, RequestStatus.COMPLETED, RequestStatus.REJECTED}
    ),
    RequestStatus.WAITING: frozenset({RequestStatus.IN_PROGRESS, RequestStatus.REJECTED}),
    RequestStatus.COMPLETED: frozenset(),
    RequestStatus.REJECTED: frozenset(),
}


def parse_status(value: str | RequestStatus) -> RequestStatus:
    """Convert a raw value to a RequestStatus.

    Raises:
        ValidationError: If the value is not a known status
    """
    try:
        return RequestStatus(value)
    except ValueError:
        allowed = ", ".join(s.value for s in RequestStatus)
        raise ValidationError(
            f"Unknown status '{value}' (expected one of: {allowed})", field="status"
        ) from None


def is_terminal(status: str | RequestStatus) -> bool:
    return parse_status(status) in TERMINAL_STATUSES


def can_transition(old: str | RequestStatus, new: str | RequestStatus) -> bool:
    """Check a transition without raising. Same-status is allowed (no-op)."""
    old_status, new_status = parse_status(old), parse_status(new)
    return old_status == new_status or new_status in TRANSITIONS[old_status]


def validate_transition(old: str | RequestStatus, new: str | RequestStatus) -> RequestStatus:
    """Validate a status change.

    Returns:
        The target status

    Raises:
        ValidationError: If the transition is not allowed
    """
    old_status, new_status = parse_status(old), parse_status(new)
    if old_status == new_status:
        return new_status

    if new_status not in TRANSITIONS[old_status]:
        if old_status in TERMINAL_STATUSES:
            reason = f"'{old_status.value}' is terminal"
        else:
            allowed = ", ".join(sorted(s.value for s in TRANSITIONS[old_status]))
            reason = f"allowed from '{old_status.value}': {allowed}"
        raise ValidationError(
            f"Invalid status transition {old_status.value} -> {new_status.value} ({reason})",
            field="status",
        )
    return new_status


__all__ = [
    "RequestStatus",
    "TERMINAL_STATUSES",
    "TRANSITIONS",
    "parse_status",
    "is_terminal",
    "can_transition",
    "validate_transition",
]
