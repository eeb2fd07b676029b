"""
Canonical call status and the transition rules applied by webhook events.

Out-of-order delivery is expected: a delayed RINGING may arrive after
IN_PROGRESS, and a provider may redeliver the same terminal event. The
ledger always records the event; ``resolve_transition`` decides whether the
Call row itself changes.
"""

from enum import Enum


class CallStatus(str, Enum):
    """Normalized call status shared by every provider."""

    INITIATED = "INITIATED"
    QUEUED = "QUEUED"
    RINGING = "RINGING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    UNKNOWN = "UNKNOWN"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class SessionStatus(str, Enum):
    """Demo session lifecycle."""

    DRAFT = "DRAFT"
    READY = "READY"
    CALLING = "CALLING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"


class Transition(str, Enum):
    """Outcome of applying an incoming status to a Call."""

    APPLY = "apply"
    REFRESH = "refresh"
    IGNORE = "ignore"


TERMINAL_STATUSES = frozenset({CallStatus.COMPLETED, CallStatus.FAILED})

_PROGRESS_RANK: dict[CallStatus, int] = {
    CallStatus.QUEUED: 0,
    CallStatus.INITIATED: 0,
    CallStatus.RINGING: 1,
    CallStatus.IN_PROGRESS: 2,
    CallStatus.COMPLETED: 3,
}


def resolve_transition(current: CallStatus, incoming: CallStatus) -> Transition:
    """Decide how ``incoming`` affects a Call currently in ``current``.

    - UNKNOWN never moves a Call.
    - Terminal states only accept a redelivery of the same status (REFRESH).
    - FAILED is reachable from every non-terminal state.
    - Otherwise the status may only move forward along
      QUEUED/INITIATED -> RINGING -> IN_PROGRESS -> COMPLETED.
    """
    if incoming is CallStatus.UNKNOWN:
        return Transition.IGNORE

    if current in TERMINAL_STATUSES:
        return Transition.REFRESH if incoming is current else Transition.IGNORE

    if incoming is CallStatus.FAILED:
        return Transition.APPLY

    current_rank = _PROGRESS_RANK.get(current, 0)
    if _PROGRESS_RANK[incoming] < current_rank:
        return Transition.IGNORE
    return Transition.APPLY


def parse_status(value: str | None) -> CallStatus:
    """Coerce a stored or external value into CallStatus (UNKNOWN if unrecognised)."""
    if not value:
        return CallStatus.UNKNOWN
    try:
        return CallStatus(value.strip().upper().replace("-", "_"))
    except ValueError:
        return CallStatus.UNKNOWN
