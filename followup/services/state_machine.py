"""Forward-only reminder lifecycle.

    pending -> sent -> delivered -> read -> responded
    failed is reachable from pending, sent and delivered.

``dispatching`` is the claim marker a worker holds while calling a channel
adapter; it ranks with ``pending``. Supersession (re-planning or
cancellation) may fail any non-terminal reminder.
"""

from __future__ import annotations

from typing import Final

from followup.models import ReminderStatus
from followup.services.errors import InvalidTransition

_RANK: Final[dict[ReminderStatus, int]] = {
    ReminderStatus.PENDING: 0,
    ReminderStatus.DISPATCHING: 0,
    ReminderStatus.SENT: 1,
    ReminderStatus.DELIVERED: 2,
    ReminderStatus.READ: 3,
    ReminderStatus.RESPONDED: 4,
}

TERMINAL_STATUSES: Final = frozenset({ReminderStatus.RESPONDED, ReminderStatus.FAILED})
ACTIVE_STATUSES: Final = frozenset(set(ReminderStatus) - TERMINAL_STATUSES)
FAILABLE_STATUSES: Final = frozenset(
    {
        ReminderStatus.PENDING,
        ReminderStatus.DISPATCHING,
        ReminderStatus.SENT,
        ReminderStatus.DELIVERED,
    }
)

# Timestamp column stamped when a reminder enters each state.
TIMESTAMP_FIELDS: Final[dict[ReminderStatus, str]] = {
    ReminderStatus.SENT: "sent_time",
    ReminderStatus.DELIVERED: "delivered_time",
    ReminderStatus.READ: "read_time",
    ReminderStatus.RESPONDED: "response_time",
}


def is_forward(current: ReminderStatus, target: ReminderStatus) -> bool:
    """Return whether moving from ``current`` to ``target`` is a legal forward step."""

    if current in TERMINAL_STATUSES:
        return False
    if target == ReminderStatus.FAILED:
        return current in FAILABLE_STATUSES
    if target in (ReminderStatus.PENDING, ReminderStatus.DISPATCHING):
        return False
    return _RANK[target] > _RANK[current]


def ensure_forward(current: ReminderStatus, target: ReminderStatus) -> None:
    if not is_forward(current, target):
        raise InvalidTransition(f"{current.value} -> {target.value} is not allowed")
