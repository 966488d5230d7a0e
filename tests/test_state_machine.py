import pytest

from followup.models import ReminderStatus
from followup.services.errors import InvalidTransition
from followup.services.state_machine import ACTIVE_STATUSES, ensure_forward, is_forward

S = ReminderStatus


@pytest.mark.parametrize(
    "current, target",
    [
        (S.PENDING, S.SENT),
        (S.DISPATCHING, S.SENT),
        (S.SENT, S.READ),
        (S.READ, S.RESPONDED),
        (S.PENDING, S.FAILED),
        (S.DELIVERED, S.FAILED),
    ],
)
def test_forward_steps_are_allowed(current, target):
    assert is_forward(current, target)


@pytest.mark.parametrize(
    "current, target",
    [
        (S.READ, S.DELIVERED),
        (S.SENT, S.PENDING),
        (S.READ, S.FAILED),
        (S.FAILED, S.SENT),
        (S.RESPONDED, S.FAILED),
    ],
)
def test_backward_and_terminal_moves_raise(current, target):
    with pytest.raises(InvalidTransition):
        ensure_forward(current, target)


def test_active_statuses_exclude_terminal():
    assert S.FAILED not in ACTIVE_STATUSES
    assert S.RESPONDED not in ACTIVE_STATUSES
    assert S.DISPATCHING in ACTIVE_STATUSES
