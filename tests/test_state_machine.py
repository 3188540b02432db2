from __future__ import annotations

import pytest

from treasuryagent.state_machine import TRANSITIONS, can_transition
from treasuryagent.types import TERMINAL_STATUSES, IntentStatus


def test_terminal_states_have_no_outgoing_edges() -> None:
    for status in TERMINAL_STATUSES:
        assert TRANSITIONS[status] == frozenset()


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (IntentStatus.PENDING_APPROVAL, IntentStatus.APPROVED),
        (IntentStatus.PENDING_APPROVAL, IntentStatus.REJECTED),
        (IntentStatus.APPROVED, IntentStatus.SUBMITTED),
        (IntentStatus.APPROVED, IntentStatus.EXECUTED),
        (IntentStatus.APPROVED, IntentStatus.FAILED),
        (IntentStatus.SUBMITTED, IntentStatus.SUBMITTED),
        (IntentStatus.SUBMITTED, IntentStatus.EXECUTED),
        (IntentStatus.SUBMITTED, IntentStatus.FAILED),
    ],
)
def test_legal_edges(current: IntentStatus, target: IntentStatus) -> None:
    assert can_transition(current, target)


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (IntentStatus.REJECTED, IntentStatus.APPROVED),
        (IntentStatus.APPROVED, IntentStatus.REJECTED),
        (IntentStatus.APPROVED, IntentStatus.APPROVED),
        (IntentStatus.PENDING_APPROVAL, IntentStatus.EXECUTED),
        (IntentStatus.SUBMITTED, IntentStatus.APPROVED),
        (IntentStatus.EXECUTED, IntentStatus.FAILED),
    ],
)
def test_illegal_edges(current: IntentStatus, target: IntentStatus) -> None:
    assert not can_transition(current, target)


def test_every_status_is_covered() -> None:
    assert set(TRANSITIONS) == set(IntentStatus)
