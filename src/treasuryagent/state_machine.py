"""Legal status transitions for transfer intents.

pending_approval -> approved | rejected
approved         -> submitted | executed | failed
submitted        -> submitted | executed | failed

rejected, executed and failed are terminal. submitted -> submitted lets a
later confirmation refresh the execution record without changing status.
"""

from __future__ import annotations

from .errors import IllegalTransitionError, TerminalStateError
from .types import IntentStatus, TransferIntent

TRANSITIONS: dict[IntentStatus, frozenset[IntentStatus]] = {
    IntentStatus.PENDING_APPROVAL: frozenset({IntentStatus.APPROVED, IntentStatus.REJECTED}),
    IntentStatus.APPROVED: frozenset(
        {IntentStatus.SUBMITTED, IntentStatus.EXECUTED, IntentStatus.FAILED}
    ),
    IntentStatus.SUBMITTED: frozenset(
        {IntentStatus.SUBMITTED, IntentStatus.EXECUTED, IntentStatus.FAILED}
    ),
    IntentStatus.REJECTED: frozenset(),
    IntentStatus.EXECUTED: frozenset(),
    IntentStatus.FAILED: frozenset(),
}


def can_transition(current: IntentStatus, target: IntentStatus) -> bool:
    return target in TRANSITIONS[current]


def check_transition(intent: TransferIntent, target: IntentStatus) -> None:
    """Raise unless ``intent`` may move to ``target``.

    TerminalStateError is raised for terminal intents so the command surface
    can report the existing status instead of failing.
    """
    current = intent.status
    if can_transition(current, target):
        return
    message = (
        f"invalid intent state transition for {intent.id}: "
        f"{current.value} -> {target.value}"
    )
    if current.is_terminal:
        raise TerminalStateError(message, intent)
    raise IllegalTransitionError(message, intent)
