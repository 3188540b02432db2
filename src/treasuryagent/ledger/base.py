from __future__ import annotations

from typing import Protocol

from ..types import ChildWallet, ExecutionRecord, IntentEvent, IntentStatus, TransferIntent


class IntentLedger(Protocol):
    """Durable, single-writer store of transfer intents.

    Implementations must:
    - evaluate policy inside the same write transaction that stores the intent
    - reject status changes that are not edges of the state machine
    - apply child funding at most once per intent
    """

    def create(
        self,
        *,
        source: str,
        requested_by: str,
        to_address: str,
        amount_cents: int,
        reason: str | None = None,
        child_id: str | None = None,
        balance_cents: int | None = None,
    ) -> TransferIntent:
        ...

    def get(self, intent_id: str) -> TransferIntent:
        ...

    def find(self, intent_id: str) -> TransferIntent | None:
        ...

    def list(self, *, status: IntentStatus | None = None, limit: int = 50) -> list[TransferIntent]:
        ...

    def approve(self, intent_id: str, *, approved_by: str, note: str | None = None) -> TransferIntent:
        ...

    def reject(self, intent_id: str, *, rejected_by: str, reason: str) -> TransferIntent:
        ...

    def set_execution(
        self, intent_id: str, *, status: IntentStatus, execution: ExecutionRecord
    ) -> TransferIntent:
        ...

    def recent_executed_spend(self, *, window_hours: int = 24) -> int:
        ...

    def history(self, intent_id: str) -> list[IntentEvent]:
        ...

    def add_child(self, child_id: str, *, address: str | None = None) -> ChildWallet:
        ...

    def get_child(self, child_id: str) -> ChildWallet:
        ...

    def set_child_address(self, child_id: str, address: str) -> ChildWallet:
        ...
