from __future__ import annotations

from typing import Literal, Protocol

from pydantic import BaseModel

from ..types import BackendName, TransferIntent


class ExecutionOutcome(BaseModel):
    """What a backend did with an approved intent.

    ``queued`` means the intent was handed to an out-of-process signer and the
    ledger status is left for the worker to advance.
    """

    model_config = {"frozen": True}

    status: Literal["queued", "submitted", "executed"]
    transaction_ref: str | None = None
    message: str


class ExecutionBackend(Protocol):
    """Executes approved intents. Implementations never retry."""

    name: BackendName

    def submit(self, intent: TransferIntent) -> ExecutionOutcome:
        """Hand ``intent`` to the transfer mechanism; raise BackendError on failure."""
        ...


class BalanceProvider(Protocol):
    def balance_cents(self) -> int:
        ...
