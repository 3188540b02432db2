"""Asynchronous backend ("vultisig") that hands intents to an offline signer."""

from __future__ import annotations

from datetime import datetime
from typing import Callable

from ..types import BackendName, TransferIntent, utc_now
from .base import ExecutionOutcome
from .queue import OutboxEnvelope, SubmissionQueue


class OutboxBackend:
    """Queues an envelope and leaves the ledger status for the outbox worker."""

    name = BackendName.VULTISIG

    def __init__(
        self,
        queue: SubmissionQueue,
        *,
        vault_policy_profile: str = "secure",
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self.queue = queue
        self.vault_policy_profile = vault_policy_profile
        self._now = now or utc_now

    def submit(self, intent: TransferIntent) -> ExecutionOutcome:
        envelope = OutboxEnvelope(
            submitted_at=self._now(),
            intent=intent,
            vault_policy_profile=self.vault_policy_profile,
        )
        item = self.queue.enqueue(envelope)
        return ExecutionOutcome(
            status="queued",
            transaction_ref=str(item.path),
            message=f"Queued for signer processing: {item.path}",
        )
