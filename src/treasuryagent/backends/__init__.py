"""Execution backends and the factory that picks one from configuration."""

from __future__ import annotations

from typing import TYPE_CHECKING

from ..types import BackendName
from .base import BalanceProvider, ExecutionBackend, ExecutionOutcome
from .direct import DirectTransferBackend
from .outbox import OutboxBackend
from .queue import (
    DirectoryQueue,
    OutboxEnvelope,
    QueuedSubmission,
    ReceivedEnvelope,
    SubmissionQueue,
)

if TYPE_CHECKING:
    from ..config import TreasuryConfig


def build_backend(config: "TreasuryConfig") -> ExecutionBackend:
    match config.execution_backend:
        case BackendName.CONWAY:
            api_key = config.conway_api_key.get_secret_value() if config.conway_api_key else None
            return DirectTransferBackend(
                config.conway_api_url,
                api_key,
                timeout=config.conway_timeout_seconds,
            )
        case BackendName.VULTISIG:
            return OutboxBackend(
                DirectoryQueue(config.outbox_dir),
                vault_policy_profile=config.vault_policy_profile,
            )
    raise ValueError(f"unsupported execution backend: {config.execution_backend}")


__all__ = (
    "BalanceProvider",
    "DirectTransferBackend",
    "DirectoryQueue",
    "ExecutionBackend",
    "ExecutionOutcome",
    "OutboxBackend",
    "OutboxEnvelope",
    "QueuedSubmission",
    "ReceivedEnvelope",
    "SubmissionQueue",
    "build_backend",
)
