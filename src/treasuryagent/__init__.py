"""treasuryagent public API."""

from .audit import AuditRecord, SettingsAuditTrail
from .backends import (
    DirectoryQueue,
    DirectTransferBackend,
    ExecutionBackend,
    ExecutionOutcome,
    OutboxBackend,
    OutboxEnvelope,
    SubmissionQueue,
    build_backend,
)
from .config import TreasuryConfig, load_config
from .engine import TreasuryEngine
from .errors import (
    AuditLogError,
    AuditVerificationError,
    BackendError,
    EnvelopeParseError,
    IllegalTransitionError,
    NotFoundError,
    ParseError,
    TerminalStateError,
    TreasuryError,
    ValidationError,
)
from .ledger import IntentLedger, SQLiteIntentLedger
from .policy import PolicyResult, evaluate
from .settings import CONFIRMATION_PHRASE, EDITABLE_KEYS, PolicySettings, SettingsStore
from .signer import Signer, SignerResult, SubprocessSigner, parse_signer_output
from .types import (
    BackendName,
    ChildWallet,
    ExecutionRecord,
    IntentEvent,
    IntentStatus,
    PolicyDecision,
    TransferIntent,
)
from .worker import OutboxWorker, WorkerReport

__all__ = (
    # Command surface
    "TreasuryEngine",
    "TreasuryConfig",
    "load_config",
    # Types
    "TransferIntent",
    "IntentStatus",
    "IntentEvent",
    "ExecutionRecord",
    "ChildWallet",
    "PolicyDecision",
    "BackendName",
    # Policy and settings
    "evaluate",
    "PolicyResult",
    "PolicySettings",
    "SettingsStore",
    "CONFIRMATION_PHRASE",
    "EDITABLE_KEYS",
    "SettingsAuditTrail",
    "AuditRecord",
    # Ledger
    "IntentLedger",
    "SQLiteIntentLedger",
    # Execution
    "ExecutionBackend",
    "ExecutionOutcome",
    "DirectTransferBackend",
    "OutboxBackend",
    "OutboxEnvelope",
    "SubmissionQueue",
    "DirectoryQueue",
    "build_backend",
    "Signer",
    "SignerResult",
    "SubprocessSigner",
    "parse_signer_output",
    "OutboxWorker",
    "WorkerReport",
    # Errors
    "TreasuryError",
    "NotFoundError",
    "ValidationError",
    "IllegalTransitionError",
    "TerminalStateError",
    "BackendError",
    "ParseError",
    "EnvelopeParseError",
    "AuditLogError",
    "AuditVerificationError",
)
