"""Exception types for treasuryagent."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .types import TransferIntent


class TreasuryError(Exception):
    """Base exception for all treasuryagent errors."""


class NotFoundError(TreasuryError):
    """Raised when an intent or child wallet id is unknown."""


class ValidationError(TreasuryError, ValueError):
    """Raised for malformed input: bad address, non-positive amount, missing reason."""


class IllegalTransitionError(TreasuryError):
    """Raised when a status change is not an edge of the intent state machine.

    The current intent is attached so callers can report its status.
    """

    def __init__(self, message: str, intent: "TransferIntent") -> None:
        super().__init__(message)
        self.intent = intent


class TerminalStateError(IllegalTransitionError):
    """Raised when the intent is already rejected, executed or failed."""


class BackendError(TreasuryError):
    """Raised when a transfer API or external signer fails."""


class ParseError(TreasuryError):
    """Raised when input from outside the process cannot be parsed."""


class EnvelopeParseError(ParseError):
    """Raised when an outbox envelope is malformed."""


class AuditLogError(TreasuryError):
    """Raised when the settings audit trail cannot be written."""


class AuditVerificationError(AuditLogError):
    """Raised when the audit trail hash chain does not verify."""
