"""Typed models for treasuryagent.

Python attributes are snake_case; the JSON wire form (ledger rows, outbox
envelopes, ``show`` output) uses camelCase aliases so external signers keep
reading ``intent.toAddress`` and ``intent.amountCents``.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")
TX_HASH_PATTERN = re.compile(r"0x[a-fA-F0-9]{64}")

SYSTEM_ACTOR = "treasury-policy"


def is_address(value: object) -> bool:
    return isinstance(value, str) and ADDRESS_PATTERN.match(value.strip()) is not None


def normalize_address(value: str) -> str:
    return value.strip().lower()


def mask_address(address: str) -> str:
    if not is_address(address):
        return address
    return f"{address[:8]}...{address[-6:]}"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Fixed-width UTC text; sorts lexicographically in SQLite and file names."""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _require_aware(value: datetime) -> datetime:
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        raise ValueError("timestamp must be timezone-aware")
    return value


def _require_text(name: str, value: str) -> str:
    if not value or not value.strip():
        raise ValueError(f"{name} must be a non-empty string")
    return value.strip()


class IntentStatus(str, Enum):
    """Lifecycle status of a transfer intent."""

    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    SUBMITTED = "submitted"
    EXECUTED = "executed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {IntentStatus.REJECTED, IntentStatus.EXECUTED, IntentStatus.FAILED}
)
EXECUTION_STATUSES = frozenset(
    {IntentStatus.SUBMITTED, IntentStatus.EXECUTED, IntentStatus.FAILED}
)


class PolicyDecision(str, Enum):
    """Outcome of evaluating a proposed transfer against policy settings."""

    AUTO_APPROVE = "auto_approve"
    REQUIRE_APPROVAL = "require_approval"
    REJECT = "reject"


class BackendName(str, Enum):
    """The two execution strategies; an intent remembers which one handled it."""

    CONWAY = "conway"
    VULTISIG = "vultisig"


class WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def to_wire_json(self, *, indent: int | None = None) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True, indent=indent)


class ApprovalRecord(WireModel):
    approved_by: str
    note: str | None = None
    at: datetime

    @field_validator("at")
    @classmethod
    def _at_aware(cls, value: datetime) -> datetime:
        return _require_aware(value)


class RejectionRecord(WireModel):
    rejected_by: str
    reason: str
    at: datetime

    @field_validator("reason")
    @classmethod
    def _reason_non_empty(cls, value: str) -> str:
        return _require_text("reason", value)

    @field_validator("at")
    @classmethod
    def _at_aware(cls, value: datetime) -> datetime:
        return _require_aware(value)


class ExecutionRecord(WireModel):
    backend: BackendName
    transaction_ref: str | None = None
    message: str
    executed_by: str
    executed_at: datetime

    @field_validator("executed_at")
    @classmethod
    def _executed_at_aware(cls, value: datetime) -> datetime:
        return _require_aware(value)


class PolicySnapshot(WireModel):
    """Policy decision captured when the intent was created."""

    decision: PolicyDecision
    reasons: list[str] = Field(default_factory=list)
    evaluated_at: datetime
    allowlist_matched: bool = False
    projected_balance_cents: int | None = None
    projected_spent_last_24h_cents: int = 0


class TransferIntent(WireModel):
    """A proposed, tracked transfer of funds."""

    id: str
    created_at: datetime
    updated_at: datetime
    source: str
    requested_by: str
    to_address: str
    amount_cents: int = Field(gt=0)
    reason: str | None = None
    child_id: str | None = None
    status: IntentStatus
    policy: PolicySnapshot
    approvals: list[ApprovalRecord] = Field(default_factory=list)
    rejection: RejectionRecord | None = None
    execution: ExecutionRecord | None = None

    @field_validator("id", "source", "requested_by")
    @classmethod
    def _text_non_empty(cls, value: str, info: ValidationInfo) -> str:
        return _require_text(info.field_name, value)

    @field_validator("to_address")
    @classmethod
    def _address_shape(cls, value: str) -> str:
        if not is_address(value):
            raise ValueError("to_address must be a 0x-prefixed 40-hex address")
        return value.strip()

    @field_validator("created_at", "updated_at")
    @classmethod
    def _timestamps_aware(cls, value: datetime) -> datetime:
        return _require_aware(value)

    @model_validator(mode="after")
    def _rejection_matches_status(self) -> "TransferIntent":
        if (self.status is IntentStatus.REJECTED) != (self.rejection is not None):
            raise ValueError("rejection must be present exactly when status is rejected")
        return self

    def with_changes(self, **changes: Any) -> "TransferIntent":
        """Return a re-validated copy with ``changes`` applied."""
        data = self.model_dump()
        data.update(changes)
        return TransferIntent.model_validate(data)


class IntentEvent(WireModel):
    """One row of an intent's append-only history."""

    intent_id: str
    at: datetime
    from_status: IntentStatus | None = None
    to_status: IntentStatus
    actor: str
    detail: str = ""


class ChildWallet(WireModel):
    """A managed sub-wallet whose funded balance tracks executed intents."""

    child_id: str
    address: str | None = None
    funded_amount_cents: int = 0
    updated_at: datetime
