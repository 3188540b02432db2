"""Submission queue between the outbox backend and the outbox worker.

The worker only talks to ``SubmissionQueue``; ``DirectoryQueue`` is the
plain-directory implementation an offline signer can also read directly.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Literal, Protocol

from pydantic import ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from ..errors import EnvelopeParseError
from ..types import TransferIntent, WireModel, utc_now

_logger = logging.getLogger(__name__)

ArchiveOutcome = Literal["processed", "failed"]

ENVELOPE_INSTRUCTIONS = (
    "Sign with the vault signer, then report the result with "
    "`treasuryagent confirm` or `treasuryagent fail`."
)


class OutboxEnvelope(WireModel):
    """Snapshot of an approved intent handed to an external signer."""

    submitted_at: datetime
    intent: TransferIntent
    instructions: str = ENVELOPE_INSTRUCTIONS
    vault_policy_profile: str = "secure"


class EnvelopeIntent(WireModel):
    """The intent reference a queued envelope must carry.

    The ledger row is authoritative, so only ``id`` is checked and the rest
    of the snapshot is kept as received.
    """

    model_config = ConfigDict(extra="allow", str_strip_whitespace=True)

    id: str = Field(min_length=1)


class ReceivedEnvelope(WireModel):
    """An envelope as read back from the queue, possibly hand-written."""

    model_config = ConfigDict(extra="allow")

    intent: EnvelopeIntent
    submitted_at: datetime | None = None
    vault_policy_profile: str | None = None


@dataclass(frozen=True)
class QueuedSubmission:
    path: Path

    @property
    def name(self) -> str:
        return self.path.name


class SubmissionQueue(Protocol):
    def enqueue(self, envelope: OutboxEnvelope) -> QueuedSubmission:
        ...

    def pending(self) -> list[QueuedSubmission]:
        ...

    def read(self, item: QueuedSubmission) -> ReceivedEnvelope:
        ...

    def archive(self, item: QueuedSubmission, outcome: ArchiveOutcome) -> Path:
        ...


def archive_stamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")


class DirectoryQueue:
    """``incoming/``, ``processed/`` and ``failed/`` under one root.

    Envelopes are named ``{intent_id}.json`` and written through a temporary
    file plus rename, so readers never see a partial envelope.
    """

    def __init__(self, root: Path, *, now: Callable[[], datetime] | None = None) -> None:
        self.root = root
        self.incoming = root / "incoming"
        self.processed = root / "processed"
        self.failed = root / "failed"
        self._now = now or utc_now

    def ensure_dirs(self) -> None:
        for directory in (self.incoming, self.processed, self.failed):
            directory.mkdir(parents=True, exist_ok=True, mode=0o700)

    def enqueue(self, envelope: OutboxEnvelope) -> QueuedSubmission:
        self.ensure_dirs()
        target = self.incoming / f"{envelope.intent.id}.json"
        tmp_path = self.incoming / f".{target.name}.tmp"
        with tmp_path.open("w", encoding="utf-8") as handle:
            handle.write(envelope.to_wire_json(indent=2))
            handle.write("\n")
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, target)
        _logger.info("queued intent %s at %s", envelope.intent.id, target)
        return QueuedSubmission(target)

    def pending(self) -> list[QueuedSubmission]:
        if not self.incoming.is_dir():
            return []
        names = sorted(
            entry.name
            for entry in self.incoming.iterdir()
            if entry.is_file() and entry.suffix == ".json" and not entry.name.startswith(".")
        )
        return [QueuedSubmission(self.incoming / name) for name in names]

    def read(self, item: QueuedSubmission) -> ReceivedEnvelope:
        try:
            raw = item.path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise EnvelopeParseError(f"cannot read {item.name}: {exc}") from exc
        try:
            return ReceivedEnvelope.model_validate_json(raw)
        except PydanticValidationError as exc:
            raise EnvelopeParseError(
                f"{item.name} is not a valid outbox envelope: {exc.error_count()} error(s), "
                f"first: {exc.errors()[0]['msg']}"
            ) from exc

    def archive(self, item: QueuedSubmission, outcome: ArchiveOutcome) -> Path:
        target_dir = self.processed if outcome == "processed" else self.failed
        target_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        destination = target_dir / f"{outcome}-{archive_stamp(self._now())}-{item.name}"
        os.replace(item.path, destination)
        return destination
