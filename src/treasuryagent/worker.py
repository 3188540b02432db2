"""Outbox worker: drains queued envelopes through the external signer.

Invoked periodically by an external scheduler. Each run handles files one at
a time in name order under a process-exclusive lock; the ledger, not the
envelope, decides what happens to each file.
"""

from __future__ import annotations

import logging
from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable

from .backends.queue import ArchiveOutcome, QueuedSubmission, SubmissionQueue
from .errors import EnvelopeParseError, TreasuryError
from .ledger.base import IntentLedger
from .locking import locked_file
from .signer import Signer, SignerResult
from .types import BackendName, ExecutionRecord, IntentStatus, utc_now

_logger = logging.getLogger(__name__)

DEFAULT_WORKER_ACTOR = "vultisig-worker"
APPROVAL_NOTE = "approved by vultisig worker"


@dataclass(frozen=True)
class FileResult:
    name: str
    ok: bool
    message: str
    intent_id: str | None = None
    archived_to: Path | None = None

    @property
    def outcome(self) -> ArchiveOutcome:
        return "processed" if self.ok else "failed"


@dataclass
class WorkerReport:
    results: list[FileResult] = field(default_factory=list)

    @property
    def failures(self) -> int:
        return sum(1 for result in self.results if not result.ok)

    @property
    def exit_code(self) -> int:
        return 2 if self.failures else 0


class OutboxWorker:
    def __init__(
        self,
        ledger: IntentLedger,
        queue: SubmissionQueue,
        signer: Signer,
        *,
        actor: str = DEFAULT_WORKER_ACTOR,
        auto_approve: bool = True,
        dry_run: bool = True,
        lock_path: Path | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self.ledger = ledger
        self.queue = queue
        self.signer = signer
        self.actor = actor
        self.auto_approve = auto_approve
        self.dry_run = dry_run
        self.lock_path = lock_path
        self._now = now or utc_now

    def run(self) -> WorkerReport:
        report = WorkerReport()
        lock = locked_file(self.lock_path) if self.lock_path is not None else nullcontext()
        with lock:
            items = self.queue.pending()
            if not items:
                _logger.info("no queued outbox envelopes")
                return report
            _logger.info(
                "%d outbox file(s); dry_run=%s auto_approve=%s",
                len(items),
                self.dry_run,
                self.auto_approve,
            )
            for item in items:
                report.results.append(self._process(item))
        if report.failures:
            _logger.warning("%d of %d outbox file(s) failed", report.failures, len(report.results))
        return report

    def _process(self, item: QueuedSubmission) -> FileResult:
        intent_id: str | None = None
        try:
            intent_id, ok, message = self._handle(item)
        except TreasuryError as exc:
            ok, message = False, str(exc)
        except Exception as exc:
            _logger.exception("unexpected error while processing %s", item.name)
            ok, message = False, f"unexpected error: {exc}"
        outcome: ArchiveOutcome = "processed" if ok else "failed"
        archived: Path | None = None
        try:
            archived = self.queue.archive(item, outcome)
        except OSError as exc:
            _logger.error("%s: cannot move to %s/: %s", item.name, outcome, exc)
            ok, message = False, f"{message}; archive failed: {exc}"
        if ok:
            _logger.info("%s: %s -> %s", item.name, message, archived)
        else:
            _logger.error("%s: %s -> %s", item.name, message, archived)
        return FileResult(
            name=item.name, ok=ok, message=message, intent_id=intent_id, archived_to=archived
        )

    def _handle(self, item: QueuedSubmission) -> tuple[str | None, bool, str]:
        try:
            envelope = self.queue.read(item)
        except EnvelopeParseError as exc:
            return None, False, f"parse_error: {exc}"

        intent_id = envelope.intent.id
        intent = self.ledger.find(intent_id)
        if intent is None:
            return intent_id, False, f"intent {intent_id} is not in the ledger"
        if intent.status.is_terminal:
            return intent_id, True, f"intent already terminal ({intent.status.value})"

        if intent.status is IntentStatus.PENDING_APPROVAL:
            if not self.auto_approve:
                return intent_id, False, "awaiting human approval"
            intent = self.ledger.approve(intent_id, approved_by=self.actor, note=APPROVAL_NOTE)

        if intent.status is IntentStatus.SUBMITTED:
            return (
                intent_id,
                False,
                "intent is already submitted, an earlier run may have been interrupted; "
                "confirm or fail it manually",
            )

        if self.dry_run:
            return intent_id, True, "dry run; signer not invoked"

        self.ledger.set_execution(
            intent_id,
            status=IntentStatus.SUBMITTED,
            execution=self._record("handed to signer"),
        )
        result = self._sign(item)
        if not result.ok:
            self.ledger.set_execution(
                intent_id,
                status=IntentStatus.FAILED,
                execution=self._record(result.message, result.transaction_ref),
            )
            return intent_id, False, f"signer failed: {result.message}"

        status = IntentStatus.SUBMITTED if result.status == "submitted" else IntentStatus.EXECUTED
        transaction_ref = result.transaction_ref or f"worker-ref-{intent_id}"
        self.ledger.set_execution(
            intent_id,
            status=status,
            execution=self._record(result.message, transaction_ref),
        )
        return intent_id, True, f"intent {intent_id} confirmed as {status.value} ({transaction_ref})"

    def _sign(self, item: QueuedSubmission) -> SignerResult:
        try:
            return self.signer.sign(item.path)
        except Exception as exc:
            _logger.exception("signer raised for %s", item.name)
            return SignerResult.failure(f"Signer raised: {exc}")

    def _record(self, message: str, transaction_ref: str | None = None) -> ExecutionRecord:
        return ExecutionRecord(
            backend=BackendName.VULTISIG,
            transaction_ref=transaction_ref,
            message=message,
            executed_by=self.actor,
            executed_at=self._now(),
        )
