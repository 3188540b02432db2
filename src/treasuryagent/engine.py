"""Command surface shared by the CLI, chat bots and HTTP handlers.

Every operation works on intent ids and is safe to retry: commands that hit
an intent already in a terminal state return it unchanged.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Mapping

from .audit import AuditRecord, SettingsAuditTrail
from .backends import DirectTransferBackend, ExecutionBackend, build_backend
from .config import TreasuryConfig
from .errors import BackendError, IllegalTransitionError, TerminalStateError, ValidationError
from .ledger import IntentLedger, SQLiteIntentLedger
from .notifiers import AlertEvent, Notifier, TelegramNotifier
from .settings import SettingsStore
from .types import (
    SYSTEM_ACTOR,
    BackendName,
    ChildWallet,
    ExecutionRecord,
    IntentEvent,
    IntentStatus,
    TransferIntent,
    utc_now,
)

_logger = logging.getLogger(__name__)

CONFIRMABLE_STATUSES = (IntentStatus.SUBMITTED, IntentStatus.EXECUTED)


class TreasuryEngine:
    """Policy-gated intent lifecycle on top of a ledger and one execution backend."""

    def __init__(
        self,
        *,
        ledger: IntentLedger,
        settings_store: SettingsStore,
        backend: ExecutionBackend,
        notifier: Notifier | None = None,
        balance_provider: Callable[[], int | None] | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self.ledger = ledger
        self.settings_store = settings_store
        self.backend = backend
        self.notifier = notifier
        self.balance_provider = balance_provider
        self._now = now or utc_now

    @classmethod
    def from_config(cls, config: TreasuryConfig) -> "TreasuryEngine":
        audit = SettingsAuditTrail(config.audit_log_path)
        store = SettingsStore(config.settings_path, audit, defaults=config.default_policy())
        ledger = SQLiteIntentLedger(config.ledger_path, store.load)
        backend = build_backend(config)

        balance_provider = None
        if isinstance(backend, DirectTransferBackend):
            balance_provider = backend.balance_cents
        elif config.known_balance_cents is not None:
            known = config.known_balance_cents

            def balance_provider() -> int | None:
                return known

        notifier = None
        if config.telegram_configured:
            notifier = TelegramNotifier(
                config.telegram_bot_token.get_secret_value(),
                config.telegram_chat_id,
                api_url=config.telegram_api_url,
                explorer_template=config.explorer_tx_url_template,
                chain=config.chain,
            )
        return cls(
            ledger=ledger,
            settings_store=store,
            backend=backend,
            notifier=notifier,
            balance_provider=balance_provider,
        )

    def close(self) -> None:
        for resource in (self.backend, self.notifier):
            close = getattr(resource, "close", None)
            if callable(close):
                close()

    # -- intents ---------------------------------------------------------

    def create(
        self,
        *,
        source: str,
        requested_by: str,
        to_address: str,
        amount_cents: int,
        reason: str | None = None,
        child_id: str | None = None,
    ) -> TransferIntent:
        """Create an intent; auto-approved intents run immediately when auto-execute is on."""
        intent = self.ledger.create(
            source=source,
            requested_by=requested_by,
            to_address=to_address,
            amount_cents=amount_cents,
            reason=reason,
            child_id=child_id,
            balance_cents=self._balance(),
        )
        self._notify("request_created", intent)
        if intent.status is IntentStatus.APPROVED and self.settings_store.load().auto_execute_approved:
            try:
                return self.execute(intent.id, by=SYSTEM_ACTOR)
            except BackendError as exc:
                _logger.warning("auto-execute of intent %s failed: %s", intent.id, exc)
                return self.ledger.get(intent.id)
        return intent

    def list(self, *, status: IntentStatus | None = None, limit: int = 50) -> list[TransferIntent]:
        return self.ledger.list(status=status, limit=limit)

    def show(self, intent_id: str) -> TransferIntent:
        return self.ledger.get(intent_id)

    def history(self, intent_id: str) -> list[IntentEvent]:
        return self.ledger.history(intent_id)

    def approve(
        self, intent_id: str, *, by: str, note: str | None = None, execute: bool = False
    ) -> TransferIntent:
        try:
            intent = self.ledger.approve(intent_id, approved_by=by, note=note)
        except TerminalStateError as exc:
            return self._already_terminal("approve", exc)
        self._notify("status_changed", intent, IntentStatus.PENDING_APPROVAL)
        if execute:
            return self.execute(intent_id, by=by)
        return intent

    def reject(self, intent_id: str, *, by: str, reason: str) -> TransferIntent:
        try:
            intent = self.ledger.reject(intent_id, rejected_by=by, reason=reason)
        except TerminalStateError as exc:
            return self._already_terminal("reject", exc)
        self._notify("status_changed", intent, IntentStatus.PENDING_APPROVAL)
        return intent

    def execute(self, intent_id: str, *, by: str) -> TransferIntent:
        """Run an approved intent through the configured backend.

        A backend failure is recorded as ``failed`` and then re-raised. The
        outbox backend only queues, so the returned intent stays approved.
        """
        intent = self.ledger.get(intent_id)
        if intent.status.is_terminal:
            _logger.info("execute: intent %s already %s", intent_id, intent.status.value)
            return intent
        if intent.status is not IntentStatus.APPROVED:
            raise IllegalTransitionError(
                f"intent {intent_id} must be approved before execution "
                f"(current: {intent.status.value})",
                intent,
            )

        try:
            outcome = self.backend.submit(intent)
        except BackendError as exc:
            try:
                failed = self.ledger.set_execution(
                    intent_id,
                    status=IntentStatus.FAILED,
                    execution=self._record(self.backend.name, str(exc), by),
                )
            except TerminalStateError as terminal:
                _logger.warning(
                    "execute: intent %s already %s; backend error not recorded: %s",
                    intent_id,
                    terminal.intent.status.value,
                    exc,
                )
            else:
                self._notify("status_changed", failed, intent.status)
            raise

        if outcome.status == "queued":
            _logger.info("intent %s: %s", intent_id, outcome.message)
            return intent
        status = IntentStatus.EXECUTED if outcome.status == "executed" else IntentStatus.SUBMITTED
        try:
            updated = self.ledger.set_execution(
                intent_id,
                status=status,
                execution=self._record(
                    self.backend.name, outcome.message, by, outcome.transaction_ref
                ),
            )
        except TerminalStateError as exc:
            return self._already_terminal("execute", exc)
        self._notify("status_changed", updated, intent.status)
        return updated

    def confirm(
        self,
        intent_id: str,
        *,
        status: IntentStatus | str,
        tx_ref: str,
        message: str | None = None,
        by: str,
    ) -> TransferIntent:
        """Record an out-of-band submission or execution reported by a signer."""
        status = IntentStatus(status)
        if status not in CONFIRMABLE_STATUSES:
            raise ValidationError("confirm status must be submitted or executed")
        if not tx_ref or not tx_ref.strip():
            raise ValidationError("a transaction reference is required")
        return self._set_execution(
            intent_id,
            status,
            message=(message or "").strip() or f"Confirmed as {status.value}.",
            by=by,
            tx_ref=tx_ref.strip(),
        )

    def fail(
        self, intent_id: str, *, reason: str, by: str, tx_ref: str | None = None
    ) -> TransferIntent:
        if not reason or not reason.strip():
            raise ValidationError("a failure reason is required")
        return self._set_execution(
            intent_id, IntentStatus.FAILED, message=reason.strip(), by=by, tx_ref=tx_ref
        )

    # -- child wallets ---------------------------------------------------

    def add_child(self, child_id: str, *, address: str | None = None) -> ChildWallet:
        return self.ledger.add_child(child_id, address=address)

    def get_child(self, child_id: str) -> ChildWallet:
        return self.ledger.get_child(child_id)

    def set_child_address(self, child_id: str, address: str) -> ChildWallet:
        return self.ledger.set_child_address(child_id, address)

    # -- settings --------------------------------------------------------

    def get_settings(self) -> dict[str, Any]:
        return self.settings_store.describe()

    def update_settings(
        self,
        *,
        confirmation_phrase: str | None,
        reason: str | None,
        actor: str | None,
        settings: Mapping[str, Any],
    ) -> dict[str, Any]:
        updated = self.settings_store.update(
            confirmation_phrase=confirmation_phrase,
            reason=reason,
            actor=actor,
            settings=settings,
        )
        return updated.values()

    def settings_audit(self, limit: int | None = None) -> list[AuditRecord]:
        return self.settings_store.audit.list_recent(limit)

    def verify_settings_audit(self) -> int:
        return self.settings_store.audit.verify()

    # -- internals -------------------------------------------------------

    def _set_execution(
        self,
        intent_id: str,
        status: IntentStatus,
        *,
        message: str,
        by: str,
        tx_ref: str | None,
    ) -> TransferIntent:
        intent = self.ledger.get(intent_id)
        backend = intent.execution.backend if intent.execution else self.backend.name
        try:
            updated = self.ledger.set_execution(
                intent_id,
                status=status,
                execution=self._record(backend, message, by, tx_ref),
            )
        except TerminalStateError as exc:
            return self._already_terminal(status.value, exc)
        self._notify("status_changed", updated, intent.status)
        return updated

    def _record(
        self, backend: BackendName, message: str, by: str, tx_ref: str | None = None
    ) -> ExecutionRecord:
        return ExecutionRecord(
            backend=backend,
            transaction_ref=tx_ref,
            message=message,
            executed_by=by,
            executed_at=self._now(),
        )

    def _balance(self) -> int | None:
        if self.balance_provider is None:
            return None
        try:
            return self.balance_provider()
        except BackendError as exc:
            _logger.warning("balance lookup failed, treating balance as unknown: %s", exc)
            return None

    @staticmethod
    def _already_terminal(command: str, exc: TerminalStateError) -> TransferIntent:
        _logger.info(
            "%s: intent %s already %s; nothing to do",
            command,
            exc.intent.id,
            exc.intent.status.value,
        )
        return exc.intent

    def _notify(
        self,
        event: AlertEvent,
        intent: TransferIntent,
        previous_status: IntentStatus | None = None,
    ) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.notify(event, intent, previous_status=previous_status)
        except BackendError as exc:
            _logger.warning("treasury alert for intent %s not delivered: %s", intent.id, exc)
