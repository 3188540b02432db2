"""SQLite intent ledger.

Every mutation runs inside ``BEGIN IMMEDIATE`` so concurrent CLI, worker and
bot processes serialize on the database write lock; WAL keeps readers
unblocked. The full intent is stored as camelCase JSON next to the indexed
columns the ledger queries on.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Iterator

from ..errors import NotFoundError, ValidationError
from ..policy import evaluate
from ..settings import PolicySettings
from ..state_machine import check_transition
from ..types import (
    EXECUTION_STATUSES,
    SYSTEM_ACTOR,
    ApprovalRecord,
    ChildWallet,
    ExecutionRecord,
    IntentEvent,
    IntentStatus,
    PolicyDecision,
    PolicySnapshot,
    RejectionRecord,
    TransferIntent,
    format_timestamp,
    is_address,
    normalize_address,
    utc_now,
)

_logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 500
SPEND_WINDOW_HOURS = 24
BUSY_TIMEOUT_SECONDS = 30.0

_WAL_INITIALIZED: set[Path] = set()
_WAL_LOCK = threading.Lock()

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS intents (
        id TEXT PRIMARY KEY,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        status TEXT NOT NULL,
        amount_cents INTEGER NOT NULL,
        child_id TEXT,
        executed_at TEXT,
        child_funded INTEGER NOT NULL DEFAULT 0,
        intent_json TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_intents_created ON intents (created_at)",
    "CREATE INDEX IF NOT EXISTS idx_intents_spend ON intents (status, executed_at)",
    """
    CREATE TABLE IF NOT EXISTS intent_events (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        intent_id TEXT NOT NULL,
        at TEXT NOT NULL,
        from_status TEXT,
        to_status TEXT NOT NULL,
        actor TEXT NOT NULL,
        detail TEXT NOT NULL DEFAULT ''
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_events_intent ON intent_events (intent_id, seq)",
    """
    CREATE TABLE IF NOT EXISTS children (
        child_id TEXT PRIMARY KEY,
        address TEXT,
        funded_amount_cents INTEGER NOT NULL DEFAULT 0,
        updated_at TEXT NOT NULL
    )
    """,
)


def _ensure_wal_mode(path: Path) -> None:
    """Switch the database to WAL once per file per process."""
    with _WAL_LOCK:
        if path in _WAL_INITIALIZED:
            return
        conn = sqlite3.connect(path, timeout=BUSY_TIMEOUT_SECONDS)
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            _WAL_INITIALIZED.add(path)
        finally:
            conn.close()


def clamp_limit(limit: int | None) -> int:
    if limit is None:
        return DEFAULT_LIST_LIMIT
    return max(1, min(MAX_LIST_LIMIT, int(limit)))


def _require(name: str, value: str | None) -> str:
    if value is None or not value.strip():
        raise ValidationError(f"{name} is required")
    return value.strip()


class SQLiteIntentLedger:
    """Intent ledger backed by a single SQLite file.

    ``settings_source`` is called inside each create transaction, so policy
    always sees the latest persisted settings.
    """

    def __init__(
        self,
        path: Path,
        settings_source: Callable[[], PolicySettings],
        *,
        now: Callable[[], datetime] | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self.path = path
        self._settings_source = settings_source
        self._now = now or utc_now
        self._new_id = id_factory or (lambda: uuid.uuid4().hex)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        _ensure_wal_mode(self.path)
        with self._transaction() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

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
        balance_cents: int | None = None,
    ) -> TransferIntent:
        """Evaluate policy and store a new intent in one write transaction."""
        source = _require("source", source)
        requested_by = _require("requested_by", requested_by)
        if not is_address(to_address):
            raise ValidationError(f"invalid recipient address: {to_address!r}")
        if isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
            raise ValidationError("amount_cents must be an integer")
        if amount_cents <= 0:
            raise ValidationError("amount_cents must be positive")
        reason = reason.strip() if reason and reason.strip() else None
        child_id = child_id.strip() if child_id and child_id.strip() else None

        now = self._now()
        with self._transaction() as conn:
            if child_id is not None and self._child_row(conn, child_id) is None:
                raise NotFoundError(f"unknown child id: {child_id}")
            result = evaluate(
                amount_cents,
                to_address,
                self._spend_since(conn, now - timedelta(hours=SPEND_WINDOW_HOURS)),
                self._settings_source(),
                balance_cents=balance_cents,
            )
            approvals: list[ApprovalRecord] = []
            rejection = None
            match result.decision:
                case PolicyDecision.AUTO_APPROVE:
                    status = IntentStatus.APPROVED
                    approvals.append(
                        ApprovalRecord(approved_by=SYSTEM_ACTOR, note="auto-approved by policy", at=now)
                    )
                case PolicyDecision.REQUIRE_APPROVAL:
                    status = IntentStatus.PENDING_APPROVAL
                case PolicyDecision.REJECT:
                    status = IntentStatus.REJECTED
                    rejection = RejectionRecord(
                        rejected_by=SYSTEM_ACTOR, reason=", ".join(result.reasons), at=now
                    )
            intent = TransferIntent(
                id=self._new_id(),
                created_at=now,
                updated_at=now,
                source=source,
                requested_by=requested_by,
                to_address=to_address,
                amount_cents=amount_cents,
                reason=reason,
                child_id=child_id,
                status=status,
                policy=PolicySnapshot(
                    decision=result.decision,
                    reasons=list(result.reasons),
                    evaluated_at=now,
                    allowlist_matched=result.allowlist_matched,
                    projected_balance_cents=result.projected_balance_cents,
                    projected_spent_last_24h_cents=result.projected_spent_last_24h_cents,
                ),
                approvals=approvals,
                rejection=rejection,
            )
            conn.execute(
                """
                INSERT INTO intents
                (id, created_at, updated_at, status, amount_cents, child_id, executed_at, intent_json)
                VALUES (?, ?, ?, ?, ?, ?, NULL, ?)
                """,
                (
                    intent.id,
                    format_timestamp(now),
                    format_timestamp(now),
                    intent.status.value,
                    intent.amount_cents,
                    intent.child_id,
                    intent.to_wire_json(),
                ),
            )
            self._append_event(
                conn,
                intent,
                None,
                actor=requested_by,
                detail=f"policy {result.decision.value}: {', '.join(result.reasons)}",
            )
        _logger.info(
            "intent %s created by %s: %s (%s)",
            intent.id,
            requested_by,
            intent.status.value,
            ", ".join(result.reasons),
        )
        return intent

    def get(self, intent_id: str) -> TransferIntent:
        intent = self.find(intent_id)
        if intent is None:
            raise NotFoundError(f"unknown intent id: {intent_id}")
        return intent

    def find(self, intent_id: str) -> TransferIntent | None:
        with self._connect() as conn:
            return self._find(conn, intent_id)

    def list(
        self, *, status: IntentStatus | None = None, limit: int | None = DEFAULT_LIST_LIMIT
    ) -> list[TransferIntent]:
        """Newest first, at most ``limit`` (clamped to 1..500) intents."""
        query = "SELECT intent_json FROM intents"
        params: tuple[object, ...] = ()
        if status is not None:
            query += " WHERE status = ?"
            params = (IntentStatus(status).value,)
        query += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        with self._connect() as conn:
            rows = conn.execute(query, (*params, clamp_limit(limit))).fetchall()
        return [TransferIntent.model_validate_json(row["intent_json"]) for row in rows]

    def approve(self, intent_id: str, *, approved_by: str, note: str | None = None) -> TransferIntent:
        approved_by = _require("approved_by", approved_by)
        now = self._now()
        with self._transaction() as conn:
            intent = self._get(conn, intent_id)
            check_transition(intent, IntentStatus.APPROVED)
            record = ApprovalRecord(approved_by=approved_by, note=note or None, at=now)
            updated = intent.with_changes(
                status=IntentStatus.APPROVED,
                updated_at=now,
                approvals=[*intent.approvals, record],
            )
            self._store(conn, updated)
            self._append_event(conn, updated, intent.status, actor=approved_by, detail=note or "")
        _logger.info("intent %s approved by %s", intent_id, approved_by)
        return updated

    def reject(self, intent_id: str, *, rejected_by: str, reason: str) -> TransferIntent:
        rejected_by = _require("rejected_by", rejected_by)
        reason = _require("reason", reason)
        now = self._now()
        with self._transaction() as conn:
            intent = self._get(conn, intent_id)
            check_transition(intent, IntentStatus.REJECTED)
            updated = intent.with_changes(
                status=IntentStatus.REJECTED,
                updated_at=now,
                rejection=RejectionRecord(rejected_by=rejected_by, reason=reason, at=now),
            )
            self._store(conn, updated)
            self._append_event(conn, updated, intent.status, actor=rejected_by, detail=reason)
        _logger.info("intent %s rejected by %s: %s", intent_id, rejected_by, reason)
        return updated

    def set_execution(
        self, intent_id: str, *, status: IntentStatus, execution: ExecutionRecord
    ) -> TransferIntent:
        """Record an execution outcome.

        The backend of an earlier record is kept and a missing transaction
        reference falls back to the earlier one. The child wallet is funded
        in the same transaction the first time the intent becomes executed.
        """
        status = IntentStatus(status)
        if status not in EXECUTION_STATUSES:
            raise ValidationError("execution status must be submitted, executed or failed")
        with self._transaction() as conn:
            intent = self._get(conn, intent_id)
            check_transition(intent, status)
            previous = intent.execution
            merged = execution
            if previous is not None:
                merged = execution.model_copy(
                    update={
                        "backend": previous.backend,
                        "transaction_ref": execution.transaction_ref or previous.transaction_ref,
                    }
                )
            updated = intent.with_changes(
                status=status, updated_at=merged.executed_at, execution=merged
            )
            self._store(conn, updated, executed_at=merged.executed_at)
            if status is IntentStatus.EXECUTED and updated.child_id is not None:
                self._fund_child_once(conn, updated)
            self._append_event(
                conn, updated, intent.status, actor=merged.executed_by, detail=merged.message
            )
        _logger.info(
            "intent %s %s via %s (ref=%s)",
            intent_id,
            status.value,
            merged.backend.value,
            merged.transaction_ref,
        )
        return updated

    def recent_executed_spend(self, *, window_hours: int = SPEND_WINDOW_HOURS) -> int:
        """Sum of submitted/executed amounts whose execution falls in the window."""
        with self._connect() as conn:
            return self._spend_since(conn, self._now() - timedelta(hours=window_hours))

    def history(self, intent_id: str) -> list[IntentEvent]:
        with self._connect() as conn:
            self._get(conn, intent_id)
            rows = conn.execute(
                """
                SELECT intent_id, at, from_status, to_status, actor, detail
                FROM intent_events WHERE intent_id = ? ORDER BY seq ASC
                """,
                (intent_id,),
            ).fetchall()
        return [IntentEvent.model_validate(dict(row)) for row in rows]

    # -- child wallets ---------------------------------------------------

    def add_child(self, child_id: str, *, address: str | None = None) -> ChildWallet:
        child_id = _require("child_id", child_id)
        normalized = self._child_address(address) if address else None
        now = format_timestamp(self._now())
        with self._transaction() as conn:
            if self._child_row(conn, child_id) is not None:
                raise ValidationError(f"child already exists: {child_id}")
            conn.execute(
                "INSERT INTO children (child_id, address, funded_amount_cents, updated_at) "
                "VALUES (?, ?, 0, ?)",
                (child_id, normalized, now),
            )
            row = self._child_row(conn, child_id)
        return _child_from_row(row)

    def get_child(self, child_id: str) -> ChildWallet:
        with self._connect() as conn:
            row = self._child_row(conn, child_id)
        if row is None:
            raise NotFoundError(f"unknown child id: {child_id}")
        return _child_from_row(row)

    def set_child_address(self, child_id: str, address: str) -> ChildWallet:
        normalized = self._child_address(address)
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE children SET address = ?, updated_at = ? WHERE child_id = ?",
                (normalized, format_timestamp(self._now()), child_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"unknown child id: {child_id}")
            row = self._child_row(conn, child_id)
        _logger.info("child %s address set to %s", child_id, normalized)
        return _child_from_row(row)

    # -- internals -------------------------------------------------------

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.path, timeout=BUSY_TIMEOUT_SECONDS, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA synchronous=FULL")
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    @staticmethod
    def _find(conn: sqlite3.Connection, intent_id: str) -> TransferIntent | None:
        row = conn.execute(
            "SELECT intent_json FROM intents WHERE id = ?", (intent_id,)
        ).fetchone()
        if row is None:
            return None
        return TransferIntent.model_validate_json(row["intent_json"])

    def _get(self, conn: sqlite3.Connection, intent_id: str) -> TransferIntent:
        intent = self._find(conn, intent_id)
        if intent is None:
            raise NotFoundError(f"unknown intent id: {intent_id}")
        return intent

    @staticmethod
    def _store(
        conn: sqlite3.Connection, intent: TransferIntent, *, executed_at: datetime | None = None
    ) -> None:
        conn.execute(
            """
            UPDATE intents
            SET status = ?, updated_at = ?, intent_json = ?,
                executed_at = COALESCE(?, executed_at)
            WHERE id = ?
            """,
            (
                intent.status.value,
                format_timestamp(intent.updated_at),
                intent.to_wire_json(),
                format_timestamp(executed_at) if executed_at else None,
                intent.id,
            ),
        )

    @staticmethod
    def _spend_since(conn: sqlite3.Connection, cutoff: datetime) -> int:
        row = conn.execute(
            """
            SELECT COALESCE(SUM(amount_cents), 0) FROM intents
            WHERE status IN (?, ?) AND executed_at >= ?
            """,
            (
                IntentStatus.SUBMITTED.value,
                IntentStatus.EXECUTED.value,
                format_timestamp(cutoff),
            ),
        ).fetchone()
        return int(row[0])

    def _fund_child_once(self, conn: sqlite3.Connection, intent: TransferIntent) -> None:
        cursor = conn.execute(
            "UPDATE intents SET child_funded = 1 WHERE id = ? AND child_funded = 0",
            (intent.id,),
        )
        if cursor.rowcount == 0:
            return
        conn.execute(
            """
            INSERT INTO children (child_id, address, funded_amount_cents, updated_at)
            VALUES (?, NULL, ?, ?)
            ON CONFLICT(child_id) DO UPDATE SET
                funded_amount_cents = children.funded_amount_cents + excluded.funded_amount_cents,
                updated_at = excluded.updated_at
            """,
            (intent.child_id, intent.amount_cents, format_timestamp(self._now())),
        )

    @staticmethod
    def _append_event(
        conn: sqlite3.Connection,
        intent: TransferIntent,
        from_status: IntentStatus | None,
        *,
        actor: str,
        detail: str,
    ) -> None:
        conn.execute(
            """
            INSERT INTO intent_events (intent_id, at, from_status, to_status, actor, detail)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                intent.id,
                format_timestamp(intent.updated_at),
                from_status.value if from_status else None,
                intent.status.value,
                actor,
                detail,
            ),
        )

    @staticmethod
    def _child_row(conn: sqlite3.Connection, child_id: str) -> sqlite3.Row | None:
        return conn.execute(
            "SELECT child_id, address, funded_amount_cents, updated_at FROM children WHERE child_id = ?",
            (child_id,),
        ).fetchone()

    @staticmethod
    def _child_address(address: str) -> str:
        if not is_address(address):
            raise ValidationError(f"invalid child address: {address!r}")
        return normalize_address(address)


def _child_from_row(row: sqlite3.Row) -> ChildWallet:
    return ChildWallet.model_validate(dict(row))
