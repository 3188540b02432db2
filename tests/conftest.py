from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterator

import pytest

from treasuryagent.audit import SettingsAuditTrail
from treasuryagent.backends.base import ExecutionOutcome
from treasuryagent.backends.outbox import OutboxBackend
from treasuryagent.backends.queue import DirectoryQueue
from treasuryagent.engine import TreasuryEngine
from treasuryagent.ledger.sqlite import SQLiteIntentLedger
from treasuryagent.settings import PolicySettings, SettingsStore
from treasuryagent.types import BackendName, TransferIntent

ALLOWED = "0x" + "a1" * 20
STRANGER = "0x" + "b2" * 20


class FixedClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 1, 25, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta: float) -> None:
        self.current = self.current + timedelta(**delta)


class RecordingBackend:
    """Direct-style backend that returns a canned outcome and counts calls."""

    name = BackendName.CONWAY

    def __init__(self, outcome: ExecutionOutcome | Exception | None = None) -> None:
        self.outcome = outcome or ExecutionOutcome(
            status="executed", transaction_ref="tr_1", message="Conway credit transfer completed"
        )
        self.calls: list[TransferIntent] = []

    def submit(self, intent: TransferIntent) -> ExecutionOutcome:
        self.calls.append(intent)
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Iterator[None]:
    """Keep TREASURY_* variables and any .env file out of the tests."""
    for name in list(os.environ):
        if name.startswith("TREASURY_"):
            monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)
    yield


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def policy() -> PolicySettings:
    return PolicySettings(
        require_allowlist=True,
        allowlist=(ALLOWED,),
        min_reserve_cents=500,
        auto_approve_max_cents=10_000,
        hard_per_transfer_cents=500_000,
        hard_daily_limit_cents=1_000_000,
    )


@pytest.fixture
def settings_store(tmp_path: Path, policy: PolicySettings, clock: FixedClock) -> SettingsStore:
    audit = SettingsAuditTrail(tmp_path / "settings-audit.jsonl", now=clock)
    return SettingsStore(tmp_path / "settings.json", audit, defaults=policy, now=clock)


@pytest.fixture
def ledger(tmp_path: Path, settings_store: SettingsStore, clock: FixedClock) -> SQLiteIntentLedger:
    return SQLiteIntentLedger(tmp_path / "ledger.sqlite3", settings_store.load, now=clock)


@pytest.fixture
def queue(tmp_path: Path, clock: FixedClock) -> DirectoryQueue:
    return DirectoryQueue(tmp_path / "outbox", now=clock)


@pytest.fixture
def make_engine(
    ledger: SQLiteIntentLedger, settings_store: SettingsStore, clock: FixedClock
) -> Callable[..., TreasuryEngine]:
    def factory(backend=None, **kwargs) -> TreasuryEngine:
        kwargs.setdefault("balance_provider", lambda: 1_000_000)
        return TreasuryEngine(
            ledger=ledger,
            settings_store=settings_store,
            backend=backend if backend is not None else RecordingBackend(),
            now=clock,
            **kwargs,
        )

    return factory


@pytest.fixture
def outbox_engine(
    make_engine: Callable[..., TreasuryEngine], queue: DirectoryQueue, clock: FixedClock
) -> TreasuryEngine:
    return make_engine(OutboxBackend(queue, now=clock))
