from __future__ import annotations

import json

import httpx
import pytest

from treasuryagent.errors import BackendError
from treasuryagent.ledger.sqlite import SQLiteIntentLedger
from treasuryagent.notifiers import TelegramNotifier, build_alert_message, build_tx_link
from treasuryagent.notifiers.telegram import format_usd, trim_reason
from treasuryagent.types import BackendName, ExecutionRecord, IntentStatus, TransferIntent

from conftest import ALLOWED, FixedClock

TX_HASH = "0x" + "9f" * 32


@pytest.fixture
def pending(ledger: SQLiteIntentLedger) -> TransferIntent:
    return ledger.create(
        source="telegram",
        requested_by="planner",
        to_address=ALLOWED,
        amount_cents=150_000,
        reason="fund   the\nGPU budget",
        balance_cents=10_000_000,
    )


def test_pending_alert_masks_address_and_offers_commands(
    pending: TransferIntent, clock: FixedClock
) -> None:
    message = build_alert_message("request_created", pending, at=clock())

    lines = message.splitlines()
    assert lines[0] == "Treasury Alert"
    assert "Event: request_created" in lines
    assert "Amount: $1,500.00" in lines
    assert "To: 0xa1a1a1...a1a1a1" in lines
    assert ALLOWED not in message
    assert "Status: pending_approval" in lines
    assert "Reason: fund the GPU budget" in lines
    assert (
        f"Action: treasuryagent approve {pending.id} | "
        f"treasuryagent reject {pending.id} --reason <reason>"
    ) in lines
    assert lines[-1] == "At: 2026-01-25T12:00:00.000000Z"


def test_status_change_alert_shows_transition_and_link(
    ledger: SQLiteIntentLedger, pending: TransferIntent, clock: FixedClock
) -> None:
    ledger.approve(pending.id, approved_by="ops")
    executed = ledger.set_execution(
        pending.id,
        status=IntentStatus.EXECUTED,
        execution=ExecutionRecord(
            backend=BackendName.VULTISIG,
            transaction_ref=TX_HASH,
            message="mined",
            executed_by="ops",
            executed_at=clock(),
        ),
    )

    message = build_alert_message(
        "status_changed", executed, previous_status=IntentStatus.APPROVED, chain="base", at=clock()
    )

    assert "Status: approved -> executed" in message
    assert f"Tx Ref: {TX_HASH}" in message
    assert f"Tx Link: https://basescan.org/tx/{TX_HASH}" in message
    assert "Action:" not in message


def test_long_messages_are_capped(pending: TransferIntent, clock: FixedClock) -> None:
    long_source = pending.with_changes(source="s" * 5_000)

    message = build_alert_message("request_created", long_source, at=clock())

    assert len(message) == 4_000
    assert message.endswith("...")


@pytest.mark.parametrize(
    ("ref", "template", "chain", "expected"),
    [
        (TX_HASH, None, "base", f"https://basescan.org/tx/{TX_HASH}"),
        (TX_HASH, "https://explorer.test/tx/{tx}?ref=alert", None, f"https://explorer.test/tx/{TX_HASH}?ref=alert"),
        (TX_HASH, "https://explorer.test/tx/", None, f"https://explorer.test/tx/{TX_HASH}"),
        (TX_HASH, None, "unknown-chain", None),
        ("tr_123", None, "base", None),
        (f"see {TX_HASH}", None, "base", None),
        (None, None, "base", None),
    ],
)
def test_build_tx_link(ref, template, chain, expected) -> None:
    assert build_tx_link(ref, template=template, chain=chain) == expected


def test_formatting_helpers() -> None:
    assert format_usd(5) == "$0.05"
    assert format_usd(123_456_789) == "$1,234,567.89"
    assert trim_reason(None) == "-"
    assert trim_reason("x" * 300).endswith("...")
    assert len(trim_reason("x" * 300)) == 220


def test_telegram_notifier_posts_send_message(pending: TransferIntent, clock: FixedClock) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"ok": True})

    client = httpx.Client(transport=httpx.MockTransport(handler))
    notifier = TelegramNotifier("123:abc", "-100200", api_url="https://tg.test/", client=client, now=clock)

    notifier.notify("request_created", pending)

    (request,) = seen
    assert str(request.url) == "https://tg.test/bot123:abc/sendMessage"
    body = json.loads(request.content)
    assert body["chat_id"] == "-100200"
    assert body["disable_web_page_preview"] is True
    assert body["text"].startswith("Treasury Alert\n")


def test_telegram_failures_raise_backend_error_without_token(
    pending: TransferIntent, clock: FixedClock
) -> None:
    def refused(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connect to https://tg.test/bot123:abc failed", request=request)

    def forbidden(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, json={"ok": False, "description": "Forbidden"})

    for handler in (refused, forbidden):
        client = httpx.Client(transport=httpx.MockTransport(handler))
        notifier = TelegramNotifier("123:abc", "-1", api_url="https://tg.test", client=client, now=clock)
        with pytest.raises(BackendError) as excinfo:
            notifier.notify("request_created", pending)
        assert "123:abc" not in str(excinfo.value)
