from __future__ import annotations

import json
from pathlib import Path

import httpx
import pytest

from treasuryagent.backends import build_backend
from treasuryagent.backends.direct import DirectTransferBackend
from treasuryagent.backends.outbox import OutboxBackend
from treasuryagent.backends.queue import DirectoryQueue, OutboxEnvelope, QueuedSubmission
from treasuryagent.config import load_config
from treasuryagent.errors import BackendError, EnvelopeParseError
from treasuryagent.ledger.sqlite import SQLiteIntentLedger
from treasuryagent.types import BackendName, TransferIntent

from conftest import ALLOWED, FixedClock


@pytest.fixture
def intent(ledger: SQLiteIntentLedger) -> TransferIntent:
    return ledger.create(
        source="cli",
        requested_by="agent",
        to_address=ALLOWED,
        amount_cents=5_000,
        reason="top up child",
        balance_cents=1_000_000,
    )


def _direct(handler) -> DirectTransferBackend:
    client = httpx.Client(base_url="https://conway.test", transport=httpx.MockTransport(handler))
    return DirectTransferBackend("https://conway.test", "sk-test", client=client)


def test_completed_transfer_is_executed(intent: TransferIntent) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"status": "completed", "transfer_id": "tr_42"})

    outcome = _direct(handler).submit(intent)

    assert outcome.status == "executed"
    assert outcome.transaction_ref == "tr_42"
    assert outcome.message == "Conway credit transfer completed"
    (request,) = seen
    assert request.url.path == "/v1/credits/transfer"
    assert request.headers["Authorization"] == "Bearer sk-test"
    assert json.loads(request.content) == {
        "to_address": ALLOWED,
        "amount_cents": 5_000,
        "note": "top up child",
    }


def test_other_transfer_status_is_submitted(intent: TransferIntent) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"status": "Pending", "id": 7})

    outcome = _direct(handler).submit(intent)

    assert outcome.status == "submitted"
    assert outcome.transaction_ref == "7"
    assert outcome.message == "Conway credit transfer pending"


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, text="upstream exploded"),
        httpx.Response(200, text="not json"),
        httpx.Response(200, json=["a", "list"]),
    ],
)
def test_bad_responses_raise_backend_error(intent: TransferIntent, response: httpx.Response) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return response

    with pytest.raises(BackendError):
        _direct(handler).submit(intent)


def test_transport_error_raises_backend_error(intent: TransferIntent) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(BackendError, match="connection refused"):
        _direct(handler).submit(intent)


def test_balance_reads_known_keys() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/credits/balance"
        return httpx.Response(200, json={"credits_cents": 12_345})

    assert _direct(handler).balance_cents() == 12_345


def test_balance_without_integer_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"balance_cents": "lots"})

    with pytest.raises(BackendError):
        _direct(handler).balance_cents()


def test_queue_enqueue_pending_read_archive(
    queue: DirectoryQueue, intent: TransferIntent, clock: FixedClock
) -> None:
    envelope = OutboxEnvelope(submitted_at=clock(), intent=intent)

    item = queue.enqueue(envelope)

    assert item.path == queue.incoming / f"{intent.id}.json"
    assert item.path.stat().st_mode & 0o777 == 0o600
    assert queue.pending() == [item]
    received = queue.read(item)
    assert received.intent.id == intent.id
    assert received.vault_policy_profile == "secure"
    payload = json.loads(item.path.read_text(encoding="utf-8"))
    assert payload["intent"]["toAddress"] == ALLOWED
    assert payload["vaultPolicyProfile"] == "secure"

    archived = queue.archive(item, "processed")

    assert archived.parent == queue.processed
    assert archived.name == f"processed-2026-01-25T12-00-00-000000Z-{intent.id}.json"
    assert queue.pending() == []


def test_pending_ignores_temp_and_foreign_files(queue: DirectoryQueue) -> None:
    queue.ensure_dirs()
    (queue.incoming / ".half.json.tmp").write_text("{}", encoding="utf-8")
    (queue.incoming / ".hidden.json").write_text("{}", encoding="utf-8")
    (queue.incoming / "notes.txt").write_text("hi", encoding="utf-8")
    (queue.incoming / "b.json").write_text("{}", encoding="utf-8")
    (queue.incoming / "a.json").write_text("{}", encoding="utf-8")

    assert [item.name for item in queue.pending()] == ["a.json", "b.json"]


@pytest.mark.parametrize(
    "content",
    ["{not json", "{}", '{"intent": "x"}', '{"intent": {"id": "  "}}', '{"intent": {"id": 7}}'],
)
def test_invalid_envelope_raises_parse_error(queue: DirectoryQueue, content: str) -> None:
    queue.ensure_dirs()
    path = queue.incoming / "broken.json"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(EnvelopeParseError):
        queue.read(QueuedSubmission(path))


def test_non_utf8_envelope_raises_parse_error(queue: DirectoryQueue) -> None:
    queue.ensure_dirs()
    path = queue.incoming / "binary.json"
    path.write_bytes(b'{"intent": "\xff\xfe"}')

    with pytest.raises(EnvelopeParseError, match="cannot read binary.json"):
        queue.read(QueuedSubmission(path))


def test_hand_written_envelope_needs_only_the_intent_id(queue: DirectoryQueue) -> None:
    queue.ensure_dirs()
    path = queue.incoming / "manual.json"
    path.write_text('{"intent": {"id": " intent-7 ", "memo": "from ops"}}', encoding="utf-8")

    envelope = queue.read(QueuedSubmission(path))

    assert envelope.intent.id == "intent-7"
    assert envelope.submitted_at is None
    assert envelope.vault_policy_profile is None


def test_outbox_backend_queues_without_status_change(
    queue: DirectoryQueue, intent: TransferIntent, clock: FixedClock
) -> None:
    backend = OutboxBackend(queue, vault_policy_profile="fast", now=clock)

    outcome = backend.submit(intent)

    assert outcome.status == "queued"
    assert outcome.transaction_ref == str(queue.incoming / f"{intent.id}.json")
    assert outcome.message.startswith("Queued for signer processing: ")
    envelope = OutboxEnvelope.model_validate_json(
        queue.pending()[0].path.read_text(encoding="utf-8")
    )
    assert envelope.vault_policy_profile == "fast"
    assert envelope.intent == intent


def test_build_backend_follows_configuration(tmp_path: Path) -> None:
    outbox = build_backend(load_config(state_dir=tmp_path))
    direct = build_backend(
        load_config(state_dir=tmp_path, execution_backend="conway", conway_api_key="sk-x")
    )

    assert isinstance(outbox, OutboxBackend)
    assert outbox.name is BackendName.VULTISIG
    assert outbox.queue.root == tmp_path / "outbox"
    assert isinstance(direct, DirectTransferBackend)
    assert direct.client.headers["Authorization"] == "Bearer sk-x"
    direct.close()
