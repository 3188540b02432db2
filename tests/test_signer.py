from __future__ import annotations

import shlex
import sys
from pathlib import Path

import pytest

from treasuryagent.signer import SubprocessSigner, parse_signer_output

TX_HASH = "0x" + "ab" * 32


def _script_signer(tmp_path: Path, body: str, *, timeout: float = 10.0) -> SubprocessSigner:
    script = tmp_path / "signer.py"
    script.write_text(body, encoding="utf-8")
    command = f"{shlex.quote(sys.executable)} {shlex.quote(str(script))}"
    return SubprocessSigner(command, timeout=timeout)


def test_json_output_with_hash_is_executed() -> None:
    result = parse_signer_output(f'{{"status": "executed", "txHash": "{TX_HASH}"}}')

    assert result.ok
    assert result.status == "executed"
    assert result.transaction_ref == TX_HASH
    assert result.message == "Signer returned executed."


def test_json_submitted_keeps_message() -> None:
    result = parse_signer_output('{"status": "SUBMITTED", "txRef": "job-9", "message": "queued in vault"}')

    assert result.ok
    assert result.status == "submitted"
    assert result.transaction_ref == "job-9"
    assert result.message == "queued in vault"


def test_json_ok_false_is_failure() -> None:
    result = parse_signer_output('{"ok": false, "message": "device locked"}')

    assert not result.ok
    assert result.status == "failed"
    assert result.message == "device locked"


def test_json_raw_output_supplies_reference() -> None:
    result = parse_signer_output(f'{{"rawOutput": "broadcast {TX_HASH} done"}}')

    assert result.status == "executed"
    assert result.transaction_ref == TX_HASH


def test_bare_hash_in_text_is_executed() -> None:
    result = parse_signer_output(f"signed and broadcast: {TX_HASH}\n")

    assert result.ok
    assert result.status == "executed"
    assert result.transaction_ref == TX_HASH
    assert result.message == "Signer returned a transaction hash."


def test_other_text_is_an_opaque_submitted_reference() -> None:
    result = parse_signer_output("vault-session-1234\n")

    assert result.ok
    assert result.status == "submitted"
    assert result.transaction_ref == "vault-session-1234"


@pytest.mark.parametrize("output", ["", "  \n"])
def test_empty_output_fails(output: str) -> None:
    result = parse_signer_output(output)

    assert not result.ok
    assert result.message == "Signer produced empty output."


def test_subprocess_signer_receives_envelope_path(tmp_path: Path) -> None:
    signer = _script_signer(
        tmp_path,
        "import json, sys\n"
        f"print(json.dumps({{'status': 'executed', 'txHash': '{TX_HASH}', 'message': sys.argv[1]}}))\n",
    )
    envelope = tmp_path / "intent.json"

    result = signer.sign(envelope)

    assert result.ok
    assert result.transaction_ref == TX_HASH
    assert result.message == str(envelope)


def test_subprocess_signer_nonzero_exit(tmp_path: Path) -> None:
    signer = _script_signer(
        tmp_path, "import sys\nsys.stderr.write('bad pin\\n')\nsys.exit(3)\n"
    )

    result = signer.sign(tmp_path / "intent.json")

    assert not result.ok
    assert result.message == "Signer command failed (3): bad pin"


def test_subprocess_signer_timeout(tmp_path: Path) -> None:
    signer = _script_signer(tmp_path, "import time\ntime.sleep(30)\n", timeout=1)

    result = signer.sign(tmp_path / "intent.json")

    assert not result.ok
    assert result.status == "failed"
    assert result.message == "Signer timed out after 1s"


def test_unconfigured_and_missing_commands_fail(tmp_path: Path) -> None:
    unconfigured = SubprocessSigner("  ").sign(tmp_path / "intent.json")
    missing = SubprocessSigner(str(tmp_path / "no-such-signer")).sign(tmp_path / "intent.json")

    assert not unconfigured.ok
    assert "TREASURY_SIGNER_COMMAND" in unconfigured.message
    assert not missing.ok
    assert missing.message.startswith("Signer could not be started")


def test_timeout_has_a_floor() -> None:
    assert SubprocessSigner("true", timeout=0.01).timeout == 1.0
