"""External signer invocation for outbox envelopes."""

from __future__ import annotations

import json
import logging
import shlex
import subprocess
from pathlib import Path
from typing import Any, Literal, Protocol

from pydantic import BaseModel

from .types import TX_HASH_PATTERN

_logger = logging.getLogger(__name__)

_REF_KEYS = ("txRef", "txHash", "transactionRef", "reference")


class SignerResult(BaseModel):
    model_config = {"frozen": True}

    ok: bool
    status: Literal["submitted", "executed", "failed"]
    transaction_ref: str | None = None
    message: str

    @classmethod
    def failure(cls, message: str, transaction_ref: str | None = None) -> "SignerResult":
        return cls(ok=False, status="failed", transaction_ref=transaction_ref, message=message)


class Signer(Protocol):
    def sign(self, envelope_path: Path) -> SignerResult:
        """Sign the envelope at ``envelope_path``; never raises for signer failures."""
        ...


class SubprocessSigner:
    """Runs ``<command> <envelope path>`` and parses its stdout."""

    def __init__(self, command: str, *, timeout: float = 120.0) -> None:
        self.command = command
        self.timeout = max(float(timeout), 1.0)

    def sign(self, envelope_path: Path) -> SignerResult:
        if not self.command.strip():
            return SignerResult.failure(
                "Signer command is not configured; set TREASURY_SIGNER_COMMAND to a program "
                "that accepts the envelope path and prints JSON."
            )
        argv = [*shlex.split(self.command), str(envelope_path)]
        try:
            run = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            return SignerResult.failure(f"Signer timed out after {self.timeout:g}s")
        except OSError as exc:
            return SignerResult.failure(f"Signer could not be started: {exc}")
        if run.returncode != 0:
            detail = (run.stderr or "").strip() or (run.stdout or "").strip() or "no output"
            return SignerResult.failure(f"Signer command failed ({run.returncode}): {detail}")
        return parse_signer_output(run.stdout or "")


def parse_signer_output(output: str) -> SignerResult:
    """Interpret signer stdout.

    Compatibility shim: signers have no formal output contract, so this keeps
    the lenient order existing integrations rely on. A JSON object wins; then a
    transaction-hash-shaped token anywhere in the text means executed; any
    other text is accepted as an opaque submitted reference.
    """
    text = output.strip()
    if not text:
        return SignerResult.failure("Signer produced empty output.")

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, dict):
        return _from_json(parsed)

    match = TX_HASH_PATTERN.search(text)
    if match:
        return SignerResult(
            ok=True,
            status="executed",
            transaction_ref=match.group(0),
            message="Signer returned a transaction hash.",
        )
    _logger.warning("signer output has no JSON or tx hash; accepting it as a reference")
    return SignerResult(
        ok=True,
        status="submitted",
        transaction_ref=text,
        message="Signer output accepted as transfer reference.",
    )


def _from_json(parsed: dict[str, Any]) -> SignerResult:
    raw_status = parsed.get("status")
    status = raw_status.strip().lower() if isinstance(raw_status, str) else "executed"
    if status not in ("submitted", "failed"):
        status = "executed"

    ref = next(
        (parsed[key].strip() for key in _REF_KEYS if isinstance(parsed.get(key), str) and parsed[key].strip()),
        None,
    )
    raw_output = parsed.get("rawOutput")
    if ref is None and isinstance(raw_output, str) and raw_output.strip():
        found = TX_HASH_PATTERN.search(raw_output)
        ref = found.group(0) if found else raw_output.strip()

    message = parsed.get("message")
    if not isinstance(message, str) or not message.strip():
        message = f"Signer returned {status}."
    ok = parsed.get("ok") is not False and status != "failed"
    return SignerResult(
        ok=ok,
        status=status if ok else "failed",
        transaction_ref=ref,
        message=message.strip(),
    )
