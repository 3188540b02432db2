"""Synchronous credit-transfer API backend ("conway")."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from ..errors import BackendError
from ..types import BackendName, TransferIntent
from .base import ExecutionOutcome

_logger = logging.getLogger(__name__)

TRANSFER_ENDPOINT = "/v1/credits/transfer"
BALANCE_ENDPOINT = "/v1/credits/balance"


class DirectTransferBackend:
    """Moves credits in one HTTP request; ``completed`` transfers are executed."""

    name = BackendName.CONWAY

    def __init__(
        self,
        api_url: str,
        api_key: str | None = None,
        *,
        timeout: float = 20.0,
        client: httpx.Client | None = None,
    ) -> None:
        headers = {"Accept": "application/json", "User-Agent": "treasuryagent/0.1.0"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._owns_client = client is None
        self.client = client or httpx.Client(base_url=api_url, timeout=timeout)
        self.client.headers.update(headers)

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def __enter__(self) -> "DirectTransferBackend":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def submit(self, intent: TransferIntent) -> ExecutionOutcome:
        payload = {
            "to_address": intent.to_address,
            "amount_cents": intent.amount_cents,
            "note": intent.reason or f"treasury intent {intent.id}",
        }
        data = self._request("POST", TRANSFER_ENDPOINT, json=payload)
        status = str(data.get("status") or "submitted").strip().lower()
        transfer_id = data.get("transfer_id") or data.get("transferId") or data.get("id")
        _logger.info("conway transfer for intent %s returned %s", intent.id, status)
        return ExecutionOutcome(
            status="executed" if status == "completed" else "submitted",
            transaction_ref=str(transfer_id) if transfer_id else None,
            message=f"Conway credit transfer {status}",
        )

    def balance_cents(self) -> int:
        data = self._request("GET", BALANCE_ENDPOINT)
        for key in ("balance_cents", "credits_cents", "balanceCents"):
            value = data.get(key)
            if isinstance(value, int) and not isinstance(value, bool):
                return value
        raise BackendError("balance response has no integer balance_cents")

    def _request(self, method: str, endpoint: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = self.client.request(method, endpoint, **kwargs)
        except httpx.HTTPError as exc:
            raise BackendError(f"{method} {endpoint} failed: {exc}") from exc
        if response.is_error:
            raise BackendError(
                f"{method} {endpoint} returned {response.status_code}: {response.text[:300]}"
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise BackendError(f"{method} {endpoint} returned non-JSON body") from exc
        if not isinstance(data, dict):
            raise BackendError(f"{method} {endpoint} returned {type(data).__name__}, not an object")
        return data
