"""Telegram alerts for intent creation and status changes."""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any, Callable

import httpx

from ..errors import BackendError
from ..types import (
    TX_HASH_PATTERN,
    IntentStatus,
    TransferIntent,
    format_timestamp,
    mask_address,
    utc_now,
)
from .base import AlertEvent

_logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 4000
MAX_REASON_LENGTH = 220

EXPLORER_TEMPLATES = {
    "base": "https://basescan.org/tx/{tx}",
    "ethereum": "https://etherscan.io/tx/{tx}",
    "arbitrum": "https://arbiscan.io/tx/{tx}",
    "optimism": "https://optimistic.etherscan.io/tx/{tx}",
    "polygon": "https://polygonscan.com/tx/{tx}",
}


def format_usd(cents: int) -> str:
    return f"${cents / 100:,.2f}"


def trim_reason(reason: str | None, max_length: int = MAX_REASON_LENGTH) -> str:
    if not reason or not reason.strip():
        return "-"
    normalized = re.sub(r"\s+", " ", reason).strip()
    if len(normalized) <= max_length:
        return normalized
    return normalized[: max_length - 3] + "..."


def build_tx_link(
    transaction_ref: str | None, *, template: str | None = None, chain: str | None = None
) -> str | None:
    """Explorer URL for a full transaction hash, or None."""
    if not transaction_ref or TX_HASH_PATTERN.fullmatch(transaction_ref) is None:
        return None
    template = template or EXPLORER_TEMPLATES.get((chain or "").strip().lower())
    if not template:
        return None
    if "{tx}" in template:
        return template.replace("{tx}", transaction_ref)
    return f"{template.rstrip('/')}/{transaction_ref}"


def build_alert_message(
    event: AlertEvent,
    intent: TransferIntent,
    *,
    previous_status: IntentStatus | None = None,
    explorer_template: str | None = None,
    chain: str | None = None,
    at: datetime | None = None,
) -> str:
    lines = [
        "Treasury Alert",
        f"Event: {event}",
        f"Intent: {intent.id}",
        f"Amount: {format_usd(intent.amount_cents)}",
        f"To: {mask_address(intent.to_address)}",
        f"Source: {intent.source}",
        f"Requested By: {intent.requested_by}",
    ]
    if event == "status_changed" and previous_status is not None:
        lines.append(f"Status: {previous_status.value} -> {intent.status.value}")
    else:
        lines.append(f"Status: {intent.status.value}")

    transaction_ref = intent.execution.transaction_ref if intent.execution else None
    if transaction_ref:
        lines.append(f"Tx Ref: {transaction_ref}")
    link = build_tx_link(transaction_ref, template=explorer_template, chain=chain)
    if link:
        lines.append(f"Tx Link: {link}")
    if intent.child_id:
        lines.append(f"Child ID: {intent.child_id}")
    lines.append(f"Reason: {trim_reason(intent.reason)}")
    if intent.status is IntentStatus.PENDING_APPROVAL:
        lines.append(
            f"Action: treasuryagent approve {intent.id} | treasuryagent reject {intent.id} --reason <reason>"
        )
    lines.append(f"At: {format_timestamp(at or utc_now())}")

    message = "\n".join(lines)
    if len(message) <= MAX_MESSAGE_LENGTH:
        return message
    return message[: MAX_MESSAGE_LENGTH - 3] + "..."


class TelegramNotifier:
    """Posts alerts through the Bot API ``sendMessage`` method."""

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        *,
        api_url: str = "https://api.telegram.org",
        explorer_template: str | None = None,
        chain: str | None = None,
        timeout: float = 10.0,
        client: httpx.Client | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self.chat_id = chat_id
        self.explorer_template = explorer_template
        self.chain = chain
        self._endpoint = f"{api_url.rstrip('/')}/bot{bot_token}/sendMessage"
        self._owns_client = client is None
        self.client = client or httpx.Client(timeout=timeout)
        self._now = now or utc_now

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def __enter__(self) -> "TelegramNotifier":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def notify(
        self,
        event: AlertEvent,
        intent: TransferIntent,
        *,
        previous_status: IntentStatus | None = None,
    ) -> None:
        text = build_alert_message(
            event,
            intent,
            previous_status=previous_status,
            explorer_template=self.explorer_template,
            chain=self.chain,
            at=self._now(),
        )
        payload = {"chat_id": self.chat_id, "text": text, "disable_web_page_preview": True}
        try:
            response = self.client.post(self._endpoint, json=payload)
        except httpx.HTTPError as exc:
            raise BackendError(f"Telegram sendMessage failed: {type(exc).__name__}") from exc
        if response.is_error:
            raise BackendError(
                f"Telegram sendMessage failed ({response.status_code}): {response.text[:300]}"
            )
        _logger.debug("telegram alert sent for intent %s (%s)", intent.id, event)
