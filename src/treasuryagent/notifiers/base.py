"""Alert interface for intent lifecycle events."""

from __future__ import annotations

from typing import Literal, Protocol

from ..types import IntentStatus, TransferIntent

AlertEvent = Literal["request_created", "status_changed"]


class Notifier(Protocol):
    """Delivers intent alerts. Callers treat delivery as best-effort."""

    def notify(
        self,
        event: AlertEvent,
        intent: TransferIntent,
        *,
        previous_status: IntentStatus | None = None,
    ) -> None:
        """Send one alert; raise BackendError if delivery fails."""
        ...
