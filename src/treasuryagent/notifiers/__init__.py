"""Notifiers package - intent alerts for operators."""

from .base import AlertEvent, Notifier
from .telegram import TelegramNotifier, build_alert_message, build_tx_link

__all__ = [
    "AlertEvent",
    "Notifier",
    "TelegramNotifier",
    "build_alert_message",
    "build_tx_link",
]
