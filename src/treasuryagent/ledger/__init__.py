"""Intent ledger interface and its SQLite implementation."""

from .base import IntentLedger
from .sqlite import SQLiteIntentLedger

__all__ = (
    "IntentLedger",
    "SQLiteIntentLedger",
)
