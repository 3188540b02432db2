"""Editable treasury policy settings and their confirmation-gated update path."""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Mapping

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from .audit import SettingsAuditTrail
from .errors import ParseError, ValidationError
from .locking import locked_file
from .types import is_address, normalize_address, utc_now

_logger = logging.getLogger(__name__)

CONFIRMATION_PHRASE = "APPLY TREASURY SETTINGS"
MAX_SETTING_CENTS = 100_000_000
DEFAULT_ACTOR = "operator"

EDITABLE_KEYS = (
    "require_allowlist",
    "allowlist",
    "min_reserve_cents",
    "auto_approve_max_cents",
    "hard_per_transfer_cents",
    "hard_daily_limit_cents",
    "auto_execute_approved",
)
_CAMEL_KEYS = {to_camel(key): key for key in EDITABLE_KEYS}


class PolicySettings(BaseModel):
    """The values the policy evaluator reads on every evaluation."""

    model_config = {"frozen": True, "extra": "forbid"}

    require_allowlist: bool = True
    allowlist: tuple[str, ...] = ()
    min_reserve_cents: int = Field(default=500, ge=0, le=MAX_SETTING_CENTS)
    auto_approve_max_cents: int = Field(default=100, ge=0, le=MAX_SETTING_CENTS)
    hard_per_transfer_cents: int = Field(default=5_000, ge=1, le=MAX_SETTING_CENTS)
    hard_daily_limit_cents: int = Field(default=10_000, ge=1, le=MAX_SETTING_CENTS)
    auto_execute_approved: bool = False

    @field_validator("allowlist", mode="before")
    @classmethod
    def _normalize_allowlist(cls, value: Any) -> tuple[str, ...]:
        if value is None:
            return ()
        if isinstance(value, str):
            value = value.replace(",", " ").split()
        entries: list[str] = []
        invalid: list[str] = []
        for item in value:
            if not isinstance(item, str) or not item.strip():
                continue
            if not is_address(item):
                invalid.append(item.strip())
                continue
            address = normalize_address(item)
            if address not in entries:
                entries.append(address)
        if invalid:
            raise ValueError(f"invalid allowlist address(es): {', '.join(invalid[:3])}")
        return tuple(entries)

    @model_validator(mode="after")
    def _ceiling_within_cap(self) -> "PolicySettings":
        if self.auto_approve_max_cents > self.hard_per_transfer_cents:
            raise ValueError("auto_approve_max_cents cannot exceed hard_per_transfer_cents")
        return self

    def allows(self, address: str) -> bool:
        return normalize_address(address) in self.allowlist

    def values(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


def settings_diff(before: PolicySettings, after: PolicySettings) -> dict[str, dict[str, Any]]:
    """Return ``{key: {"before": old, "after": new}}`` for every changed key."""
    old, new = before.values(), after.values()
    return {
        key: {"before": old[key], "after": new[key]}
        for key in EDITABLE_KEYS
        if old[key] != new[key]
    }


def _summarize(exc: PydanticValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error["loc"])
        message = error["msg"].removeprefix("Value error, ")
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts)


class SettingsStore:
    """JSON-file settings with an audited, confirmation-gated update.

    Until the file exists, ``defaults`` (built from configuration) apply.
    """

    def __init__(
        self,
        path: Path,
        audit: SettingsAuditTrail,
        *,
        defaults: PolicySettings | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self.path = path
        self.audit = audit
        self.defaults = defaults or PolicySettings()
        self._now = now or utc_now
        self._lock_path = path.with_name(path.name + ".lock")

    def load(self) -> PolicySettings:
        if not self.path.exists():
            return self.defaults
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            return PolicySettings.model_validate(raw)
        except (OSError, json.JSONDecodeError, PydanticValidationError) as exc:
            raise ParseError(f"settings file {self.path} is unreadable: {exc}") from exc

    def describe(self) -> dict[str, Any]:
        return {
            "values": self.load().values(),
            "editableKeys": list(EDITABLE_KEYS),
            "confirmationPhrase": CONFIRMATION_PHRASE,
        }

    def update(
        self,
        *,
        confirmation_phrase: str | None,
        reason: str | None,
        actor: str | None,
        settings: Mapping[str, Any],
    ) -> PolicySettings:
        """Validate and persist ``settings`` on top of the current values.

        Keys may be snake_case or camelCase. Nothing is written or audited
        unless the whole result validates, and the new file replaces the old
        one only after its audit record has been appended.
        """
        if (confirmation_phrase or "").strip() != CONFIRMATION_PHRASE:
            raise ValidationError(f'confirmation phrase must be exactly "{CONFIRMATION_PHRASE}"')
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("a reason is required to change treasury settings")
        actor = (actor or "").strip() or DEFAULT_ACTOR

        changes: dict[str, Any] = {}
        for key, value in settings.items():
            name = _CAMEL_KEYS.get(key, key)
            if name not in EDITABLE_KEYS:
                raise ValidationError(f"unknown setting: {key}")
            changes[name] = value
        if not changes:
            raise ValidationError("no settings supplied")

        with locked_file(self._lock_path):
            before = self.load()
            try:
                after = PolicySettings.model_validate({**before.values(), **changes})
            except PydanticValidationError as exc:
                raise ValidationError(_summarize(exc)) from exc
            diff = settings_diff(before, after)
            staged = self._stage(after)
            try:
                self.audit.record_change(
                    actor=actor,
                    reason=reason,
                    diff=diff,
                    changed_keys=list(diff),
                    at=self._now(),
                )
            except BaseException:
                staged.unlink(missing_ok=True)
                raise
            os.replace(staged, self.path)
        _logger.info("treasury settings updated by %s (%d changed)", actor, len(diff))
        return after

    def _stage(self, settings: PolicySettings) -> Path:
        """Write ``settings`` next to the settings file; the caller publishes it."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(settings.values(), handle, indent=2, sort_keys=True)
            handle.write("\n")
            handle.flush()
            os.fsync(handle.fileno())
        return tmp_path
