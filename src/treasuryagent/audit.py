"""Append-only, hash-chained audit trail of policy settings changes."""

from __future__ import annotations

import hashlib
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, TextIO

from pydantic import Field
from pydantic import ValidationError as PydanticValidationError

from .errors import AuditLogError, AuditVerificationError
from .locking import locked_file
from .types import WireModel, format_timestamp, utc_now

_logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 25
MAX_LIST_LIMIT = 200
TAIL_READ_CHUNK_SIZE = 4096


class AuditRecord(WireModel):
    at: datetime
    actor: str
    reason: str
    changed_setting_keys: list[str] = Field(default_factory=list)
    diff: dict[str, dict[str, Any]] = Field(default_factory=dict)
    prev_entry_hash: str | None = None
    entry_hash: str


def canonical_json(value: object) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def compute_entry_hash(payload: dict[str, Any]) -> str:
    """SHA-256 of the canonical record with ``entryHash`` removed."""
    body = {key: value for key, value in payload.items() if key != "entryHash"}
    return hashlib.sha256(canonical_json(body).encode("utf-8")).hexdigest()


def clamp_limit(limit: int | None) -> int:
    if limit is None:
        return DEFAULT_LIST_LIMIT
    return max(1, min(MAX_LIST_LIMIT, int(limit)))


@dataclass(frozen=True)
class SettingsAuditTrail:
    path: Path
    now: Callable[[], datetime] = field(default=utc_now)

    def record_change(
        self,
        *,
        actor: str,
        reason: str,
        diff: dict[str, dict[str, Any]],
        changed_keys: Iterable[str],
        at: datetime | None = None,
    ) -> AuditRecord:
        """Append one record, chained to the previous entry under the file lock."""
        try:
            with locked_file(self.path) as handle:
                prev_hash = _read_last_entry_hash(handle)
                payload: dict[str, Any] = {
                    "at": format_timestamp(at or self.now()),
                    "actor": actor,
                    "reason": reason,
                    "changedSettingKeys": list(changed_keys),
                    "diff": diff,
                    "prevEntryHash": prev_hash,
                }
                payload["entryHash"] = compute_entry_hash(payload)
                handle.seek(0, os.SEEK_END)
                handle.write(canonical_json(payload) + "\n")
                handle.flush()
                os.fsync(handle.fileno())
        except OSError as exc:
            raise AuditLogError(f"cannot append to {self.path}: {exc}") from exc
        _logger.info(
            "settings change recorded by %s: %s", actor, ", ".join(payload["changedSettingKeys"])
        )
        return AuditRecord.model_validate(payload)

    def list_recent(self, limit: int | None = DEFAULT_LIST_LIMIT) -> list[AuditRecord]:
        """Newest first; malformed lines are skipped."""
        wanted = clamp_limit(limit)
        if not self.path.exists():
            return []
        lines = self.path.read_text(encoding="utf-8").splitlines()
        records: list[AuditRecord] = []
        for line in reversed(lines):
            if len(records) >= wanted:
                break
            record = _parse_line(line)
            if record is not None:
                records.append(record)
        return records

    def verify(self) -> int:
        """Check the whole chain and return the number of verified records."""
        if not self.path.exists():
            return 0
        try:
            with locked_file(self.path) as handle:
                handle.seek(0)
                return _verify_lines(handle)
        except OSError as exc:
            raise AuditVerificationError(f"cannot read {self.path}: {exc}") from exc


def _parse_line(line: str) -> AuditRecord | None:
    if not line.strip():
        return None
    try:
        return AuditRecord.model_validate(json.loads(line))
    except (json.JSONDecodeError, PydanticValidationError):
        _logger.debug("skipping malformed audit line")
        return None


def _verify_lines(lines: Iterator[str] | TextIO) -> int:
    prev_hash: str | None = None
    count = 0
    for line_number, raw_line in enumerate(lines, start=1):
        line = raw_line.rstrip("\n")
        if not line:
            raise AuditVerificationError(f"empty line at {line_number}")
        try:
            payload = json.loads(line)
        except json.JSONDecodeError as exc:
            raise AuditVerificationError(f"invalid JSON at line {line_number}") from exc
        if not isinstance(payload, dict):
            raise AuditVerificationError(f"line {line_number} is not an object")
        if payload.get("prevEntryHash") != prev_hash:
            raise AuditVerificationError(f"chain broken at line {line_number}")
        entry_hash = payload.get("entryHash")
        if entry_hash != compute_entry_hash(payload):
            raise AuditVerificationError(f"entry hash mismatch at line {line_number}")
        prev_hash = entry_hash
        count += 1
    return count


def _read_last_entry_hash(handle: TextIO) -> str | None:
    """Return the last record's entryHash without scanning the whole file."""
    raw = handle.buffer  # type: ignore[attr-defined]
    raw.seek(0, os.SEEK_END)
    size = raw.tell()
    if size == 0:
        return None

    data = b""
    pos = size
    while pos > 0:
        read_size = min(TAIL_READ_CHUNK_SIZE, pos)
        pos -= read_size
        raw.seek(pos)
        data = raw.read(read_size) + data
        if b"\n" in data[:-1] or pos == 0:
            break

    last_line = data.rstrip(b"\n").split(b"\n")[-1].strip()
    if not last_line:
        return None
    try:
        last = json.loads(last_line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise AuditLogError("audit trail tail is not valid JSON") from exc
    entry_hash = last.get("entryHash") if isinstance(last, dict) else None
    if not isinstance(entry_hash, str):
        raise AuditLogError("audit trail tail has no entryHash")
    return entry_hash
