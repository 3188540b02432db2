"""Exclusive advisory file locks shared by every treasuryagent process.

The settings file, the settings audit trail and the outbox worker run are all
written by short-lived CLI/worker processes; cooperating processes serialize
through these locks. Unix uses fcntl.flock, Windows msvcrt.locking on the
first byte.
"""

from __future__ import annotations

import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, TextIO

if os.name == "nt":
    import msvcrt

    def _acquire(handle: TextIO) -> None:
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_LOCK, 1)

    def _release(handle: TextIO) -> None:
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)

else:
    import fcntl

    def _acquire(handle: TextIO) -> None:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)

    def _release(handle: TextIO) -> None:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


@contextmanager
def locked_file(path: Path) -> Iterator[TextIO]:
    """Open ``path`` in a+ mode and hold an exclusive lock until exit.

    The handle is positioned at end of file once the lock is held, so callers
    can append directly or seek(0) to read what is already there.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    handle = path.open("a+", encoding="utf-8", newline="")
    try:
        _acquire(handle)
        try:
            handle.seek(0, os.SEEK_END)
            yield handle
        finally:
            _release(handle)
    finally:
        handle.close()
