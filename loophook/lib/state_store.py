"""Filesystem mailbox for cross-invocation state.

Each hook event runs in a fresh process, so the only shared medium is the
state directory. Records are whole JSON documents: writers replace the file
via a temp file and rename, readers treat anything unreadable as absent.

Read-check-write sequences that must not interleave across processes
(idempotent activation, notification read-then-mark) run under ``locked()``.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from filelock import FileLock, Timeout

logger = logging.getLogger(__name__)

LOCK_TIMEOUT_SECONDS = 10


def read_json(path: Path) -> dict[str, Any] | None:
    """Read a JSON object from disk.

    Returns None when the file is missing, unreadable, not valid JSON or not
    a JSON object. Never raises.
    """
    try:
        text = path.read_text()
    except FileNotFoundError:
        return None
    except OSError as e:
        logger.warning("Failed to read %s: %s", path, e)
        return None

    if not text.strip():
        return None

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        logger.warning("Corrupt state file %s treated as absent: %s", path, e)
        return None

    if not isinstance(data, dict):
        logger.warning("State file %s does not hold an object; treated as absent", path)
        return None
    return data


def write_json_atomic(path: Path, data: dict[str, Any] | str) -> None:
    """Write a full record atomically (temp file in the same dir + rename).

    Accepts either a dict or an already-serialized JSON string (e.g. from
    ``model_dump_json``).
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = data if isinstance(data, str) else json.dumps(data, indent=2, default=str)

    fd, temp_path_str = tempfile.mkstemp(
        prefix=f".{path.stem}-", suffix=".tmp", dir=str(path.parent)
    )
    temp_path = Path(temp_path_str)
    try:
        with os.fdopen(fd, "w") as f:
            f.write(payload)
        temp_path.replace(path)
    except Exception:
        temp_path.unlink(missing_ok=True)
        raise


@contextmanager
def locked(path: Path, timeout: float = LOCK_TIMEOUT_SECONDS) -> Iterator[bool]:
    """Hold an advisory lock on ``<path>.lock`` for the duration of the block.

    Yields True when the lock was acquired. If the lock cannot be taken
    within ``timeout`` the block still runs (yielding False); callers fall
    back to the unlocked full-record-overwrite semantics rather than hang the
    host.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    lock = FileLock(str(path.with_suffix(path.suffix + ".lock")), timeout=timeout)
    try:
        lock.acquire()
    except Timeout:
        logger.warning("Lock timeout on %s after %ss; continuing unlocked", path, timeout)
        yield False
        return

    try:
        yield True
    finally:
        lock.release()
