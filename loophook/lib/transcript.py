"""Read the host's last assistant response from a JSONL session transcript."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# Only the tail of long transcripts is scanned
MAX_TAIL_BYTES = 2 * 1024 * 1024


def _read_entries(path: Path) -> list[dict[str, Any]]:
    with path.open("rb") as f:
        f.seek(0, 2)
        size = f.tell()
        f.seek(max(0, size - MAX_TAIL_BYTES))
        data = f.read().decode("utf-8", errors="replace")

    entries = []
    for line in data.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            # First line of a tail read is usually partial
            continue
        if isinstance(entry, dict):
            entries.append(entry)
    return entries


def _message_text(message: Any) -> str:
    if isinstance(message, str):
        return message
    if not isinstance(message, dict):
        return ""
    content = message.get("content", "")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = [
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        ]
        return "\n".join(t for t in texts if t)
    return ""


def last_assistant_text(transcript_path: str | Path | None) -> str | None:
    """Text of the most recent assistant entry with text content.

    Returns None when the path is missing, unreadable or has no assistant text.
    """
    if not transcript_path:
        return None
    path = Path(transcript_path)
    try:
        entries = _read_entries(path)
    except OSError as e:
        logger.debug("Transcript %s unreadable: %s", path, e)
        return None

    for entry in reversed(entries):
        entry_type = entry.get("type") or entry.get("role")
        if entry_type != "assistant":
            continue
        text = _message_text(entry.get("message", entry))
        if text:
            return text
    return None
