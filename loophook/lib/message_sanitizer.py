"""Empty-message sanitizer for the messages-transform event.

Model APIs reject conversations containing a message with no content. A
message is valid when it has a non-empty text part or a tool part; anything
else gets a placeholder text part. The trailing assistant message is left
alone because it may still be streaming.

Messages are plain dicts of the host's shape:

    {"info": {"id": "m1", "role": "user"}, "parts": [{"type": "text", "text": ""}]}
"""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass
from typing import Any

PLACEHOLDER_TEXT = "[user interrupted]"
TOOL_PART_TYPES = frozenset({"tool", "tool_use", "tool_result"})


@dataclass
class SanitizeResult:
    messages: list[dict[str, Any]]
    sanitized_count: int

    @property
    def modified(self) -> bool:
        return self.sanitized_count > 0


def _is_blank_text_part(part: dict[str, Any]) -> bool:
    text = part.get("text")
    return part.get("type") == "text" and (text is None or not str(text).strip())


def has_text_content(part: dict[str, Any]) -> bool:
    return part.get("type") == "text" and bool(str(part.get("text") or "").strip())


def is_tool_part(part: dict[str, Any]) -> bool:
    return part.get("type") in TOOL_PART_TYPES


def has_valid_content(parts: list[dict[str, Any]]) -> bool:
    return any(has_text_content(p) or is_tool_part(p) for p in parts)


def _fill(part: dict[str, Any], placeholder: str) -> None:
    part["text"] = placeholder
    part["synthetic"] = True


def sanitize_message(
    message: dict[str, Any], is_last: bool, placeholder: str = PLACEHOLDER_TEXT
) -> bool:
    """Sanitize one message in place. Returns True if it was changed."""
    info = message.get("info") or {}
    if is_last and info.get("role") == "assistant":
        return False

    parts = message.setdefault("parts", [])

    if not has_valid_content(parts):
        for part in parts:
            if _is_blank_text_part(part):
                _fill(part, placeholder)
                return True

        new_part = {
            "id": f"synthetic_{uuid.uuid4().hex[:12]}",
            "messageID": info.get("id"),
            "sessionID": info.get("sessionID", ""),
            "type": "text",
            "text": placeholder,
            "synthetic": True,
        }
        insert_at = next((i for i, p in enumerate(parts) if is_tool_part(p)), len(parts))
        parts.insert(insert_at, new_part)
        return True

    # Valid message that still carries whitespace-only text parts
    sanitized = False
    for part in parts:
        if part.get("type") == "text" and part.get("text") is not None and not str(part["text"]).strip():
            _fill(part, placeholder)
            sanitized = True
    return sanitized


def sanitize_messages(
    messages: list[dict[str, Any]], placeholder: str = PLACEHOLDER_TEXT
) -> SanitizeResult:
    """Return a sanitized copy of the conversation. The input is not mutated."""
    result = copy.deepcopy([m for m in messages if isinstance(m, dict)])
    count = 0
    last = len(result) - 1
    for i, message in enumerate(result):
        if sanitize_message(message, i == last, placeholder):
            count += 1
    return SanitizeResult(messages=result, sanitized_count=count)
