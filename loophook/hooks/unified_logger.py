#!/usr/bin/env python3
"""
Unified hook logger.

Appends every dispatched event to a per-session JSONL audit log:
``<state_dir>/logs/<YYYYMMDD>-<shorthash>-hooks.jsonl``

Logging never fails the hook: any error is reported on stderr and dropped.
"""

import json
import os
import sys
import time
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import psutil
from pydantic import Field

from loophook.hooks.schemas import HookEvent, HookResponse
from loophook.lib.paths import get_hook_log_path


class HookLogEntry(HookEvent):
    """Single entry in the per-session hooks JSONL log.
    Inherits all fields from HookEvent, plus invocation metadata.

    Attributes:
        trace_id: Unique ID for this specific hook invocation
        logged_at: ISO timestamp when event was logged
        output: The response written to stdout
        handler_times: Seconds spent in each handler
        errors: Handler failures caught by the dispatcher
    """

    trace_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    logged_at: str
    output: dict | None = None
    handler_times: dict[str, float] = Field(default_factory=dict)
    errors: list[str] = Field(default_factory=list)


def _json_serializer(obj: Any) -> str:
    """Convert non-serializable objects to strings for JSON serialization."""
    return str(obj)


def _debug_metrics() -> dict[str, Any]:
    process = psutil.Process(os.getpid())
    mem_info = process.memory_info()
    return {
        "pid": os.getpid(),
        "ppid": os.getppid(),
        "mem_rss_mb": mem_info.rss / (1024 * 1024),
        "process_uptime": time.time() - process.create_time(),
    }


def log_hook_event(
    state_dir: Path,
    event: HookEvent,
    output: HookResponse | None = None,
    metadata: dict[str, Any] | None = None,
) -> Path | None:
    """
    Log a hook event to the per-session hooks log file.

    Returns the log path, or None if nothing was written.
    """
    metadata = metadata or {}
    try:
        log_path = get_hook_log_path(state_dir, event.session_id)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        log_entry = HookLogEntry(
            **event.model_dump(),
            logged_at=datetime.now(UTC).replace(microsecond=0).isoformat(),
            output=output.model_dump(by_alias=True, exclude_none=True) if output else None,
            handler_times=metadata.get("handler_times", {}),
            errors=metadata.get("errors", []),
        )

        log_dict = log_entry.model_dump(mode="json")
        log_dict["debug"] = _debug_metrics()

        with log_path.open("a") as f:
            json.dump(log_dict, f, separators=(",", ":"), default=_json_serializer)
            f.write("\n")
        return log_path

    except Exception as e:
        # Log error to stderr but don't crash the hook
        print(f"[unified_logger] Error logging hook event: {e}", file=sys.stderr)
        return None
