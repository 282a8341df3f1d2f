"""Path utilities - single source of truth for state file locations.

All persisted state lives under one state root (``<project>/.loophook`` by
default, or ``LOOPHOOK_STATE_DIR``):

    state/<session_key>/<mode>-state.json    mode records
    state/<session_key>/session.json         session metadata
    background-tasks/<session_key>/<id>.json background task records
    logs/<YYYYMMDD>-<short_hash>-hooks.jsonl  per-session hook log

``session_key`` is the short hash plus the SHA-256 of the full session id.

Every function takes the state root explicitly so tests can point the whole
store at a temporary directory.
"""

import hashlib
import os
import re
from datetime import UTC, datetime
from pathlib import Path

STATE_DIR_NAME = ".loophook"
SESSION_FILE_NAME = "session.json"

_SAFE_ID = re.compile(r"^[0-9a-z]+$")


def get_project_dir(cwd: str | None = None) -> Path:
    """Resolve the project directory for a hook invocation.

    Uses the event's working directory when present, then CLAUDE_PROJECT_DIR
    (set by the host during hook execution), then the process cwd.
    """
    if cwd:
        return Path(cwd).resolve()
    project_dir = os.environ.get("CLAUDE_PROJECT_DIR")
    if project_dir:
        return Path(project_dir).resolve()
    return Path.cwd().resolve()


def get_state_root(project_dir: Path) -> Path:
    """Get the state root, honoring LOOPHOOK_STATE_DIR."""
    override = os.environ.get("LOOPHOOK_STATE_DIR")
    if override:
        return Path(override)
    return project_dir / STATE_DIR_NAME


def get_session_short_hash(session_id: str) -> str:
    """Get 8-character identifier from session ID.

    Standard UUID-like IDs keep their 8-char prefix so log file names line
    up with host transcripts. Short or non-alphanumeric IDs fall back to a
    SHA-256 prefix, which is always filesystem-safe. Not unique across
    sessions; state directories use get_session_key.

    Args:
        session_id: Full session identifier

    Returns:
        8-character string
    """
    if len(session_id) >= 8:
        prefix = session_id[:8].lower()
        if _SAFE_ID.match(prefix):
            return prefix

    return hashlib.sha256(session_id.encode()).hexdigest()[:8]


def get_session_key(session_id: str) -> str:
    """Filesystem-safe directory name that identifies one session.

    The short hash keeps directories recognizable; the full SHA-256 digest of
    the whole id keeps sessions sharing a prefix apart.
    """
    digest = hashlib.sha256(session_id.encode()).hexdigest()
    return f"{get_session_short_hash(session_id)}-{digest}"


def get_session_state_dir(state_root: Path, session_id: str) -> Path:
    """Directory holding mode records and session metadata for one session."""
    return state_root / "state" / get_session_key(session_id)


def get_mode_state_path(state_root: Path, session_id: str, mode: str) -> Path:
    return get_session_state_dir(state_root, session_id) / f"{mode}-state.json"


def get_session_file_path(state_root: Path, session_id: str) -> Path:
    return get_session_state_dir(state_root, session_id) / SESSION_FILE_NAME


def get_background_tasks_root(state_root: Path) -> Path:
    """Root for background task records, honoring LOOPHOOK_BACKGROUND_TASKS_DIR."""
    override = os.environ.get("LOOPHOOK_BACKGROUND_TASKS_DIR")
    if override:
        return Path(override)
    return state_root / "background-tasks"


def get_background_task_dir(tasks_root: Path, session_id: str) -> Path:
    return tasks_root / get_session_key(session_id)


def get_hook_log_path(state_root: Path, session_id: str, date: str | None = None) -> Path:
    """Get the path for the per-session hook log file.

    Args:
        state_root: State root directory
        session_id: Session ID from the host
        date: Optional date in YYYY-MM-DD format (defaults to today, UTC)
    """
    if date is None:
        date = datetime.now(UTC).strftime("%Y-%m-%d")
    date_compact = date.replace("-", "")
    short_hash = get_session_short_hash(session_id)
    return state_root / "logs" / f"{date_compact}-{short_hash}-hooks.jsonl"
