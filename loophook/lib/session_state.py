"""Session metadata file management.

One small record per session (``state/<session_key>/session.json``) so that
independent hook processes can see when the session started, how many events
and prompts it has seen, and which event touched it last.

State is keyed by session_id, NOT project cwd: several host sessions can run
from the same project directory and must not share state.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, ValidationError

from loophook.lib import state_store
from loophook.lib.paths import get_session_file_path

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class SessionState(BaseModel):
    """Per-session metadata shared across hook invocations."""

    session_id: str
    started_at: str  # ISO timestamp
    last_event_at: str
    cwd: str | None = None

    event_count: int = 0
    # Increments on each user prompt
    turn_count: int = 0
    last_event: str | None = None

    @classmethod
    def create(cls, session_id: str, cwd: str | None = None) -> SessionState:
        """Create new session state."""
        now = _now_iso()
        return cls(session_id=session_id, started_at=now, last_event_at=now, cwd=cwd)

    @classmethod
    def load(cls, state_root: Path, session_id: str) -> SessionState | None:
        """Load session state from disk. Returns None if absent or invalid."""
        path = get_session_file_path(state_root, session_id)
        data = state_store.read_json(path)
        if data is None:
            return None
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            logger.warning("Invalid session state %s treated as absent: %s", path, e)
            return None

    @classmethod
    def get_or_create(
        cls, state_root: Path, session_id: str, cwd: str | None = None
    ) -> SessionState:
        return cls.load(state_root, session_id) or cls.create(session_id, cwd)

    def touch(self, event: str) -> None:
        """Record that an event was dispatched for this session."""
        self.event_count += 1
        self.last_event = event
        self.last_event_at = _now_iso()
        if event == "user-prompt-submit":
            self.turn_count += 1

    def save(self, state_root: Path) -> Path:
        """Save session state atomically. Returns the file path."""
        path = get_session_file_path(state_root, self.session_id)
        state_store.write_json_atomic(path, self.model_dump_json(indent=2))
        return path
