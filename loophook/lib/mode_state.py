"""Persisted state machine for long-running modes (ralph, ultrawork).

One record per (session, mode) at ``state/<session_key>/<mode>-state.json``.
Every hook process that touches a mode reads the whole record, decides, and
writes the whole record back; there is no in-place patching.

Lifecycle:

    inactive -> active -> (advancing)* -> completed | expired | user_stopped

- ``activate`` is idempotent: a running, unexpired record is left untouched.
- ``advance`` is called on each stop event with the host's last output. It
  increments the iteration and either completes the mode (sentinel found and
  verification passed), expires it (iteration reached max_iterations), or
  asks the dispatcher to force the host to keep working.
- ``check_expiry`` deactivates records older than their TTL.
- ``user_stop`` deactivates unconditionally.

Unreadable or invalid records are treated as inactive.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, field_validator

from loophook.lib import state_store
from loophook.lib.completion import (
    build_verification_feedback,
    detect_completion_promise,
    detect_completion_signals,
    get_continuation_prompt,
    get_verification_failure_prompt,
)
from loophook.lib.config import LoopHookConfig
from loophook.lib.goals import VerificationResult, check_goals_from_config
from loophook.lib.paths import get_mode_state_path

logger = logging.getLogger(__name__)

# Priority order: the first running mode owns the stop event
MODE_NAMES = ("ralph", "ultrawork")

MAX_HISTORY = 20


class ModeStatus(StrEnum):
    ACTIVE = "active"
    COMPLETED = "completed"
    EXPIRED = "expired"
    USER_STOPPED = "user_stopped"


class IterationRecord(BaseModel):
    iteration: int
    timestamp: datetime
    output_chars: int = 0
    confidence: int | None = None
    outcome: str = "continue"


class ModeState(BaseModel):
    """Persisted record for one mode in one session."""

    mode: str
    active: bool = True
    status: ModeStatus = ModeStatus.ACTIVE
    iteration: int = Field(default=0, ge=0)
    max_iterations: int = Field(default=10, ge=1)
    completion_promise: str = "TASK COMPLETE"
    session_id: str
    prompt: str | None = None
    started_at: datetime
    last_checked_at: datetime
    min_confidence: int = Field(default=50, ge=0, le=100)
    require_dual_condition: bool = True
    session_hours: float = 24
    history: list[IterationRecord] = Field(default_factory=list)
    last_feedback: list[str] | None = None

    @field_validator("started_at", "last_checked_at")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @property
    def is_running(self) -> bool:
        return self.active and self.status == ModeStatus.ACTIVE

    def is_expired(self, now: datetime | None = None) -> bool:
        """True once the record is at least ``session_hours`` old."""
        now = now or datetime.now(UTC)
        return now - self.started_at >= timedelta(hours=self.session_hours)

    def finish(self, status: ModeStatus, now: datetime) -> None:
        self.active = False
        self.status = status
        self.last_checked_at = now

    def record(self, now: datetime, output: str, confidence: int | None, outcome: str) -> None:
        self.history.append(
            IterationRecord(
                iteration=self.iteration,
                timestamp=now,
                output_chars=len(output),
                confidence=confidence,
                outcome=outcome,
            )
        )
        del self.history[:-MAX_HISTORY]


@dataclass
class AdvanceOutcome:
    """What the dispatcher should do after a stop event for one mode."""

    mode: str
    status: ModeStatus | None
    iteration: int = 0
    # Override the host's natural stop
    demand_continuation: bool = False
    # Prompt fed back to the agent when continuation is demanded
    reason: str | None = None
    # User-visible notice when the mode ends
    message: str | None = None
    confidence: int | None = None
    feedback: list[str] = field(default_factory=list)

    @classmethod
    def inactive(cls, mode: str) -> AdvanceOutcome:
        return cls(mode=mode, status=None)


GoalChecker = Callable[[], VerificationResult | None]


class ModeStateMachine:
    """Operations on one mode's record for one session."""

    def __init__(
        self,
        config: LoopHookConfig,
        session_id: str,
        mode: str = "ralph",
        goal_checker: GoalChecker | None = None,
    ):
        self.config = config
        self.session_id = session_id
        self.mode = mode
        self._goal_checker = goal_checker or (lambda: check_goals_from_config(config))

    @property
    def path(self) -> Path:
        return get_mode_state_path(self.config.state_dir, self.session_id, self.mode)

    def read(self) -> ModeState | None:
        data = state_store.read_json(self.path)
        if data is None:
            return None
        try:
            return ModeState.model_validate(data)
        except ValidationError as e:
            logger.warning("Invalid %s state treated as inactive: %s", self.mode, e)
            return None

    def write(self, state: ModeState) -> None:
        state_store.write_json_atomic(self.path, state.model_dump_json(indent=2))

    def is_active(self, now: datetime | None = None) -> bool:
        state = self.read()
        return state is not None and state.is_running and not state.is_expired(now)

    def activate(self, prompt: str, now: datetime | None = None, **overrides) -> ModeState:
        """Start the mode unless it is already running.

        ``overrides`` replace individual mode defaults (e.g. max_iterations).
        """
        now = now or datetime.now(UTC)
        with state_store.locked(self.path):
            existing = self.read()
            if existing is not None and existing.is_running and not existing.is_expired(now):
                logger.debug("%s already active for %s", self.mode, self.session_id)
                return existing

            defaults = self.config.mode_defaults.model_dump()
            defaults.update(overrides)
            state = ModeState(
                mode=self.mode,
                session_id=self.session_id,
                prompt=prompt,
                started_at=now,
                last_checked_at=now,
                **defaults,
            )
            self.write(state)
            logger.info("Activated %s for session %s", self.mode, self.session_id)
            return state

    def check_expiry(self, now: datetime | None = None) -> bool:
        """Deactivate the record if it outlived its TTL. Returns True if expired."""
        now = now or datetime.now(UTC)
        with state_store.locked(self.path):
            state = self.read()
            if state is None or not state.is_running or not state.is_expired(now):
                return False
            state.finish(ModeStatus.EXPIRED, now)
            self.write(state)
        logger.info("%s expired for session %s (TTL %sh)", self.mode, self.session_id, state.session_hours)
        return True

    def user_stop(self, now: datetime | None = None) -> ModeState | None:
        """Deactivate unconditionally. Returns the stopped record, if any."""
        now = now or datetime.now(UTC)
        with state_store.locked(self.path):
            state = self.read()
            if state is None or not state.is_running:
                return state
            state.finish(ModeStatus.USER_STOPPED, now)
            self.write(state)
        logger.info("%s stopped by user for session %s", self.mode, self.session_id)
        return state

    def advance(self, host_output: str, now: datetime | None = None) -> AdvanceOutcome:
        """Process one stop event against the host's last output."""
        now = now or datetime.now(UTC)
        host_output = host_output or ""

        snapshot = self.read()
        if snapshot is None or not snapshot.is_running:
            return AdvanceOutcome.inactive(self.mode)
        if snapshot.is_expired(now):
            self.check_expiry(now)
            return AdvanceOutcome(
                mode=self.mode,
                status=ModeStatus.EXPIRED,
                iteration=snapshot.iteration,
                message=f"[{self.mode.upper()} EXPIRED] Mode older than "
                f"{snapshot.session_hours:g}h; deactivated.",
            )

        # Goal commands can be slow, so they run before the lock is taken
        claims_completion = detect_completion_promise(host_output, snapshot.completion_promise)
        goals_result = self._goal_checker() if claims_completion else None

        with state_store.locked(self.path):
            state = self.read()
            if state is None or not state.is_running:
                return AdvanceOutcome.inactive(self.mode)
            outcome = self._step(state, host_output, claims_completion, goals_result, now)
            self.write(state)
        return outcome

    def _step(
        self,
        state: ModeState,
        host_output: str,
        claims_completion: bool,
        goals_result: VerificationResult | None,
        now: datetime,
    ) -> AdvanceOutcome:
        state.iteration = min(state.iteration + 1, state.max_iterations)
        state.last_checked_at = now
        label = self.mode.upper()

        confidence = None
        feedback: list[str] = []
        if claims_completion:
            signals = detect_completion_signals(
                host_output, state.completion_promise, goals_result
            )
            confidence = signals.confidence
            goals_passed = goals_result is None or goals_result.all_passed
            if state.require_dual_condition:
                verified = (
                    signals.is_exit_allowed()
                    and signals.confidence >= state.min_confidence
                    and goals_passed
                )
            else:
                verified = goals_passed

            if verified:
                state.finish(ModeStatus.COMPLETED, now)
                state.last_feedback = None
                state.record(now, host_output, confidence, "completed")
                return AdvanceOutcome(
                    mode=self.mode,
                    status=ModeStatus.COMPLETED,
                    iteration=state.iteration,
                    confidence=confidence,
                    message=f"[{label} COMPLETE] Verification passed after "
                    f"{state.iteration} iterations (confidence: {confidence}%).",
                )
            feedback = build_verification_feedback(signals, state, goals_result)

        if state.iteration >= state.max_iterations:
            state.finish(ModeStatus.EXPIRED, now)
            state.last_feedback = feedback or None
            state.record(now, host_output, confidence, "expired")
            return AdvanceOutcome(
                mode=self.mode,
                status=ModeStatus.EXPIRED,
                iteration=state.iteration,
                confidence=confidence,
                feedback=feedback,
                message=f"[{label} LOOP STOPPED] Max iterations ({state.max_iterations}) "
                "reached without verified completion.",
            )

        if feedback:
            state.last_feedback = feedback
            state.record(now, host_output, confidence, "verification_failed")
            reason = get_verification_failure_prompt(state, feedback)
        else:
            state.record(now, host_output, confidence, "continue")
            reason = get_continuation_prompt(state)

        return AdvanceOutcome(
            mode=self.mode,
            status=ModeStatus.ACTIVE,
            iteration=state.iteration,
            demand_continuation=True,
            reason=reason,
            confidence=confidence,
            feedback=feedback,
        )


def running_modes(
    config: LoopHookConfig,
    session_id: str,
    now: datetime | None = None,
    goal_checker: GoalChecker | None = None,
) -> list[ModeStateMachine]:
    """Machines for every mode currently running in the session, in priority order."""
    machines = [
        ModeStateMachine(config, session_id, mode, goal_checker=goal_checker)
        for mode in MODE_NAMES
    ]
    return [m for m in machines if m.is_active(now)]
