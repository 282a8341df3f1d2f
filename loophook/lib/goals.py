"""Goal verification: run scoring commands and compare against targets.

Each goal is a shell command that prints a score between 0 and 100 as the
last parseable line of its stdout. The command runs through ``sh -c`` in the
project root (or the goal's workspace subdirectory) under a hard timeout.

Every failure mode ends up in ``GoalCheckResult.error``; nothing here raises
for a misbehaving command, and one goal never affects another.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from loophook.lib.config import GoalConfig, LoopHookConfig

logger = logging.getLogger(__name__)

SCORE_MIN = 0.0
SCORE_MAX = 100.0
# Bound on waiting for a killed process group to be reaped
REAP_TIMEOUT_SECONDS = 5


class GoalError(Exception):
    """A scoring command did not produce a usable score."""


@dataclass
class GoalCheckResult:
    name: str
    score: float
    target: float
    passed: bool
    duration_ms: int
    checked_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    error: str | None = None

    @classmethod
    def success(cls, name: str, score: float, target: float, duration_ms: int) -> GoalCheckResult:
        return cls(
            name=name, score=score, target=target, passed=score >= target, duration_ms=duration_ms
        )

    @classmethod
    def failure(cls, name: str, target: float, error: str, duration_ms: int = 0) -> GoalCheckResult:
        return cls(
            name=name, score=0.0, target=target, passed=False, duration_ms=duration_ms, error=error
        )


@dataclass
class VerificationResult:
    all_passed: bool
    results: list[GoalCheckResult]
    iteration: int = 0
    checked_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    @property
    def passed_count(self) -> int:
        return sum(1 for r in self.results if r.passed)

    def summary(self) -> str:
        lines = [f"Goals: {self.passed_count}/{len(self.results)} passed"]
        for r in self.results:
            mark = "✓" if r.passed else "✗"
            lines.append(f"{mark} {r.name}: {r.score:.1f}/{r.target:.1f}")
        return "\n".join(lines)


@dataclass
class VerifyOptions:
    check_interval_secs: float = 30
    max_iterations: int = 100
    max_duration_secs: float | None = None
    on_progress: Callable[[VerificationResult], None] | None = None


def parse_score(output: str) -> float:
    """Return the last line of ``output`` that parses as a float.

    Raises:
        GoalError: empty output, no numeric line, or a score outside 0-100.
    """
    trimmed = output.strip()
    if not trimmed:
        raise GoalError("Empty output")

    for line in reversed(trimmed.splitlines()):
        try:
            score = float(line.strip())
        except ValueError:
            continue
        if not SCORE_MIN <= score <= SCORE_MAX:
            raise GoalError(f"Score {score} is out of valid range (0-100)")
        return score

    raise GoalError(f"Could not parse score from: {trimmed[:100]}")


def _kill_process_group(proc: subprocess.Popen) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        proc.kill()
    try:
        proc.communicate(timeout=REAP_TIMEOUT_SECONDS)
    except subprocess.TimeoutExpired:
        logger.warning("Process group %s not reaped after SIGKILL", proc.pid)


class GoalRunner:
    def __init__(self, project_root: Path, default_timeout_secs: float = 60):
        self.project_root = Path(project_root)
        self.default_timeout_secs = default_timeout_secs

    def _working_dir(self, goal: GoalConfig) -> Path:
        if goal.workspace:
            return self.project_root / goal.workspace
        return self.project_root

    def run_goal_command(self, goal: GoalConfig) -> float:
        """Run the goal's command and parse its score.

        The command gets its own process group so a timeout kills any
        children it spawned, not just the shell.
        """
        timeout = goal.timeout_secs or self.default_timeout_secs
        try:
            proc = subprocess.Popen(
                ["sh", "-c", goal.command],
                cwd=self._working_dir(goal),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                start_new_session=True,
            )
        except OSError as e:
            raise GoalError(f"IO error: {e}") from e

        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired as e:
            _kill_process_group(proc)
            raise GoalError(f"Command timed out after {timeout:g} seconds") from e

        if proc.returncode != 0:
            if stderr.strip():
                logger.debug("Goal %s stderr: %s", goal.name, stderr.strip()[:500])
            raise GoalError(f"Command failed with exit code {proc.returncode}")

        return parse_score(stdout)

    def check_goal(self, goal: GoalConfig) -> GoalCheckResult:
        start = time.monotonic()
        try:
            score = self.run_goal_command(goal)
        except GoalError as e:
            duration_ms = int((time.monotonic() - start) * 1000)
            logger.info("Goal %s failed: %s", goal.name, e)
            return GoalCheckResult.failure(goal.name, goal.target, str(e), duration_ms)

        duration_ms = int((time.monotonic() - start) * 1000)
        return GoalCheckResult.success(goal.name, score, goal.target, duration_ms)

    def check_all(self, goals: list[GoalConfig], iteration: int = 0) -> VerificationResult:
        """Check every enabled goal in order. Disabled goals are skipped."""
        results = [self.check_goal(goal) for goal in goals if goal.enabled]
        return VerificationResult(
            all_passed=all(r.passed for r in results),
            results=results,
            iteration=iteration,
        )

    def verify_until_complete(
        self, goals: list[GoalConfig], options: VerifyOptions | None = None
    ) -> VerificationResult:
        """Re-check goals on an interval until they all pass or a limit is hit."""
        options = options or VerifyOptions()
        start = time.monotonic()
        iteration = 0

        while True:
            iteration += 1
            result = self.check_all(goals, iteration=iteration)

            if options.on_progress is not None:
                options.on_progress(result)

            if result.all_passed or iteration >= options.max_iterations:
                return result

            if (
                options.max_duration_secs is not None
                and time.monotonic() - start >= options.max_duration_secs
            ):
                return result

            time.sleep(options.check_interval_secs)


def check_goal(directory: Path, goal: GoalConfig) -> GoalCheckResult:
    return GoalRunner(directory).check_goal(goal)


def check_goals(directory: Path, goals: list[GoalConfig]) -> VerificationResult:
    return GoalRunner(directory).check_all(goals)


def check_goals_from_config(config: LoopHookConfig) -> VerificationResult | None:
    """Run the project's configured goals.

    Returns None when verification is off or no goals are configured, so
    callers can treat "nothing to verify" as passing.
    """
    goals_config = config.goals
    if not goals_config.auto_verify or not goals_config.goals:
        return None
    runner = GoalRunner(config.project_dir, config.default_goal_timeout_secs)
    return runner.check_all(goals_config.goals)


def verify_from_config(
    config: LoopHookConfig, on_progress: Callable[[VerificationResult], None] | None = None
) -> VerificationResult | None:
    """Loop over the configured goals using the configured interval and limits."""
    goals_config = config.goals
    if not goals_config.goals:
        return None
    options = VerifyOptions(
        check_interval_secs=goals_config.check_interval_secs,
        max_iterations=goals_config.max_iterations,
        on_progress=on_progress,
    )
    runner = GoalRunner(config.project_dir, config.default_goal_timeout_secs)
    return runner.verify_until_complete(goals_config.goals, options)
