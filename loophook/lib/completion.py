"""Completion signal detection for long-running modes.

A mode only finishes when the host output carries the completion sentinel
and, when the mode requires it, enough independent evidence that the work is
actually done. Each piece of evidence is a weighted signal; confidence is the
capped sum of detected weights.

Subjective signals (the agent says it is done):
- promise token ``<promise>TASK COMPLETE</promise>``
- ``EXIT_SIGNAL: true`` inside a ``---RALPH_STATUS---`` block

Objective signals (the output shows it is done):
- completion keywords, tests passing, build success, all goals passing

The dual condition holds when at least one subjective signal and at least two
objective signals are detected.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from loophook.lib.goals import VerificationResult
    from loophook.lib.mode_state import ModeState

STATUS_BLOCK_START = "---RALPH_STATUS---"
STATUS_BLOCK_END = "---END_RALPH_STATUS---"

COMPLETION_KEYWORDS = (
    "all tasks complete",
    "work is done",
    "successfully completed",
    "finished all",
)

MIN_OBJECTIVE_SIGNALS = 2


class SignalType(StrEnum):
    PROMISE_TOKEN = "promise_token"
    EXIT_SIGNAL = "exit_signal"
    COMPLETION_KEYWORDS = "completion_keywords"
    TESTS_PASSING = "tests_passing"
    BUILD_SUCCESS = "build_success"
    GOALS_PASSING = "goals_passing"


SUBJECTIVE_SIGNALS = frozenset({SignalType.PROMISE_TOKEN, SignalType.EXIT_SIGNAL})

SIGNAL_WEIGHTS: dict[SignalType, int] = {
    SignalType.PROMISE_TOKEN: 40,
    SignalType.EXIT_SIGNAL: 30,
    SignalType.COMPLETION_KEYWORDS: 10,
    SignalType.TESTS_PASSING: 15,
    SignalType.BUILD_SUCCESS: 15,
    SignalType.GOALS_PASSING: 25,
}


@dataclass
class CompletionSignal:
    signal_type: SignalType
    weight: int
    detected: bool
    evidence: str | None = None


@dataclass
class CompletionSignals:
    signals: list[CompletionSignal] = field(default_factory=list)

    @property
    def confidence(self) -> int:
        return min(100, sum(s.weight for s in self.signals if s.detected))

    @property
    def has_subjective(self) -> bool:
        return any(s.detected and s.signal_type in SUBJECTIVE_SIGNALS for s in self.signals)

    @property
    def objective_count(self) -> int:
        return sum(
            1 for s in self.signals if s.detected and s.signal_type not in SUBJECTIVE_SIGNALS
        )

    def is_exit_allowed(self) -> bool:
        """Dual condition: subjective intent plus objective evidence."""
        return self.has_subjective and self.objective_count >= MIN_OBJECTIVE_SIGNALS

    def detected(self, signal_type: SignalType) -> bool:
        return any(s.detected for s in self.signals if s.signal_type == signal_type)


def detect_completion_promise(text: str, promise: str) -> bool:
    """True if the text contains the sentinel, tagged or bare."""
    if not text or not promise:
        return False
    if re.search(rf"<promise>\s*{re.escape(promise)}\s*</promise>", text):
        return True
    return promise in text


def extract_status_block(text: str) -> str | None:
    start = text.find(STATUS_BLOCK_START)
    if start == -1:
        return None
    end = text.find(STATUS_BLOCK_END, start)
    if end == -1:
        return None
    return text[start:end]


def parse_status_block(text: str) -> dict[str, str]:
    """Parse ``KEY: value`` lines of the status block into a dict."""
    block = extract_status_block(text)
    if block is None:
        return {}
    fields: dict[str, str] = {}
    for line in block.splitlines()[1:]:
        key, sep, value = line.partition(":")
        if sep:
            fields[key.strip().upper()] = value.strip()
    return fields


def detect_exit_signal(text: str) -> bool:
    block = extract_status_block(text or "")
    if block is None:
        return False
    return "EXIT_SIGNAL: true" in block or "EXIT_SIGNAL:true" in block


def detect_completion_signals(
    text: str,
    promise: str,
    goals_result: VerificationResult | None = None,
) -> CompletionSignals:
    """Evaluate every completion signal against one host output."""
    text = text or ""
    lowered = text.lower()

    goals_detected = False
    goals_evidence = None
    if goals_result is not None:
        total = len(goals_result.results)
        goals_detected = goals_result.all_passed and total > 0
        goals_evidence = f"{goals_result.passed_count}/{total} goals passed"

    detections = {
        SignalType.PROMISE_TOKEN: (detect_completion_promise(text, promise), None),
        SignalType.EXIT_SIGNAL: (detect_exit_signal(text), None),
        SignalType.COMPLETION_KEYWORDS: (any(k in lowered for k in COMPLETION_KEYWORDS), None),
        SignalType.TESTS_PASSING: ("tests passed" in text or "All tests pass" in text, None),
        SignalType.BUILD_SUCCESS: ("Build successful" in text or "build completed" in text, None),
        SignalType.GOALS_PASSING: (goals_detected, goals_evidence),
    }

    return CompletionSignals(
        signals=[
            CompletionSignal(signal_type, SIGNAL_WEIGHTS[signal_type], detected, evidence)
            for signal_type, (detected, evidence) in detections.items()
        ]
    )


def build_verification_feedback(
    signals: CompletionSignals,
    state: ModeState,
    goals_result: VerificationResult | None = None,
) -> list[str]:
    """List the checks a completion claim failed, in a stable order."""
    feedback: list[str] = []

    if state.require_dual_condition:
        if signals.confidence < state.min_confidence:
            feedback.append(
                f"Confidence {signals.confidence} is below minimum threshold "
                f"{state.min_confidence}"
            )
        if not signals.has_subjective:
            feedback.append("Missing subjective intent (promise or exit signal)")
        if signals.objective_count < MIN_OBJECTIVE_SIGNALS:
            feedback.append(
                f"Need {MIN_OBJECTIVE_SIGNALS}+ objective signals, "
                f"only have {signals.objective_count}"
            )

    if goals_result is not None:
        for result in goals_result.results:
            if not result.passed:
                line = f"Goal '{result.name}': {result.score:.1f} (target: {result.target:.1f})"
                if result.error:
                    line += f" [{result.error}]"
                feedback.append(line)

    if state.require_dual_condition and not signals.detected(SignalType.TESTS_PASSING):
        feedback.append("Tests not passing")

    return feedback or ["Unknown verification failure"]


def _original_task(state: ModeState) -> str:
    return f"Original task: {state.prompt}" if state.prompt else ""


def get_continuation_prompt(state: ModeState) -> str:
    label = state.mode.upper()
    return f"""<{state.mode}-continuation>

[{label} - ITERATION {state.iteration}/{state.max_iterations}]

The completion promise was not found in your last response. The work is NOT done.

1. Review your progress against the original task.
2. Check the todo list and continue from where you left off.
3. Report progress in a status block:

{STATUS_BLOCK_START}
STATUS: IN_PROGRESS | COMPLETE | BLOCKED
TESTS_STATUS: PASSING | FAILING | NOT_RUN
EXIT_SIGNAL: false | true
{STATUS_BLOCK_END}

4. When fully complete, set EXIT_SIGNAL: true and output: <promise>{state.completion_promise}</promise>

{_original_task(state)}

</{state.mode}-continuation>
"""


def get_verification_failure_prompt(state: ModeState, feedback: list[str]) -> str:
    label = state.mode.upper()
    failures = "\n".join(f"- {item}" for item in feedback)
    return f"""<{state.mode}-verification-failed>

[{label} - ITERATION {state.iteration}/{state.max_iterations} - VERIFICATION FAILED]

You signaled completion, but verification did not pass.

VERIFICATION FAILURES:
{failures}

Fix each issue, then output: <promise>{state.completion_promise}</promise>

{_original_task(state)}

</{state.mode}-verification-failed>
"""
