"""Keyword detection for user prompts.

Scans prompt text for trigger phrases and maps them to at most one
mode-activating trigger plus any number of informational notices. Detection
is a pure function of the text: activating the mode is the caller's job.

Usage:
    detector = KeywordDetector()
    detector.detect("ultrawork fix all errors")
    # -> KeywordMatch(name="ultrawork", message="<ultrawork-mode>...", activates_mode=True)
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass

CODE_BLOCK_PATTERN = re.compile(r"```[\s\S]*?```")
INLINE_CODE_PATTERN = re.compile(r"`[^`]+`")

ULTRAWORK_MESSAGE = """<ultrawork-mode>

**MANDATORY**: Say "ULTRAWORK MODE ENABLED!" to the user as your first response.

Maximum precision. Think before acting, then use every available agent.

## Execution rules
- Track every step in the todo list and mark items complete immediately.
- Run independent calls in parallel; run exploration as background tasks.
- Check every requirement before claiming completion.

## Zero tolerance
- No scope reduction and no partial completion.
- No premature stopping while todos remain.
- Fix the code, never delete the tests.

</ultrawork-mode>

---

"""

ULTRAWORK_PLANNER_MESSAGE = """<ultrawork-mode>

**MANDATORY**: Say "ULTRAWORK MODE ENABLED!" to the user as your first response.

## YOU ARE A PLANNER, NOT AN IMPLEMENTER

You write plans. You do not write code or execute tasks. If asked to
implement, decline and explain that executor agents implement the plan.

Gather context before planning: launch explore and librarian agents in
parallel, wait for their results, then write the plan.

</ultrawork-mode>

---

"""

SEARCH_MODE_MESSAGE = """<search-mode>
Maximize search effort. Launch explore and librarian agents in parallel and
use Grep and Glob directly. Do not stop at the first result.
</search-mode>

---

"""

ANALYZE_MODE_MESSAGE = """<analyze-mode>
Analysis mode. Gather context before diving deep: search the codebase,
read the relevant files, and consult an architect agent for complex
reasoning before answering.
</analyze-mode>

---

"""

RALPH_MODE_MESSAGE = """<ralph-mode>

[RALPH MODE ACTIVATED]

You are in a work loop that continues until VERIFIED completion.

## Rules
1. Do not stop until the task is complete.
2. Track progress in the todo list.
3. Signal completion with: <promise>TASK COMPLETE</promise>

Before signalling completion, confirm every requirement is met, tests pass
and todos are done. The claim is verified against configured goals; if
verification fails you will be asked to continue.

## Status block (optional)

---RALPH_STATUS---
STATUS: IN_PROGRESS | COMPLETE | BLOCKED
TESTS_STATUS: PASSING | FAILING | NOT_RUN
EXIT_SIGNAL: false | true
---END_RALPH_STATUS---

</ralph-mode>

---

"""


def is_planner_agent(agent: str | None) -> bool:
    if not agent:
        return False
    lower = agent.lower()
    return "prometheus" in lower or "planner" in lower or lower == "plan"


def _ultrawork_message(agent: str | None) -> str:
    if is_planner_agent(agent):
        return ULTRAWORK_PLANNER_MESSAGE
    return ULTRAWORK_MESSAGE


@dataclass(frozen=True)
class KeywordPattern:
    """One row of the trigger table."""

    name: str
    pattern: re.Pattern[str]
    message_fn: Callable[[str | None], str]
    # Activating triggers start a persisted mode; the rest only add a notice
    activates_mode: bool = False

    def matches(self, text: str) -> bool:
        return self.pattern.search(text) is not None


@dataclass(frozen=True)
class KeywordMatch:
    name: str
    message: str
    activates_mode: bool


DEFAULT_PATTERNS: tuple[KeywordPattern, ...] = (
    KeywordPattern(
        name="ralph",
        pattern=re.compile(r"\b(ralph|don't stop|must complete|until done)\b", re.IGNORECASE),
        message_fn=lambda _agent: RALPH_MODE_MESSAGE,
        activates_mode=True,
    ),
    KeywordPattern(
        name="ultrawork",
        pattern=re.compile(r"\b(ultrawork|ulw)\b", re.IGNORECASE),
        message_fn=_ultrawork_message,
        activates_mode=True,
    ),
    KeywordPattern(
        name="search",
        pattern=re.compile(
            r"\b(?:search|find|locate|lookup|explore|discover|scan|grep|query"
            r"|where\s+is|show\s+me|list\s+all)\b",
            re.IGNORECASE,
        ),
        message_fn=lambda _agent: SEARCH_MODE_MESSAGE,
    ),
    KeywordPattern(
        name="analyze",
        pattern=re.compile(
            r"\b(?:analyze|analyse|investigate|examine|research|study|deep[\s-]?dive"
            r"|inspect|audit|debug|why\s+is|how\s+does|how\s+to)\b",
            re.IGNORECASE,
        ),
        message_fn=lambda _agent: ANALYZE_MODE_MESSAGE,
    ),
)


def remove_code_blocks(text: str) -> str:
    """Strip fenced code blocks and inline code spans before matching."""
    without_blocks = CODE_BLOCK_PATTERN.sub("", text)
    return INLINE_CODE_PATTERN.sub("", without_blocks)


class KeywordDetector:
    def __init__(self, patterns: tuple[KeywordPattern, ...] = DEFAULT_PATTERNS):
        self.patterns = patterns

    def detect_all(self, prompt: str, agent: str | None = None) -> list[KeywordMatch]:
        """Every matching trigger, in table order."""
        clean = remove_code_blocks(prompt or "")
        return [
            KeywordMatch(p.name, p.message_fn(agent), p.activates_mode)
            for p in self.patterns
            if p.matches(clean)
        ]

    def detect(self, prompt: str, agent: str | None = None) -> KeywordMatch | None:
        """Single response for a prompt, or None when nothing matches.

        A mode-activating trigger wins over informational ones. When only
        informational triggers match, their messages are concatenated in
        match order under the first trigger's name.
        """
        matches = self.detect_all(prompt, agent)
        if not matches:
            return None

        for match in matches:
            if match.activates_mode:
                return match

        return KeywordMatch(
            name=matches[0].name,
            message="".join(m.message for m in matches),
            activates_mode=False,
        )

    def primary_mode(self, prompt: str) -> str | None:
        """Name of the first mode-activating trigger in the prompt."""
        for match in self.detect_all(prompt):
            if match.activates_mode:
                return match.name
        return None
