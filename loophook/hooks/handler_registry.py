"""
Handler Registry: Defines the logic for each dispatch handler.

Each handler takes the normalized HookEvent and the per-invocation
HandlerRuntime and returns a HandlerResult, or None when it has nothing to
contribute. Handlers are looked up by name from HANDLER_CHECKS in the order
given by handler_config.HANDLER_EXECUTION_ORDER.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from functools import cached_property

from loophook.hooks.handler_config import (
    AGENT_SPAWN_TOOL,
    AGENTS_REQUIRING_CUSTOM_ROUTING,
    SHELL_TOOL_NAMES,
    TASK_TOOL_NAMES,
)
from loophook.hooks.schemas import HookEvent
from loophook.lib.background_tasks import BackgroundTaskRegistry
from loophook.lib.config import LoopHookConfig
from loophook.lib.handler_model import HandlerResult
from loophook.lib.keyword_detector import KeywordDetector
from loophook.lib.message_sanitizer import sanitize_messages
from loophook.lib.mode_state import MODE_NAMES, GoalChecker, ModeStateMachine, running_modes
from loophook.lib.non_interactive_env import banned_command_warning, session_start_notice
from loophook.lib.session_state import SessionState
from loophook.lib.transcript import last_assistant_text

logger = logging.getLogger(__name__)


@dataclass
class HandlerRuntime:
    """Everything a handler may touch during one invocation."""

    config: LoopHookConfig
    session: SessionState | None = None
    detector: KeywordDetector = field(default_factory=KeywordDetector)
    goal_checker: GoalChecker | None = None

    @cached_property
    def registry(self) -> BackgroundTaskRegistry:
        return BackgroundTaskRegistry(self.config)

    def machine(self, session_id: str, mode: str) -> ModeStateMachine:
        return ModeStateMachine(self.config, session_id, mode, goal_checker=self.goal_checker)


Handler = Callable[[HookEvent, HandlerRuntime], HandlerResult | None]


# --- Session ---


def check_session_start(ctx: HookEvent, rt: HandlerRuntime) -> HandlerResult | None:
    """(Re)initialize session metadata."""
    rt.session = SessionState.create(ctx.session_id, ctx.cwd)
    rt.session.touch(ctx.kind.value)
    return HandlerResult.allow(metadata={"session_started_at": rt.session.started_at})


def check_non_interactive_env(ctx: HookEvent, rt: HandlerRuntime) -> HandlerResult | None:
    notice = session_start_notice()
    if notice is None:
        return None
    return HandlerResult.allow(message=notice)


# --- Background tasks ---


def check_background_events(ctx: HookEvent, rt: HandlerRuntime) -> HandlerResult | None:
    """Apply task lifecycle updates carried by the event.

    Two sources: an explicit ``event`` object in the payload, and a finished
    host Task tool call whose response names the spawned agent.
    """
    updated = []

    if ctx.background_event:
        task = rt.registry.handle_event(ctx.background_event)
        if task is not None:
            updated.append(task.id)

    if ctx.tool_name in TASK_TOOL_NAMES and isinstance(ctx.tool_output, dict):
        agent_id = ctx.tool_output.get("agentId")
        if agent_id:
            task = rt.registry.notify(
                {"type": "task.completed", "properties": {"taskId": agent_id}}
            )
            if task is not None:
                updated.append(task.id)

    if not updated:
        return None
    return HandlerResult.allow(metadata={"background_tasks_updated": updated})


def check_background_notifications(ctx: HookEvent, rt: HandlerRuntime) -> HandlerResult | None:
    result = rt.registry.check_notifications(ctx.session_id)
    if not result.has_notifications:
        return None
    return HandlerResult.allow(
        message=result.message, metadata={"notification_count": result.count}
    )


def check_background_context(ctx: HookEvent, rt: HandlerRuntime) -> HandlerResult | None:
    """Surface finished background tasks to the agent between tool calls."""
    result = rt.registry.check_notifications(ctx.session_id)
    if not result.has_notifications:
        return None
    return HandlerResult.allow(
        context_injection=result.message, metadata={"notification_count": result.count}
    )


# --- Keywords and modes ---


def check_keyword_detection(ctx: HookEvent, rt: HandlerRuntime) -> HandlerResult | None:
    if not ctx.prompt.strip():
        return None

    match = rt.detector.detect(ctx.prompt, ctx.agent)
    if match is None:
        return None

    metadata: dict = {"keyword": match.name}
    if match.activates_mode:
        try:
            state = rt.machine(ctx.session_id, match.name).activate(ctx.prompt)
            metadata["mode_activated"] = match.name
            metadata["iteration"] = state.iteration
        except OSError as e:
            # The mode message still reaches the agent; only persistence failed
            logger.warning("Failed to activate %s: %s", match.name, e)

    return HandlerResult.allow(message=match.message, metadata=metadata)


def check_user_stop(ctx: HookEvent, rt: HandlerRuntime) -> HandlerResult | None:
    """An explicit user stop always wins over any running mode."""
    if not ctx.user_requested:
        return None

    stopped = []
    for mode in MODE_NAMES:
        state = rt.machine(ctx.session_id, mode).user_stop()
        if state is not None and state.status == "user_stopped":
            stopped.append(mode)
    return HandlerResult.allow(metadata={"user_stopped": stopped}, halt=True)


def check_mode_expiry(ctx: HookEvent, rt: HandlerRuntime) -> HandlerResult | None:
    expired = [
        mode for mode in MODE_NAMES if rt.machine(ctx.session_id, mode).check_expiry()
    ]
    if not expired:
        return None
    names = ", ".join(expired)
    return HandlerResult.allow(
        message=f"[MODE EXPIRED] {names} exceeded its time limit and was deactivated.",
        metadata={"modes_expired": expired},
    )


def check_mode_continuation(ctx: HookEvent, rt: HandlerRuntime) -> HandlerResult | None:
    """Advance the highest-priority running mode and force continuation if needed."""
    for machine in running_modes(rt.config, ctx.session_id, goal_checker=rt.goal_checker):
        mode = machine.mode
        output = ctx.host_output or last_assistant_text(ctx.transcript_path) or ""
        outcome = machine.advance(output)
        metadata = {
            "mode": mode,
            "iteration": outcome.iteration,
            "status": outcome.status.value if outcome.status else None,
            "confidence": outcome.confidence,
        }

        if outcome.demand_continuation:
            state = machine.read()
            limit = state.max_iterations if state else outcome.iteration
            return HandlerResult.block(
                reason=outcome.reason or f"{mode} mode is still active.",
                stop_reason=f"{mode} mode active (iteration {outcome.iteration}/{limit})",
                metadata=metadata,
            )
        if outcome.message:
            return HandlerResult.allow(message=outcome.message, metadata=metadata)
        return None
    return None


# --- Tool policy ---


def check_custom_routing(ctx: HookEvent, rt: HandlerRuntime) -> HandlerResult | None:
    if ctx.tool_name not in TASK_TOOL_NAMES:
        return None
    subagent_type = (
        ctx.tool_input.get("subagent_type") or ctx.tool_input.get("subagentType") or ""
    )
    if subagent_type not in AGENTS_REQUIRING_CUSTOM_ROUTING:
        return None

    agent_name = subagent_type.split(":", 1)[-1]
    return HandlerResult.block(
        reason=(
            f"Agent '{agent_name}' requires custom model routing. "
            f"Use the {AGENT_SPAWN_TOOL} tool instead:\n\n"
            f'{AGENT_SPAWN_TOOL}(agent="{agent_name}", prompt="your prompt here")'
        ),
        metadata={"blocked_agent": subagent_type},
    )


def check_interactive_command(ctx: HookEvent, rt: HandlerRuntime) -> HandlerResult | None:
    if ctx.tool_name not in SHELL_TOOL_NAMES:
        return None
    command = ctx.tool_input.get("command")
    if not isinstance(command, str):
        return None
    warning = banned_command_warning(command)
    if warning is None:
        return None
    return HandlerResult.warn(context_injection=warning)


# --- Messages ---


def check_message_sanitizer(ctx: HookEvent, rt: HandlerRuntime) -> HandlerResult | None:
    if ctx.messages is None:
        return None
    result = sanitize_messages(ctx.messages)
    return HandlerResult.allow(
        metadata={"messages": result.messages, "sanitized_count": result.sanitized_count}
    )


HANDLER_CHECKS: dict[str, Handler] = {
    "session_start": check_session_start,
    "non_interactive_env": check_non_interactive_env,
    "background_events": check_background_events,
    "background_notifications": check_background_notifications,
    "background_context": check_background_context,
    "keyword_detection": check_keyword_detection,
    "user_stop": check_user_stop,
    "mode_expiry": check_mode_expiry,
    "mode_continuation": check_mode_continuation,
    "custom_routing": check_custom_routing,
    "interactive_command": check_interactive_command,
    "message_sanitizer": check_message_sanitizer,
}
