"""
Handler Configuration: Single source of truth for dispatch behavior.

This module defines:
1. Host event name normalization
2. Handler execution order per event
3. The static routing deny list for pre-tool-use

All dispatch configuration should live here, not scattered across router.py
or handler_registry.py.
"""

from loophook.hooks.schemas import EventKind

# =============================================================================
# EVENT NAMES
# =============================================================================
# Host event names (PascalCase) and the kebab-case kinds we dispatch on.

HOST_EVENT_MAP: dict[str, EventKind] = {
    "SessionStart": EventKind.SESSION_START,
    "UserPromptSubmit": EventKind.USER_PROMPT_SUBMIT,
    "PreToolUse": EventKind.PRE_TOOL_USE,
    "PostToolUse": EventKind.POST_TOOL_USE,
    "Stop": EventKind.STOP,
    "SubagentStop": EventKind.SUBAGENT_STOP,
    "MessagesTransform": EventKind.MESSAGES_TRANSFORM,
}

# =============================================================================
# HANDLER EXECUTION ORDER
# =============================================================================
# Order matters:
# - background_notifications runs before keyword_detection so notifications
#   are prepended to the keyword message.
# - user_stop runs first on stop so explicit user intent short-circuits the
#   mode chain.

HANDLER_EXECUTION_ORDER: dict[EventKind, list[str]] = {
    EventKind.SESSION_START: [
        "session_start",
        "non_interactive_env",
    ],
    EventKind.USER_PROMPT_SUBMIT: [
        "background_events",
        "background_notifications",
        "keyword_detection",
    ],
    EventKind.PRE_TOOL_USE: [
        "custom_routing",
        "interactive_command",
    ],
    EventKind.POST_TOOL_USE: [
        "background_events",
        "user_stop",
        "mode_expiry",
        "background_context",
    ],
    EventKind.STOP: [
        "background_events",
        "user_stop",
        "mode_expiry",
        "mode_continuation",
    ],
    EventKind.SUBAGENT_STOP: [
        "background_events",
        "mode_expiry",
    ],
    EventKind.MESSAGES_TRANSFORM: [
        "message_sanitizer",
    ],
}

# Handlers that never touch the state store (no session bookkeeping needed)
STATELESS_EVENTS: frozenset[EventKind] = frozenset(
    {EventKind.MESSAGES_TRANSFORM, EventKind.UNKNOWN}
)

# =============================================================================
# ROUTING POLICY
# =============================================================================
# Agents that must be launched through the plugin's own spawn tool rather
# than the host's Task tool, because they need a different model backend.

AGENT_SPAWN_TOOL = "spawn_agent"
TASK_TOOL_NAMES: frozenset[str] = frozenset({"Task"})
AGENTS_REQUIRING_CUSTOM_ROUTING: frozenset[str] = frozenset(
    {
        "loophook:librarian",
        "loophook:explore",
    }
)

# Tools whose input carries a shell command for the interactive-command check
SHELL_TOOL_NAMES: frozenset[str] = frozenset({"Bash"})
