from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class HandlerVerdict(Enum):
    """Verdict of a handler check."""

    ALLOW = "allow"
    # Stop the host from proceeding: blocks a tool call, or forces the agent
    # to keep working on a stop event
    BLOCK = "block"
    WARN = "warn"


@dataclass
class HandlerResult:
    """Host-agnostic result of one handler in the dispatch chain."""

    verdict: HandlerVerdict
    # User-visible text (prompt injection for user-prompt-submit)
    message: str | None = None
    # Agent-visible context
    context_injection: str | None = None
    # Reason shown to the agent when blocking
    reason: str | None = None
    stop_reason: str | None = None
    system_message: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    # Skip the remaining handlers for this event
    halt: bool = False

    @classmethod
    def allow(
        cls,
        message: str | None = None,
        context_injection: str | None = None,
        metadata: dict[str, Any] | None = None,
        system_message: str | None = None,
        halt: bool = False,
    ) -> "HandlerResult":
        """Factory method for ALLOW verdict."""
        return cls(
            verdict=HandlerVerdict.ALLOW,
            message=message,
            context_injection=context_injection,
            system_message=system_message,
            metadata=metadata or {},
            halt=halt,
        )

    @classmethod
    def block(
        cls,
        reason: str,
        stop_reason: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> "HandlerResult":
        """Factory method for BLOCK verdict."""
        return cls(
            verdict=HandlerVerdict.BLOCK,
            reason=reason,
            stop_reason=stop_reason,
            metadata=metadata or {},
        )

    @classmethod
    def warn(
        cls,
        context_injection: str | None = None,
        system_message: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> "HandlerResult":
        """Factory method for WARN verdict."""
        return cls(
            verdict=HandlerVerdict.WARN,
            context_injection=context_injection,
            system_message=system_message,
            metadata=metadata or {},
        )

