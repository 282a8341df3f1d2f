from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

# --- Input Schemas (Context) ---


class EventKind(StrEnum):
    SESSION_START = "session-start"
    USER_PROMPT_SUBMIT = "user-prompt-submit"
    PRE_TOOL_USE = "pre-tool-use"
    POST_TOOL_USE = "post-tool-use"
    STOP = "stop"
    SUBAGENT_STOP = "subagent-stop"
    MESSAGES_TRANSFORM = "messages-transform"
    UNKNOWN = "unknown"


class HookEvent(BaseModel):
    """
    Normalized input for one hook invocation.

    Built once by HookRouter.normalize_input() so handlers never deal with the
    host's alternate field names or JSON-encoded string fields.
    """

    kind: EventKind = Field(..., description="The normalized event kind.")
    host_event: str | None = Field(
        None, description="Event name as the host sent it (e.g. UserPromptSubmit)."
    )
    session_id: str = Field(default="default", description="The host session identifier.")
    cwd: str | None = None

    # user-prompt-submit
    prompt: str = ""
    agent: str | None = None

    # pre-tool-use / post-tool-use
    tool_name: str = ""
    tool_input: dict[str, Any] = Field(default_factory=dict)
    tool_output: Any = None

    # stop
    user_requested: bool = False
    stop_reason: str | None = None
    transcript_path: str | None = None
    host_output: str | None = Field(
        None, description="Last assistant output, when the host includes it in the payload."
    )

    # messages-transform
    messages: list[dict[str, Any]] | None = None

    # Out-of-band background task lifecycle event
    background_event: dict[str, Any] | None = None

    # Raw Input (for fallback/passthrough and the audit log)
    raw_input: dict[str, Any] = Field(default_factory=dict)


# --- Output Schema ---


class HookResponse(BaseModel):
    """
    The single JSON object written to stdout.

    ``continue`` is always serialized; every other field is omitted when None.
    """

    model_config = ConfigDict(populate_by_name=True)

    continue_: bool = Field(default=True, alias="continue")
    message: str | None = None
    decision: Literal["allow", "block", "deny"] | None = None
    reason: str | None = None
    additionalContext: str | None = None
    stopReason: str | None = None
    systemMessage: str | None = None

    # messages-transform only
    messages: list[dict[str, Any]] | None = None
    sanitizedCount: int | None = None

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)
