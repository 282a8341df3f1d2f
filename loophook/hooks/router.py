#!/usr/bin/env python3
"""
Universal Hook Router.

Entry point for every host hook event. The host spawns one process per
event, writes one JSON object to stdin and reads one JSON object from stdout.

Architecture:
- normalize_input() turns the raw payload into a typed HookEvent once.
- Handler functions are looked up in handler_registry.HANDLER_CHECKS and run
  in handler_config.HANDLER_EXECUTION_ORDER for the event.
- HandlerResult objects are merged internally and converted to the wire
  HookResponse only at the end.
- Every failure path collapses to {"continue": true}.
"""

import json
import logging
import os
import sys
import time
import traceback
from typing import Any

from loophook.hooks.handler_config import (
    HANDLER_EXECUTION_ORDER,
    HOST_EVENT_MAP,
    STATELESS_EVENTS,
)
from loophook.hooks.handler_registry import HANDLER_CHECKS, HandlerRuntime
from loophook.hooks.schemas import EventKind, HookEvent, HookResponse
from loophook.hooks.unified_logger import log_hook_event
from loophook.lib.config import LoopHookConfig, load_config
from loophook.lib.handler_model import HandlerResult, HandlerVerdict
from loophook.lib.keyword_detector import KeywordDetector
from loophook.lib.mode_state import GoalChecker
from loophook.lib.paths import get_project_dir
from loophook.lib.session_state import SessionState

logger = logging.getLogger(__name__)

FAIL_SAFE_OUTPUT = '{"continue":true}'
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class HookRouter:
    def __init__(
        self,
        config: LoopHookConfig | None = None,
        detector: KeywordDetector | None = None,
        goal_checker: GoalChecker | None = None,
    ):
        # With no explicit config, one is loaded per event from its cwd
        self._config = config
        self._detector = detector or KeywordDetector()
        self._goal_checker = goal_checker

    @staticmethod
    def _normalize_json_field(value: Any) -> Any:
        """Normalize a field that may be a JSON string to its parsed form."""
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return value
        return value

    @staticmethod
    def _extract_prompt(raw_input: dict[str, Any]) -> str:
        """Prompt text from ``prompt``, ``message.content`` or text ``parts``."""
        prompt = raw_input.get("prompt")
        if isinstance(prompt, str) and prompt:
            return prompt

        message = raw_input.get("message")
        if isinstance(message, dict) and isinstance(message.get("content"), str):
            return message["content"]

        parts = raw_input.get("parts")
        if isinstance(parts, list):
            texts = [
                p.get("text", "")
                for p in parts
                if isinstance(p, dict) and p.get("type") == "text" and isinstance(p.get("text"), str)
            ]
            return " ".join(texts)
        return ""

    @staticmethod
    def _resolve_kind(name: Any) -> EventKind:
        if not isinstance(name, str) or not name:
            return EventKind.UNKNOWN
        if name in HOST_EVENT_MAP:
            return HOST_EVENT_MAP[name]
        try:
            return EventKind(name)
        except ValueError:
            return EventKind.UNKNOWN

    def normalize_input(self, raw_input: Any, event_name: str | None = None) -> HookEvent:
        """Create a normalized HookEvent from raw input."""
        if not isinstance(raw_input, dict):
            raw_input = {}

        # 1. Event kind: CLI argument wins over the payload
        host_event = event_name or raw_input.get("hook_event_name") or raw_input.get(
            "hookEventName"
        )
        kind = self._resolve_kind(host_event)

        # 2. Session ID
        session_id = raw_input.get("session_id") or raw_input.get("sessionId") or "default"

        # 3. Tool fields (may arrive as JSON strings)
        tool_input = self._normalize_json_field(
            raw_input.get("tool_input", raw_input.get("toolInput", {}))
        )
        tool_output = self._normalize_json_field(
            raw_input.get("tool_response")
            or raw_input.get("tool_output")
            or raw_input.get("toolOutput")
            or raw_input.get("tool_result")
        )

        messages = raw_input.get("messages")
        if messages is None and isinstance(tool_input, dict):
            messages = tool_input.get("messages")
        elif messages is None and isinstance(tool_input, list):
            messages = tool_input
        if not isinstance(tool_input, dict):
            tool_input = {}

        host_output = raw_input.get("last_assistant_message") or raw_input.get("output")
        background_event = raw_input.get("event")

        return HookEvent(
            kind=kind,
            host_event=host_event if isinstance(host_event, str) else None,
            session_id=str(session_id),
            cwd=raw_input.get("cwd") or raw_input.get("directory"),
            prompt=self._extract_prompt(raw_input),
            agent=raw_input.get("agent") or raw_input.get("agent_type"),
            tool_name=raw_input.get("tool_name") or raw_input.get("toolName") or "",
            tool_input=tool_input,
            tool_output=tool_output,
            user_requested=bool(raw_input.get("user_requested") or raw_input.get("userRequested")),
            stop_reason=raw_input.get("stop_reason") or raw_input.get("stopReason"),
            transcript_path=raw_input.get("transcript_path") or raw_input.get("transcriptPath"),
            host_output=host_output if isinstance(host_output, str) else None,
            messages=messages if isinstance(messages, list) else None,
            background_event=background_event
            if isinstance(background_event, dict) and "type" in background_event
            else None,
            raw_input=raw_input,
        )

    def _config_for(self, event: HookEvent) -> LoopHookConfig:
        if self._config is not None:
            return self._config
        return load_config(get_project_dir(event.cwd))

    def execute_handlers(self, event: HookEvent, runtime: HandlerRuntime) -> HandlerResult:
        """Run all configured handlers for the event and merge results."""
        merged = HandlerResult.allow()

        for handler_name in HANDLER_EXECUTION_ORDER.get(event.kind, []):
            check_func = HANDLER_CHECKS.get(handler_name)
            if not check_func:
                continue

            start_time = time.monotonic()
            try:
                result = check_func(event, runtime)
            except Exception as e:
                error_msg = f"Handler '{handler_name}' failed: {e}"
                logger.exception(error_msg)
                merged.metadata.setdefault("errors", []).append(error_msg)
                merged.metadata.setdefault("tracebacks", []).append(traceback.format_exc())
                continue
            finally:
                duration = time.monotonic() - start_time
                merged.metadata.setdefault("handler_times", {})[handler_name] = duration

            if result:
                self._merge_result(merged, result)
                if result.verdict == HandlerVerdict.BLOCK or result.halt:
                    break

        return merged

    def _merge_result(self, target: HandlerResult, source: HandlerResult) -> None:
        """Merge source into target (in-place)."""
        if source.verdict == HandlerVerdict.BLOCK:
            target.verdict = HandlerVerdict.BLOCK
        elif source.verdict == HandlerVerdict.WARN and target.verdict == HandlerVerdict.ALLOW:
            target.verdict = HandlerVerdict.WARN

        if source.message:
            target.message = (
                f"{target.message}\n\n{source.message}" if target.message else source.message
            )

        if source.context_injection:
            target.context_injection = (
                f"{target.context_injection}\n\n{source.context_injection}"
                if target.context_injection
                else source.context_injection
            )

        if source.system_message:
            target.system_message = (
                f"{target.system_message}\n{source.system_message}"
                if target.system_message
                else source.system_message
            )

        if source.reason:
            target.reason = source.reason
        if source.stop_reason:
            target.stop_reason = source.stop_reason

        target.metadata.update(source.metadata)

    def output_for_host(self, result: HandlerResult, event: HookEvent) -> HookResponse:
        """Convert the merged HandlerResult to the wire response."""
        output = HookResponse()

        if result.message and result.message.strip():
            output.message = result.message.strip()
        if result.context_injection:
            output.additionalContext = result.context_injection
        if result.system_message:
            output.systemMessage = result.system_message

        if result.verdict == HandlerVerdict.BLOCK:
            output.continue_ = False
            output.decision = "block"
            output.reason = result.reason
            output.stopReason = result.stop_reason

        if event.kind == EventKind.MESSAGES_TRANSFORM and "messages" in result.metadata:
            output.messages = result.metadata["messages"]
            output.sanitizedCount = result.metadata.get("sanitized_count", 0)

        return output

    def dispatch(self, event: HookEvent) -> HookResponse:
        """Route one event. Never raises; any failure becomes {"continue": true}."""
        try:
            return self._dispatch(event)
        except Exception:
            logger.exception("Dispatch failed for %s; continuing", event.kind)
            return HookResponse()

    def _dispatch(self, event: HookEvent) -> HookResponse:
        config = self._config_for(event)
        runtime = HandlerRuntime(
            config=config, detector=self._detector, goal_checker=self._goal_checker
        )
        stateful = event.kind not in STATELESS_EVENTS

        if stateful and event.kind != EventKind.SESSION_START:
            runtime.session = SessionState.get_or_create(
                config.state_dir, event.session_id, event.cwd
            )
            runtime.session.touch(event.kind.value)

        merged = self.execute_handlers(event, runtime)
        response = self.output_for_host(merged, event)

        if not stateful:
            return response

        if runtime.session is not None:
            try:
                runtime.session.save(config.state_dir)
            except OSError as e:
                logger.warning("Failed to save session state: %s", e)

        log_hook_event(config.state_dir, event, output=response, metadata=merged.metadata)
        return response

    def handle(self, raw_input: Any, event_name: str | None = None) -> HookResponse:
        """Normalize and dispatch a raw payload."""
        try:
            event = self.normalize_input(raw_input, event_name)
        except Exception:
            logger.exception("Failed to normalize hook input; continuing")
            return HookResponse()
        return self.dispatch(event)


# --- Main Entry Point ---


def _configure_logging() -> None:
    level = os.environ.get("LOOPHOOK_LOG_LEVEL", "WARNING").upper()
    if level not in logging.getLevelNamesMapping():
        level = "WARNING"
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr)


def main():
    import argparse

    parser = argparse.ArgumentParser(description="loophook hook router")
    parser.add_argument(
        "event", nargs="?", help="Event name (overrides hook_event_name in the payload)"
    )

    # Parse known args to avoid issues if extra flags are passed
    args, _unknown = parser.parse_known_args()
    _configure_logging()

    raw_input: Any = {}
    try:
        if not sys.stdin.isatty():
            input_data = sys.stdin.read()
            if input_data.strip():
                raw_input = json.loads(input_data)
    except Exception as e:
        logger.warning("Failed to read stdin: %s", e)

    try:
        output = HookRouter().handle(raw_input, args.event).to_json()
    except Exception:
        logger.exception("Hook router failed; continuing")
        output = FAIL_SAFE_OUTPUT

    print(output)


if __name__ == "__main__":
    main()
