"""End-to-end dispatch through HookRouter and the CLI entry point."""

import io
import json
import sys
from pathlib import Path

import pytest

from loophook.hooks import handler_registry, router
from loophook.hooks.router import HookRouter
from loophook.hooks.schemas import EventKind
from loophook.lib.background_tasks import BackgroundTaskRegistry
from loophook.lib.config import LoopHookConfig, ModeDefaults
from loophook.lib.mode_state import ModeStateMachine, ModeStatus
from loophook.lib.paths import get_hook_log_path, get_session_file_path

SESSION = "0a1b2c3d-session"


@pytest.fixture
def small_config(config: LoopHookConfig) -> LoopHookConfig:
    return config.model_copy(update={"mode_defaults": ModeDefaults(max_iterations=3)})


@pytest.fixture
def hook_router(small_config: LoopHookConfig) -> HookRouter:
    return HookRouter(config=small_config, goal_checker=lambda: None)


def _send(hook_router: HookRouter, event_name: str, /, **payload) -> dict:
    raw = {"hook_event_name": event_name, "session_id": SESSION, **payload}
    return json.loads(hook_router.handle(raw).to_json())


# --- Fail-safe ---


@pytest.mark.parametrize("raw", [None, "garbage", 42, [], {}, {"hook_event_name": "Nonsense"}])
def test_malformed_input_continues(hook_router: HookRouter, raw) -> None:
    """Anything unusable produces exactly {"continue":true}."""
    assert hook_router.handle(raw).to_json() == '{"continue":true}'


def test_stop_without_modes_is_plain_continue(hook_router: HookRouter) -> None:
    response = hook_router.handle({"hook_event_name": "Stop", "session_id": SESSION})

    assert response.to_json() == '{"continue":true}'


def test_failing_handler_does_not_break_dispatch(
    hook_router: HookRouter, monkeypatch: pytest.MonkeyPatch
) -> None:
    def explode(ctx, rt):
        raise RuntimeError("boom")

    monkeypatch.setitem(handler_registry.HANDLER_CHECKS, "background_notifications", explode)

    response = _send(hook_router, "UserPromptSubmit", prompt="ultrawork fix it")

    assert response["continue"] is True
    assert "ULTRAWORK MODE ENABLED!" in response["message"], "Later handlers still run"


def test_dispatch_failure_collapses_to_continue(
    hook_router: HookRouter, monkeypatch: pytest.MonkeyPatch
) -> None:
    def broken(self, event, runtime):
        raise RuntimeError("unexpected")

    monkeypatch.setattr(HookRouter, "execute_handlers", broken)

    assert hook_router.handle({"hook_event_name": "Stop"}).to_json() == '{"continue":true}'


# --- Normalization ---


def test_normalize_alternate_field_names(hook_router: HookRouter) -> None:
    event = hook_router.normalize_input(
        {
            "hookEventName": "PreToolUse",
            "sessionId": "abc",
            "toolName": "Bash",
            "toolInput": '{"command": "ls"}',
        }
    )

    assert event.kind == EventKind.PRE_TOOL_USE
    assert event.session_id == "abc"
    assert event.tool_name == "Bash"
    assert event.tool_input == {"command": "ls"}


def test_normalize_cli_event_name_wins(hook_router: HookRouter) -> None:
    event = hook_router.normalize_input({"hook_event_name": "Stop"}, "SubagentStop")

    assert event.kind == EventKind.SUBAGENT_STOP
    assert event.session_id == "default"


def test_normalize_prompt_from_parts(hook_router: HookRouter) -> None:
    event = hook_router.normalize_input(
        {
            "hook_event_name": "user-prompt-submit",
            "parts": [{"type": "text", "text": "ralph"}, {"type": "file"}, {"type": "text", "text": "go"}],
        }
    )

    assert event.kind == EventKind.USER_PROMPT_SUBMIT
    assert event.prompt == "ralph go"


# --- Modes ---


def test_ultrawork_loop_until_max_iterations(
    hook_router: HookRouter, small_config: LoopHookConfig
) -> None:
    """Keyword activates the mode, stops are overridden, then the loop gives up at max."""
    activated = _send(hook_router, "UserPromptSubmit", prompt="ultrawork fix all errors")

    assert activated["continue"] is True
    assert "ULTRAWORK MODE ENABLED!" in activated["message"]
    assert ModeStateMachine(small_config, SESSION, "ultrawork").is_active()

    for iteration in (1, 2):
        response = _send(hook_router, "Stop", last_assistant_message="still working")
        assert response["continue"] is False, f"Stop {iteration} should be overridden"
        assert response["decision"] == "block"
        assert response["stopReason"] == f"ultrawork mode active (iteration {iteration}/3)"
        assert f"[ULTRAWORK - ITERATION {iteration}/3]" in response["reason"]

    final = _send(hook_router, "Stop", last_assistant_message="still working")

    assert final["continue"] is True
    assert "[ULTRAWORK LOOP STOPPED] Max iterations (3)" in final["message"]
    state = ModeStateMachine(small_config, SESSION, "ultrawork").read()
    assert state is not None and state.status == ModeStatus.EXPIRED


def test_verified_completion_releases_stop(hook_router: HookRouter) -> None:
    _send(hook_router, "UserPromptSubmit", prompt="ralph: ship the feature")

    response = _send(
        hook_router,
        "Stop",
        last_assistant_message=(
            "All tests pass. Build successful.\n"
            "---RALPH_STATUS---\nEXIT_SIGNAL: true\n---END_RALPH_STATUS---\n"
            "<promise>TASK COMPLETE</promise>"
        ),
    )

    assert response["continue"] is True
    assert response["message"].startswith("[RALPH COMPLETE]")


def test_stop_reads_transcript_when_output_missing(hook_router: HookRouter, tmp_path: Path) -> None:
    _send(hook_router, "UserPromptSubmit", prompt="ralph go")
    transcript = tmp_path / "transcript.jsonl"
    transcript.write_text(
        json.dumps({"type": "assistant", "message": {"content": "<promise>TASK COMPLETE</promise>"}})
        + "\n"
    )

    response = _send(hook_router, "Stop", transcript_path=str(transcript))

    assert response["continue"] is False
    assert "VERIFICATION FAILED" in response["reason"], "Sentinel found, evidence missing"


def test_user_requested_stop_is_honored(
    hook_router: HookRouter, small_config: LoopHookConfig
) -> None:
    _send(hook_router, "UserPromptSubmit", prompt="ralph keep going")

    response = _send(hook_router, "Stop", user_requested=True)

    assert response == {"continue": True}
    state = ModeStateMachine(small_config, SESSION, "ralph").read()
    assert state is not None and state.status == ModeStatus.USER_STOPPED
    assert _send(hook_router, "Stop") == {"continue": True}, "Stopped mode stays stopped"


def test_post_tool_use_does_not_advance(hook_router: HookRouter, small_config: LoopHookConfig) -> None:
    _send(hook_router, "UserPromptSubmit", prompt="ulw refactor")

    response = _send(hook_router, "PostToolUse", tool_name="Read", tool_response="contents")

    assert response["continue"] is True
    state = ModeStateMachine(small_config, SESSION, "ultrawork").read()
    assert state is not None and state.iteration == 0


def test_informational_keyword_does_not_activate(
    hook_router: HookRouter, small_config: LoopHookConfig
) -> None:
    response = _send(hook_router, "UserPromptSubmit", prompt="find the config loader")

    assert "<search-mode>" in response["message"]
    assert not ModeStateMachine(small_config, SESSION, "ralph").is_active()
    assert not ModeStateMachine(small_config, SESSION, "ultrawork").is_active()


# --- Tool policy ---


def test_pre_tool_use_blocks_custom_routed_agent(hook_router: HookRouter) -> None:
    response = _send(
        hook_router,
        "PreToolUse",
        tool_name="Task",
        tool_input=json.dumps({"subagent_type": "loophook:librarian", "prompt": "docs"}),
    )

    assert response["continue"] is False
    assert response["decision"] == "block"
    assert "Agent 'librarian' requires custom model routing" in response["reason"]
    assert 'spawn_agent(agent="librarian"' in response["reason"]


def test_pre_tool_use_allows_other_agents(hook_router: HookRouter) -> None:
    response = _send(
        hook_router, "PreToolUse", tool_name="Task", tool_input={"subagent_type": "general"}
    )

    assert response == {"continue": True}


def test_interactive_command_warns(hook_router: HookRouter) -> None:
    response = _send(hook_router, "PreToolUse", tool_name="Bash", tool_input={"command": "git rebase -i HEAD~2"})

    assert response["continue"] is True
    assert "'git rebase -i' is an interactive command" in response["additionalContext"]


# --- Background tasks ---


def test_notifications_are_prepended_once(
    hook_router: HookRouter, small_config: LoopHookConfig
) -> None:
    registry = BackgroundTaskRegistry(small_config)
    registry.register("bg1", "child", SESSION, "Scan for TODOs", "explore")
    registry.notify({"type": "task.completed", "properties": {"taskId": "bg1", "result": "12 found"}})

    first = _send(hook_router, "UserPromptSubmit", prompt="ultrawork continue")
    second = _send(hook_router, "UserPromptSubmit", prompt="thanks")

    message = first["message"]
    assert message.startswith("[BACKGROUND TASK COMPLETED]")
    assert message.index("12 found") < message.index("ULTRAWORK MODE ENABLED!")
    assert "message" not in second, "Notification must be delivered only once"


def test_lifecycle_events_in_payload(hook_router: HookRouter) -> None:
    _send(
        hook_router,
        "PostToolUse",
        event={
            "type": "task.registered",
            "properties": {"taskId": "bg2", "sessionId": "child", "parentSessionId": SESSION,
                           "description": "Index", "agent": "librarian"},
        },
    )

    response = _send(
        hook_router,
        "PostToolUse",
        tool_name="Read",
        event={"type": "task.completed", "properties": {"taskId": "bg2", "result": "ok"}},
    )

    assert "[BACKGROUND TASK COMPLETED]" in response["additionalContext"]


def test_task_tool_response_marks_completion(
    hook_router: HookRouter, small_config: LoopHookConfig
) -> None:
    BackgroundTaskRegistry(small_config).register("agent-7", "child", SESSION, "Research", "explore")

    _send(hook_router, "PostToolUse", tool_name="Task", tool_response={"agentId": "agent-7"})

    task = BackgroundTaskRegistry(small_config).get("agent-7")
    assert task is not None and task.status == "completed"
    assert task.delivered_at is not None, "Delivered in the same post-tool-use event"


# --- Messages transform ---


def test_messages_transform_is_stateless(hook_router: HookRouter, small_config: LoopHookConfig) -> None:
    response = _send(
        hook_router,
        "MessagesTransform",
        messages=[
            {"info": {"id": "u1", "role": "user"}, "parts": [{"type": "text", "text": ""}]},
            {"info": {"id": "a1", "role": "assistant"}, "parts": []},
        ],
    )

    assert response["continue"] is True
    assert response["sanitizedCount"] == 1
    assert response["messages"][0]["parts"][0]["text"] == "[user interrupted]"
    assert response["messages"][1]["parts"] == []
    assert not small_config.state_dir.exists(), "No state may be written"


# --- Session and logging ---


def test_session_start_notice_and_state(
    hook_router: HookRouter, small_config: LoopHookConfig, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("CI", "true")

    response = _send(hook_router, "SessionStart", cwd=str(small_config.project_dir))

    assert "Non-interactive environment detected" in response["message"]
    assert get_session_file_path(small_config.state_dir, SESSION).exists()


def test_events_are_logged(hook_router: HookRouter, small_config: LoopHookConfig) -> None:
    _send(hook_router, "UserPromptSubmit", prompt="hello")

    log_path = get_hook_log_path(small_config.state_dir, SESSION)
    lines = log_path.read_text().splitlines()
    entry = json.loads(lines[-1])
    assert entry["kind"] == "user-prompt-submit"
    assert entry["output"] == {"continue": True}
    assert "keyword_detection" in entry["handler_times"]
    assert "debug" in entry


# --- CLI ---


def test_main_reads_stdin_and_prints_json(
    small_config: LoopHookConfig, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture
) -> None:
    payload = {"session_id": SESSION, "prompt": "ralph go", "cwd": str(small_config.project_dir)}
    monkeypatch.setattr(sys, "argv", ["loophook-hook", "UserPromptSubmit"])
    monkeypatch.setattr(sys, "stdin", io.StringIO(json.dumps(payload)))

    router.main()

    output = json.loads(capsys.readouterr().out)
    assert output["continue"] is True
    assert "[RALPH MODE ACTIVATED]" in output["message"]


def test_main_with_invalid_stdin(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(sys, "argv", ["loophook-hook"])
    monkeypatch.setattr(sys, "stdin", io.StringIO("{not json"))

    router.main()

    assert capsys.readouterr().out.strip() == '{"continue":true}'
