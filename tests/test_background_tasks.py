"""Background task registry: lifecycle events and exactly-once delivery."""

import threading
from datetime import UTC, datetime, timedelta

import pytest

from loophook.lib import state_store
from loophook.lib.background_tasks import (
    BackgroundTask,
    BackgroundTaskRegistry,
    TaskStatus,
    format_duration,
    format_notification,
)
from loophook.lib.config import BackgroundConfig, LoopHookConfig


@pytest.fixture
def registry(config: LoopHookConfig) -> BackgroundTaskRegistry:
    return BackgroundTaskRegistry(config)


def _register(registry: BackgroundTaskRegistry, task_id: str = "t1", parent: str | None = "parent"):
    return registry.register(
        task_id=task_id,
        session_id="child-session",
        parent_session_id=parent,
        description="Explore auth module",
        agent="explore",
    )


def _event(kind: str, task_id: str = "t1", **props) -> dict:
    return {"type": f"task.{kind}", "properties": {"taskId": task_id, **props}}


def test_register_persists_pending_task(registry: BackgroundTaskRegistry) -> None:
    _register(registry)

    task = registry.get("t1")
    assert task is not None
    assert task.status == TaskStatus.PENDING
    assert not task.notify_ready


def test_records_use_camel_case_keys(registry: BackgroundTaskRegistry) -> None:
    _register(registry)

    files = list(registry.root.glob("*/t1.json"))
    assert len(files) == 1
    text = files[0].read_text()
    assert '"parentSessionId"' in text
    assert '"notifyReady"' in text


def test_started_event_sets_running(registry: BackgroundTaskRegistry) -> None:
    _register(registry)

    task = registry.notify(_event("started", toolCalls=2, lastTool="Grep"))

    assert task is not None
    assert task.status == TaskStatus.RUNNING
    assert task.progress.tool_calls == 2
    assert task.progress.last_tool == "Grep"
    assert not task.notify_ready


def test_completion_is_delivered_exactly_once(registry: BackgroundTaskRegistry) -> None:
    """A completed task is reported once to its parent session, then never again."""
    _register(registry)
    registry.notify(_event("completed", result="Found 3 call sites"))

    first = registry.check_notifications("parent")
    second = registry.check_notifications("parent")

    assert first.has_notifications
    assert first.count == 1
    assert first.message is not None
    assert "[BACKGROUND TASK COMPLETED]" in first.message
    assert "Found 3 call sites" in first.message
    assert not second.has_notifications


def test_concurrent_checks_deliver_once(config: LoopHookConfig) -> None:
    """Parallel stop events for one session: exactly one of them reports the task."""
    _register(BackgroundTaskRegistry(config))
    BackgroundTaskRegistry(config).notify(_event("completed", result="done"))
    callers = 8
    barrier = threading.Barrier(callers)
    results = []

    def check() -> None:
        registry = BackgroundTaskRegistry(config)
        barrier.wait()
        results.append(registry.check_notifications("parent"))

    threads = [threading.Thread(target=check) for _ in range(callers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert len(results) == callers
    delivered = [r for r in results if r.has_notifications]
    assert len(delivered) == 1
    assert [t.id for t in delivered[0].tasks] == ["t1"]


def test_failed_delivery_mark_keeps_task_pending(
    registry: BackgroundTaskRegistry, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Only tasks whose delivered mark was written are reported; the rest come next time."""
    _register(registry, "t1")
    _register(registry, "t2")
    registry.notify(_event("completed", "t1", result="first"))
    registry.notify(_event("completed", "t2", result="second"))

    real_write = state_store.write_json_atomic
    calls = []

    def flaky_write(path, data):
        calls.append(path)
        if len(calls) == 2:
            raise OSError("disk full")
        return real_write(path, data)

    monkeypatch.setattr(state_store, "write_json_atomic", flaky_write)

    first = registry.check_notifications("parent")
    second = registry.check_notifications("parent")
    third = registry.check_notifications("parent")

    assert [t.id for t in first.tasks] == ["t1"]
    assert first.count == 1
    assert [t.id for t in second.tasks] == ["t2"]
    assert not third.has_notifications
    task = registry.get("t2")
    assert task is not None and task.delivered_at is not None
    task = registry.get("t1")
    assert task is not None and task.delivered_at is not None


def test_notifications_addressed_to_parent_only(registry: BackgroundTaskRegistry) -> None:
    _register(registry)
    registry.notify(_event("completed"))

    assert not registry.check_notifications("child-session").has_notifications
    assert not registry.check_notifications("someone-else").has_notifications
    assert registry.check_notifications("parent").has_notifications


def test_without_parent_notifies_own_session(registry: BackgroundTaskRegistry) -> None:
    _register(registry, parent=None)
    registry.notify(_event("failed", error="agent crashed"))

    result = registry.check_notifications("child-session")

    assert result.has_notifications
    assert result.message is not None and "Error: agent crashed" in result.message
    assert result.tasks[0].status == TaskStatus.FAILED


def test_multiple_completions_use_plural_header(registry: BackgroundTaskRegistry) -> None:
    _register(registry, "t1")
    _register(registry, "t2")
    registry.notify(_event("completed", "t1"))
    registry.notify(_event("cancelled", "t2"))

    result = registry.check_notifications("parent")

    assert result.count == 2
    assert result.message is not None and "[2 BACKGROUND TASKS COMPLETED]" in result.message


def test_unknown_events_are_ignored(registry: BackgroundTaskRegistry) -> None:
    _register(registry)

    assert registry.notify({"type": "session.idle", "properties": {"taskId": "t1"}}) is None
    assert registry.notify({"type": "task.completed", "properties": {}}) is None
    assert registry.notify(_event("completed", "missing")) is None
    task = registry.get("t1")
    assert task is not None and task.status == TaskStatus.PENDING


def test_handle_event_registers(registry: BackgroundTaskRegistry) -> None:
    task = registry.handle_event(
        {
            "type": "task.registered",
            "properties": {
                "taskId": "bg-9",
                "sessionId": "child",
                "parentSessionId": "parent",
                "description": "Index docs",
                "agent": "librarian",
            },
        }
    )

    assert task is not None
    assert registry.get("bg-9", "child") is not None
    assert registry.list_tasks("parent")[0].id == "bg-9"


def test_without_auto_clear_notifications_repeat(config: LoopHookConfig) -> None:
    registry = BackgroundTaskRegistry(
        config.model_copy(update={"background": BackgroundConfig(auto_clear=False)})
    )
    _register(registry)
    registry.notify(_event("completed"))

    assert registry.check_notifications("parent").has_notifications
    assert registry.check_notifications("parent").has_notifications
    assert registry.clear_notifications("parent") == 1
    assert not registry.check_notifications("parent").has_notifications


def test_reported_again_after_new_terminal_event(registry: BackgroundTaskRegistry) -> None:
    _register(registry)
    registry.notify(_event("completed"))
    registry.check_notifications("parent")

    registry.notify(_event("failed", error="late failure"))

    assert registry.check_notifications("parent").has_notifications


def test_format_duration() -> None:
    start = datetime(2026, 1, 1, tzinfo=UTC)

    assert format_duration(start, start + timedelta(seconds=42)) == "42s"
    assert format_duration(start, start + timedelta(seconds=125)) == "2m 5s"
    assert format_duration(start, start + timedelta(hours=1, minutes=2, seconds=3)) == "1h 2m 3s"


def test_format_notification_truncates_result() -> None:
    start = datetime(2026, 1, 1, tzinfo=UTC)
    task = BackgroundTask(
        id="t",
        session_id="s",
        description="Long job",
        agent="explore",
        status=TaskStatus.COMPLETED,
        started_at=start,
        completed_at=start + timedelta(seconds=5),
        result="x" * 50,
    )

    message = format_notification([task], preview_chars=10)

    assert message.startswith("\n[BACKGROUND TASK COMPLETED]\n")
    assert "✓ [COMPLETED] Long job" in message
    assert "Result: xxxxxxxxxx..." in message
    assert "Duration: 5s" in message
    assert format_notification([]) == ""
