"""Background task registry and completion notifications.

Tasks run out of band (spawned agents, long commands). Their lifecycle is
recorded as one JSON file per task under
``background-tasks/<session_key>/<task_id>.json``:

    register()  -> pending record
    notify()    -> status/result update; terminal events mark it ready
    check_notifications(session) -> formatted message for every ready,
                                    undelivered task addressed to the session,
                                    marked delivered in the same locked pass

Notifications are addressed to the parent session (the one that spawned the
task), falling back to the task's own session.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from loophook.lib import state_store
from loophook.lib.config import LoopHookConfig
from loophook.lib.paths import get_background_task_dir, get_background_tasks_root

logger = logging.getLogger(__name__)

TASK_EVENT_PATTERN = re.compile(r"^task\.(started|progress|completed|failed|cancelled)$")
REGISTRY_LOCK_NAME = "registry"


class TaskStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})

STATUS_ICONS = {
    TaskStatus.COMPLETED: "✓",
    TaskStatus.FAILED: "✗",
}


class TaskProgress(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    tool_calls: int = 0
    last_tool: str | None = None
    last_update: datetime | None = None


class BackgroundTask(BaseModel):
    """One out-of-band task. Serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    session_id: str
    parent_session_id: str | None = None
    description: str = ""
    prompt: str = ""
    agent: str = "unknown"
    status: TaskStatus = TaskStatus.PENDING
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None
    result: str | None = None
    error: str | None = None
    progress: TaskProgress = Field(default_factory=TaskProgress)

    # Delivery bookkeeping
    notify_ready: bool = False
    delivered_at: datetime | None = None

    @property
    def notify_session_id(self) -> str:
        return self.parent_session_id or self.session_id

    @property
    def awaiting_delivery(self) -> bool:
        return self.notify_ready and self.delivered_at is None


@dataclass
class NotificationResult:
    has_notifications: bool = False
    message: str | None = None
    count: int = 0
    tasks: list[BackgroundTask] = field(default_factory=list)


def format_duration(start: datetime, end: datetime | None = None) -> str:
    end = end or datetime.now(UTC)
    total = max(0, int((end - start).total_seconds()))
    minutes, seconds = divmod(total, 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m {seconds}s"
    if minutes:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def format_task_notification(task: BackgroundTask, preview_chars: int = 200) -> str:
    icon = STATUS_ICONS.get(task.status, "○")
    lines = [
        f"{icon} [{task.status.upper()}] {task.description}",
        f"  Agent: {task.agent}",
        f"  Duration: {format_duration(task.started_at, task.completed_at)}",
    ]
    if task.progress.tool_calls > 0:
        lines.append(f"  Tool calls: {task.progress.tool_calls}")
    if task.result is not None:
        preview = task.result[:preview_chars]
        suffix = "..." if len(task.result) > preview_chars else ""
        lines.append(f"  Result: {preview}{suffix}")
    if task.error is not None:
        lines.append(f"  Error: {task.error}")
    return "\n".join(lines)


def format_notification(tasks: list[BackgroundTask], preview_chars: int = 200) -> str:
    if not tasks:
        return ""
    if len(tasks) == 1:
        header = "\n[BACKGROUND TASK COMPLETED]\n"
    else:
        header = f"\n[{len(tasks)} BACKGROUND TASKS COMPLETED]\n"
    body = "\n\n".join(format_task_notification(t, preview_chars) for t in tasks)
    return f"{header}\n{body}\n"


class BackgroundTaskRegistry:
    def __init__(self, config: LoopHookConfig):
        self.config = config
        self.root = get_background_tasks_root(config.state_dir)

    @property
    def lock_path(self) -> Path:
        return self.root / REGISTRY_LOCK_NAME

    def _task_path(self, session_id: str, task_id: str) -> Path:
        return get_background_task_dir(self.root, session_id) / f"{task_id}.json"

    def _load(self, path: Path) -> BackgroundTask | None:
        data = state_store.read_json(path)
        if data is None:
            return None
        try:
            return BackgroundTask.model_validate(data)
        except ValidationError as e:
            logger.warning("Invalid background task %s ignored: %s", path, e)
            return None

    def _save(self, task: BackgroundTask) -> None:
        path = self._task_path(task.session_id, task.id)
        state_store.write_json_atomic(path, task.model_dump_json(by_alias=True, indent=2))

    def _iter_tasks(self) -> list[BackgroundTask]:
        if not self.root.is_dir():
            return []
        tasks = []
        for path in sorted(self.root.glob("*/*.json")):
            task = self._load(path)
            if task is not None:
                tasks.append(task)
        return tasks

    def register(
        self,
        task_id: str,
        session_id: str,
        parent_session_id: str | None,
        description: str,
        agent: str,
        prompt: str = "",
    ) -> BackgroundTask:
        task = BackgroundTask(
            id=task_id,
            session_id=session_id,
            parent_session_id=parent_session_id,
            description=description,
            agent=agent,
            prompt=prompt,
        )
        with state_store.locked(self.lock_path):
            self._save(task)
        logger.info("Registered background task %s (%s)", task_id, agent)
        return task

    def get(self, task_id: str, session_id: str | None = None) -> BackgroundTask | None:
        if session_id is not None:
            return self._load(self._task_path(session_id, task_id))
        for task in self._iter_tasks():
            if task.id == task_id:
                return task
        return None

    def list_tasks(self, session_id: str | None = None) -> list[BackgroundTask]:
        """All tasks, or those belonging to or addressed to one session."""
        tasks = self._iter_tasks()
        if session_id is None:
            return tasks
        return [t for t in tasks if session_id in (t.session_id, t.notify_session_id)]

    def notify(self, event: dict[str, Any]) -> BackgroundTask | None:
        """Apply a ``task.*`` lifecycle event. Returns the updated task.

        Unknown event types, missing task ids and unknown tasks are ignored.
        """
        event_type = event.get("type")
        if not isinstance(event_type, str):
            return None
        match = TASK_EVENT_PATTERN.match(event_type)
        if match is None:
            return None
        props = event.get("properties") or {}
        task_id = props.get("taskId")
        if not task_id:
            return None

        kind = match.group(1)
        now = datetime.now(UTC)
        with state_store.locked(self.lock_path):
            task = self.get(task_id, props.get("sessionId")) or self.get(task_id)
            if task is None:
                logger.warning("Event %s for unknown background task %s", event_type, task_id)
                return None

            if "toolCalls" in props:
                task.progress.tool_calls = int(props["toolCalls"])
            if props.get("lastTool"):
                task.progress.last_tool = props["lastTool"]
            task.progress.last_update = now

            if kind in ("started", "progress"):
                if task.status == TaskStatus.PENDING:
                    task.status = TaskStatus.RUNNING
            else:
                task.status = TaskStatus(kind)
                task.completed_at = now
                if props.get("result") is not None:
                    task.result = str(props["result"])
                if props.get("error") is not None:
                    task.error = str(props["error"])
                task.notify_ready = True
                task.delivered_at = None

            self._save(task)
        return task

    def handle_event(self, event: dict[str, Any]) -> BackgroundTask | None:
        """Route a lifecycle event: ``task.registered`` creates, the rest update."""
        if event.get("type") != "task.registered":
            return self.notify(event)
        props = event.get("properties") or {}
        task_id = props.get("taskId")
        session_id = props.get("sessionId")
        if not task_id or not session_id:
            return None
        return self.register(
            task_id=task_id,
            session_id=session_id,
            parent_session_id=props.get("parentSessionId"),
            description=props.get("description", ""),
            agent=props.get("agent", "unknown"),
            prompt=props.get("prompt", ""),
        )

    def pending_notifications(self, session_id: str) -> list[BackgroundTask]:
        return [
            t
            for t in self.list_tasks(session_id)
            if t.awaiting_delivery and t.notify_session_id == session_id
        ]

    def check_notifications(self, session_id: str) -> NotificationResult:
        """Collect ready notifications for a session and mark them delivered.

        The read and the mark happen under one lock so concurrent callers
        never deliver the same task twice. Only tasks whose delivery mark was
        written are returned; the rest stay pending for the next call. Store
        errors yield an empty result.
        """
        try:
            with state_store.locked(self.lock_path):
                tasks = self.pending_notifications(session_id)
                if self.config.background.auto_clear:
                    tasks = self._mark_delivered(tasks)
                if not tasks:
                    return NotificationResult()
        except OSError as e:
            logger.warning("Background task store unavailable: %s", e)
            return NotificationResult()

        return NotificationResult(
            has_notifications=True,
            message=format_notification(tasks, self.config.background.result_preview_chars),
            count=len(tasks),
            tasks=tasks,
        )

    def clear_notifications(self, session_id: str) -> int:
        """Mark every pending notification for the session delivered."""
        with state_store.locked(self.lock_path):
            marked = self._mark_delivered(self.pending_notifications(session_id))
        return len(marked)

    def _mark_delivered(self, tasks: list[BackgroundTask]) -> list[BackgroundTask]:
        """Persist the delivery mark task by task; stops at the first failed write."""
        now = datetime.now(UTC)
        marked = []
        for task in tasks:
            task.delivered_at = now
            try:
                self._save(task)
            except OSError as e:
                task.delivered_at = None
                logger.warning("Could not mark task %s delivered: %s", task.id, e)
                break
            marked.append(task)
        return marked
