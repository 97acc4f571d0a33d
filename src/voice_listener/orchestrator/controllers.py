"""Controllers for task worker CLI commands."""

from __future__ import annotations

import asyncio
import os
import signal
from collections.abc import AsyncIterator, Coroutine
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

from voice_listener.config import Settings
from voice_listener.orchestrator.backend import CliAgentBackend
from voice_listener.orchestrator.executor import TASK_ID_ENV, ExecutionSessionDriver
from voice_listener.orchestrator.models import (
    TERMINAL_STATUSES,
    ErrorCategory,
    Progress,
    TaskCreate,
    TaskStatus,
    TaskType,
    ThreadMessage,
)
from voice_listener.orchestrator.notifications import Notifier, NullNotifier, PushNotifier
from voice_listener.orchestrator.progress import ProgressProjector
from voice_listener.orchestrator.prompt_versions import PromptVersionTracker
from voice_listener.orchestrator.repository import SqliteTaskStore
from voice_listener.orchestrator.scheduler import BatchScheduler, parse_since
from voice_listener.storage.common import to_epoch_ms, utc_now

_T = TypeVar("_T")

# Side-channel field names as the agent spells them, mapped to task columns.
TASK_UPDATE_FIELDS: dict[str, str] = {
    "result": "result",
    "status": "status",
    "deployUrl": "deploy_url",
    "deployUrlLabel": "deploy_url_label",
}
AGENT_SETTABLE_STATUSES = frozenset(
    {
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
        TaskStatus.AWAITING_FEEDBACK,
    },
)
REPLY_REOPENS_STATUSES = frozenset({TaskStatus.AWAITING_FEEDBACK, TaskStatus.COMPLETED})


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for scheduler execution."""

    db_path: Path | None
    once: bool
    limit: int | None = None
    task_id: str | None = None
    skip_recovery: bool = False
    since: str | None = None
    watch_progress: bool = True


@dataclass(slots=True)
class ProgressCommand:
    """CLI input for the standalone progress projector."""

    db_path: Path | None
    once: bool


@dataclass(slots=True)
class TaskUpdateCommand:
    """Side-channel update: `[TASK_ID] FIELD VALUE...`."""

    db_path: Path | None
    args: tuple[str, ...]


@dataclass(slots=True)
class ListTasksCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class InspectTaskCommand:
    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class MutateTaskCommand:
    """CLI input for cancel."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class ReplyCommand:
    db_path: Path | None
    task_id: str
    message: str


@dataclass(slots=True)
class AddTaskCommand:
    """CLI input for manual task creation."""

    db_path: Path | None
    task_type: str
    title: str
    description: str | None = None
    subtype: str | None = None
    depends_on: str | None = None
    sequence_index: int | None = None
    project_path: str | None = None


@dataclass(slots=True)
class PromptVersionCommand:
    db_path: Path | None


@dataclass(slots=True)
class PushTokenCommand:
    db_path: Path | None
    token: str


class CliController:
    """Coordinates worker, projector, side-channel and inspection CLI operations."""

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_worker()
        since = parse_since(command.since) if command.since else None
        return _run(self._run_worker(settings, command, since))

    def run_progress(self, command: ProgressCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        return _run(self._run_progress(settings, once=command.once))

    def task_update(self, command: TaskUpdateCommand) -> list[str]:
        task_id, field_name, value = parse_task_update_args(
            command.args,
            env_task_id=os.getenv(TASK_ID_ENV),
        )
        settings = Settings.from_env(db_path=command.db_path)
        return _run(self._task_update(settings, task_id, field_name, value))

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        return _run(self._list_tasks(settings, status_filter, command.limit))

    def inspect_task(self, command: InspectTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        return _run(self._inspect_task(settings, command.task_id))

    def cancel_task(self, command: MutateTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        return _run(self._cancel_task(settings, command.task_id))

    def reply(self, command: ReplyCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if not command.message.strip():
            raise ValueError("Reply message must not be empty.")
        return _run(self._reply(settings, command.task_id, command.message.strip()))

    def add_task(self, command: AddTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        try:
            task_type = TaskType(command.task_type)
        except ValueError as error:
            raise ValueError(f"Unsupported task type: {command.task_type!r}") from error
        return _run(self._add_task(settings, command, task_type))

    def prompt_version(self, command: PromptVersionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        return _run(self._prompt_version(settings))

    def register_push_token(self, command: PushTokenCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        return _run(self._register_push_token(settings, command.token))

    async def _run_worker(
        self,
        settings: Settings,
        command: WorkerCommand,
        since: datetime | None,
    ) -> list[str]:
        async with _store(settings) as store, _notifier(settings, store) as notifier:
            tracker = PromptVersionTracker(
                store=store,
                prompts_dir=settings.prompts_dir,
                guideline_files=settings.guideline_files,
            )
            driver = ExecutionSessionDriver(
                store=store,
                backend=CliAgentBackend(),
                settings=settings,
                notifier=notifier,
            )
            scheduler = BatchScheduler(
                store=store,
                driver=driver,
                settings=settings,
                tracker=tracker,
            )

            stop_projector = asyncio.Event()
            projector_task: asyncio.Task[None] | None = None
            if command.watch_progress:
                projector = ProgressProjector(store=store, settings=settings.progress)
                projector_task = asyncio.create_task(projector.run(stop_projector))
            try:
                if command.task_id is not None:
                    outcome = await scheduler.run_task(command.task_id)
                    if outcome is None:
                        return [f"Task could not be claimed: {command.task_id}"]
                    return [
                        "Task run: "
                        f"task_id={outcome.task_id} "
                        f"status={outcome.status.value if outcome.status else '-'} "
                        f"duration_ms={outcome.duration_ms} tools_used={outcome.tools_used} "
                        f"session_id={outcome.session_id or '-'}",
                    ]
                summary = await scheduler.run(
                    once=command.once,
                    limit=command.limit,
                    since=since,
                    skip_recovery=command.skip_recovery,
                )
            finally:
                stop_projector.set()
                if projector_task is not None:
                    await projector_task

        return [
            "Worker summary: "
            f"processed={summary.processed} completed={summary.completed} "
            f"failed={summary.failed} cancelled={summary.cancelled} "
            f"awaiting_feedback={summary.awaiting_feedback} batches={summary.batches}",
        ]

    async def _run_progress(self, settings: Settings, *, once: bool) -> list[str]:
        async with _store(settings) as store:
            projector = ProgressProjector(store=store, settings=settings.progress)
            if once:
                writes = await projector.run_once()
                return [f"Progress updated: watched={len(projector.watched)} writes={writes}"]
            stop = asyncio.Event()
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                with suppress(NotImplementedError):
                    loop.add_signal_handler(sig, stop.set)
            await projector.run(stop)
        return ["Progress projector stopped."]

    async def _task_update(
        self,
        settings: Settings,
        task_id: str,
        field_name: str,
        value: str,
    ) -> list[str]:
        column = TASK_UPDATE_FIELDS[field_name]
        fields: dict[str, object] = {column: value}
        new_status: TaskStatus | None = None
        if column == "status":
            new_status = _parse_status(value)
            if new_status not in AGENT_SETTABLE_STATUSES:
                allowed = ", ".join(sorted(item.value for item in AGENT_SETTABLE_STATUSES))
                raise ValueError(f"Unsupported status {value!r}; expected one of: {allowed}")
            fields[column] = new_status
            if new_status in TERMINAL_STATUSES:
                fields["completed_at"] = utc_now()

        async with _store(settings) as store:
            before = await store.get_task(task_id)
            if before is None:
                raise ValueError(f"Task not found: {task_id}")
            await store.update_task(task_id, fields)
            await store.add_task_event(
                task_id=task_id,
                event_type="agent_update",
                status_from=before.status,
                status_to=new_status or before.status,
                details={"field": field_name},
            )
        return [f"Updated task {task_id}: {field_name} = {value}"]

    async def _list_tasks(
        self,
        settings: Settings,
        status: TaskStatus | None,
        limit: int,
    ) -> list[str]:
        async with _store(settings) as store:
            tasks = await store.list_tasks(status=status, limit=limit)

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} type={task.task_type.value} status={task.status.value} "
                f"seq={task.sequence_index if task.sequence_index is not None else '-'} "
                f"depends_on={task.depends_on_id or '-'} title={task.title}",
            )
        return lines

    async def _inspect_task(self, settings: Settings, task_id: str) -> list[str]:
        async with _store(settings) as store:
            task = await store.get_task(task_id)
            events = await store.list_task_events(task_id) if task is not None else []
        if task is None:
            return [f"Task not found: {task_id}"]

        lines = [
            f"Task: {task.task_id}",
            f"Type: {task.task_type.value}{f' ({task.subtype})' if task.subtype else ''}",
            f"Title: {task.title}",
            f"Status: {task.status.value}",
            f"Depends on: {task.depends_on_id or '-'}",
            f"Sequence index: {task.sequence_index if task.sequence_index is not None else '-'}",
            f"Started: {task.started_at.isoformat() if task.started_at else '-'}",
            f"Completed: {task.completed_at.isoformat() if task.completed_at else '-'}",
            f"Session: {task.session_id or '-'}",
            f"Prompt version: {task.prompt_version_id or '-'}",
            f"Project path: {task.project_path or '-'}",
            f"Log file: {task.log_file or '-'}",
            f"Duration ms: {task.duration_ms if task.duration_ms is not None else '-'}",
            f"Tools used: {task.tools_used if task.tools_used is not None else '-'}",
            f"Error: {task.error_message or '-'}",
            f"Error category: {task.error_category.value if task.error_category else '-'}",
            f"Deploy URL: {task.deploy_url or '-'}",
            f"Result: {task.result or '-'}",
            f"Messages: {len(task.messages)}",
        ]
        if task.progress:
            try:
                progress = Progress.from_json(task.progress)
            except (ValueError, TypeError, KeyError):
                lines.append("Progress: <unreadable>")
            else:
                lines.append(
                    f"Progress: {progress.current_activity or '-'} "
                    f"todos={progress.todo_done}/{progress.todo_total} "
                    f"activities={len(progress.activities)}",
                )
        lines.append(f"Events: {len(events)}")
        for event in events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    async def _cancel_task(self, settings: Settings, task_id: str) -> list[str]:
        async with _store(settings) as store:
            task = await store.get_task(task_id)
            if task is None:
                raise ValueError(f"Task not found: {task_id}")
            if task.status in TERMINAL_STATUSES:
                return [f"Task already finished: {task_id} status={task.status.value}"]
            if task.status == TaskStatus.IN_PROGRESS:
                await store.update_task(task_id, {"cancel_requested": True})
                return [f"Cancellation requested: {task_id}"]
            # Nothing is running it; finish it here.
            applied = await store.update_task(
                task_id,
                {
                    "cancel_requested": True,
                    "status": TaskStatus.CANCELLED,
                    "completed_at": utc_now(),
                    "error_message": "Cancelled by user",
                    "error_category": ErrorCategory.CANCELLED,
                },
                expect_status=task.status,
            )
            if not applied:
                await store.update_task(task_id, {"cancel_requested": True})
                return [f"Cancellation requested: {task_id}"]
            await store.add_task_event(
                task_id=task_id,
                event_type="cancelled",
                status_from=task.status,
                status_to=TaskStatus.CANCELLED,
            )
        return [f"Task cancelled: {task_id}"]

    async def _reply(self, settings: Settings, task_id: str, message: str) -> list[str]:
        async with _store(settings) as store:
            task = await store.get_task(task_id)
            if task is None:
                raise ValueError(f"Task not found: {task_id}")
            messages = [
                *task.messages,
                ThreadMessage(role="user", content=message, timestamp=to_epoch_ms(utc_now())),
            ]
            fields: dict[str, object] = {"messages": messages}
            reopened = task.status in REPLY_REOPENS_STATUSES
            if reopened:
                fields.update({"status": TaskStatus.PENDING, "completed_at": None})
            await store.update_task(task_id, fields)
            if reopened:
                await store.add_task_event(
                    task_id=task_id,
                    event_type="feedback_received",
                    status_from=task.status,
                    status_to=TaskStatus.PENDING,
                )
        suffix = " and re-queued" if reopened else ""
        return [f"Reply added to {task_id}{suffix} (messages={len(messages)})"]

    async def _add_task(
        self,
        settings: Settings,
        command: AddTaskCommand,
        task_type: TaskType,
    ) -> list[str]:
        async with _store(settings) as store:
            if command.depends_on is not None and await store.get_task(command.depends_on) is None:
                raise ValueError(f"Dependency not found: {command.depends_on}")
            task = await store.create_task(
                TaskCreate(
                    task_type=task_type,
                    title=command.title,
                    description=command.description,
                    subtype=command.subtype,
                    sequence_index=command.sequence_index,
                    project_path=command.project_path,
                ),
            )
            if command.depends_on is not None:
                await store.link_dependency(task.task_id, command.depends_on)
        return [
            "Task created: "
            f"task_id={task.task_id} type={task.task_type.value} status={task.status.value}"
            + (f" depends_on={command.depends_on}" if command.depends_on else ""),
        ]

    async def _prompt_version(self, settings: Settings) -> list[str]:
        async with _store(settings) as store:
            tracker = PromptVersionTracker(
                store=store,
                prompts_dir=settings.prompts_dir,
                guideline_files=settings.guideline_files,
            )
            version_id = await tracker.init()
            record = await store.find_prompt_version(version_id)
        lines = [f"Prompt version: {version_id}"]
        if record is not None:
            lines.extend(
                [
                    f"Content hash: {record.content_hash}",
                    f"Created: {record.created_at.isoformat()}",
                    f"Total runs: {record.total_runs if record.total_runs is not None else '-'}",
                    f"Success rate: "
                    f"{record.success_rate if record.success_rate is not None else '-'}",
                ],
            )
        return lines

    async def _register_push_token(self, settings: Settings, token: str) -> list[str]:
        async with _store(settings) as store:
            await store.register_push_token(token)
        return ["Push token registered."]


def parse_task_update_args(
    args: tuple[str, ...],
    *,
    env_task_id: str | None,
) -> tuple[str, str, str]:
    """Accept `TASK_ID FIELD VALUE...` or `FIELD VALUE...` with the id from the environment."""

    if len(args) >= 2 and args[0] not in TASK_UPDATE_FIELDS:
        task_id, field_name, value_parts = args[0], args[1], args[2:]
    else:
        task_id = env_task_id or ""
        field_name = args[0] if args else ""
        value_parts = args[1:]
    if not task_id or not field_name:
        raise ValueError(
            f"Usage: task-update [TASK_ID] FIELD VALUE (or set {TASK_ID_ENV}).",
        )
    if field_name not in TASK_UPDATE_FIELDS:
        raise ValueError(
            f"Unknown field: {field_name}. Valid fields: {', '.join(TASK_UPDATE_FIELDS)}",
        )
    return task_id, field_name, " ".join(value_parts)


def _run(coroutine: Coroutine[Any, Any, _T]) -> _T:
    return asyncio.run(coroutine)


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    try:
        return TaskStatus(value)
    except ValueError as error:
        raise ValueError(f"Unsupported task status: {value!r}") from error


@asynccontextmanager
async def _store(settings: Settings) -> AsyncIterator[SqliteTaskStore]:
    store = SqliteTaskStore(settings.db_path, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    await asyncio.to_thread(store.init_schema)
    try:
        yield store
    finally:
        store.close()


@asynccontextmanager
async def _notifier(settings: Settings, store: SqliteTaskStore) -> AsyncIterator[Notifier]:
    if not settings.notifications.enabled:
        yield NullNotifier()
        return
    async with PushNotifier(
        store=store,
        push_url=settings.notifications.push_url,
        timeout_seconds=settings.notifications.request_timeout_seconds,
    ) as notifier:
        yield notifier
