"""Log tailing projector that keeps in-progress task snapshots current."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path, PurePath
from typing import Any

from voice_listener.config import ProgressSettings
from voice_listener.orchestrator.debounce import Debouncer
from voice_listener.orchestrator.models import (
    ActivityEntry,
    ActivityKind,
    ActivityStatus,
    Progress,
    TaskStatus,
)
from voice_listener.orchestrator.store import TaskStore, TaskStoreError
from voice_listener.orchestrator.stream_events import iter_content_blocks, parse_event_line

logger = logging.getLogger(__name__)

DETAIL_MAX_CHARS = 60
INTENT_MAX_CHARS = 120
INTENT_PREFIXES: tuple[str, ...] = ("I'll ", "I will ", "Let me ", "Now I'll ", "Next, I'll ")

# Shell calls the agent makes to report back on its own task.
HIDDEN_COMMAND_PATTERNS: tuple[str, ...] = (
    "update-action-cli",
    "voice_listener_task_cli",
    "task-update",
    "voice_listener.main",
)


@dataclass(frozen=True, slots=True)
class ToolPresentation:
    icon: str
    label: str
    kind: ActivityKind = ActivityKind.TOOL


TOOL_PRESENTATIONS: dict[str, ToolPresentation] = {
    "Bash": ToolPresentation("💻", "Running command"),
    "Read": ToolPresentation("📖", "Reading file"),
    "Write": ToolPresentation("📝", "Writing file"),
    "Edit": ToolPresentation("✏️", "Editing file"),
    "MultiEdit": ToolPresentation("✏️", "Editing file"),
    "NotebookEdit": ToolPresentation("📓", "Editing notebook"),
    "Glob": ToolPresentation("🗂️", "Finding files"),
    "Grep": ToolPresentation("🔎", "Searching code"),
    "WebSearch": ToolPresentation("🌐", "Searching the web"),
    "WebFetch": ToolPresentation("🌐", "Fetching page"),
    "Task": ToolPresentation("🤖", "Delegating to agent", ActivityKind.AGENT),
    "Skill": ToolPresentation("🧩", "Using skill", ActivityKind.SKILL),
}
DEFAULT_TOOL_PRESENTATION = ToolPresentation("🔧", "Using tool")
MESSAGE_ICON = "💬"
MILESTONE_ICON = "🏁"


def _now_ms() -> int:
    return int(time.time() * 1000)


def is_hidden_command(text: str | None) -> bool:
    if not text:
        return False
    lowered = text.lower()
    return any(pattern in lowered for pattern in HIDDEN_COMMAND_PATTERNS)


def tool_detail(name: str, tool_input: dict[str, Any]) -> str | None:
    """Short per-tool detail shown next to the label."""

    if name == "Skill":
        return _first_str(tool_input, "skill", "command", "name")
    if name == "Task":
        return _first_str(tool_input, "description", "subagent_type")
    if name == "Bash":
        description = _first_str(tool_input, "description")
        if description:
            return description
        return _truncate(_first_str(tool_input, "command"))
    if name == "WebSearch":
        return _truncate(_first_str(tool_input, "query"))
    if name in {"Grep", "Glob"}:
        return _truncate(_first_str(tool_input, "pattern"))
    if name == "WebFetch":
        return _truncate(_first_str(tool_input, "url"))
    path = _first_str(tool_input, "file_path", "notebook_path", "path")
    if path:
        return PurePath(path).name
    return None


class ProgressParser:
    """Incremental stream-json line parser producing a `Progress` snapshot."""

    def __init__(
        self,
        *,
        max_activities: int = 30,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self.max_activities = max_activities
        self._clock = clock
        self.progress = Progress(last_update=clock())
        self._open_tools: dict[str, ActivityEntry | None] = {}

    def feed_line(self, line: str) -> bool:
        """Apply one log line; True if the snapshot changed."""

        event = parse_event_line(line)
        if event is None:
            return False
        event_type = event.get("type")
        changed = False
        if event_type == "assistant":
            for block in iter_content_blocks(event):
                block_type = block.get("type")
                if block_type == "tool_use":
                    changed = self._on_tool_use(block) or changed
                elif block_type == "text":
                    changed = self._on_text(block.get("text")) or changed
        elif event_type == "user":
            for block in iter_content_blocks(event):
                if block.get("type") == "tool_result":
                    changed = self._on_tool_result(block) or changed
            result_payload = event.get("tool_use_result")
            if isinstance(result_payload, dict) and isinstance(
                result_payload.get("newTodos"),
                list,
            ):
                changed = self._apply_todos(result_payload["newTodos"]) or changed
        elif event_type == "result":
            changed = self._on_result(event)
        if changed:
            self.progress.last_update = self._clock()
        return changed

    def snapshot(self) -> Progress:
        return Progress.from_json(self.progress.to_json())

    def _on_tool_use(self, block: dict[str, Any]) -> bool:
        name = block.get("name")
        if not isinstance(name, str):
            return False
        tool_input = block.get("input") if isinstance(block.get("input"), dict) else {}
        tool_use_id = block.get("id") if isinstance(block.get("id"), str) else None

        if name == "TodoWrite":
            todos = tool_input.get("todos")
            if tool_use_id is not None:
                self._open_tools[tool_use_id] = None
            return isinstance(todos, list) and self._apply_todos(todos)

        if name == "Bash" and (
            is_hidden_command(tool_input.get("description"))
            or is_hidden_command(tool_input.get("command"))
        ):
            if tool_use_id is not None:
                self._open_tools[tool_use_id] = None
            return False

        presentation = TOOL_PRESENTATIONS.get(name, DEFAULT_TOOL_PRESENTATION)
        detail = tool_detail(name, tool_input)
        label = presentation.label if name in TOOL_PRESENTATIONS else name
        is_new_skill = detail is not None and detail not in self.progress.skills
        if presentation.kind == ActivityKind.SKILL and is_new_skill:
            self.progress.skills.append(detail)

        entry = ActivityEntry(
            kind=presentation.kind,
            icon=presentation.icon,
            label=label,
            detail=detail,
            started_at=self._clock(),
            tool_use_id=tool_use_id,
        )
        self._append(entry)
        if tool_use_id is not None:
            self._open_tools[tool_use_id] = entry
        self.progress.current_activity = f"{label}: {detail}" if detail else label
        return True

    def _on_tool_result(self, block: dict[str, Any]) -> bool:
        tool_use_id = block.get("tool_use_id")
        if not isinstance(tool_use_id, str) or tool_use_id not in self._open_tools:
            return False
        entry = self._open_tools.pop(tool_use_id)
        if entry is None:
            return False
        entry.status = ActivityStatus.ERROR if block.get("is_error") else ActivityStatus.DONE
        entry.duration_ms = max(0, self._clock() - entry.started_at)
        return True

    def _on_text(self, text: object) -> bool:
        if not isinstance(text, str):
            return False
        changed = False
        for sentence in _intent_sentences(text):
            self._append(
                ActivityEntry(
                    kind=ActivityKind.MESSAGE,
                    icon=MESSAGE_ICON,
                    label=sentence,
                    started_at=self._clock(),
                    status=ActivityStatus.DONE,
                ),
            )
            self.progress.current_activity = sentence
            changed = True
        return changed

    def _on_result(self, event: dict[str, Any]) -> bool:
        is_error = bool(event.get("is_error"))
        duration = event.get("duration_ms")
        self._append(
            ActivityEntry(
                kind=ActivityKind.MILESTONE,
                icon=MILESTONE_ICON,
                label="Finished with errors" if is_error else "Finished",
                started_at=self._clock(),
                status=ActivityStatus.ERROR if is_error else ActivityStatus.DONE,
                duration_ms=int(duration) if isinstance(duration, int | float) else None,
            ),
        )
        self.progress.current_activity = "Finished"
        return True

    def _apply_todos(self, todos: list[Any]) -> bool:
        items = [item for item in todos if isinstance(item, dict)]
        self.progress.todo_total = len(items)
        self.progress.todo_done = sum(1 for item in items if item.get("status") == "completed")
        current = next((item for item in items if item.get("status") == "in_progress"), None)
        if current is not None:
            self.progress.current_task = _first_str(current, "activeForm", "content")
        return True

    def _append(self, entry: ActivityEntry) -> None:
        self.progress.activities.append(entry)
        overflow = len(self.progress.activities) - self.max_activities
        if overflow > 0:
            del self.progress.activities[:overflow]


@dataclass(slots=True)
class LogTail:
    """Per-file read state: byte offset plus the trailing partial line."""

    path: Path
    offset: int = 0
    partial: bytes = b""
    resets: int = 0

    def read_new_lines(self) -> list[str]:
        try:
            size = self.path.stat().st_size
        except FileNotFoundError:
            return []
        if size < self.offset:
            # Truncated or replaced; start over from the beginning.
            self.offset = 0
            self.partial = b""
            self.resets += 1
        if size == self.offset:
            return []
        with self.path.open("rb") as handle:
            handle.seek(self.offset)
            data = handle.read(size - self.offset)
        self.offset += len(data)
        *complete, self.partial = (self.partial + data).split(b"\n")
        return [line.decode("utf-8", errors="replace").rstrip("\r") for line in complete]


@dataclass(slots=True)
class WatchedTask:
    task_id: str
    tail: LogTail
    parser: ProgressParser
    parse_errors: int = 0
    lines_seen: int = 0


class ProgressProjector:
    """Poll the store for in-progress tasks and tail their log files."""

    def __init__(
        self,
        *,
        store: TaskStore,
        settings: ProgressSettings,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock
        self.watched: dict[str, WatchedTask] = {}
        self.debouncer: Debouncer[str] = Debouncer(
            self._write_progress,
            delay_seconds=settings.debounce_seconds,
        )

    async def refresh_watch_set(self) -> tuple[list[str], list[str]]:
        """Start watching new in-progress logs and drop tasks that left in-progress."""

        tasks = await self.store.list_tasks(status=TaskStatus.IN_PROGRESS)
        active: dict[str, str] = {task.task_id: task.log_file for task in tasks if task.log_file}
        added: list[str] = []
        removed: list[str] = []

        for task_id in list(self.watched):
            current_log = active.get(task_id)
            if current_log is not None and Path(current_log) == self.watched[task_id].tail.path:
                continue
            self._unwatch(task_id)
            removed.append(task_id)

        for task_id, log_file in active.items():
            if task_id in self.watched:
                continue
            self.watched[task_id] = WatchedTask(
                task_id=task_id,
                tail=LogTail(path=Path(log_file)),
                parser=ProgressParser(
                    max_activities=self.settings.max_activities,
                    clock=self._clock,
                ),
            )
            added.append(task_id)
            logger.info("Starting to watch: %s", Path(log_file).name)
        return added, removed

    async def tail_all(self) -> int:
        """Parse new log lines of every watched task; returns how many changed."""

        changed_tasks = 0
        for watched in list(self.watched.values()):
            try:
                lines = await asyncio.to_thread(watched.tail.read_new_lines)
            except OSError:
                logger.debug("Error tailing %s", watched.tail.path, exc_info=True)
                continue
            if self._feed(watched, lines):
                changed_tasks += 1
                self.debouncer.schedule(watched.task_id, watched.parser.progress.to_json())
        return changed_tasks

    async def flush(self) -> int:
        return await self.debouncer.flush()

    async def run_once(self) -> int:
        await self.refresh_watch_set()
        await self.tail_all()
        return await self.flush()

    async def run(self, stop: asyncio.Event) -> None:
        """Poll and tail until `stop` is set, then flush pending writes."""

        logger.info(
            "Watching task logs (poll: %ss, tail: %ss)",
            self.settings.poll_interval_seconds,
            self.settings.tail_interval_seconds,
        )
        loops = [
            asyncio.create_task(
                self._every(self.settings.poll_interval_seconds, self._safe_refresh, stop),
            ),
            asyncio.create_task(
                self._every(self.settings.tail_interval_seconds, self.tail_all, stop),
            ),
        ]
        try:
            await stop.wait()
        finally:
            for loop in loops:
                loop.cancel()
            await asyncio.gather(*loops, return_exceptions=True)
            await self.flush()
            await self.debouncer.aclose()

    def _feed(self, watched: WatchedTask, lines: list[str]) -> bool:
        changed = False
        for line in lines:
            watched.lines_seen += 1
            try:
                changed = watched.parser.feed_line(line) or changed
            except Exception:  # noqa: BLE001
                watched.parse_errors += 1
                logger.debug("Unparseable log line in %s", watched.tail.path, exc_info=True)
        return changed

    def _unwatch(self, task_id: str) -> None:
        watched = self.watched.pop(task_id)
        self.debouncer.cancel(task_id)
        logger.info(
            "Stopped watching: %s (task no longer in progress)",
            watched.tail.path.name,
        )

    async def _safe_refresh(self) -> None:
        try:
            await self.refresh_watch_set()
        except TaskStoreError:
            logger.warning("Progress watch-set refresh failed", exc_info=True)

    async def _write_progress(self, task_id: str, payload: str) -> None:
        applied = await self.store.update_task(
            task_id,
            {"progress": payload},
            expect_status=TaskStatus.IN_PROGRESS,
        )
        if applied:
            logger.debug("Updated progress for task %s", task_id)

    @staticmethod
    async def _every(
        interval: float,
        action: Callable[[], Any],
        stop: asyncio.Event,
    ) -> None:
        while not stop.is_set():
            await action()
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except TimeoutError:
                continue


def _intent_sentences(text: str) -> list[str]:
    sentences: list[str] = []
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line.startswith(INTENT_PREFIXES):
            continue
        sentence = re.split(r"(?<=[.!?:])\s", line, maxsplit=1)[0].rstrip(":")
        sentences.append(_truncate(sentence, INTENT_MAX_CHARS) or sentence)
    return sentences


def _first_str(payload: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _truncate(value: str | None, limit: int = DETAIL_MAX_CHARS) -> str | None:
    if value is None:
        return None
    if len(value) <= limit:
        return value
    return value[: limit - 1].rstrip() + "…"
