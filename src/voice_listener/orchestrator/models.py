"""Domain models for task scheduling and execution."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    AWAITING_FEEDBACK = "awaiting_feedback"


TERMINAL_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED},
)


class TaskType(str, Enum):
    """Closed set of task kinds produced by extraction."""

    CODE_CHANGE = "code_change"
    NEW_PROJECT = "new_project"
    RESEARCH = "research"
    WRITE = "write"
    HUMAN_TASK = "human_task"


class CodeChangeSubtype(str, Enum):
    BUG = "bug"
    FEATURE = "feature"
    REFACTOR = "refactor"


class ErrorCategory(str, Enum):
    """Normalized failure categories recorded on failed or cancelled tasks."""

    TIMEOUT = "timeout"
    QUOTA = "quota"
    PERMISSION = "permission"
    CANCELLED = "cancelled"
    SPAWN_ERROR = "spawn_error"
    AGENT_ERROR = "agent_error"
    UNKNOWN = "unknown"


@dataclass(slots=True)
class ThreadMessage:
    """One entry of the human/agent conversation attached to a task."""

    role: str
    content: str
    timestamp: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "content": self.content, "timestamp": self.timestamp}


def parse_thread(raw: str | None) -> list[ThreadMessage]:
    """Decode the JSON text message thread; malformed entries are dropped."""

    if not raw:
        return []
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return []
    if not isinstance(payload, list):
        return []
    messages: list[ThreadMessage] = []
    for item in payload:
        if not isinstance(item, dict):
            continue
        role = item.get("role")
        content = item.get("content")
        if not isinstance(role, str) or not isinstance(content, str):
            continue
        timestamp = item.get("timestamp")
        messages.append(
            ThreadMessage(
                role=role,
                content=content,
                timestamp=int(timestamp) if isinstance(timestamp, int | float) else 0,
            ),
        )
    return messages


def dump_thread(messages: list[ThreadMessage]) -> str:
    return json.dumps([message.to_dict() for message in messages], ensure_ascii=False)


@dataclass(slots=True)
class TaskView:
    """Readable task view for scheduler, driver and CLI logic."""

    task_id: str
    task_type: TaskType
    title: str
    status: TaskStatus
    extracted_at: datetime
    subtype: str | None = None
    description: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    result: str | None = None
    error_message: str | None = None
    error_category: ErrorCategory | None = None
    depends_on_id: str | None = None
    sequence_index: int | None = None
    messages: list[ThreadMessage] = field(default_factory=list)
    session_id: str | None = None
    cancel_requested: bool = False
    progress: str | None = None
    log_file: str | None = None
    duration_ms: int | None = None
    tools_used: int | None = None
    prompt_version_id: str | None = None
    project_path: str | None = None
    deploy_url: str | None = None
    deploy_url_label: str | None = None

    @property
    def has_pending_feedback(self) -> bool:
        """True when the newest thread message came from the user."""

        return bool(self.messages) and self.messages[-1].role == "user"


@dataclass(slots=True)
class TaskCreate:
    """Input payload for inserting a pending task."""

    task_type: TaskType
    title: str
    description: str | None = None
    subtype: str | None = None
    task_id: str | None = None
    depends_on_id: str | None = None
    sequence_index: int | None = None
    project_path: str | None = None
    extracted_at: datetime | None = None


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class PromptVersionView:
    version: str
    content_hash: str
    created_at: datetime
    notes: str | None = None
    total_runs: int | None = None
    avg_rating: float | None = None
    success_rate: float | None = None


@dataclass(slots=True)
class WorkerHeartbeatView:
    name: str
    last_seen: datetime
    status: str | None = None


class ActivityKind(str, Enum):
    SKILL = "skill"
    TOOL = "tool"
    AGENT = "agent"
    MESSAGE = "message"
    MILESTONE = "milestone"


class ActivityStatus(str, Enum):
    ACTIVE = "active"
    DONE = "done"
    ERROR = "error"


@dataclass(slots=True)
class ActivityEntry:
    """One line of the user-facing activity feed."""

    kind: ActivityKind
    icon: str
    label: str
    started_at: int
    status: ActivityStatus = ActivityStatus.ACTIVE
    detail: str | None = None
    duration_ms: int | None = None
    tool_use_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "kind": self.kind.value,
            "icon": self.icon,
            "label": self.label,
            "startedAt": self.started_at,
            "status": self.status.value,
        }
        if self.detail is not None:
            payload["detail"] = self.detail
        if self.duration_ms is not None:
            payload["durationMs"] = self.duration_ms
        if self.tool_use_id is not None:
            payload["id"] = self.tool_use_id
        return payload


@dataclass(slots=True)
class Progress:
    """Bounded, human-readable execution summary derived from a log file."""

    current_activity: str | None = None
    skills: list[str] = field(default_factory=list)
    current_task: str | None = None
    todo_done: int = 0
    todo_total: int = 0
    activities: list[ActivityEntry] = field(default_factory=list)
    last_update: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "currentActivity": self.current_activity,
            "skills": list(self.skills),
            "currentTask": self.current_task,
            "todoDone": self.todo_done,
            "todoTotal": self.todo_total,
            "activities": [entry.to_dict() for entry in self.activities],
            "lastUpdate": self.last_update,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    @classmethod
    def from_json(cls, raw: str) -> Progress:
        payload = json.loads(raw)
        if not isinstance(payload, dict):
            raise TypeError("Progress snapshot must be a JSON object.")
        activities = [
            ActivityEntry(
                kind=ActivityKind(item["kind"]),
                icon=str(item.get("icon", "")),
                label=str(item.get("label", "")),
                started_at=int(item.get("startedAt", 0)),
                status=ActivityStatus(item.get("status", ActivityStatus.ACTIVE.value)),
                detail=item.get("detail"),
                duration_ms=item.get("durationMs"),
                tool_use_id=item.get("id"),
            )
            for item in payload.get("activities", [])
            if isinstance(item, dict)
        ]
        return cls(
            current_activity=payload.get("currentActivity"),
            skills=[str(skill) for skill in payload.get("skills", [])],
            current_task=payload.get("currentTask"),
            todo_done=int(payload.get("todoDone", 0)),
            todo_total=int(payload.get("todoTotal", 0)),
            activities=activities,
            last_update=int(payload.get("lastUpdate", 0)),
        )
