"""Shared test fixtures."""

from __future__ import annotations

import shlex
import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

from voice_listener.config import (
    AgentSettings,
    NotificationSettings,
    ProgressSettings,
    Settings,
    WorkerSettings,
)
from voice_listener.orchestrator.models import TaskType
from voice_listener.orchestrator.repository import SqliteTaskStore

_ECHO_AGENT = f"{shlex.quote(sys.executable)} -m voice_listener.orchestrator.backend.echo_agent"
ECHO_AGENT_COMMAND_TEMPLATE = f"{_ECHO_AGENT} --prompt {{prompt}}"
ECHO_AGENT_RESUME_COMMAND_TEMPLATE = f"{_ECHO_AGENT} --prompt {{prompt}} --resume {{session_id}}"


class RecordingNotifier:
    """Notifier double that keeps every call."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []

    async def task_completed(self, *, task_id: str, title: str, task_type: TaskType) -> None:
        self.calls.append(("completed", task_id))

    async def task_awaiting_feedback(
        self,
        *,
        task_id: str,
        title: str,
        task_type: TaskType,
    ) -> None:
        self.calls.append(("awaiting_feedback", task_id))

    async def task_failed(self, *, task_id: str, title: str, error_message: str | None) -> None:
        self.calls.append(("failed", task_id))


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "tasks.db"


@pytest.fixture()
def store(db_path: Path) -> Iterator[SqliteTaskStore]:
    task_store = SqliteTaskStore(db_path)
    task_store.init_schema()
    yield task_store
    task_store.close()


@pytest.fixture()
def settings(tmp_path: Path, db_path: Path) -> Settings:
    """Fast timings and the echo agent in place of the real CLI."""

    return Settings(
        db_path=db_path,
        logs_dir=tmp_path / "logs",
        projects_dir=tmp_path / "projects",
        default_workdir=tmp_path / "work",
        guideline_files=(),
        worker=WorkerSettings(
            max_concurrency=15,
            poll_interval_seconds=0.05,
            cancel_poll_seconds=0.1,
            finalize_grace_seconds=0.0,
            execution_timeout_seconds=60,
            heartbeat_interval_seconds=0.2,
        ),
        progress=ProgressSettings(
            poll_interval_seconds=0.05,
            tail_interval_seconds=0.02,
            debounce_seconds=0.05,
        ),
        agent=AgentSettings(
            command_template=ECHO_AGENT_COMMAND_TEMPLATE,
            resume_command_template=ECHO_AGENT_RESUME_COMMAND_TEMPLATE,
        ),
        notifications=NotificationSettings(enabled=False),
    )


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()
