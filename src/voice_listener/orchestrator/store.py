"""Data-access interface consumed by the scheduler, driver and projector."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Protocol

from voice_listener.orchestrator.models import (
    PromptVersionView,
    TaskCreate,
    TaskEventView,
    TaskStatus,
    TaskView,
    WorkerHeartbeatView,
)

# Field names accepted by `TaskStore.update_task`.
UPDATABLE_TASK_FIELDS = frozenset(
    {
        "status",
        "started_at",
        "completed_at",
        "result",
        "error_message",
        "error_category",
        "depends_on_id",
        "sequence_index",
        "messages",
        "session_id",
        "cancel_requested",
        "progress",
        "log_file",
        "duration_ms",
        "tools_used",
        "prompt_version_id",
        "project_path",
        "deploy_url",
        "deploy_url_label",
    },
)


class TaskStoreError(RuntimeError):
    """Store read or write was rejected."""


class TaskStore(Protocol):
    """Query-by-filter plus transactional field updates over task records."""

    async def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        extracted_since: datetime | None = None,
        limit: int | None = None,
    ) -> list[TaskView]:
        """Return tasks ordered by extraction time."""

    async def get_task(self, task_id: str) -> TaskView | None:
        """Return one task or None."""

    async def get_tasks(self, task_ids: Iterable[str]) -> dict[str, TaskView]:
        """Resolve several task ids at once; unknown ids are omitted."""

    async def create_task(self, payload: TaskCreate) -> TaskView:
        """Insert a pending task."""

    async def update_task(
        self,
        task_id: str,
        fields: Mapping[str, object],
        *,
        expect_status: TaskStatus | None = None,
    ) -> bool:
        """Apply field updates in one transaction.

        With `expect_status` the update only applies while the row is in that
        status; returns False when it was not applied.
        """

    async def link_dependency(self, task_id: str, depends_on_id: str) -> None:
        """Set the single dependency edge of a task."""

    async def add_task_event(
        self,
        *,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None = None,
        status_to: TaskStatus | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        """Append one audit event."""

    async def list_task_events(self, task_id: str) -> list[TaskEventView]:
        """Return audit events in chronological order."""

    async def find_prompt_version(self, version: str) -> PromptVersionView | None:
        """Look up a prompt version record by short id."""

    async def create_prompt_version(
        self,
        *,
        version: str,
        content_hash: str,
    ) -> PromptVersionView:
        """Insert a prompt version record; existing records are returned unchanged."""

    async def update_prompt_version_metrics(
        self,
        version: str,
        *,
        total_runs: int | None = None,
        avg_rating: float | None = None,
        success_rate: float | None = None,
    ) -> bool:
        """Store offline quality metrics on a prompt version."""

    async def upsert_heartbeat(self, name: str, status: str | None) -> None:
        """Record worker liveness."""

    async def get_heartbeat(self, name: str) -> WorkerHeartbeatView | None:
        """Return the last liveness record for a worker role."""

    async def list_push_tokens(self) -> list[str]:
        """Registered device tokens for notifications."""
