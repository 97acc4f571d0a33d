"""SQLite-backed task store."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TypeVar
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from voice_listener.orchestrator.models import (
    ErrorCategory,
    Progress,
    PromptVersionView,
    TaskCreate,
    TaskEventView,
    TaskStatus,
    TaskType,
    TaskView,
    ThreadMessage,
    WorkerHeartbeatView,
    dump_thread,
    parse_thread,
)
from voice_listener.orchestrator.store import UPDATABLE_TASK_FIELDS, TaskStoreError
from voice_listener.storage.alembic_runner import upgrade_head
from voice_listener.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from voice_listener.storage.sqlmodel_models import (
    PromptVersionRow,
    PushTokenRow,
    TaskEventRow,
    TaskRow,
    WorkerHeartbeatRow,
)

_T = TypeVar("_T")


class SqliteTaskStore:
    """Task store facade backed by SQLModel + SQLite.

    Sessions are synchronous; every public coroutine runs its session work
    in a worker thread so store I/O never blocks the event loop.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    async def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        extracted_since: datetime | None = None,
        limit: int | None = None,
    ) -> list[TaskView]:
        return await self._run(
            self._list_tasks,
            status=status,
            extracted_since=extracted_since,
            limit=limit,
        )

    async def get_task(self, task_id: str) -> TaskView | None:
        found = await self.get_tasks([task_id])
        return found.get(task_id)

    async def get_tasks(self, task_ids: Iterable[str]) -> dict[str, TaskView]:
        return await self._run(self._get_tasks, tuple(task_ids))

    async def create_task(self, payload: TaskCreate) -> TaskView:
        return await self._run(self._create_task, payload)

    async def update_task(
        self,
        task_id: str,
        fields: Mapping[str, object],
        *,
        expect_status: TaskStatus | None = None,
    ) -> bool:
        return await self._run(
            self._update_task,
            task_id,
            dict(fields),
            expect_status=expect_status,
        )

    async def link_dependency(self, task_id: str, depends_on_id: str) -> None:
        if task_id == depends_on_id:
            raise TaskStoreError(f"Task {task_id} cannot depend on itself.")
        await self.update_task(task_id, {"depends_on_id": depends_on_id})

    async def add_task_event(
        self,
        *,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None = None,
        status_to: TaskStatus | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        await self._run(
            self._add_task_event,
            task_id=task_id,
            event_type=event_type,
            status_from=status_from,
            status_to=status_to,
            details=details or {},
        )

    async def list_task_events(self, task_id: str) -> list[TaskEventView]:
        return await self._run(self._list_task_events, task_id)

    async def find_prompt_version(self, version: str) -> PromptVersionView | None:
        return await self._run(self._find_prompt_version, version)

    async def create_prompt_version(
        self,
        *,
        version: str,
        content_hash: str,
    ) -> PromptVersionView:
        return await self._run(self._create_prompt_version, version, content_hash)

    async def update_prompt_version_metrics(
        self,
        version: str,
        *,
        total_runs: int | None = None,
        avg_rating: float | None = None,
        success_rate: float | None = None,
    ) -> bool:
        values = {
            key: value
            for key, value in (
                ("total_runs", total_runs),
                ("avg_rating", avg_rating),
                ("success_rate", success_rate),
            )
            if value is not None
        }
        return await self._run(self._update_prompt_version, version, values)

    async def upsert_heartbeat(self, name: str, status: str | None) -> None:
        await self._run(self._upsert_heartbeat, name, status)

    async def get_heartbeat(self, name: str) -> WorkerHeartbeatView | None:
        return await self._run(self._get_heartbeat, name)

    async def list_push_tokens(self) -> list[str]:
        return await self._run(self._list_push_tokens)

    async def register_push_token(self, token: str) -> None:
        await self._run(self._register_push_token, token)

    async def _run(self, func: Callable[..., _T], *args: object, **kwargs: object) -> _T:
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except SQLAlchemyError as error:
            raise TaskStoreError(f"Task store error: {error}") from error

    def _list_tasks(
        self,
        *,
        status: TaskStatus | None,
        extracted_since: datetime | None,
        limit: int | None,
    ) -> list[TaskView]:
        with Session(self.engine) as session:
            query = select(TaskRow)
            if status is not None:
                query = query.where(TaskRow.status == status.value)
            if extracted_since is not None:
                query = query.where(
                    col(TaskRow.extracted_at) >= to_db_datetime(extracted_since),
                )
            query = query.order_by(col(TaskRow.extracted_at).asc(), col(TaskRow.created_at).asc())
            if limit is not None:
                query = query.limit(limit)
            return [_to_task_view(row) for row in session.exec(query).all()]

    def _get_tasks(self, task_ids: tuple[str, ...]) -> dict[str, TaskView]:
        if not task_ids:
            return {}
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRow).where(col(TaskRow.task_id).in_(task_ids)),
            ).all()
            return {row.task_id: _to_task_view(row) for row in rows}

    def _create_task(self, payload: TaskCreate) -> TaskView:
        now = utc_now()
        task_id = payload.task_id or str(uuid4())
        with Session(self.engine) as session:
            row = TaskRow(
                task_id=task_id,
                task_type=payload.task_type.value,
                subtype=payload.subtype,
                title=payload.title,
                description=payload.description,
                status=TaskStatus.PENDING.value,
                extracted_at=to_db_datetime(payload.extracted_at or now),
                depends_on_id=payload.depends_on_id,
                sequence_index=payload.sequence_index,
                project_path=payload.project_path,
                cancel_requested=False,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def _update_task(
        self,
        task_id: str,
        fields: dict[str, object],
        *,
        expect_status: TaskStatus | None,
    ) -> bool:
        unknown = set(fields) - UPDATABLE_TASK_FIELDS
        if unknown:
            raise TaskStoreError(f"Unknown task fields: {', '.join(sorted(unknown))}")
        values = {name: _to_db_value(value) for name, value in fields.items()}
        values["updated_at"] = to_db_datetime(utc_now())

        conditions = [col(TaskRow.task_id) == task_id]
        if expect_status is not None:
            conditions.append(col(TaskRow.status) == expect_status.value)

        with Session(self.engine) as session:
            result = session.exec(sa_update(TaskRow).where(*conditions).values(**values))
            if result.rowcount != 1:
                session.rollback()
                if expect_status is None:
                    raise TaskStoreError(f"Task not found: {task_id}")
                return False
            session.commit()
            return True

    def _add_task_event(
        self,
        *,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        with Session(self.engine) as session:
            session.add(
                TaskEventRow(
                    task_id=task_id,
                    event_type=event_type,
                    status_from=status_from.value if status_from is not None else None,
                    status_to=status_to.value if status_to is not None else None,
                    details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                    if details
                    else None,
                    created_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()

    def _list_task_events(self, task_id: str) -> list[TaskEventView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskEventRow)
                .where(TaskEventRow.task_id == task_id)
                .order_by(col(TaskEventRow.created_at).asc(), col(TaskEventRow.event_id).asc()),
            ).all()
            return [
                TaskEventView(
                    event_id=row.event_id or 0,
                    task_id=row.task_id,
                    event_type=row.event_type,
                    status_from=TaskStatus(row.status_from) if row.status_from else None,
                    status_to=TaskStatus(row.status_to) if row.status_to else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=json.loads(row.details_json) if row.details_json else {},
                )
                for row in rows
            ]

    def _find_prompt_version(self, version: str) -> PromptVersionView | None:
        with Session(self.engine) as session:
            row = session.get(PromptVersionRow, version)
            return _to_prompt_version_view(row) if row is not None else None

    def _create_prompt_version(self, version: str, content_hash: str) -> PromptVersionView:
        with Session(self.engine) as session:
            existing = session.get(PromptVersionRow, version)
            if existing is not None:
                return _to_prompt_version_view(existing)
            row = PromptVersionRow(
                version=version,
                content_hash=content_hash,
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_prompt_version_view(row)

    def _update_prompt_version(self, version: str, values: dict[str, object]) -> bool:
        with Session(self.engine) as session:
            row = session.get(PromptVersionRow, version)
            if row is None:
                return False
            for name, value in values.items():
                setattr(row, name, value)
            session.add(row)
            session.commit()
            return True

    def _upsert_heartbeat(self, name: str, status: str | None) -> None:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.get(WorkerHeartbeatRow, name)
            if row is None:
                row = WorkerHeartbeatRow(name=name, last_seen=now, status=status)
            else:
                row.last_seen = now
                row.status = status
            session.add(row)
            session.commit()

    def _get_heartbeat(self, name: str) -> WorkerHeartbeatView | None:
        with Session(self.engine) as session:
            row = session.get(WorkerHeartbeatRow, name)
            if row is None:
                return None
            return WorkerHeartbeatView(
                name=row.name,
                last_seen=to_utc_aware_datetime(row.last_seen),
                status=row.status,
            )

    def _list_push_tokens(self) -> list[str]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(PushTokenRow).order_by(col(PushTokenRow.created_at).asc()),
            ).all()
            return [row.token for row in rows]

    def _register_push_token(self, token: str) -> None:
        with Session(self.engine) as session:
            if session.get(PushTokenRow, token) is not None:
                return
            session.add(PushTokenRow(token=token, created_at=to_db_datetime(utc_now())))
            session.commit()


def _to_db_value(value: object) -> object:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return to_db_datetime(value)
    if isinstance(value, Progress):
        return value.to_json()
    if isinstance(value, list) and all(isinstance(item, ThreadMessage) for item in value):
        return dump_thread(value)
    return value


def _optional_datetime(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_task_view(row: TaskRow) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        task_type=TaskType(row.task_type),
        subtype=row.subtype,
        title=row.title,
        description=row.description,
        status=TaskStatus(row.status),
        extracted_at=to_utc_aware_datetime(row.extracted_at),
        started_at=_optional_datetime(row.started_at),
        completed_at=_optional_datetime(row.completed_at),
        result=row.result,
        error_message=row.error_message,
        error_category=ErrorCategory(row.error_category) if row.error_category else None,
        depends_on_id=row.depends_on_id,
        sequence_index=row.sequence_index,
        messages=parse_thread(row.messages),
        session_id=row.session_id,
        cancel_requested=bool(row.cancel_requested),
        progress=row.progress,
        log_file=row.log_file,
        duration_ms=row.duration_ms,
        tools_used=row.tools_used,
        prompt_version_id=row.prompt_version_id,
        project_path=row.project_path,
        deploy_url=row.deploy_url,
        deploy_url_label=row.deploy_url_label,
    )


def _to_prompt_version_view(row: PromptVersionRow) -> PromptVersionView:
    return PromptVersionView(
        version=row.version,
        content_hash=row.content_hash,
        created_at=to_utc_aware_datetime(row.created_at),
        notes=row.notes,
        total_runs=row.total_runs,
        avg_rating=row.avg_rating,
        success_rate=row.success_rate,
    )
