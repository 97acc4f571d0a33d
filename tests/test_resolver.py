from __future__ import annotations

from datetime import UTC, datetime

import allure

from voice_listener.orchestrator.models import TaskStatus, TaskType, TaskView
from voice_listener.orchestrator.resolver import (
    MISSING_DEPENDENCY_STATUS,
    dependency_ids,
    is_ready,
    resolve_ready,
)

pytestmark = [
    allure.epic("Task Execution"),
    allure.feature("Dependency Resolution"),
]


def _task(
    task_id: str,
    *,
    status: TaskStatus = TaskStatus.PENDING,
    depends_on_id: str | None = None,
    sequence_index: int | None = None,
) -> TaskView:
    return TaskView(
        task_id=task_id,
        task_type=TaskType.CODE_CHANGE,
        title=f"Task {task_id}",
        status=status,
        extracted_at=datetime(2026, 10, 1, 12, 0, tzinfo=UTC),
        depends_on_id=depends_on_id,
        sequence_index=sequence_index,
    )


def test_task_without_dependency_is_ready() -> None:
    assert is_ready(_task("a"), {}) is True


def test_task_is_ready_only_after_dependency_completed() -> None:
    dependent = _task("b", depends_on_id="a")

    for status in (
        TaskStatus.PENDING,
        TaskStatus.IN_PROGRESS,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
        TaskStatus.AWAITING_FEEDBACK,
    ):
        assert is_ready(dependent, {"a": _task("a", status=status)}) is False
    assert is_ready(dependent, {"a": _task("a", status=TaskStatus.COMPLETED)}) is True


def test_dependent_waits_until_next_batch() -> None:
    first = _task("a", sequence_index=1)
    second = _task("b", depends_on_id="a", sequence_index=2)

    ready_set = resolve_ready([first, second], {"a": first})
    assert [task.task_id for task in ready_set.ready] == ["a"]
    assert [blocked.task.task_id for blocked in ready_set.blocked] == ["b"]
    assert ready_set.blocked[0].dependency_status == "pending"

    finished = _task("a", status=TaskStatus.COMPLETED)
    ready_set = resolve_ready([second], {"a": finished})
    assert [task.task_id for task in ready_set.ready] == ["b"]
    assert ready_set.blocked == []


def test_missing_dependency_blocks_task() -> None:
    ready_set = resolve_ready([_task("b", depends_on_id="ghost")], {})

    assert ready_set.ready == []
    assert ready_set.blocked[0].dependency_id == "ghost"
    assert ready_set.blocked[0].dependency_status == MISSING_DEPENDENCY_STATUS


def test_ready_tasks_sorted_by_sequence_index_with_unindexed_last() -> None:
    pending = [
        _task("no-index-1"),
        _task("third", sequence_index=3),
        _task("no-index-2"),
        _task("first", sequence_index=1),
        _task("second", sequence_index=2),
    ]

    ready_set = resolve_ready(pending, {})

    assert [task.task_id for task in ready_set.ready] == [
        "first",
        "second",
        "third",
        "no-index-1",
        "no-index-2",
    ]


def test_non_pending_tasks_are_ignored() -> None:
    ready_set = resolve_ready(
        [_task("a", status=TaskStatus.IN_PROGRESS), _task("b")],
        {},
    )

    assert [task.task_id for task in ready_set.ready] == ["b"]
    assert ready_set.blocked == []


def test_dependency_ids_collects_unique_edges() -> None:
    tasks = [_task("a"), _task("b", depends_on_id="a"), _task("c", depends_on_id="a")]

    assert dependency_ids(tasks) == {"a"}
