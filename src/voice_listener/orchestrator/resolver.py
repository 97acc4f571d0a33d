"""Partition pending tasks into ready and blocked by their single dependency."""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from voice_listener.orchestrator.models import TaskStatus, TaskView

MISSING_DEPENDENCY_STATUS = "missing"


@dataclass(slots=True)
class BlockedTask:
    task: TaskView
    dependency_id: str
    dependency_status: str


@dataclass(slots=True)
class ReadySet:
    ready: list[TaskView] = field(default_factory=list)
    blocked: list[BlockedTask] = field(default_factory=list)


def is_ready(task: TaskView, dependencies: Mapping[str, TaskView]) -> bool:
    """A task is ready iff it has no dependency or the dependency is completed."""

    if task.depends_on_id is None:
        return True
    dependency = dependencies.get(task.depends_on_id)
    return dependency is not None and dependency.status == TaskStatus.COMPLETED


def resolve_ready(
    pending: Sequence[TaskView],
    dependencies: Mapping[str, TaskView],
) -> ReadySet:
    """Split `pending` and order the ready part by sequence index.

    Tasks without a sequence index sort after every indexed task and keep
    their discovery order (the sort is stable).
    """

    result = ReadySet()
    for task in pending:
        if task.status != TaskStatus.PENDING:
            continue
        if is_ready(task, dependencies):
            result.ready.append(task)
            continue
        dependency_id = task.depends_on_id or ""
        dependency = dependencies.get(dependency_id)
        result.blocked.append(
            BlockedTask(
                task=task,
                dependency_id=dependency_id,
                dependency_status=(
                    dependency.status.value
                    if dependency is not None
                    else MISSING_DEPENDENCY_STATUS
                ),
            ),
        )
    result.ready.sort(key=_sequence_key)
    return result


def dependency_ids(tasks: Sequence[TaskView]) -> set[str]:
    return {task.depends_on_id for task in tasks if task.depends_on_id is not None}


def _sequence_key(task: TaskView) -> float:
    return math.inf if task.sequence_index is None else float(task.sequence_index)
