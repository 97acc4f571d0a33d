from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import allure
import pytest

from voice_listener.config import Settings
from voice_listener.orchestrator.executor import ExecutionOutcome
from voice_listener.orchestrator.models import TaskCreate, TaskStatus, TaskType
from voice_listener.orchestrator.prompt_versions import PromptVersionTracker
from voice_listener.orchestrator.repository import SqliteTaskStore
from voice_listener.orchestrator.scheduler import BatchScheduler, parse_since

pytestmark = [
    allure.epic("Task Execution"),
    allure.feature("Batch Scheduling"),
]


class CompletingDriver:
    """Driver double that completes each claimed task and tracks overlap."""

    def __init__(self, store: SqliteTaskStore) -> None:
        self.store = store
        self.executed: list[str] = []
        self.running = 0
        self.max_running = 0

    async def execute(self, task_id: str) -> ExecutionOutcome:
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            await asyncio.sleep(0.01)
            self.executed.append(task_id)
            await self.store.update_task(
                task_id,
                {"status": TaskStatus.COMPLETED},
                expect_status=TaskStatus.IN_PROGRESS,
            )
        finally:
            self.running -= 1
        return ExecutionOutcome(task_id=task_id, status=TaskStatus.COMPLETED)


def _scheduler(
    store: SqliteTaskStore,
    settings: Settings,
    driver: CompletingDriver,
) -> BatchScheduler:
    tracker = PromptVersionTracker(store=store, prompts_dir=settings.prompts_dir)
    return BatchScheduler(store=store, driver=driver, settings=settings, tracker=tracker)


async def test_batches_are_capped_by_max_concurrency(
    store: SqliteTaskStore,
    settings: Settings,
) -> None:
    for index in range(20):
        await store.create_task(TaskCreate(task_type=TaskType.RESEARCH, title=f"Task {index}"))
    driver = CompletingDriver(store)
    scheduler = _scheduler(store, settings, driver)
    await scheduler.start()

    first = await scheduler.dispatch_batch()
    second = await scheduler.dispatch_batch()
    third = await scheduler.dispatch_batch()

    assert len(first.claimed) == 15
    assert len(second.claimed) == 5
    assert third.claimed == []
    assert driver.max_running == 15
    assert all(outcome.status == TaskStatus.COMPLETED for outcome in first.outcomes)


async def test_dependent_task_runs_in_the_following_batch(
    store: SqliteTaskStore,
    settings: Settings,
) -> None:
    first = await store.create_task(TaskCreate(task_type=TaskType.RESEARCH, title="A"))
    second = await store.create_task(
        TaskCreate(task_type=TaskType.WRITE, title="B", depends_on_id=first.task_id),
    )
    driver = CompletingDriver(store)
    scheduler = _scheduler(store, settings, driver)
    await scheduler.start()

    batch_one = await scheduler.dispatch_batch()
    batch_two = await scheduler.dispatch_batch()

    assert batch_one.claimed == [first.task_id]
    assert batch_one.blocked == 1
    assert batch_two.claimed == [second.task_id]
    assert driver.executed == [first.task_id, second.task_id]


async def test_sequence_index_orders_claims(store: SqliteTaskStore, settings: Settings) -> None:
    settings.worker.max_concurrency = 1
    late = await store.create_task(
        TaskCreate(task_type=TaskType.WRITE, title="Late", sequence_index=5),
    )
    early = await store.create_task(
        TaskCreate(task_type=TaskType.WRITE, title="Early", sequence_index=1),
    )
    driver = CompletingDriver(store)
    scheduler = _scheduler(store, settings, driver)

    summary = await scheduler.run(once=True)

    assert driver.executed == [early.task_id, late.task_id]
    assert summary.processed == 2
    assert summary.completed == 2
    assert summary.batches == 2


async def test_run_once_recovers_orphans_and_respects_limit(
    store: SqliteTaskStore,
    settings: Settings,
) -> None:
    orphan = await store.create_task(TaskCreate(task_type=TaskType.RESEARCH, title="Orphan"))
    await store.update_task(orphan.task_id, {"status": TaskStatus.IN_PROGRESS})
    for index in range(3):
        await store.create_task(TaskCreate(task_type=TaskType.RESEARCH, title=f"T{index}"))
    driver = CompletingDriver(store)
    scheduler = _scheduler(store, settings, driver)

    summary = await scheduler.run(once=True, limit=2)

    assert summary.processed == 2
    assert len(driver.executed) == 2
    heartbeat = await store.get_heartbeat(settings.worker.worker_name)
    assert heartbeat is not None
    assert heartbeat.status == "stopped"
    remaining = await store.list_tasks(status=TaskStatus.PENDING)
    assert len(remaining) == 2
    assert await store.list_tasks(status=TaskStatus.IN_PROGRESS) == []


async def test_since_filter_skips_older_tasks(store: SqliteTaskStore, settings: Settings) -> None:
    now = datetime.now(tz=UTC)
    await store.create_task(
        TaskCreate(task_type=TaskType.RESEARCH, title="Old", extracted_at=now - timedelta(days=2)),
    )
    fresh = await store.create_task(TaskCreate(task_type=TaskType.RESEARCH, title="Fresh"))
    driver = CompletingDriver(store)
    scheduler = _scheduler(store, settings, driver)
    await scheduler.start()

    report = await scheduler.dispatch_batch(since=now - timedelta(hours=1))

    assert report.claimed == [fresh.task_id]


async def test_stop_request_ends_loop_mode(store: SqliteTaskStore, settings: Settings) -> None:
    driver = CompletingDriver(store)
    scheduler = _scheduler(store, settings, driver)

    run = asyncio.create_task(scheduler.run())
    await asyncio.sleep(0.2)
    scheduler.request_stop("SIGTERM")
    summary = await asyncio.wait_for(run, timeout=5)

    assert summary.processed == 0
    assert summary.idle_polls >= 1


async def test_run_task_resets_finished_task(store: SqliteTaskStore, settings: Settings) -> None:
    task = await store.create_task(TaskCreate(task_type=TaskType.WRITE, title="Again"))
    await store.update_task(task.task_id, {"status": TaskStatus.FAILED, "error_message": "boom"})
    driver = CompletingDriver(store)
    scheduler = _scheduler(store, settings, driver)

    outcome = await scheduler.run_task(task.task_id)

    assert outcome is not None
    assert outcome.status == TaskStatus.COMPLETED
    loaded = await store.get_task(task.task_id)
    assert loaded is not None
    assert loaded.status == TaskStatus.COMPLETED
    assert loaded.error_message is None


def test_parse_since_keywords_and_relative_values() -> None:
    now = datetime(2026, 10, 18, 15, 30, tzinfo=UTC)

    assert parse_since("today", now) == datetime(2026, 10, 18, tzinfo=UTC)
    assert parse_since("yesterday", now) == datetime(2026, 10, 17, tzinfo=UTC)
    assert parse_since("2h", now) == datetime(2026, 10, 18, 13, 30, tzinfo=UTC)
    assert parse_since("30m", now) == datetime(2026, 10, 18, 15, 0, tzinfo=UTC)
    assert parse_since("1w", now) == datetime(2026, 10, 11, 15, 30, tzinfo=UTC)


def test_parse_since_absolute_values() -> None:
    now = datetime(2026, 10, 18, 15, 30, tzinfo=UTC)

    assert parse_since("2026-01-31", now) == datetime(2026, 1, 31, tzinfo=UTC)
    assert parse_since("2026-01-31T10:00:00+02:00", now) == datetime(2026, 1, 31, 8, tzinfo=UTC)
    assert parse_since("1760000000", now) == datetime.fromtimestamp(1760000000, tz=UTC)
    assert parse_since("1760000000000", now) == datetime.fromtimestamp(1760000000, tz=UTC)


@pytest.mark.parametrize("value", ["", "soon", "5y", "2026-13-01"])
def test_parse_since_rejects_unknown_values(value: str) -> None:
    with pytest.raises(ValueError):
        parse_since(value)
