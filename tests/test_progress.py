from __future__ import annotations

import asyncio
import json
from pathlib import Path

import allure

from voice_listener.config import Settings
from voice_listener.orchestrator.claims import ClaimProtocol
from voice_listener.orchestrator.debounce import Debouncer
from voice_listener.orchestrator.models import (
    ActivityKind,
    ActivityStatus,
    Progress,
    TaskCreate,
    TaskStatus,
    TaskType,
)
from voice_listener.orchestrator.progress import LogTail, ProgressParser, ProgressProjector
from voice_listener.orchestrator.repository import SqliteTaskStore

pytestmark = [
    allure.epic("Task Execution"),
    allure.feature("Progress Projection"),
]


class FakeClock:
    def __init__(self, start: int = 1_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now


def _tool_use(tool_use_id: str, name: str, tool_input: dict[str, object]) -> str:
    return json.dumps(
        {
            "type": "assistant",
            "message": {
                "content": [
                    {"type": "tool_use", "id": tool_use_id, "name": name, "input": tool_input},
                ],
            },
        },
    )


def _tool_result(tool_use_id: str, *, is_error: bool = False) -> str:
    return json.dumps(
        {
            "type": "user",
            "message": {
                "content": [
                    {"type": "tool_result", "tool_use_id": tool_use_id, "is_error": is_error},
                ],
            },
        },
    )


def _text(text: str) -> str:
    return json.dumps(
        {"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}},
    )


def test_side_channel_commands_are_hidden_from_activity_feed() -> None:
    clock = FakeClock()
    parser = ProgressParser(clock=clock)

    hidden = parser.feed_line(
        _tool_use(
            "toolu_1",
            "Bash",
            {"command": '$VOICE_LISTENER_TASK_CLI result "done"', "description": "Report"},
        ),
    )
    hidden_result = parser.feed_line(_tool_result("toolu_1"))
    visible = parser.feed_line(_tool_use("toolu_2", "Read", {"file_path": "/repo/src/main.py"}))
    clock.now += 250
    visible_result = parser.feed_line(_tool_result("toolu_2"))

    assert hidden is False
    assert hidden_result is False
    assert visible is True
    assert visible_result is True
    snapshot = parser.snapshot()
    assert len(snapshot.activities) == 1
    entry = snapshot.activities[0]
    assert entry.kind == ActivityKind.TOOL
    assert entry.label == "Reading file"
    assert entry.detail == "main.py"
    assert entry.status == ActivityStatus.DONE
    assert entry.duration_ms == 250
    assert snapshot.current_activity == "Reading file: main.py"


def test_status_report_by_description_is_tracked_but_not_listed() -> None:
    parser = ProgressParser(clock=FakeClock())

    parser.feed_line(
        _tool_use(
            "toolu_1",
            "Bash",
            {"command": "$CLI status pending", "description": "update-action-cli status pending"},
        ),
    )
    parser.feed_line(
        _tool_use("toolu_2", "Bash", {"command": "pytest -q", "description": "Run the test suite"}),
    )
    parser.feed_line(_tool_result("toolu_1"))
    parser.feed_line(_tool_result("toolu_2"))

    activities = parser.snapshot().activities
    assert [entry.detail for entry in activities] == ["Run the test suite"]
    assert activities[0].status == ActivityStatus.DONE


def test_failed_tool_result_marks_entry_as_error() -> None:
    parser = ProgressParser(clock=FakeClock())
    parser.feed_line(_tool_use("toolu_1", "Bash", {"command": "pytest", "description": "Tests"}))
    parser.feed_line(_tool_result("toolu_1", is_error=True))

    entry = parser.snapshot().activities[0]
    assert entry.status == ActivityStatus.ERROR
    assert entry.detail == "Tests"


def test_todo_updates_drive_counters_without_activity() -> None:
    parser = ProgressParser(clock=FakeClock())
    todos = [
        {"content": "Read code", "status": "completed", "activeForm": "Reading code"},
        {"content": "Write tests", "status": "in_progress", "activeForm": "Writing tests"},
        {"content": "Ship", "status": "pending", "activeForm": "Shipping"},
    ]

    assert parser.feed_line(_tool_use("toolu_t", "TodoWrite", {"todos": todos})) is True
    parser.feed_line(_tool_result("toolu_t"))

    snapshot = parser.snapshot()
    assert snapshot.todo_total == 3
    assert snapshot.todo_done == 1
    assert snapshot.current_task == "Writing tests"
    assert snapshot.activities == []


def test_todo_updates_from_tool_use_result_payload() -> None:
    parser = ProgressParser(clock=FakeClock())
    line = json.dumps(
        {
            "type": "user",
            "message": {"content": []},
            "tool_use_result": {
                "newTodos": [
                    {"content": "A", "status": "completed"},
                    {"content": "B", "status": "completed"},
                ],
            },
        },
    )

    assert parser.feed_line(line) is True
    snapshot = parser.snapshot()
    assert (snapshot.todo_done, snapshot.todo_total) == (2, 2)


def test_intent_sentences_skills_and_milestone() -> None:
    parser = ProgressParser(clock=FakeClock())

    parser.feed_line(_text("I'll start by reading the config. Then I will refactor it."))
    parser.feed_line(_text("Plain narration is ignored."))
    parser.feed_line(_tool_use("toolu_s", "Skill", {"skill": "frontend-design"}))
    parser.feed_line(json.dumps({"type": "result", "is_error": False, "duration_ms": 4200}))

    snapshot = parser.snapshot()
    assert [entry.kind for entry in snapshot.activities] == [
        ActivityKind.MESSAGE,
        ActivityKind.SKILL,
        ActivityKind.MILESTONE,
    ]
    assert snapshot.activities[0].label == "I'll start by reading the config."
    assert snapshot.skills == ["frontend-design"]
    assert snapshot.activities[-1].label == "Finished"
    assert snapshot.activities[-1].duration_ms == 4200


def test_non_json_lines_are_ignored_and_activities_are_bounded() -> None:
    parser = ProgressParser(max_activities=3, clock=FakeClock())

    assert parser.feed_line("==== header ====") is False
    assert parser.feed_line("{not json") is False
    for index in range(5):
        parser.feed_line(_tool_use(f"toolu_{index}", "Grep", {"pattern": f"needle{index}"}))

    details = [entry.detail for entry in parser.snapshot().activities]
    assert details == ["needle2", "needle3", "needle4"]


def test_log_tail_buffers_partial_lines(tmp_path: Path) -> None:
    log_path = tmp_path / "agent.log"
    tail = LogTail(path=log_path)

    assert tail.read_new_lines() == []
    log_path.write_bytes(b'{"type": "a"}\n{"type": ')
    assert tail.read_new_lines() == ['{"type": "a"}']
    with log_path.open("ab") as handle:
        handle.write(b'"b"}\n')
    assert tail.read_new_lines() == ['{"type": "b"}']
    assert tail.read_new_lines() == []


def test_log_tail_restarts_after_truncation(tmp_path: Path) -> None:
    log_path = tmp_path / "agent.log"
    log_path.write_text("first line\nsecond line\n", encoding="utf-8")
    tail = LogTail(path=log_path)
    tail.read_new_lines()

    log_path.write_text("new\n", encoding="utf-8")

    assert tail.read_new_lines() == ["new"]
    assert tail.resets == 1


async def test_debouncer_coalesces_bursts_into_one_write() -> None:
    writes: list[tuple[str, int]] = []

    async def write(key: str, payload: int) -> None:
        writes.append((key, payload))

    debouncer: Debouncer[int] = Debouncer(write, delay_seconds=0.05)
    for value in range(5):
        debouncer.schedule("task-1", value)
        await asyncio.sleep(0.01)
    await asyncio.sleep(0.2)

    assert writes == [("task-1", 4)]
    assert debouncer.pending_keys == frozenset()


async def test_debouncer_flush_and_cancel() -> None:
    writes: list[str] = []

    async def write(key: str, payload: str) -> None:
        writes.append(payload)

    debouncer: Debouncer[str] = Debouncer(write, delay_seconds=10)
    debouncer.schedule("a", "a1")
    debouncer.schedule("b", "b1")

    assert debouncer.cancel("b") is True
    assert debouncer.cancel("b") is False
    assert await debouncer.flush() == 1
    assert writes == ["a1"]
    await debouncer.aclose()


async def test_debouncer_swallows_write_errors() -> None:
    async def write(key: str, payload: str) -> None:
        raise RuntimeError("disk full")

    debouncer: Debouncer[str] = Debouncer(write, delay_seconds=10)
    debouncer.schedule("a", "a1")

    assert await debouncer.flush() == 1


async def test_projector_persists_snapshot_for_in_progress_task(
    store: SqliteTaskStore,
    settings: Settings,
) -> None:
    task = await store.create_task(TaskCreate(task_type=TaskType.CODE_CHANGE, title="Refactor"))
    log_path = settings.logs_dir / "refactor.log"
    log_path.parent.mkdir(parents=True)
    log_path.write_text(
        "==== header ====\n" + _tool_use("toolu_1", "Edit", {"file_path": "/x/app.py"}) + "\n",
        encoding="utf-8",
    )
    await ClaimProtocol(store=store).claim(task.task_id, log_file=log_path, prompt_version_id=None)
    projector = ProgressProjector(store=store, settings=settings.progress)

    writes = await projector.run_once()

    assert writes == 1
    loaded = await store.get_task(task.task_id)
    assert loaded is not None
    assert loaded.progress is not None
    progress = Progress.from_json(loaded.progress)
    assert progress.activities[0].label == "Editing file"
    assert progress.activities[0].detail == "app.py"

    await store.update_task(task.task_id, {"status": TaskStatus.COMPLETED})
    added, removed = await projector.refresh_watch_set()
    assert added == []
    assert removed == [task.task_id]


async def test_projector_debounces_bursts_into_one_write(
    store: SqliteTaskStore,
    settings: Settings,
    monkeypatch,
) -> None:
    task = await store.create_task(TaskCreate(task_type=TaskType.RESEARCH, title="Burst"))
    log_path = settings.logs_dir / "burst.log"
    log_path.parent.mkdir(parents=True)
    log_path.write_text("", encoding="utf-8")
    await ClaimProtocol(store=store).claim(task.task_id, log_file=log_path, prompt_version_id=None)
    progress_writes: list[str] = []
    original_update = store.update_task

    async def counting_update(task_id, fields, *, expect_status=None):
        if "progress" in fields and fields["progress"] is not None:
            progress_writes.append(str(fields["progress"]))
        return await original_update(task_id, fields, expect_status=expect_status)

    monkeypatch.setattr(store, "update_task", counting_update)
    settings.progress.debounce_seconds = 0.8
    clock = FakeClock()
    projector = ProgressProjector(store=store, settings=settings.progress, clock=clock)
    await projector.refresh_watch_set()

    for index in range(5):
        clock.now += 100
        with log_path.open("a", encoding="utf-8") as handle:
            handle.write(_tool_use(f"toolu_{index}", "Grep", {"pattern": f"p{index}"}) + "\n")
        await projector.tail_all()
        await asyncio.sleep(0.05)
    last_event_at = clock.now
    await asyncio.sleep(1.2)

    assert len(progress_writes) == 1
    persisted = Progress.from_json(progress_writes[0])
    assert len(persisted.activities) == 5
    assert persisted.last_update >= last_event_at


async def test_projector_does_not_write_after_task_left_in_progress(
    store: SqliteTaskStore,
    settings: Settings,
) -> None:
    task = await store.create_task(TaskCreate(task_type=TaskType.WRITE, title="Essay"))
    log_path = settings.logs_dir / "essay.log"
    log_path.parent.mkdir(parents=True)
    log_path.write_text(_text("Let me outline the essay.") + "\n", encoding="utf-8")
    await ClaimProtocol(store=store).claim(task.task_id, log_file=log_path, prompt_version_id=None)
    projector = ProgressProjector(store=store, settings=settings.progress)
    await projector.refresh_watch_set()
    await projector.tail_all()

    await store.update_task(
        task.task_id,
        {"status": TaskStatus.COMPLETED, "progress": None},
    )
    await projector.flush()

    loaded = await store.get_task(task.task_id)
    assert loaded is not None
    assert loaded.progress is None


async def test_projector_run_loop_stops_on_event(
    store: SqliteTaskStore,
    settings: Settings,
) -> None:
    task = await store.create_task(TaskCreate(task_type=TaskType.RESEARCH, title="Loop"))
    log_path = settings.logs_dir / "loop.log"
    log_path.parent.mkdir(parents=True)
    log_path.write_text("", encoding="utf-8")
    await ClaimProtocol(store=store).claim(task.task_id, log_file=log_path, prompt_version_id=None)
    projector = ProgressProjector(store=store, settings=settings.progress)
    stop = asyncio.Event()

    run = asyncio.create_task(projector.run(stop))
    await asyncio.sleep(0.1)
    with log_path.open("a", encoding="utf-8") as handle:
        handle.write(_tool_use("toolu_1", "WebSearch", {"query": "sqlite wal"}) + "\n")
    await asyncio.sleep(0.3)
    stop.set()
    await asyncio.wait_for(run, timeout=5)

    loaded = await store.get_task(task.task_id)
    assert loaded is not None
    assert loaded.progress is not None
    assert Progress.from_json(loaded.progress).current_activity == "Searching the web: sqlite wal"
