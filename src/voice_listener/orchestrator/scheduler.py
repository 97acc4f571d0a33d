"""Batch dispatcher: poll pending tasks, claim the ready ones, run them as a batch."""

from __future__ import annotations

import asyncio
import logging
import re
import signal
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Protocol

from voice_listener.config import Settings
from voice_listener.orchestrator.claims import ClaimProtocol, build_log_path
from voice_listener.orchestrator.executor import ExecutionOutcome
from voice_listener.orchestrator.heartbeat import send_heartbeat
from voice_listener.orchestrator.models import TaskStatus
from voice_listener.orchestrator.prompt_versions import PromptVersionTracker
from voice_listener.orchestrator.resolver import ReadySet, dependency_ids, resolve_ready
from voice_listener.orchestrator.store import TaskStore

logger = logging.getLogger(__name__)

_RELATIVE_SINCE = re.compile(r"^(\d+)\s*([mhdw])$")
_RELATIVE_UNITS = {"m": "minutes", "h": "hours", "d": "days", "w": "weeks"}
# Epoch values above this are treated as milliseconds.
_EPOCH_MS_THRESHOLD = 10**11


class TaskDriver(Protocol):
    async def execute(self, task_id: str) -> ExecutionOutcome:
        """Run one claimed task to its end state."""


@dataclass(slots=True)
class BatchReport:
    """One poll: what was ready, blocked, claimed and how it ended."""

    ready: int = 0
    blocked: int = 0
    claimed: list[str] = field(default_factory=list)
    outcomes: list[ExecutionOutcome] = field(default_factory=list)


@dataclass(slots=True)
class SchedulerRunSummary:
    processed: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    awaiting_feedback: int = 0
    batches: int = 0
    idle_polls: int = 0

    def add(self, report: BatchReport) -> None:
        self.batches += 1
        self.processed += len(report.claimed)
        for outcome in report.outcomes:
            if outcome.status == TaskStatus.COMPLETED:
                self.completed += 1
            elif outcome.status == TaskStatus.FAILED:
                self.failed += 1
            elif outcome.status == TaskStatus.CANCELLED:
                self.cancelled += 1
            elif outcome.status == TaskStatus.AWAITING_FEEDBACK:
                self.awaiting_feedback += 1


def parse_since(value: str, now: datetime | None = None) -> datetime:
    """Parse a `--since` value into an aware UTC datetime.

    Accepts `today`, `yesterday`, relative `<n>m|h|d|w`, an ISO date or
    datetime, or epoch seconds / milliseconds.
    """

    current = now or datetime.now().astimezone()
    if current.tzinfo is None:
        current = current.replace(tzinfo=UTC)
    text = value.strip().lower()
    if not text:
        raise ValueError("Empty --since value.")

    midnight = current.replace(hour=0, minute=0, second=0, microsecond=0)
    if text == "today":
        return midnight.astimezone(UTC)
    if text == "yesterday":
        return (midnight - timedelta(days=1)).astimezone(UTC)

    relative = _RELATIVE_SINCE.match(text)
    if relative is not None:
        amount = int(relative.group(1))
        delta = timedelta(**{_RELATIVE_UNITS[relative.group(2)]: amount})
        return (current - delta).astimezone(UTC)

    if text.isdigit():
        epoch = int(text)
        seconds = epoch / 1000 if epoch >= _EPOCH_MS_THRESHOLD else epoch
        return datetime.fromtimestamp(seconds, tz=UTC)

    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError as error:
        raise ValueError(
            f"Unsupported --since value: {value!r}. Use today, yesterday, 30m, 2h, 3d, 1w, "
            "an ISO date/datetime, or an epoch timestamp.",
        ) from error
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=current.tzinfo)
    return parsed.astimezone(UTC)


class BatchScheduler:
    """Dispatches ready tasks in batches of at most `max_concurrency`.

    Every batch is a join barrier: the next batch is only formed after all
    tasks of the current one reached an end state, so a task completing in
    batch N can unblock its dependent for batch N+1.
    """

    def __init__(
        self,
        *,
        store: TaskStore,
        driver: TaskDriver,
        settings: Settings,
        tracker: PromptVersionTracker,
        claims: ClaimProtocol | None = None,
    ) -> None:
        self.store = store
        self.driver = driver
        self.settings = settings
        self.tracker = tracker
        self.claims = claims or ClaimProtocol(store=store)
        self._stop = asyncio.Event()
        self._stop_signal_name: str | None = None

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def request_stop(self, signal_name: str | None = None) -> None:
        if not self._stop.is_set():
            logger.info("Stop requested (%s); no new batches will start", signal_name or "api")
        self._stop_signal_name = signal_name
        self._stop.set()

    async def start(self, *, skip_recovery: bool = False) -> str:
        """Heartbeat, prompt version and orphan recovery, in that order."""

        await send_heartbeat(self.store, self.settings.worker.worker_name, "starting")
        version_id = await self.tracker.init()
        if skip_recovery:
            logger.info("Skipping orphan recovery")
        else:
            await self.claims.recover_orphans()
        return version_id

    async def run(
        self,
        *,
        once: bool = False,
        limit: int | None = None,
        since: datetime | None = None,
        skip_recovery: bool = False,
    ) -> SchedulerRunSummary:
        """Poll until stopped, or until nothing is ready when `once` is set."""

        summary = SchedulerRunSummary()
        await self.start(skip_recovery=skip_recovery)
        heartbeat = asyncio.create_task(self._heartbeat_loop())
        try:
            with self._signal_handlers():
                while not self.stop_requested:
                    remaining = None if limit is None else limit - summary.processed
                    if remaining is not None and remaining <= 0:
                        logger.info("Task limit %d reached", limit)
                        break
                    report = await self.dispatch_batch(since=since, max_tasks=remaining)
                    if report.claimed:
                        summary.add(report)
                        continue
                    summary.idle_polls += 1
                    if once:
                        break
                    await self._sleep_with_stop(self.settings.worker.poll_interval_seconds)
        finally:
            heartbeat.cancel()
            with suppress(asyncio.CancelledError):
                await heartbeat
            await send_heartbeat(self.store, self.settings.worker.worker_name, "stopped")
        logger.info(
            "Scheduler finished: processed=%d completed=%d failed=%d cancelled=%d "
            "awaiting_feedback=%d batches=%d",
            summary.processed,
            summary.completed,
            summary.failed,
            summary.cancelled,
            summary.awaiting_feedback,
            summary.batches,
        )
        return summary

    async def dispatch_batch(
        self,
        *,
        since: datetime | None = None,
        max_tasks: int | None = None,
    ) -> BatchReport:
        """Resolve, claim and run one batch; returns after every task in it ended."""

        ready_set = await self.poll_ready(since=since)
        report = BatchReport(ready=len(ready_set.ready), blocked=len(ready_set.blocked))
        batch_size = self.settings.worker.max_concurrency
        if max_tasks is not None:
            batch_size = min(batch_size, max_tasks)

        for task in ready_set.ready[:batch_size]:
            if self.stop_requested:
                break
            log_path = build_log_path(self.settings.logs_dir, task.task_id)
            if await self.claims.claim(
                task.task_id,
                log_file=log_path,
                prompt_version_id=self.tracker.current_version_id,
            ):
                report.claimed.append(task.task_id)

        if not report.claimed:
            return report

        logger.info(
            "Dispatching batch of %d task(s) (%d ready, %d blocked)",
            len(report.claimed),
            report.ready,
            report.blocked,
        )
        results = await asyncio.gather(
            *(self.driver.execute(task_id) for task_id in report.claimed),
            return_exceptions=True,
        )
        for task_id, result in zip(report.claimed, results, strict=True):
            if isinstance(result, BaseException):
                logger.error("Driver raised for task %s", task_id, exc_info=result)
                report.outcomes.append(ExecutionOutcome(task_id=task_id, status=None))
            else:
                report.outcomes.append(result)
        return report

    async def poll_ready(self, *, since: datetime | None = None) -> ReadySet:
        pending = await self.store.list_tasks(status=TaskStatus.PENDING, extracted_since=since)
        wanted = dependency_ids(pending)
        dependencies = await self.store.get_tasks(wanted) if wanted else {}
        ready_set = resolve_ready(pending, dependencies)
        for blocked in ready_set.blocked:
            logger.info(
                "Task %s blocked by %s (status: %s)",
                blocked.task.task_id,
                blocked.dependency_id,
                blocked.dependency_status,
            )
        return ready_set

    async def run_task(self, task_id: str) -> ExecutionOutcome | None:
        """Reset one task to pending and execute just it."""

        await self.start(skip_recovery=True)
        await self.store.update_task(
            task_id,
            {
                "status": TaskStatus.PENDING,
                "cancel_requested": False,
                "started_at": None,
                "completed_at": None,
                "error_message": None,
                "error_category": None,
                "log_file": None,
            },
        )
        logger.info("Task %s reset to pending for a direct run", task_id)
        claimed = await self.claims.claim(
            task_id,
            log_file=build_log_path(self.settings.logs_dir, task_id),
            prompt_version_id=self.tracker.current_version_id,
        )
        if not claimed:
            return None
        try:
            return await self.driver.execute(task_id)
        finally:
            await send_heartbeat(self.store, self.settings.worker.worker_name, "stopped")

    async def _heartbeat_loop(self) -> None:
        while True:
            await send_heartbeat(self.store, self.settings.worker.worker_name, "running")
            await asyncio.sleep(self.settings.worker.heartbeat_interval_seconds)

    async def _sleep_with_stop(self, seconds: float) -> None:
        with suppress(TimeoutError):
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop, sig.name)
            except (NotImplementedError, RuntimeError, ValueError):
                # Not supported on this platform or outside the main thread.
                continue
            installed.append(sig)
        try:
            yield
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)
