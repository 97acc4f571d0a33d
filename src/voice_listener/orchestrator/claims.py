"""Claim a pending task for this worker and recover orphans after a crash.

Only one worker process is assumed. A compare-and-set on the task status is
the mutual-exclusion point; two workers sharing a store can still race
between listing and claiming and no distributed lock exists.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from pathlib import Path

from voice_listener.orchestrator.models import TaskStatus
from voice_listener.orchestrator.store import TaskStore, TaskStoreError
from voice_listener.storage.common import utc_now

logger = logging.getLogger(__name__)

_UNSAFE_FILENAME_CHARS = re.compile(r"[^0-9A-Za-z_-]")


def build_log_path(logs_dir: Path, task_id: str, now: datetime | None = None) -> Path:
    """`{taskId}-{sanitizedISOTimestamp}.log` under `logs_dir`."""

    stamp = (now or utc_now()).isoformat(timespec="milliseconds")
    return logs_dir / f"{task_id}-{_UNSAFE_FILENAME_CHARS.sub('-', stamp)}.log"


class ClaimProtocol:
    """Pending -> in_progress transition plus startup orphan recovery."""

    def __init__(self, *, store: TaskStore) -> None:
        self.store = store

    async def claim(
        self,
        task_id: str,
        *,
        log_file: Path,
        prompt_version_id: str | None,
    ) -> bool:
        """Atomically mark the task in progress; False means skip it this batch."""

        try:
            claimed = await self.store.update_task(
                task_id,
                {
                    "status": TaskStatus.IN_PROGRESS,
                    "started_at": utc_now(),
                    "log_file": str(log_file),
                    "progress": None,
                    "result": None,
                    "prompt_version_id": prompt_version_id,
                },
                expect_status=TaskStatus.PENDING,
            )
        except TaskStoreError as error:
            logger.warning("Failed to claim task %s: %s", task_id, error)
            return False
        if not claimed:
            logger.info("Task %s is no longer pending, skipping", task_id)
            return False
        await self._record_event(
            task_id=task_id,
            event_type="claimed",
            status_from=TaskStatus.PENDING,
            status_to=TaskStatus.IN_PROGRESS,
            details={"log_file": str(log_file), "prompt_version_id": prompt_version_id},
        )
        return True

    async def recover_orphans(self) -> list[str]:
        """Reset every in-progress task to pending; no executor can own them at startup."""

        orphans = await self.store.list_tasks(status=TaskStatus.IN_PROGRESS)
        recovered: list[str] = []
        for task in orphans:
            applied = await self.store.update_task(
                task.task_id,
                {"status": TaskStatus.PENDING, "started_at": None, "log_file": None},
                expect_status=TaskStatus.IN_PROGRESS,
            )
            if not applied:
                continue
            recovered.append(task.task_id)
            await self._record_event(
                task_id=task.task_id,
                event_type="orphan_recovered",
                status_from=TaskStatus.IN_PROGRESS,
                status_to=TaskStatus.PENDING,
                details={
                    "started_at": task.started_at.isoformat() if task.started_at else None,
                },
            )
        if recovered:
            logger.info("Recovered %d orphaned task(s): %s", len(recovered), ", ".join(recovered))
        return recovered

    async def _record_event(
        self,
        *,
        task_id: str,
        event_type: str,
        status_from: TaskStatus,
        status_to: TaskStatus,
        details: dict[str, object],
    ) -> None:
        try:
            await self.store.add_task_event(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from,
                status_to=status_to,
                details=details,
            )
        except TaskStoreError:
            logger.debug("Could not record %s event for %s", event_type, task_id, exc_info=True)
