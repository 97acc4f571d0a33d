"""Per-task execution state machine driving the external agent process."""

from __future__ import annotations

import asyncio
import logging
import shlex
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO

from voice_listener.config import Settings
from voice_listener.orchestrator.backend import (
    AgentBackend,
    AgentRunError,
    AgentRunRequest,
    AgentRunResult,
)
from voice_listener.orchestrator.claims import build_log_path
from voice_listener.orchestrator.failure_classifier import classify_agent_failure
from voice_listener.orchestrator.models import (
    TERMINAL_STATUSES,
    ErrorCategory,
    TaskStatus,
    TaskView,
    ThreadMessage,
)
from voice_listener.orchestrator.notifications import Notifier
from voice_listener.orchestrator.output_fallback import build_fallback_result, truncate_keep_head
from voice_listener.orchestrator.prompts import (
    build_execution_prompt,
    build_resume_prompt,
    should_resume,
)
from voice_listener.orchestrator.store import TaskStore, TaskStoreError
from voice_listener.orchestrator.stream_events import StreamState
from voice_listener.orchestrator.workdir import resolve_workdir
from voice_listener.storage.common import to_epoch_ms, utc_now

logger = logging.getLogger(__name__)

TASK_ID_ENV = "VOICE_LISTENER_TASK_ID"
TASK_CLI_ENV = "VOICE_LISTENER_TASK_CLI"
DB_PATH_ENV = "VOICE_LISTENER_DB_PATH"
LOG_RULE = "=" * 60
EMPTY_AGENT_TURN = "(no response)"


@dataclass(slots=True)
class ExecutionOutcome:
    """What one driver run ended with."""

    task_id: str
    status: TaskStatus | None
    exit_code: int | None = None
    session_id: str | None = None
    tools_used: int = 0
    duration_ms: int = 0
    error_category: ErrorCategory | None = None
    resumed: bool = False


@dataclass(slots=True)
class _RunContext:
    task: TaskView
    started_monotonic: float
    state: StreamState
    resumed: bool = False

    @property
    def duration_ms(self) -> int:
        return int((time.monotonic() - self.started_monotonic) * 1000)


class ExecutionSessionDriver:
    """Runs one claimed task to a terminal or awaiting-feedback state.

    Every exception raised while executing is converted into that task's
    failed state; `execute` itself never raises.
    """

    def __init__(
        self,
        *,
        store: TaskStore,
        backend: AgentBackend,
        settings: Settings,
        notifier: Notifier,
    ) -> None:
        self.store = store
        self.backend = backend
        self.settings = settings
        self.notifier = notifier

    async def execute(self, task_id: str) -> ExecutionOutcome:
        context: _RunContext | None = None
        try:
            task = await self.store.get_task(task_id)
            if task is None:
                logger.warning("Task %s disappeared before execution", task_id)
                return ExecutionOutcome(task_id=task_id, status=None)
            context = _RunContext(
                task=task,
                started_monotonic=time.monotonic(),
                state=StreamState(),
            )
            return await self._execute(context)
        except Exception as error:  # noqa: BLE001
            logger.exception("Execution of task %s crashed", task_id)
            if context is None:
                return ExecutionOutcome(task_id=task_id, status=None)
            return await self._finish_failed(
                context,
                message=f"Internal error: {error}",
                category=ErrorCategory.UNKNOWN,
                exit_code=None,
            )

    async def _execute(self, context: _RunContext) -> ExecutionOutcome:
        task = context.task
        workdir = resolve_workdir(
            task,
            projects_dir=self.settings.projects_dir,
            default_workdir=self.settings.default_workdir,
        )
        if workdir.allocated:
            await self.store.update_task(task.task_id, {"project_path": str(workdir.path)})
            logger.info("Allocated project directory %s for %s", workdir.path, task.task_id)

        context.resumed = should_resume(task)
        if context.resumed:
            prompt = build_resume_prompt(task)
            template = self.settings.agent.resume_command_template
        else:
            dependency = (
                await self.store.get_task(task.depends_on_id) if task.depends_on_id else None
            )
            prompt = build_execution_prompt(
                task,
                prompts_dir=self.settings.prompts_dir,
                workdir=workdir.path,
                dependency=dependency,
            )
            template = self.settings.agent.command_template

        log_path = (
            Path(task.log_file)
            if task.log_file
            else build_log_path(self.settings.logs_dir, task.task_id)
        )
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logger.info(
            "Executing task %s [%s] %s (%s)",
            task.task_id,
            task.task_type.value,
            task.title,
            f"resume {task.session_id}" if context.resumed else "fresh",
        )

        with log_path.open("a", encoding="utf-8") as log_handle:
            _write_header(log_handle, context=context, workdir=workdir.path)

            async def on_line(line: str) -> None:
                log_handle.write(line + "\n")
                log_handle.flush()
                context.state.consume(line)

            request = AgentRunRequest(
                prompt=prompt,
                command_template=template,
                workdir=workdir.path,
                env=self._agent_env(task.task_id),
                session_id=task.session_id if context.resumed else None,
                on_stdout_line=on_line,
            )
            try:
                result, cancelled, timed_out = await self._run_with_watchers(
                    task.task_id,
                    request,
                )
            except AgentRunError as error:
                _write_exit(
                    log_handle,
                    exit_code=None,
                    stderr=str(error),
                    cancelled=False,
                    session_id=context.state.session_id,
                )
                return await self._finish_failed(
                    context,
                    message=str(error),
                    category=ErrorCategory.SPAWN_ERROR,
                    exit_code=None,
                )
            _write_exit(
                log_handle,
                exit_code=result.exit_code if result is not None else None,
                stderr=result.stderr if result is not None else "",
                cancelled=cancelled,
                session_id=context.state.session_id,
            )

        if cancelled:
            return await self._finish_cancelled(context)
        if timed_out or result is None:
            return await self._finish_failed(
                context,
                message=(
                    f"Timed out after {self.settings.worker.execution_timeout_seconds}s"
                ),
                category=ErrorCategory.TIMEOUT,
                exit_code=None,
            )
        if result.exit_code != 0:
            classification = classify_agent_failure(
                exit_code=result.exit_code,
                stdout="\n".join(context.state.assistant_texts),
                stderr=result.stderr,
            )
            stderr_text = result.stderr.strip() or "no stderr output"
            return await self._finish_failed(
                context,
                message=f"Exit code {result.exit_code}: {stderr_text}",
                category=classification.category,
                exit_code=result.exit_code,
                details=classification.to_event_details(exit_code=result.exit_code),
            )
        return await self._finish_normal_exit(context, exit_code=result.exit_code)

    async def _run_with_watchers(
        self,
        task_id: str,
        request: AgentRunRequest,
    ) -> tuple[AgentRunResult | None, bool, bool]:
        """Race the agent against the cancel watcher and the execution timeout."""

        run = asyncio.create_task(self.backend.run(request))
        watcher = asyncio.create_task(self._wait_for_cancel_request(task_id))
        try:
            done, _ = await asyncio.wait(
                {run, watcher},
                timeout=self.settings.worker.execution_timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            watcher.cancel()

        if run in done:
            return run.result(), False, False

        run.cancel()
        await asyncio.gather(run, return_exceptions=True)
        if watcher in done:
            logger.info("Cancellation requested for task %s, agent terminated", task_id)
            return None, True, False
        logger.warning("Task %s exceeded execution timeout, agent terminated", task_id)
        return None, False, True

    async def _wait_for_cancel_request(self, task_id: str) -> None:
        while True:
            await asyncio.sleep(self.settings.worker.cancel_poll_seconds)
            try:
                current = await self.store.get_task(task_id)
            except TaskStoreError:
                logger.debug("Cancel poll failed for %s", task_id, exc_info=True)
                continue
            if current is not None and current.cancel_requested:
                return

    async def _finish_normal_exit(
        self,
        context: _RunContext,
        *,
        exit_code: int,
    ) -> ExecutionOutcome:
        task_id = context.task.task_id
        if self.settings.worker.finalize_grace_seconds > 0:
            await asyncio.sleep(self.settings.worker.finalize_grace_seconds)

        current = await self.store.get_task(task_id)
        metrics = self._metrics(context)
        fallback = build_fallback_result(
            final_result=context.state.final_result,
            assistant_texts=list(context.state.assistant_texts),
            max_chars=self.settings.worker.result_max_chars,
        )
        if current is not None and (
            current.status == TaskStatus.AWAITING_FEEDBACK or current.status in TERMINAL_STATUSES
        ):
            fields: dict[str, object] = dict(metrics)
            thread = _thread_with_agent_turn(context.task, current, current.result or fallback)
            if thread is not None:
                fields["messages"] = thread
            await self.store.update_task(task_id, fields)
            await self._record_finish(
                context,
                status_to=current.status,
                details={"exit_code": exit_code, "reported_by_agent": True},
            )
            logger.info("Task %s reported %s itself", task_id, current.status.value)
            await self._notify(current)
            return self._outcome(context, status=current.status, exit_code=exit_code)

        fields = {
            **metrics,
            "status": TaskStatus.COMPLETED,
            "completed_at": utc_now(),
        }
        result = current.result if current is not None else None
        if not result and fallback is not None:
            result = fallback
            fields["result"] = fallback
        thread = _thread_with_agent_turn(context.task, current, result)
        if thread is not None:
            fields["messages"] = thread

        applied = await self.store.update_task(
            task_id,
            fields,
            expect_status=TaskStatus.IN_PROGRESS,
        )
        if not applied:
            # Status moved under us between the re-read and the write.
            latest = await self.store.get_task(task_id)
            await self.store.update_task(task_id, metrics)
            status = latest.status if latest is not None else None
            logger.info("Task %s changed status during finalization: %s", task_id, status)
            return self._outcome(context, status=status, exit_code=exit_code)

        await self._record_finish(
            context,
            status_to=TaskStatus.COMPLETED,
            details={"exit_code": exit_code, "used_fallback_result": "result" in fields},
        )
        logger.info("Task %s completed in %d ms", task_id, metrics["duration_ms"])
        await self._notify_completed(context.task)
        return self._outcome(context, status=TaskStatus.COMPLETED, exit_code=exit_code)

    async def _finish_cancelled(self, context: _RunContext) -> ExecutionOutcome:
        task_id = context.task.task_id
        try:
            await self.store.update_task(
                task_id,
                {
                    **self._metrics(context),
                    "status": TaskStatus.CANCELLED,
                    "completed_at": utc_now(),
                    "error_message": "Cancelled by user",
                    "error_category": ErrorCategory.CANCELLED,
                },
            )
        except TaskStoreError:
            logger.exception("Failed to record cancellation of task %s", task_id)
            return self._outcome(
                context,
                status=None,
                error_category=ErrorCategory.CANCELLED,
            )
        await self._record_finish(context, status_to=TaskStatus.CANCELLED, details={})
        logger.info("Task %s cancelled", task_id)
        return self._outcome(
            context,
            status=TaskStatus.CANCELLED,
            error_category=ErrorCategory.CANCELLED,
        )

    async def _finish_failed(
        self,
        context: _RunContext,
        *,
        message: str,
        category: ErrorCategory,
        exit_code: int | None,
        details: dict[str, object] | None = None,
    ) -> ExecutionOutcome:
        task_id = context.task.task_id
        error_message = truncate_keep_head(message, self.settings.worker.error_max_chars)
        try:
            await self.store.update_task(
                task_id,
                {
                    **self._metrics(context),
                    "status": TaskStatus.FAILED,
                    "completed_at": utc_now(),
                    "error_message": error_message,
                    "error_category": category,
                },
            )
        except TaskStoreError:
            logger.exception("Failed to record failure of task %s", task_id)
            return self._outcome(context, status=None, exit_code=exit_code)
        await self._record_finish(
            context,
            status_to=TaskStatus.FAILED,
            details={"exit_code": exit_code, "error_category": category.value, **(details or {})},
        )
        logger.warning("Task %s failed (%s): %s", task_id, category.value, error_message)
        await self._notify_failed(context.task, error_message)
        return self._outcome(
            context,
            status=TaskStatus.FAILED,
            exit_code=exit_code,
            error_category=category,
        )

    def _metrics(self, context: _RunContext) -> dict[str, object]:
        metrics: dict[str, object] = {
            "duration_ms": context.duration_ms,
            "tools_used": context.state.tools_used,
        }
        if context.state.session_id:
            metrics["session_id"] = context.state.session_id
        return metrics

    def _outcome(
        self,
        context: _RunContext,
        *,
        status: TaskStatus | None,
        exit_code: int | None = None,
        error_category: ErrorCategory | None = None,
    ) -> ExecutionOutcome:
        return ExecutionOutcome(
            task_id=context.task.task_id,
            status=status,
            exit_code=exit_code,
            session_id=context.state.session_id,
            tools_used=context.state.tools_used,
            duration_ms=context.duration_ms,
            error_category=error_category,
            resumed=context.resumed,
        )

    def _agent_env(self, task_id: str) -> dict[str, str]:
        return {
            TASK_ID_ENV: task_id,
            TASK_CLI_ENV: f"{shlex.quote(sys.executable)} -m voice_listener.main task-update",
            DB_PATH_ENV: str(self.settings.db_path.resolve()),
        }

    async def _record_finish(
        self,
        context: _RunContext,
        *,
        status_to: TaskStatus,
        details: dict[str, object],
    ) -> None:
        try:
            await self.store.add_task_event(
                task_id=context.task.task_id,
                event_type="execution_finished",
                status_from=TaskStatus.IN_PROGRESS,
                status_to=status_to,
                details={
                    **details,
                    "duration_ms": context.duration_ms,
                    "tools_used": context.state.tools_used,
                    "session_id": context.state.session_id,
                    "resumed": context.resumed,
                },
            )
        except TaskStoreError:
            logger.debug("Could not record finish event for %s", context.task.task_id)

    async def _notify(self, task: TaskView) -> None:
        if task.status == TaskStatus.COMPLETED:
            await self._notify_completed(task)
        elif task.status == TaskStatus.FAILED:
            await self._notify_failed(task, task.error_message)
        elif task.status == TaskStatus.AWAITING_FEEDBACK:
            try:
                await self.notifier.task_awaiting_feedback(
                    task_id=task.task_id,
                    title=task.title,
                    task_type=task.task_type,
                )
            except Exception:  # noqa: BLE001
                logger.warning("Feedback notification failed for %s", task.task_id, exc_info=True)

    async def _notify_completed(self, task: TaskView) -> None:
        try:
            await self.notifier.task_completed(
                task_id=task.task_id,
                title=task.title,
                task_type=task.task_type,
            )
        except Exception:  # noqa: BLE001
            logger.warning("Completion notification failed for %s", task.task_id, exc_info=True)

    async def _notify_failed(self, task: TaskView, error_message: str | None) -> None:
        try:
            await self.notifier.task_failed(
                task_id=task.task_id,
                title=task.title,
                error_message=error_message,
            )
        except Exception:  # noqa: BLE001
            logger.warning("Failure notification failed for %s", task.task_id, exc_info=True)


def _thread_with_agent_turn(
    started: TaskView,
    current: TaskView | None,
    content: str | None,
) -> list[ThreadMessage] | None:
    """Thread with this run's answer placed after the messages it was started with.

    Replies that arrived while the agent ran stay after the answer, so they
    remain pending feedback for the next resume.
    """

    if not content and not started.has_pending_feedback:
        return None
    messages = current.messages if current is not None else started.messages
    answered = len(started.messages)
    turn = ThreadMessage(
        role="assistant",
        content=content or EMPTY_AGENT_TURN,
        timestamp=to_epoch_ms(utc_now()),
    )
    return [*messages[:answered], turn, *messages[answered:]]


def _write_header(handle: IO[str], *, context: _RunContext, workdir: Path) -> None:
    task = context.task
    mode = f"resume (session {task.session_id})" if context.resumed else "fresh"
    handle.write(
        f"{LOG_RULE}\n"
        f"Task: {task.task_id}\n"
        f"Type: {task.task_type.value}\n"
        f"Title: {task.title}\n"
        f"Description: {task.description or '-'}\n"
        f"Started: {utc_now().isoformat()}\n"
        f"Mode: {mode}\n"
        f"Workdir: {workdir}\n"
        f"Prompt version: {task.prompt_version_id or '-'}\n"
        f"{LOG_RULE}\n",
    )
    handle.flush()


def _write_exit(
    handle: IO[str],
    *,
    exit_code: int | None,
    stderr: str,
    cancelled: bool,
    session_id: str | None,
) -> None:
    handle.write(
        f"{LOG_RULE}\n"
        f"Exit code: {exit_code if exit_code is not None else '-'}\n"
        f"Cancelled: {'yes' if cancelled else 'no'}\n"
        f"Session: {session_id or '-'}\n"
        f"Stderr:\n{stderr.strip() or '-'}\n"
        f"{LOG_RULE}\n",
    )
    handle.flush()
