"""CLI entrypoint for voice-listener."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from voice_listener import __version__
from voice_listener.orchestrator.controllers import (
    AddTaskCommand,
    CliController,
    InspectTaskCommand,
    ListTasksCommand,
    MutateTaskCommand,
    ProgressCommand,
    PromptVersionCommand,
    PushTokenCommand,
    ReplyCommand,
    TaskUpdateCommand,
    WorkerCommand,
)
from voice_listener.orchestrator.models import TaskStatus, TaskType
from voice_listener.orchestrator.store import TaskStoreError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = CliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="voice-listener")
def voice_listener() -> None:
    """Voice-note task worker CLI."""


@voice_listener.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Process ready batches until none are left, then exit.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=None,
    help="Max number of tasks to process in this invocation.",
)
@click.option("--task-id", default=None, help="Reset one task to pending and execute just it.")
@click.option("--no-debug", is_flag=True, default=False, help="Log at INFO instead of DEBUG.")
@click.option(
    "--skip-recovery",
    is_flag=True,
    default=False,
    help="Do not reset in-progress tasks to pending at startup.",
)
@click.option(
    "--since",
    default=None,
    help="Only tasks extracted on/after: today, yesterday, 2h, 3d, 2026-01-31, or epoch.",
)
@click.option(
    "--watch-progress/--no-watch-progress",
    default=True,
    show_default=True,
    help="Run the progress projector alongside the scheduler.",
)
def worker(  # noqa: PLR0913
    db_path: Path | None,
    once: bool,
    limit: int | None,
    task_id: str | None,
    no_debug: bool,
    skip_recovery: bool,
    since: str | None,
    watch_progress: bool,
) -> None:
    """Schedule and execute pending tasks with the agent CLI."""

    configure_logging(debug=not no_debug)
    _emit_result(
        lambda: CONTROLLER.run_worker(
            WorkerCommand(
                db_path=db_path,
                once=once,
                limit=limit,
                task_id=task_id,
                skip_recovery=skip_recovery,
                since=since,
                watch_progress=watch_progress,
            ),
        ),
    )


@voice_listener.command("progress")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--once", is_flag=True, default=False, help="Tail once, flush and exit.")
@click.option("--verbose", is_flag=True, default=False, help="Show debug output.")
def progress(db_path: Path | None, once: bool, verbose: bool) -> None:
    """Tail in-progress task logs and keep progress snapshots current."""

    configure_logging(debug=verbose)
    _emit_result(lambda: CONTROLLER.run_progress(ProgressCommand(db_path=db_path, once=once)))


@voice_listener.command("task-update")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("args", nargs=-1, required=True)
def task_update(db_path: Path | None, args: tuple[str, ...]) -> None:
    """Set `result`, `status`, `deployUrl` or `deployUrlLabel` on a task.

    Usage: `task-update [TASK_ID] FIELD VALUE`. Without TASK_ID the id is read
    from `VOICE_LISTENER_TASK_ID`.
    """

    _emit_result(lambda: CONTROLLER.task_update(TaskUpdateCommand(db_path=db_path, args=args)))


@voice_listener.command("tasks")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus]),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of tasks to print.",
)
def tasks(db_path: Path | None, status: str | None, limit: int) -> None:
    """List tasks."""

    _emit_result(
        lambda: CONTROLLER.list_tasks(
            ListTasksCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@voice_listener.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def inspect(db_path: Path | None, task_id: str) -> None:
    """Show task details, progress and event history."""

    _emit_result(
        lambda: CONTROLLER.inspect_task(InspectTaskCommand(db_path=db_path, task_id=task_id)),
    )


@voice_listener.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def cancel(db_path: Path | None, task_id: str) -> None:
    """Cancel a pending task or request cancellation of a running one."""

    _emit_result(
        lambda: CONTROLLER.cancel_task(MutateTaskCommand(db_path=db_path, task_id=task_id)),
    )


@voice_listener.command("reply")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
@click.option("--message", required=True, help="Feedback for the agent.")
def reply(db_path: Path | None, task_id: str, message: str) -> None:
    """Append user feedback; tasks awaiting feedback are re-queued to resume."""

    _emit_result(
        lambda: CONTROLLER.reply(
            ReplyCommand(db_path=db_path, task_id=task_id, message=message),
        ),
    )


@voice_listener.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--type",
    "task_type",
    type=click.Choice([task_type.value for task_type in TaskType]),
    required=True,
    help="Task type.",
)
@click.option("--title", required=True, help="Short task title.")
@click.option("--description", default=None, help="Task description.")
@click.option("--subtype", default=None, help="Subtype, for code_change: bug/feature/refactor.")
@click.option("--depends-on", default=None, help="Id of the task this one waits for.")
@click.option(
    "--sequence-index",
    type=int,
    default=None,
    help="Ordering among ready tasks; lower runs first.",
)
@click.option("--project-path", default=None, help="Existing project directory.")
def add(  # noqa: PLR0913
    db_path: Path | None,
    task_type: str,
    title: str,
    description: str | None,
    subtype: str | None,
    depends_on: str | None,
    sequence_index: int | None,
    project_path: str | None,
) -> None:
    """Create a pending task."""

    _emit_result(
        lambda: CONTROLLER.add_task(
            AddTaskCommand(
                db_path=db_path,
                task_type=task_type,
                title=title,
                description=description,
                subtype=subtype,
                depends_on=depends_on,
                sequence_index=sequence_index,
                project_path=project_path,
            ),
        ),
    )


@voice_listener.command("prompt-version")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def prompt_version(db_path: Path | None) -> None:
    """Hash the instruction documents and show the matching version record."""

    _emit_result(lambda: CONTROLLER.prompt_version(PromptVersionCommand(db_path=db_path)))


@voice_listener.command("push-token")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--token", required=True, help="Expo push token of a device.")
def push_token(db_path: Path | None, token: str) -> None:
    """Register a device for task notifications."""

    _emit_result(
        lambda: CONTROLLER.register_push_token(PushTokenCommand(db_path=db_path, token=token)),
    )


def configure_logging(*, debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format=LOG_FORMAT,
        force=True,
    )
    # Keep SQL and HTTP client chatter out of debug logs.
    for name in ("sqlalchemy", "httpx", "httpcore", "alembic"):
        logging.getLogger(name).setLevel(logging.WARNING)


def _emit_result(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (ValueError, TaskStoreError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    voice_listener()
