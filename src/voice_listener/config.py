"""Runtime configuration for the task worker and progress projector."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_COMMAND_TEMPLATE = (
    "claude -p {prompt} --output-format stream-json --verbose --dangerously-skip-permissions"
)
DEFAULT_RESUME_COMMAND_TEMPLATE = (
    "claude -p {prompt} --resume {session_id} "
    "--output-format stream-json --verbose --dangerously-skip-permissions"
)
DEFAULT_PUSH_URL = "https://exp.host/--/api/v2/push/send"
_PACKAGE_PROMPTS_DIR = Path(__file__).resolve().parent / "prompts"


@dataclass(slots=True)
class WorkerSettings:
    """Scheduler and execution driver settings."""

    max_concurrency: int = 15
    poll_interval_seconds: float = 5.0
    cancel_poll_seconds: float = 3.0
    finalize_grace_seconds: float = 2.0
    execution_timeout_seconds: int = 7_200
    heartbeat_interval_seconds: float = 10.0
    worker_name: str = "execution"
    result_max_chars: int = 4_000
    error_max_chars: int = 500


@dataclass(slots=True)
class ProgressSettings:
    """Log tailing and debounced progress persistence settings."""

    poll_interval_seconds: float = 2.0
    tail_interval_seconds: float = 0.5
    debounce_seconds: float = 0.8
    max_activities: int = 30


@dataclass(slots=True)
class AgentSettings:
    """External agent CLI invocation."""

    command_template: str = DEFAULT_COMMAND_TEMPLATE
    resume_command_template: str = DEFAULT_RESUME_COMMAND_TEMPLATE


@dataclass(slots=True)
class NotificationSettings:
    enabled: bool = True
    push_url: str = DEFAULT_PUSH_URL
    request_timeout_seconds: float = 10.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".voice_listener.db")
    sqlite_busy_timeout_ms: int = 5_000
    logs_dir: Path = Path("logs")
    projects_dir: Path = Path.home() / "ai" / "projects"
    default_workdir: Path = field(default_factory=Path.cwd)
    prompts_dir: Path = _PACKAGE_PROMPTS_DIR
    guideline_files: tuple[Path, ...] = ()
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    progress: ProgressSettings = field(default_factory=ProgressSettings)
    agent: AgentSettings = field(default_factory=AgentSettings)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        projects_dir = Path(
            os.getenv("VOICE_LISTENER_PROJECTS_DIR", str(Path.home() / "ai" / "projects")),
        ).expanduser()
        return cls(
            db_path=db_path or Path(os.getenv("VOICE_LISTENER_DB_PATH", ".voice_listener.db")),
            sqlite_busy_timeout_ms=int(os.getenv("VOICE_LISTENER_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            logs_dir=Path(os.getenv("VOICE_LISTENER_LOGS_DIR", "logs")).expanduser(),
            projects_dir=projects_dir,
            default_workdir=Path(
                os.getenv("VOICE_LISTENER_DEFAULT_WORKDIR", str(Path.cwd())),
            ).expanduser(),
            prompts_dir=Path(
                os.getenv("VOICE_LISTENER_PROMPTS_DIR", str(_PACKAGE_PROMPTS_DIR)),
            ).expanduser(),
            guideline_files=_collect_guideline_files(projects_dir),
            worker=WorkerSettings(
                max_concurrency=int(os.getenv("VOICE_LISTENER_MAX_CONCURRENCY", "15")),
                poll_interval_seconds=float(
                    os.getenv("VOICE_LISTENER_POLL_INTERVAL_SECONDS", "5.0"),
                ),
                cancel_poll_seconds=float(os.getenv("VOICE_LISTENER_CANCEL_POLL_SECONDS", "3.0")),
                finalize_grace_seconds=float(
                    os.getenv("VOICE_LISTENER_FINALIZE_GRACE_SECONDS", "2.0"),
                ),
                execution_timeout_seconds=int(
                    os.getenv("VOICE_LISTENER_EXECUTION_TIMEOUT_SECONDS", "7200"),
                ),
                heartbeat_interval_seconds=float(
                    os.getenv("VOICE_LISTENER_HEARTBEAT_INTERVAL_SECONDS", "10.0"),
                ),
                worker_name=os.getenv("VOICE_LISTENER_WORKER_NAME", "execution"),
                result_max_chars=int(os.getenv("VOICE_LISTENER_RESULT_MAX_CHARS", "4000")),
            ),
            progress=ProgressSettings(
                poll_interval_seconds=float(
                    os.getenv("VOICE_LISTENER_PROGRESS_POLL_SECONDS", "2.0"),
                ),
                tail_interval_seconds=float(
                    os.getenv("VOICE_LISTENER_PROGRESS_TAIL_SECONDS", "0.5"),
                ),
                debounce_seconds=float(
                    os.getenv("VOICE_LISTENER_PROGRESS_DEBOUNCE_SECONDS", "0.8"),
                ),
            ),
            agent=AgentSettings(
                command_template=os.getenv(
                    "VOICE_LISTENER_AGENT_COMMAND_TEMPLATE",
                    DEFAULT_COMMAND_TEMPLATE,
                ),
                resume_command_template=os.getenv(
                    "VOICE_LISTENER_AGENT_RESUME_COMMAND_TEMPLATE",
                    DEFAULT_RESUME_COMMAND_TEMPLATE,
                ),
            ),
            notifications=NotificationSettings(
                enabled=_env_bool("VOICE_LISTENER_NOTIFICATIONS_ENABLED", default=True),
                push_url=os.getenv("VOICE_LISTENER_PUSH_URL", DEFAULT_PUSH_URL),
            ),
        )

    def validate_for_worker(self) -> None:
        """Raise configuration error for values the worker cannot run with."""

        if self.worker.max_concurrency <= 0:
            raise ValueError("VOICE_LISTENER_MAX_CONCURRENCY must be > 0.")
        if self.worker.poll_interval_seconds < 0:
            raise ValueError("VOICE_LISTENER_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.worker.cancel_poll_seconds <= 0:
            raise ValueError("VOICE_LISTENER_CANCEL_POLL_SECONDS must be > 0.")
        if self.worker.result_max_chars <= 0:
            raise ValueError("VOICE_LISTENER_RESULT_MAX_CHARS must be > 0.")
        if "{prompt}" not in self.agent.command_template:
            raise ValueError(
                "VOICE_LISTENER_AGENT_COMMAND_TEMPLATE must include {prompt}.",
            )
        if (
            "{prompt}" not in self.agent.resume_command_template
            or "{session_id}" not in self.agent.resume_command_template
        ):
            raise ValueError(
                "VOICE_LISTENER_AGENT_RESUME_COMMAND_TEMPLATE must include "
                "{prompt} and {session_id}.",
            )


def _collect_guideline_files(projects_dir: Path) -> tuple[Path, ...]:
    raw = os.getenv("VOICE_LISTENER_GUIDELINE_FILES")
    if raw is None:
        return (projects_dir.parent / "CLAUDE.md", projects_dir / "CLAUDE.md")
    return tuple(
        Path(part.strip()).expanduser() for part in raw.split(",") if part.strip()
    )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
