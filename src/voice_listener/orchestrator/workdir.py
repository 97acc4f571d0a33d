"""Working-directory resolution for task execution."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from voice_listener.orchestrator.models import TaskType, TaskView

MAX_SLUG_LENGTH = 48
DEFAULT_PROJECT_SLUG = "project"

_NON_SLUG_CHARS = re.compile(r"[^a-z0-9]+")


@dataclass(slots=True)
class ResolvedWorkdir:
    """Directory the agent runs in; `allocated` marks a fresh project folder."""

    path: Path
    allocated: bool = False


def slugify_project_name(title: str) -> str:
    """Convert a project title into a safe folder slug."""

    slug = _NON_SLUG_CHARS.sub("-", title.lower()).strip("-")
    slug = slug[:MAX_SLUG_LENGTH].rstrip("-")
    return slug or DEFAULT_PROJECT_SLUG


def allocate_project_directory(projects_dir: Path, title: str) -> Path:
    """Create a unique project directory, suffixing -2, -3, ... on collisions."""

    base = slugify_project_name(title)
    candidate = base
    counter = 2
    while (projects_dir / candidate).exists():
        candidate = f"{base}-{counter}"
        counter += 1

    path = projects_dir / candidate
    path.mkdir(parents=True, exist_ok=False)
    return path


def resolve_workdir(
    task: TaskView,
    *,
    projects_dir: Path,
    default_workdir: Path,
) -> ResolvedWorkdir:
    """Existing project path first, then a new folder for new projects, else the default."""

    if task.project_path:
        path = Path(task.project_path).expanduser()
        if not path.is_absolute():
            path = projects_dir / path
        path.mkdir(parents=True, exist_ok=True)
        return ResolvedWorkdir(path=path)
    if task.task_type == TaskType.NEW_PROJECT:
        return ResolvedWorkdir(
            path=allocate_project_directory(projects_dir, task.title),
            allocated=True,
        )
    default_workdir.mkdir(parents=True, exist_ok=True)
    return ResolvedWorkdir(path=default_workdir)
