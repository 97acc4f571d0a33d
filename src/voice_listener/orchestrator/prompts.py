"""Prompt assembly for fresh runs and session resumes."""

from __future__ import annotations

from pathlib import Path

from voice_listener.orchestrator.models import TaskStatus, TaskType, TaskView, ThreadMessage
from voice_listener.orchestrator.prompt_versions import load_prompt

EXECUTE_TEMPLATE = "execute"

TYPE_INSTRUCTION_TEMPLATES: dict[TaskType, str] = {
    TaskType.CODE_CHANGE: "code-change",
    TaskType.NEW_PROJECT: "new-project",
    TaskType.RESEARCH: "research",
    TaskType.WRITE: "write",
    TaskType.HUMAN_TASK: "human-task",
}


def build_execution_prompt(
    task: TaskView,
    *,
    prompts_dir: Path,
    workdir: Path,
    dependency: TaskView | None = None,
) -> str:
    """Full prompt for a fresh agent session."""

    type_instructions = load_prompt(
        prompts_dir,
        TYPE_INSTRUCTION_TEMPLATES[task.task_type],
        {"SUBTYPE": task.subtype or "feature"},
    )
    return load_prompt(
        prompts_dir,
        EXECUTE_TEMPLATE,
        {
            "TASK_ID": task.task_id,
            "TASK_TYPE": task.task_type.value,
            "TITLE": task.title,
            "DESCRIPTION": task.description or "-",
            "WORKDIR": str(workdir),
            "CONTEXT": _build_context(task, dependency),
            "TYPE_INSTRUCTIONS": type_instructions.strip(),
        },
    )


def build_resume_prompt(task: TaskView) -> str:
    """Only the feedback that arrived after the last agent turn."""

    return "\n\n".join(message.content for message in pending_feedback(task.messages))


def pending_feedback(messages: list[ThreadMessage]) -> list[ThreadMessage]:
    trailing: list[ThreadMessage] = []
    for message in reversed(messages):
        if message.role != "user":
            break
        trailing.append(message)
    trailing.reverse()
    return trailing


def should_resume(task: TaskView) -> bool:
    return bool(task.session_id) and task.has_pending_feedback


def _build_context(task: TaskView, dependency: TaskView | None) -> str:
    sections: list[str] = []
    if (
        dependency is not None
        and dependency.status == TaskStatus.COMPLETED
        and dependency.result
    ):
        sections.append(
            "CONTEXT FROM PREVIOUS TASK:\n"
            f'This task follows "{dependency.title}" ({dependency.task_id}), which reported:\n'
            f"{dependency.result}\n",
        )
    if task.messages:
        thread = "\n\n".join(
            f"[{message.role.upper()}]: {message.content}" for message in task.messages
        )
        sections.append(
            "CONVERSATION THREAD:\n"
            f"{thread}\n\n"
            "The user has provided feedback. Continue iterating based on their input.\n",
        )
    return "\n".join(sections)
