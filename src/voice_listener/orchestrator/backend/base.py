"""Backend interface for agent task execution."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class AgentRunRequest:
    """Inputs required to run the agent once for a task."""

    prompt: str
    command_template: str
    workdir: Path
    env: dict[str, str] = field(default_factory=dict)
    session_id: str | None = None
    on_stdout_line: Callable[[str], Awaitable[None]] | None = None


@dataclass(slots=True)
class AgentRunResult:
    """Process outcome from the backend runner."""

    exit_code: int
    stderr: str
    command_head: str


class AgentBackend(Protocol):
    """Protocol implemented by backend runners.

    Cancelling the coroutine running `run` must terminate the agent process.
    """

    async def run(self, request: AgentRunRequest) -> AgentRunResult:
        """Run the agent and return exit metadata."""
