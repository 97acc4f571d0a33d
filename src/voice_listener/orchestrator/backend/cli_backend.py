"""Subprocess-based backend runner for CLI agents."""

from __future__ import annotations

import asyncio
import logging
import os
import shlex

from voice_listener.orchestrator.backend.base import AgentRunRequest, AgentRunResult

logger = logging.getLogger(__name__)

# Stream-json lines carry whole tool results and can be large.
STDOUT_LINE_LIMIT_BYTES = 64 * 1024 * 1024
TERMINATE_GRACE_SECONDS = 2.0


class AgentRunError(RuntimeError):
    """Backend execution error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class CliAgentBackend:
    """Spawn the agent CLI from a command template and stream its stdout lines."""

    async def run(self, request: AgentRunRequest) -> AgentRunResult:
        argv = build_run_args(
            command_template=request.command_template,
            prompt=request.prompt,
            session_id=request.session_id,
            workdir=str(request.workdir),
        )
        env = os.environ.copy()
        env.update(request.env)

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(request.workdir),
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STDOUT_LINE_LIMIT_BYTES,
            )
        except FileNotFoundError as error:
            raise AgentRunError(
                f"CLI backend command not found: {argv[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise AgentRunError(
                f"CLI backend failed to start: {error}",
                transient=True,
            ) from error

        logger.debug("Spawned %s (pid=%s) in %s", argv[0], process.pid, request.workdir)
        stderr_reader = asyncio.create_task(_read_all(process.stderr))
        try:
            if process.stdout is not None:
                async for raw_line in process.stdout:
                    if request.on_stdout_line is None:
                        continue
                    line = raw_line.decode("utf-8", errors="replace").rstrip("\r\n")
                    await request.on_stdout_line(line)
            exit_code = await process.wait()
        except BaseException:
            await _terminate_process(process)
            stderr_reader.cancel()
            raise

        return AgentRunResult(
            exit_code=exit_code,
            stderr=await stderr_reader,
            command_head=argv[0],
        )


def build_run_args(
    *,
    command_template: str,
    prompt: str,
    session_id: str | None = None,
    workdir: str = "",
) -> list[str]:
    """Render a POSIX command template into argv with every value shell-quoted."""

    stripped = command_template.strip()
    if not stripped:
        raise AgentRunError("CLI backend command template is empty.", transient=False)
    if "{prompt}" not in stripped:
        raise AgentRunError(
            "CLI backend command template must include {prompt}.",
            transient=False,
        )
    if "{session_id}" in stripped and not session_id:
        raise AgentRunError(
            "CLI backend resume template requires a session id.",
            transient=False,
        )

    try:
        rendered = stripped.format(
            prompt=shlex.quote(prompt),
            session_id=shlex.quote(session_id or ""),
            workdir=shlex.quote(workdir),
        )
    except (KeyError, IndexError) as error:
        raise AgentRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise AgentRunError(
            "CLI backend command template rendered empty command.",
            transient=False,
        )
    return argv


async def _read_all(stream: asyncio.StreamReader | None) -> str:
    if stream is None:
        return ""
    data = await stream.read()
    return data.decode("utf-8", errors="replace")


async def _terminate_process(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=TERMINATE_GRACE_SECONDS)
    except TimeoutError:
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()
