"""Local demo agent for CLI backend integration tests.

Emits the same stream-json event shapes the real agent CLI produces. Markers
in the prompt select the behaviour:

- ``echo:fail`` exits non-zero with a permission error on stderr.
- ``echo:silent`` never emits a final result event.
- ``echo:sleep=<seconds>`` sleeps before finishing.
- ``echo:ask`` sets its own task to awaiting_feedback via the task CLI.
- ``echo:report`` sets its own result via the task CLI.
"""

from __future__ import annotations

import argparse
import json
import os
import re
import shlex
import subprocess
import sys
import time
from uuid import uuid4

_SLEEP_MARKER = re.compile(r"echo:sleep=(\d+(?:\.\d+)?)")


def main(argv: list[str] | None = None) -> int:
    """Run local deterministic demo execution."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt", required=True)
    parser.add_argument("--resume", default=None)
    args = parser.parse_args(argv)

    prompt: str = args.prompt
    session_id = args.resume or f"echo-{uuid4().hex[:8]}"
    _emit({"type": "system", "subtype": "init", "session_id": session_id})
    _emit_text("I'll echo the task prompt back.")
    _emit(
        {
            "type": "assistant",
            "message": {
                "content": [
                    {
                        "type": "tool_use",
                        "id": "toolu_echo_1",
                        "name": "Bash",
                        "input": {"command": "pwd", "description": "Print working directory"},
                    },
                ],
            },
        },
    )
    _emit(
        {
            "type": "user",
            "message": {
                "content": [
                    {
                        "type": "tool_result",
                        "tool_use_id": "toolu_echo_1",
                        "content": os.getcwd(),
                        "is_error": False,
                    },
                ],
            },
        },
    )

    sleep_match = _SLEEP_MARKER.search(prompt)
    if sleep_match is not None:
        time.sleep(float(sleep_match.group(1)))

    if "echo:fail" in prompt:
        print("Error: permission denied while writing workspace", file=sys.stderr)
        return 3

    if "echo:report" in prompt:
        _task_cli("result", "Reported by agent")
    if "echo:ask" in prompt:
        _task_cli("status", "awaiting_feedback")

    first_line = prompt.strip().splitlines()[0] if prompt.strip() else ""
    summary = (
        f"Resumed {session_id}: {first_line}" if args.resume else f"Echo: {first_line}"
    )
    _emit_text(summary)
    if "echo:silent" not in prompt:
        _emit(
            {
                "type": "result",
                "subtype": "success",
                "is_error": False,
                "session_id": session_id,
                "result": summary,
            },
        )
    return 0


def _emit(event: dict[str, object]) -> None:
    print(json.dumps(event, ensure_ascii=False), flush=True)


def _emit_text(text: str) -> None:
    _emit({"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}})


def _task_cli(field_name: str, value: str) -> None:
    command = os.environ.get("VOICE_LISTENER_TASK_CLI")
    if not command:
        print("VOICE_LISTENER_TASK_CLI is not set", file=sys.stderr)
        return
    subprocess.run(  # noqa: S603
        [*shlex.split(command), field_name, value],
        check=True,
        capture_output=True,
    )


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
