"""Agent stream-json event decoding shared by the driver and the progress parser."""

from __future__ import annotations

import json
from collections import deque
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

MAX_CAPTURED_TEXTS = 200


def parse_event_line(line: str) -> dict[str, Any] | None:
    """Decode one JSON event line; anything else yields None."""

    stripped = line.strip()
    if not stripped.startswith("{"):
        return None
    try:
        payload = json.loads(stripped)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    return payload


def iter_content_blocks(event: dict[str, Any]) -> Iterator[dict[str, Any]]:
    """Yield content blocks of an assistant or user message event."""

    message = event.get("message")
    if not isinstance(message, dict):
        return
    content = message.get("content")
    if not isinstance(content, list):
        return
    for block in content:
        if isinstance(block, dict):
            yield block


@dataclass(slots=True)
class StreamState:
    """Accumulates what the driver needs from one agent run."""

    session_id: str | None = None
    tools_used: int = 0
    thinking_segments: int = 0
    final_result: str | None = None
    result_is_error: bool = False
    assistant_texts: deque[str] = field(
        default_factory=lambda: deque(maxlen=MAX_CAPTURED_TEXTS),
    )

    def consume(self, line: str) -> dict[str, Any] | None:
        event = parse_event_line(line)
        if event is None:
            return None

        event_type = event.get("type")
        if event_type == "system" and event.get("subtype") == "init":
            self._capture_session(event)
        elif event_type == "assistant":
            self._consume_assistant(event)
        elif event_type == "result":
            self._capture_session(event)
            result = event.get("result")
            if isinstance(result, str):
                self.final_result = result
            self.result_is_error = bool(event.get("is_error"))
        return event

    def _consume_assistant(self, event: dict[str, Any]) -> None:
        for block in iter_content_blocks(event):
            block_type = block.get("type")
            if block_type == "text":
                text = block.get("text")
                if isinstance(text, str) and text.strip():
                    self.assistant_texts.append(text)
            elif block_type == "thinking":
                self.thinking_segments += 1
            elif block_type == "tool_use":
                self.tools_used += 1

    def _capture_session(self, event: dict[str, Any]) -> None:
        session_id = event.get("session_id")
        if isinstance(session_id, str) and session_id:
            self.session_id = session_id
