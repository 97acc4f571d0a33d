"""Best-effort result text recovery from captured agent output."""

from __future__ import annotations

from collections.abc import Sequence

TRUNCATION_MARKER = "...\n"


def build_fallback_result(
    *,
    final_result: str | None,
    assistant_texts: Sequence[str],
    max_chars: int,
) -> str | None:
    """Pick the reported final text, else the joined narration, keeping the tail."""

    text = _normalize_plain_text(final_result or "")
    if not text:
        text = _normalize_plain_text("\n\n".join(assistant_texts))
    if not text:
        return None
    return truncate_keep_tail(text, max_chars)


def truncate_keep_tail(text: str, max_chars: int) -> str:
    """Drop the beginning of `text`; conclusions tend to come last."""

    if len(text) <= max_chars:
        return text
    if max_chars <= len(TRUNCATION_MARKER):
        return text[-max_chars:]
    return TRUNCATION_MARKER + text[-(max_chars - len(TRUNCATION_MARKER)) :]


def truncate_keep_head(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars]


def _normalize_plain_text(text: str) -> str:
    lines = [line.rstrip() for line in text.splitlines()]
    compact = "\n".join(line for line in lines if line.strip())
    return compact.strip()
