"""Deterministic agent failure classification into the task error taxonomy."""

from __future__ import annotations

from dataclasses import dataclass

from voice_listener.orchestrator.models import ErrorCategory

AGENT_FAILURE_CLASSIFIER_VERSION = 1

TIMEOUT_EXIT_CODES: tuple[int, ...] = (124,)

_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
    "deadline exceeded",
)
_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "usage limit",
    "rate limit",
    "too many requests",
    "429",
    "credit balance",
    "billing",
    "insufficient",
)
_PERMISSION_PATTERNS: tuple[str, ...] = (
    "permission denied",
    "unauthorized",
    "forbidden",
    "invalid api key",
    "authentication",
    "not logged in",
    "eacces",
    "operation not permitted",
)


@dataclass(slots=True)
class AgentFailureClassification:
    """Normalized failure classification result."""

    category: ErrorCategory
    matched_rule: str
    matched_pattern: str | None

    def to_event_details(self, *, exit_code: int | None) -> dict[str, object]:
        """Serialize classifier diagnostics for task events."""

        return {
            "classifier_version": AGENT_FAILURE_CLASSIFIER_VERSION,
            "exit_code": exit_code,
            "error_category": self.category.value,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_agent_failure(
    *,
    exit_code: int,
    stdout: str,
    stderr: str,
) -> AgentFailureClassification:
    """Classify a non-zero agent exit from its exit code and output."""

    if exit_code in TIMEOUT_EXIT_CODES:
        return AgentFailureClassification(
            category=ErrorCategory.TIMEOUT,
            matched_rule="timeout_exit_code",
            matched_pattern=None,
        )

    haystack = _normalize_text(stdout=stdout, stderr=stderr)

    pattern = _first_match(haystack, _QUOTA_PATTERNS)
    if pattern is not None:
        return AgentFailureClassification(
            category=ErrorCategory.QUOTA,
            matched_rule="quota",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _PERMISSION_PATTERNS)
    if pattern is not None:
        return AgentFailureClassification(
            category=ErrorCategory.PERMISSION,
            matched_rule="permission",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _TIMEOUT_PATTERNS)
    if pattern is not None:
        return AgentFailureClassification(
            category=ErrorCategory.TIMEOUT,
            matched_rule="timeout_message",
            matched_pattern=pattern,
        )

    if exit_code > 0:
        return AgentFailureClassification(
            category=ErrorCategory.AGENT_ERROR,
            matched_rule="fallback_agent_error",
            matched_pattern=None,
        )

    # Negative exit codes mean the process died from a signal we did not send.
    return AgentFailureClassification(
        category=ErrorCategory.UNKNOWN,
        matched_rule="fallback_unknown",
        matched_pattern=None,
    )


def _normalize_text(*, stdout: str, stderr: str) -> str:
    return f"{stderr}\n{stdout}".lower()


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
