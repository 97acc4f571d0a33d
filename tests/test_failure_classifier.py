from __future__ import annotations

import allure

from voice_listener.orchestrator.failure_classifier import (
    AGENT_FAILURE_CLASSIFIER_VERSION,
    classify_agent_failure,
)
from voice_listener.orchestrator.models import ErrorCategory

pytestmark = [
    allure.epic("Task Execution"),
    allure.feature("Failure Classification"),
]


def test_classifier_version_is_stable() -> None:
    assert AGENT_FAILURE_CLASSIFIER_VERSION == 1


def test_timeout_exit_code_wins_over_output() -> None:
    classified = classify_agent_failure(exit_code=124, stdout="", stderr="quota exceeded")

    assert classified.category == ErrorCategory.TIMEOUT
    assert classified.matched_rule == "timeout_exit_code"


def test_classifier_prefers_quota_over_permission() -> None:
    classified = classify_agent_failure(
        exit_code=1,
        stdout="",
        stderr="Usage limit reached; permission denied for new sessions",
    )

    assert classified.category == ErrorCategory.QUOTA
    assert classified.matched_pattern == "usage limit"


def test_classifier_maps_permission_errors() -> None:
    classified = classify_agent_failure(exit_code=1, stdout="", stderr="Invalid API key")

    assert classified.category == ErrorCategory.PERMISSION
    assert classified.matched_pattern == "invalid api key"


def test_classifier_reads_stdout_too() -> None:
    classified = classify_agent_failure(exit_code=2, stdout="Request timed out", stderr="")

    assert classified.category == ErrorCategory.TIMEOUT
    assert classified.matched_rule == "timeout_message"


def test_classifier_falls_back_by_exit_code_sign() -> None:
    positive = classify_agent_failure(exit_code=1, stdout="", stderr="boom")
    negative = classify_agent_failure(exit_code=-9, stdout="", stderr="")

    assert positive.category == ErrorCategory.AGENT_ERROR
    assert negative.category == ErrorCategory.UNKNOWN


def test_event_details_carry_diagnostics() -> None:
    details = classify_agent_failure(exit_code=1, stdout="", stderr="forbidden").to_event_details(
        exit_code=1,
    )

    assert details == {
        "classifier_version": 1,
        "exit_code": 1,
        "error_category": "permission",
        "matched_rule": "permission",
        "matched_pattern": "forbidden",
    }
