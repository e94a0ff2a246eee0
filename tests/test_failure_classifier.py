from __future__ import annotations

import allure
import pytest

from ecosystem_queue.errors import (
    DuplicateEcosystemError,
    EntityNotFound,
    InvalidPayloadError,
    TopicNotFound,
)
from ecosystem_queue.queue.failure_classifier import (
    DEFAULT_FLOOD_WAIT_SECONDS,
    classify_failure,
    extract_wait_seconds,
)
from ecosystem_queue.queue.models import FailureClass
from fakes import FakeFloodWaitError

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Failure Classification"),
]


def test_flood_wait_attribute_wins() -> None:
    result = classify_failure(FakeFloodWaitError(45))

    assert result.failure_class == FailureClass.RATE_LIMITED
    assert result.wait_seconds == 45


@pytest.mark.parametrize(
    ("message", "expected"),
    [
        ("FLOOD_WAIT_120", 120),
        ("420 SLOWMODE_WAIT_30", 30),
        ("Too Many Requests: retry after 17", 17),
        ("FloodWaitError without a number", DEFAULT_FLOOD_WAIT_SECONDS),
    ],
)
def test_wait_seconds_are_parsed_from_message(message: str, expected: int) -> None:
    assert extract_wait_seconds(RuntimeError(message)) == expected
    assert classify_failure(RuntimeError(message)).failure_class == FailureClass.RATE_LIMITED


def test_boolean_seconds_attribute_is_ignored() -> None:
    error = RuntimeError("plain error")
    error.seconds = True  # type: ignore[attr-defined]

    assert extract_wait_seconds(error) is None


@pytest.mark.parametrize(
    "message",
    [
        "USER_ALREADY_PARTICIPANT",
        "TOPIC_NOT_MODIFIED",
        "The chat title already exists",
    ],
)
def test_already_done_errors_are_skipped(message: str) -> None:
    result = classify_failure(RuntimeError(message))

    assert result.failure_class == FailureClass.ALREADY_DONE
    assert result.matched_pattern is not None


def test_domain_errors_have_fixed_classes() -> None:
    assert classify_failure(InvalidPayloadError("bad")).failure_class == (
        FailureClass.INVALID_PAYLOAD
    )
    assert classify_failure(DuplicateEcosystemError("dup")).failure_class == (
        FailureClass.ALREADY_DONE
    )
    entity = classify_failure(EntityNotFound("-1001"))
    topic = classify_failure(TopicNotFound("News"))
    assert entity.failure_class == FailureClass.RESOLUTION_FAILED
    assert entity.reason_code == "entity_not_found"
    assert topic.reason_code == "topic_not_found"


def test_everything_else_is_a_hard_failure() -> None:
    result = classify_failure(RuntimeError("CHAT_ADMIN_REQUIRED"))

    assert result.failure_class == FailureClass.NON_RETRYABLE
    assert result.matched_rule == "fallback_non_retryable"
