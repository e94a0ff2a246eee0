"""Deterministic classification of chat-platform errors for dispatch policy."""

from __future__ import annotations

import re
from dataclasses import dataclass

from ecosystem_queue.errors import (
    DuplicateEcosystemError,
    EntityNotFound,
    InvalidPayloadError,
    TopicNotFound,
)
from ecosystem_queue.queue.models import FailureClass

FAILURE_CLASSIFIER_VERSION = 1
DEFAULT_FLOOD_WAIT_SECONDS = 60

_WAIT_SECONDS_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"flood_wait_(\d+)"),
    re.compile(r"slowmode_wait_(\d+)"),
    re.compile(r"a wait of (\d+) seconds"),
    re.compile(r"retry after (\d+)"),
)
_FLOOD_MARKERS: tuple[str, ...] = (
    "flood_wait",
    "floodwait",
    "too many requests",
)
_ALREADY_DONE_PATTERNS: tuple[str, ...] = (
    "already exists",
    "duplicate",
    "user_already_participant",
    "topic_not_modified",
    "chat_not_modified",
    "message_not_modified",
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None
    wait_seconds: int | None = None


def classify_failure(error: BaseException) -> FailureClassification:  # noqa: PLR0911
    """Classify an executor error into rate-limited, already-done or hard failure."""

    if isinstance(error, InvalidPayloadError):
        return FailureClassification(
            failure_class=FailureClass.INVALID_PAYLOAD,
            reason_code="invalid_payload",
            matched_rule="invalid_payload",
            matched_pattern=None,
        )
    if isinstance(error, DuplicateEcosystemError):
        return FailureClassification(
            failure_class=FailureClass.ALREADY_DONE,
            reason_code="duplicate_ecosystem",
            matched_rule="duplicate_ecosystem",
            matched_pattern=None,
        )
    if isinstance(error, EntityNotFound | TopicNotFound):
        return FailureClassification(
            failure_class=FailureClass.RESOLUTION_FAILED,
            reason_code=(
                "entity_not_found" if isinstance(error, EntityNotFound) else "topic_not_found"
            ),
            matched_rule="resolution_failed",
            matched_pattern=None,
        )

    wait_seconds = extract_wait_seconds(error)
    if wait_seconds is not None:
        return FailureClassification(
            failure_class=FailureClass.RATE_LIMITED,
            reason_code="flood_wait",
            matched_rule="rate_limited",
            matched_pattern=None,
            wait_seconds=wait_seconds,
        )

    haystack = str(error).lower()
    pattern = _first_match(haystack, _ALREADY_DONE_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.ALREADY_DONE,
            reason_code="already_done",
            matched_rule="already_done",
            matched_pattern=pattern,
        )

    return FailureClassification(
        failure_class=FailureClass.NON_RETRYABLE,
        reason_code="non_retryable",
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def extract_wait_seconds(error: BaseException) -> int | None:
    """Wait duration carried by a rate-limit error, or None for other errors.

    Telethon's ``FloodWaitError`` exposes ``seconds``; other clients only put the
    duration in the message text.
    """

    seconds = getattr(error, "seconds", None)
    if isinstance(seconds, int) and not isinstance(seconds, bool) and seconds > 0:
        return seconds

    haystack = str(error).lower()
    for pattern in _WAIT_SECONDS_PATTERNS:
        match = pattern.search(haystack)
        if match is not None:
            return max(1, int(match.group(1)))
    if _first_match(haystack, _FLOOD_MARKERS) is not None:
        return DEFAULT_FLOOD_WAIT_SECONDS
    return None


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
