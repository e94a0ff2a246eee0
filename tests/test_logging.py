from __future__ import annotations

import logging

import allure
import pytest

from ecosystem_queue.logging_setup import configure_logging

pytestmark = [
    allure.epic("Operations"),
    allure.feature("Logging"),
]


def test_per_logger_overrides_are_applied(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(
        "ECOSYSTEM_QUEUE_LOG_LEVELS",
        "telethon=WARNING,ecosystem_queue.queue=DEBUG",
    )
    telethon = logging.getLogger("telethon")
    queue = logging.getLogger("ecosystem_queue.queue")
    original = (telethon.level, queue.level)

    try:
        configure_logging()

        assert telethon.level == logging.WARNING
        assert queue.level == logging.DEBUG
    finally:
        telethon.setLevel(original[0])
        queue.setLevel(original[1])


def test_malformed_overrides_are_ignored(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ECOSYSTEM_QUEUE_LOG_LEVELS", "no-equals-sign,,")
    root_handlers = list(logging.getLogger().handlers)

    configure_logging()

    assert logging.getLogger().handlers[: len(root_handlers)] == root_handlers
