from __future__ import annotations

import random
from datetime import timedelta

import allure
import pytest

from ecosystem_queue.controllers import Runtime
from ecosystem_queue.provisioning.models import EcosystemStatus
from ecosystem_queue.queue.models import QueueName, TaskStatus, TaskType
from ecosystem_queue.queue.services import (
    BATCH_STAGGER_MINUTES,
    CAMPAIGN_TOPIC_TITLE,
    ChatRequest,
    QueueService,
    TopicStateAction,
)
from ecosystem_queue.storage.common import utc_now

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Operator Enqueue Flows"),
]


def _service(runtime: Runtime, *, seed: int = 7) -> QueueService:
    return QueueService(
        tasks=runtime.tasks,
        ecosystems=runtime.ecosystems,
        governor=runtime.governor,
        continuations=runtime.continuations,
        rng=random.Random(seed),  # noqa: S311
    )


def _ecosystem(runtime: Runtime, chat_id: str, title: str) -> None:
    runtime.ecosystems.upsert(
        chat_id=chat_id,
        title=title,
        display_title=f"🏠 Соседи | {title}",
        district=None,
        status=EcosystemStatus.NOT_CONNECTED,
    )


def test_batch_staggers_create_chat_tasks(runtime: Runtime) -> None:
    before = utc_now()
    result = _service(runtime).enqueue_chat_batch(
        [ChatRequest("Lenina, 10"), ChatRequest("Mira 5", "Север"), ChatRequest("Gagarina 1")],
    )

    assert result.skipped == []
    first, second, third = result.enqueued
    assert first.queue == QueueName.CHAT_CREATION
    assert 1 <= (first.scheduled_at - before).total_seconds() <= 3
    low, high = BATCH_STAGGER_MINUTES
    for earlier, later in ((first, second), (second, third)):
        gap = later.scheduled_at - earlier.scheduled_at
        assert timedelta(minutes=low) <= gap <= timedelta(minutes=high)
    assert second.payload == {"title": "Mira 5", "district": "Север"}
    [continuation] = runtime.continuations.list_pending()
    assert continuation.run_at == first.scheduled_at


def test_batch_continues_after_latest_pending_task(runtime: Runtime) -> None:
    service = _service(runtime)
    existing = runtime.tasks.enqueue(
        TaskType.SEND_MESSAGE,
        {"chat_id": "-1001", "topic_id": 1, "message": "x"},
        scheduled_at=utc_now() + timedelta(hours=2),
    )

    [task] = service.enqueue_chat_batch([ChatRequest("Lenina, 10")]).enqueued

    gap = task.scheduled_at - existing.scheduled_at
    assert timedelta(minutes=3) <= gap <= timedelta(minutes=10)


def test_batch_skips_blank_provisioned_and_queued_titles(runtime: Runtime) -> None:
    _ecosystem(runtime, "-1001", "Lenina, 10")
    service = _service(runtime)
    service.enqueue_chat_batch([ChatRequest("Mira 5")])

    result = service.enqueue_chat_batch(
        [ChatRequest("  "), ChatRequest("10, Lenina"), ChatRequest("Mira 5"), ChatRequest("Ok 1")],
    )

    assert [task.payload["title"] for task in result.enqueued] == ["Ok 1"]
    reasons = dict(result.skipped)
    assert reasons["  "] == "empty title"
    assert reasons["10, Lenina"].startswith("already provisioned as")
    assert reasons["Mira 5"] == "already queued"


def test_topic_action_enqueues_message_then_state_change(runtime: Runtime) -> None:
    created = _service(runtime).enqueue_topic_action(
        ["-1001", "-1002"],
        topic_name="📢 Новости",
        message="Собрание в 19:00",
        pin=True,
        state_action=TopicStateAction.CLOSE,
    )

    assert [(task.task_type, task.payload["chat_id"]) for task in created] == [
        (TaskType.SEND_MESSAGE, "-1001"),
        (TaskType.CLOSE_TOPIC, "-1001"),
        (TaskType.SEND_MESSAGE, "-1002"),
        (TaskType.CLOSE_TOPIC, "-1002"),
    ]
    assert created[0].payload["pin"] is True
    assert created[1].payload == {"chat_id": "-1001", "topic_name": "📢 Новости"}


def test_topic_action_validation(runtime: Runtime) -> None:
    service = _service(runtime)

    with pytest.raises(ValueError, match="topic name or topic id"):
        service.enqueue_topic_action(["-1001"], message="hi")
    with pytest.raises(ValueError, match="Nothing to do"):
        service.enqueue_topic_action(["-1001"], topic_id=3)


def test_campaign_rename_interleaves_rename_and_message(runtime: Runtime) -> None:
    _ecosystem(runtime, "-1001", "A 1")
    _ecosystem(runtime, "-1002", "B 2")

    created = _service(runtime).enqueue_campaign_rename()

    assert [task.task_type for task in created] == [
        TaskType.RENAME_TOPIC,
        TaskType.SEND_MESSAGE,
        TaskType.RENAME_TOPIC,
        TaskType.SEND_MESSAGE,
    ]
    base = created[0].scheduled_at
    offsets = [(task.scheduled_at - base).total_seconds() for task in created]
    assert [round(offset) for offset in offsets] == [0, 1, 2, 3]
    assert created[1].payload["topic_name"] == CAMPAIGN_TOPIC_TITLE


def test_permission_refresh_spaces_tasks(runtime: Runtime) -> None:
    _ecosystem(runtime, "-1001", "A 1")
    _ecosystem(runtime, "-1002", "B 2")

    created = _service(runtime).enqueue_permission_refresh()

    assert [task.queue for task in created] == [QueueName.UNIFIED, QueueName.UNIFIED]
    assert created[0].payload == {"chat_id": "-1001", "title": "🏠 Соседи | A 1"}
    gap = created[1].scheduled_at - created[0].scheduled_at
    assert gap == timedelta(seconds=2)


def test_queue_report(runtime: Runtime) -> None:
    runtime.tasks.enqueue(
        TaskType.SEND_MESSAGE,
        {"chat_id": "-1001", "topic_id": 1, "message": "x"},
        scheduled_at=utc_now() + timedelta(minutes=5),
    )
    failing = runtime.tasks.enqueue(TaskType.UPDATE_PERMISSIONS, {"chat_id": "-1002"})
    runtime.tasks.claim_next(QueueName.UNIFIED, worker_id="w1")
    runtime.tasks.fail(failing.task_id, error="CHAT_ADMIN_REQUIRED")
    runtime.governor.set_wait(90)

    report = _service(runtime).queue_report()

    assert report.counts[TaskStatus.PENDING] == 1
    assert report.counts[TaskStatus.FAILED] == 1
    assert [task.error for task in report.failed] == ["CHAT_ADMIN_REQUIRED"]
    [postponed] = report.postponed
    assert 290 <= postponed.wait_seconds <= 300
    assert 85 <= report.governor_wait_seconds <= 90
