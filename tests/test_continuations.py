from __future__ import annotations

from datetime import timedelta

import allure
import httpx
import pytest
from fakes import FakeChatClient
from sqlalchemy import update as sa_update
from sqlmodel import Session, col

from ecosystem_queue.controllers import Runtime, build_executor_context
from ecosystem_queue.queue.continuations import (
    SECRET_HEADER,
    ContinuationStatus,
    HttpContinuationTrigger,
)
from ecosystem_queue.queue.dispatcher import CycleStatus, SelfChainingDispatcher, TaskProcessor
from ecosystem_queue.queue.executors import ExecutorContext
from ecosystem_queue.queue.models import QueueName, TaskStatus, TaskType
from ecosystem_queue.storage.common import to_db_datetime, utc_now
from ecosystem_queue.storage.sqlmodel_models import QueuedTask

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Continuations"),
]

CHAT_ID = -1001234


def _dispatchers(
    runtime: Runtime,
    context: ExecutorContext,
    trigger: HttpContinuationTrigger | None = None,
) -> dict[QueueName, SelfChainingDispatcher]:
    processor = TaskProcessor(
        tasks=runtime.tasks,
        governor=runtime.governor,
        context=context,
        worker_id="test-worker",
    )
    return {
        queue: SelfChainingDispatcher(
            processor=processor,
            continuations=runtime.continuations,
            queue=queue,
            trigger=trigger,
            sleep=lambda _seconds: None,
        )
        for queue in QueueName
    }


def test_schedule_keeps_one_pending_row_with_earliest_time(runtime: Runtime) -> None:
    now = utc_now()
    scheduler = runtime.continuations

    scheduler.schedule(QueueName.UNIFIED, now + timedelta(minutes=5))
    kept = scheduler.schedule(QueueName.UNIFIED, now + timedelta(minutes=10))
    moved = scheduler.schedule(QueueName.UNIFIED, now + timedelta(minutes=1))
    scheduler.schedule(QueueName.CHAT_CREATION, now + timedelta(minutes=2))

    assert kept == now + timedelta(minutes=5)
    assert moved == now + timedelta(minutes=1)
    pending = scheduler.list_pending()
    assert [(item.queue, item.run_at) for item in pending] == [
        (QueueName.UNIFIED, now + timedelta(minutes=1)),
        (QueueName.CHAT_CREATION, now + timedelta(minutes=2)),
    ]


def test_claim_due_takes_due_rows_once(runtime: Runtime) -> None:
    now = utc_now()
    scheduler = runtime.continuations
    scheduler.schedule(QueueName.UNIFIED, now - timedelta(seconds=1))
    scheduler.schedule(QueueName.TOPIC_ACTIONS, now + timedelta(minutes=1))

    assert scheduler.has_due(now=now) is True
    [claimed] = scheduler.claim_due(now=now)
    assert claimed.queue == QueueName.UNIFIED
    assert claimed.status == ContinuationStatus.CLAIMED
    assert scheduler.claim_due(now=now) == []
    assert scheduler.has_due(now=now) is False


def test_stale_claims_are_taken_again(runtime: Runtime) -> None:
    now = utc_now()
    scheduler = runtime.continuations
    scheduler.schedule(QueueName.UNIFIED, now - timedelta(seconds=1))
    scheduler.claim_due(now=now)

    later = now + scheduler.stale_claim_after + timedelta(seconds=1)

    assert scheduler.has_due(now=later) is True
    assert [item.queue for item in scheduler.claim_due(now=later)] == [QueueName.UNIFIED]


def test_run_due_continuations_processes_and_chains(
    runtime: Runtime,
    executor_context: ExecutorContext,
    fake_client: FakeChatClient,
) -> None:
    fake_client.add_chat(CHAT_ID)
    first = runtime.tasks.enqueue(TaskType.UPDATE_PERMISSIONS, {"chat_id": str(CHAT_ID)})
    second = runtime.tasks.enqueue(TaskType.UPDATE_PERMISSIONS, {"chat_id": str(CHAT_ID)})
    runtime.continuations.schedule(QueueName.UNIFIED, utc_now())

    results = runtime.continuations.run_due_continuations(
        _dispatchers(runtime, executor_context),
        max_rounds=5,
    )

    assert [result.status for result in results] == [
        CycleStatus.PROCESSED,
        CycleStatus.PROCESSED,
        CycleStatus.IDLE,
    ]
    for task_id in (first.task_id, second.task_id):
        task = runtime.tasks.get_task(task_id)
        assert task is not None and task.status == TaskStatus.COMPLETED
    assert runtime.continuations.list_pending() == []


def test_failed_cycle_leaves_a_due_continuation(
    runtime: Runtime,
    executor_context: ExecutorContext,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    runtime.continuations.schedule(QueueName.UNIFIED, utc_now())
    dispatchers = _dispatchers(runtime, executor_context)

    def _boom(**_: object) -> None:
        raise RuntimeError("handler died")

    monkeypatch.setattr(dispatchers[QueueName.UNIFIED], "run_cycle", _boom)

    with pytest.raises(RuntimeError, match="handler died"):
        runtime.continuations.run_due_continuations(dispatchers)

    [pending] = runtime.continuations.list_pending()
    assert pending.queue == QueueName.UNIFIED
    assert runtime.continuations.has_due() is True


def test_http_trigger_sends_secret_header_and_queue() -> None:
    seen: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"status": "ok"})

    trigger = HttpContinuationTrigger(
        url="https://example.com/dispatch",
        secret_key="s3cret",
        transport=httpx.MockTransport(_handler),
    )

    assert trigger.fire(QueueName.TOPIC_ACTIONS) is True
    trigger.close()

    [request] = seen
    assert request.headers[SECRET_HEADER] == "s3cret"
    assert request.url.params["queue"] == "topic_actions"


def test_http_trigger_failures_are_reported_not_raised() -> None:
    def _unauthorized(_: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": "Unauthorized"})

    def _broken(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    rejected = HttpContinuationTrigger(
        url="https://example.com/dispatch",
        secret_key=None,
        transport=httpx.MockTransport(_unauthorized),
    )
    unreachable = HttpContinuationTrigger(
        url="https://example.com/dispatch",
        secret_key=None,
        transport=httpx.MockTransport(_broken),
    )

    assert rejected.fire(QueueName.UNIFIED) is False
    assert unreachable.fire(QueueName.UNIFIED) is False
    rejected.close()
    unreachable.close()


def test_processed_cycle_fires_trigger_for_immediate_follow_up(
    runtime: Runtime,
    executor_context: ExecutorContext,
    fake_client: FakeChatClient,
) -> None:
    fake_client.add_chat(CHAT_ID)
    runtime.tasks.enqueue(TaskType.UPDATE_PERMISSIONS, {"chat_id": str(CHAT_ID)})
    fired: list[str] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        fired.append(request.url.params["queue"])
        return httpx.Response(200)

    trigger = HttpContinuationTrigger(
        url="https://example.com/dispatch",
        secret_key="s3cret",
        transport=httpx.MockTransport(_handler),
    )

    result = _dispatchers(runtime, executor_context, trigger)[QueueName.UNIFIED].run_cycle()
    trigger.close()

    assert result.status == CycleStatus.PROCESSED
    assert fired == ["unified"]


def test_create_chat_follow_ups_complete_through_continuations(
    runtime: Runtime,
    fake_client: FakeChatClient,
) -> None:
    runtime.settings.provisioning.follow_up_delay_seconds = 0
    context = build_executor_context(runtime, client=fake_client, bot_client=fake_client)
    runtime.queue_service().enqueue(TaskType.CREATE_CHAT, {"title": "Lenina, 10"})

    runtime.continuations.run_due_continuations(_dispatchers(runtime, context), max_rounds=6)

    tasks = runtime.tasks.list_tasks()
    assert sorted((task.task_type, task.queue, task.status) for task in tasks) == [
        (TaskType.CREATE_CHAT, QueueName.CHAT_CREATION, TaskStatus.COMPLETED),
        (TaskType.CREATE_POLL, QueueName.TOPIC_ACTIONS, TaskStatus.COMPLETED),
        (TaskType.SEND_MESSAGE, QueueName.TOPIC_ACTIONS, TaskStatus.COMPLETED),
    ]
    assert [call["poll"].question for call in fake_client.called("send_poll")] == [
        "Выбираем Админа",
    ]
    assert runtime.continuations.list_pending() == []


def test_continuation_recovers_task_left_processing_by_dead_handler(
    runtime: Runtime,
    executor_context: ExecutorContext,
    fake_client: FakeChatClient,
) -> None:
    fake_client.add_chat(CHAT_ID)
    task = runtime.tasks.enqueue(TaskType.UPDATE_PERMISSIONS, {"chat_id": str(CHAT_ID)})
    runtime.tasks.claim_next(QueueName.UNIFIED, worker_id="dead-handler")
    with Session(runtime.tasks.engine) as session:
        session.exec(
            sa_update(QueuedTask)
            .where(col(QueuedTask.task_id) == task.task_id)
            .values(started_at=to_db_datetime(utc_now() - timedelta(hours=2))),
        )
        session.commit()
    runtime.continuations.schedule(QueueName.UNIFIED, utc_now())

    results = runtime.continuations.run_due_continuations(
        _dispatchers(runtime, executor_context),
        max_rounds=3,
    )

    assert results[0].status == CycleStatus.PROCESSED
    assert results[0].task_id == task.task_id
    stored = runtime.tasks.get_task(task.task_id)
    assert stored is not None
    assert stored.status == TaskStatus.COMPLETED
    assert stored.attempt == 2
