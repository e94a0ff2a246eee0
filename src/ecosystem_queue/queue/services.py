"""Operator-facing enqueue operations and queue reporting."""

from __future__ import annotations

import logging
import random
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from ecosystem_queue.provisioning.provisioner import TOPIC_MARKETPLACE
from ecosystem_queue.provisioning.repository import EcosystemRepository
from ecosystem_queue.provisioning.titles import build_display_title, derive_address
from ecosystem_queue.queue.continuations import ContinuationScheduler, HttpContinuationTrigger
from ecosystem_queue.queue.governor import RateLimitGovernor
from ecosystem_queue.queue.models import (
    QueuedTaskView,
    QueueName,
    TaskStatus,
    TaskType,
)
from ecosystem_queue.queue.repository import TaskRepository
from ecosystem_queue.storage.common import utc_now

logger = logging.getLogger(__name__)

FIRST_BATCH_TASK_DELAY = timedelta(seconds=2)
BATCH_STAGGER_MINUTES = (3, 10)
CAMPAIGN_SPACING_SECONDS = 2
PERMISSION_REFRESH_SPACING_SECONDS = 2

CAMPAIGN_TOPIC_TITLE = "🛒 Скидки и Промокоды"
CAMPAIGN_MESSAGE = (
    "Промокод скидку 30% на канцелярию в Еноте, действует 24 часа, "
    "если кому то нужно, пишите в личку."
)


class TopicStateAction(str, Enum):
    CLOSE = "close"
    OPEN = "open"


@dataclass(frozen=True, slots=True)
class ChatRequest:
    title: str
    district: str | None = None


@dataclass(slots=True)
class BatchEnqueueResult:
    enqueued: list[QueuedTaskView] = field(default_factory=list)
    skipped: list[tuple[str, str]] = field(default_factory=list)


@dataclass(slots=True)
class PostponedTask:
    task: QueuedTaskView
    wait_seconds: int


@dataclass(slots=True)
class QueueReport:
    """Snapshot for operators: counts, failures with raw errors, postponed work."""

    counts: dict[TaskStatus, int]
    failed: list[QueuedTaskView]
    postponed: list[PostponedTask]
    governor_wait_seconds: int
    governor_wait_until: datetime | None


class QueueService:
    """Bulk enqueue flows driven from the operator console."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        tasks: TaskRepository,
        ecosystems: EcosystemRepository,
        governor: RateLimitGovernor,
        continuations: ContinuationScheduler | None = None,
        trigger: HttpContinuationTrigger | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.tasks = tasks
        self.ecosystems = ecosystems
        self.governor = governor
        self.continuations = continuations
        self.trigger = trigger
        self._random = rng or random.Random()  # noqa: S311

    def enqueue(
        self,
        task_type: TaskType,
        payload: dict[str, object],
        *,
        scheduled_at: datetime | None = None,
        queue: QueueName | None = None,
    ) -> QueuedTaskView:
        """Enqueue a single task and make sure its queue gets a dispatch cycle."""

        task = self.tasks.enqueue(task_type, payload, scheduled_at=scheduled_at, queue=queue)
        self._kick(task)
        return task

    def enqueue_chat_batch(self, items: Iterable[ChatRequest]) -> BatchEnqueueResult:
        """Schedule ``create_chat`` tasks spread out to stay clear of platform limits.

        The first task of an empty queue runs almost immediately; every further
        task lands 3 to 10 random minutes after the latest pending task.
        """

        result = BatchEnqueueResult()
        now = utc_now()
        latest = self.tasks.latest_pending_at()
        queue_was_empty = latest is None
        accumulator = max(latest, now) if latest is not None else now

        for item in items:
            title = item.title.strip()
            if not title:
                result.skipped.append((item.title, "empty title"))
                continue
            address = derive_address(title)
            existing = self.ecosystems.find_duplicate(
                title=title,
                address=address,
                display_title=build_display_title(address, item.district),
            )
            if existing is not None:
                result.skipped.append((title, f"already provisioned as {existing.title!r}"))
                continue
            if self.tasks.find_active_create_chat(title) is not None:
                result.skipped.append((title, "already queued"))
                continue

            if queue_was_empty and not result.enqueued:
                accumulator = now + FIRST_BATCH_TASK_DELAY
            else:
                accumulator += timedelta(minutes=self._random.randint(*BATCH_STAGGER_MINUTES))
            task = self.tasks.enqueue(
                TaskType.CREATE_CHAT,
                {"title": title, "district": item.district},
                scheduled_at=accumulator,
            )
            result.enqueued.append(task)

        if result.enqueued:
            logger.info(
                "Enqueued %s create_chat tasks, skipped %s",
                len(result.enqueued),
                len(result.skipped),
            )
            self._kick(result.enqueued[0])
        return result

    def enqueue_topic_action(  # noqa: PLR0913
        self,
        chat_ids: Sequence[str],
        *,
        topic_name: str | None = None,
        topic_id: int | None = None,
        message: str | None = None,
        pin: bool = False,
        state_action: TopicStateAction | None = None,
    ) -> list[QueuedTaskView]:
        """Per chat: a ``send_message`` when text is given, then a close/open when asked."""

        if topic_name is None and topic_id is None:
            raise ValueError("A topic name or topic id is required.")
        if not message and state_action is None:
            raise ValueError("Nothing to do: pass a message and/or a close/open action.")
        topic = {"topic_id": topic_id} if topic_id is not None else {"topic_name": topic_name}

        created: list[QueuedTaskView] = []
        for chat_id in chat_ids:
            if message:
                created.append(
                    self.tasks.enqueue(
                        TaskType.SEND_MESSAGE,
                        {"chat_id": chat_id, "message": message, "pin": pin, **topic},
                    ),
                )
            if state_action is not None:
                task_type = (
                    TaskType.OPEN_TOPIC
                    if state_action == TopicStateAction.OPEN
                    else TaskType.CLOSE_TOPIC
                )
                created.append(self.tasks.enqueue(task_type, {"chat_id": chat_id, **topic}))
        if created:
            self._kick(created[0])
        return created

    def enqueue_campaign_rename(
        self,
        *,
        old_topic: str = TOPIC_MARKETPLACE,
        new_topic: str = CAMPAIGN_TOPIC_TITLE,
        message: str = CAMPAIGN_MESSAGE,
    ) -> list[QueuedTaskView]:
        """Rename a topic in every ecosystem and post into it one second later."""

        now = utc_now()
        created: list[QueuedTaskView] = []
        for index, ecosystem in enumerate(self.ecosystems.list_ecosystems()):
            offset = index * CAMPAIGN_SPACING_SECONDS
            created.append(
                self.tasks.enqueue(
                    TaskType.RENAME_TOPIC,
                    {
                        "chat_id": ecosystem.chat_id,
                        "topic_name": old_topic,
                        "new_title": new_topic,
                    },
                    scheduled_at=now + timedelta(seconds=offset),
                ),
            )
            created.append(
                self.tasks.enqueue(
                    TaskType.SEND_MESSAGE,
                    {"chat_id": ecosystem.chat_id, "topic_name": new_topic, "message": message},
                    scheduled_at=now + timedelta(seconds=offset + 1),
                ),
            )
        if created:
            self._kick(created[0])
        return created

    def enqueue_permission_refresh(self) -> list[QueuedTaskView]:
        now = utc_now()
        created = [
            self.tasks.enqueue(
                TaskType.UPDATE_PERMISSIONS,
                {"chat_id": ecosystem.chat_id, "title": ecosystem.display_title},
                scheduled_at=now + timedelta(seconds=index * PERMISSION_REFRESH_SPACING_SECONDS),
            )
            for index, ecosystem in enumerate(self.ecosystems.list_ecosystems())
        ]
        if created:
            self._kick(created[0])
        return created

    def queue_report(self, *, limit: int = 50) -> QueueReport:
        now = utc_now()
        pending = self.tasks.list_tasks(status=TaskStatus.PENDING, limit=limit)
        postponed = [
            PostponedTask(task=task, wait_seconds=int((task.scheduled_at - now).total_seconds()))
            for task in pending
            if task.scheduled_at > now
        ]
        return QueueReport(
            counts=self.tasks.status_counts(),
            failed=self.tasks.list_tasks(status=TaskStatus.FAILED, limit=limit),
            postponed=postponed,
            governor_wait_seconds=self.governor.get_wait_seconds(now=now),
            governor_wait_until=self.governor.get_wait_until(),
        )

    def _kick(self, task: QueuedTaskView) -> None:
        """Make sure a self-chaining handler will look at the queue of ``task``."""

        if self.continuations is None:
            return
        self.continuations.schedule(task.queue, task.scheduled_at)
        if self.trigger is not None and task.scheduled_at <= utc_now():
            self.trigger.fire(task.queue)
