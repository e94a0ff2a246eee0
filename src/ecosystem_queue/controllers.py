"""Controllers for queue, dispatch, governor and ecosystem CLI commands."""

from __future__ import annotations

import hmac
import json
from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from ecosystem_queue.config import Settings
from ecosystem_queue.errors import SecretMismatchError
from ecosystem_queue.provisioning.models import EcosystemStatus
from ecosystem_queue.provisioning.provisioner import EcosystemProvisioner
from ecosystem_queue.provisioning.repository import EcosystemRepository
from ecosystem_queue.queue.continuations import ContinuationScheduler, HttpContinuationTrigger
from ecosystem_queue.queue.dispatcher import (
    CycleResult,
    PersistentDispatcher,
    SelfChainingDispatcher,
    TaskProcessor,
)
from ecosystem_queue.queue.executors import ExecutorContext
from ecosystem_queue.queue.governor import RateLimitGovernor
from ecosystem_queue.queue.models import QueueName, TaskStatus, TaskType
from ecosystem_queue.queue.repository import TaskRepository
from ecosystem_queue.queue.services import ChatRequest, QueueService, TopicStateAction
from ecosystem_queue.storage.common import utc_now
from ecosystem_queue.telegram.client import ChatClient
from ecosystem_queue.telegram.resolver import EntityResolver
from ecosystem_queue.telegram.telethon_client import TelethonChatClient


@dataclass(slots=True)
class QueueEnqueueCommand:
    """CLI input for a single raw enqueue."""

    db_path: Path | None
    task_type: str
    payload_json: str
    delay_seconds: int
    queue: str | None


@dataclass(slots=True)
class QueueListCommand:
    db_path: Path | None
    status: str | None
    queue: str | None
    limit: int


@dataclass(slots=True)
class QueueTaskCommand:
    """CLI input for inspect/delete of one task."""

    db_path: Path | None
    task_id: int


@dataclass(slots=True)
class QueueClearCommand:
    db_path: Path | None
    status: str
    queue: str | None


@dataclass(slots=True)
class QueueReportCommand:
    db_path: Path | None
    limit: int


@dataclass(slots=True)
class BatchChatsCommand:
    """CLI input for batch chat creation from a JSON file."""

    db_path: Path | None
    file_path: Path


@dataclass(slots=True)
class TopicActionCommand:
    db_path: Path | None
    chat_ids: tuple[str, ...]
    topic_name: str | None
    topic_id: int | None
    message: str | None
    pin: bool
    state_action: str | None


@dataclass(slots=True)
class CampaignRenameCommand:
    db_path: Path | None
    old_topic: str
    new_topic: str
    message: str


@dataclass(slots=True)
class DbCommand:
    """CLI input for commands that only need the database."""

    db_path: Path | None


@dataclass(slots=True)
class DispatchCycleCommand:
    db_path: Path | None
    queue: str
    force: bool
    secret: str | None


@dataclass(slots=True)
class DispatchContinuationsCommand:
    db_path: Path | None
    max_rounds: int


@dataclass(slots=True)
class DispatchWorkerCommand:
    db_path: Path | None
    max_cycles: int | None


@dataclass(slots=True)
class GovernorSetCommand:
    db_path: Path | None
    seconds: int
    reason: str | None


@dataclass(slots=True)
class EcosystemsListCommand:
    db_path: Path | None
    status: str | None


@dataclass(slots=True)
class Runtime:
    """Storage-backed collaborators shared by every command."""

    settings: Settings
    tasks: TaskRepository
    ecosystems: EcosystemRepository
    governor: RateLimitGovernor
    continuations: ContinuationScheduler
    trigger: HttpContinuationTrigger | None

    def queue_service(self) -> QueueService:
        return QueueService(
            tasks=self.tasks,
            ecosystems=self.ecosystems,
            governor=self.governor,
            continuations=self.continuations,
            trigger=self.trigger,
        )


ExecutorContextFactory = Callable[[Runtime], AbstractContextManager[ExecutorContext]]


@contextmanager
def telegram_executor_context(runtime: Runtime) -> Iterator[ExecutorContext]:
    """Connect Telethon sessions for the duration of a dispatch command."""

    settings = runtime.settings
    settings.validate_for_telegram()
    api_id = settings.telegram.api_id or 0
    client = TelethonChatClient.connect_user(
        api_id=api_id,
        api_hash=settings.telegram.api_hash,
        session=settings.telegram.session,
        connection_retries=settings.telegram.connection_retries,
    )
    bot_client = None
    try:
        if settings.telegram.bot_token:
            bot_client = TelethonChatClient.connect_bot(
                api_id=api_id,
                api_hash=settings.telegram.api_hash,
                bot_token=settings.telegram.bot_token,
                connection_retries=settings.telegram.connection_retries,
            )
        yield build_executor_context(runtime, client=client, bot_client=bot_client)
    finally:
        if bot_client is not None:
            bot_client.close()
        client.close()


def build_executor_context(
    runtime: Runtime,
    *,
    client: ChatClient,
    bot_client: ChatClient | None = None,
) -> ExecutorContext:
    resolver = EntityResolver(client, dialogs_limit=runtime.settings.telegram.dialogs_limit)
    provisioner = EcosystemProvisioner(
        client=client,
        resolver=resolver,
        ecosystems=runtime.ecosystems,
        tasks=runtime.tasks,
        settings=runtime.settings.provisioning,
        continuations=runtime.continuations,
    )
    return ExecutorContext(
        client=client,
        resolver=resolver,
        provisioner=provisioner,
        settings=runtime.settings,
        bot_client=bot_client,
    )


class QueueCliController:
    """Coordinates queue, dispatch, governor and ecosystem CLI operations."""

    def __init__(self, context_factory: ExecutorContextFactory | None = None) -> None:
        self.context_factory = context_factory or telegram_executor_context

    def enqueue(self, command: QueueEnqueueCommand) -> list[str]:
        task_type = TaskType(command.task_type.strip().lower())
        try:
            payload = json.loads(command.payload_json)
        except json.JSONDecodeError as error:
            raise ValueError(f"--payload is not valid JSON: {error}") from error
        if not isinstance(payload, dict):
            raise ValueError("--payload must be a JSON object.")
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            task = runtime.queue_service().enqueue(
                task_type,
                payload,
                scheduled_at=utc_now() + timedelta(seconds=max(0, command.delay_seconds)),
                queue=_parse_queue(command.queue),
            )
        return [
            "Task enqueued: "
            f"task_id={task.task_id} type={task.task_type.value} queue={task.queue.value} "
            f"scheduled_at={task.scheduled_at.isoformat()}",
        ]

    def list_tasks(self, command: QueueListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            tasks = runtime.tasks.list_tasks(
                status=_parse_status(command.status),
                queue=_parse_queue(command.queue),
                limit=command.limit,
            )

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} type={task.task_type.value} queue={task.queue.value} "
                f"status={task.status.value} attempt={task.attempt} "
                f"scheduled_at={task.scheduled_at.isoformat()} error={task.error or '-'}",
            )
        return lines

    def inspect_task(self, command: QueueTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            details = runtime.tasks.get_task_details(command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"Type: {task.task_type.value}",
            f"Queue: {task.queue.value}",
            f"Status: {task.status.value}",
            f"Outcome: {task.outcome_kind.value if task.outcome_kind else '-'}",
            f"Attempt: {task.attempt}",
            f"Scheduled at: {task.scheduled_at.isoformat()}",
            f"Error: {task.error or '-'}",
            f"Payload: {json.dumps(task.payload, ensure_ascii=False, sort_keys=True)}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def delete_task(self, command: QueueTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            deleted = runtime.tasks.delete_task(command.task_id)
        if not deleted:
            return [f"Task not found: {command.task_id}"]
        return [f"Task deleted: {command.task_id}"]

    def clear(self, command: QueueClearCommand) -> list[str]:
        status = TaskStatus(command.status.strip().lower())
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            removed = runtime.tasks.clear(status=status, queue=_parse_queue(command.queue))
        return [f"Removed {removed} {status.value} tasks"]

    def report(self, command: QueueReportCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            report = runtime.queue_service().queue_report(limit=command.limit)
            continuations = runtime.continuations.list_pending()

        counts = " ".join(f"{status.value}={count}" for status, count in report.counts.items())
        lines = [f"Tasks: {counts}"]
        if report.governor_wait_seconds > 0 and report.governor_wait_until is not None:
            lines.append(
                f"Global FloodWait: {report.governor_wait_seconds}s "
                f"(until {report.governor_wait_until.isoformat()})",
            )
        else:
            lines.append("Global FloodWait: none")
        lines.append(f"Postponed: {len(report.postponed)}")
        for postponed in report.postponed:
            task = postponed.task
            lines.append(
                f"  {task.task_id} type={task.task_type.value} in {postponed.wait_seconds}s "
                f"note={task.error or '-'}",
            )
        lines.append(f"Failed: {len(report.failed)}")
        for task in report.failed:
            lines.append(f"  {task.task_id} type={task.task_type.value} error={task.error}")
        lines.append(f"Pending continuations: {len(continuations)}")
        for continuation in continuations:
            lines.append(
                f"  {continuation.queue.value} at {continuation.run_at.isoformat()}",
            )
        return lines

    def batch_chats(self, command: BatchChatsCommand) -> list[str]:
        items = _read_chat_requests(command.file_path)
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            result = runtime.queue_service().enqueue_chat_batch(items)

        lines = [f"Enqueued: {len(result.enqueued)} skipped: {len(result.skipped)}"]
        for task in result.enqueued:
            lines.append(
                f"  {task.task_id} {task.payload.get('title')} at {task.scheduled_at.isoformat()}",
            )
        for title, reason in result.skipped:
            lines.append(f"  skipped {title!r}: {reason}")
        return lines

    def topic_action(self, command: TopicActionCommand) -> list[str]:
        state_action = (
            TopicStateAction(command.state_action.strip().lower())
            if command.state_action
            else None
        )
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            created = runtime.queue_service().enqueue_topic_action(
                command.chat_ids,
                topic_name=command.topic_name,
                topic_id=command.topic_id,
                message=command.message,
                pin=command.pin,
                state_action=state_action,
            )
        return [f"Enqueued {len(created)} topic tasks"]

    def campaign_rename(self, command: CampaignRenameCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            created = runtime.queue_service().enqueue_campaign_rename(
                old_topic=command.old_topic,
                new_topic=command.new_topic,
                message=command.message,
            )
        return [f"Enqueued {len(created)} campaign tasks"]

    def permission_refresh(self, command: DbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            created = runtime.queue_service().enqueue_permission_refresh()
        return [f"Enqueued {len(created)} permission checks"]

    def dispatch_cycle(self, command: DispatchCycleCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        _check_secret(settings, command.secret)
        queue = QueueName(command.queue.strip().lower())
        with _runtime(settings) as runtime, self.context_factory(runtime) as context:
            dispatcher = _self_chaining(runtime, context, queue)
            result = dispatcher.run_cycle(force=command.force)
        return [_render_cycle(result)]

    def dispatch_continuations(self, command: DispatchContinuationsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            if not runtime.continuations.has_due():
                return ["No due continuations"]
            with self.context_factory(runtime) as context:
                dispatchers = {
                    queue: _self_chaining(runtime, context, queue) for queue in QueueName
                }
                results = runtime.continuations.run_due_continuations(
                    dispatchers,
                    max_rounds=command.max_rounds,
                )
        return [f"Cycles: {len(results)}", *(_render_cycle(result) for result in results)]

    def dispatch_worker(self, command: DispatchWorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        dispatch = settings.dispatch
        with _runtime(settings) as runtime, self.context_factory(runtime) as context:
            dispatcher = PersistentDispatcher(
                processor=_processor(runtime, context),
                task_delays={
                    QueueName.CHAT_CREATION: dispatch.chat_task_delay_seconds,
                    QueueName.TOPIC_ACTIONS: dispatch.topic_task_delay_seconds,
                    QueueName.UNIFIED: dispatch.unified_task_delay_seconds,
                },
                idle_seconds=dispatch.idle_seconds,
                error_backoff_seconds=dispatch.error_backoff_seconds,
                stale_processing_seconds=dispatch.stale_processing_seconds,
            )
            summary = dispatcher.run_loop(max_cycles=command.max_cycles)
        return [
            "Worker summary: "
            f"cycles={summary.cycles} processed={summary.processed} "
            f"completed={summary.completed} skipped={summary.skipped} "
            f"failed={summary.failed} rate_limited={summary.rate_limited} "
            f"errors={summary.errors} recovered={summary.recovered}",
        ]

    def governor_status(self, command: DbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            wait_seconds = runtime.governor.get_wait_seconds()
            wait_until = runtime.governor.get_wait_until()
        if wait_seconds <= 0 or wait_until is None:
            return ["Global FloodWait: none"]
        return [f"Global FloodWait: {wait_seconds}s (until {wait_until.isoformat()})"]

    def governor_set(self, command: GovernorSetCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            deadline = runtime.governor.set_wait(
                command.seconds,
                reason=command.reason or "operator",
            )
        return [f"Global FloodWait until {deadline.isoformat()}"]

    def governor_clear(self, command: DbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            runtime.governor.clear()
        return ["Global FloodWait cleared"]

    def list_ecosystems(self, command: EcosystemsListCommand) -> list[str]:
        status = EcosystemStatus(command.status.strip().lower()) if command.status else None
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            ecosystems = runtime.ecosystems.list_ecosystems(status=status)
        lines = [f"Ecosystems: {len(ecosystems)}"]
        for ecosystem in ecosystems:
            lines.append(
                f"  {ecosystem.chat_id} {ecosystem.display_title} status={ecosystem.status.value} "
                f"marketplace={ecosystem.marketplace_topic_id or '-'} "
                f"admin={ecosystem.admin_topic_id or '-'} invite={ecosystem.invite_link or '-'}",
            )
        return lines


@contextmanager
def _runtime(settings: Settings) -> Iterator[Runtime]:
    tasks = TaskRepository(settings.db_path, sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    tasks.init_schema()
    ecosystems = EcosystemRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    trigger = (
        HttpContinuationTrigger(
            url=settings.dispatch.trigger_url,
            secret_key=settings.dispatch.secret_key,
            timeout_seconds=settings.dispatch.trigger_timeout_seconds,
        )
        if settings.dispatch.trigger_url
        else None
    )
    try:
        yield Runtime(
            settings=settings,
            tasks=tasks,
            ecosystems=ecosystems,
            governor=RateLimitGovernor(tasks.engine),
            continuations=ContinuationScheduler(tasks.engine),
            trigger=trigger,
        )
    finally:
        if trigger is not None:
            trigger.close()
        ecosystems.close()
        tasks.close()


def _processor(runtime: Runtime, context: ExecutorContext) -> TaskProcessor:
    return TaskProcessor(
        tasks=runtime.tasks,
        governor=runtime.governor,
        context=context,
        worker_id=runtime.settings.dispatch.worker_id,
    )


def _self_chaining(
    runtime: Runtime,
    context: ExecutorContext,
    queue: QueueName,
) -> SelfChainingDispatcher:
    return SelfChainingDispatcher(
        processor=_processor(runtime, context),
        continuations=runtime.continuations,
        queue=queue,
        inline_wait_limit_seconds=runtime.settings.dispatch.inline_wait_limit_seconds,
        stale_processing_seconds=runtime.settings.dispatch.stale_processing_seconds,
        trigger=runtime.trigger,
    )


def _render_cycle(result: CycleResult) -> str:
    parts = [f"Cycle: {result.status.value}", f"queue={result.queue.value}"]
    if result.task_id is not None:
        parts.append(f"task_id={result.task_id}")
    if result.task_type is not None:
        parts.append(f"type={result.task_type.value}")
    if result.outcome is not None:
        parts.append(f"outcome={type(result.outcome).__name__.lower()}")
    if result.wait_seconds is not None:
        parts.append(f"wait_seconds={result.wait_seconds}")
    return " ".join(parts)


def _check_secret(settings: Settings, provided: str | None) -> None:
    expected = settings.dispatch.secret_key
    if expected is None:
        return
    if provided is None or not hmac.compare_digest(provided, expected):
        raise SecretMismatchError("Unauthorized: secret key mismatch")


def _read_chat_requests(path: Path) -> list[ChatRequest]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("batch", [])
    if not isinstance(data, list) or not data:
        raise ValueError("Batch file must contain a non-empty JSON list of {title, district}.")
    requests: list[ChatRequest] = []
    for entry in data:
        if isinstance(entry, str):
            requests.append(ChatRequest(title=entry))
            continue
        if not isinstance(entry, dict) or not isinstance(entry.get("title"), str):
            raise ValueError(f"Invalid batch entry: {entry!r}")
        district = entry.get("district")
        requests.append(
            ChatRequest(title=entry["title"], district=str(district) if district else None),
        )
    return requests


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    return TaskStatus(value.strip().lower())


def _parse_queue(value: str | None) -> QueueName | None:
    if value is None:
        return None
    return QueueName(value.strip().lower())
