"""Domain models for the task queue: statuses, payload variants and outcomes."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from ecosystem_queue.errors import InvalidPayloadError

DEFAULT_PROMO_TOPIC_TITLE = "🎁 Колесо Фортуны"


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class QueueName(str, Enum):
    """Physical queues drained independently by the dispatchers."""

    CHAT_CREATION = "chat_creation"
    TOPIC_ACTIONS = "topic_actions"
    UNIFIED = "unified"


class TaskType(str, Enum):
    CREATE_CHAT = "create_chat"
    CREATE_PROMO = "create_promo"
    SEND_MESSAGE = "send_message"
    CREATE_POLL = "create_poll"
    CLOSE_TOPIC = "close_topic"
    OPEN_TOPIC = "open_topic"
    RENAME_TOPIC = "rename_topic"
    UPDATE_PERMISSIONS = "update_permissions"


class FailureClass(str, Enum):
    """Normalized classes of executor errors."""

    RATE_LIMITED = "rate_limited"
    ALREADY_DONE = "already_done"
    RESOLUTION_FAILED = "resolution_failed"
    INVALID_PAYLOAD = "invalid_payload"
    NON_RETRYABLE = "non_retryable"


class OutcomeKind(str, Enum):
    """How a task left the processing state, for operator reporting."""

    EXECUTED = "executed"
    SKIPPED = "skipped"
    RATE_LIMITED = "rate_limited"
    FAILED = "failed"


DEFAULT_QUEUE_BY_TYPE: dict[TaskType, QueueName] = {
    TaskType.CREATE_CHAT: QueueName.CHAT_CREATION,
    TaskType.SEND_MESSAGE: QueueName.TOPIC_ACTIONS,
    TaskType.CREATE_POLL: QueueName.TOPIC_ACTIONS,
    TaskType.CLOSE_TOPIC: QueueName.TOPIC_ACTIONS,
    TaskType.OPEN_TOPIC: QueueName.TOPIC_ACTIONS,
    TaskType.RENAME_TOPIC: QueueName.TOPIC_ACTIONS,
    TaskType.CREATE_PROMO: QueueName.UNIFIED,
    TaskType.UPDATE_PERMISSIONS: QueueName.UNIFIED,
}


# --- payload variants ------------------------------------------------------


@dataclass(frozen=True, slots=True)
class TopicRef:
    """Topic addressed either by numeric id or by exact title."""

    topic_id: int | None = None
    topic_name: str | None = None

    def describe(self) -> str:
        if self.topic_id is not None:
            return f"topic_id={self.topic_id}"
        return f"topic_name={self.topic_name!r}"


@dataclass(frozen=True, slots=True)
class CreateChatPayload:
    title: str
    district: str | None = None


@dataclass(frozen=True, slots=True)
class CreatePromoPayload:
    chat_id: str
    title: str = DEFAULT_PROMO_TOPIC_TITLE


@dataclass(frozen=True, slots=True)
class SendMessagePayload:
    chat_id: str
    topic: TopicRef
    message: str
    pin: bool = False


@dataclass(frozen=True, slots=True)
class CreatePollPayload:
    chat_id: str
    topic: TopicRef
    question: str
    options: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class TopicStatePayload:
    """Payload for close_topic / open_topic."""

    chat_id: str
    topic: TopicRef


@dataclass(frozen=True, slots=True)
class RenameTopicPayload:
    chat_id: str
    new_title: str
    topic: TopicRef | None = None


@dataclass(frozen=True, slots=True)
class UpdatePermissionsPayload:
    chat_id: str
    title: str | None = None


TaskPayload = (
    CreateChatPayload
    | CreatePromoPayload
    | SendMessagePayload
    | CreatePollPayload
    | TopicStatePayload
    | RenameTopicPayload
    | UpdatePermissionsPayload
)


def parse_payload(task_type: TaskType, data: Mapping[str, Any]) -> TaskPayload:  # noqa: C901
    """Build the typed payload variant for a task type from stored JSON."""

    if not isinstance(data, Mapping):
        raise InvalidPayloadError(f"Payload for {task_type.value} must be an object")

    match task_type:
        case TaskType.CREATE_CHAT:
            return CreateChatPayload(
                title=_require_str(data, task_type, "title").strip(),
                district=_optional_str(data, "district"),
            )
        case TaskType.CREATE_PROMO:
            return CreatePromoPayload(
                chat_id=_require_chat_id(data, task_type),
                title=_optional_str(data, "title") or DEFAULT_PROMO_TOPIC_TITLE,
            )
        case TaskType.SEND_MESSAGE:
            return SendMessagePayload(
                chat_id=_require_chat_id(data, task_type),
                topic=_require_topic(data, task_type),
                message=_require_str(data, task_type, "message"),
                pin=_optional_bool(data, task_type, "pin"),
            )
        case TaskType.CREATE_POLL:
            options = data.get("options")
            if (
                not isinstance(options, list | tuple)
                or not options
                or not all(isinstance(option, str) and option for option in options)
            ):
                raise InvalidPayloadError(
                    "create_poll requires a non-empty list of option strings",
                )
            return CreatePollPayload(
                chat_id=_require_chat_id(data, task_type),
                topic=_require_topic(data, task_type),
                question=_require_str(data, task_type, "question"),
                options=tuple(options),
            )
        case TaskType.CLOSE_TOPIC | TaskType.OPEN_TOPIC:
            return TopicStatePayload(
                chat_id=_require_chat_id(data, task_type),
                topic=_require_topic(data, task_type),
            )
        case TaskType.RENAME_TOPIC:
            new_title = _optional_str(data, "new_title", "newTitle", "title")
            if not new_title:
                raise InvalidPayloadError("rename_topic requires new_title")
            return RenameTopicPayload(
                chat_id=_require_chat_id(data, task_type),
                new_title=new_title,
                topic=_optional_topic(data),
            )
        case TaskType.UPDATE_PERMISSIONS:
            return UpdatePermissionsPayload(
                chat_id=_require_chat_id(data, task_type),
                title=_optional_str(data, "title"),
            )
    raise InvalidPayloadError(f"Unsupported task type: {task_type}")


def _optional_str(data: Mapping[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = data.get(key)
        if value is None:
            continue
        if not isinstance(value, str | int):
            raise InvalidPayloadError(f"Payload field {key!r} must be a string")
        text = str(value).strip()
        if text:
            return text
    return None


def _require_str(data: Mapping[str, Any], task_type: TaskType, key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise InvalidPayloadError(f"{task_type.value} requires a non-empty {key!r}")
    return value


def _optional_bool(data: Mapping[str, Any], task_type: TaskType, key: str) -> bool:
    value = data.get(key)
    if value is None:
        return False
    if not isinstance(value, bool):
        raise InvalidPayloadError(f"{task_type.value} field {key!r} must be true or false")
    return value


def _require_chat_id(data: Mapping[str, Any], task_type: TaskType) -> str:
    chat_id = _optional_str(data, "chat_id", "chatId")
    if chat_id is None:
        raise InvalidPayloadError(f"{task_type.value} requires chat_id")
    return chat_id


def _optional_topic(data: Mapping[str, Any]) -> TopicRef | None:
    raw_id = data.get("topic_id", data.get("topicId"))
    topic_id: int | None = None
    if raw_id is not None and raw_id != "":
        try:
            topic_id = int(raw_id)
        except (TypeError, ValueError) as error:
            raise InvalidPayloadError(f"topic_id must be numeric, got {raw_id!r}") from error
    topic_name = _optional_str(data, "topic_name", "topicName")
    if topic_id is None and topic_name is None:
        return None
    return TopicRef(topic_id=topic_id, topic_name=topic_name)


def _require_topic(data: Mapping[str, Any], task_type: TaskType) -> TopicRef:
    topic = _optional_topic(data)
    if topic is None:
        raise InvalidPayloadError(f"{task_type.value} requires topic_id or topic_name")
    return topic


# --- views and outcomes ----------------------------------------------------


@dataclass(slots=True)
class QueuedTaskView:
    """Readable task view for CLI and dispatcher logic."""

    task_id: int
    queue: QueueName
    task_type: TaskType
    payload: dict[str, Any]
    status: TaskStatus
    attempt: int
    worker_id: str | None
    error: str | None
    outcome_kind: OutcomeKind | None
    scheduled_at: datetime
    started_at: datetime | None
    finished_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class QueuedTaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: int
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class QueuedTaskDetails:
    task: QueuedTaskView
    events: list[QueuedTaskEventView]


@dataclass(frozen=True, slots=True)
class Completed:
    note: str | None = None


@dataclass(frozen=True, slots=True)
class Skipped:
    """Side effect already exists; terminal like a completion."""

    note: str


@dataclass(frozen=True, slots=True)
class RateLimited:
    wait_seconds: int
    error: str

    @property
    def annotation(self) -> str:
        return f"FloodWait: {self.wait_seconds}s"


@dataclass(frozen=True, slots=True)
class Failed:
    error: str
    failure_class: FailureClass = FailureClass.NON_RETRYABLE


TaskOutcome = Completed | Skipped | RateLimited | Failed
