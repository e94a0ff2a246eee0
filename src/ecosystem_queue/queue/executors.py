"""Task executors: one platform side effect per task type."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from ecosystem_queue.errors import ProvisioningError, TopicNotFound
from ecosystem_queue.queue.failure_classifier import classify_failure
from ecosystem_queue.queue.models import (
    Completed,
    CreateChatPayload,
    CreatePollPayload,
    CreatePromoPayload,
    Failed,
    FailureClass,
    QueuedTaskView,
    RateLimited,
    RenameTopicPayload,
    SendMessagePayload,
    Skipped,
    TaskOutcome,
    TaskType,
    TopicRef,
    TopicStatePayload,
    UpdatePermissionsPayload,
    parse_payload,
)
from ecosystem_queue.telegram.client import (
    DEFAULT_MEMBER_POLICY,
    ChatClient,
    ChatHandle,
    PollSpec,
    UrlButton,
)
from ecosystem_queue.telegram.resolver import EntityResolver, bot_api_chat_id

if TYPE_CHECKING:
    from ecosystem_queue.config import Settings
    from ecosystem_queue.provisioning.provisioner import EcosystemProvisioner

logger = logging.getLogger(__name__)

PROMO_MESSAGE = (
    "🎰 **КРУТИ КОЛЕСО ФОРТУНЫ КАЖДЫЙ ДЕНЬ**\n\n"
    "Нажми на кнопку ниже, чтобы испытать удачу и выиграть призы "
    "(iPhone, Ozon, WB, Dyson и другие)."
)
PROMO_BUTTON_TEXT = "🎡 КРУТИТЬ КОЛЕСО"


@dataclass(slots=True)
class ExecutorContext:
    """Collaborators available to executors. Executors never touch the queue store."""

    client: ChatClient
    resolver: EntityResolver
    provisioner: EcosystemProvisioner
    settings: Settings
    bot_client: ChatClient | None = None


Executor = Callable[[Any, ExecutorContext], "str | None"]


def execute_task(task: QueuedTaskView, context: ExecutorContext) -> TaskOutcome:
    """Run a claimed task and convert any error into a dispatch outcome."""

    try:
        payload = parse_payload(task.task_type, task.payload)
        note = EXECUTORS[task.task_type](payload, context)
    except Exception as error:  # noqa: BLE001
        return outcome_for_error(error)
    return Completed(note=note)


def outcome_for_error(error: BaseException) -> TaskOutcome:
    classification = classify_failure(error)
    message = str(error) or type(error).__name__
    match classification.failure_class:
        case FailureClass.RATE_LIMITED:
            return RateLimited(wait_seconds=classification.wait_seconds or 0, error=message)
        case FailureClass.ALREADY_DONE:
            return Skipped(note=message)
    return Failed(error=message, failure_class=classification.failure_class)


def resolve_topic_id(client: ChatClient, handle: ChatHandle, topic: TopicRef) -> int:
    """Topic id from the reference, looking titles up by exact match."""

    if topic.topic_id is not None:
        return topic.topic_id
    for candidate in client.list_topics(handle):
        if candidate.title == topic.topic_name:
            return candidate.topic_id
    raise TopicNotFound(topic.topic_name or "")


def run_send_message(payload: SendMessagePayload, context: ExecutorContext) -> str:
    handle = context.resolver.resolve(payload.chat_id)
    topic_id = resolve_topic_id(context.client, handle, payload.topic)
    message_id = context.client.send_message(handle, text=payload.message, topic_id=topic_id)
    if payload.pin:
        context.client.pin_message(handle, message_id=message_id)
    logger.info("Sent message %s to %s topic %s", message_id, payload.chat_id, topic_id)
    return f"message_id={message_id}"


def run_create_poll(payload: CreatePollPayload, context: ExecutorContext) -> str:
    handle = context.resolver.resolve(payload.chat_id)
    topic_id = resolve_topic_id(context.client, handle, payload.topic)
    message_id = context.client.send_poll(
        handle,
        topic_id=topic_id,
        poll=PollSpec(question=payload.question, options=payload.options),
    )
    logger.info("Posted poll %r to %s topic %s", payload.question, payload.chat_id, topic_id)
    return f"message_id={message_id}"


def run_close_topic(payload: TopicStatePayload, context: ExecutorContext) -> str:
    return _set_topic_closed(payload, context, closed=True)


def run_open_topic(payload: TopicStatePayload, context: ExecutorContext) -> str:
    return _set_topic_closed(payload, context, closed=False)


def _set_topic_closed(payload: TopicStatePayload, context: ExecutorContext, *, closed: bool) -> str:
    handle = context.resolver.resolve(payload.chat_id)
    topic_id = resolve_topic_id(context.client, handle, payload.topic)
    context.client.edit_topic(handle, topic_id=topic_id, closed=closed)
    state = "closed" if closed else "opened"
    logger.info("Topic %s %s in %s", topic_id, state, payload.chat_id)
    return f"topic_id={topic_id} {state}"


def run_rename_topic(payload: RenameTopicPayload, context: ExecutorContext) -> str:
    handle = context.resolver.resolve(payload.chat_id)
    if payload.topic is None:
        context.client.edit_chat_title(handle, title=payload.new_title)
        logger.info("Chat %s renamed to %r", payload.chat_id, payload.new_title)
        return "chat renamed"
    topic_id = resolve_topic_id(context.client, handle, payload.topic)
    context.client.edit_topic(handle, topic_id=topic_id, title=payload.new_title)
    logger.info("Topic %s in %s renamed to %r", topic_id, payload.chat_id, payload.new_title)
    return f"topic_id={topic_id} renamed"


def run_update_permissions(payload: UpdatePermissionsPayload, context: ExecutorContext) -> str:
    handle = context.resolver.resolve(payload.chat_id)
    context.client.set_default_permissions(handle, DEFAULT_MEMBER_POLICY)
    context.provisioner.ensure_bot_admins(handle, chat_id=payload.chat_id)
    logger.info("Permissions refreshed for %s (%s)", payload.chat_id, payload.title or "-")
    return "permissions refreshed"


def run_create_promo(payload: CreatePromoPayload, context: ExecutorContext) -> str:
    bot = context.bot_client
    if bot is None:
        raise ProvisioningError("Bot token missing for create_promo")
    handle = bot.get_entity(int(bot_api_chat_id(payload.chat_id)))
    topic_id = bot.create_topic(handle, title=payload.title)
    bot.send_message(
        handle,
        text=PROMO_MESSAGE,
        topic_id=topic_id,
        button=UrlButton(text=PROMO_BUTTON_TEXT, url=context.settings.provisioning.promo_url),
    )
    logger.info("Promo topic %s created in %s", topic_id, payload.chat_id)
    return f"topic_id={topic_id}"


def run_create_chat(payload: CreateChatPayload, context: ExecutorContext) -> str:
    result = context.provisioner.provision(payload.title, payload.district)
    return f"chat_id={result.chat_id} invite={result.invite_link}"


EXECUTORS: dict[TaskType, Executor] = {
    TaskType.CREATE_CHAT: run_create_chat,
    TaskType.CREATE_PROMO: run_create_promo,
    TaskType.SEND_MESSAGE: run_send_message,
    TaskType.CREATE_POLL: run_create_poll,
    TaskType.CLOSE_TOPIC: run_close_topic,
    TaskType.OPEN_TOPIC: run_open_topic,
    TaskType.RENAME_TOPIC: run_rename_topic,
    TaskType.UPDATE_PERMISSIONS: run_update_permissions,
}

if set(EXECUTORS) != set(TaskType):
    raise RuntimeError(f"Executor registry is missing {set(TaskType) - set(EXECUTORS)}")
