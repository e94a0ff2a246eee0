"""Provisioning saga: one address in, one configured forum supergroup out."""

from __future__ import annotations

import logging
import secrets
import string
from collections.abc import Callable
from datetime import timedelta

from ecosystem_queue.config import ProvisioningSettings
from ecosystem_queue.errors import DuplicateEcosystemError, ProvisioningError
from ecosystem_queue.provisioning.models import EcosystemStatus, ProvisionResult
from ecosystem_queue.provisioning.repository import EcosystemRepository
from ecosystem_queue.provisioning.titles import build_about, build_display_title, derive_address
from ecosystem_queue.queue.continuations import ContinuationScheduler
from ecosystem_queue.queue.failure_classifier import extract_wait_seconds
from ecosystem_queue.queue.models import TaskType
from ecosystem_queue.queue.repository import TaskRepository
from ecosystem_queue.storage.common import utc_now
from ecosystem_queue.telegram.client import DEFAULT_MEMBER_POLICY, ChatClient, ChatHandle
from ecosystem_queue.telegram.resolver import EntityResolver

logger = logging.getLogger(__name__)

TOPIC_CHATTER = "🗣 Флудилка"
TOPIC_NEWS = "📢 Новости"
TOPIC_MARKETPLACE = "🛒 БАРАХОЛКА"
TOPIC_ADMIN_ELECTION = "‼️ ВЫБОР АДМИНА"
ECOSYSTEM_TOPICS: tuple[str, ...] = (
    TOPIC_CHATTER,
    TOPIC_NEWS,
    TOPIC_MARKETPLACE,
    TOPIC_ADMIN_ELECTION,
)

WELCOME_MESSAGE = (
    "Чтобы стать кандидатом в голосовании за выбор Админа Чата, "
    "оставьте здесь любое сообщение."
)
ADMIN_POLL_QUESTION = "Выбираем Админа"
ADMIN_POLL_OPTIONS: tuple[str, ...] = ("Вариант 1", "Вариант 2")

_SHORT_CODE_ALPHABET = string.ascii_letters + string.digits
_SHORT_CODE_ATTEMPTS = 10


class EcosystemProvisioner:
    """Creates and configures a neighborhood ecosystem for one address.

    Steps run strictly in order and each depends on the previous one. There is
    no compensation: when a later step fails, the record written right after
    chat creation stays in ``provisioning`` status for an operator to finish.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        client: ChatClient,
        resolver: EntityResolver,
        ecosystems: EcosystemRepository,
        tasks: TaskRepository,
        settings: ProvisioningSettings,
        continuations: ContinuationScheduler | None = None,
        code_factory: Callable[[int], str] | None = None,
    ) -> None:
        self.client = client
        self.resolver = resolver
        self.ecosystems = ecosystems
        self.tasks = tasks
        self.settings = settings
        self.continuations = continuations
        self._code_factory = code_factory or _random_code

    def provision(self, title: str, district: str | None = None) -> ProvisionResult:
        title = title.strip()
        district = district.strip() if district and district.strip() else None
        address = derive_address(title)
        display_title = build_display_title(address, district)

        existing = self.ecosystems.find_duplicate(
            title=title,
            address=address,
            display_title=display_title,
        )
        if existing is not None:
            message = f'Duplicate: chat for "{existing.title}" already exists'
            if existing.status == EcosystemStatus.PROVISIONING:
                message += (
                    f" (chat {existing.chat_id} is still in provisioning status; "
                    "finish its setup manually)"
                )
            raise DuplicateEcosystemError(message)

        logger.info("Creating supergroup %r", display_title)
        chat_id = str(
            self.client.create_supergroup(
                title=display_title,
                about=build_about(address, district),
            ),
        )
        self.ecosystems.upsert(
            chat_id=chat_id,
            title=title,
            display_title=display_title,
            district=district,
            status=EcosystemStatus.PROVISIONING,
        )
        handle = self.resolver.resolve(chat_id)

        self.client.toggle_forum(handle, enabled=True)
        self.client.set_default_permissions(handle, DEFAULT_MEMBER_POLICY)

        topic_ids: dict[str, int] = {}
        for topic_title in ECOSYSTEM_TOPICS:
            topic_ids[topic_title] = self.client.create_topic(handle, title=topic_title)
            logger.info("Created topic %r (%s) in %s", topic_title, topic_ids[topic_title], chat_id)
        marketplace_topic_id = topic_ids[TOPIC_MARKETPLACE]
        admin_topic_id = topic_ids[TOPIC_ADMIN_ELECTION]

        self._install_bots(handle, chat_id=chat_id)

        invite_link = self.client.export_invite_link(handle)
        if not invite_link:
            raise ProvisioningError(f"No invite link exported for chat {chat_id}")

        self.ecosystems.upsert(
            chat_id=chat_id,
            title=title,
            display_title=display_title,
            district=district,
            status=EcosystemStatus.NOT_CONNECTED,
            marketplace_topic_id=marketplace_topic_id,
            admin_topic_id=admin_topic_id,
            invite_link=invite_link,
            member_count=0,
        )
        code = self._unique_short_code()
        self.ecosystems.create_short_link(
            code=code,
            target_url=invite_link,
            reviewer_name=title,
            chat_id=chat_id,
        )

        follow_up_ids = self._schedule_follow_ups(chat_id=chat_id, admin_topic_id=admin_topic_id)
        logger.info(
            "Ecosystem %s provisioned for %r (invite %s, short code %s)",
            chat_id,
            title,
            invite_link,
            code,
        )
        return ProvisionResult(
            chat_id=chat_id,
            display_title=display_title,
            invite_link=invite_link,
            marketplace_topic_id=marketplace_topic_id,
            admin_topic_id=admin_topic_id,
            topic_ids=topic_ids,
            short_link_code=code,
            follow_up_task_ids=follow_up_ids,
        )

    def ensure_bot_admins(self, handle: ChatHandle, *, chat_id: str) -> None:
        """Re-grant admin rights to the configured admin bots."""

        for username in self.settings.admin_bot_usernames:
            self._tolerant(
                lambda username=username: self.client.promote_admin(
                    handle,
                    username=username,
                    rank=self.settings.admin_rank,
                ),
                action="promote",
                username=username,
                chat_id=chat_id,
            )

    def _install_bots(self, handle: ChatHandle, *, chat_id: str) -> None:
        for username in self.settings.bot_usernames:
            self._tolerant(
                lambda username=username: self.client.invite_member(handle, username=username),
                action="invite",
                username=username,
                chat_id=chat_id,
            )
        self.ensure_bot_admins(handle, chat_id=chat_id)
        for username in self.settings.read_only_bot_usernames:
            self._tolerant(
                lambda username=username: self.client.restrict_member(handle, username=username),
                action="restrict",
                username=username,
                chat_id=chat_id,
            )

    def _tolerant(
        self,
        step: Callable[[], object],
        *,
        action: str,
        username: str,
        chat_id: str,
    ) -> None:
        """Run a per-bot step; rate limits propagate, other failures are logged."""

        try:
            step()
        except Exception as error:
            if extract_wait_seconds(error) is not None:
                raise
            logger.warning("Bot %s failed for @%s in %s: %s", action, username, chat_id, error)

    def _schedule_follow_ups(self, *, chat_id: str, admin_topic_id: int) -> list[int]:
        run_at = utc_now() + timedelta(seconds=self.settings.follow_up_delay_seconds)
        welcome = self.tasks.enqueue(
            TaskType.SEND_MESSAGE,
            {"chat_id": chat_id, "topic_id": admin_topic_id, "message": WELCOME_MESSAGE},
            scheduled_at=run_at,
        )
        poll = self.tasks.enqueue(
            TaskType.CREATE_POLL,
            {
                "chat_id": chat_id,
                "topic_id": admin_topic_id,
                "question": ADMIN_POLL_QUESTION,
                "options": list(ADMIN_POLL_OPTIONS),
            },
            scheduled_at=run_at,
        )
        if self.continuations is not None:
            # Follow-ups land in another queue than the create_chat task that spawned them.
            for queue in dict.fromkeys((welcome.queue, poll.queue)):
                self.continuations.schedule(queue, run_at)
        return [welcome.task_id, poll.task_id]

    def _unique_short_code(self) -> str:
        for _ in range(_SHORT_CODE_ATTEMPTS):
            code = self._code_factory(self.settings.short_link_code_length)
            if not self.ecosystems.short_link_exists(code):
                return code
        raise ProvisioningError("Could not allocate a unique short link code")


def _random_code(length: int) -> str:
    return "".join(secrets.choice(_SHORT_CODE_ALPHABET) for _ in range(length))
