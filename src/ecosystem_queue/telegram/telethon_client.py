"""Telethon-backed chat client adapter."""

from __future__ import annotations

import logging
import secrets
from collections.abc import Iterator
from typing import Any

from telethon import Button, functions, types
from telethon.sessions import StringSession
from telethon.sync import TelegramClient

from ecosystem_queue.errors import ProvisioningError
from ecosystem_queue.telegram.client import (
    ChatHandle,
    DialogEntry,
    ForumTopic,
    PermissionPolicy,
    PollSpec,
    UrlButton,
)

logger = logging.getLogger(__name__)

_TOPICS_PAGE_SIZE = 100


class TelethonChatClient:
    """Synchronous adapter over ``telethon.sync.TelegramClient``.

    Platform errors (``FloodWaitError`` and RPC errors) are raised unchanged.
    """

    def __init__(self, client: TelegramClient) -> None:
        self.client = client

    @classmethod
    def connect_user(
        cls,
        *,
        api_id: int,
        api_hash: str,
        session: str,
        connection_retries: int = 5,
    ) -> TelethonChatClient:
        """Connect with a saved user session string."""

        client = TelegramClient(
            StringSession(session),
            api_id,
            api_hash,
            connection_retries=connection_retries,
        )
        client.connect()
        if not client.is_user_authorized():
            client.disconnect()
            raise ProvisioningError("Telegram session is not authorized, export a new one")
        logger.info("Connected Telegram user session")
        return cls(client)

    @classmethod
    def connect_bot(
        cls,
        *,
        api_id: int,
        api_hash: str,
        bot_token: str,
        connection_retries: int = 5,
    ) -> TelethonChatClient:
        """Connect a bot account; inline URL buttons are only available to bots."""

        client = TelegramClient(
            StringSession(),
            api_id,
            api_hash,
            connection_retries=connection_retries,
        )
        client.start(bot_token=bot_token)
        logger.info("Connected Telegram bot session")
        return cls(client)

    def close(self) -> None:
        self.client.disconnect()

    def get_entity(self, chat_id: int | str) -> ChatHandle:
        return self.client.get_entity(chat_id)

    def iter_recent_dialogs(self, *, limit: int) -> Iterator[DialogEntry]:
        for dialog in self.client.get_dialogs(limit=limit):
            yield DialogEntry(entity_id=dialog.id, title=dialog.name or "", entity=dialog.entity)

    def create_supergroup(self, *, title: str, about: str) -> int:
        updates = self.client(
            functions.channels.CreateChannelRequest(title=title, about=about, megagroup=True),
        )
        chats = getattr(updates, "chats", None) or []
        if not chats:
            raise ProvisioningError(f"CreateChannel returned no chat for {title!r}")
        # Marked form (-100 prefix) so the id is usable by both user and bot sessions.
        return int(f"-100{chats[0].id}")

    def toggle_forum(self, handle: ChatHandle, *, enabled: bool) -> None:
        self.client(functions.channels.ToggleForumRequest(channel=handle, enabled=enabled))

    def set_default_permissions(self, handle: ChatHandle, policy: PermissionPolicy) -> None:
        self.client(
            functions.messages.EditChatDefaultBannedRightsRequest(
                peer=handle,
                banned_rights=types.ChatBannedRights(
                    until_date=None,
                    change_info=policy.change_info,
                    pin_messages=policy.pin_messages,
                    invite_users=policy.invite_users,
                    send_messages=policy.send_messages,
                    send_media=policy.send_media,
                    send_polls=policy.send_polls,
                    embed_links=policy.embed_links,
                ),
            ),
        )

    def create_topic(self, handle: ChatHandle, *, title: str) -> int:
        updates = self.client(
            functions.channels.CreateForumTopicRequest(
                channel=handle,
                title=title,
                random_id=secrets.randbits(63),
            ),
        )
        topic_id = _created_topic_id(updates)
        if topic_id is None:
            raise ProvisioningError(f"CreateForumTopic returned no topic id for {title!r}")
        return topic_id

    def edit_topic(
        self,
        handle: ChatHandle,
        *,
        topic_id: int,
        title: str | None = None,
        closed: bool | None = None,
    ) -> None:
        self.client(
            functions.channels.EditForumTopicRequest(
                channel=handle,
                topic_id=topic_id,
                title=title,
                closed=closed,
            ),
        )

    def edit_chat_title(self, handle: ChatHandle, *, title: str) -> None:
        self.client(functions.channels.EditTitleRequest(channel=handle, title=title))

    def list_topics(self, handle: ChatHandle) -> list[ForumTopic]:
        result = self.client(
            functions.channels.GetForumTopicsRequest(
                channel=handle,
                offset_date=None,
                offset_id=0,
                offset_topic=0,
                limit=_TOPICS_PAGE_SIZE,
            ),
        )
        topics: list[ForumTopic] = []
        for topic in result.topics:
            if not isinstance(topic, types.ForumTopic):
                continue
            topics.append(
                ForumTopic(topic_id=topic.id, title=topic.title, closed=bool(topic.closed)),
            )
        return topics

    def send_message(
        self,
        handle: ChatHandle,
        *,
        text: str,
        topic_id: int | None = None,
        button: UrlButton | None = None,
    ) -> int:
        buttons = Button.url(button.text, button.url) if button is not None else None
        message = self.client.send_message(handle, text, reply_to=topic_id, buttons=buttons)
        return message.id

    def pin_message(self, handle: ChatHandle, *, message_id: int) -> None:
        self.client.pin_message(handle, message_id, notify=False)

    def send_poll(self, handle: ChatHandle, *, topic_id: int | None, poll: PollSpec) -> int:
        media = types.InputMediaPoll(
            poll=types.Poll(
                id=secrets.randbits(63),
                question=types.TextWithEntities(text=poll.question, entities=[]),
                answers=[
                    types.PollAnswer(
                        text=types.TextWithEntities(text=option, entities=[]),
                        option=bytes([index]),
                    )
                    for index, option in enumerate(poll.options)
                ],
                public_voters=poll.public_voters,
                multiple_choice=poll.multiple_choice,
                quiz=poll.quiz,
            ),
        )
        message = self.client.send_message(handle, file=media, reply_to=topic_id)
        return message.id

    def invite_member(self, handle: ChatHandle, *, username: str) -> None:
        self.client(functions.channels.InviteToChannelRequest(channel=handle, users=[username]))

    def promote_admin(self, handle: ChatHandle, *, username: str, rank: str) -> None:
        self.client.edit_admin(
            handle,
            username,
            change_info=True,
            post_messages=True,
            edit_messages=True,
            delete_messages=True,
            ban_users=True,
            invite_users=True,
            pin_messages=True,
            manage_call=True,
            manage_topics=True,
            add_admins=False,
            anonymous=False,
            title=rank,
        )

    def restrict_member(self, handle: ChatHandle, *, username: str) -> None:
        self.client.edit_permissions(
            handle,
            username,
            send_messages=False,
            send_media=False,
            send_stickers=False,
            send_gifs=False,
            send_games=False,
            send_inline=False,
            embed_link_previews=False,
            send_polls=False,
            change_info=False,
            invite_users=False,
            pin_messages=False,
        )

    def export_invite_link(self, handle: ChatHandle) -> str:
        invite = self.client(functions.messages.ExportChatInviteRequest(peer=handle))
        link = getattr(invite, "link", None)
        if not link:
            raise ProvisioningError("ExportChatInvite returned no link")
        return str(link)


def _created_topic_id(updates: Any) -> int | None:
    fallback: int | None = None
    for update in getattr(updates, "updates", None) or []:
        if isinstance(update, types.UpdateNewChannelMessage):
            message = update.message
            if isinstance(getattr(message, "action", None), types.MessageActionTopicCreate):
                return message.id
        if isinstance(update, types.UpdateMessageID) and fallback is None:
            fallback = update.id
    return fallback
