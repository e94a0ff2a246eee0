"""Chat platform interface consumed by the resolver, executors and provisioner."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Protocol

ChatHandle = Any


@dataclass(frozen=True, slots=True)
class ForumTopic:
    topic_id: int
    title: str
    closed: bool = False


@dataclass(frozen=True, slots=True)
class DialogEntry:
    """One recent conversation returned by a dialog listing."""

    entity_id: int
    title: str
    entity: ChatHandle


@dataclass(frozen=True, slots=True)
class UrlButton:
    text: str
    url: str


@dataclass(frozen=True, slots=True)
class PollSpec:
    """Non-quiz, single-choice poll with public voters."""

    question: str
    options: tuple[str, ...]
    public_voters: bool = True
    multiple_choice: bool = False
    quiz: bool = False


@dataclass(frozen=True, slots=True)
class PermissionPolicy:
    """Default member rights; True means the action is banned."""

    change_info: bool = True
    pin_messages: bool = True
    invite_users: bool = False
    send_messages: bool = False
    send_media: bool = False
    send_polls: bool = False
    embed_links: bool = False


DEFAULT_MEMBER_POLICY = PermissionPolicy()


class ChatClient(Protocol):
    """Protocol implemented by chat platform adapters.

    Methods raise the adapter's native errors; classification happens in
    :mod:`ecosystem_queue.queue.failure_classifier`.
    """

    def get_entity(self, chat_id: int | str) -> ChatHandle:
        """Resolve a chat id from the local session cache."""

    def iter_recent_dialogs(self, *, limit: int) -> Iterable[DialogEntry]:
        """List recent conversations, refreshing the local cache as a side effect."""

    def create_supergroup(self, *, title: str, about: str) -> int:
        """Create a megagroup and return its platform id."""

    def toggle_forum(self, handle: ChatHandle, *, enabled: bool) -> None: ...

    def set_default_permissions(self, handle: ChatHandle, policy: PermissionPolicy) -> None: ...

    def create_topic(self, handle: ChatHandle, *, title: str) -> int:
        """Create a forum topic and return the platform-assigned topic id."""

    def edit_topic(
        self,
        handle: ChatHandle,
        *,
        topic_id: int,
        title: str | None = None,
        closed: bool | None = None,
    ) -> None: ...

    def edit_chat_title(self, handle: ChatHandle, *, title: str) -> None: ...

    def list_topics(self, handle: ChatHandle) -> list[ForumTopic]: ...

    def send_message(
        self,
        handle: ChatHandle,
        *,
        text: str,
        topic_id: int | None = None,
        button: UrlButton | None = None,
    ) -> int:
        """Send a message and return its id."""

    def pin_message(self, handle: ChatHandle, *, message_id: int) -> None: ...

    def send_poll(self, handle: ChatHandle, *, topic_id: int | None, poll: PollSpec) -> int: ...

    def invite_member(self, handle: ChatHandle, *, username: str) -> None: ...

    def promote_admin(self, handle: ChatHandle, *, username: str, rank: str) -> None: ...

    def restrict_member(self, handle: ChatHandle, *, username: str) -> None:
        """Strip a member down to read-only rights."""

    def export_invite_link(self, handle: ChatHandle) -> str: ...
