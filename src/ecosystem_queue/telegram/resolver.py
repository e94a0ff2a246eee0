"""Chat id resolution with a single dialog-refresh fallback."""

from __future__ import annotations

import logging

from ecosystem_queue.errors import EntityNotFound
from ecosystem_queue.telegram.client import ChatClient, ChatHandle

logger = logging.getLogger(__name__)

CHANNEL_ID_PREFIX = "-100"

_CACHE_MISS_PATTERNS: tuple[str, ...] = (
    "could not find the input entity",
    "peeruser",
    "cannot find any entity",
    "no user has",
)


class EntityResolver:
    """Turns an opaque chat id into a handle usable by the chat client."""

    def __init__(self, client: ChatClient, *, dialogs_limit: int = 100) -> None:
        self.client = client
        self.dialogs_limit = dialogs_limit

    def resolve(self, chat_id: str | int) -> ChatHandle:
        """Resolve from the session cache, refreshing recent dialogs once on a miss."""

        chat_id_text = str(chat_id).strip()
        try:
            return self.client.get_entity(_lookup_key(chat_id_text))
        except (ValueError, KeyError) as error:
            cache_miss: Exception = error
        except Exception as error:
            if not _is_cache_miss(error):
                raise
            cache_miss = error

        logger.info(
            "Entity %s not found in cache (%s), fetching recent dialogs",
            chat_id_text,
            cache_miss,
        )
        candidates = _id_variants(chat_id_text)
        for dialog in self.client.iter_recent_dialogs(limit=self.dialogs_limit):
            if str(dialog.entity_id) in candidates:
                logger.info("Found entity via dialogs: %s (%s)", dialog.title, dialog.entity_id)
                return dialog.entity
        raise EntityNotFound(chat_id_text) from cache_miss


def bot_api_chat_id(chat_id: str | int) -> str:
    """Chat id in the ``-100``-prefixed form expected for supergroups by bot accounts."""

    text = str(chat_id).strip()
    if text.startswith("-") or not text.isdigit():
        return text
    return f"{CHANNEL_ID_PREFIX}{text}"


def _lookup_key(chat_id: str) -> int | str:
    digits = chat_id[1:] if chat_id.startswith("-") else chat_id
    if digits.isdigit():
        return int(chat_id)
    return chat_id


def _id_variants(chat_id: str) -> set[str]:
    variants = {chat_id}
    if chat_id.startswith(CHANNEL_ID_PREFIX):
        variants.add(chat_id[len(CHANNEL_ID_PREFIX) :])
    elif chat_id.startswith("-"):
        variants.add(chat_id[1:])
    else:
        variants.add(f"{CHANNEL_ID_PREFIX}{chat_id}")
    return variants


def _is_cache_miss(error: Exception) -> bool:
    message = str(error).lower()
    return any(pattern in message for pattern in _CACHE_MISS_PATTERNS)
