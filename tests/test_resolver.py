from __future__ import annotations

import allure
import pytest
from fakes import FakeChatClient

from ecosystem_queue.errors import EntityNotFound
from ecosystem_queue.telegram.resolver import EntityResolver, bot_api_chat_id

pytestmark = [
    allure.epic("Chat Platform"),
    allure.feature("Entity Resolution"),
]


def test_cached_entity_resolves_without_dialog_refresh() -> None:
    client = FakeChatClient()
    chat = client.add_chat(-1001234, "Home")

    assert EntityResolver(client).resolve("-1001234") is chat
    assert client.dialog_fetches == 0


def test_cache_miss_refreshes_dialogs_once() -> None:
    client = FakeChatClient()
    chat = client.add_chat(-1005555, "Home", cached=False)

    resolved = EntityResolver(client, dialogs_limit=20).resolve("-1005555")

    assert resolved is chat
    assert client.dialog_fetches == 1
    assert client.called("iter_recent_dialogs") == [{"limit": 20}]


def test_dialog_match_accepts_bare_id_for_marked_dialog() -> None:
    client = FakeChatClient()
    chat = client.add_chat(-1005555, "Home", cached=False)

    assert EntityResolver(client).resolve("5555") is chat


def test_dialog_match_accepts_marked_id_for_bare_dialog() -> None:
    client = FakeChatClient()
    chat = client.add_chat(5555, "Home", cached=False)

    assert EntityResolver(client).resolve("-1005555") is chat


def test_unknown_entity_raises_after_single_refresh() -> None:
    client = FakeChatClient()
    client.add_chat(-1001, "Unrelated", cached=False)

    with pytest.raises(EntityNotFound, match="dialogs refreshed") as excinfo:
        EntityResolver(client).resolve("-1009999")

    assert excinfo.value.chat_id == "-1009999"
    assert client.dialog_fetches == 1


def test_non_cache_errors_propagate_without_refresh() -> None:
    client = FakeChatClient()
    client.fail_next["get_entity"] = [ConnectionError("network down")]

    with pytest.raises(ConnectionError, match="network down"):
        EntityResolver(client).resolve("-1001")
    assert client.dialog_fetches == 0


def test_bot_api_chat_id_prefixes_bare_ids() -> None:
    assert bot_api_chat_id("12345") == "-10012345"
    assert bot_api_chat_id("-10012345") == "-10012345"
    assert bot_api_chat_id(-42) == "-42"
