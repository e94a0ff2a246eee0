from __future__ import annotations

import allure
import pytest
from fakes import FakeChatClient, FakeFloodWaitError

from ecosystem_queue.controllers import Runtime
from ecosystem_queue.errors import DuplicateEcosystemError, EntityNotFound
from ecosystem_queue.provisioning.models import EcosystemStatus
from ecosystem_queue.provisioning.provisioner import (
    ADMIN_POLL_OPTIONS,
    ADMIN_POLL_QUESTION,
    ECOSYSTEM_TOPICS,
    TOPIC_ADMIN_ELECTION,
    TOPIC_MARKETPLACE,
    WELCOME_MESSAGE,
    EcosystemProvisioner,
)
from ecosystem_queue.queue.models import QueueName, TaskStatus, TaskType
from ecosystem_queue.telegram.client import DEFAULT_MEMBER_POLICY
from ecosystem_queue.telegram.resolver import EntityResolver

pytestmark = [
    allure.epic("Ecosystem Provisioning"),
    allure.feature("Provisioning Saga"),
]


def _provisioner(runtime: Runtime, client: FakeChatClient) -> EcosystemProvisioner:
    codes = iter(["abc123", "abc123", "xyz789"])
    return EcosystemProvisioner(
        client=client,
        resolver=EntityResolver(client),
        ecosystems=runtime.ecosystems,
        tasks=runtime.tasks,
        settings=runtime.settings.provisioning,
        code_factory=lambda _length: next(codes),
    )


def test_provision_builds_forum_with_topics_record_and_follow_ups(
    runtime: Runtime,
    fake_client: FakeChatClient,
) -> None:
    result = _provisioner(runtime, fake_client).provision("Lenina, 10", "Центральный")

    assert result.display_title == "🏠 Соседи д. 10 | Lenina | Центральный"
    [created] = fake_client.called("create_supergroup")
    assert created["about"] == "Чат соседей дома 10 по улице Lenina, Центральный"
    assert fake_client.called("toggle_forum")[0]["enabled"] is True
    assert fake_client.called("set_default_permissions")[0]["policy"] == DEFAULT_MEMBER_POLICY
    assert [call["title"] for call in fake_client.called("create_topic")] == list(
        ECOSYSTEM_TOPICS,
    )
    assert result.marketplace_topic_id == result.topic_ids[TOPIC_MARKETPLACE]
    assert result.admin_topic_id == result.topic_ids[TOPIC_ADMIN_ELECTION]

    assert [call["username"] for call in fake_client.called("invite_member")] == [
        "post_bot",
        "stats_bot",
        "reader_bot",
    ]
    [promoted] = fake_client.called("promote_admin")
    assert promoted == {"chat": int(result.chat_id), "username": "post_bot", "rank": "Bot Admin"}
    assert [call["username"] for call in fake_client.called("restrict_member")] == ["reader_bot"]

    ecosystem = runtime.ecosystems.get(result.chat_id)
    assert ecosystem is not None
    assert ecosystem.status == EcosystemStatus.NOT_CONNECTED
    assert ecosystem.invite_link == result.invite_link
    assert ecosystem.marketplace_topic_id == result.marketplace_topic_id
    assert ecosystem.admin_topic_id == result.admin_topic_id
    assert ecosystem.member_count == 0

    assert result.short_link_code == "abc123"
    [link] = runtime.ecosystems.list_short_links(chat_id=result.chat_id)
    assert link.target_url == result.invite_link
    assert link.reviewer_name == "Lenina, 10"

    welcome, poll = (runtime.tasks.get_task(task_id) for task_id in result.follow_up_task_ids)
    assert welcome is not None and poll is not None
    assert welcome.task_type == TaskType.SEND_MESSAGE
    assert welcome.queue == QueueName.TOPIC_ACTIONS
    assert welcome.payload["message"] == WELCOME_MESSAGE
    assert welcome.payload["topic_id"] == result.admin_topic_id
    assert poll.task_type == TaskType.CREATE_POLL
    assert poll.payload["question"] == ADMIN_POLL_QUESTION
    assert poll.payload["options"] == list(ADMIN_POLL_OPTIONS)
    assert welcome.status == TaskStatus.PENDING
    assert welcome.scheduled_at == poll.scheduled_at


def test_second_ecosystem_gets_a_fresh_short_code(
    runtime: Runtime,
    fake_client: FakeChatClient,
) -> None:
    provisioner = _provisioner(runtime, fake_client)

    first = provisioner.provision("Lenina, 10")
    second = provisioner.provision("Mira 5")

    assert first.short_link_code == "abc123"
    assert second.short_link_code == "xyz789"
    assert second.display_title == "🏠 Соседи д. 5 | Mira"


@pytest.mark.parametrize("again", ["Lenina, 10", "10, Lenina", "lenina 10"])
def test_duplicate_address_is_rejected_before_any_platform_call(
    runtime: Runtime,
    fake_client: FakeChatClient,
    again: str,
) -> None:
    provisioner = _provisioner(runtime, fake_client)
    provisioner.provision("Lenina, 10")
    calls_before = len(fake_client.calls)

    with pytest.raises(DuplicateEcosystemError, match="Duplicate: chat for"):
        provisioner.provision(again)
    assert len(fake_client.calls) == calls_before


def test_house_number_matches_whole_word_only(
    runtime: Runtime,
    fake_client: FakeChatClient,
) -> None:
    provisioner = _provisioner(runtime, fake_client)
    provisioner.provision("Lenina, 12")

    result = provisioner.provision("Lenina, 2")

    assert result.display_title == "🏠 Соседи д. 2 | Lenina"


def test_bot_failures_are_tolerated(runtime: Runtime, fake_client: FakeChatClient) -> None:
    fake_client.fail_next["invite_member"] = [RuntimeError("USER_PRIVACY_RESTRICTED")]
    fake_client.fail_next["promote_admin"] = [RuntimeError("CHAT_ADMIN_REQUIRED")]

    result = _provisioner(runtime, fake_client).provision("Mira 5")

    ecosystem = runtime.ecosystems.get(result.chat_id)
    assert ecosystem is not None
    assert ecosystem.status == EcosystemStatus.NOT_CONNECTED
    assert len(fake_client.called("invite_member")) == 3


def test_rate_limit_during_bot_setup_propagates(
    runtime: Runtime,
    fake_client: FakeChatClient,
) -> None:
    fake_client.fail_next["invite_member"] = [FakeFloodWaitError(300)]

    with pytest.raises(FakeFloodWaitError):
        _provisioner(runtime, fake_client).provision("Mira 5")


def test_failure_after_creation_leaves_provisioning_record(
    runtime: Runtime,
    fake_client: FakeChatClient,
) -> None:
    fake_client.fail_next["create_topic"] = [RuntimeError("CHANNEL_FORUM_MISSING")]

    with pytest.raises(RuntimeError, match="CHANNEL_FORUM_MISSING"):
        _provisioner(runtime, fake_client).provision("Mira 5")

    [ecosystem] = runtime.ecosystems.list_ecosystems()
    assert ecosystem.status == EcosystemStatus.PROVISIONING
    assert ecosystem.invite_link is None
    assert runtime.tasks.list_tasks() == []
    assert runtime.ecosystems.list_short_links() == []


def test_unresolvable_new_chat_stops_the_saga(runtime: Runtime) -> None:
    class _Invisible(FakeChatClient):
        def iter_recent_dialogs(self, *, limit: int) -> list:
            return []

    client = _Invisible()

    with pytest.raises(EntityNotFound):
        _provisioner(runtime, client).provision("Mira 5")
    assert client.called("toggle_forum") == []
    [ecosystem] = runtime.ecosystems.list_ecosystems()
    assert ecosystem.status == EcosystemStatus.PROVISIONING


def test_follow_ups_schedule_a_continuation_for_their_queue(
    runtime: Runtime,
    fake_client: FakeChatClient,
) -> None:
    provisioner = EcosystemProvisioner(
        client=fake_client,
        resolver=EntityResolver(fake_client),
        ecosystems=runtime.ecosystems,
        tasks=runtime.tasks,
        settings=runtime.settings.provisioning,
        continuations=runtime.continuations,
    )

    result = provisioner.provision("Mira 5")

    welcome = runtime.tasks.get_task(result.follow_up_task_ids[0])
    assert welcome is not None
    [continuation] = runtime.continuations.list_pending()
    assert continuation.queue == welcome.queue == QueueName.TOPIC_ACTIONS
    assert continuation.run_at == welcome.scheduled_at


def test_retry_of_half_built_ecosystem_names_the_unfinished_chat(
    runtime: Runtime,
    fake_client: FakeChatClient,
) -> None:
    provisioner = _provisioner(runtime, fake_client)
    fake_client.fail_next["create_topic"] = [FakeFloodWaitError(30)]
    with pytest.raises(FakeFloodWaitError):
        provisioner.provision("Mira 5")
    [ecosystem] = runtime.ecosystems.list_ecosystems()

    with pytest.raises(DuplicateEcosystemError, match="still in provisioning status") as error:
        provisioner.provision("Mira 5")

    assert ecosystem.chat_id in str(error.value)
    assert len(fake_client.called("create_supergroup")) == 1
