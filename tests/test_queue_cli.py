from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner
from fakes import FakeChatClient

from ecosystem_queue import main
from ecosystem_queue.controllers import Runtime, build_executor_context
from ecosystem_queue.queue.executors import ExecutorContext

pytestmark = [
    allure.epic("Operations"),
    allure.feature("CLI"),
]

CHAT_ID = -1001234


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "ECOSYSTEM_QUEUE_SECRET_KEY",
        "APP_SECRET_KEY",
        "ECOSYSTEM_QUEUE_TRIGGER_SECRET",
        "ECOSYSTEM_QUEUE_TRIGGER_URL",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def fake_platform(monkeypatch: pytest.MonkeyPatch) -> FakeChatClient:
    client = FakeChatClient()
    client.add_chat(CHAT_ID, "Home")

    @contextmanager
    def _factory(runtime: Runtime) -> Iterator[ExecutorContext]:
        yield build_executor_context(runtime, client=client, bot_client=client)

    monkeypatch.setattr(main.CONTROLLER, "context_factory", _factory)
    return client


def _invoke(args: list[str]) -> str:
    result = CliRunner().invoke(main.ecosystem_queue, args)
    assert result.exit_code == 0, result.output
    return result.output


def test_enqueue_list_inspect_and_delete(db_path: Path) -> None:
    payload = json.dumps({"chat_id": str(CHAT_ID), "topic_id": 3, "message": "hi"})

    enqueued = _invoke(
        ["queue", "enqueue", "send_message", "--payload", payload, "--db-path", str(db_path)],
    )
    assert "Task enqueued: task_id=1 type=send_message queue=topic_actions" in enqueued

    listed = _invoke(["queue", "list", "--db-path", str(db_path)])
    assert "Tasks: 1" in listed
    assert "status=pending" in listed

    inspected = _invoke(["queue", "inspect", "1", "--db-path", str(db_path)])
    assert "Type: send_message" in inspected
    assert "enqueued - -> pending" in inspected

    assert "Task deleted: 1" in _invoke(["queue", "delete", "1", "--db-path", str(db_path)])
    assert "Task not found: 1" in _invoke(["queue", "delete", "1", "--db-path", str(db_path)])


def test_enqueue_rejects_non_object_payload(db_path: Path) -> None:
    result = CliRunner().invoke(
        main.ecosystem_queue,
        ["queue", "enqueue", "send_message", "--payload", "[1]", "--db-path", str(db_path)],
    )

    assert result.exit_code != 0
    assert "must be a JSON object" in result.output


def test_batch_chats_from_json_file(db_path: Path, tmp_path: Path) -> None:
    batch = tmp_path / "batch.json"
    batch.write_text(
        json.dumps(
            {"batch": [{"title": "Lenina, 10", "district": "Центр"}, {"title": ""}, "Mira 5"]},
            ensure_ascii=False,
        ),
        encoding="utf-8",
    )

    output = _invoke(["queue", "batch-chats", str(batch), "--db-path", str(db_path)])

    assert "Enqueued: 2 skipped: 1" in output
    assert "empty title" in output


def test_dispatch_cycle_runs_one_task(db_path: Path, fake_platform: FakeChatClient) -> None:
    payload = json.dumps({"chat_id": str(CHAT_ID), "topic_id": 3, "message": "hi"})
    _invoke(["queue", "enqueue", "send_message", "--payload", payload, "--db-path", str(db_path)])

    output = _invoke(
        ["dispatch", "cycle", "--queue", "topic_actions", "--db-path", str(db_path)],
    )

    assert "Cycle: processed queue=topic_actions task_id=1 type=send_message" in output
    assert "outcome=completed" in output
    assert [call["text"] for call in fake_platform.called("send_message")] == ["hi"]

    continuations = _invoke(["dispatch", "continuations", "--db-path", str(db_path)])
    assert "Cycles: 1" in continuations
    assert "Cycle: idle queue=topic_actions" in continuations
    assert "No due continuations" in _invoke(
        ["dispatch", "continuations", "--db-path", str(db_path)],
    )


def test_dispatch_cycle_requires_configured_secret(
    db_path: Path,
    fake_platform: FakeChatClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("ECOSYSTEM_QUEUE_SECRET_KEY", "s3cret")

    rejected = CliRunner().invoke(
        main.ecosystem_queue,
        ["dispatch", "cycle", "--db-path", str(db_path), "--secret", "wrong"],
    )
    accepted = CliRunner().invoke(
        main.ecosystem_queue,
        ["dispatch", "cycle", "--db-path", str(db_path)],
        env={"ECOSYSTEM_QUEUE_TRIGGER_SECRET": "s3cret"},
    )

    assert rejected.exit_code != 0
    assert "Unauthorized: secret key mismatch" in rejected.output
    assert accepted.exit_code == 0, accepted.output
    assert "Cycle: idle queue=unified" in accepted.output
    assert fake_platform.calls == []


def test_dispatch_worker_drains_and_reports(db_path: Path, fake_platform: FakeChatClient) -> None:
    _invoke(
        [
            "queue",
            "enqueue",
            "update_permissions",
            "--payload",
            json.dumps({"chat_id": str(CHAT_ID)}),
            "--db-path",
            str(db_path),
        ],
    )

    output = _invoke(["dispatch", "worker", "--max-cycles", "1", "--db-path", str(db_path)])

    assert "cycles=1 processed=1 completed=1" in output
    assert fake_platform.called("set_default_permissions")


def test_governor_commands(db_path: Path) -> None:
    assert "Global FloodWait: none" in _invoke(["governor", "status", "--db-path", str(db_path)])

    _invoke(["governor", "set", "120", "--reason", "manual", "--db-path", str(db_path)])
    status = _invoke(["governor", "status", "--db-path", str(db_path)])
    assert "Global FloodWait: 1" in status

    _invoke(["governor", "clear", "--db-path", str(db_path)])
    assert "Global FloodWait: none" in _invoke(["governor", "status", "--db-path", str(db_path)])


def test_report_clear_and_ecosystems(db_path: Path) -> None:
    report = _invoke(["queue", "report", "--db-path", str(db_path)])
    assert "Tasks: pending=0 processing=0 completed=0 failed=0" in report
    assert "Pending continuations: 0" in report
    assert "Removed 0 failed tasks" in _invoke(["queue", "clear", "--db-path", str(db_path)])
    assert "Ecosystems: 0" in _invoke(["ecosystems", "list", "--db-path", str(db_path)])


def test_topic_action_requires_something_to_do(db_path: Path) -> None:
    result = CliRunner().invoke(
        main.ecosystem_queue,
        [
            "queue",
            "topic-action",
            "--chat-id",
            "-1001",
            "--topic-id",
            "3",
            "--db-path",
            str(db_path),
        ],
    )

    assert result.exit_code != 0
    assert "Nothing to do" in result.output


def test_enqueued_task_is_reachable_from_continuations(
    db_path: Path,
    fake_platform: FakeChatClient,
) -> None:
    payload = json.dumps({"chat_id": str(CHAT_ID), "topic_id": 3, "message": "hi"})
    _invoke(["queue", "enqueue", "send_message", "--payload", payload, "--db-path", str(db_path)])

    report = _invoke(["queue", "report", "--db-path", str(db_path)])
    output = _invoke(["dispatch", "continuations", "--db-path", str(db_path)])

    assert "Pending continuations: 1" in report
    assert "topic_actions at" in report
    assert "Cycle: processed queue=topic_actions task_id=1 type=send_message" in output
    assert [call["text"] for call in fake_platform.called("send_message")] == ["hi"]
