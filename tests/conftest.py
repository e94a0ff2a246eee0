"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest
from fakes import FakeChatClient

from ecosystem_queue.config import ProvisioningSettings, Settings
from ecosystem_queue.controllers import Runtime, build_executor_context
from ecosystem_queue.provisioning.repository import EcosystemRepository
from ecosystem_queue.queue.continuations import ContinuationScheduler
from ecosystem_queue.queue.executors import ExecutorContext
from ecosystem_queue.queue.governor import RateLimitGovernor
from ecosystem_queue.queue.repository import TaskRepository


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "queue.db"


@pytest.fixture()
def settings(db_path: Path) -> Settings:
    return Settings(
        db_path=db_path,
        provisioning=ProvisioningSettings(
            bot_usernames=("post_bot", "stats_bot", "reader_bot"),
            admin_bot_usernames=("post_bot",),
            read_only_bot_usernames=("reader_bot",),
        ),
    )


@pytest.fixture()
def runtime(settings: Settings):
    tasks = TaskRepository(settings.db_path)
    tasks.init_schema()
    ecosystems = EcosystemRepository(settings.db_path)
    yield Runtime(
        settings=settings,
        tasks=tasks,
        ecosystems=ecosystems,
        governor=RateLimitGovernor(tasks.engine),
        continuations=ContinuationScheduler(tasks.engine),
        trigger=None,
    )
    ecosystems.close()
    tasks.close()


@pytest.fixture()
def fake_client() -> FakeChatClient:
    return FakeChatClient()


@pytest.fixture()
def executor_context(runtime: Runtime, fake_client: FakeChatClient) -> ExecutorContext:
    return build_executor_context(runtime, client=fake_client, bot_client=fake_client)
