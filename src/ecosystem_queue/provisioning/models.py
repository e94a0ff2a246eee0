"""Ecosystem records and provisioning results."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class EcosystemStatus(str, Enum):
    PROVISIONING = "provisioning"
    NOT_CONNECTED = "not_connected"
    CONNECTED = "connected"


@dataclass(frozen=True, slots=True)
class Address:
    """Street and house number derived from a free-form address title."""

    street: str
    house: str = ""


@dataclass(slots=True)
class EcosystemView:
    chat_id: str
    title: str
    display_title: str
    district: str | None
    marketplace_topic_id: int | None
    admin_topic_id: int | None
    invite_link: str | None
    status: EcosystemStatus
    member_count: int
    created_at: datetime
    last_updated: datetime


@dataclass(frozen=True, slots=True)
class DuplicateMatch:
    """An existing ecosystem (or reviewed short link) for the same address."""

    title: str
    chat_id: str | None = None
    status: EcosystemStatus | None = None


@dataclass(slots=True)
class ShortLinkView:
    code: str
    target_url: str
    reviewer_name: str | None
    chat_id: str | None
    clicks_count: int
    created_at: datetime


@dataclass(slots=True)
class ProvisionResult:
    """Everything the saga created for one address."""

    chat_id: str
    display_title: str
    invite_link: str
    marketplace_topic_id: int
    admin_topic_id: int
    topic_ids: dict[str, int]
    short_link_code: str
    follow_up_task_ids: list[int]
