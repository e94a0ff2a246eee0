"""SQLModel ORM tables for the task queue, governor and ecosystems."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel

RATE_LIMIT_STATE_ID = 1


class QueuedTask(SQLModel, table=True):
    __tablename__ = "queued_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_queued_tasks_claim", "queue", "status", "scheduled_at", "created_at"),
    )

    task_id: int | None = Field(default=None, primary_key=True)
    queue: str = Field(index=True)
    task_type: str = Field(index=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    attempt: int = Field(default=0)
    worker_id: str | None = Field(default=None, index=True)
    error: str | None = Field(default=None, sa_column=Column(Text))
    outcome_kind: str | None = Field(default=None, index=True)
    scheduled_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QueuedTaskEvent(SQLModel, table=True):
    __tablename__ = "queued_task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_queued_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: int = Field(
        sa_column=Column(
            ForeignKey("queued_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = Field(default=None)
    status_to: str | None = Field(default=None)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class RateLimitState(SQLModel, table=True):
    __tablename__ = "rate_limit_state"  # type: ignore[bad-override]

    id: int = Field(default=RATE_LIMIT_STATE_ID, primary_key=True)
    wait_until: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    reason: str | None = Field(default=None, sa_column=Column(Text))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class DispatchContinuation(SQLModel, table=True):
    __tablename__ = "dispatch_continuations"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_dispatch_continuations_due", "status", "run_at"),)

    continuation_id: int | None = Field(default=None, primary_key=True)
    queue: str = Field(index=True)
    status: str = Field(index=True)
    run_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    claimed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Ecosystem(SQLModel, table=True):
    __tablename__ = "ecosystems"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    chat_id: str = Field(unique=True, index=True)
    title: str = Field(index=True)
    display_title: str = Field(index=True)
    district: str | None = None
    marketplace_topic_id: int | None = None
    admin_topic_id: int | None = None
    invite_link: str | None = None
    status: str = Field(index=True)
    member_count: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    last_updated: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ShortLink(SQLModel, table=True):
    __tablename__ = "short_links"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    code: str = Field(unique=True, index=True)
    target_url: str
    reviewer_name: str | None = Field(default=None, index=True)
    chat_id: str | None = Field(default=None, index=True)
    clicks_count: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
