"""Task queue, rate-limit governor, continuations and ecosystem tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "queued_tasks",
        sa.Column("task_id", sa.Integer(), nullable=False),
        sa.Column("queue", sa.String(), nullable=False),
        sa.Column("task_type", sa.String(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("outcome_kind", sa.String(), nullable=True),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index(
        "idx_queued_tasks_claim",
        "queued_tasks",
        ["queue", "status", "scheduled_at", "created_at"],
        unique=False,
    )
    op.create_index("ix_queued_tasks_queue", "queued_tasks", ["queue"], unique=False)
    op.create_index("ix_queued_tasks_task_type", "queued_tasks", ["task_type"], unique=False)
    op.create_index("ix_queued_tasks_status", "queued_tasks", ["status"], unique=False)
    op.create_index("ix_queued_tasks_worker_id", "queued_tasks", ["worker_id"], unique=False)
    op.create_index(
        "ix_queued_tasks_outcome_kind",
        "queued_tasks",
        ["outcome_kind"],
        unique=False,
    )

    op.create_table(
        "queued_task_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["queued_tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_queued_task_events_task_time",
        "queued_task_events",
        ["task_id", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_queued_task_events_task_id",
        "queued_task_events",
        ["task_id"],
        unique=False,
    )
    op.create_index(
        "ix_queued_task_events_event_type",
        "queued_task_events",
        ["event_type"],
        unique=False,
    )

    op.create_table(
        "rate_limit_state",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("wait_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "dispatch_continuations",
        sa.Column("continuation_id", sa.Integer(), nullable=False),
        sa.Column("queue", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("continuation_id"),
    )
    op.create_index(
        "idx_dispatch_continuations_due",
        "dispatch_continuations",
        ["status", "run_at"],
        unique=False,
    )
    op.create_index(
        "ix_dispatch_continuations_queue",
        "dispatch_continuations",
        ["queue"],
        unique=False,
    )
    op.create_index(
        "ix_dispatch_continuations_status",
        "dispatch_continuations",
        ["status"],
        unique=False,
    )

    op.create_table(
        "ecosystems",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("chat_id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("display_title", sa.String(), nullable=False),
        sa.Column("district", sa.String(), nullable=True),
        sa.Column("marketplace_topic_id", sa.Integer(), nullable=True),
        sa.Column("admin_topic_id", sa.Integer(), nullable=True),
        sa.Column("invite_link", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("member_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_updated", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_ecosystems_chat_id", "ecosystems", ["chat_id"], unique=True)
    op.create_index("ix_ecosystems_title", "ecosystems", ["title"], unique=False)
    op.create_index(
        "ix_ecosystems_display_title",
        "ecosystems",
        ["display_title"],
        unique=False,
    )
    op.create_index("ix_ecosystems_status", "ecosystems", ["status"], unique=False)

    op.create_table(
        "short_links",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("target_url", sa.String(), nullable=False),
        sa.Column("reviewer_name", sa.String(), nullable=True),
        sa.Column("chat_id", sa.String(), nullable=True),
        sa.Column("clicks_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_short_links_code", "short_links", ["code"], unique=True)
    op.create_index(
        "ix_short_links_reviewer_name",
        "short_links",
        ["reviewer_name"],
        unique=False,
    )
    op.create_index("ix_short_links_chat_id", "short_links", ["chat_id"], unique=False)


def downgrade() -> None:
    op.drop_table("short_links")
    op.drop_table("ecosystems")
    op.drop_table("dispatch_continuations")
    op.drop_table("rate_limit_state")
    op.drop_table("queued_task_events")
    op.drop_table("queued_tasks")
