"""Persistent task store with an atomic claim protocol."""

from __future__ import annotations

import json
from collections.abc import Mapping
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from ecosystem_queue.queue.models import (
    DEFAULT_QUEUE_BY_TYPE,
    Completed,
    Failed,
    OutcomeKind,
    QueuedTaskDetails,
    QueuedTaskEventView,
    QueuedTaskView,
    QueueName,
    RateLimited,
    Skipped,
    TaskOutcome,
    TaskStatus,
    TaskType,
)
from ecosystem_queue.storage.alembic_runner import upgrade_head
from ecosystem_queue.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from ecosystem_queue.storage.sqlmodel_models import QueuedTask, QueuedTaskEvent


class TaskRepository:
    """Queue persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def enqueue(
        self,
        task_type: TaskType,
        payload: Mapping[str, Any],
        *,
        scheduled_at: datetime | None = None,
        queue: QueueName | None = None,
    ) -> QueuedTaskView:
        """Create a pending task. Payload shape is checked by the executor, not here."""

        now = utc_now()
        target_queue = queue or DEFAULT_QUEUE_BY_TYPE[task_type]
        with Session(self.engine) as session:
            row = QueuedTask(
                queue=target_queue.value,
                task_type=task_type.value,
                payload_json=json.dumps(dict(payload), ensure_ascii=False, sort_keys=True),
                status=TaskStatus.PENDING.value,
                attempt=0,
                scheduled_at=to_db_datetime(scheduled_at or now),
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.flush()
            if row.task_id is None:
                raise RuntimeError("Inserted task row has no id")
            self._add_event(
                session=session,
                task_id=row.task_id,
                event_type="enqueued",
                status_from=None,
                status_to=TaskStatus.PENDING,
                details={"queue": target_queue.value, "task_type": task_type.value},
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def claim_next(
        self,
        queue: QueueName,
        *,
        worker_id: str,
        ignore_schedule: bool = False,
    ) -> QueuedTaskView | None:
        """Atomically claim the oldest due pending task of a queue.

        The transition is a conditional update on ``status = 'pending'``: when a
        concurrent dispatcher wins the row, the update touches nothing and the
        next candidate is tried.
        """

        while True:
            now = utc_now()
            with Session(self.engine) as session:
                statement = select(QueuedTask).where(
                    QueuedTask.queue == queue.value,
                    QueuedTask.status == TaskStatus.PENDING.value,
                )
                if not ignore_schedule:
                    statement = statement.where(
                        QueuedTask.scheduled_at <= to_db_datetime(now),
                    )
                candidate = session.exec(
                    statement.order_by(
                        col(QueuedTask.scheduled_at).asc(),
                        col(QueuedTask.created_at).asc(),
                        col(QueuedTask.task_id).asc(),
                    ).limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(QueuedTask)
                    .where(
                        col(QueuedTask.task_id) == candidate.task_id,
                        col(QueuedTask.status) == TaskStatus.PENDING.value,
                    )
                    .values(
                        status=TaskStatus.PROCESSING.value,
                        attempt=candidate.attempt + 1,
                        worker_id=worker_id,
                        started_at=to_db_datetime(now),
                        finished_at=None,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                claimed = session.exec(
                    select(QueuedTask).where(QueuedTask.task_id == candidate.task_id),
                ).one()
                session.refresh(claimed)
                self._add_event(
                    session=session,
                    task_id=claimed.task_id or 0,
                    event_type="claimed",
                    status_from=TaskStatus.PENDING,
                    status_to=TaskStatus.PROCESSING,
                    details={
                        "worker_id": worker_id,
                        "attempt": claimed.attempt,
                        "forced": ignore_schedule,
                    },
                )
                session.commit()
                return _to_task_view(claimed)

    def complete(
        self,
        task_id: int,
        *,
        note: str | None = None,
        outcome_kind: OutcomeKind = OutcomeKind.EXECUTED,
    ) -> bool:
        """Mark a processing task as completed (executed or skipped)."""

        return self._finish(
            task_id=task_id,
            status=TaskStatus.COMPLETED,
            error=note,
            outcome_kind=outcome_kind,
            event_type="skipped" if outcome_kind == OutcomeKind.SKIPPED else "completed",
        )

    def fail(self, task_id: int, *, error: str) -> bool:
        """Mark a processing task as failed with the raw error text."""

        return self._finish(
            task_id=task_id,
            status=TaskStatus.FAILED,
            error=error,
            outcome_kind=OutcomeKind.FAILED,
            event_type="failed",
        )

    def reschedule(self, task_id: int, *, run_after: datetime, error: str) -> bool:
        """Return a processing task to pending for a later attempt."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueuedTask)
                .where(
                    col(QueuedTask.task_id) == task_id,
                    col(QueuedTask.status) == TaskStatus.PROCESSING.value,
                )
                .values(
                    status=TaskStatus.PENDING.value,
                    scheduled_at=to_db_datetime(run_after),
                    error=error,
                    outcome_kind=OutcomeKind.RATE_LIMITED.value,
                    worker_id=None,
                    started_at=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="rescheduled",
                status_from=TaskStatus.PROCESSING,
                status_to=TaskStatus.PENDING,
                details={
                    "run_after": to_utc_aware_datetime(run_after).isoformat(),
                    "error": error,
                },
            )
            session.commit()
            return True

    def resolve(self, task_id: int, outcome: TaskOutcome, *, now: datetime | None = None) -> bool:
        """Apply an executor outcome to the stored task."""

        match outcome:
            case Completed(note=note):
                return self.complete(task_id, note=note)
            case Skipped(note=note):
                return self.complete(
                    task_id,
                    note=f"skipped: {note}",
                    outcome_kind=OutcomeKind.SKIPPED,
                )
            case RateLimited(wait_seconds=wait_seconds):
                run_after = (now or utc_now()) + timedelta(seconds=wait_seconds)
                return self.reschedule(task_id, run_after=run_after, error=outcome.annotation)
            case Failed(error=error):
                return self.fail(task_id, error=error)
        raise TypeError(f"Unsupported task outcome: {outcome!r}")

    def recover_stale_processing(self, *, stale_after: timedelta) -> int:
        """Return tasks abandoned in processing by a crashed dispatcher to pending."""

        now = utc_now()
        cutoff = to_db_datetime(now - stale_after)
        with Session(self.engine) as session:
            stale_ids = session.exec(
                select(QueuedTask.task_id).where(
                    QueuedTask.status == TaskStatus.PROCESSING.value,
                    col(QueuedTask.started_at).is_not(None),
                    col(QueuedTask.started_at) < cutoff,
                ),
            ).all()
            recovered = 0
            for task_id in stale_ids:
                result = session.exec(
                    sa_update(QueuedTask)
                    .where(
                        col(QueuedTask.task_id) == task_id,
                        col(QueuedTask.status) == TaskStatus.PROCESSING.value,
                    )
                    .values(
                        status=TaskStatus.PENDING.value,
                        error="recovered: stale processing",
                        worker_id=None,
                        started_at=None,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    continue
                recovered += 1
                self._add_event(
                    session=session,
                    task_id=task_id or 0,
                    event_type="stale_recovered",
                    status_from=TaskStatus.PROCESSING,
                    status_to=TaskStatus.PENDING,
                    details={"stale_after_seconds": int(stale_after.total_seconds())},
                )
            session.commit()
            return recovered

    def next_pending_at(self, queue: QueueName) -> datetime | None:
        """Earliest scheduled_at among pending tasks of a queue."""

        with Session(self.engine) as session:
            value = session.exec(
                select(func.min(QueuedTask.scheduled_at)).where(
                    QueuedTask.queue == queue.value,
                    QueuedTask.status == TaskStatus.PENDING.value,
                ),
            ).one()
        return to_utc_aware_datetime(value) if value is not None else None

    def latest_pending_at(self) -> datetime | None:
        """Latest scheduled_at among pending tasks across all queues."""

        with Session(self.engine) as session:
            value = session.exec(
                select(func.max(QueuedTask.scheduled_at)).where(
                    QueuedTask.status == TaskStatus.PENDING.value,
                ),
            ).one()
        return to_utc_aware_datetime(value) if value is not None else None

    def get_task(self, task_id: int) -> QueuedTaskView | None:
        with Session(self.engine) as session:
            row = session.get(QueuedTask, task_id)
            return _to_task_view(row) if row is not None else None

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        queue: QueueName | None = None,
        task_type: TaskType | None = None,
        limit: int = 50,
    ) -> list[QueuedTaskView]:
        """List tasks in claim order, optionally filtered."""

        with Session(self.engine) as session:
            statement = select(QueuedTask)
            if status is not None:
                statement = statement.where(QueuedTask.status == status.value)
            if queue is not None:
                statement = statement.where(QueuedTask.queue == queue.value)
            if task_type is not None:
                statement = statement.where(QueuedTask.task_type == task_type.value)
            rows = session.exec(
                statement.order_by(
                    col(QueuedTask.scheduled_at).asc(),
                    col(QueuedTask.created_at).asc(),
                    col(QueuedTask.task_id).asc(),
                ).limit(limit),
            ).all()
        return [_to_task_view(row) for row in rows]

    def find_active_create_chat(self, title: str) -> QueuedTaskView | None:
        """Pending or processing create_chat task carrying the same title."""

        active = [TaskStatus.PENDING.value, TaskStatus.PROCESSING.value]
        with Session(self.engine) as session:
            rows = session.exec(
                select(QueuedTask).where(
                    QueuedTask.task_type == TaskType.CREATE_CHAT.value,
                    col(QueuedTask.status).in_(active),
                ),
            ).all()
        for row in rows:
            payload = json.loads(row.payload_json)
            if isinstance(payload, dict) and str(payload.get("title", "")).strip() == title:
                return _to_task_view(row)
        return None

    def get_task_details(self, task_id: int) -> QueuedTaskDetails | None:
        """Return task details with event stream."""

        with Session(self.engine) as session:
            task = session.get(QueuedTask, task_id)
            if task is None:
                return None
            event_rows = session.exec(
                select(QueuedTaskEvent)
                .where(QueuedTaskEvent.task_id == task_id)
                .order_by(col(QueuedTaskEvent.created_at).asc(), col(QueuedTaskEvent.id).asc()),
            ).all()
            task_view = _to_task_view(task)

        events: list[QueuedTaskEventView] = []
        for row in event_rows:
            details = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                QueuedTaskEventView(
                    event_id=row.id or 0,
                    task_id=row.task_id,
                    event_type=row.event_type,
                    status_from=(
                        TaskStatus(row.status_from) if row.status_from is not None else None
                    ),
                    status_to=TaskStatus(row.status_to) if row.status_to is not None else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return QueuedTaskDetails(task=task_view, events=events)

    def delete_task(self, task_id: int) -> bool:
        """Administrative delete; returns False when the task does not exist."""

        with Session(self.engine) as session:
            session.exec(sa_delete(QueuedTaskEvent).where(col(QueuedTaskEvent.task_id) == task_id))
            result = session.exec(sa_delete(QueuedTask).where(col(QueuedTask.task_id) == task_id))
            session.commit()
            return result.rowcount == 1

    def clear(
        self,
        *,
        status: TaskStatus = TaskStatus.FAILED,
        queue: QueueName | None = None,
    ) -> int:
        """Delete every task in a status (failed by default); returns the count."""

        if status == TaskStatus.PROCESSING:
            raise ValueError("Processing tasks cannot be cleared while a dispatcher holds them.")
        with Session(self.engine) as session:
            statement = select(QueuedTask.task_id).where(QueuedTask.status == status.value)
            if queue is not None:
                statement = statement.where(QueuedTask.queue == queue.value)
            task_ids = list(session.exec(statement).all())
            if not task_ids:
                return 0
            session.exec(
                sa_delete(QueuedTaskEvent).where(col(QueuedTaskEvent.task_id).in_(task_ids)),
            )
            result = session.exec(
                sa_delete(QueuedTask).where(
                    col(QueuedTask.task_id).in_(task_ids),
                    col(QueuedTask.status) == status.value,
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    def status_counts(self, *, queue: QueueName | None = None) -> dict[TaskStatus, int]:
        with Session(self.engine) as session:
            statement = select(QueuedTask.status, func.count()).group_by(QueuedTask.status)
            if queue is not None:
                statement = statement.where(QueuedTask.queue == queue.value)
            rows = session.exec(statement).all()
        counts = dict.fromkeys(TaskStatus, 0)
        for status, count in rows:
            counts[TaskStatus(status)] = int(count)
        return counts

    def _finish(
        self,
        *,
        task_id: int,
        status: TaskStatus,
        error: str | None,
        outcome_kind: OutcomeKind,
        event_type: str,
    ) -> bool:
        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueuedTask)
                .where(
                    col(QueuedTask.task_id) == task_id,
                    col(QueuedTask.status) == TaskStatus.PROCESSING.value,
                )
                .values(
                    status=status.value,
                    error=error,
                    outcome_kind=outcome_kind.value,
                    finished_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type,
                status_from=TaskStatus.PROCESSING,
                status_to=status,
                details={"error": error} if error else {},
            )
            session.commit()
            return True

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: int,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            QueuedTaskEvent(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _to_task_view(row: QueuedTask) -> QueuedTaskView:
    payload = json.loads(row.payload_json) if row.payload_json else {}
    return QueuedTaskView(
        task_id=row.task_id or 0,
        queue=QueueName(row.queue),
        task_type=TaskType(row.task_type),
        payload=payload if isinstance(payload, dict) else {},
        status=TaskStatus(row.status),
        attempt=row.attempt,
        worker_id=row.worker_id,
        error=row.error,
        outcome_kind=OutcomeKind(row.outcome_kind) if row.outcome_kind is not None else None,
        scheduled_at=to_utc_aware_datetime(row.scheduled_at),
        started_at=to_utc_aware_datetime(row.started_at) if row.started_at is not None else None,
        finished_at=(
            to_utc_aware_datetime(row.finished_at) if row.finished_at is not None else None
        ),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
