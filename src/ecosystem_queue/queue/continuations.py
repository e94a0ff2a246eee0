"""Durable "run another cycle later" records for the self-chaining dispatcher."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING

import httpx
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from ecosystem_queue.queue.models import QueueName
from ecosystem_queue.storage.common import to_db_datetime, to_utc_aware_datetime, utc_now
from ecosystem_queue.storage.sqlmodel_models import DispatchContinuation

if TYPE_CHECKING:
    from ecosystem_queue.queue.dispatcher import CycleResult, SelfChainingDispatcher

logger = logging.getLogger(__name__)

SECRET_HEADER = "X-Secret-Key"


class ContinuationStatus(str, Enum):
    PENDING = "pending"
    CLAIMED = "claimed"
    DONE = "done"


@dataclass(slots=True)
class ContinuationView:
    continuation_id: int
    queue: QueueName
    status: ContinuationStatus
    run_at: datetime
    claimed_at: datetime | None
    created_at: datetime


class ContinuationScheduler:
    """At most one pending continuation per queue; the earliest ``run_at`` wins.

    Continuations outlive the process that scheduled them, so a handler that
    dies mid-cycle never stalls the pipeline: the next ``run_due_continuations``
    call (cron or operator) picks them up, including claims abandoned for longer
    than ``stale_claim_after``.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        stale_claim_after: timedelta = timedelta(minutes=10),
    ) -> None:
        self.engine = engine
        self.stale_claim_after = stale_claim_after

    def schedule(self, queue: QueueName, run_at: datetime) -> datetime:
        """Ensure a continuation for ``queue`` runs no later than ``run_at``."""

        now = utc_now()
        with Session(self.engine) as session:
            existing = session.exec(
                select(DispatchContinuation)
                .where(
                    DispatchContinuation.queue == queue.value,
                    DispatchContinuation.status == ContinuationStatus.PENDING.value,
                )
                .order_by(col(DispatchContinuation.run_at).asc())
                .limit(1),
            ).one_or_none()
            if existing is not None:
                current = to_utc_aware_datetime(existing.run_at)
                if current <= run_at:
                    return current
                session.exec(
                    sa_update(DispatchContinuation)
                    .where(
                        col(DispatchContinuation.continuation_id) == existing.continuation_id,
                        col(DispatchContinuation.status) == ContinuationStatus.PENDING.value,
                    )
                    .values(run_at=to_db_datetime(run_at)),
                )
            else:
                session.add(
                    DispatchContinuation(
                        queue=queue.value,
                        status=ContinuationStatus.PENDING.value,
                        run_at=to_db_datetime(run_at),
                        created_at=to_db_datetime(now),
                    ),
                )
            session.commit()
        logger.debug("Continuation for %s scheduled at %s", queue.value, run_at.isoformat())
        return run_at

    def claim_due(self, *, now: datetime | None = None) -> list[ContinuationView]:
        """Atomically claim due continuations and stale claims."""

        now = now or utc_now()
        stale_cutoff = to_db_datetime(now - self.stale_claim_after)
        claimed: list[ContinuationView] = []
        with Session(self.engine) as session:
            rows = session.exec(
                select(DispatchContinuation)
                .where(
                    (
                        (col(DispatchContinuation.status) == ContinuationStatus.PENDING.value)
                        & (col(DispatchContinuation.run_at) <= to_db_datetime(now))
                    )
                    | (
                        (col(DispatchContinuation.status) == ContinuationStatus.CLAIMED.value)
                        & (col(DispatchContinuation.claimed_at) < stale_cutoff)
                    ),
                )
                .order_by(col(DispatchContinuation.run_at).asc()),
            ).all()
            for row in rows:
                result = session.exec(
                    sa_update(DispatchContinuation)
                    .where(
                        col(DispatchContinuation.continuation_id) == row.continuation_id,
                        col(DispatchContinuation.status) == row.status,
                    )
                    .values(
                        status=ContinuationStatus.CLAIMED.value,
                        claimed_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    continue
                claimed.append(
                    ContinuationView(
                        continuation_id=row.continuation_id or 0,
                        queue=QueueName(row.queue),
                        status=ContinuationStatus.CLAIMED,
                        run_at=to_utc_aware_datetime(row.run_at),
                        claimed_at=now,
                        created_at=to_utc_aware_datetime(row.created_at),
                    ),
                )
            session.commit()
        return claimed

    def has_due(self, *, now: datetime | None = None) -> bool:
        now = now or utc_now()
        with Session(self.engine) as session:
            row = session.exec(
                select(DispatchContinuation.continuation_id).where(
                    (
                        (col(DispatchContinuation.status) == ContinuationStatus.PENDING.value)
                        & (col(DispatchContinuation.run_at) <= to_db_datetime(now))
                    )
                    | (
                        (col(DispatchContinuation.status) == ContinuationStatus.CLAIMED.value)
                        & (
                            col(DispatchContinuation.claimed_at)
                            < to_db_datetime(now - self.stale_claim_after)
                        )
                    ),
                ),
            ).first()
        return row is not None

    def mark_done(self, continuation_id: int) -> None:
        self._set_status(continuation_id, ContinuationStatus.DONE)

    def list_pending(self) -> list[ContinuationView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(DispatchContinuation)
                .where(DispatchContinuation.status == ContinuationStatus.PENDING.value)
                .order_by(col(DispatchContinuation.run_at).asc()),
            ).all()
        return [
            ContinuationView(
                continuation_id=row.continuation_id or 0,
                queue=QueueName(row.queue),
                status=ContinuationStatus(row.status),
                run_at=to_utc_aware_datetime(row.run_at),
                claimed_at=(
                    to_utc_aware_datetime(row.claimed_at) if row.claimed_at is not None else None
                ),
                created_at=to_utc_aware_datetime(row.created_at),
            )
            for row in rows
        ]

    def run_due_continuations(
        self,
        dispatchers: Mapping[QueueName, SelfChainingDispatcher],
        *,
        max_rounds: int = 1,
    ) -> list[CycleResult]:
        """Drive one dispatch cycle per due continuation.

        Each cycle schedules its own follow-up, so with ``max_rounds > 1`` an
        immediately due follow-up is picked up in the same call.
        """

        results: list[CycleResult] = []
        for _ in range(max_rounds):
            due = self.claim_due()
            if not due:
                break
            for continuation in due:
                dispatcher = dispatchers.get(continuation.queue)
                if dispatcher is None:
                    logger.warning(
                        "No dispatcher for continuation %s (queue %s)",
                        continuation.continuation_id,
                        continuation.queue.value,
                    )
                    self.mark_done(continuation.continuation_id)
                    continue
                # Done first: the cycle may schedule the next continuation for this queue.
                self.mark_done(continuation.continuation_id)
                try:
                    results.append(dispatcher.run_cycle())
                except Exception:
                    self.schedule(continuation.queue, utc_now())
                    raise
        return results

    def _set_status(self, continuation_id: int, status: ContinuationStatus) -> None:
        with Session(self.engine) as session:
            session.exec(
                sa_update(DispatchContinuation)
                .where(col(DispatchContinuation.continuation_id) == continuation_id)
                .values(status=status.value),
            )
            session.commit()


class HttpContinuationTrigger:
    """Fire-and-forget HTTP call that starts the next short-lived handler.

    The durable continuation row is the source of truth; a failed trigger is
    only logged.
    """

    def __init__(
        self,
        *,
        url: str,
        secret_key: str | None,
        timeout_seconds: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        headers = {SECRET_HEADER: secret_key} if secret_key else {}
        self.url = url
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=5.0),
            headers=headers,
            transport=transport,
        )

    def fire(self, queue: QueueName) -> bool:
        try:
            response = self._client.get(self.url, params={"queue": queue.value})
        except httpx.TimeoutException:
            logger.warning("Timeout triggering dispatch cycle at %s", self.url)
            return False
        except httpx.HTTPError as exc:
            logger.warning("HTTP error triggering dispatch cycle at %s: %s", self.url, exc)
            return False
        if not response.is_success:
            logger.warning(
                "Dispatch trigger at %s answered HTTP %s",
                self.url,
                response.status_code,
            )
            return False
        return True

    def close(self) -> None:
        self._client.close()
