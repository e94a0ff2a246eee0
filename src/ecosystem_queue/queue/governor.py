"""Durable, platform-wide rate-limit freeze shared by every dispatcher."""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta

from sqlalchemy import or_
from sqlalchemy import update as sa_update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlmodel import Session, col

from ecosystem_queue.storage.common import to_db_datetime, to_utc_aware_datetime, utc_now
from ecosystem_queue.storage.sqlmodel_models import RATE_LIMIT_STATE_ID, RateLimitState

logger = logging.getLogger(__name__)


class RateLimitGovernor:
    """Single "do not dispatch until T" value.

    Always re-read from the database: several dispatcher instances share it and
    none of them may trust a cached copy.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def get_wait_seconds(self, *, now: datetime | None = None) -> int:
        """Seconds until dispatch may proceed; zero when not frozen."""

        wait_until = self.get_wait_until()
        if wait_until is None:
            return 0
        remaining = (wait_until - (now or utc_now())).total_seconds()
        if remaining <= 0:
            return 0
        return math.ceil(remaining)

    def get_wait_until(self) -> datetime | None:
        with Session(self.engine) as session:
            row = session.get(RateLimitState, RATE_LIMIT_STATE_ID)
            if row is None or row.wait_until is None:
                return None
            return to_utc_aware_datetime(row.wait_until)

    def set_wait(self, seconds: int, *, reason: str | None = None) -> datetime:
        """Freeze dispatch for ``seconds`` from now.

        The deadline only ever moves forward, so a concurrent writer reporting a
        shorter wait cannot lift a longer freeze.
        """

        if seconds < 0:
            raise ValueError(f"Wait seconds must be >= 0, got {seconds}")
        now = utc_now()
        deadline = now + timedelta(seconds=seconds)
        with Session(self.engine) as session:
            session.exec(
                sqlite_insert(RateLimitState)
                .values(
                    id=RATE_LIMIT_STATE_ID,
                    wait_until=None,
                    reason=None,
                    updated_at=to_db_datetime(now),
                )
                .on_conflict_do_nothing(index_elements=["id"]),
            )
            result = session.exec(
                sa_update(RateLimitState)
                .where(
                    col(RateLimitState.id) == RATE_LIMIT_STATE_ID,
                    or_(
                        col(RateLimitState.wait_until).is_(None),
                        col(RateLimitState.wait_until) < to_db_datetime(deadline),
                    ),
                )
                .values(
                    wait_until=to_db_datetime(deadline),
                    reason=reason,
                    updated_at=to_db_datetime(now),
                ),
            )
            session.commit()
            extended = result.rowcount == 1
        if extended:
            logger.warning("Global rate-limit freeze set for %ss (%s)", seconds, reason or "-")
            return deadline
        current = self.get_wait_until()
        return current if current is not None else deadline

    def clear(self) -> None:
        """Operator override: lift the freeze immediately."""

        now = utc_now()
        with Session(self.engine) as session:
            session.exec(
                sa_update(RateLimitState)
                .where(col(RateLimitState.id) == RATE_LIMIT_STATE_ID)
                .values(wait_until=None, reason=None, updated_at=to_db_datetime(now)),
            )
            session.commit()
        logger.info("Global rate-limit freeze cleared")
