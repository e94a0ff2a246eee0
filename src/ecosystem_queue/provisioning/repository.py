"""Persistence for ecosystems and their short links."""

from __future__ import annotations

import re
from pathlib import Path

from sqlalchemy import update as sa_update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import Session, col, select

from ecosystem_queue.provisioning.models import (
    Address,
    DuplicateMatch,
    EcosystemStatus,
    EcosystemView,
    ShortLinkView,
)
from ecosystem_queue.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from ecosystem_queue.storage.sqlmodel_models import Ecosystem, ShortLink


class EcosystemRepository:
    """Ecosystem records keyed by platform chat id."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def upsert(  # noqa: PLR0913
        self,
        *,
        chat_id: str,
        title: str,
        display_title: str,
        district: str | None,
        status: EcosystemStatus,
        marketplace_topic_id: int | None = None,
        admin_topic_id: int | None = None,
        invite_link: str | None = None,
        member_count: int = 0,
    ) -> EcosystemView:
        """Insert or update the ecosystem of a chat; ``created_at`` is kept on update."""

        now = to_db_datetime(utc_now())
        values = {
            "title": title,
            "display_title": display_title,
            "district": district,
            "status": status.value,
            "marketplace_topic_id": marketplace_topic_id,
            "admin_topic_id": admin_topic_id,
            "invite_link": invite_link,
            "member_count": member_count,
            "last_updated": now,
        }
        statement = sqlite_insert(Ecosystem).values(chat_id=chat_id, created_at=now, **values)
        statement = statement.on_conflict_do_update(index_elements=["chat_id"], set_=values)
        with Session(self.engine) as session:
            session.exec(statement)
            session.commit()
        view = self.get(chat_id)
        if view is None:
            raise RuntimeError(f"Ecosystem upsert for chat {chat_id} did not persist")
        return view

    def get(self, chat_id: str) -> EcosystemView | None:
        with Session(self.engine) as session:
            row = session.exec(select(Ecosystem).where(Ecosystem.chat_id == chat_id)).one_or_none()
            return _to_view(row) if row is not None else None

    def list_ecosystems(self, *, status: EcosystemStatus | None = None) -> list[EcosystemView]:
        with Session(self.engine) as session:
            statement = select(Ecosystem)
            if status is not None:
                statement = statement.where(Ecosystem.status == status.value)
            rows = session.exec(statement.order_by(col(Ecosystem.id).asc())).all()
        return [_to_view(row) for row in rows]

    def set_status(self, chat_id: str, status: EcosystemStatus) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Ecosystem)
                .where(col(Ecosystem.chat_id) == chat_id)
                .values(status=status.value, last_updated=to_db_datetime(utc_now())),
            )
            session.commit()
            return result.rowcount == 1

    def find_duplicate(
        self,
        *,
        title: str,
        address: Address,
        display_title: str,
    ) -> DuplicateMatch | None:
        """The existing ecosystem for the same address, or None.

        With both street and house known, any record whose title contains the
        street (case-insensitive) and the house as a whole word matches, so
        ``2`` never matches ``12``. Otherwise only exact titles match. A short
        link reviewed under the same title also counts.
        """

        with Session(self.engine) as session:
            rows = session.exec(select(Ecosystem)).all()
            reviewed = session.exec(
                select(ShortLink).where(ShortLink.reviewer_name == title),
            ).first()

        house_pattern = (
            re.compile(rf"(?<!\w){re.escape(address.house)}(?!\w)", re.IGNORECASE)
            if address.house
            else None
        )
        street = address.street.casefold()
        for row in rows:
            for existing in (row.title, row.display_title):
                if existing in (title, display_title):
                    return DuplicateMatch(existing, row.chat_id, EcosystemStatus(row.status))
                if (
                    house_pattern is not None
                    and street
                    and street in existing.casefold()
                    and house_pattern.search(existing)
                ):
                    return DuplicateMatch(existing, row.chat_id, EcosystemStatus(row.status))
        if reviewed is not None:
            return DuplicateMatch(title, reviewed.chat_id)
        return None

    def create_short_link(
        self,
        *,
        code: str,
        target_url: str,
        reviewer_name: str | None,
        chat_id: str | None,
    ) -> ShortLinkView:
        with Session(self.engine) as session:
            row = ShortLink(
                code=code,
                target_url=target_url,
                reviewer_name=reviewer_name,
                chat_id=chat_id,
                clicks_count=0,
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_short_link_view(row)

    def short_link_exists(self, code: str) -> bool:
        with Session(self.engine) as session:
            return (
                session.exec(select(ShortLink.id).where(ShortLink.code == code)).first() is not None
            )

    def list_short_links(self, *, chat_id: str | None = None) -> list[ShortLinkView]:
        with Session(self.engine) as session:
            statement = select(ShortLink)
            if chat_id is not None:
                statement = statement.where(ShortLink.chat_id == chat_id)
            rows = session.exec(statement.order_by(col(ShortLink.id).asc())).all()
        return [_to_short_link_view(row) for row in rows]


def _to_view(row: Ecosystem) -> EcosystemView:
    return EcosystemView(
        chat_id=row.chat_id,
        title=row.title,
        display_title=row.display_title,
        district=row.district,
        marketplace_topic_id=row.marketplace_topic_id,
        admin_topic_id=row.admin_topic_id,
        invite_link=row.invite_link,
        status=EcosystemStatus(row.status),
        member_count=row.member_count,
        created_at=to_utc_aware_datetime(row.created_at),
        last_updated=to_utc_aware_datetime(row.last_updated),
    )


def _to_short_link_view(row: ShortLink) -> ShortLinkView:
    return ShortLinkView(
        code=row.code,
        target_url=row.target_url,
        reviewer_name=row.reviewer_name,
        chat_id=row.chat_id,
        clicks_count=row.clicks_count,
        created_at=to_utc_aware_datetime(row.created_at),
    )
