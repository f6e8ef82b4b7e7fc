"""Dispute data access."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from sidebet.models import Dispute, DisputeStatus


class DisputeRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def create(self, **fields: Any) -> Dispute:
        dispute = Dispute(**fields)
        self._session.add(dispute)
        self._session.flush()
        return dispute

    def get(self, dispute_id: str) -> Dispute | None:
        return self._session.get(Dispute, dispute_id)

    def update(self, dispute: Dispute, **fields: Any) -> Dispute:
        for key, value in fields.items():
            setattr(dispute, key, value)
        self._session.flush()
        return dispute

    def count_filed_since(self, user_id: str, since: datetime) -> int:
        query = select(func.count(Dispute.id)).where(
            Dispute.filed_by == user_id, Dispute.created_at > since
        )
        return self._session.execute(query).scalar_one()

    def count_by_filer(self, user_id: str, *, status: DisputeStatus) -> int:
        query = select(func.count(Dispute.id)).where(
            Dispute.filed_by == user_id, Dispute.status == status.value
        )
        return self._session.execute(query).scalar_one()

    def has_pending_for_bet(self, bet_id: str) -> bool:
        query = select(func.count(Dispute.id)).where(
            Dispute.bet_id == bet_id, Dispute.status == DisputeStatus.PENDING.value
        )
        return self._session.execute(query).scalar_one() > 0

    def list(
        self,
        *,
        bet_id: str | None = None,
        user_id: str | None = None,
        statuses: Iterable[DisputeStatus] | None = None,
        limit: int | None = 50,
        offset: int = 0,
    ) -> list[Dispute]:
        filters: list[Any] = []
        if bet_id:
            filters.append(Dispute.bet_id == bet_id)
        if user_id:
            filters.append(or_(Dispute.filed_by == user_id, Dispute.against_user_id == user_id))
        if statuses is not None:
            filters.append(Dispute.status.in_([status.value for status in statuses]))

        query = (
            select(Dispute)
            .where(*filters)
            .order_by(Dispute.created_at.desc(), Dispute.id.asc())
            .offset(offset)
        )
        if limit:
            query = query.limit(limit)
        return list(self._session.execute(query).scalars().all())


__all__ = ["DisputeRepository"]
