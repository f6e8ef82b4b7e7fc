"""Bet and participant data access."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Any

from sqlalchemy import asc, desc, func, or_, select, update
from sqlalchemy.orm import Session, selectinload

from sidebet.models import Bet, BetStatus, Participant, utcnow


class BetRepository:
    """Encapsulate bet persistence, including conditional status transitions."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Mutations

    def create(self, **fields: Any) -> Bet:
        bet = Bet(**fields)
        self._session.add(bet)
        self._session.flush()
        return bet

    def update(self, bet: Bet, **fields: Any) -> Bet:
        for key, value in fields.items():
            setattr(bet, key, value)
        self._session.flush()
        return bet

    def transition_status(
        self,
        bet_id: str,
        expected: BetStatus | Iterable[BetStatus],
        new_status: BetStatus,
        *,
        now: datetime | None = None,
        **values: Any,
    ) -> bool:
        """Move a bet to ``new_status`` only if it is still in one of ``expected``.

        Returns ``False`` when another writer already moved the bet.
        """

        if isinstance(expected, BetStatus):
            expected = (expected,)
        expected_values = [status.value for status in expected]

        stmt = (
            update(Bet)
            .where(Bet.id == bet_id, Bet.status.in_(expected_values))
            .values(status=new_status.value, updated_at=now or utcnow(), **values)
            .execution_options(synchronize_session="fetch")
        )
        result = self._session.execute(stmt)
        return result.rowcount == 1

    def add_participant(self, **fields: Any) -> Participant:
        participant = Participant(**fields)
        self._session.add(participant)
        self._session.flush()
        return participant

    def update_participant(self, participant: Participant, **fields: Any) -> Participant:
        for key, value in fields.items():
            setattr(participant, key, value)
        self._session.flush()
        return participant

    # ------------------------------------------------------------------
    # Queries

    def get(self, bet_id: str) -> Bet | None:
        return self._session.get(Bet, bet_id)

    def get_with_participants(self, bet_id: str) -> Bet | None:
        query = (
            select(Bet)
            .options(selectinload(Bet.participants))
            .where(Bet.id == bet_id)
            .execution_options(populate_existing=True)
        )
        return self._session.execute(query).scalar_one_or_none()

    def list(
        self,
        *,
        status: BetStatus | Iterable[BetStatus] | None = None,
        creator_id: str | None = None,
        deadline_before: datetime | None = None,
        is_private: bool | None = None,
        sort: str = "created_at",
        order: str = "desc",
        limit: int | None = 50,
        offset: int = 0,
    ) -> list[Bet]:
        filters: list[Any] = []
        if isinstance(status, BetStatus):
            filters.append(Bet.status == status.value)
        elif status is not None:
            filters.append(Bet.status.in_([item.value for item in status]))
        if creator_id:
            filters.append(Bet.creator_id == creator_id)
        if deadline_before is not None:
            filters.append(Bet.deadline < deadline_before)
        if is_private is not None:
            filters.append(Bet.is_private.is_(is_private))

        sort_column = {
            "created_at": Bet.created_at,
            "deadline": Bet.deadline,
            "total_pot": Bet.total_pot,
        }.get(sort, Bet.created_at)
        sort_direction = asc if order.lower() != "desc" else desc

        query = (
            select(Bet)
            .where(*filters)
            .order_by(sort_direction(sort_column), Bet.id.asc())
            .offset(offset)
        )
        if limit:
            query = query.limit(limit)
        return list(self._session.execute(query).scalars().all())

    def expired_active(self, now: datetime, *, limit: int | None = None) -> list[Bet]:
        return self.list(
            status=BetStatus.ACTIVE,
            deadline_before=now,
            sort="deadline",
            order="asc",
            limit=limit,
        )

    def ready_for_payout(self, now: datetime, *, limit: int | None = None) -> list[Bet]:
        """PENDING_RESOLUTION bets with a verdict whose dispute window has closed.

        A bet nobody else joined is ready as soon as it has a verdict.
        """

        others = select(Participant.bet_id).where(
            Participant.bet_id == Bet.id, Participant.user_id != Bet.creator_id
        )
        query = (
            select(Bet)
            .where(
                Bet.status == BetStatus.PENDING_RESOLUTION.value,
                Bet.winning_side.is_not(None),
                or_(Bet.dispute_window_ends_at < now, ~others.exists()),
            )
            .order_by(Bet.deadline.asc(), Bet.id.asc())
        )
        if limit:
            query = query.limit(limit)
        return list(self._session.execute(query).scalars().all())

    def list_for_user(
        self,
        user_id: str,
        *,
        status: BetStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Bet]:
        """Bets the user created or joined, newest first."""

        joined = select(Participant.bet_id).where(Participant.user_id == user_id)
        filters: list[Any] = [or_(Bet.creator_id == user_id, Bet.id.in_(joined))]
        if status is not None:
            filters.append(Bet.status == status.value)
        query = (
            select(Bet)
            .where(*filters)
            .order_by(Bet.created_at.desc(), Bet.id.asc())
            .limit(limit)
            .offset(offset)
        )
        return list(self._session.execute(query).scalars().all())

    def count_by_creator(self, creator_id: str, *, status: BetStatus) -> int:
        query = select(func.count(Bet.id)).where(
            Bet.creator_id == creator_id, Bet.status == status.value
        )
        return self._session.execute(query).scalar_one()

    def count_cancelled_after_join(self, creator_id: str, *, since: datetime) -> int:
        """Cancelled bets by ``creator_id`` that had someone besides the creator."""

        other_participants = (
            select(Participant.bet_id)
            .where(Participant.user_id != creator_id)
            .distinct()
        )
        query = select(func.count(Bet.id)).where(
            Bet.creator_id == creator_id,
            Bet.status == BetStatus.CANCELLED.value,
            Bet.updated_at >= since,
            Bet.id.in_(other_participants),
        )
        return self._session.execute(query).scalar_one()

    # ------------------------------------------------------------------
    # Participants

    def participants(self, bet_id: str) -> list[Participant]:
        query = (
            select(Participant)
            .where(Participant.bet_id == bet_id)
            .order_by(Participant.joined_at.asc(), Participant.id.asc())
        )
        return list(self._session.execute(query).scalars().all())

    def participant_count(self, bet_id: str) -> int:
        query = select(func.count(Participant.id)).where(Participant.bet_id == bet_id)
        return self._session.execute(query).scalar_one()

    def get_participant(self, bet_id: str, user_id: str) -> Participant | None:
        query = select(Participant).where(
            Participant.bet_id == bet_id, Participant.user_id == user_id
        )
        return self._session.execute(query).scalar_one_or_none()

    def non_creator_participants(self, bet: Bet) -> list[Participant]:
        return [item for item in self.participants(bet.id) if item.user_id != bet.creator_id]


__all__ = ["BetRepository"]
