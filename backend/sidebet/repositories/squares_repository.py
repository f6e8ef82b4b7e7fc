"""Squares game, purchase, payout, and live event data access."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from sidebet.models import (
    LiveEvent,
    SquaresGame,
    SquaresGameStatus,
    SquaresPayout,
    SquaresPurchase,
    as_utc,
    utcnow,
)

GRID_SIZE = 100


class SquaresRepository:
    """Encapsulate squares persistence concerns."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Games

    def create_game(self, **fields: Any) -> SquaresGame:
        game = SquaresGame(**fields)
        self._session.add(game)
        self._session.flush()
        return game

    def get_game(self, game_id: str) -> SquaresGame | None:
        return self._session.get(SquaresGame, game_id)

    def update_game(self, game: SquaresGame, **fields: Any) -> SquaresGame:
        for key, value in fields.items():
            setattr(game, key, value)
        self._session.flush()
        return game

    def transition_status(
        self,
        game_id: str,
        expected: SquaresGameStatus | Iterable[SquaresGameStatus],
        new_status: SquaresGameStatus,
        *,
        now: datetime | None = None,
        **values: Any,
    ) -> bool:
        if isinstance(expected, SquaresGameStatus):
            expected = (expected,)
        stmt = (
            update(SquaresGame)
            .where(
                SquaresGame.id == game_id,
                SquaresGame.status.in_([status.value for status in expected]),
            )
            .values(status=new_status.value, updated_at=now or utcnow(), **values)
            .execution_options(synchronize_session="fetch")
        )
        return self._session.execute(stmt).rowcount == 1

    def games_ready_to_lock(self, now: datetime) -> list[SquaresGame]:
        query = select(SquaresGame).where(
            SquaresGame.status == SquaresGameStatus.ACTIVE.value,
            or_(SquaresGame.squares_sold >= GRID_SIZE, SquaresGame.locks_at <= now),
        )
        return list(self._session.execute(query).scalars().all())

    def games_with_status(self, *statuses: SquaresGameStatus) -> list[SquaresGame]:
        query = (
            select(SquaresGame)
            .where(SquaresGame.status.in_([status.value for status in statuses]))
            .order_by(SquaresGame.locks_at.asc(), SquaresGame.id.asc())
        )
        return list(self._session.execute(query).scalars().all())

    # ------------------------------------------------------------------
    # Purchases

    def add_purchase(self, **fields: Any) -> SquaresPurchase:
        purchase = SquaresPurchase(**fields)
        self._session.add(purchase)
        return purchase

    def purchases(self, game_id: str) -> list[SquaresPurchase]:
        query = (
            select(SquaresPurchase)
            .where(SquaresPurchase.squares_game_id == game_id)
            .order_by(SquaresPurchase.grid_row.asc(), SquaresPurchase.grid_col.asc())
        )
        return list(self._session.execute(query).scalars().all())

    def taken_cells(self, game_id: str, cells: Iterable[tuple[int, int]]) -> set[tuple[int, int]]:
        wanted = set(cells)
        return {
            (purchase.grid_row, purchase.grid_col)
            for purchase in self.purchases(game_id)
            if (purchase.grid_row, purchase.grid_col) in wanted
        }

    def buyer_ids(self, game_id: str) -> list[str]:
        query = (
            select(SquaresPurchase.user_id)
            .where(SquaresPurchase.squares_game_id == game_id)
            .distinct()
        )
        return sorted(self._session.execute(query).scalars().all())

    def spend_by_buyer(self, game_id: str) -> dict[str, float]:
        query = (
            select(SquaresPurchase.user_id, func.sum(SquaresPurchase.amount))
            .where(SquaresPurchase.squares_game_id == game_id)
            .group_by(SquaresPurchase.user_id)
        )
        return {user_id: float(total or 0) for user_id, total in self._session.execute(query).all()}

    # ------------------------------------------------------------------
    # Payouts

    def add_payout(self, **fields: Any) -> SquaresPayout:
        payout = SquaresPayout(**fields)
        self._session.add(payout)
        self._session.flush()
        return payout

    def payouts(self, game_id: str) -> list[SquaresPayout]:
        query = select(SquaresPayout).where(SquaresPayout.squares_game_id == game_id)
        return list(self._session.execute(query).scalars().all())

    def paid_periods(self, game_id: str) -> set[str]:
        query = select(SquaresPayout.period).where(SquaresPayout.squares_game_id == game_id)
        return set(self._session.execute(query).scalars().all())

    # ------------------------------------------------------------------
    # Live events

    def get_event(self, event_id: str) -> LiveEvent | None:
        return self._session.get(LiveEvent, event_id)

    def create_event(self, **fields: Any) -> LiveEvent:
        if fields.get("scheduled_time") is not None:
            fields["scheduled_time"] = as_utc(fields["scheduled_time"])
        event = LiveEvent(**fields)
        self._session.add(event)
        self._session.flush()
        return event


__all__ = ["SquaresRepository", "GRID_SIZE"]
