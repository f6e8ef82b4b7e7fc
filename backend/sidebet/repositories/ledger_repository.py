"""Transaction ledger data access."""

from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from sidebet.models import Transaction, TransactionStatus, TransactionType


class LedgerRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def create(self, **fields: Any) -> Transaction:
        record = Transaction(**fields)
        self._session.add(record)
        self._session.flush()
        return record

    def get(self, transaction_id: str) -> Transaction | None:
        return self._session.get(Transaction, transaction_id)

    def pending_for_bet(self, bet_id: str) -> list[Transaction]:
        query = (
            select(Transaction)
            .where(
                Transaction.related_bet_id == bet_id,
                Transaction.status == TransactionStatus.PENDING.value,
            )
            .order_by(Transaction.created_at.asc(), Transaction.id.asc())
        )
        return list(self._session.execute(query).scalars().all())

    def list(
        self,
        *,
        user_id: str | None = None,
        bet_id: str | None = None,
        squares_game_id: str | None = None,
        type: TransactionType | None = None,
        status: TransactionStatus | None = None,
        limit: int | None = 100,
        offset: int = 0,
    ) -> list[Transaction]:
        filters: list[Any] = []
        if user_id:
            filters.append(Transaction.user_id == user_id)
        if bet_id:
            filters.append(Transaction.related_bet_id == bet_id)
        if squares_game_id:
            filters.append(Transaction.related_squares_game_id == squares_game_id)
        if type is not None:
            filters.append(Transaction.type == type.value)
        if status is not None:
            filters.append(Transaction.status == status.value)

        query = (
            select(Transaction)
            .where(*filters)
            .order_by(Transaction.created_at.asc(), Transaction.id.asc())
            .offset(offset)
        )
        if limit:
            query = query.limit(limit)
        return list(self._session.execute(query).scalars().all())


__all__ = ["LedgerRepository"]
