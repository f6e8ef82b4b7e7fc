"""User, balance, and trust-history data access."""

from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from sidebet.models import TrustScoreHistory, User


class UserRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def create(self, **fields: Any) -> User:
        user = User(**fields)
        self._session.add(user)
        self._session.flush()
        return user

    def get(self, user_id: str) -> User | None:
        return self._session.get(User, user_id)

    def get_by_username(self, username: str) -> User | None:
        query = select(User).where(User.username == username)
        return self._session.execute(query).scalar_one_or_none()

    def update(self, user: User, **fields: Any) -> User:
        for key, value in fields.items():
            setattr(user, key, value)
        self._session.flush()
        return user

    def append_trust_history(self, **fields: Any) -> TrustScoreHistory:
        entry = TrustScoreHistory(**fields)
        self._session.add(entry)
        self._session.flush()
        return entry

    def trust_history(self, user_id: str, *, limit: int = 20) -> list[TrustScoreHistory]:
        query = (
            select(TrustScoreHistory)
            .where(TrustScoreHistory.user_id == user_id)
            .order_by(TrustScoreHistory.created_at.desc(), TrustScoreHistory.id.desc())
            .limit(limit)
        )
        return list(self._session.execute(query).scalars().all())


__all__ = ["UserRepository"]
