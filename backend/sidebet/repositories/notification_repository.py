"""Notification persistence."""

from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from sidebet.models import Notification


class NotificationRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def create(self, **fields: Any) -> Notification:
        notification = Notification(**fields)
        self._session.add(notification)
        self._session.flush()
        return notification

    def list_for_user(
        self, user_id: str, *, unread_only: bool = False, limit: int = 50
    ) -> list[Notification]:
        filters: list[Any] = [Notification.user_id == user_id]
        if unread_only:
            filters.append(Notification.is_read.is_(False))
        query = (
            select(Notification)
            .where(*filters)
            .order_by(Notification.created_at.desc(), Notification.id.asc())
            .limit(limit)
        )
        return list(self._session.execute(query).scalars().all())


__all__ = ["NotificationRepository"]
