"""Notification delivery. Failures are logged and never propagate to the caller."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Protocol

from loguru import logger
from sqlalchemy.orm import Session

from sidebet.models import NotificationPriority, NotificationType, utcnow
from sidebet.repositories import NotificationRepository


class Notifier(Protocol):
    def notify(
        self,
        user_id: str,
        type: NotificationType,
        title: str,
        message: str,
        priority: NotificationPriority = NotificationPriority.MEDIUM,
        *,
        related_bet_id: str | None = None,
        related_user_id: str | None = None,
        action_data: dict[str, Any] | None = None,
    ) -> None: ...


class DatabaseNotifier:
    """Persist notifications as rows inside a savepoint of the caller's session."""

    def __init__(self, session: Session, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._session = session
        self._repo = NotificationRepository(session)
        self._clock = clock

    def notify(
        self,
        user_id: str,
        type: NotificationType,
        title: str,
        message: str,
        priority: NotificationPriority = NotificationPriority.MEDIUM,
        *,
        related_bet_id: str | None = None,
        related_user_id: str | None = None,
        action_data: dict[str, Any] | None = None,
    ) -> None:
        try:
            with self._session.begin_nested():
                self._repo.create(
                    user_id=user_id,
                    type=type.value,
                    title=title,
                    message=message,
                    priority=priority.value,
                    action_type="VIEW_BET" if related_bet_id else None,
                    action_data=action_data
                    or ({"bet_id": related_bet_id} if related_bet_id else None),
                    related_bet_id=related_bet_id,
                    related_user_id=related_user_id,
                    created_at=self._clock(),
                )
        except Exception:
            logger.exception("Failed to deliver {} notification to user {}", type.value, user_id)
