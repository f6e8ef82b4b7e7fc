from __future__ import annotations

from loguru import logger

from sidebet.models import NotificationPriority, NotificationType
from sidebet.repositories import NotificationRepository
from sidebet.services.notifier import DatabaseNotifier


def test_notification_row_links_back_to_bet(session, make_user, clock):
    user = make_user()

    DatabaseNotifier(session, clock=clock).notify(
        user.id,
        NotificationType.BET_JOINED,
        "New Participant",
        "Someone joined your bet",
        NotificationPriority.MEDIUM,
        related_bet_id="bet-1",
    )

    [row] = NotificationRepository(session).list_for_user(user.id)
    assert row.title == "New Participant"
    assert row.priority == "MEDIUM"
    assert row.action_type == "VIEW_BET"
    assert row.action_data == {"bet_id": "bet-1"}
    assert row.is_read is False


def test_delivery_failure_is_logged_not_raised(session, make_user, monkeypatch):
    user = make_user()
    messages: list[str] = []
    sink = logger.add(messages.append, level="ERROR")

    def broken(self, **fields):
        raise RuntimeError("notifications table is locked")

    monkeypatch.setattr(NotificationRepository, "create", broken)
    try:
        DatabaseNotifier(session).notify(
            user.id, NotificationType.BET_CANCELLED, "Bet Cancelled", "Gone"
        )
    finally:
        logger.remove(sink)

    assert any("Failed to deliver BET_CANCELLED notification" in message for message in messages)
    assert user.balance == 500.0
