from __future__ import annotations

import itertools
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from sidebet.core.config import Settings
from sidebet.db import Base, enable_sqlite_savepoints
from sidebet.models import Bet, NotificationPriority, NotificationType, User, UserRole
from sidebet.repositories import UserRepository
from sidebet.services.bet_service import BetService

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


@dataclass(slots=True)
class SentNotification:
    user_id: str
    type: NotificationType
    title: str
    message: str
    priority: NotificationPriority
    related_bet_id: str | None = None
    related_user_id: str | None = None
    action_data: dict[str, Any] | None = None


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[SentNotification] = []

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
        self.sent.append(
            SentNotification(
                user_id=user_id,
                type=type,
                title=title,
                message=message,
                priority=priority,
                related_bet_id=related_bet_id,
                related_user_id=related_user_id,
                action_data=action_data,
            )
        )

    def for_user(self, user_id: str) -> list[SentNotification]:
        return [item for item in self.sent if item.user_id == user_id]

    def titles(self, user_id: str) -> list[str]:
        return [item.title for item in self.for_user(user_id)]


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    enable_sqlite_savepoints(engine)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    factory = sessionmaker(bind=engine, autoflush=True, expire_on_commit=False, future=True)
    db = factory()
    yield db
    db.close()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(NOW)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(database_url="sqlite://", sweep_write_delay_seconds=0)


@pytest.fixture
def make_user(session):
    counter = itertools.count(1)

    def _make(
        username: str | None = None,
        *,
        balance: float = 500.0,
        trust_score: float = 5.0,
        role: UserRole = UserRole.USER,
        display_name: str | None = None,
    ) -> User:
        name = username or f"user{next(counter)}"
        return UserRepository(session).create(
            username=name,
            display_name=display_name or name.title(),
            balance=balance,
            trust_score=trust_score,
            role=role.value,
        )

    return _make


@pytest.fixture
def bet_service(session, notifier, test_settings, clock) -> BetService:
    return BetService(session, notifier=notifier, settings=test_settings, clock=clock)


@pytest.fixture
def make_bet(bet_service, clock):
    def _make(
        creator: User,
        *,
        amount: float = 10.0,
        side: str = "A",
        deadline: datetime | None = None,
        is_private: bool = False,
        title: str = "Lakers beat the Celtics",
    ) -> Bet:
        return bet_service.create_bet(
            creator.id,
            title=title,
            deadline=deadline or clock.now + timedelta(days=1),
            bet_amount=amount,
            side=side,
            side_a_name="Lakers",
            side_b_name="Celtics",
            is_private=is_private,
        )

    return _make
