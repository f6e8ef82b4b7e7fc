from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from sidebet.core.config import Settings
from sidebet.errors import RuleViolationError
from sidebet.models import BetStatus, NotificationPriority, as_utc
from sidebet.repositories import BetRepository
from sidebet.services.bet_lifecycle import (
    NO_PARTICIPANTS_REASON,
    BetLifecycleController,
    can_transition,
    transition_bet,
)


@pytest.fixture
def controller(session, notifier, test_settings, clock) -> BetLifecycleController:
    return BetLifecycleController(
        session, notifier=notifier, settings=test_settings, clock=clock, sleep=lambda _: None
    )


def _empty_bet(session, creator, deadline, title="Nobody came"):
    return BetRepository(session).create(
        title=title,
        creator_id=creator.id,
        deadline=deadline,
        status=BetStatus.ACTIVE.value,
        total_pot=0.0,
    )


@pytest.mark.parametrize(
    ("source", "target", "allowed"),
    [
        (BetStatus.DRAFT, BetStatus.ACTIVE, True),
        (BetStatus.ACTIVE, BetStatus.PENDING_RESOLUTION, True),
        (BetStatus.PENDING_RESOLUTION, BetStatus.PENDING_RESOLUTION, True),
        (BetStatus.PENDING_RESOLUTION, BetStatus.DISPUTED, True),
        (BetStatus.RESOLVED, BetStatus.DISPUTED, True),
        (BetStatus.DISPUTED, BetStatus.PENDING_RESOLUTION, True),
        (BetStatus.DISPUTED, BetStatus.RESOLVED, False),
        (BetStatus.CANCELLED, BetStatus.ACTIVE, False),
        (BetStatus.RESOLVED, BetStatus.ACTIVE, False),
    ],
)
def test_transition_table(source, target, allowed):
    assert can_transition(source, target) is allowed


def test_transition_bet_rejects_illegal_edge(session, make_user, make_bet, clock):
    bet = make_bet(make_user())

    with pytest.raises(ValueError):
        transition_bet(
            BetRepository(session), bet.id, BetStatus.CANCELLED, BetStatus.ACTIVE, now=clock.now
        )
    assert bet.status == BetStatus.ACTIVE.value


def test_conditional_transition_does_not_overwrite_concurrent_change(session, make_user, make_bet, clock):
    bet = make_bet(make_user())
    repo = BetRepository(session)

    assert repo.transition_status(bet.id, BetStatus.ACTIVE, BetStatus.CANCELLED, now=clock.now)
    assert not repo.transition_status(
        bet.id, BetStatus.ACTIVE, BetStatus.PENDING_RESOLUTION, now=clock.now
    )

    session.refresh(bet)
    assert bet.status == BetStatus.CANCELLED.value


def test_sweep_moves_joined_bets_and_cancels_empty_ones(
    session, controller, notifier, make_user, make_bet, clock
):
    creator = make_user()
    joined = make_bet(creator, deadline=clock.now + timedelta(hours=1))
    empty = _empty_bet(session, creator, clock.now + timedelta(hours=1))
    future = make_bet(creator, deadline=clock.now + timedelta(days=3))
    clock.advance(hours=2)

    result = controller.sweep_expired_bets()

    assert result.checked == 2
    assert result.moved_to_pending == 1
    assert result.cancelled == 1
    assert result.errors == 0

    repo = BetRepository(session)
    assert repo.get(joined.id).status == BetStatus.PENDING_RESOLUTION.value
    assert repo.get(joined.id).winning_side is None
    cancelled = repo.get(empty.id)
    assert cancelled.status == BetStatus.CANCELLED.value
    assert cancelled.resolution_reason == NO_PARTICIPANTS_REASON
    assert as_utc(cancelled.updated_at) == clock.now
    assert repo.get(future.id).status == BetStatus.ACTIVE.value

    [sent] = notifier.for_user(creator.id)
    assert sent.title == "Bet Cancelled"
    assert sent.priority == NotificationPriority.MEDIUM
    assert sent.related_bet_id == empty.id


def test_deadline_with_utc_offset_is_stored_as_the_same_instant(
    session, controller, bet_service, make_user, make_bet, clock
):
    # 19:00+05:00 is 14:00Z, two hours after the fixed clock.
    deadline = datetime(2026, 3, 2, 19, 0, tzinfo=timezone(timedelta(hours=5)))
    bet = make_bet(make_user(), deadline=deadline)
    session.expire_all()

    assert as_utc(BetRepository(session).get(bet.id).deadline) == datetime(
        2026, 3, 2, 14, 0, tzinfo=timezone.utc
    )

    clock.advance(hours=3)
    with pytest.raises(RuleViolationError, match="Bet deadline has passed"):
        bet_service.join_bet(bet.id, make_user().id, "B")
    result = controller.sweep_expired_bets()

    assert result.moved_to_pending == 1
    assert BetRepository(session).get(bet.id).status == BetStatus.PENDING_RESOLUTION.value


def test_sweep_is_idempotent(controller, make_user, make_bet, clock):
    make_bet(make_user(), deadline=clock.now + timedelta(hours=1))
    clock.advance(hours=2)

    first = controller.sweep_expired_bets()
    second = controller.sweep_expired_bets()

    assert first.moved_to_pending == 1
    assert second.checked == 0
    assert second.moved_to_pending == 0


def test_sweep_continues_after_a_failing_bet(
    session, controller, make_user, make_bet, clock, monkeypatch
):
    creator = make_user()
    broken = make_bet(creator, deadline=clock.now + timedelta(minutes=30))
    healthy = make_bet(creator, deadline=clock.now + timedelta(hours=1))
    clock.advance(hours=2)

    original = BetRepository.participant_count

    def flaky(self, bet_id):
        if bet_id == broken.id:
            raise RuntimeError("connection reset")
        return original(self, bet_id)

    monkeypatch.setattr(BetRepository, "participant_count", flaky)

    result = controller.sweep_expired_bets()

    assert result.errors == 1
    assert result.failures[0].item_id == broken.id
    assert result.failures[0].reason == "connection reset"
    assert result.moved_to_pending == 1
    assert BetRepository(session).get(healthy.id).status == BetStatus.PENDING_RESOLUTION.value
    assert BetRepository(session).get(broken.id).status == BetStatus.ACTIVE.value


def test_sweep_waits_between_writes(session, notifier, make_user, make_bet, clock):
    creator = make_user()
    make_bet(creator, deadline=clock.now + timedelta(hours=1))
    make_bet(creator, deadline=clock.now + timedelta(hours=1))
    clock.advance(hours=2)
    pauses: list[float] = []
    controller = BetLifecycleController(
        session,
        notifier=notifier,
        settings=Settings(database_url="sqlite://", sweep_write_delay_seconds=0.5),
        clock=clock,
        sleep=pauses.append,
    )

    controller.sweep_expired_bets()

    assert pauses == [0.5, 0.5]


def test_sweep_respects_limit(controller, make_user, make_bet, clock):
    creator = make_user()
    for _ in range(3):
        make_bet(creator, deadline=clock.now + timedelta(hours=1))
    clock.advance(hours=2)

    result = controller.sweep_expired_bets(limit=2)

    assert result.checked == 2
