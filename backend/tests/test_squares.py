from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from sidebet.errors import NotFoundError, RuleViolationError
from sidebet.models import EventStatus, SquaresGameStatus, TransactionType, as_utc
from sidebet.repositories import LedgerRepository, SquaresRepository
from sidebet.services.squares_service import (
    HOUSE_OWNER,
    NO_PURCHASES_REASON,
    SquaresService,
    SquaresSweep,
    calculate_period_payout,
    find_winning_purchase,
    validate_payout_structure,
)

DEFAULT_STRUCTURE = {"period1": 0.15, "period2": 0.25, "period3": 0.15, "period4": 0.45}
FULL_GRID = [(row, col) for row in range(10) for col in range(10)]


@pytest.fixture
def squares(session, notifier, test_settings, clock) -> SquaresService:
    return SquaresService(
        session, notifier=notifier, settings=test_settings, clock=clock, rng=random.Random(7)
    )


@pytest.fixture
def sweep(session, notifier, test_settings, clock) -> SquaresSweep:
    return SquaresSweep(
        session, notifier=notifier, settings=test_settings, clock=clock, rng=random.Random(7)
    )


@pytest.fixture
def make_event(session, clock):
    def _make(*, starts_in: timedelta = timedelta(hours=1), status: EventStatus = EventStatus.UPCOMING):
        return SquaresRepository(session).create_event(
            home_team="Chiefs",
            away_team="Eagles",
            status=status.value,
            scheduled_time=clock.now + starts_in,
        )

    return _make


@pytest.fixture
def make_game(squares, make_user, make_event):
    def _make(creator=None, *, event=None, price: float = 5.0):
        creator = creator or make_user("host")
        event = event or make_event()
        return squares.create_game(creator.id, event.id, "Big Game Squares", price)

    return _make


def test_validate_payout_structure():
    assert validate_payout_structure(DEFAULT_STRUCTURE) == DEFAULT_STRUCTURE

    with pytest.raises(RuleViolationError, match="period1 through period4"):
        validate_payout_structure({"period1": 1.0})
    with pytest.raises(RuleViolationError, match="must total 100%"):
        validate_payout_structure({"period1": 0.25, "period2": 0.25, "period3": 0.25, "period4": 0.2})


def test_period_payout_takes_platform_fee():
    assert calculate_period_payout(4, 100.0, DEFAULT_STRUCTURE) == 43.65
    assert calculate_period_payout(1, 100.0, DEFAULT_STRUCTURE) == 14.55
    assert calculate_period_payout(2, 100.0, DEFAULT_STRUCTURE, fee_rate=0.0) == 25.0


def test_find_winning_purchase_uses_last_digits():
    game = SimpleNamespace(
        numbers_assigned=True,
        row_numbers=[3, 1, 4, 0, 5, 9, 2, 6, 8, 7],
        col_numbers=[7, 2, 9, 0, 1, 3, 5, 4, 6, 8],
    )
    winner = SimpleNamespace(grid_row=9, grid_col=1)
    other = SimpleNamespace(grid_row=0, grid_col=0)

    assert find_winning_purchase(game, [other, winner], 17, 22) is winner
    assert find_winning_purchase(game, [other], 17, 22) is None
    unassigned = SimpleNamespace(numbers_assigned=False, row_numbers=None, col_numbers=None)
    assert find_winning_purchase(unassigned, [winner], 17, 22) is None


def test_create_game_validation(squares, make_user, make_event):
    host = make_user()
    event = make_event()

    with pytest.raises(RuleViolationError, match="Price per square must be positive"):
        squares.create_game(host.id, event.id, "Squares", 0)
    with pytest.raises(RuleViolationError):
        squares.create_game(host.id, event.id, "Squares", 5, payout_structure={"period1": 1.0})
    with pytest.raises(NotFoundError, match="Event not found"):
        squares.create_game(host.id, "missing-event", "Squares", 5)
    with pytest.raises(NotFoundError):
        squares.create_game("ghost", event.id, "Squares", 5)

    game = squares.create_game(host.id, event.id, "Squares", 5)
    assert game.status == SquaresGameStatus.ACTIVE.value
    assert game.payout_structure == DEFAULT_STRUCTURE
    assert game.locks_at == event.scheduled_time


def test_purchase_debits_and_records_cells(session, squares, notifier, make_game, make_user):
    game = make_game(price=5.0)
    buyer = make_user("buyer")

    purchases = squares.purchase_squares(game.id, buyer.id, "Uncle Bob", [(0, 1), (2, 3)])

    assert [(item.grid_row, item.grid_col) for item in purchases] == [(0, 1), (2, 3)]
    assert buyer.balance == 490.0
    assert game.squares_sold == 2
    assert game.total_pot == 10.0
    [debit] = LedgerRepository(session).list(user_id=buyer.id, type=TransactionType.SQUARES_PURCHASE)
    assert debit.amount == 10.0
    sent = notifier.for_user(buyer.id)[-1]
    assert sent.title == "Squares Purchased!"
    assert sent.message == "You bought 2 squares for Uncle Bob. Grid: 2/100"


def test_purchase_rules(squares, make_game, make_user):
    game = make_game(price=5.0)
    buyer = make_user()
    squares.purchase_squares(game.id, buyer.id, "Buyer", [(4, 4)])

    with pytest.raises(RuleViolationError, match="Select at least one square"):
        squares.purchase_squares(game.id, buyer.id, "Buyer", [])
    with pytest.raises(RuleViolationError, match=r"Square \(10, 0\) is outside the 10x10 grid"):
        squares.purchase_squares(game.id, buyer.id, "Buyer", [(10, 0)])
    with pytest.raises(RuleViolationError, match="Duplicate squares in request"):
        squares.purchase_squares(game.id, buyer.id, "Buyer", [(1, 1), (1, 1)])
    with pytest.raises(RuleViolationError, match=r"Squares already purchased: \(4, 4\)"):
        squares.purchase_squares(game.id, buyer.id, "Buyer", [(4, 4), (5, 5)])
    with pytest.raises(RuleViolationError, match="Insufficient balance"):
        squares.purchase_squares(game.id, make_user(balance=4.0).id, "Broke", [(6, 6)])
    with pytest.raises(NotFoundError):
        squares.purchase_squares("missing", buyer.id, "Buyer", [(6, 6)])


def test_full_grid_locks_and_pays_every_period(session, squares, sweep, notifier, make_user, make_event, make_game, clock):
    event = make_event(starts_in=timedelta(hours=-3))
    game = make_game(event=event, price=1.0)
    buyer = make_user("buyer")

    squares.purchase_squares(game.id, buyer.id, "Buyer", FULL_GRID)

    assert game.status == SquaresGameStatus.LOCKED.value
    assert game.numbers_assigned is True
    assert sorted(game.row_numbers) == list(range(10))
    assert sorted(game.col_numbers) == list(range(10))
    assert "Numbers Assigned!" in notifier.titles(buyer.id)

    with pytest.raises(RuleViolationError, match="not open for purchases"):
        squares.purchase_squares(game.id, make_user().id, "Late", [(0, 0)])

    event.status = EventStatus.FINISHED.value
    event.home_period_scores = [7, 14, 17, 24]
    event.away_period_scores = [3, 10, 20, 27]
    session.flush()

    result = sweep.run()

    assert (result.started, result.periods_paid, result.resolved, result.errors) == (1, 4, 1, 0)
    payouts = SquaresRepository(session).payouts(game.id)
    assert sorted(item.period for item in payouts) == ["PERIOD_1", "PERIOD_2", "PERIOD_3", "PERIOD_4"]
    assert round(sum(item.amount for item in payouts), 2) == 97.0
    assert buyer.balance == pytest.approx(497.0)
    assert game.status == SquaresGameStatus.RESOLVED.value
    assert notifier.titles(buyer.id).count("Winner!") == 4
    assert "You won Period 4! $43.65" in [item.message for item in notifier.for_user(buyer.id)]

    assert sweep.run().periods_paid == 0


def test_unsold_winning_square_goes_to_house(session, sweep, squares, notifier, make_user, make_event, make_game, clock):
    host = make_user("host")
    event = make_event(starts_in=timedelta(hours=1))
    game = make_game(host, event=event)
    squares.purchase_squares(game.id, make_user().id, "Buyer", [(0, 0)])
    clock.advance(hours=1)

    assert sweep.run().locked == 1
    assert game.status == SquaresGameStatus.LOCKED.value

    event.status = EventStatus.LIVE.value
    event.home_period_scores = [game.row_numbers[1]]
    event.away_period_scores = [game.col_numbers[0]]
    session.flush()

    result = sweep.run()

    assert (result.started, result.periods_paid, result.resolved) == (1, 1, 0)
    [house] = SquaresRepository(session).payouts(game.id)
    assert house.owner_name == HOUSE_OWNER
    assert house.user_id == host.id
    assert house.amount == 0.0
    assert house.squares_purchase_id is None
    assert notifier.titles(host.id)[-1] == "Unsold Square Won"

    clock.advance(days=3)
    stale = sweep.run()

    assert stale.resolved == 1
    assert game.status == SquaresGameStatus.PENDING_RESOLUTION.value
    assert game.resolution_reason == "Missing period score data (1/4 periods)"


def test_cancelled_event_refunds_each_buyer_once(session, sweep, squares, notifier, make_user, make_event, make_game):
    event = make_event(starts_in=timedelta(days=1))
    game = make_game(event=event, price=5.0)
    alice = make_user("alice")
    bob = make_user("bob")
    squares.purchase_squares(game.id, alice.id, "Alice", [(0, 0)])
    squares.purchase_squares(game.id, alice.id, "Alice's kid", [(0, 1)])
    squares.purchase_squares(game.id, bob.id, "Bob", [(5, 5)])
    event.status = EventStatus.CANCELLED.value
    session.flush()

    result = sweep.run()

    assert result.cancelled == 1
    assert game.status == SquaresGameStatus.CANCELLED.value
    assert game.resolution_reason == "Event CANCELLED"
    assert alice.balance == 500.0
    assert bob.balance == 500.0
    [refund] = LedgerRepository(session).list(user_id=alice.id, type=TransactionType.SQUARES_REFUND)
    assert refund.amount == 10.0
    assert refund.notes == "Game cancelled - refund"
    assert notifier.titles(alice.id)[-1] == "Game Cancelled"


def test_locked_game_with_missing_event_is_cancelled(session, sweep, squares, make_user, make_game):
    game = make_game(price=5.0)
    buyer = make_user()
    squares.purchase_squares(game.id, buyer.id, "Buyer", [(3, 3)])
    squares.lock_grid(game)
    SquaresRepository(session).update_game(game, event_id="vanished-event")

    result = sweep.run()

    assert result.cancelled == 1
    assert game.status == SquaresGameStatus.CANCELLED.value
    assert game.resolution_reason == "Event not found"
    assert buyer.balance == 500.0


def test_locked_game_starts_after_grace_period(sweep, squares, make_user, make_event, make_game, clock):
    event = make_event(starts_in=timedelta(0))
    game = make_game(event=event)
    squares.purchase_squares(game.id, make_user().id, "Buyer", [(1, 2)])
    squares.lock_grid(game)

    clock.advance(hours=1)
    assert sweep.run().started == 0

    clock.advance(hours=1)
    assert sweep.run().started == 1
    assert game.status == SquaresGameStatus.LIVE.value


def test_grid_with_no_sales_is_cancelled_at_lock_time(sweep, notifier, make_user, make_event, make_game, clock):
    host = make_user("host")
    game = make_game(host, event=make_event(starts_in=timedelta(minutes=30)))
    clock.advance(hours=1)

    result = sweep.run()

    assert result.cancelled == 1
    assert result.locked == 0
    assert game.status == SquaresGameStatus.CANCELLED.value
    assert game.resolution_reason == NO_PURCHASES_REASON
    assert notifier.titles(host.id) == ["Game Cancelled"]


def test_event_time_with_utc_offset_locks_at_the_same_instant(session, sweep, squares, make_user, make_game, clock):
    # 18:00+05:00 is 13:00Z, one hour after the fixed clock.
    kickoff = datetime(2026, 3, 2, 18, 0, tzinfo=timezone(timedelta(hours=5)))
    event = SquaresRepository(session).create_event(
        home_team="Chiefs", away_team="Eagles", status=EventStatus.UPCOMING.value, scheduled_time=kickoff
    )
    game = make_game(event=event, price=2.0)
    squares.purchase_squares(game.id, make_user().id, "Buyer", [(4, 4)])
    session.expire_all()

    assert as_utc(SquaresRepository(session).get_game(game.id).locks_at) == datetime(
        2026, 3, 2, 13, 0, tzinfo=timezone.utc
    )

    clock.advance(hours=1, minutes=30)
    assert sweep.run().locked == 1
