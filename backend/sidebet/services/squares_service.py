"""Squares games: purchases, grid locking, period payouts, and the scheduled sweep."""

from __future__ import annotations

import random
from collections.abc import Sequence
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable

from loguru import logger
from sqlalchemy.orm import Session

from sidebet.core.config import Settings, get_settings
from sidebet.domain import SquaresSweepResult, SweepFailure, round_money
from sidebet.errors import NotFoundError, RuleViolationError
from sidebet.models import (
    EventStatus,
    LiveEvent,
    NotificationPriority,
    NotificationType,
    SquaresGame,
    SquaresGameStatus,
    SquaresPayout,
    SquaresPeriod,
    SquaresPurchase,
    TransactionStatus,
    TransactionType,
    as_utc,
    utcnow,
)
from sidebet.repositories import GRID_SIZE, LedgerRepository, SquaresRepository, UserRepository

from .notifier import DatabaseNotifier, Notifier

PERIODS = (1, 2, 3, 4)
HOUSE_OWNER = "HOUSE"
NO_PURCHASES_REASON = "No squares purchased"
EVENT_NOT_FOUND_REASON = "Event not found"


def validate_payout_structure(structure: dict[str, float]) -> dict[str, float]:
    expected = {f"period{period}" for period in PERIODS}
    if set(structure) != expected:
        raise RuleViolationError("Payout structure must define period1 through period4")
    if any(value < 0 for value in structure.values()):
        raise RuleViolationError("Payout percentages cannot be negative")
    if abs(sum(structure.values()) - 1.0) > 0.001:
        raise RuleViolationError("Payout percentages must total 100%")
    return {key: float(value) for key, value in structure.items()}


def calculate_period_payout(
    period: int, total_pot: float, structure: dict[str, float], fee_rate: float = 0.03
) -> float:
    gross = Decimal(str(total_pot)) * Decimal(str(structure[f"period{period}"]))
    return round_money(gross - gross * Decimal(str(fee_rate)))


def find_winning_purchase(
    game: SquaresGame,
    purchases: Sequence[SquaresPurchase],
    home_score: int,
    away_score: int,
) -> SquaresPurchase | None:
    """Return the purchase on the winning cell, or ``None`` for an unsold cell."""

    if not game.numbers_assigned or not game.row_numbers or not game.col_numbers:
        return None
    try:
        row = list(game.row_numbers).index(home_score % 10)
        col = list(game.col_numbers).index(away_score % 10)
    except ValueError:
        return None
    for purchase in purchases:
        if purchase.grid_row == row and purchase.grid_col == col:
            return purchase
    return None


class SquaresService:
    """User-facing squares operations plus the grid transitions the sweep shares."""

    def __init__(
        self,
        session: Session,
        *,
        notifier: Notifier | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
        rng: random.Random | None = None,
    ) -> None:
        self._session = session
        self._squares = SquaresRepository(session)
        self._users = UserRepository(session)
        self._ledger = LedgerRepository(session)
        self._notifier = notifier or DatabaseNotifier(session, clock=clock)
        self._settings = settings or get_settings()
        self._clock = clock
        self._rng = rng or random.Random()

    # ------------------------------------------------------------------
    # Create / purchase

    def create_game(
        self,
        creator_id: str,
        event_id: str,
        title: str,
        price_per_square: float,
        *,
        payout_structure: dict[str, float] | None = None,
        description: str | None = None,
        is_private: bool = False,
    ) -> SquaresGame:
        if self._users.get(creator_id) is None:
            raise NotFoundError(f"User {creator_id} not found")
        if price_per_square is None or price_per_square <= 0:
            raise RuleViolationError("Price per square must be positive")
        structure = validate_payout_structure(
            payout_structure or dict(self._settings.squares_default_payout_structure)
        )
        event = self._squares.get_event(event_id)
        if event is None:
            raise NotFoundError(EVENT_NOT_FOUND_REASON)

        now = self._clock()
        game = self._squares.create_game(
            creator_id=creator_id,
            event_id=event_id,
            title=title,
            description=description,
            price_per_square=round_money(price_per_square),
            payout_structure=structure,
            locks_at=as_utc(event.scheduled_time),
            is_private=is_private,
            status=SquaresGameStatus.ACTIVE.value,
            created_at=now,
            updated_at=now,
        )
        logger.info("Squares game {} created for event {}", game.id, event_id)
        return game

    def purchase_squares(
        self,
        game_id: str,
        user_id: str,
        owner_name: str,
        squares: Sequence[tuple[int, int]],
    ) -> list[SquaresPurchase]:
        game = self.get_game(game_id)
        if game.status != SquaresGameStatus.ACTIVE.value:
            raise RuleViolationError("Squares game is not open for purchases")
        cells = [(int(row), int(col)) for row, col in squares]
        if not cells:
            raise RuleViolationError("Select at least one square")
        for row, col in cells:
            if not (0 <= row <= 9 and 0 <= col <= 9):
                raise RuleViolationError(f"Square ({row}, {col}) is outside the 10x10 grid")
        if len(set(cells)) != len(cells):
            raise RuleViolationError("Duplicate squares in request")
        taken = self._squares.taken_cells(game.id, cells)
        if taken:
            listed = ", ".join(f"({row}, {col})" for row, col in sorted(taken))
            raise RuleViolationError(f"Squares already purchased: {listed}")

        user = self._users.get(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        total = round_money(Decimal(str(game.price_per_square)) * len(cells))
        if user.balance < total:
            raise RuleViolationError("Insufficient balance")

        now = self._clock()
        before = user.balance
        after = round_money(before - total)
        transaction = self._ledger.create(
            user_id=user_id,
            type=TransactionType.SQUARES_PURCHASE.value,
            status=TransactionStatus.COMPLETED.value,
            amount=total,
            actual_amount=total,
            balance_before=before,
            balance_after=after,
            related_squares_game_id=game.id,
            notes=f"Purchased {len(cells)} squares in {game.title}",
            created_at=now,
            completed_at=now,
        )
        self._users.update(user, balance=after)

        purchases = [
            self._squares.add_purchase(
                squares_game_id=game.id,
                user_id=user_id,
                owner_name=owner_name,
                grid_row=row,
                grid_col=col,
                amount=game.price_per_square,
                transaction_id=transaction.id,
                purchased_at=now,
            )
            for row, col in cells
        ]
        sold = game.squares_sold + len(cells)
        self._squares.update_game(
            game,
            squares_sold=sold,
            total_pot=round_money(game.total_pot + total),
            updated_at=now,
        )

        plural = "s" if len(cells) > 1 else ""
        self._notifier.notify(
            user_id,
            NotificationType.SQUARES_PURCHASE_CONFIRMED,
            "Squares Purchased!",
            f"You bought {len(cells)} square{plural} for {owner_name}. Grid: {sold}/{GRID_SIZE}",
            NotificationPriority.MEDIUM,
            action_data={"squares_game_id": game.id},
        )

        if sold >= GRID_SIZE:
            self.lock_grid(game)
        return purchases

    def get_game(self, game_id: str) -> SquaresGame:
        game = self._squares.get_game(game_id)
        if game is None:
            raise NotFoundError("Squares game not found")
        return game

    # ------------------------------------------------------------------
    # Transitions

    def lock_grid(self, game: SquaresGame) -> SquaresGameStatus | None:
        """Assign row/column numbers, or cancel a grid nobody bought into."""

        now = self._clock()
        if game.squares_sold == 0:
            if not self._squares.transition_status(
                game.id,
                SquaresGameStatus.ACTIVE,
                SquaresGameStatus.CANCELLED,
                now=now,
                resolution_reason=NO_PURCHASES_REASON,
            ):
                return None
            self._notifier.notify(
                game.creator_id,
                NotificationType.SQUARES_GAME_CANCELLED,
                "Game Cancelled",
                f'"{game.title}" was cancelled because no squares were purchased.',
                NotificationPriority.MEDIUM,
                action_data={"squares_game_id": game.id},
            )
            return SquaresGameStatus.CANCELLED

        row_numbers = list(range(10))
        col_numbers = list(range(10))
        self._rng.shuffle(row_numbers)
        self._rng.shuffle(col_numbers)
        if not self._squares.transition_status(
            game.id,
            SquaresGameStatus.ACTIVE,
            SquaresGameStatus.LOCKED,
            now=now,
            row_numbers=row_numbers,
            col_numbers=col_numbers,
            numbers_assigned=True,
        ):
            return None

        for buyer_id in self._squares.buyer_ids(game.id):
            self._notifier.notify(
                buyer_id,
                NotificationType.SQUARES_GRID_LOCKED,
                "Numbers Assigned!",
                f'Grid is locked for "{game.title}". Numbers have been assigned. Good luck!',
                NotificationPriority.HIGH,
                action_data={"squares_game_id": game.id},
            )
        logger.info("Squares game {} locked with {} squares sold", game.id, game.squares_sold)
        return SquaresGameStatus.LOCKED

    def start_game(self, game: SquaresGame) -> bool:
        if not self._squares.transition_status(
            game.id, SquaresGameStatus.LOCKED, SquaresGameStatus.LIVE, now=self._clock()
        ):
            return False
        for buyer_id in self._squares.buyer_ids(game.id):
            self._notifier.notify(
                buyer_id,
                NotificationType.SQUARES_GAME_LIVE,
                "Game is LIVE!",
                f'"{game.title}" has started. Watch the scores!',
                NotificationPriority.HIGH,
                action_data={"squares_game_id": game.id},
            )
        logger.info("Squares game {} is live", game.id)
        return True

    def cancel_game(
        self,
        game: SquaresGame,
        reason: str,
        *,
        expected: Sequence[SquaresGameStatus] = (SquaresGameStatus.ACTIVE, SquaresGameStatus.LOCKED),
    ) -> bool:
        """Cancel the game and refund each buyer's aggregated spend."""

        now = self._clock()
        if not self._squares.transition_status(
            game.id, expected, SquaresGameStatus.CANCELLED, now=now, resolution_reason=reason
        ):
            return False

        refunds = self._squares.spend_by_buyer(game.id)
        for user_id, amount in sorted(refunds.items()):
            user = self._users.get(user_id)
            if user is None:
                logger.warning("Buyer {} of squares game {} no longer exists", user_id, game.id)
                continue
            amount = round_money(amount)
            before = user.balance
            after = round_money(before + amount)
            self._ledger.create(
                user_id=user_id,
                type=TransactionType.SQUARES_REFUND.value,
                status=TransactionStatus.COMPLETED.value,
                amount=amount,
                actual_amount=amount,
                balance_before=before,
                balance_after=after,
                related_squares_game_id=game.id,
                notes="Game cancelled - refund",
                created_at=now,
                completed_at=now,
            )
            self._users.update(user, balance=after)
            self._notifier.notify(
                user_id,
                NotificationType.SQUARES_GAME_CANCELLED,
                "Game Cancelled",
                f'"{game.title}" was cancelled. You received a ${amount:.2f} refund.',
                NotificationPriority.MEDIUM,
                action_data={"squares_game_id": game.id},
            )
        logger.info("Squares game {} cancelled ({}); refunded {} buyers", game.id, reason, len(refunds))
        return True

    def pay_period(
        self, game: SquaresGame, period: int, home_score: int, away_score: int
    ) -> SquaresPayout:
        """Record the payout for one period and credit the winning buyer."""

        now = self._clock()
        purchase = find_winning_purchase(game, self._squares.purchases(game.id), home_score, away_score)
        record: dict[str, Any] = {
            "squares_game_id": game.id,
            "period": SquaresPeriod.for_number(period).value,
            "home_score": home_score % 10,
            "away_score": away_score % 10,
            "home_score_full": home_score,
            "away_score_full": away_score,
            "status": TransactionStatus.COMPLETED.value,
            "created_at": now,
            "paid_at": now,
        }

        if purchase is None:
            house = self._squares.add_payout(
                squares_purchase_id=None,
                user_id=game.creator_id,
                owner_name=HOUSE_OWNER,
                amount=0.0,
                **record,
            )
            self._notifier.notify(
                game.creator_id,
                NotificationType.SQUARES_PERIOD_WINNER,
                "Unsold Square Won",
                f'Period {period} in "{game.title}" won by unsold square '
                f"({away_score % 10}-{home_score % 10}). No payout issued.",
                NotificationPriority.MEDIUM,
                action_data={"squares_game_id": game.id},
            )
            return house

        amount = calculate_period_payout(
            period, game.total_pot, game.payout_structure, self._settings.platform_fee_rate
        )
        payout = self._squares.add_payout(
            squares_purchase_id=purchase.id,
            user_id=purchase.user_id,
            owner_name=purchase.owner_name,
            amount=amount,
            **record,
        )
        user = self._users.get(purchase.user_id)
        if user is None:
            raise NotFoundError(f"User {purchase.user_id} not found")
        before = user.balance
        after = round_money(before + amount)
        self._ledger.create(
            user_id=user.id,
            type=TransactionType.SQUARES_PAYOUT.value,
            status=TransactionStatus.COMPLETED.value,
            amount=amount,
            actual_amount=amount,
            balance_before=before,
            balance_after=after,
            related_squares_game_id=game.id,
            notes=f"{payout.period} winner payout",
            created_at=now,
            completed_at=now,
        )
        self._users.update(
            user, balance=after, total_winnings=round_money(user.total_winnings + amount)
        )

        if purchase.owner_name == user.display_name:
            message = f"You won Period {period}! ${amount:.2f}"
        else:
            message = (
                f'Square for "{purchase.owner_name}" won Period {period}! '
                f"You received ${amount:.2f}"
            )
        self._notifier.notify(
            user.id,
            NotificationType.SQUARES_PERIOD_WINNER,
            "Winner!",
            message,
            NotificationPriority.HIGH,
            action_data={"squares_game_id": game.id, "payout_id": payout.id},
        )
        return payout


class SquaresSweep:
    """Scheduled pass that advances squares games through their lifecycle."""

    def __init__(
        self,
        session: Session,
        *,
        notifier: Notifier | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
        rng: random.Random | None = None,
    ) -> None:
        self._session = session
        self._squares = SquaresRepository(session)
        self._settings = settings or get_settings()
        self._clock = clock
        self._service = SquaresService(
            session, notifier=notifier, settings=self._settings, clock=clock, rng=rng
        )

    def run(self) -> SquaresSweepResult:
        result = SquaresSweepResult()
        self.lock_ready_grids(result)
        self.start_live_games(result)
        self.pay_periods(result)
        self.resolve_finished_games(result)
        self.cancel_for_cancelled_events(result)
        logger.info(
            "Squares sweep finished: locked={}, started={}, periods_paid={}, resolved={}, "
            "cancelled={}, errors={}",
            result.locked,
            result.started,
            result.periods_paid,
            result.resolved,
            result.cancelled,
            result.errors,
        )
        return result

    def lock_ready_grids(self, result: SquaresSweepResult) -> None:
        for game in self._squares.games_ready_to_lock(self._clock()):
            outcome = self._guarded(result, game, lambda: self._service.lock_grid(game))
            if outcome == SquaresGameStatus.LOCKED:
                result.locked += 1
            elif outcome == SquaresGameStatus.CANCELLED:
                result.cancelled += 1

    def start_live_games(self, result: SquaresSweepResult) -> None:
        for game in self._squares.games_with_status(SquaresGameStatus.LOCKED):
            outcome = self._guarded(result, game, lambda: self._start(game))
            if outcome == SquaresGameStatus.LIVE:
                result.started += 1
            elif outcome == SquaresGameStatus.CANCELLED:
                result.cancelled += 1

    def pay_periods(self, result: SquaresSweepResult) -> None:
        for game in self._squares.games_with_status(SquaresGameStatus.LIVE):
            event = self._squares.get_event(game.event_id)
            if event is None or not event.home_period_scores or not event.away_period_scores:
                continue
            if not self._squares.purchases(game.id):
                continue
            paid = self._squares.paid_periods(game.id)
            for period in PERIODS:
                if SquaresPeriod.for_number(period).value in paid:
                    continue
                index = period - 1
                if index >= len(event.home_period_scores) or index >= len(event.away_period_scores):
                    continue
                home = int(event.home_period_scores[index])
                away = int(event.away_period_scores[index])
                done = self._guarded(
                    result,
                    game,
                    lambda: self._service.pay_period(game, period, home, away),
                )
                if done:
                    result.periods_paid += 1

    def resolve_finished_games(self, result: SquaresSweepResult) -> None:
        for game in self._squares.games_with_status(SquaresGameStatus.LIVE):
            outcome = self._guarded(result, game, lambda: self._resolve(game))
            if outcome is not None:
                result.resolved += 1

    def cancel_for_cancelled_events(self, result: SquaresSweepResult) -> None:
        games = self._squares.games_with_status(SquaresGameStatus.ACTIVE, SquaresGameStatus.LOCKED)
        for game in games:
            event = self._squares.get_event(game.event_id)
            if event is None or event.status not in {
                EventStatus.CANCELLED.value,
                EventStatus.POSTPONED.value,
            }:
                continue
            cancelled = self._guarded(
                result, game, lambda: self._service.cancel_game(game, f"Event {event.status}")
            )
            if cancelled:
                result.cancelled += 1

    # ------------------------------------------------------------------
    # Helpers

    def _start(self, game: SquaresGame) -> SquaresGameStatus | None:
        now = self._clock()
        event = self._squares.get_event(game.event_id)
        if event is None:
            logger.warning("Event {} missing for squares game {}; cancelling", game.event_id, game.id)
            cancelled = self._service.cancel_game(
                game, EVENT_NOT_FOUND_REASON, expected=(SquaresGameStatus.LOCKED,)
            )
            return SquaresGameStatus.CANCELLED if cancelled else None

        grace = timedelta(hours=self._settings.squares_start_grace_hours)
        overdue = now - as_utc(event.scheduled_time) >= grace
        if event.status != EventStatus.LIVE.value and not overdue:
            return None
        return SquaresGameStatus.LIVE if self._service.start_game(game) else None

    def _resolve(self, game: SquaresGame) -> SquaresGameStatus | None:
        now = self._clock()
        event: LiveEvent | None = self._squares.get_event(game.event_id)
        if event is None:
            moved = self._squares.transition_status(
                game.id,
                SquaresGameStatus.LIVE,
                SquaresGameStatus.PENDING_RESOLUTION,
                now=now,
                resolution_reason=EVENT_NOT_FOUND_REASON,
            )
            return SquaresGameStatus.PENDING_RESOLUTION if moved else None

        stale = now - as_utc(game.locks_at) > timedelta(days=self._settings.squares_stale_days)
        if event.status != EventStatus.FINISHED.value and not stale:
            return None

        paid = len(self._squares.payouts(game.id))
        if paid == len(PERIODS):
            moved = self._squares.transition_status(
                game.id, SquaresGameStatus.LIVE, SquaresGameStatus.RESOLVED, now=now
            )
            return SquaresGameStatus.RESOLVED if moved else None

        logger.warning("Squares game {} missing period data ({}/4 periods)", game.id, paid)
        moved = self._squares.transition_status(
            game.id,
            SquaresGameStatus.LIVE,
            SquaresGameStatus.PENDING_RESOLUTION,
            now=now,
            resolution_reason=f"Missing period score data ({paid}/4 periods)",
        )
        return SquaresGameStatus.PENDING_RESOLUTION if moved else None

    def _guarded(self, result: SquaresSweepResult, game: SquaresGame, step: Callable[[], Any]) -> Any:
        try:
            with self._session.begin_nested():
                return step()
        except Exception as exc:
            logger.exception("Squares sweep step failed for game {}", game.id)
            result.errors += 1
            result.failures.append(SweepFailure(item_id=game.id, reason=str(exc)))
            return None
