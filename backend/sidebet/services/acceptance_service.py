"""Participant acceptance of a creator's resolution and the early-closure it can trigger."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable

from loguru import logger
from sqlalchemy.orm import Session

from sidebet.core.config import Settings, get_settings
from sidebet.domain import AcceptanceProgress, RuleResult
from sidebet.models import Bet, BetStatus, NotificationPriority, NotificationType, utcnow
from sidebet.repositories import BetRepository

from .notifier import DatabaseNotifier, Notifier


class AcceptanceService:
    def __init__(
        self,
        session: Session,
        *,
        notifier: Notifier | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._bets = BetRepository(session)
        self._notifier = notifier or DatabaseNotifier(session, clock=clock)
        self._settings = settings or get_settings()
        self._clock = clock

    def accept_bet_result(self, bet_id: str, user_id: str) -> RuleResult:
        bet = self._bets.get(bet_id)
        if bet is None:
            return RuleResult.failure("Bet not found")
        if bet.creator_id == user_id:
            return RuleResult.failure("The bet creator's resolution already counts as acceptance")
        if bet.status != BetStatus.PENDING_RESOLUTION.value:
            return RuleResult.failure("Bet is not pending resolution")
        if not bet.winning_side:
            return RuleResult.failure("Bet has not been resolved yet")

        participant = self._bets.get_participant(bet_id, user_id)
        if participant is None:
            return RuleResult.failure("You are not a participant in this bet")
        if participant.has_accepted_result:
            return RuleResult.success(already_accepted=True, all_accepted=False)

        now = self._clock()
        self._bets.update_participant(participant, has_accepted_result=True, accepted_result_at=now)
        logger.info("User {} accepted the result of bet {}", user_id, bet_id)

        progress = self.acceptance_progress(bet_id)
        if progress.all_accepted:
            self._close_early(bet, now)
            return RuleResult.success(already_accepted=False, all_accepted=True)

        self._notifier.notify(
            bet.creator_id,
            NotificationType.BET_RESOLVED,
            "Bet Result Accepted",
            f"{progress.accepted} of {progress.total} participants have accepted "
            f'the result for "{bet.title}"',
            NotificationPriority.MEDIUM,
            related_bet_id=bet.id,
            related_user_id=user_id,
        )
        return RuleResult.success(already_accepted=False, all_accepted=False)

    def acceptance_progress(self, bet_id: str) -> AcceptanceProgress:
        bet = self._bets.get(bet_id)
        if bet is None:
            return AcceptanceProgress(total=0, accepted=0)
        others = self._bets.non_creator_participants(bet)
        accepted = [item.user_id for item in others if item.has_accepted_result]
        return AcceptanceProgress(total=len(others), accepted=len(accepted), accepted_user_ids=accepted)

    def check_if_all_accepted(self, bet_id: str) -> bool:
        """False when nobody besides the creator joined; payouts handle that case."""

        return self.acceptance_progress(bet_id).all_accepted

    def has_user_accepted(self, bet_id: str, user_id: str) -> bool:
        participant = self._bets.get_participant(bet_id, user_id)
        return bool(participant and participant.has_accepted_result)

    def _close_early(self, bet: Bet, now: datetime) -> None:
        backdated = now - timedelta(minutes=self._settings.early_closure_backdate_minutes)
        self._bets.update(bet, dispute_window_ends_at=backdated)
        logger.info("All participants accepted bet {}; dispute window closed at {}", bet.id, backdated)

        for participant in self._bets.participants(bet.id):
            if participant.side == bet.winning_side:
                message = (
                    "All participants accepted the result! "
                    f"You'll receive ${participant.payout:.2f} within 5 minutes."
                )
            else:
                message = "All participants accepted the result. Better luck next time!"
            self._notifier.notify(
                participant.user_id,
                NotificationType.BET_RESOLVED,
                "Bet Closing Early!",
                message,
                NotificationPriority.HIGH,
                related_bet_id=bet.id,
            )

        self._notifier.notify(
            bet.creator_id,
            NotificationType.BET_RESOLVED,
            "Bet Accepted by All!",
            f'All participants accepted the result for "{bet.title}". '
            "Bet will close within 5 minutes.",
            NotificationPriority.HIGH,
            related_bet_id=bet.id,
        )
