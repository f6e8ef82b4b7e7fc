"""User actions that create bets, join them, resolve them, and cancel them."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable

from loguru import logger
from sqlalchemy.orm import Session

from sidebet.core.config import Settings, get_settings
from sidebet.domain import round_money, split_winnings
from sidebet.errors import NotFoundError, PermissionDeniedError, RuleViolationError
from sidebet.models import (
    Bet,
    BetStatus,
    NotificationPriority,
    NotificationType,
    Participant,
    ParticipantStatus,
    TransactionStatus,
    TransactionType,
    User,
    as_utc,
    utcnow,
)
from sidebet.repositories import BetRepository, LedgerRepository, UserRepository

from .bet_lifecycle import transition_bet
from .notifier import DatabaseNotifier, Notifier
from .trust_score_service import (
    LIMITED_THRESHOLD,
    TrustScoreService,
    can_create_bet,
    can_create_public_bet,
    max_bet_amount,
)

SIDES = ("A", "B")
RESOLVABLE_STATUSES = (BetStatus.ACTIVE, BetStatus.LIVE, BetStatus.PENDING_RESOLUTION)
CANCELLABLE_STATUSES = (BetStatus.DRAFT, BetStatus.ACTIVE)


class BetService:
    """Drive the bet state machine from creator and participant actions."""

    def __init__(
        self,
        session: Session,
        *,
        notifier: Notifier | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session = session
        self._bets = BetRepository(session)
        self._users = UserRepository(session)
        self._ledger = LedgerRepository(session)
        self._notifier = notifier or DatabaseNotifier(session, clock=clock)
        self._trust = TrustScoreService(session, clock=clock)
        self._settings = settings or get_settings()
        self._clock = clock

    # ------------------------------------------------------------------
    # Create / join

    def create_bet(
        self,
        creator_id: str,
        *,
        title: str,
        deadline: datetime,
        bet_amount: float,
        side: str = "A",
        description: str = "",
        side_a_name: str = "Side A",
        side_b_name: str = "Side B",
        is_private: bool = False,
        category: str = "CUSTOM",
    ) -> Bet:
        now = self._clock()
        creator = self._require_user(creator_id)
        score = creator.trust_score
        if not can_create_bet(score):
            raise PermissionDeniedError(
                f"Account restricted due to low trust score ({score:.1f}/10). Contact support."
            )
        if not is_private and not can_create_public_bet(score):
            raise PermissionDeniedError(
                f"Trust score too low ({score:.1f}/10). "
                f"Minimum {LIMITED_THRESHOLD} required for public bets."
            )
        if as_utc(deadline) <= now:
            raise RuleViolationError("Deadline must be in the future")
        amount = self._validate_stake(creator, bet_amount, side)

        bet = self._bets.create(
            title=title,
            description=description,
            category=category,
            status=BetStatus.ACTIVE.value,
            creator_id=creator_id,
            total_pot=amount,
            bet_amount=amount,
            side_a_name=side_a_name,
            side_b_name=side_b_name,
            deadline=as_utc(deadline),
            is_private=is_private,
            created_at=now,
            updated_at=now,
        )
        participant = self._bets.add_participant(
            bet_id=bet.id,
            user_id=creator_id,
            side=side,
            amount=amount,
            status=ParticipantStatus.ACCEPTED.value,
            joined_at=now,
        )
        self._debit_stake(creator, bet, participant, amount, now)
        logger.info("Bet {} created by {} with stake {:.2f}", bet.id, creator_id, amount)
        return bet

    def join_bet(
        self, bet_id: str, user_id: str, side: str, amount: float | None = None
    ) -> Participant:
        now = self._clock()
        bet = self._require_bet(bet_id)
        if bet.status != BetStatus.ACTIVE.value:
            raise RuleViolationError("Bet is not open for joining")
        if as_utc(bet.deadline) <= now:
            raise RuleViolationError("Bet deadline has passed")
        if self._bets.get_participant(bet_id, user_id) is not None:
            raise RuleViolationError("You have already joined this bet")

        user = self._require_user(user_id)
        stake = self._validate_stake(user, amount if amount is not None else bet.bet_amount, side)

        participant = self._bets.add_participant(
            bet_id=bet.id,
            user_id=user_id,
            side=side,
            amount=stake,
            status=ParticipantStatus.ACCEPTED.value,
            joined_at=now,
        )
        self._debit_stake(user, bet, participant, stake, now)
        self._bets.update(bet, total_pot=round_money(bet.total_pot + stake), updated_at=now)

        self._notifier.notify(
            bet.creator_id,
            NotificationType.BET_JOINED,
            "New Participant",
            f'{user.display_name or user.username} joined "{bet.title}" on '
            f"{bet.side_name(side)} with ${stake:.2f}",
            NotificationPriority.MEDIUM,
            related_bet_id=bet.id,
            related_user_id=user_id,
        )
        return participant

    # ------------------------------------------------------------------
    # Resolve / cancel

    def resolve_bet(self, bet_id: str, creator_id: str, winning_side: str) -> Bet:
        """Record the creator's verdict and stage PENDING payouts behind the dispute window."""

        now = self._clock()
        bet = self._require_bet(bet_id)
        if bet.creator_id != creator_id:
            raise PermissionDeniedError("Only the bet creator can resolve this bet")
        if winning_side not in SIDES:
            raise RuleViolationError("Winning side must be A or B")
        if BetStatus(bet.status) not in RESOLVABLE_STATUSES or bet.winning_side:
            raise RuleViolationError("Bet cannot be resolved in its current state")

        participants = self._bets.participants(bet.id)
        winners = [item for item in participants if item.side == winning_side]
        winner_stake = sum(item.amount for item in winners)

        moved = transition_bet(
            self._bets,
            bet.id,
            RESOLVABLE_STATUSES,
            BetStatus.PENDING_RESOLUTION,
            now=now,
            winning_side=winning_side,
            resolution_reason=f"Resolved by creator. Winner: {bet.side_name(winning_side)}",
            dispute_window_ends_at=now + timedelta(hours=self._settings.dispute_window_hours),
        )
        if not moved:
            raise RuleViolationError("Bet changed state while resolving; try again")

        for participant in participants:
            self._stage_outcome(bet, participant, winning_side, winner_stake, now)

        logger.info(
            "Bet {} resolved by creator for side {} ({} winners)", bet.id, winning_side, len(winners)
        )
        return bet

    def cancel_bet(self, bet_id: str, creator_id: str) -> Bet:
        now = self._clock()
        bet = self._require_bet(bet_id)
        if bet.creator_id != creator_id:
            raise PermissionDeniedError("Only the bet creator can cancel this bet")
        if BetStatus(bet.status) not in CANCELLABLE_STATUSES:
            raise RuleViolationError("Only draft or active bets can be cancelled")

        participants = self._bets.participants(bet.id)
        others = [item for item in participants if item.user_id != creator_id]
        prior_cancellations = self._bets.count_cancelled_after_join(
            creator_id, since=now - timedelta(days=30)
        )

        moved = transition_bet(
            self._bets,
            bet.id,
            CANCELLABLE_STATUSES,
            BetStatus.CANCELLED,
            now=now,
            resolution_reason="Cancelled by creator",
        )
        if not moved:
            raise RuleViolationError("Bet changed state while cancelling; try again")

        for participant in participants:
            self._refund_stake(bet, participant, now)

        if not others:
            self._trust.penalize_cancellation_before_joins(creator_id, bet.id, bet.title)
        else:
            repeated = prior_cancellations >= self._settings.repeated_cancellation_threshold
            self._trust.penalize_cancellation_after_joins(
                creator_id, bet.id, bet.title, repeated=repeated
            )

        for participant in others:
            self._notifier.notify(
                participant.user_id,
                NotificationType.BET_CANCELLED,
                "Bet Cancelled",
                f'"{bet.title}" was cancelled by the creator. '
                f"Your ${participant.amount:.2f} stake has been refunded.",
                NotificationPriority.MEDIUM,
                related_bet_id=bet.id,
            )
        return bet

    # ------------------------------------------------------------------
    # Helpers

    def _require_bet(self, bet_id: str) -> Bet:
        bet = self._bets.get(bet_id)
        if bet is None:
            raise NotFoundError("Bet not found")
        return bet

    def _require_user(self, user_id: str) -> User:
        user = self._users.get(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user

    def _validate_stake(self, user: User, amount: float | None, side: str) -> float:
        if side not in SIDES:
            raise RuleViolationError("Side must be A or B")
        if amount is None or amount <= 0:
            raise RuleViolationError("Bet amount must be positive")
        stake = round_money(amount)
        limit = max_bet_amount(user.trust_score)
        if stake > limit:
            raise RuleViolationError(
                f"Maximum bet amount for your trust score is ${limit:.2f}"
            )
        if user.balance < stake:
            raise RuleViolationError("Insufficient balance")
        return stake

    def _debit_stake(
        self, user: User, bet: Bet, participant: Participant, amount: float, now: datetime
    ) -> None:
        before = user.balance
        after = round_money(before - amount)
        self._ledger.create(
            user_id=user.id,
            type=TransactionType.BET_PLACED.value,
            status=TransactionStatus.COMPLETED.value,
            amount=amount,
            actual_amount=amount,
            balance_before=before,
            balance_after=after,
            related_bet_id=bet.id,
            related_participant_id=participant.id,
            notes=f"Bet placed: {bet.title}",
            created_at=now,
            completed_at=now,
        )
        self._users.update(user, balance=after, total_bets=user.total_bets + 1)

    def _refund_stake(self, bet: Bet, participant: Participant, now: datetime) -> None:
        user = self._require_user(participant.user_id)
        before = user.balance
        after = round_money(before + participant.amount)
        self._ledger.create(
            user_id=user.id,
            type=TransactionType.BET_CANCELLED.value,
            status=TransactionStatus.COMPLETED.value,
            amount=participant.amount,
            actual_amount=participant.amount,
            balance_before=before,
            balance_after=after,
            related_bet_id=bet.id,
            related_participant_id=participant.id,
            notes="Bet cancelled - refund",
            created_at=now,
            completed_at=now,
        )
        self._users.update(user, balance=after)

    def _stage_outcome(
        self,
        bet: Bet,
        participant: Participant,
        winning_side: str,
        winner_stake: float,
        now: datetime,
    ) -> None:
        is_winner = participant.side == winning_side
        payout = 0.0
        if is_winner and winner_stake > 0:
            payout = round_money(bet.total_pot * participant.amount / winner_stake)

        participant.payout = payout
        participant.status = (
            ParticipantStatus.ACCEPTED.value if is_winner else ParticipantStatus.DECLINED.value
        )
        user = self._require_user(participant.user_id)

        if is_winner and payout > 0:
            net, fee = split_winnings(payout, self._settings.platform_fee_rate)
            self._ledger.create(
                user_id=user.id,
                type=TransactionType.BET_WON.value,
                status=TransactionStatus.PENDING.value,
                amount=payout,
                actual_amount=net,
                platform_fee=fee,
                balance_before=user.balance,
                balance_after=round_money(user.balance + net),
                related_bet_id=bet.id,
                related_participant_id=participant.id,
                notes=f"Bet winnings (pending dispute window): {bet.title}",
                created_at=now,
            )
        elif not is_winner:
            self._ledger.create(
                user_id=user.id,
                type=TransactionType.BET_LOST.value,
                status=TransactionStatus.COMPLETED.value,
                amount=0.0,
                actual_amount=0.0,
                balance_before=user.balance,
                balance_after=user.balance,
                related_bet_id=bet.id,
                related_participant_id=participant.id,
                notes=f"Bet lost: {bet.title}",
                created_at=now,
                completed_at=now,
            )

        if participant.user_id == bet.creator_id:
            return
        if is_winner:
            net, _ = split_winnings(payout, self._settings.platform_fee_rate)
            title = "Bet Won! (Pending)"
            message = (
                f'You won ${net:.2f} on "{bet.title}". Funds will be available in '
                f"{self._settings.dispute_window_hours} hours if no disputes are filed."
            )
            priority = NotificationPriority.HIGH
        else:
            title = "Bet Lost"
            message = f'You lost on "{bet.title}". The winner was {bet.side_name(winning_side)}.'
            priority = NotificationPriority.MEDIUM
        self._notifier.notify(
            participant.user_id,
            NotificationType.BET_RESOLVED,
            title,
            message,
            priority,
            related_bet_id=bet.id,
        )
