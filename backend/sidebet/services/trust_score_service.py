"""Trust score adjustments, history, and the capability gates derived from the score."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from loguru import logger
from sqlalchemy.orm import Session

from sidebet.errors import NotFoundError
from sidebet.models import (
    MAX_TRUST_SCORE,
    MIN_TRUST_SCORE,
    BetStatus,
    TrustScoreHistory,
    utcnow,
)
from sidebet.repositories import BetRepository, UserRepository

RESTRICTED_THRESHOLD = 2.0
LIMITED_THRESHOLD = 4.0
NORMAL_THRESHOLD = 6.0
TRUSTED_THRESHOLD = 8.0


class TrustChange:
    """Fixed trust score deltas."""

    FAILED_TRANSACTION = -3.0
    LOST_DISPUTE_CREATOR = -2.0
    REPEATED_CANCELLATIONS = -2.0
    CANCELLATION_AFTER_JOINS = -0.6
    EXPIRED_NO_RESOLUTION = -0.8
    LOST_DISPUTE_PARTICIPANT = -0.4
    MULTIPLE_PENDING_DISPUTES = -0.3
    CANCELLED_BEFORE_JOINS = -0.2
    SLOW_RESOLUTION = -0.1

    CLEAN_RESOLUTION = 0.2
    SUCCESSFUL_WITHDRAWAL = 0.15
    SUCCESSFUL_DEPOSIT = 0.1
    WON_DISPUTE_PARTICIPANT = 0.3
    DISPUTE_DISMISSED = 0.2
    MILESTONE_10_BETS = 0.5
    MILESTONE_25_BETS = 1.0
    MILESTONE_50_BETS = 1.5
    CLEAN_30_DAYS = 0.3


MILESTONES: dict[int, tuple[float, str]] = {
    10: (TrustChange.MILESTONE_10_BETS, "Milestone: 10 bets resolved fairly"),
    25: (TrustChange.MILESTONE_25_BETS, "Milestone: 25 bets resolved fairly"),
    50: (TrustChange.MILESTONE_50_BETS, "Milestone: 50 bets resolved fairly - super user status!"),
}


@dataclass(slots=True)
class WithdrawalPolicy:
    allowed: bool
    delay_days: int | None
    reason: str


def clamp_score(value: float) -> float:
    return round(max(MIN_TRUST_SCORE, min(MAX_TRUST_SCORE, value)), 2)


def can_create_bet(score: float) -> bool:
    return score >= RESTRICTED_THRESHOLD


def can_create_public_bet(score: float) -> bool:
    return score >= LIMITED_THRESHOLD


def can_withdraw(score: float) -> WithdrawalPolicy:
    if score < RESTRICTED_THRESHOLD:
        return WithdrawalPolicy(
            allowed=False,
            delay_days=None,
            reason=f"Withdrawals disabled due to low trust score ({score:.1f}/10). Contact support.",
        )
    if score < LIMITED_THRESHOLD:
        return WithdrawalPolicy(
            allowed=True,
            delay_days=7,
            reason=f"Withdrawal will be delayed 7 days due to low trust score ({score:.1f}/10).",
        )
    if score >= TRUSTED_THRESHOLD:
        return WithdrawalPolicy(True, 0, "Trusted user - same-day withdrawal processing")
    if score >= NORMAL_THRESHOLD:
        return WithdrawalPolicy(True, 3, "Normal withdrawal processing (3 days)")
    return WithdrawalPolicy(True, 5, "Standard withdrawal processing")


def max_bet_amount(score: float) -> float:
    if score < RESTRICTED_THRESHOLD:
        return 0.0
    if score < LIMITED_THRESHOLD:
        return 25.0
    if score < NORMAL_THRESHOLD:
        return 100.0
    if score < TRUSTED_THRESHOLD:
        return 250.0
    return 500.0


def trust_tier(score: float) -> str:
    if score < RESTRICTED_THRESHOLD:
        return "Restricted"
    if score < LIMITED_THRESHOLD:
        return "Low Trust"
    if score < NORMAL_THRESHOLD:
        return "Neutral"
    if score < TRUSTED_THRESHOLD:
        return "Trusted"
    return "Highly Trusted"


class TrustScoreService:
    """Apply clamped trust score changes and record each one in the history."""

    def __init__(self, session: Session, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._users = UserRepository(session)
        self._bets = BetRepository(session)
        self._clock = clock

    def get_score(self, user_id: str) -> float:
        user = self._users.get(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user.trust_score

    def apply_change(
        self,
        user_id: str,
        delta: float,
        reason: str,
        *,
        related_bet_id: str | None = None,
        related_transaction_id: str | None = None,
        related_dispute_id: str | None = None,
    ) -> float:
        user = self._users.get(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")

        previous = user.trust_score
        new_score = clamp_score(previous + float(delta))
        self._users.update(user, trust_score=new_score)
        self._users.append_trust_history(
            user_id=user_id,
            change=float(delta),
            new_score=new_score,
            reason=reason,
            related_bet_id=related_bet_id,
            related_transaction_id=related_transaction_id,
            related_dispute_id=related_dispute_id,
            created_at=self._clock(),
        )
        logger.info(
            "Trust score for {} moved {:.2f} -> {:.2f} ({:+}): {}",
            user_id,
            previous,
            new_score,
            float(delta),
            reason,
        )
        return new_score

    def trust_history(self, user_id: str, limit: int = 20) -> list[TrustScoreHistory]:
        return self._users.trust_history(user_id, limit=limit)

    def capabilities(self, user_id: str) -> dict[str, object]:
        score = self.get_score(user_id)
        withdrawal = can_withdraw(score)
        return {
            "trust_score": score,
            "tier": trust_tier(score),
            "can_create_bet": can_create_bet(score),
            "can_create_public_bet": can_create_public_bet(score),
            "can_withdraw": withdrawal.allowed,
            "withdrawal_delay_days": withdrawal.delay_days,
            "withdrawal_reason": withdrawal.reason,
            "max_bet_amount": max_bet_amount(score),
        }

    # ------------------------------------------------------------------
    # Penalties

    def penalize_failed_transaction(
        self, user_id: str, transaction_id: str, transaction_type: str
    ) -> float:
        return self.apply_change(
            user_id,
            TrustChange.FAILED_TRANSACTION,
            f"Failed {transaction_type.lower()} - fraud attempt detected",
            related_transaction_id=transaction_id,
        )

    def penalize_lost_dispute_creator(self, user_id: str, bet_id: str, dispute_id: str) -> float:
        return self.apply_change(
            user_id,
            TrustChange.LOST_DISPUTE_CREATOR,
            "Lost dispute - bet resolved unfairly",
            related_bet_id=bet_id,
            related_dispute_id=dispute_id,
        )

    def penalize_expired_unresolved(self, user_id: str, bet_id: str, bet_title: str) -> float:
        return self.apply_change(
            user_id,
            TrustChange.EXPIRED_NO_RESOLUTION,
            f'Failed to resolve bet "{bet_title}" within 24h of deadline',
            related_bet_id=bet_id,
        )

    def penalize_cancellation_after_joins(
        self, user_id: str, bet_id: str, bet_title: str, *, repeated: bool = False
    ) -> float:
        if repeated:
            return self.apply_change(
                user_id,
                TrustChange.REPEATED_CANCELLATIONS,
                "Repeated bet cancellation after participants joined - pattern of abuse",
                related_bet_id=bet_id,
            )
        return self.apply_change(
            user_id,
            TrustChange.CANCELLATION_AFTER_JOINS,
            f'Cancelled bet "{bet_title}" after participants joined',
            related_bet_id=bet_id,
        )

    def penalize_cancellation_before_joins(self, user_id: str, bet_id: str, bet_title: str) -> float:
        return self.apply_change(
            user_id,
            TrustChange.CANCELLED_BEFORE_JOINS,
            f'Cancelled bet "{bet_title}" before anyone joined',
            related_bet_id=bet_id,
        )

    def penalize_lost_dispute_participant(self, user_id: str, bet_id: str, dispute_id: str) -> float:
        return self.apply_change(
            user_id,
            TrustChange.LOST_DISPUTE_PARTICIPANT,
            "Filed false dispute - resolution was fair",
            related_bet_id=bet_id,
            related_dispute_id=dispute_id,
        )

    def penalize_multiple_pending_disputes(self, user_id: str, pending: int) -> float:
        return self.apply_change(
            user_id,
            TrustChange.MULTIPLE_PENDING_DISPUTES,
            f"Too many pending disputes ({pending})",
        )

    def penalize_slow_resolution(
        self, user_id: str, bet_id: str, bet_title: str, hours_late: int
    ) -> float:
        return self.apply_change(
            user_id,
            TrustChange.SLOW_RESOLUTION,
            f'Resolved bet "{bet_title}" {hours_late}h late',
            related_bet_id=bet_id,
        )

    # ------------------------------------------------------------------
    # Rewards

    def reward_clean_resolution(self, user_id: str, bet_id: str, bet_title: str) -> float:
        return self.apply_change(
            user_id,
            TrustChange.CLEAN_RESOLUTION,
            f'Bet "{bet_title}" resolved fairly without disputes',
            related_bet_id=bet_id,
        )

    def reward_withdrawal(self, user_id: str, transaction_id: str, amount: float) -> float:
        return self.apply_change(
            user_id,
            TrustChange.SUCCESSFUL_WITHDRAWAL,
            f"Successfully withdrew ${amount:.2f}",
            related_transaction_id=transaction_id,
        )

    def reward_deposit(self, user_id: str, transaction_id: str, amount: float) -> float:
        return self.apply_change(
            user_id,
            TrustChange.SUCCESSFUL_DEPOSIT,
            f"Successfully deposited ${amount:.2f}",
            related_transaction_id=transaction_id,
        )

    def reward_won_dispute(self, user_id: str, bet_id: str, dispute_id: str) -> float:
        return self.apply_change(
            user_id,
            TrustChange.WON_DISPUTE_PARTICIPANT,
            "Dispute upheld - you were right to challenge the resolution",
            related_bet_id=bet_id,
            related_dispute_id=dispute_id,
        )

    def reward_dispute_dismissed(self, user_id: str, bet_id: str, dispute_id: str) -> float:
        return self.apply_change(
            user_id,
            TrustChange.DISPUTE_DISMISSED,
            "Dispute against you was dismissed - resolution was correct",
            related_bet_id=bet_id,
            related_dispute_id=dispute_id,
        )

    def reward_clean_thirty_days(self, user_id: str) -> float:
        return self.apply_change(
            user_id,
            TrustChange.CLEAN_30_DAYS,
            "30 days without penalties",
        )

    def apply_milestones(self, user_id: str) -> float | None:
        """Reward the creator when their RESOLVED bet count lands exactly on a milestone."""

        resolved = self._bets.count_by_creator(user_id, status=BetStatus.RESOLVED)
        milestone = MILESTONES.get(resolved)
        if milestone is None:
            return None
        delta, reason = milestone
        return self.apply_change(user_id, delta, reason)
