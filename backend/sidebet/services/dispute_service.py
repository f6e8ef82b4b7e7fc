"""Dispute eligibility, filing, admin resolution, and listings."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Sequence

from loguru import logger
from sqlalchemy.orm import Session

from sidebet.core.config import Settings, get_settings
from sidebet.domain import RuleResult
from sidebet.errors import NotFoundError, PermissionDeniedError, RuleViolationError
from sidebet.models import (
    Bet,
    BetStatus,
    Dispute,
    DisputeReason,
    DisputeStatus,
    NotificationPriority,
    NotificationType,
    TransactionStatus,
    as_utc,
    utcnow,
)
from sidebet.repositories import BetRepository, DisputeRepository, LedgerRepository, UserRepository

from .bet_lifecycle import transition_bet
from .notifier import DatabaseNotifier, Notifier
from .trust_score_service import TrustScoreService

DISPUTABLE_STATUSES = (BetStatus.RESOLVED, BetStatus.PENDING_RESOLUTION)
OPEN_STATUSES = (DisputeStatus.PENDING, DisputeStatus.UNDER_REVIEW)


class DisputeService:
    """Gatekeeping and resolution of disputes filed against creator resolutions."""

    def __init__(
        self,
        session: Session,
        *,
        notifier: Notifier | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._bets = BetRepository(session)
        self._disputes = DisputeRepository(session)
        self._ledger = LedgerRepository(session)
        self._users = UserRepository(session)
        self._notifier = notifier or DatabaseNotifier(session, clock=clock)
        self._trust = TrustScoreService(session, clock=clock)
        self._settings = settings or get_settings()
        self._clock = clock

    # ------------------------------------------------------------------
    # Eligibility

    def can_file_dispute(self, user_id: str) -> RuleResult:
        now = self._clock()
        cooldown = self._settings.dispute_cooldown_hours
        if self._disputes.count_filed_since(user_id, now - timedelta(hours=cooldown)) > 0:
            return RuleResult.failure(
                f"You can only file one dispute every {cooldown} hours. Please try again later."
            )

        pending = self._disputes.count_by_filer(user_id, status=DisputeStatus.PENDING)
        limit = self._settings.max_pending_disputes
        if pending >= limit:
            return RuleResult.failure(
                f"You have {pending} pending disputes. Maximum allowed is {limit}."
            )
        return RuleResult.success()

    def can_dispute_bet(self, bet_id: str) -> RuleResult:
        bet = self._bets.get(bet_id)
        if bet is None:
            return RuleResult.failure("Bet not found")
        if BetStatus(bet.status) not in DISPUTABLE_STATUSES:
            return RuleResult.failure("Only resolved bets can be disputed")
        if not bet.winning_side:
            return RuleResult.failure("Bet has not been resolved yet")

        window_days = self._settings.dispute_filing_window_days
        if bet.updated_at and self._clock() > as_utc(bet.updated_at) + timedelta(days=window_days):
            return RuleResult.failure(
                f"Dispute window expired. You had {window_days} days to file."
            )
        if self._disputes.has_pending_for_bet(bet_id):
            return RuleResult.failure("A dispute is already pending for this bet")
        return RuleResult.success()

    # ------------------------------------------------------------------
    # Filing

    def file_dispute(
        self,
        bet_id: str,
        filed_by: str,
        reason: DisputeReason | str,
        description: str,
        evidence_urls: Sequence[str] | None = None,
        against_user_id: str | None = None,
    ) -> Dispute:
        user_check = self.can_file_dispute(filed_by)
        if not user_check.ok:
            raise RuleViolationError(user_check.reason)
        bet_check = self.can_dispute_bet(bet_id)
        if not bet_check.ok:
            if bet_check.reason == "Bet not found":
                raise NotFoundError(bet_check.reason)
            raise RuleViolationError(bet_check.reason)

        bet = self._bets.get(bet_id)
        participant = self._bets.get_participant(bet_id, filed_by)
        if participant is None or filed_by == bet.creator_id:
            raise PermissionDeniedError("Only participants other than the creator can file a dispute")

        now = self._clock()
        previous_status = BetStatus(bet.status)
        dispute = self._disputes.create(
            bet_id=bet_id,
            filed_by=filed_by,
            against_user_id=against_user_id or bet.creator_id,
            reason=DisputeReason(reason).value,
            description=description,
            status=DisputeStatus.PENDING.value,
            evidence_urls=list(evidence_urls or []),
            created_at=now,
        )
        moved = transition_bet(self._bets, bet_id, previous_status, BetStatus.DISPUTED, now=now)
        if not moved:
            raise RuleViolationError("Bet changed state while filing the dispute; try again")

        self._notifier.notify(
            dispute.against_user_id,
            NotificationType.BET_DISPUTED,
            "Bet Disputed",
            "A participant has filed a dispute on your bet",
            NotificationPriority.HIGH,
            related_bet_id=bet_id,
            related_user_id=filed_by,
        )
        logger.info("Dispute {} filed by {} on bet {}", dispute.id, filed_by, bet_id)
        return dispute

    # ------------------------------------------------------------------
    # Admin resolution

    def mark_under_review(self, dispute_id: str, admin_user_id: str) -> Dispute:
        self._require_admin(admin_user_id)
        dispute = self._require_dispute(dispute_id)
        if dispute.status != DisputeStatus.PENDING.value:
            raise RuleViolationError("Only pending disputes can be moved under review")
        return self._disputes.update(dispute, status=DisputeStatus.UNDER_REVIEW.value)

    def resolve_dispute(
        self,
        dispute_id: str,
        outcome: DisputeStatus | str,
        resolution_text: str,
        admin_user_id: str,
        notes: str | None = None,
    ) -> Dispute:
        self._require_admin(admin_user_id)
        outcome = DisputeStatus(outcome)
        if not outcome.is_terminal:
            raise RuleViolationError(f"{outcome.value} is not a final dispute outcome")

        dispute = self._require_dispute(dispute_id)
        if DisputeStatus(dispute.status).is_terminal:
            raise RuleViolationError("Dispute has already been resolved")

        now = self._clock()
        self._disputes.update(
            dispute,
            status=outcome.value,
            resolution=resolution_text,
            resolved_by=admin_user_id,
            admin_notes=notes,
            resolved_at=now,
        )

        bet = self._bets.get(dispute.bet_id)
        if bet is None:
            raise NotFoundError("Bet not found")

        upheld = outcome == DisputeStatus.RESOLVED_FOR_FILER
        extra: dict[str, object] = {}
        if upheld and self._void_pending_payouts(bet, now):
            extra = {"winning_side": None, "dispute_window_ends_at": None}

        moved = transition_bet(
            self._bets, bet.id, BetStatus.DISPUTED, BetStatus.PENDING_RESOLUTION, now=now, **extra
        )
        if not moved:
            logger.warning(
                "Bet {} was not DISPUTED when dispute {} was resolved", bet.id, dispute.id
            )

        if upheld:
            self._trust.penalize_lost_dispute_creator(dispute.against_user_id, bet.id, dispute.id)
            self._trust.reward_won_dispute(dispute.filed_by, bet.id, dispute.id)
            self._notify_upheld(dispute)
        else:
            self._trust.reward_dispute_dismissed(dispute.against_user_id, bet.id, dispute.id)
            self._trust.penalize_lost_dispute_participant(dispute.filed_by, bet.id, dispute.id)
            self._notify_dismissed(dispute)

        logger.info("Dispute {} resolved as {} by {}", dispute.id, outcome.value, admin_user_id)
        return dispute

    # ------------------------------------------------------------------
    # Listings

    def disputes_for_bet(self, bet_id: str) -> list[Dispute]:
        return self._disputes.list(bet_id=bet_id, limit=None)

    def disputes_for_user(self, user_id: str) -> list[Dispute]:
        return self._disputes.list(user_id=user_id, limit=None)

    def pending_disputes(self) -> list[Dispute]:
        return self._disputes.list(statuses=OPEN_STATUSES, limit=None)

    # ------------------------------------------------------------------
    # Helpers

    def _require_admin(self, user_id: str) -> None:
        admin = self._users.get(user_id)
        if admin is None or not admin.is_admin:
            raise PermissionDeniedError("Only admins can resolve disputes")

    def _require_dispute(self, dispute_id: str) -> Dispute:
        dispute = self._disputes.get(dispute_id)
        if dispute is None:
            raise NotFoundError("Dispute not found")
        return dispute

    def _void_pending_payouts(self, bet: Bet, now: datetime) -> bool:
        """Cancel staged winnings so the creator can resolve again.

        Returns ``False`` when the winnings were already paid out, in which case
        the bet keeps its verdict and needs manual correction.
        """

        pending = self._ledger.pending_for_bet(bet.id)
        if not pending:
            logger.warning("Bet {} already paid out; upheld dispute needs manual correction", bet.id)
            return False
        for transaction in pending:
            transaction.status = TransactionStatus.CANCELLED.value
            transaction.failure_reason = "Resolution overturned by dispute"
            transaction.completed_at = now
        for participant in self._bets.participants(bet.id):
            self._bets.update_participant(participant, payout=0.0, has_accepted_result=False)
        return True

    def _notify_upheld(self, dispute: Dispute) -> None:
        self._notifier.notify(
            dispute.filed_by,
            NotificationType.BET_DISPUTED,
            "Dispute Resolved",
            "Your dispute was upheld. The bet resolution will be corrected.",
            NotificationPriority.HIGH,
            related_bet_id=dispute.bet_id,
        )
        self._notifier.notify(
            dispute.against_user_id,
            NotificationType.BET_DISPUTED,
            "Dispute Resolved Against You",
            "A dispute on your bet was upheld. Please resolve the bet correctly.",
            NotificationPriority.URGENT,
            related_bet_id=dispute.bet_id,
        )

    def _notify_dismissed(self, dispute: Dispute) -> None:
        self._notifier.notify(
            dispute.filed_by,
            NotificationType.BET_DISPUTED,
            "Dispute Dismissed",
            "Your dispute was reviewed and dismissed. The original resolution stands.",
            NotificationPriority.MEDIUM,
            related_bet_id=dispute.bet_id,
        )
        self._notifier.notify(
            dispute.against_user_id,
            NotificationType.BET_DISPUTED,
            "Dispute Dismissed",
            "The dispute on your bet was dismissed. Your resolution was correct.",
            NotificationPriority.MEDIUM,
            related_bet_id=dispute.bet_id,
        )
