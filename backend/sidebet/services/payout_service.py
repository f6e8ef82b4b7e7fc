"""Complete staged winnings once a bet's dispute window has closed."""

from __future__ import annotations

import time
from datetime import datetime
from typing import Callable

from loguru import logger
from sqlalchemy.orm import Session

from sidebet.core.config import Settings, get_settings
from sidebet.domain import (
    PayoutSweepResult,
    SweepFailure,
    calculate_platform_fee,
    round_money,
    split_winnings,
)
from sidebet.errors import NotFoundError
from sidebet.models import (
    Bet,
    BetStatus,
    NotificationPriority,
    NotificationType,
    Transaction,
    TransactionStatus,
    TransactionType,
    utcnow,
)
from sidebet.repositories import BetRepository, DisputeRepository, LedgerRepository, UserRepository

from .bet_lifecycle import transition_bet
from .notifier import DatabaseNotifier, Notifier
from .trust_score_service import TrustScoreService

__all__ = ["PayoutCalculator", "calculate_platform_fee", "round_money"]


class PayoutCalculator:
    """Pay out PENDING_RESOLUTION bets whose dispute window has passed.

    Each transaction is completed in its own savepoint together with the
    recipient's balance write. A bet with any failed step stays
    PENDING_RESOLUTION and the remaining PENDING transactions are picked up by
    the next sweep.
    """

    def __init__(
        self,
        session: Session,
        *,
        notifier: Notifier | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._session = session
        self._bets = BetRepository(session)
        self._ledger = LedgerRepository(session)
        self._disputes = DisputeRepository(session)
        self._users = UserRepository(session)
        self._notifier = notifier or DatabaseNotifier(session, clock=clock)
        self._trust = TrustScoreService(session, clock=clock)
        self._settings = settings or get_settings()
        self._clock = clock
        self._sleep = sleep

    def sweep(self, *, limit: int | None = None) -> PayoutSweepResult:
        result = PayoutSweepResult()
        now = self._clock()
        candidates = self._bets.ready_for_payout(now, limit=limit)
        logger.info("Payout sweep evaluating {} bets past their dispute window", len(candidates))

        for bet in candidates:
            result.checked += 1
            try:
                result.ready += 1
                if self._disputes.has_pending_for_bet(bet.id):
                    logger.info("Bet {} has a pending dispute; skipping payout", bet.id)
                    result.skipped_disputed += 1
                    continue
                self._process_bet(bet, now, result)
            except Exception as exc:
                logger.exception("Failed to process payouts for bet {}", bet.id)
                result.errors += 1
                result.failures.append(SweepFailure(item_id=bet.id, reason=str(exc)))

        logger.info(
            "Payout sweep finished: checked={}, ready={}, processed={}, payouts={}, errors={}, "
            "paid={:.2f}, fees={:.2f}",
            result.checked,
            result.ready,
            result.processed,
            result.payouts,
            result.errors,
            result.total_paid,
            result.total_fees,
        )
        return result

    def _process_bet(self, bet: Bet, now: datetime, result: PayoutSweepResult) -> None:
        pending = self._ledger.pending_for_bet(bet.id)
        if not pending:
            if transition_bet(
                self._bets, bet.id, BetStatus.PENDING_RESOLUTION, BetStatus.RESOLVED, now=now
            ):
                result.processed += 1
                logger.info("Bet {} had no pending payouts; marked RESOLVED", bet.id)
            return

        failed = 0
        delay = self._settings.sweep_write_delay_seconds
        for transaction in pending:
            try:
                with self._session.begin_nested():
                    net, fee = self._complete(transaction, now)
            except Exception as exc:
                logger.exception("Payout step failed for transaction {}", transaction.id)
                failed += 1
                result.errors += 1
                result.failures.append(SweepFailure(item_id=transaction.id, reason=str(exc)))
                continue

            result.payouts += 1
            result.total_paid = round_money(result.total_paid + net)
            result.total_fees = round_money(result.total_fees + fee)
            self._notify_paid(bet, transaction, net, fee)
            if delay:
                self._sleep(delay)

        if failed:
            logger.warning(
                "Bet {} left PENDING_RESOLUTION after {} failed payout steps", bet.id, failed
            )
            return

        if not transition_bet(
            self._bets, bet.id, BetStatus.PENDING_RESOLUTION, BetStatus.RESOLVED, now=now
        ):
            logger.warning("Bet {} changed status during payout; not marking RESOLVED", bet.id)
            return

        result.processed += 1
        try:
            with self._session.begin_nested():
                self._trust.reward_clean_resolution(bet.creator_id, bet.id, bet.title)
                self._trust.apply_milestones(bet.creator_id)
        except Exception as exc:
            logger.warning("Trust update after payout of bet {} failed: {}", bet.id, exc)

    def _complete(self, transaction: Transaction, now: datetime) -> tuple[float, float]:
        user = self._users.get(transaction.user_id)
        if user is None:
            raise NotFoundError(f"User {transaction.user_id} not found")

        if transaction.type == TransactionType.BET_WON.value:
            net, fee = split_winnings(transaction.amount, self._settings.platform_fee_rate)
        else:
            net, fee = round_money(transaction.amount), 0.0

        before = user.balance
        after = round_money(before + net)
        transaction.balance_before = before
        transaction.balance_after = after
        transaction.actual_amount = net
        transaction.platform_fee = fee
        transaction.status = TransactionStatus.COMPLETED.value
        transaction.completed_at = now

        fields: dict[str, float] = {"balance": after}
        if transaction.type == TransactionType.BET_WON.value:
            fields["total_winnings"] = round_money(user.total_winnings + net)
        self._users.update(user, **fields)
        return net, fee

    def _notify_paid(self, bet: Bet, transaction: Transaction, net: float, fee: float) -> None:
        if transaction.type == TransactionType.BET_WON.value:
            title = "Bet Won!"
            message = f'You won ${net:.2f} on "{bet.title}"'
            if fee > 0:
                message += f" (platform fee: ${fee:.2f})"
        else:
            title = "Funds Received"
            message = f'${net:.2f} has been credited to your balance for "{bet.title}"'
        self._notifier.notify(
            transaction.user_id,
            NotificationType.BET_RESOLVED,
            title,
            message,
            NotificationPriority.HIGH,
            related_bet_id=bet.id,
        )
