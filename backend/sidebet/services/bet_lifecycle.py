"""Bet state machine and the deadline expiry sweep."""

from __future__ import annotations

import time
from collections.abc import Iterable
from datetime import datetime
from typing import Any, Callable

from loguru import logger
from sqlalchemy.orm import Session

from sidebet.core.config import Settings, get_settings
from sidebet.domain import ExpirySweepResult, SweepFailure
from sidebet.models import Bet, BetStatus, NotificationPriority, NotificationType, utcnow
from sidebet.repositories import BetRepository

from .notifier import DatabaseNotifier, Notifier

NO_PARTICIPANTS_REASON = "No participants joined before deadline"

ALLOWED_TRANSITIONS: dict[BetStatus, frozenset[BetStatus]] = {
    BetStatus.DRAFT: frozenset({BetStatus.ACTIVE, BetStatus.CANCELLED}),
    BetStatus.ACTIVE: frozenset(
        {BetStatus.LIVE, BetStatus.PENDING_RESOLUTION, BetStatus.CANCELLED}
    ),
    BetStatus.LIVE: frozenset({BetStatus.PENDING_RESOLUTION, BetStatus.CANCELLED}),
    # The self edge is creator resolution of a bet the expiry sweep already moved.
    BetStatus.PENDING_RESOLUTION: frozenset(
        {BetStatus.PENDING_RESOLUTION, BetStatus.DISPUTED, BetStatus.RESOLVED}
    ),
    BetStatus.DISPUTED: frozenset({BetStatus.PENDING_RESOLUTION}),
    BetStatus.RESOLVED: frozenset({BetStatus.DISPUTED}),
    BetStatus.CANCELLED: frozenset(),
}


def can_transition(source: BetStatus | str, target: BetStatus | str) -> bool:
    return BetStatus(target) in ALLOWED_TRANSITIONS.get(BetStatus(source), frozenset())


def transition_bet(
    repo: BetRepository,
    bet_id: str,
    expected: BetStatus | Iterable[BetStatus],
    new_status: BetStatus,
    *,
    now: datetime,
    **values: Any,
) -> bool:
    """Validate the edge against ``ALLOWED_TRANSITIONS`` and apply it conditionally."""

    sources = (expected,) if isinstance(expected, BetStatus) else tuple(expected)
    illegal = [source for source in sources if not can_transition(source, new_status)]
    if illegal:
        raise ValueError(
            f"Illegal bet transition {[source.value for source in illegal]} -> {new_status.value}"
        )
    return repo.transition_status(bet_id, sources, new_status, now=now, **values)


class BetLifecycleController:
    """Move ACTIVE bets past their deadline to PENDING_RESOLUTION or CANCELLED."""

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
        self._notifier = notifier or DatabaseNotifier(session, clock=clock)
        self._settings = settings or get_settings()
        self._clock = clock
        self._sleep = sleep

    def sweep_expired_bets(self, *, limit: int | None = None) -> ExpirySweepResult:
        result = ExpirySweepResult()
        now = self._clock()
        expired = self._bets.expired_active(now, limit=limit)
        if not expired:
            logger.info("No expired active bets found")
            return result

        logger.info("Expiry sweep evaluating {} bets", len(expired))
        delay = self._settings.sweep_write_delay_seconds
        for bet in expired:
            result.checked += 1
            try:
                with self._session.begin_nested():
                    outcome = self._expire(bet, now)
            except Exception as exc:
                logger.exception("Failed to expire bet {}", bet.id)
                result.errors += 1
                result.failures.append(SweepFailure(item_id=bet.id, reason=str(exc)))
                continue

            if outcome == BetStatus.PENDING_RESOLUTION:
                result.moved_to_pending += 1
            elif outcome == BetStatus.CANCELLED:
                result.cancelled += 1
                self._notify_cancelled(bet)
            else:
                result.skipped += 1

            if delay:
                self._sleep(delay)

        logger.info(
            "Expiry sweep finished: checked={}, pending={}, cancelled={}, skipped={}, errors={}",
            result.checked,
            result.moved_to_pending,
            result.cancelled,
            result.skipped,
            result.errors,
        )
        return result

    def _expire(self, bet: Bet, now: datetime) -> BetStatus | None:
        if self._bets.participant_count(bet.id) > 0:
            moved = transition_bet(
                self._bets, bet.id, BetStatus.ACTIVE, BetStatus.PENDING_RESOLUTION, now=now
            )
            return BetStatus.PENDING_RESOLUTION if moved else None

        moved = transition_bet(
            self._bets,
            bet.id,
            BetStatus.ACTIVE,
            BetStatus.CANCELLED,
            now=now,
            resolution_reason=NO_PARTICIPANTS_REASON,
        )
        if not moved:
            logger.info("Bet {} changed status concurrently; skipping", bet.id)
            return None
        return BetStatus.CANCELLED

    def _notify_cancelled(self, bet: Bet) -> None:
        self._notifier.notify(
            bet.creator_id,
            NotificationType.BET_CANCELLED,
            "Bet Cancelled",
            f'"{bet.title}" was cancelled because no one joined before the deadline',
            NotificationPriority.MEDIUM,
            related_bet_id=bet.id,
        )
