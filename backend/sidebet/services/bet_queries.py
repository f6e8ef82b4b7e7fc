"""Read-side bet listings served through the explicitly owned list cache."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from loguru import logger
from sqlalchemy.orm import Session

from sidebet.errors import NotFoundError
from sidebet.models import Bet as BetRecord
from sidebet.models import BetStatus
from sidebet.repositories import BetRepository
from sidebet.schemas import Bet, BetBase

from .list_cache import ListQueryCache

USER_BETS_NAMESPACE = "user_bets"


@dataclass(slots=True, frozen=True)
class UserBetQuery:
    user_id: str
    status: BetStatus | None = None
    limit: int = 50
    offset: int = 0

    def cache_params(self) -> tuple[str | None, int, int]:
        return (self.status.value if self.status else None, self.limit, self.offset)


@dataclass(slots=True)
class BetQueryResult:
    total: int
    bets: Sequence[BetBase]
    cached: bool = False


class BetQueryService:
    """Listings for the API. Write paths call ``invalidate_bet`` after committing."""

    def __init__(self, session: Session, cache: ListQueryCache) -> None:
        self._bets = BetRepository(session)
        self._cache = cache

    def list_user_bets(self, query: UserBetQuery) -> BetQueryResult:
        params = query.cache_params()
        cached = self._cache.get(USER_BETS_NAMESPACE, query.user_id, params)
        if cached is not None:
            return BetQueryResult(total=len(cached), bets=cached, cached=True)

        records = self._bets.list_for_user(
            query.user_id, status=query.status, limit=query.limit, offset=query.offset
        )
        items = tuple(BetBase.model_validate(record) for record in records)
        self._cache.set(USER_BETS_NAMESPACE, query.user_id, items, params)
        return BetQueryResult(total=len(items), bets=items)

    def get_bet(self, bet_id: str) -> Bet:
        record = self._bets.get_with_participants(bet_id)
        if record is None:
            raise NotFoundError("Bet not found")
        return Bet.model_validate(record)

    def invalidate_user(self, user_id: str) -> None:
        self._cache.invalidate(user_id, namespace=USER_BETS_NAMESPACE)

    def invalidate_bet_id(self, bet_id: str) -> None:
        bet = self._bets.get(bet_id)
        if bet is not None:
            self.invalidate_bet(bet)

    def invalidate_bet(self, bet: BetRecord) -> None:
        """Drop cached listings for the creator and everyone who joined ``bet``."""

        owners = {bet.creator_id}
        owners.update(participant.user_id for participant in self._bets.participants(bet.id))
        removed = sum(
            self._cache.invalidate(owner, namespace=USER_BETS_NAMESPACE) for owner in owners
        )
        if removed:
            logger.debug("Invalidated {} cached listings for bet {}", removed, bet.id)
