from __future__ import annotations

import pytest

from sidebet.errors import NotFoundError
from sidebet.models import BetStatus
from sidebet.services.bet_queries import USER_BETS_NAMESPACE, BetQueryService, UserBetQuery
from sidebet.services.list_cache import ListQueryCache


class FakeTimer:
    def __init__(self) -> None:
        self.value = 100.0

    def __call__(self) -> float:
        return self.value


@pytest.fixture
def timer() -> FakeTimer:
    return FakeTimer()


@pytest.fixture
def cache(timer) -> ListQueryCache:
    return ListQueryCache(30.0, timer=timer)


def test_entries_expire_after_ttl(cache, timer):
    cache.set("user_bets", "u1", ["a"], params=("ACTIVE", 50, 0))

    timer.value += 30
    assert cache.get("user_bets", "u1", ("ACTIVE", 50, 0)) == ["a"]
    assert cache.get("user_bets", "u1", (None, 50, 0)) is None

    timer.value += 1
    assert cache.get("user_bets", "u1", ("ACTIVE", 50, 0)) is None
    assert cache.size() == 0


def test_writes_prune_expired_keys_nobody_reads_again(cache, timer):
    for offset in range(5):
        cache.set("user_bets", "u1", [offset], params=(None, 50, offset))

    timer.value += 31
    cache.set("user_bets", "u2", ["fresh"], params=(None, 50, 0))

    assert cache.size() == 1
    assert cache.get("user_bets", "u2", (None, 50, 0)) == ["fresh"]


def test_oldest_entries_are_evicted_past_the_size_cap(timer):
    cache = ListQueryCache(30.0, max_entries=2, timer=timer)
    cache.set("user_bets", "u1", ["first"])
    timer.value += 1
    cache.set("user_bets", "u2", ["second"])
    timer.value += 1
    cache.set("user_bets", "u3", ["third"])

    assert cache.size() == 2
    assert cache.get("user_bets", "u1") is None
    assert cache.get("user_bets", "u3") == ["third"]


def test_invalidate_scopes_by_owner_and_namespace(cache):
    cache.set("user_bets", "u1", 1)
    cache.set("user_bets", "u1", 2, params="page-2")
    cache.set("disputes", "u1", 3)
    cache.set("user_bets", "u2", 4)

    assert cache.invalidate("u1", namespace="user_bets") == 2
    assert cache.get("disputes", "u1") == 3
    assert cache.get("user_bets", "u2") == 4

    assert cache.invalidate("u1") == 1
    cache.clear()
    assert cache.size() == 0


@pytest.fixture
def queries(session, cache) -> BetQueryService:
    return BetQueryService(session, cache)


def test_user_bets_are_cached_until_invalidated(queries, cache, bet_service, make_user, make_bet):
    creator = make_user()
    joiner = make_user()
    bet = make_bet(creator)

    first = queries.list_user_bets(UserBetQuery(joiner.id))
    assert first.total == 0
    assert first.cached is False

    bet_service.join_bet(bet.id, joiner.id, "B")
    stale = queries.list_user_bets(UserBetQuery(joiner.id))
    assert stale.cached is True
    assert stale.total == 0

    queries.invalidate_bet(bet)
    fresh = queries.list_user_bets(UserBetQuery(joiner.id))
    assert fresh.cached is False
    assert [item.id for item in fresh.bets] == [bet.id]
    assert fresh.bets[0].total_pot == 20.0


def test_status_filter_is_part_of_the_cache_key(queries, cache, bet_service, make_user, make_bet):
    creator = make_user()
    active = make_bet(creator)
    cancelled = make_bet(creator, title="Rain delays the match")
    bet_service.cancel_bet(cancelled.id, creator.id)

    only_active = queries.list_user_bets(UserBetQuery(creator.id, status=BetStatus.ACTIVE))
    everything = queries.list_user_bets(UserBetQuery(creator.id))

    assert [item.id for item in only_active.bets] == [active.id]
    assert {item.id for item in everything.bets} == {active.id, cancelled.id}
    assert cache.size() == 2

    queries.invalidate_user(creator.id)
    assert cache.get(USER_BETS_NAMESPACE, creator.id, (None, 50, 0)) is None


def test_get_bet_includes_participants(queries, bet_service, make_user, make_bet):
    creator = make_user()
    joiner = make_user()
    bet = make_bet(creator)
    bet_service.join_bet(bet.id, joiner.id, "B")

    detail = queries.get_bet(bet.id)

    assert {item.user_id for item in detail.participants} == {creator.id, joiner.id}
    with pytest.raises(NotFoundError):
        queries.get_bet("missing")
