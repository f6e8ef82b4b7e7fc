from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from sidebet.db import Base, enable_sqlite_savepoints, get_db
from sidebet.errors import RuleViolationError
from sidebet.main import _bet_service, app
from sidebet.models import Bet, EventStatus, Participant, UserRole
from sidebet.repositories import SquaresRepository, UserRepository


@pytest.fixture
def api_sessions(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'api.db'}",
        connect_args={"check_same_thread": False},
        future=True,
    )
    enable_sqlite_savepoints(engine)
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=True, expire_on_commit=False, future=True)
    yield factory
    engine.dispose()


@pytest.fixture
def client(api_sessions):
    """Test client backed by a throwaway database; overrides are cleared afterwards."""

    def _get_db():
        session = api_sessions()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    app.state.list_cache.clear()
    yield TestClient(app)
    app.dependency_overrides.clear()
    app.state.list_cache.clear()


@pytest.fixture
def seed_user(api_sessions):
    def _seed(username: str, *, trust_score: float = 5.0, role: UserRole = UserRole.USER) -> str:
        with api_sessions() as session:
            user = UserRepository(session).create(
                username=username,
                display_name=username.title(),
                balance=500.0,
                trust_score=trust_score,
                role=role.value,
            )
            session.commit()
            return user.id

    return _seed


def _deadline(**delta: float) -> str:
    return (datetime.now(timezone.utc) + timedelta(**(delta or {"days": 1}))).isoformat()


def _create_bet(client, creator_id: str, **overrides) -> dict:
    payload = {
        "creator_id": creator_id,
        "title": "Lakers beat the Celtics",
        "deadline": _deadline(),
        "bet_amount": 10,
        "side": "A",
        "side_a_name": "Lakers",
        "side_b_name": "Celtics",
    }
    payload.update(overrides)
    response = client.post("/bets", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def test_healthcheck(client):
    """Verify the healthcheck endpoint returns a successful response."""
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_create_and_get_bet(client, seed_user):
    creator = seed_user("creator")

    created = _create_bet(client, creator)

    assert created["status"] == "ACTIVE"
    assert created["total_pot"] == 10.0
    assert [item["user_id"] for item in created["participants"]] == [creator]

    response = client.get(f"/bets/{created['id']}")
    assert response.status_code == 200
    assert response.json()["title"] == "Lakers beat the Celtics"


def test_create_bet_rejections(client, seed_user):
    restricted = seed_user("restricted", trust_score=1.0)

    response = client.post(
        "/bets",
        json={"creator_id": restricted, "title": "x", "deadline": _deadline(), "bet_amount": 5},
    )
    assert response.status_code == 403
    assert "low trust score" in response.json()["detail"]

    invalid = client.post(
        "/bets",
        json={"creator_id": restricted, "title": "x", "deadline": _deadline(), "bet_amount": 5, "side": "C"},
    )
    assert invalid.status_code == 422


def test_missing_bet_returns_404(client):
    response = client.get("/bets/non-existent-id")
    assert response.status_code == 404
    assert response.json() == {"detail": "Bet not found"}


def test_join_bet(client, seed_user):
    creator = seed_user("creator")
    joiner = seed_user("joiner")
    bet = _create_bet(client, creator)

    response = client.post(f"/bets/{bet['id']}/join", json={"user_id": joiner, "side": "B"})

    assert response.status_code == 200
    assert response.json()["side"] == "B"
    assert response.json()["amount"] == 10.0

    again = client.post(f"/bets/{bet['id']}/join", json={"user_id": joiner, "side": "A"})
    assert again.status_code == 400
    assert again.json() == {"detail": "You have already joined this bet"}


def test_user_bets_are_served_from_cache_until_a_write(client, seed_user, api_sessions):
    creator = seed_user("creator")
    joiner = seed_user("joiner")

    assert client.get(f"/users/{joiner}/bets").json() == {"total": 0, "items": []}

    # A row written behind the API's back stays invisible while the listing is cached.
    with api_sessions() as session:
        hidden = Bet(
            title="Written directly",
            creator_id=joiner,
            deadline=datetime.now(timezone.utc) + timedelta(days=1),
            total_pot=5.0,
        )
        session.add(hidden)
        session.flush()
        session.add(Participant(bet_id=hidden.id, user_id=joiner, side="A", amount=5.0))
        session.commit()
    assert client.get(f"/users/{joiner}/bets").json()["total"] == 0

    bet = _create_bet(client, creator)
    client.post(f"/bets/{bet['id']}/join", json={"user_id": joiner, "side": "B"})

    listing = client.get(f"/users/{joiner}/bets").json()
    assert listing["total"] == 2
    assert {item["id"] for item in listing["items"]} == {bet["id"], hidden.id}

    resolved = client.get(f"/users/{joiner}/bets", params={"status": "RESOLVED"})
    assert resolved.json()["total"] == 0


def test_resolve_then_accept(client, seed_user):
    creator = seed_user("creator")
    joiner = seed_user("joiner")
    bet = _create_bet(client, creator)
    client.post(f"/bets/{bet['id']}/join", json={"user_id": joiner, "side": "B"})

    resolved = client.post(
        f"/bets/{bet['id']}/resolve", json={"creator_id": creator, "winning_side": "A"}
    )
    assert resolved.status_code == 200
    assert resolved.json()["status"] == "PENDING_RESOLUTION"
    assert resolved.json()["winning_side"] == "A"

    by_creator = client.post(f"/bets/{bet['id']}/accept", json={"user_id": creator})
    assert by_creator.status_code == 400

    accepted = client.post(f"/bets/{bet['id']}/accept", json={"user_id": joiner})
    assert accepted.status_code == 200
    assert accepted.json()["ok"] is True
    assert accepted.json()["data"]["all_accepted"] is True

    progress = client.get(f"/bets/{bet['id']}/acceptance").json()
    assert progress == {
        "total": 1,
        "accepted": 1,
        "accepted_user_ids": [joiner],
        "all_accepted": True,
    }

    missing = client.post("/bets/missing/accept", json={"user_id": joiner})
    assert missing.status_code == 404


def test_cancel_bet_records_trust_history(client, seed_user):
    creator = seed_user("creator")
    bet = _create_bet(client, creator)

    cancelled = client.post(f"/bets/{bet['id']}/cancel", json={"creator_id": creator})
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "CANCELLED"

    trust = client.get(f"/users/{creator}/trust").json()
    assert trust == {"user_id": creator, "trust_score": 4.8, "tier": "Neutral"}

    history = client.get(f"/users/{creator}/trust/history", params={"limit": 5}).json()
    assert len(history) == 1
    assert history[0]["change"] == pytest.approx(-0.2)
    assert history[0]["related_bet_id"] == bet["id"]


def test_dispute_flow(client, seed_user):
    creator = seed_user("creator")
    joiner = seed_user("joiner")
    admin = seed_user("admin", role=UserRole.ADMIN)
    bet = _create_bet(client, creator)
    client.post(f"/bets/{bet['id']}/join", json={"user_id": joiner, "side": "B"})
    client.post(f"/bets/{bet['id']}/resolve", json={"creator_id": creator, "winning_side": "A"})

    invalid = client.post(
        f"/bets/{bet['id']}/disputes",
        json={"filed_by": joiner, "reason": "BOGUS", "description": "?"},
    )
    assert invalid.status_code == 422

    filed = client.post(
        f"/bets/{bet['id']}/disputes",
        json={
            "filed_by": joiner,
            "reason": "INCORRECT_RESOLUTION",
            "description": "The Celtics won",
            "evidence_urls": ["https://example.com/recap"],
        },
    )
    assert filed.status_code == 201
    dispute = filed.json()
    assert dispute["status"] == "PENDING"
    assert dispute["against_user_id"] == creator
    assert client.get(f"/bets/{bet['id']}").json()["status"] == "DISPUTED"
    assert client.get("/disputes/pending").json()["total"] == 1

    forbidden = client.post(
        f"/disputes/{dispute['id']}/resolve",
        json={"admin_user_id": creator, "outcome": "DISMISSED", "resolution": "no"},
    )
    assert forbidden.status_code == 403

    dismissed = client.post(
        f"/disputes/{dispute['id']}/resolve",
        json={"admin_user_id": admin, "outcome": "DISMISSED", "resolution": "Result stands"},
    )
    assert dismissed.status_code == 200
    assert dismissed.json()["status"] == "DISMISSED"
    assert dismissed.json()["resolved_by"] == admin

    assert client.get("/disputes/pending").json()["total"] == 0
    assert client.get(f"/bets/{bet['id']}/disputes").json()["total"] == 1
    assert client.get(f"/users/{joiner}/disputes").json()["total"] == 1
    assert client.get(f"/users/{joiner}/trust").json()["trust_score"] == pytest.approx(4.6)


def test_filing_a_dispute_refreshes_cached_listings(client, seed_user):
    creator = seed_user("creator")
    joiner = seed_user("joiner")
    bet = _create_bet(client, creator)
    client.post(f"/bets/{bet['id']}/join", json={"user_id": joiner, "side": "B"})
    client.post(f"/bets/{bet['id']}/resolve", json={"creator_id": creator, "winning_side": "A"})

    before = client.get(f"/users/{creator}/bets").json()
    assert [item["status"] for item in before["items"]] == ["PENDING_RESOLUTION"]

    filed = client.post(
        f"/bets/{bet['id']}/disputes",
        json={"filed_by": joiner, "reason": "INCORRECT_RESOLUTION", "description": "The Celtics won"},
    )
    assert filed.status_code == 201

    for user_id in (creator, joiner):
        after = client.get(f"/users/{user_id}/bets").json()
        assert [item["status"] for item in after["items"]] == ["DISPUTED"]


def test_accepting_a_result_refreshes_cached_listings(client, seed_user):
    creator = seed_user("creator")
    joiner = seed_user("joiner")
    bet = _create_bet(client, creator)
    client.post(f"/bets/{bet['id']}/join", json={"user_id": joiner, "side": "B"})
    client.post(f"/bets/{bet['id']}/resolve", json={"creator_id": creator, "winning_side": "A"})
    client.get(f"/users/{joiner}/bets")
    assert app.state.list_cache.size() == 1

    accepted = client.post(f"/bets/{bet['id']}/accept", json={"user_id": joiner})

    assert accepted.status_code == 200
    assert app.state.list_cache.size() == 0


def test_capabilities(client, seed_user):
    user = seed_user("newcomer", trust_score=3.0)

    response = client.get(f"/users/{user}/capabilities")

    assert response.status_code == 200
    body = response.json()
    assert body["tier"] == "Low Trust"
    assert body["can_create_public_bet"] is False
    assert body["max_bet_amount"] == 25.0
    assert body["withdrawal_delay_days"] == 7

    assert client.get("/users/ghost/capabilities").status_code == 404


def test_squares_endpoints(client, seed_user, api_sessions):
    host = seed_user("host")
    buyer = seed_user("buyer")
    with api_sessions() as session:
        event = SquaresRepository(session).create_event(
            home_team="Chiefs",
            away_team="Eagles",
            status=EventStatus.UPCOMING.value,
            scheduled_time=datetime.now(timezone.utc) + timedelta(days=1),
        )
        session.commit()
        event_id = event.id

    created = client.post(
        "/squares",
        json={"creator_id": host, "event_id": event_id, "title": "Big Game", "price_per_square": 5},
    )
    assert created.status_code == 201
    game = created.json()
    assert game["status"] == "ACTIVE"
    assert game["payout_structure"]["period4"] == 0.45

    purchased = client.post(
        f"/squares/{game['id']}/purchase",
        json={"user_id": buyer, "owner_name": "Buyer", "squares": [[0, 0], [1, 1]]},
    )
    assert purchased.status_code == 201
    assert len(purchased.json()) == 2

    taken = client.post(
        f"/squares/{game['id']}/purchase",
        json={"user_id": buyer, "owner_name": "Buyer", "squares": [[0, 0]]},
    )
    assert taken.status_code == 400
    assert taken.json() == {"detail": "Squares already purchased: (0, 0)"}

    detail = client.get(f"/squares/{game['id']}").json()
    assert detail["squares_sold"] == 2
    assert detail["total_pot"] == 10.0
    assert len(detail["purchases"]) == 2

    assert client.get("/squares/missing").status_code == 404


def test_rule_errors_from_services_map_to_400(client):
    """Verify a stubbed service error surfaces as a 400 with its message."""
    mock_service = MagicMock()
    mock_service.create_bet.side_effect = RuleViolationError("Insufficient balance")
    app.dependency_overrides[_bet_service] = lambda: mock_service

    response = client.post(
        "/bets",
        json={"creator_id": "u1", "title": "x", "deadline": _deadline(), "bet_amount": 5},
    )

    assert response.status_code == 400
    assert response.json() == {"detail": "Insufficient balance"}
    mock_service.create_bet.assert_called_once()
