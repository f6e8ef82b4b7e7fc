from __future__ import annotations

from typing import Annotated

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from . import schemas
from .core.config import settings
from .db import get_db, init_db
from .errors import SideBetError
from .models import BetStatus
from .services.acceptance_service import AcceptanceService
from .services.bet_queries import BetQueryService, UserBetQuery
from .services.bet_service import BetService
from .services.dispute_service import DisputeService
from .services.list_cache import ListQueryCache
from .services.squares_service import SquaresService
from .services.trust_score_service import TrustScoreService, trust_tier

app = FastAPI(title="SideBet API", version="0.1.0", debug=settings.debug)
app.state.list_cache = ListQueryCache(
    settings.list_cache_ttl_seconds, max_entries=settings.list_cache_max_entries
)


@app.on_event("startup")
def on_startup() -> None:
    """Create tables when the API boots."""

    init_db()


@app.exception_handler(SideBetError)
def handle_rule_error(request: Request, exc: SideBetError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.get("/healthz", tags=["system"])
def healthcheck() -> dict[str, str]:
    """Basic readiness probe consumed by infrastructure monitors."""

    return {"status": "ok"}


# ----------------------------------------------------------------------
# Dependencies


def _list_cache(request: Request) -> ListQueryCache:
    return request.app.state.list_cache


def _bet_service(db: Session = Depends(get_db)) -> BetService:
    return BetService(db)


def _acceptance_service(db: Session = Depends(get_db)) -> AcceptanceService:
    return AcceptanceService(db)


def _dispute_service(db: Session = Depends(get_db)) -> DisputeService:
    return DisputeService(db)


def _trust_service(db: Session = Depends(get_db)) -> TrustScoreService:
    return TrustScoreService(db)


def _squares_service(db: Session = Depends(get_db)) -> SquaresService:
    return SquaresService(db)


def _bet_queries(
    db: Session = Depends(get_db), cache: ListQueryCache = Depends(_list_cache)
) -> BetQueryService:
    """Provide cached bet listings backed by the app-owned cache."""

    return BetQueryService(db, cache)


# ----------------------------------------------------------------------
# Bets


@app.post("/bets", response_model=schemas.Bet, status_code=201, tags=["bets"])
def create_bet(
    payload: schemas.BetCreate,
    db: Session = Depends(get_db),
    service: BetService = Depends(_bet_service),
    queries: BetQueryService = Depends(_bet_queries),
):
    """Create an ACTIVE bet with the creator's stake already placed."""

    bet = service.create_bet(
        payload.creator_id,
        title=payload.title,
        deadline=payload.deadline,
        bet_amount=payload.bet_amount,
        side=payload.side,
        description=payload.description,
        side_a_name=payload.side_a_name,
        side_b_name=payload.side_b_name,
        is_private=payload.is_private,
        category=payload.category,
    )
    db.commit()
    queries.invalidate_bet(bet)
    return queries.get_bet(bet.id)


@app.get("/bets/{bet_id}", response_model=schemas.Bet, tags=["bets"])
def get_bet(bet_id: str, queries: BetQueryService = Depends(_bet_queries)):
    return queries.get_bet(bet_id)


@app.post("/bets/{bet_id}/join", response_model=schemas.ParticipantBase, tags=["bets"])
def join_bet(
    bet_id: str,
    payload: schemas.BetJoin,
    db: Session = Depends(get_db),
    service: BetService = Depends(_bet_service),
    queries: BetQueryService = Depends(_bet_queries),
):
    participant = service.join_bet(bet_id, payload.user_id, payload.side, payload.amount)
    db.commit()
    queries.invalidate_bet(participant.bet)
    return participant


@app.post("/bets/{bet_id}/resolve", response_model=schemas.Bet, tags=["bets"])
def resolve_bet(
    bet_id: str,
    payload: schemas.BetResolve,
    db: Session = Depends(get_db),
    service: BetService = Depends(_bet_service),
    queries: BetQueryService = Depends(_bet_queries),
):
    """Record the creator's verdict; winnings stay pending until the dispute window closes."""

    bet = service.resolve_bet(bet_id, payload.creator_id, payload.winning_side)
    db.commit()
    queries.invalidate_bet(bet)
    return queries.get_bet(bet.id)


@app.post("/bets/{bet_id}/cancel", response_model=schemas.Bet, tags=["bets"])
def cancel_bet(
    bet_id: str,
    payload: schemas.BetCancel,
    db: Session = Depends(get_db),
    service: BetService = Depends(_bet_service),
    queries: BetQueryService = Depends(_bet_queries),
):
    bet = service.cancel_bet(bet_id, payload.creator_id)
    db.commit()
    queries.invalidate_bet(bet)
    return queries.get_bet(bet.id)


@app.post("/bets/{bet_id}/accept", response_model=schemas.RuleOutcome, tags=["bets"])
def accept_bet_result(
    bet_id: str,
    payload: schemas.AcceptResult,
    db: Session = Depends(get_db),
    service: AcceptanceService = Depends(_acceptance_service),
    queries: BetQueryService = Depends(_bet_queries),
):
    """Accept the creator's resolution; closes the dispute window once everyone has."""

    result = service.accept_bet_result(bet_id, payload.user_id)
    if not result.ok:
        status_code = 404 if result.reason == "Bet not found" else 400
        raise HTTPException(status_code=status_code, detail=result.reason)
    db.commit()
    queries.invalidate_bet_id(bet_id)
    return schemas.RuleOutcome.model_validate(result)


@app.get("/bets/{bet_id}/acceptance", response_model=schemas.AcceptanceProgress, tags=["bets"])
def acceptance_progress(
    bet_id: str,
    queries: BetQueryService = Depends(_bet_queries),
    service: AcceptanceService = Depends(_acceptance_service),
):
    queries.get_bet(bet_id)
    return schemas.AcceptanceProgress.model_validate(service.acceptance_progress(bet_id))


# ----------------------------------------------------------------------
# Disputes


@app.post("/bets/{bet_id}/disputes", response_model=schemas.Dispute, status_code=201, tags=["disputes"])
def file_dispute(
    bet_id: str,
    payload: schemas.DisputeCreate,
    db: Session = Depends(get_db),
    service: DisputeService = Depends(_dispute_service),
    queries: BetQueryService = Depends(_bet_queries),
):
    dispute = service.file_dispute(
        bet_id,
        payload.filed_by,
        payload.reason,
        payload.description,
        evidence_urls=payload.evidence_urls,
        against_user_id=payload.against_user_id,
    )
    db.commit()
    queries.invalidate_bet_id(bet_id)
    return dispute


@app.get("/bets/{bet_id}/disputes", response_model=schemas.DisputeList, tags=["disputes"])
def list_bet_disputes(bet_id: str, service: DisputeService = Depends(_dispute_service)):
    items = service.disputes_for_bet(bet_id)
    return schemas.DisputeList(total=len(items), items=items)


@app.get("/disputes/pending", response_model=schemas.DisputeList, tags=["disputes"])
def list_pending_disputes(service: DisputeService = Depends(_dispute_service)):
    """Disputes waiting for an admin decision."""

    items = service.pending_disputes()
    return schemas.DisputeList(total=len(items), items=items)


@app.post("/disputes/{dispute_id}/resolve", response_model=schemas.Dispute, tags=["disputes"])
def resolve_dispute(
    dispute_id: str,
    payload: schemas.DisputeResolve,
    db: Session = Depends(get_db),
    service: DisputeService = Depends(_dispute_service),
    queries: BetQueryService = Depends(_bet_queries),
):
    dispute = service.resolve_dispute(
        dispute_id,
        payload.outcome,
        payload.resolution,
        payload.admin_user_id,
        notes=payload.notes,
    )
    db.commit()
    queries.invalidate_bet(dispute.bet)
    return dispute


# ----------------------------------------------------------------------
# Users


@app.get("/users/{user_id}/trust", response_model=schemas.TrustScore, tags=["users"])
def get_trust_score(user_id: str, service: TrustScoreService = Depends(_trust_service)):
    score = service.get_score(user_id)
    return schemas.TrustScore(user_id=user_id, trust_score=score, tier=trust_tier(score))


@app.get(
    "/users/{user_id}/trust/history",
    response_model=list[schemas.TrustHistoryEntry],
    tags=["users"],
)
def get_trust_history(
    user_id: str,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
    service: TrustScoreService = Depends(_trust_service),
):
    """Most recent trust score changes, newest first."""

    service.get_score(user_id)
    return service.trust_history(user_id, limit=limit)


@app.get("/users/{user_id}/capabilities", response_model=schemas.TrustCapabilities, tags=["users"])
def get_capabilities(user_id: str, service: TrustScoreService = Depends(_trust_service)):
    return schemas.TrustCapabilities(user_id=user_id, **service.capabilities(user_id))


@app.get("/users/{user_id}/bets", response_model=schemas.BetList, tags=["users"])
def list_user_bets(
    user_id: str,
    status: Annotated[BetStatus | None, Query(description="Bet status filter")] = None,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
    queries: BetQueryService = Depends(_bet_queries),
):
    """Bets the user created or joined, newest first. Served from the list cache when warm."""

    result = queries.list_user_bets(
        UserBetQuery(user_id=user_id, status=status, limit=limit, offset=offset)
    )
    return schemas.BetList(total=result.total, items=list(result.bets))


@app.get("/users/{user_id}/disputes", response_model=schemas.DisputeList, tags=["users"])
def list_user_disputes(user_id: str, service: DisputeService = Depends(_dispute_service)):
    items = service.disputes_for_user(user_id)
    return schemas.DisputeList(total=len(items), items=items)


# ----------------------------------------------------------------------
# Squares


@app.post("/squares", response_model=schemas.SquaresGame, status_code=201, tags=["squares"])
def create_squares_game(
    payload: schemas.SquaresGameCreate,
    db: Session = Depends(get_db),
    service: SquaresService = Depends(_squares_service),
):
    game = service.create_game(
        payload.creator_id,
        payload.event_id,
        payload.title,
        payload.price_per_square,
        payout_structure=payload.payout_structure,
        description=payload.description,
        is_private=payload.is_private,
    )
    db.commit()
    return game


@app.post(
    "/squares/{game_id}/purchase",
    response_model=list[schemas.SquaresPurchase],
    status_code=201,
    tags=["squares"],
)
def purchase_squares(
    game_id: str,
    payload: schemas.SquaresPurchaseRequest,
    db: Session = Depends(get_db),
    service: SquaresService = Depends(_squares_service),
):
    purchases = service.purchase_squares(
        game_id, payload.user_id, payload.owner_name, payload.squares
    )
    db.commit()
    return purchases


@app.get("/squares/{game_id}", response_model=schemas.SquaresGame, tags=["squares"])
def get_squares_game(game_id: str, service: SquaresService = Depends(_squares_service)):
    return service.get_game(game_id)
