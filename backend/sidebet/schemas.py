from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from .models import DisputeReason, DisputeStatus


def _to_float(value: Any) -> float | None:
    if value is None:
        return None
    return float(value)


class ParticipantBase(BaseModel):
    id: str
    user_id: str
    side: str
    amount: float
    status: str
    payout: float = 0.0
    joined_at: datetime
    has_accepted_result: bool = False
    accepted_result_at: datetime | None = None

    model_config = {"from_attributes": True}

    @field_validator("amount", "payout", mode="before")
    @classmethod
    def _coerce_decimal(cls, value: Any) -> float | None:
        return _to_float(value)


class BetBase(BaseModel):
    id: str
    title: str
    description: str = ""
    category: str
    status: str
    creator_id: str
    total_pot: float
    bet_amount: float | None = None
    side_a_name: str
    side_b_name: str
    deadline: datetime
    winning_side: str | None = None
    resolution_reason: str | None = None
    dispute_window_ends_at: datetime | None = None
    is_private: bool = False
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}

    @field_validator("total_pot", "bet_amount", mode="before")
    @classmethod
    def _coerce_decimal(cls, value: Any) -> float | None:
        return _to_float(value)


class Bet(BetBase):
    participants: list[ParticipantBase] = Field(default_factory=list)


class BetList(BaseModel):
    total: int
    items: list[BetBase]


class BetCreate(BaseModel):
    creator_id: str
    title: str = Field(min_length=1, max_length=200)
    description: str = ""
    category: str = "CUSTOM"
    deadline: datetime
    bet_amount: float = Field(gt=0)
    side: str = Field(default="A", pattern="^(A|B)$")
    side_a_name: str = "Side A"
    side_b_name: str = "Side B"
    is_private: bool = False


class BetJoin(BaseModel):
    user_id: str
    side: str = Field(pattern="^(A|B)$")
    amount: float | None = Field(default=None, gt=0)


class BetResolve(BaseModel):
    creator_id: str
    winning_side: str = Field(pattern="^(A|B)$")


class BetCancel(BaseModel):
    creator_id: str


class AcceptResult(BaseModel):
    user_id: str


class RuleOutcome(BaseModel):
    ok: bool
    reason: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    model_config = {"from_attributes": True}


class AcceptanceProgress(BaseModel):
    total: int
    accepted: int
    accepted_user_ids: list[str] = Field(default_factory=list)
    all_accepted: bool

    model_config = {"from_attributes": True}


class DisputeCreate(BaseModel):
    filed_by: str
    reason: DisputeReason
    description: str = Field(min_length=1)
    evidence_urls: list[str] = Field(default_factory=list)
    against_user_id: str | None = None


class DisputeResolve(BaseModel):
    admin_user_id: str
    outcome: DisputeStatus
    resolution: str = Field(min_length=1)
    notes: str | None = None


class Dispute(BaseModel):
    id: str
    bet_id: str
    filed_by: str
    against_user_id: str
    reason: str
    description: str
    status: str
    evidence_urls: list[str] | None = None
    admin_notes: str | None = None
    resolved_by: str | None = None
    resolution: str | None = None
    created_at: datetime
    resolved_at: datetime | None = None

    model_config = {"from_attributes": True}


class DisputeList(BaseModel):
    total: int
    items: list[Dispute]


class TrustScore(BaseModel):
    user_id: str
    trust_score: float
    tier: str


class TrustHistoryEntry(BaseModel):
    id: str
    change: float
    new_score: float
    reason: str
    related_bet_id: str | None = None
    related_transaction_id: str | None = None
    related_dispute_id: str | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class TrustCapabilities(BaseModel):
    user_id: str
    trust_score: float
    tier: str
    can_create_bet: bool
    can_create_public_bet: bool
    can_withdraw: bool
    withdrawal_delay_days: int | None = None
    withdrawal_reason: str | None = None
    max_bet_amount: float


class SquaresGameCreate(BaseModel):
    creator_id: str
    event_id: str
    title: str = Field(min_length=1, max_length=200)
    description: str | None = None
    price_per_square: float = Field(gt=0)
    payout_structure: dict[str, float] | None = None
    is_private: bool = False


class SquaresPurchaseRequest(BaseModel):
    user_id: str
    owner_name: str = Field(min_length=1, max_length=100)
    squares: list[tuple[int, int]] = Field(min_length=1)


class SquaresPurchase(BaseModel):
    id: str
    user_id: str
    owner_name: str
    grid_row: int
    grid_col: int
    amount: float
    purchased_at: datetime

    model_config = {"from_attributes": True}

    @field_validator("amount", mode="before")
    @classmethod
    def _coerce_decimal(cls, value: Any) -> float | None:
        return _to_float(value)


class SquaresPayout(BaseModel):
    id: str
    period: str
    user_id: str
    owner_name: str
    amount: float
    home_score: int
    away_score: int
    status: str

    model_config = {"from_attributes": True}

    @field_validator("amount", mode="before")
    @classmethod
    def _coerce_decimal(cls, value: Any) -> float | None:
        return _to_float(value)


class SquaresGame(BaseModel):
    id: str
    creator_id: str
    event_id: str
    title: str
    description: str | None = None
    price_per_square: float
    total_pot: float
    squares_sold: int
    payout_structure: dict[str, float]
    row_numbers: list[int] | None = None
    col_numbers: list[int] | None = None
    numbers_assigned: bool
    status: str
    resolution_reason: str | None = None
    is_private: bool = False
    locks_at: datetime
    purchases: list[SquaresPurchase] = Field(default_factory=list)
    payouts: list[SquaresPayout] = Field(default_factory=list)

    model_config = {"from_attributes": True}

    @field_validator("price_per_square", "total_pot", mode="before")
    @classmethod
    def _coerce_decimal(cls, value: Any) -> float | None:
        return _to_float(value)
