from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from .db import Base

MIN_TRUST_SCORE = 0.0
MAX_TRUST_SCORE = 10.0
DEFAULT_TRUST_SCORE = 5.0


class UserRole(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"


class BetStatus(str, Enum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    LIVE = "LIVE"
    PENDING_RESOLUTION = "PENDING_RESOLUTION"
    DISPUTED = "DISPUTED"
    RESOLVED = "RESOLVED"
    CANCELLED = "CANCELLED"


class ParticipantStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"


class TransactionType(str, Enum):
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    BET_PLACED = "BET_PLACED"
    BET_WON = "BET_WON"
    BET_LOST = "BET_LOST"
    BET_CANCELLED = "BET_CANCELLED"
    BET_REFUND = "BET_REFUND"
    ADMIN_ADJUSTMENT = "ADMIN_ADJUSTMENT"
    SQUARES_PURCHASE = "SQUARES_PURCHASE"
    SQUARES_PAYOUT = "SQUARES_PAYOUT"
    SQUARES_REFUND = "SQUARES_REFUND"


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class DisputeReason(str, Enum):
    INCORRECT_RESOLUTION = "INCORRECT_RESOLUTION"
    NO_RESOLUTION = "NO_RESOLUTION"
    EVIDENCE_IGNORED = "EVIDENCE_IGNORED"
    OTHER = "OTHER"


class DisputeStatus(str, Enum):
    PENDING = "PENDING"
    UNDER_REVIEW = "UNDER_REVIEW"
    RESOLVED_FOR_FILER = "RESOLVED_FOR_FILER"
    RESOLVED_FOR_CREATOR = "RESOLVED_FOR_CREATOR"
    DISMISSED = "DISMISSED"

    @property
    def is_terminal(self) -> bool:
        return self in {
            DisputeStatus.RESOLVED_FOR_FILER,
            DisputeStatus.RESOLVED_FOR_CREATOR,
            DisputeStatus.DISMISSED,
        }


class NotificationType(str, Enum):
    BET_JOINED = "BET_JOINED"
    BET_RESOLVED = "BET_RESOLVED"
    BET_CANCELLED = "BET_CANCELLED"
    BET_DISPUTED = "BET_DISPUTED"
    SQUARES_PURCHASE_CONFIRMED = "SQUARES_PURCHASE_CONFIRMED"
    SQUARES_GRID_LOCKED = "SQUARES_GRID_LOCKED"
    SQUARES_GAME_LIVE = "SQUARES_GAME_LIVE"
    SQUARES_PERIOD_WINNER = "SQUARES_PERIOD_WINNER"
    SQUARES_GAME_CANCELLED = "SQUARES_GAME_CANCELLED"


class NotificationPriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


class EventStatus(str, Enum):
    UPCOMING = "UPCOMING"
    LIVE = "LIVE"
    HALFTIME = "HALFTIME"
    FINISHED = "FINISHED"
    POSTPONED = "POSTPONED"
    CANCELLED = "CANCELLED"


class SquaresGameStatus(str, Enum):
    ACTIVE = "ACTIVE"
    LOCKED = "LOCKED"
    LIVE = "LIVE"
    PENDING_RESOLUTION = "PENDING_RESOLUTION"
    RESOLVED = "RESOLVED"
    CANCELLED = "CANCELLED"


class SquaresPeriod(str, Enum):
    PERIOD_1 = "PERIOD_1"
    PERIOD_2 = "PERIOD_2"
    PERIOD_3 = "PERIOD_3"
    PERIOD_4 = "PERIOD_4"

    @classmethod
    def for_number(cls, period: int) -> "SquaresPeriod":
        return cls(f"PERIOD_{period}")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _new_id() -> str:
    return str(uuid4())


def _money() -> Numeric:
    return Numeric(12, 2, asdecimal=False)


def _require_member(enum_cls: type[Enum], key: str, value: str) -> str:
    raw = value.value if isinstance(value, Enum) else value
    try:
        enum_cls(raw)
    except ValueError as exc:
        raise ValueError(f"{key} must be one of {[m.value for m in enum_cls]}, got {raw!r}") from exc
    return raw


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    username: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    display_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default=UserRole.USER.value)
    balance: Mapped[float] = mapped_column(_money(), nullable=False, default=0.0)
    trust_score: Mapped[float] = mapped_column(Float, nullable=False, default=DEFAULT_TRUST_SCORE)
    total_bets: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_winnings: Mapped[float] = mapped_column(_money(), nullable=False, default=0.0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    trust_history: Mapped[list["TrustScoreHistory"]] = relationship(
        "TrustScoreHistory", back_populates="user", cascade="all, delete-orphan"
    )

    @validates("role")
    def _validate_role(self, key: str, value: str) -> str:
        return _require_member(UserRole, key, value)

    @validates("trust_score")
    def _validate_trust_score(self, key: str, value: float) -> float:
        if value is None or not MIN_TRUST_SCORE <= value <= MAX_TRUST_SCORE:
            raise ValueError(f"trust_score must be within [{MIN_TRUST_SCORE}, {MAX_TRUST_SCORE}]")
        return value

    @validates("balance")
    def _validate_balance(self, key: str, value: float) -> float:
        if value is None or value < 0:
            raise ValueError("balance cannot be negative")
        return value

    @property
    def is_admin(self) -> bool:
        return self.role in {UserRole.ADMIN.value, UserRole.SUPER_ADMIN.value}


class Bet(Base):
    __tablename__ = "bets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    category: Mapped[str] = mapped_column(String(20), nullable=False, default="CUSTOM")
    status: Mapped[str] = mapped_column(
        String(30), nullable=False, default=BetStatus.ACTIVE.value, index=True
    )
    creator_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    total_pot: Mapped[float] = mapped_column(_money(), nullable=False, default=0.0)
    bet_amount: Mapped[float | None] = mapped_column(_money(), nullable=True)
    side_a_name: Mapped[str] = mapped_column(String(100), nullable=False, default="Side A")
    side_b_name: Mapped[str] = mapped_column(String(100), nullable=False, default="Side B")
    deadline: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    winning_side: Mapped[str | None] = mapped_column(String(20), nullable=True)
    resolution_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    dispute_window_ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_private: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    participants: Mapped[list["Participant"]] = relationship(
        "Participant", back_populates="bet", cascade="all, delete-orphan"
    )
    disputes: Mapped[list["Dispute"]] = relationship("Dispute", back_populates="bet")

    @validates("status")
    def _validate_status(self, key: str, value: str) -> str:
        return _require_member(BetStatus, key, value)

    @validates("title")
    def _validate_title(self, key: str, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("bet title is required")
        return value.strip()

    def side_name(self, side: str | None) -> str:
        if side == "A":
            return self.side_a_name
        if side == "B":
            return self.side_b_name
        return side or "unknown"


class Participant(Base):
    __tablename__ = "participants"
    __table_args__ = (UniqueConstraint("bet_id", "user_id", name="uq_participant_bet_user"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    bet_id: Mapped[str] = mapped_column(String(36), ForeignKey("bets.id"), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    side: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[float] = mapped_column(_money(), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=ParticipantStatus.PENDING.value)
    payout: Mapped[float] = mapped_column(_money(), nullable=False, default=0.0)
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    has_accepted_result: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    accepted_result_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    bet: Mapped[Bet] = relationship("Bet", back_populates="participants")

    @validates("amount")
    def _validate_amount(self, key: str, value: float) -> float:
        if value is None or value <= 0:
            raise ValueError("participant stake must be positive")
        return value

    @validates("status")
    def _validate_status(self, key: str, value: str) -> str:
        return _require_member(ParticipantStatus, key, value)


class Transaction(Base):
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TransactionStatus.PENDING.value, index=True
    )
    amount: Mapped[float] = mapped_column(_money(), nullable=False)
    actual_amount: Mapped[float | None] = mapped_column(_money(), nullable=True)
    platform_fee: Mapped[float] = mapped_column(_money(), nullable=False, default=0.0)
    balance_before: Mapped[float] = mapped_column(_money(), nullable=False, default=0.0)
    balance_after: Mapped[float] = mapped_column(_money(), nullable=False, default=0.0)
    related_bet_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("bets.id"), nullable=True, index=True
    )
    related_participant_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    related_squares_game_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("squares_games.id"), nullable=True, index=True
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @validates("type")
    def _validate_type(self, key: str, value: str) -> str:
        return _require_member(TransactionType, key, value)

    @validates("status")
    def _validate_status(self, key: str, value: str) -> str:
        return _require_member(TransactionStatus, key, value)

    @validates("amount")
    def _validate_amount(self, key: str, value: float) -> float:
        if value is None or value < 0:
            raise ValueError("transaction amount cannot be negative")
        return value


class Dispute(Base):
    __tablename__ = "disputes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    bet_id: Mapped[str] = mapped_column(String(36), ForeignKey("bets.id"), nullable=False, index=True)
    filed_by: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    against_user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False)
    reason: Mapped[str] = mapped_column(String(30), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(
        String(30), nullable=False, default=DisputeStatus.PENDING.value, index=True
    )
    evidence_urls: Mapped[list | None] = mapped_column(JSON, nullable=True)
    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    resolution: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    bet: Mapped[Bet] = relationship("Bet", back_populates="disputes")

    @validates("reason")
    def _validate_reason(self, key: str, value: str) -> str:
        return _require_member(DisputeReason, key, value)

    @validates("status")
    def _validate_status(self, key: str, value: str) -> str:
        return _require_member(DisputeStatus, key, value)

    @validates("description")
    def _validate_description(self, key: str, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("dispute description is required")
        return value


class TrustScoreHistory(Base):
    __tablename__ = "trust_score_history"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    change: Mapped[float] = mapped_column(Float, nullable=False)
    new_score: Mapped[float] = mapped_column(Float, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    related_bet_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    related_transaction_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    related_dispute_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    user: Mapped[User] = relationship("User", back_populates="trust_history")


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(40), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    priority: Mapped[str] = mapped_column(String(10), nullable=False, default=NotificationPriority.MEDIUM.value)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    action_type: Mapped[str | None] = mapped_column(String(40), nullable=True)
    action_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    related_bet_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    related_user_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class LiveEvent(Base):
    __tablename__ = "live_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    home_team: Mapped[str] = mapped_column(String(100), nullable=False)
    away_team: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=EventStatus.UPCOMING.value)
    scheduled_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    home_period_scores: Mapped[list | None] = mapped_column(JSON, nullable=True)
    away_period_scores: Mapped[list | None] = mapped_column(JSON, nullable=True)


class SquaresGame(Base):
    __tablename__ = "squares_games"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    creator_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False)
    event_id: Mapped[str] = mapped_column(String(36), ForeignKey("live_events.id"), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    price_per_square: Mapped[float] = mapped_column(_money(), nullable=False)
    total_pot: Mapped[float] = mapped_column(_money(), nullable=False, default=0.0)
    squares_sold: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payout_structure: Mapped[dict] = mapped_column(JSON, nullable=False)
    row_numbers: Mapped[list | None] = mapped_column(JSON, nullable=True)
    col_numbers: Mapped[list | None] = mapped_column(JSON, nullable=True)
    numbers_assigned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[str] = mapped_column(
        String(30), nullable=False, default=SquaresGameStatus.ACTIVE.value, index=True
    )
    resolution_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_private: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    locks_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    purchases: Mapped[list["SquaresPurchase"]] = relationship(
        "SquaresPurchase", back_populates="game", cascade="all, delete-orphan"
    )
    payouts: Mapped[list["SquaresPayout"]] = relationship(
        "SquaresPayout", back_populates="game", cascade="all, delete-orphan"
    )

    @validates("status")
    def _validate_status(self, key: str, value: str) -> str:
        return _require_member(SquaresGameStatus, key, value)


class SquaresPurchase(Base):
    __tablename__ = "squares_purchases"
    __table_args__ = (
        UniqueConstraint("squares_game_id", "grid_row", "grid_col", name="uq_squares_cell"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    squares_game_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("squares_games.id"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False)
    owner_name: Mapped[str] = mapped_column(String(100), nullable=False)
    grid_row: Mapped[int] = mapped_column(Integer, nullable=False)
    grid_col: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[float] = mapped_column(_money(), nullable=False)
    transaction_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    purchased_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    game: Mapped[SquaresGame] = relationship("SquaresGame", back_populates="purchases")

    @validates("grid_row", "grid_col")
    def _validate_cell(self, key: str, value: int) -> int:
        if value is None or not 0 <= value <= 9:
            raise ValueError(f"{key} must be between 0 and 9")
        return value


class SquaresPayout(Base):
    __tablename__ = "squares_payouts"
    __table_args__ = (
        UniqueConstraint("squares_game_id", "period", name="uq_squares_payout_period"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    squares_game_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("squares_games.id"), nullable=False, index=True
    )
    squares_purchase_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False)
    owner_name: Mapped[str] = mapped_column(String(100), nullable=False)
    period: Mapped[str] = mapped_column(String(10), nullable=False)
    amount: Mapped[float] = mapped_column(_money(), nullable=False, default=0.0)
    home_score: Mapped[int] = mapped_column(Integer, nullable=False)
    away_score: Mapped[int] = mapped_column(Integer, nullable=False)
    home_score_full: Mapped[int] = mapped_column(Integer, nullable=False)
    away_score_full: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=TransactionStatus.COMPLETED.value)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    game: Mapped[SquaresGame] = relationship("SquaresGame", back_populates="payouts")
