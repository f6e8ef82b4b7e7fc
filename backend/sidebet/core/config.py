from functools import lru_cache
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from pydantic import AnyUrl, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _ensure_sqlalchemy_postgres_scheme(value: str) -> str:
    if not value.lower().startswith("postgres"):
        return value

    parsed = urlparse(value)
    scheme = parsed.scheme.lower()

    if scheme == "postgres":
        scheme = "postgresql"

    if scheme == "postgresql":
        scheme = "postgresql+psycopg"

    if scheme not in {"postgresql+psycopg", "postgresql+asyncpg"}:
        scheme = "postgresql+psycopg"

    query_params = dict(parse_qsl(parsed.query, keep_blank_values=True))
    query_params.setdefault("sslmode", "require")
    new_query = urlencode(query_params, doseq=True)

    return urlunparse(parsed._replace(scheme=scheme, query=new_query))


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    debug: bool = Field(False, description="Enable FastAPI debug mode")
    environment: str = Field(
        default="development",
        description="Runtime environment (development|staging|production)",
    )
    log_level: str = Field(default="INFO", description="Minimum level emitted by loguru sinks")
    database_url: AnyUrl | str = Field(
        default="sqlite:///../data/sidebet.db",
        description="SQLAlchemy compatible database URL",
    )

    platform_fee_rate: float = Field(
        default=0.03,
        description="Fraction of gross winnings retained by the platform",
        ge=0,
        lt=1,
    )
    dispute_window_hours: int = Field(
        default=48,
        description="Hours a creator-resolved bet waits before winnings are paid out",
        ge=0,
    )
    early_closure_backdate_minutes: int = Field(
        default=1,
        description="How far into the past the dispute window is moved once everyone accepts",
        ge=1,
    )
    dispute_cooldown_hours: int = Field(
        default=24,
        description="Minimum hours between two disputes filed by the same user",
        ge=0,
    )
    max_pending_disputes: int = Field(
        default=3,
        description="Maximum number of PENDING disputes a user may have open",
        ge=1,
    )
    dispute_filing_window_days: int = Field(
        default=7,
        description="Days after the last bet update during which a dispute may be filed",
        ge=0,
    )
    repeated_cancellation_threshold: int = Field(
        default=2,
        description="Cancelled-after-join bets within 30 days before the repeated-abuse penalty applies",
        ge=1,
    )

    sweep_write_delay_seconds: float = Field(
        default=0.1,
        description="Pause inserted between per-item writes during sweeps",
        ge=0,
    )
    sweep_batch_size: int = Field(
        default=100,
        description="Number of rows fetched per page while sweeping",
        ge=1,
    )
    expiry_sweep_interval_seconds: int = Field(default=300, ge=1)
    payout_sweep_interval_seconds: int = Field(default=300, ge=1)
    squares_sweep_interval_seconds: int = Field(default=300, ge=1)

    list_cache_ttl_seconds: float = Field(
        default=30.0,
        description="Lifetime of cached list query results served by the API",
        ge=0,
    )
    list_cache_max_entries: int = Field(
        default=1024,
        description="Upper bound on cached list query results kept in memory",
        ge=1,
    )

    squares_start_grace_hours: float = Field(
        default=2.0,
        description="Hours past the scheduled start after which a locked grid goes live anyway",
        ge=0,
    )
    squares_stale_days: float = Field(
        default=2.0,
        description="Days after locking before a live squares game is force-resolved",
        ge=0,
    )
    squares_default_payout_structure: dict[str, float] = Field(
        default_factory=lambda: {
            "period1": 0.15,
            "period2": 0.25,
            "period3": 0.15,
            "period4": 0.45,
        },
        description="Share of the squares pot paid out per period",
    )

    @field_validator("database_url", mode="before")
    @classmethod
    def _normalize_postgres_urls(cls, value: Any) -> Any:
        if value is None or not isinstance(value, str):
            return value
        if value.startswith("postgres://"):
            return "postgresql://" + value[len("postgres://") :]
        return value

    @field_validator("squares_default_payout_structure")
    @classmethod
    def _validate_payout_structure(cls, value: dict[str, float]) -> dict[str, float]:
        expected = {"period1", "period2", "period3", "period4"}
        if set(value) != expected:
            raise ValueError("squares payout structure must define period1..period4")
        if abs(sum(value.values()) - 1.0) > 0.001:
            raise ValueError("squares payout structure must total 100%")
        return value

    @property
    def resolved_database_url(self) -> str:
        return _ensure_sqlalchemy_postgres_scheme(str(self.database_url))


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
