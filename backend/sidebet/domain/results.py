"""Result types returned by rule checks and sweeps."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True)
class RuleResult:
    """Outcome of a precondition check. Failures carry a user-facing reason."""

    ok: bool
    reason: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, **data: Any) -> "RuleResult":
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, reason: str, **data: Any) -> "RuleResult":
        return cls(ok=False, reason=reason, data=data)

    def __bool__(self) -> bool:
        return self.ok


@dataclass(slots=True)
class AcceptanceProgress:
    total: int
    accepted: int
    accepted_user_ids: list[str] = field(default_factory=list)

    @property
    def all_accepted(self) -> bool:
        return self.total > 0 and self.accepted == self.total


@dataclass(slots=True)
class SweepFailure:
    item_id: str
    reason: str

    def to_dict(self) -> dict[str, str]:
        return {"id": self.item_id, "reason": self.reason}


@dataclass(slots=True)
class ExpirySweepResult:
    checked: int = 0
    moved_to_pending: int = 0
    cancelled: int = 0
    skipped: int = 0
    errors: int = 0
    failures: list[SweepFailure] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked": self.checked,
            "moved_to_pending": self.moved_to_pending,
            "cancelled": self.cancelled,
            "skipped": self.skipped,
            "errors": self.errors,
            "failures": [failure.to_dict() for failure in self.failures],
        }


@dataclass(slots=True)
class PayoutSweepResult:
    checked: int = 0
    ready: int = 0
    processed: int = 0
    skipped_disputed: int = 0
    payouts: int = 0
    errors: int = 0
    total_paid: float = 0.0
    total_fees: float = 0.0
    failures: list[SweepFailure] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked": self.checked,
            "ready": self.ready,
            "processed": self.processed,
            "skipped_disputed": self.skipped_disputed,
            "payouts": self.payouts,
            "errors": self.errors,
            "total_paid": self.total_paid,
            "total_fees": self.total_fees,
            "failures": [failure.to_dict() for failure in self.failures],
        }


@dataclass(slots=True)
class SquaresSweepResult:
    locked: int = 0
    started: int = 0
    periods_paid: int = 0
    resolved: int = 0
    cancelled: int = 0
    errors: int = 0
    failures: list[SweepFailure] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "locked": self.locked,
            "started": self.started,
            "periods_paid": self.periods_paid,
            "resolved": self.resolved,
            "cancelled": self.cancelled,
            "errors": self.errors,
            "failures": [failure.to_dict() for failure in self.failures],
        }
