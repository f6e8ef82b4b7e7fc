"""Plain value types shared by rule services, sweeps, and the API."""

from .money import calculate_platform_fee, round_money, split_winnings
from .results import (
    AcceptanceProgress,
    ExpirySweepResult,
    PayoutSweepResult,
    RuleResult,
    SquaresSweepResult,
    SweepFailure,
)

__all__ = [
    "AcceptanceProgress",
    "ExpirySweepResult",
    "PayoutSweepResult",
    "RuleResult",
    "SquaresSweepResult",
    "SweepFailure",
    "calculate_platform_fee",
    "round_money",
    "split_winnings",
]
