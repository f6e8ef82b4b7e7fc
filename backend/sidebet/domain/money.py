"""Money helpers. Every stored amount goes through ``round_money``."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

_CENT = Decimal("0.01")

PLATFORM_FEE_RATE = 0.03


def round_money(value: float | int | Decimal) -> float:
    """Round half-up to cents; ``str`` conversion avoids binary float artefacts."""

    return float(Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP))


def calculate_platform_fee(amount: float, rate: float = PLATFORM_FEE_RATE) -> float:
    return round_money(Decimal(str(amount)) * Decimal(str(rate)))


def split_winnings(amount: float, rate: float = PLATFORM_FEE_RATE) -> tuple[float, float]:
    """Return ``(net, fee)`` for a gross winning amount."""

    fee = calculate_platform_fee(amount, rate)
    net = round_money(Decimal(str(amount)) - Decimal(str(fee)))
    return net, fee
