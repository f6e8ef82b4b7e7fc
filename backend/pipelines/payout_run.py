"""Standalone job that pays out resolved bets once their dispute window has closed."""

from __future__ import annotations

import argparse
import json
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, ContextManager

from loguru import logger

from sidebet.core.config import Settings, get_settings
from sidebet.core.logging import configure_logging
from sidebet.db import init_db, session_scope
from sidebet.domain import PayoutSweepResult
from sidebet.models import utcnow
from sidebet.services.payout_service import PayoutCalculator


def run_payout_sweep(
    *,
    settings: Settings | None = None,
    limit: int | None = None,
    session_factory: Callable[[], ContextManager[Any]] | None = None,
    init_db_fn: Callable[[], None] = init_db,
    clock: Callable[[], datetime] = utcnow,
    sleep: Callable[[float], None] = time.sleep,
) -> PayoutSweepResult:
    settings = settings or get_settings()
    if session_factory is None:
        init_db_fn()
        session_factory = session_scope

    logger.info("Starting payout sweep: limit={}, fee_rate={}", limit, settings.platform_fee_rate)
    with session_factory() as session:
        calculator = PayoutCalculator(session, settings=settings, clock=clock, sleep=sleep)
        return calculator.sweep(limit=limit)


def _parse_args() -> argparse.Namespace:
    settings = get_settings()
    parser = argparse.ArgumentParser(
        description="Complete pending winnings for bets whose dispute window has passed",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=settings.sweep_batch_size,
        help="Maximum number of PENDING_RESOLUTION bets to evaluate",
    )
    parser.add_argument(
        "--summary-path",
        type=Path,
        default=None,
        help="Optional path where a JSON summary report will be written",
    )
    return parser.parse_args()


def _write_summary(summary: PayoutSweepResult, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(summary.to_dict(), default=str, indent=2))
    logger.info("Payout summary written to {}", path)


def main() -> PayoutSweepResult:
    args = _parse_args()
    settings = get_settings()
    configure_logging(settings)
    summary = run_payout_sweep(settings=settings, limit=args.limit)
    if args.summary_path:
        _write_summary(summary, args.summary_path)
    return summary


if __name__ == "__main__":
    main()
