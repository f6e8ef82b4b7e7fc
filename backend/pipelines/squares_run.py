"""Standalone job that advances squares games: lock, start, pay periods, resolve, cancel."""

from __future__ import annotations

import argparse
import json
import random
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, ContextManager

from loguru import logger

from sidebet.core.config import Settings, get_settings
from sidebet.core.logging import configure_logging
from sidebet.db import init_db, session_scope
from sidebet.domain import SquaresSweepResult
from sidebet.models import utcnow
from sidebet.services.squares_service import SquaresSweep


def run_squares_sweep(
    *,
    settings: Settings | None = None,
    session_factory: Callable[[], ContextManager[Any]] | None = None,
    init_db_fn: Callable[[], None] = init_db,
    clock: Callable[[], datetime] = utcnow,
    rng: random.Random | None = None,
) -> SquaresSweepResult:
    settings = settings or get_settings()
    if session_factory is None:
        init_db_fn()
        session_factory = session_scope

    logger.info("Starting squares sweep")
    with session_factory() as session:
        return SquaresSweep(session, settings=settings, clock=clock, rng=rng).run()


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Advance squares games through their lifecycle")
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Seed the grid number shuffle (for reproducible dry runs)",
    )
    parser.add_argument(
        "--summary-path",
        type=Path,
        default=None,
        help="Optional path where a JSON summary report will be written",
    )
    return parser.parse_args()


def _write_summary(summary: SquaresSweepResult, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(summary.to_dict(), default=str, indent=2))
    logger.info("Squares summary written to {}", path)


def main() -> SquaresSweepResult:
    args = _parse_args()
    settings = get_settings()
    configure_logging(settings)
    rng = random.Random(args.seed) if args.seed is not None else None
    summary = run_squares_sweep(settings=settings, rng=rng)
    if args.summary_path:
        _write_summary(summary, args.summary_path)
    return summary


if __name__ == "__main__":
    main()
