"""Run the expiry, payout, and squares sweeps on independent fixed intervals."""

from __future__ import annotations

import argparse
import time
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from loguru import logger

from sidebet.core.config import Settings, get_settings
from sidebet.core.logging import configure_logging
from sidebet.db import init_db

from .expiry_run import run_expiry_sweep
from .payout_run import run_payout_sweep
from .squares_run import run_squares_sweep


@dataclass(slots=True)
class ScheduledJob:
    name: str
    interval_seconds: float
    run: Callable[[], Any]
    next_run_at: float = 0.0


class SweepScheduler:
    """Fire each job when its own interval elapses. A failing job never stops the others."""

    def __init__(
        self,
        jobs: Sequence[ScheduledJob],
        *,
        timer: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._jobs = list(jobs)
        self._timer = timer
        self._sleep = sleep

    @property
    def jobs(self) -> list[ScheduledJob]:
        return list(self._jobs)

    def run_pending(self) -> list[str]:
        """Run every due job once and return the names that ran."""

        ran: list[str] = []
        for job in self._jobs:
            now = self._timer()
            if now < job.next_run_at:
                continue
            try:
                summary = job.run()
            except Exception:
                logger.exception("Scheduled job {} failed", job.name)
            else:
                to_dict = getattr(summary, "to_dict", None)
                logger.info("Scheduled job {} finished: {}", job.name, to_dict() if to_dict else summary)
            job.next_run_at = now + job.interval_seconds
            ran.append(job.name)
        return ran

    def run_all_once(self) -> list[str]:
        for job in self._jobs:
            job.next_run_at = 0.0
        return self.run_pending()

    def run_forever(self, *, max_iterations: int | None = None) -> None:
        iterations = 0
        while max_iterations is None or iterations < max_iterations:
            self.run_pending()
            iterations += 1
            wait = min(job.next_run_at for job in self._jobs) - self._timer()
            if wait > 0 and (max_iterations is None or iterations < max_iterations):
                self._sleep(wait)


def build_jobs(settings: Settings) -> list[ScheduledJob]:
    limit = settings.sweep_batch_size
    return [
        ScheduledJob(
            name="expiry",
            interval_seconds=settings.expiry_sweep_interval_seconds,
            run=lambda: run_expiry_sweep(settings=settings, limit=limit, init_db_fn=lambda: None),
        ),
        ScheduledJob(
            name="payout",
            interval_seconds=settings.payout_sweep_interval_seconds,
            run=lambda: run_payout_sweep(settings=settings, limit=limit, init_db_fn=lambda: None),
        ),
        ScheduledJob(
            name="squares",
            interval_seconds=settings.squares_sweep_interval_seconds,
            run=lambda: run_squares_sweep(settings=settings, init_db_fn=lambda: None),
        ),
    ]


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run SideBet background sweeps on a schedule")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run every sweep a single time and exit",
    )
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    settings = get_settings()
    configure_logging(settings)
    init_db()
    scheduler = SweepScheduler(build_jobs(settings))
    if args.once:
        scheduler.run_all_once()
        return
    logger.info(
        "Scheduler started: expiry every {}s, payout every {}s, squares every {}s",
        settings.expiry_sweep_interval_seconds,
        settings.payout_sweep_interval_seconds,
        settings.squares_sweep_interval_seconds,
    )
    scheduler.run_forever()


if __name__ == "__main__":
    main()
