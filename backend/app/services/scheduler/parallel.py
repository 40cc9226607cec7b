from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, replace
import logging
from time import perf_counter
from typing import Literal

from app.services.scheduler.engine import SchedulerConfig, SchedulerEngine
from app.services.scheduler.types import SchedulerResult

logger = logging.getLogger(__name__)

SelectionCriterion = Literal["combined", "success_rate", "capacity_usage", "teacher_balance"]

SEED_STRIDE = 1000


@dataclass(frozen=True)
class AttemptResult:
    attempt: int
    seed: int
    result: SchedulerResult
    score: float


@dataclass(frozen=True)
class ParallelScheduleResult:
    best: AttemptResult
    attempts: list[AttemptResult]
    runtime_ms: int


def score_result(result: SchedulerResult, criterion: SelectionCriterion = "combined") -> float:
    """Higher is better for every criterion."""
    waste = result.metrics.avg_capacity_margin
    stddev = result.metrics.teacher_load_stddev
    if criterion == "success_rate":
        return result.success_rate * 100
    if criterion == "capacity_usage":
        return -waste
    if criterion == "teacher_balance":
        return -stddev
    return result.success_rate * 100 + max(0.0, 20 - waste / 5) + max(0.0, 20 - stddev)


def _run_attempt(config: SchedulerConfig, attempt: int, seed: int, criterion: SelectionCriterion) -> AttemptResult:
    result = SchedulerEngine(replace(config, seed=seed, on_progress=None)).run()
    return AttemptResult(attempt=attempt, seed=seed, result=result, score=score_result(result, criterion))


def parallel_schedule(
    config: SchedulerConfig,
    *,
    attempts: int = 4,
    seed_base: int | None = None,
    select_best_by: SelectionCriterion = "combined",
    max_workers: int | None = None,
) -> ParallelScheduleResult:
    """Run independent engines with seeds ``seed_base + i * 1000`` and keep the best.

    Each attempt builds its own engine, index and generator from a copy of the
    config; only the finished results are compared.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")
    start = perf_counter()
    base = seed_base if seed_base is not None else (config.seed if config.seed is not None else 0)
    seeds = [base + index * SEED_STRIDE for index in range(attempts)]
    workers = max_workers or attempts

    finished: list[AttemptResult] = []
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = {
            executor.submit(_run_attempt, config, index, seed, select_best_by): index
            for index, seed in enumerate(seeds)
        }
        for future in as_completed(futures):
            finished.append(future.result())

    finished.sort(key=lambda entry: entry.attempt)
    best = max(finished, key=lambda entry: (entry.score, -entry.attempt))
    runtime_ms = int((perf_counter() - start) * 1000)
    logger.info(
        "Parallel scheduling finished | attempts=%s best_attempt=%s best_seed=%s best_score=%.2f runtime_ms=%s",
        attempts,
        best.attempt,
        best.seed,
        best.score,
        runtime_ms,
    )
    return ParallelScheduleResult(best=best, attempts=finished, runtime_ms=runtime_ms)
