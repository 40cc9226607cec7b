from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
import hashlib
import math
import threading
from statistics import fmean
from typing import Any, Protocol

from app.services.scheduler.types import ProblemCharacteristics

DEFAULT_MAX_RECORDS = 1000
DEFAULT_SIMILARITY_TOLERANCE = 0.2


def problem_shape(characteristics: ProblemCharacteristics) -> str:
    utilization = math.floor(characteristics.classroom_utilization * 10) / 10
    labs = 1 if characteristics.has_lab_sessions else 0
    return f"c{characteristics.course_count}_r{characteristics.classroom_count}_u{utilization}_l{labs}"


def problem_signature(characteristics: ProblemCharacteristics) -> str:
    return hashlib.blake2b(problem_shape(characteristics).encode("utf-8"), digest_size=6).hexdigest()


def _relative_difference(first: float, second: float) -> float:
    baseline = max(abs(first), abs(second))
    if baseline == 0:
        return 0.0
    return abs(first - second) / baseline


def is_similar(
    first: ProblemCharacteristics,
    second: ProblemCharacteristics,
    tolerance: float = DEFAULT_SIMILARITY_TOLERANCE,
) -> bool:
    return (
        _relative_difference(first.course_count, second.course_count) <= tolerance
        and _relative_difference(first.classroom_count, second.classroom_count) <= tolerance
        and abs(first.classroom_utilization - second.classroom_utilization) <= tolerance
        and first.has_lab_sessions == second.has_lab_sessions
    )


@dataclass(frozen=True)
class RunRecord:
    characteristics: ProblemCharacteristics
    success_rate: float
    duration_ms: int
    difficulty_weights: dict[str, float] = field(default_factory=dict)
    hill_climbing_iterations: int = 0
    metrics: dict[str, float] = field(default_factory=dict)
    recorded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def signature(self) -> str:
        return problem_signature(self.characteristics)


class HistoryStore(Protocol):
    def record(self, record: RunRecord) -> None: ...

    def query_similar(
        self,
        characteristics: ProblemCharacteristics,
        tolerance: float = DEFAULT_SIMILARITY_TOLERANCE,
    ) -> list[RunRecord]: ...

    def query_signature(self, signature: str) -> list[RunRecord]: ...

    def stats(self) -> dict[str, Any]: ...

    def clear(self) -> None: ...


def summarize_records(records: list[RunRecord]) -> dict[str, Any]:
    if not records:
        return {"total_records": 0, "avg_success_rate": 0.0, "best_success_rate": 0.0, "avg_duration_ms": 0.0}
    return {
        "total_records": len(records),
        "avg_success_rate": round(fmean(record.success_rate for record in records), 4),
        "best_success_rate": max(record.success_rate for record in records),
        "avg_duration_ms": round(fmean(record.duration_ms for record in records), 1),
    }


class InMemoryHistoryStore:
    """Bounded ring buffer of past runs; the oldest record is dropped first.

    Records are also bucketed by problem signature for exact-shape lookups.
    """

    def __init__(self, max_records: int = DEFAULT_MAX_RECORDS) -> None:
        self.max_records = max_records
        self._records: deque[RunRecord] = deque(maxlen=max_records)
        self._by_signature: defaultdict[str, deque[RunRecord]] = defaultdict(deque)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._records)

    def record(self, record: RunRecord) -> None:
        with self._lock:
            if self.max_records > 0 and len(self._records) == self.max_records:
                self._forget(self._records[0])
            self._records.append(record)
            if self.max_records > 0:
                self._by_signature[record.signature].append(record)

    def _forget(self, record: RunRecord) -> None:
        bucket = self._by_signature[record.signature]
        bucket.popleft()
        if not bucket:
            del self._by_signature[record.signature]

    def query_similar(
        self,
        characteristics: ProblemCharacteristics,
        tolerance: float = DEFAULT_SIMILARITY_TOLERANCE,
    ) -> list[RunRecord]:
        with self._lock:
            records = list(self._records)
        return [record for record in records if is_similar(record.characteristics, characteristics, tolerance)]

    def query_signature(self, signature: str) -> list[RunRecord]:
        with self._lock:
            return list(self._by_signature.get(signature, ()))

    def stats(self) -> dict[str, Any]:
        with self._lock:
            records = list(self._records)
        return summarize_records(records)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()
            self._by_signature.clear()


@dataclass(frozen=True)
class LearnedParameters:
    difficulty_weights: dict[str, float]
    hill_climbing_iterations: int
    sample_size: int


def learn_optimal_parameters(
    store: HistoryStore,
    characteristics: ProblemCharacteristics,
    *,
    min_samples: int = 3,
    min_success_rate: float = 0.8,
    tolerance: float = DEFAULT_SIMILARITY_TOLERANCE,
) -> LearnedParameters | None:
    """Average the settings of successful runs on similar problems, if there are enough of them.

    Runs with the same problem signature are used on their own once there are
    ``min_samples`` of them; otherwise every run within ``tolerance`` counts.
    """
    similar = store.query_signature(problem_signature(characteristics))
    if len(similar) < min_samples:
        similar = store.query_similar(characteristics, tolerance)
    if len(similar) < min_samples:
        return None
    successful = [record for record in similar if record.success_rate > min_success_rate and record.difficulty_weights]
    if not successful:
        return None
    keys = sorted({key for record in successful for key in record.difficulty_weights})
    weights = {
        key: fmean(record.difficulty_weights[key] for record in successful if key in record.difficulty_weights)
        for key in keys
    }
    iterations = round(fmean(record.hill_climbing_iterations for record in successful))
    return LearnedParameters(
        difficulty_weights=weights,
        hill_climbing_iterations=iterations,
        sample_size=len(successful),
    )
