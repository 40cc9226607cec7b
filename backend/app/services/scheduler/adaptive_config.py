from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
import logging
from statistics import fmean

from app.services.scheduler.config import (
    CapacitySettings,
    DifficultyWeights,
    HillClimbingSettings,
    SchedulerSettings,
)
from app.services.scheduler.learning import HistoryStore, LearnedParameters, learn_optimal_parameters
from app.services.scheduler.types import (
    Classroom,
    Course,
    ProblemCharacteristics,
    SchedulerResult,
    SessionType,
)

logger = logging.getLogger(__name__)

BASE_TIMEOUT_MS = 30_000
TIMEOUT_PER_COURSE_MS = 500
MAX_TIMEOUT_MS = 300_000


@dataclass(frozen=True)
class RuntimeMetrics:
    """Outcome of a previous run on the same problem, used to retune the next one."""

    success_rate: float = 1.0
    avg_capacity_waste: float = 0.0
    classroom_scarcity: float = 0.0
    teacher_load_variance: float = 0.0

    @classmethod
    def from_result(cls, result: SchedulerResult, characteristics: ProblemCharacteristics) -> RuntimeMetrics:
        return cls(
            success_rate=result.success_rate,
            avg_capacity_waste=result.metrics.avg_capacity_margin,
            classroom_scarcity=characteristics.classroom_utilization,
            teacher_load_variance=result.metrics.teacher_load_stddev,
        )


@dataclass(frozen=True)
class AdaptiveConfig:
    settings: SchedulerSettings
    timeout_ms: int
    characteristics: ProblemCharacteristics
    learned: LearnedParameters | None = None


def analyze_problem_characteristics(
    courses: Sequence[Course],
    classrooms: Sequence[Classroom],
) -> ProblemCharacteristics:
    active = [classroom for classroom in classrooms if classroom.is_active]
    total_students = sum(course.student_count for course in courses)
    total_capacity = sum(classroom.capacity for classroom in active)
    teachers = {course.teacher_id for course in courses if course.teacher_id}
    session_hours = [session.hours for course in courses for session in course.sessions]
    return ProblemCharacteristics(
        course_count=len(courses),
        classroom_count=len(active),
        avg_students_per_course=total_students / len(courses) if courses else 0.0,
        total_students=total_students,
        classroom_utilization=total_students / total_capacity if total_capacity else 0.0,
        teacher_count=len(teachers),
        avg_courses_per_teacher=len(courses) / len(teachers) if teachers else 0.0,
        has_lab_sessions=any(
            session.type == SessionType.lab for course in courses for session in course.sessions
        ),
        avg_session_hours=fmean(session_hours) if session_hours else 0.0,
    )


def calculate_adaptive_timeout(characteristics: ProblemCharacteristics) -> int:
    timeout = float(characteristics.course_count * TIMEOUT_PER_COURSE_MS)
    if characteristics.has_lab_sessions:
        timeout *= 1.3
    if characteristics.classroom_utilization > 0.8:
        timeout *= 1.5
    return min(MAX_TIMEOUT_MS, int(BASE_TIMEOUT_MS + timeout))


def adapt_difficulty_weights(
    characteristics: ProblemCharacteristics,
    base: DifficultyWeights | None = None,
) -> DifficultyWeights:
    base = base or DifficultyWeights()
    scarcity = base.classroom_scarcity_weight
    students = base.student_count_weight
    duration = base.duration_weight
    if characteristics.classroom_utilization > 0.9:
        scarcity *= 1.5
    elif characteristics.classroom_utilization < 0.5:
        scarcity *= 0.7
    if characteristics.avg_students_per_course > 100:
        students *= 1.3
    if characteristics.avg_session_hours > 3:
        duration *= 1.5
    return DifficultyWeights(
        student_count_weight=students,
        classroom_scarcity_weight=scarcity,
        duration_weight=duration,
    )


def adapt_capacity_constraints(
    metrics: RuntimeMetrics,
    base: CapacitySettings | None = None,
) -> CapacitySettings:
    base = base or CapacitySettings()
    ideal_min = base.ideal_min_ratio
    ideal_max = base.ideal_max_ratio
    threshold = base.penalty_threshold
    if metrics.avg_capacity_waste > 40:
        ideal_min = min(0.8, ideal_min + 0.1)
        ideal_max = min(0.95, ideal_max + 0.05)
    if metrics.classroom_scarcity > 0.8:
        ideal_min = max(0.5, ideal_min - 0.2)
        threshold = max(0.3, threshold - 0.1)
    ideal_max = max(ideal_max, ideal_min)
    threshold = min(threshold, ideal_min)
    return CapacitySettings(
        ideal_min_ratio=round(ideal_min, 4),
        ideal_max_ratio=round(ideal_max, 4),
        penalty_threshold=round(threshold, 4),
    )


def adapt_hill_climbing_params(
    metrics: RuntimeMetrics,
    base: HillClimbingSettings | None = None,
) -> HillClimbingSettings:
    base = base or HillClimbingSettings()
    iterations = base.iterations
    if metrics.teacher_load_variance > 5:
        iterations = min(100, int(iterations * 1.5))
    if metrics.success_rate > 0.95:
        iterations = min(150, iterations * 2)
    elif metrics.success_rate < 0.7:
        iterations = max(10, int(iterations * 0.5))
    return HillClimbingSettings(iterations=iterations, improvement_threshold=base.improvement_threshold)


def _blend(adapted: DifficultyWeights, learned: LearnedParameters) -> DifficultyWeights:
    values = adapted.model_dump()
    for key, value in learned.difficulty_weights.items():
        if key in values:
            values[key] = (values[key] + value) / 2
    return DifficultyWeights.model_validate(values)


def create_adaptive_config(
    courses: Sequence[Course],
    classrooms: Sequence[Classroom],
    base: SchedulerSettings | None = None,
    *,
    runtime_metrics: RuntimeMetrics | None = None,
    history: HistoryStore | None = None,
) -> AdaptiveConfig:
    """Scale timeout and tuning to the problem, blending in history from similar runs when available."""
    base = base or SchedulerSettings()
    characteristics = analyze_problem_characteristics(courses, classrooms)
    difficulty = adapt_difficulty_weights(characteristics, base.difficulty)
    capacity = base.capacity
    hill_climbing = base.hill_climbing
    if runtime_metrics is not None:
        capacity = adapt_capacity_constraints(runtime_metrics, base.capacity)
        hill_climbing = adapt_hill_climbing_params(runtime_metrics, base.hill_climbing)

    learned = learn_optimal_parameters(history, characteristics) if history is not None else None
    if learned is not None:
        difficulty = _blend(difficulty, learned)
        hill_climbing = HillClimbingSettings(
            iterations=round((hill_climbing.iterations + learned.hill_climbing_iterations) / 2),
            improvement_threshold=hill_climbing.improvement_threshold,
        )
        logger.info(
            "Blended learned parameters | samples=%s iterations=%s",
            learned.sample_size,
            hill_climbing.iterations,
        )

    timeout_ms = calculate_adaptive_timeout(characteristics)
    settings = base.model_copy(
        update={
            "difficulty": difficulty,
            "capacity": capacity,
            "hill_climbing": hill_climbing,
            "performance": base.performance.model_copy(update={"timeout_ms": timeout_ms}),
        }
    )
    return AdaptiveConfig(
        settings=settings,
        timeout_ms=timeout_ms,
        characteristics=characteristics,
        learned=learned,
    )
