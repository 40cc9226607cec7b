from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import AbstractContextManager
from dataclasses import asdict
import json
import logging
import random
from typing import Any

from pydantic import ValidationError

from app.core.config import Settings
from app.core.exceptions import AppError, HistoryStoreError, SchedulerError
from app.schemas.scheduler import (
    AdaptiveSummaryOut,
    AttemptSummaryOut,
    CatalogPayload,
    ClassroomPayload,
    CourseDiagnosticOut,
    CoursePayload,
    DayAttemptOut,
    FailureReasonOut,
    GenerateScheduleRequest,
    GenerateScheduleResponse,
    HistoryStatsOut,
    OptimizeScheduleRequest,
    OptimizeScheduleResponse,
    ProgressEventOut,
    ScheduleItemOut,
    ScheduleItemPayload,
    ScheduleMetricsOut,
    SessionDiagnosticOut,
    SlotAttemptOut,
    TimeBlockOut,
    TimeBlocksResponse,
    UnscheduledCourseOut,
)
from app.schemas.settings import TimeSettingsPayload
from app.services.scheduler.adaptive_config import analyze_problem_characteristics, create_adaptive_config
from app.services.scheduler.config import SchedulerSettings, get_config_preset, merge_config
from app.services.scheduler.engine import SchedulerConfig, calculate_schedule_metrics, generate_schedule
from app.services.scheduler.learning import HistoryStore, RunRecord
from app.services.scheduler.optimizer import HillClimbingOptimizer
from app.services.scheduler.parallel import parallel_schedule
from app.services.scheduler.progress import (
    STAGE_COMPLETE,
    STAGE_INITIALIZING,
    ProgressCallback,
    ProgressChannel,
)
from app.services.scheduler.simulated_annealing import SimulatedAnnealingOptimizer, hybrid_optimization
from app.services.scheduler.time_utils import generate_time_blocks
from app.services.scheduler.types import (
    AvailabilityCalendar,
    Classroom,
    ClassroomType,
    Course,
    CourseCategory,
    CourseFailureDiagnostic,
    Day,
    DepartmentCohort,
    FailureReason,
    HardcodedPlacement,
    ProgressSnapshot,
    ScheduleItem,
    ScheduleMetrics,
    SchedulerResult,
    Session,
    SessionType,
    TimeSettings,
    UnscheduledCourse,
)

logger = logging.getLogger(__name__)

HistoryStoreFactory = Callable[[], AbstractContextManager[HistoryStore]]


# -- payload -> engine ---------------------------------------------------------


def to_time_settings(payload: TimeSettingsPayload | None, app_settings: Settings) -> TimeSettings:
    if payload is None:
        return TimeSettings(
            slot_duration=app_settings.default_slot_duration,
            day_start=app_settings.default_day_start,
            day_end=app_settings.default_day_end,
            lunch_break_start=app_settings.default_lunch_break_start,
            lunch_break_end=app_settings.default_lunch_break_end,
        )
    return TimeSettings(
        slot_duration=payload.slot_duration,
        day_start=payload.day_start,
        day_end=payload.day_end,
        lunch_break_start=payload.lunch_break_start,
        lunch_break_end=payload.lunch_break_end,
    )


def to_course(payload: CoursePayload) -> Course:
    return Course(
        id=payload.id,
        name=payload.name,
        code=payload.code,
        teacher_id=payload.teacher_id,
        faculty=payload.faculty,
        level=payload.level,
        category=CourseCategory(payload.category),
        semester=payload.semester,
        capacity_margin=payload.capacity_margin,
        sessions=tuple(Session(type=SessionType(item.type), hours=item.hours) for item in payload.sessions),
        departments=tuple(
            DepartmentCohort(department=item.department, student_count=item.student_count)
            for item in payload.departments
        ),
        teacher_availability=AvailabilityCalendar.parse(payload.teacher_availability),
        hardcoded=tuple(
            HardcodedPlacement(
                day=Day(item.day),
                start_time=item.start_time,
                end_time=item.end_time,
                session_type=SessionType(item.session_type),
                classroom_id=item.classroom_id,
            )
            for item in payload.hardcoded
        ),
    )


def to_classroom(payload: ClassroomPayload) -> Classroom:
    return Classroom(
        id=payload.id,
        name=payload.name,
        capacity=payload.capacity,
        type=ClassroomType(payload.type),
        is_active=payload.is_active,
        priority_department=payload.priority_department,
        availability=AvailabilityCalendar.parse(payload.availability),
    )


def to_schedule_item(payload: ScheduleItemPayload) -> ScheduleItem:
    return ScheduleItem(
        course_id=payload.course_id,
        classroom_id=payload.classroom_id,
        day=Day(payload.day),
        time_range=payload.time_range,
        session_type=SessionType(payload.session_type),
        session_hours=payload.session_hours,
        is_hardcoded=payload.is_hardcoded,
    )


def resolve_settings(
    preset: str | None,
    overrides: Mapping[str, Any] | None,
    default_preset: str,
) -> SchedulerSettings:
    base = get_config_preset(preset or default_preset)
    if not overrides:
        return base
    try:
        return merge_config(overrides, base)
    except ValidationError as exc:
        raise SchedulerError(
            "Invalid scheduler setting overrides",
            details={"errors": exc.errors(include_url=False, include_context=False)},
        ) from exc


def _catalog(payload: CatalogPayload) -> tuple[list[Course], list[Classroom]]:
    return [to_course(item) for item in payload.courses], [to_classroom(item) for item in payload.classrooms]


# -- engine -> response ----------------------------------------------------------


def schedule_item_out(item: ScheduleItem) -> ScheduleItemOut:
    return ScheduleItemOut(
        course_id=item.course_id,
        classroom_id=item.classroom_id,
        day=item.day.value,
        time_range=item.time_range,
        session_type=item.session_type.value,
        session_hours=item.session_hours,
        is_hardcoded=item.is_hardcoded,
    )


def _failure_reason_out(reason: FailureReason) -> FailureReasonOut:
    return FailureReasonOut(type=reason.type.value, message=reason.message, details=dict(reason.details))


def _unscheduled_out(entry: UnscheduledCourse) -> UnscheduledCourseOut:
    return UnscheduledCourseOut(
        course_id=entry.course_id,
        code=entry.code,
        reason=entry.reason.value,
        detail=entry.detail,
        unmet_hours=entry.unmet_hours,
    )


def _diagnostic_out(diagnostic: CourseFailureDiagnostic) -> CourseDiagnosticOut:
    return CourseDiagnosticOut(
        course_id=diagnostic.course_id,
        name=diagnostic.name,
        code=diagnostic.code,
        total_hours=diagnostic.total_hours,
        student_count=diagnostic.student_count,
        faculty=diagnostic.faculty,
        level=diagnostic.level,
        semester=diagnostic.semester,
        teacher_id=diagnostic.teacher_id,
        departments=list(diagnostic.departments),
        failed_sessions=[
            SessionDiagnosticOut(
                session_type=session.session_type.value,
                session_hours=session.session_hours,
                attempted_days=[
                    DayAttemptOut(
                        day=day.day.value,
                        attempted_slots=[
                            SlotAttemptOut(time_range=slot.time_range, reason=_failure_reason_out(slot.reason))
                            for slot in day.attempted_slots
                        ],
                    )
                    for day in session.attempted_days
                ],
                split_attempted=session.split_attempted,
                split_succeeded=session.split_succeeded,
                combined_attempted=session.combined_attempted,
            )
            for session in diagnostic.failed_sessions
        ],
        suggested_slots=list(diagnostic.suggested_slots),
        resolved=diagnostic.resolved,
    )


def _metrics_out(metrics: ScheduleMetrics) -> ScheduleMetricsOut:
    return ScheduleMetricsOut(
        avg_capacity_margin=metrics.avg_capacity_margin,
        max_capacity_waste=metrics.max_capacity_waste,
        teacher_load_stddev=metrics.teacher_load_stddev,
    )


def build_generate_response(
    result: SchedulerResult,
    *,
    attempts: list[AttemptSummaryOut] | None = None,
    adaptive: AdaptiveSummaryOut | None = None,
    extra_warnings: Sequence[str] = (),
) -> GenerateScheduleResponse:
    return GenerateScheduleResponse(
        success=result.perfect,
        schedule=[schedule_item_out(item) for item in result.schedule],
        unscheduled=[_unscheduled_out(entry) for entry in result.unscheduled],
        diagnostics=[_diagnostic_out(diagnostic) for diagnostic in result.diagnostics],
        metrics=_metrics_out(result.metrics),
        warnings=[*result.warnings, *extra_warnings],
        seed=result.seed,
        timed_out=result.timed_out,
        duration_ms=result.duration_ms,
        total_courses=result.total_courses,
        scheduled_count=result.scheduled_count,
        success_rate=round(result.success_rate, 4),
        index_stats=result.index_stats,
        backtracking_stats=result.backtracking_stats,
        attempts=attempts or [],
        adaptive=adaptive,
    )


def progress_event_out(snapshot: ProgressSnapshot) -> ProgressEventOut:
    return ProgressEventOut(
        stage=snapshot.stage,
        progress=snapshot.progress,
        message=snapshot.message,
        current_course=snapshot.current_course,
        scheduled_count=snapshot.scheduled_count,
        total_courses=snapshot.total_courses,
        estimated_time_remaining_ms=snapshot.estimated_time_remaining_ms,
        warnings=list(snapshot.warnings),
    )


# -- operations --------------------------------------------------------------------


def _record_run(
    history: HistoryStore,
    courses: Sequence[Course],
    classrooms: Sequence[Classroom],
    settings: SchedulerSettings,
    result: SchedulerResult,
) -> str | None:
    record = RunRecord(
        characteristics=analyze_problem_characteristics(courses, classrooms),
        success_rate=result.success_rate,
        duration_ms=result.duration_ms,
        difficulty_weights=settings.difficulty.model_dump(),
        hill_climbing_iterations=settings.hill_climbing.iterations,
        metrics=asdict(result.metrics),
    )
    try:
        history.record(record)
    except HistoryStoreError as exc:
        logger.warning("Run history not recorded | signature=%s error=%s", record.signature, exc.message)
        return "Run history could not be recorded"
    return None


def run_generation(
    request: GenerateScheduleRequest,
    history: HistoryStore,
    app_settings: Settings,
    on_progress: ProgressCallback | None = None,
) -> GenerateScheduleResponse:
    settings = resolve_settings(request.preset, request.overrides, app_settings.scheduler_default_preset)
    courses, classrooms = _catalog(request)
    time_settings = to_time_settings(request.time_settings, app_settings)

    timeout_ms = request.timeout_ms
    adaptive_summary: AdaptiveSummaryOut | None = None
    if request.use_adaptive:
        adaptive = create_adaptive_config(courses, classrooms, settings, history=history)
        settings = adaptive.settings
        if timeout_ms is None:
            timeout_ms = adaptive.timeout_ms
        adaptive_summary = AdaptiveSummaryOut(
            timeout_ms=adaptive.timeout_ms,
            learned_sample_size=adaptive.learned.sample_size if adaptive.learned else 0,
            characteristics=asdict(adaptive.characteristics),
        )

    config = SchedulerConfig(
        time_settings=time_settings,
        courses=courses,
        classrooms=classrooms,
        settings=settings,
        seed=request.seed,
        timeout_ms=timeout_ms,
        on_progress=on_progress,
    )

    attempts = min(request.parallel_attempts, app_settings.scheduler_max_parallel_attempts)
    attempt_summaries: list[AttemptSummaryOut] = []
    if attempts > 1:
        if on_progress is not None:
            on_progress(
                ProgressSnapshot(
                    stage=STAGE_INITIALIZING,
                    progress=0,
                    message=f"Running {attempts} independent attempts",
                    total_courses=len(courses),
                )
            )
        outcome = parallel_schedule(
            config,
            attempts=attempts,
            seed_base=request.seed,
            select_best_by=request.select_best_by,
        )
        result = outcome.best.result
        attempt_summaries = [
            AttemptSummaryOut(
                attempt=entry.attempt,
                seed=entry.seed,
                score=round(entry.score, 4),
                success_rate=round(entry.result.success_rate, 4),
                unscheduled_count=entry.result.unscheduled_count,
            )
            for entry in outcome.attempts
        ]
        if on_progress is not None:
            on_progress(
                ProgressSnapshot(
                    stage=STAGE_COMPLETE,
                    progress=100,
                    message=f"Best of {attempts} attempts used seed {outcome.best.seed}",
                    scheduled_count=result.scheduled_count,
                    total_courses=len(courses),
                    warnings=tuple(result.warnings),
                )
            )
    else:
        result = generate_schedule(config)

    extra_warnings: list[str] = []
    if request.record_history:
        warning = _record_run(history, courses, classrooms, settings, result)
        if warning:
            extra_warnings.append(warning)

    logger.info(
        "Schedule generated | courses=%s scheduled=%s attempts=%s adaptive=%s seed=%s",
        len(courses),
        result.scheduled_count,
        attempts,
        request.use_adaptive,
        result.seed,
    )
    return build_generate_response(
        result,
        attempts=attempt_summaries,
        adaptive=adaptive_summary,
        extra_warnings=extra_warnings,
    )


def format_sse(event: str, data: str) -> str:
    return f"event: {event}\ndata: {data}\n\n"


def stream_generation(
    request: GenerateScheduleRequest,
    history_factory: HistoryStoreFactory,
    app_settings: Settings,
) -> Iterator[str]:
    """Yield ``progress`` events while the run is in flight, then one ``result`` or ``error`` event."""

    def job(publish: ProgressCallback) -> GenerateScheduleResponse:
        with history_factory() as history:
            return run_generation(request, history, app_settings, on_progress=publish)

    channel: ProgressChannel[GenerateScheduleResponse] = ProgressChannel(
        maxsize=app_settings.scheduler_progress_queue_size
    )
    channel.start(job)
    for snapshot in channel:
        yield format_sse("progress", progress_event_out(snapshot).model_dump_json())

    try:
        response = channel.result()
    except AppError as exc:
        yield format_sse("error", json.dumps({"message": exc.message, "details": exc.details}, default=str))
        return
    if channel.dropped:
        logger.debug("Progress snapshots dropped for slow consumer | dropped=%s", channel.dropped)
    yield format_sse("result", response.model_dump_json())


def run_optimization(request: OptimizeScheduleRequest, app_settings: Settings) -> OptimizeScheduleResponse:
    settings = resolve_settings(request.preset, request.overrides, app_settings.scheduler_default_preset)
    courses, classrooms = _catalog(request)
    time_blocks = generate_time_blocks(to_time_settings(request.time_settings, app_settings))
    schedule = [to_schedule_item(item) for item in request.schedule]
    rng = random.Random(request.seed)

    if request.method == "hill_climbing":
        climbed = HillClimbingOptimizer(courses, classrooms, time_blocks, settings=settings, rng=rng).optimize(
            schedule
        )
        optimized = climbed.schedule
        initial_score, final_score = climbed.initial_score, climbed.final_score
        runtime_ms = climbed.runtime_ms
        score_kind = "soft_score"
    else:
        if request.method == "simulated_annealing":
            annealed = SimulatedAnnealingOptimizer(
                courses, classrooms, time_blocks, settings=settings, rng=rng
            ).optimize(schedule)
        else:
            annealed = hybrid_optimization(schedule, courses, classrooms, time_blocks, settings=settings, rng=rng)
        optimized = annealed.schedule
        initial_score, final_score = annealed.initial_energy, annealed.final_energy
        runtime_ms = annealed.runtime_ms
        score_kind = "energy"

    metrics = calculate_schedule_metrics(
        optimized,
        {course.id: course for course in courses},
        {classroom.id: classroom for classroom in classrooms},
    )
    logger.info(
        "Schedule optimized | method=%s items=%s score=%.2f->%.2f runtime_ms=%s",
        request.method,
        len(optimized),
        initial_score,
        final_score,
        runtime_ms,
    )
    return OptimizeScheduleResponse(
        method=request.method,
        schedule=[schedule_item_out(item) for item in optimized],
        initial_score=round(initial_score, 4),
        final_score=round(final_score, 4),
        score_kind=score_kind,
        metrics=_metrics_out(metrics),
        runtime_ms=runtime_ms,
    )


def preview_time_blocks(payload: TimeSettingsPayload | None, app_settings: Settings) -> TimeBlocksResponse:
    blocks = generate_time_blocks(to_time_settings(payload, app_settings))
    return TimeBlocksResponse(
        blocks=[TimeBlockOut(start=block.start, end=block.end, time_range=block.time_range) for block in blocks]
    )


def history_stats(history: HistoryStore, app_settings: Settings) -> HistoryStatsOut:
    return HistoryStatsOut(backend=app_settings.history_backend, **history.stats())
