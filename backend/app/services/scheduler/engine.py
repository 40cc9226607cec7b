from __future__ import annotations

from collections import Counter, defaultdict
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
import logging
import math
import random
from statistics import fmean
import time

from app.core.exceptions import SchedulerError
from app.services.scheduler.backtracking import BacktrackingManager, DomainTracker, PlacementSuggester
from app.services.scheduler.config import SchedulerSettings
from app.services.scheduler.conflict_index import ConflictIndex
from app.services.scheduler.constraints import (
    classroom_supports,
    explain_classroom_shortage,
    find_suitable_classroom,
    is_available,
    sort_courses_by_difficulty,
)
from app.services.scheduler.optimizer import HillClimbingOptimizer, teacher_load_stddev
from app.services.scheduler.progress import (
    STAGE_COMPLETE,
    STAGE_HARDCODED,
    STAGE_INITIALIZING,
    STAGE_OPTIMIZING,
    ProgressCallback,
    ProgressReporter,
)
from app.services.scheduler.simulated_annealing import SimulatedAnnealingOptimizer
from app.services.scheduler.time_utils import (
    block_count_for_range,
    contiguous_run,
    generate_time_blocks,
    run_time_range,
)
from app.services.scheduler.timeout import TimeoutManager
from app.services.scheduler.types import (
    DAYS,
    Classroom,
    Course,
    CourseFailureDiagnostic,
    Day,
    DayAttempt,
    FailureReason,
    FailureType,
    ScheduleItem,
    ScheduleMetrics,
    SchedulerResult,
    Session,
    SessionFailureDiagnostic,
    SessionType,
    SlotAttempt,
    TimeBlock,
    TimeSettings,
    UnscheduledCourse,
)

logger = logging.getLogger(__name__)

REASON_PRECEDENCE: tuple[FailureType, ...] = (
    FailureType.teacher_conflict,
    FailureType.department_conflict,
    FailureType.no_classroom,
    FailureType.insufficient_blocks,
    FailureType.teacher_unavailable,
)
PRUNABLE_REASONS = {
    FailureType.teacher_unavailable,
    FailureType.teacher_conflict,
    FailureType.department_conflict,
}
MAX_SEED = 2_147_483_647


@dataclass
class SchedulerConfig:
    time_settings: TimeSettings
    courses: Sequence[Course]
    classrooms: Sequence[Classroom]
    settings: SchedulerSettings = field(default_factory=SchedulerSettings)
    seed: int | None = None
    timeout_ms: int | None = None
    on_progress: ProgressCallback | None = None
    clock: Callable[[], float] | None = None


def calculate_schedule_metrics(
    schedule: Sequence[ScheduleItem],
    course_map: Mapping[str, Course],
    classroom_map: Mapping[str, Classroom],
) -> ScheduleMetrics:
    margins: list[float] = []
    for item in schedule:
        course = course_map.get(item.course_id)
        classroom = classroom_map.get(item.classroom_id)
        if course is None or classroom is None or classroom.capacity <= 0:
            continue
        margins.append((classroom.capacity - course.adjusted_student_count) / classroom.capacity * 100)
    return ScheduleMetrics(
        avg_capacity_margin=round(fmean(margins), 1) if margins else 0.0,
        max_capacity_waste=round(max([0.0, *margins]), 1),
        teacher_load_stddev=round(teacher_load_stddev(schedule, course_map), 1),
    )


def _split_sizes(hours: int) -> list[int]:
    chunk = math.ceil(hours / 2)
    sizes: list[int] = []
    remaining = hours
    while remaining > 0:
        size = min(chunk, remaining)
        sizes.append(size)
        remaining -= size
    return sizes


class SchedulerEngine:
    """Greedy placement of course sessions on the weekly grid.

    Hardcoded sessions go first, then courses hardest first. Each session is
    searched over shuffled days and start blocks; splitting and combined
    theory/lab placement are fallbacks. All randomness comes from one
    generator seeded per run, so equal seeds give equal schedules.
    """

    def __init__(self, config: SchedulerConfig) -> None:
        self.config = config
        self.settings = config.settings
        self.features = config.settings.features
        self.time_blocks: list[TimeBlock] = generate_time_blocks(config.time_settings)
        if not self.time_blocks:
            raise SchedulerError(
                "Time settings produce no schedulable blocks",
                details={
                    "day_start": config.time_settings.day_start,
                    "day_end": config.time_settings.day_end,
                    "slot_duration": config.time_settings.slot_duration,
                },
            )
        self.seed = config.seed if config.seed is not None else int(time.time() * 1000) % MAX_SEED
        self.random = random.Random(self.seed)
        self.courses = list(config.courses)
        self.classrooms = list(config.classrooms)
        self.course_map = {course.id: course for course in self.courses}
        self.classroom_map = {classroom.id: classroom for classroom in self.classrooms}
        self.index = ConflictIndex(
            self.courses,
            self.time_blocks,
            enable_caching=self.settings.performance.enable_caching,
        )

        self.schedule: list[ScheduleItem] = []
        self.teacher_load: dict[str, int] = defaultdict(int)
        self.hours_scheduled: dict[str, int] = defaultdict(int)
        self.items_by_course: dict[str, list[ScheduleItem]] = defaultdict(list)
        self.placement_order: list[str] = []
        self.unscheduled: list[UnscheduledCourse] = []
        self.diagnostics: list[CourseFailureDiagnostic] = []

        self.backtracking: BacktrackingManager | None = None
        self.domains: DomainTracker | None = None
        self.suggester: PlacementSuggester | None = None
        if self.features.enable_backtracking:
            self.backtracking = BacktrackingManager(
                self.courses,
                self.time_blocks,
                max_placement_attempts=self.settings.performance.max_placement_attempts,
                index=self.index,
            )
            self.domains = DomainTracker()
            self.suggester = PlacementSuggester(self.index, self.domains)

    # -- bookkeeping ---------------------------------------------------------

    def _commit(self, item: ScheduleItem) -> None:
        self.schedule.append(item)
        if self.backtracking is not None and not item.is_hardcoded:
            self.backtracking.push_placement(item)
        else:
            self.index.add_schedule_item(item)
        course = self.course_map.get(item.course_id)
        if course is not None and course.teacher_id:
            self.teacher_load[course.teacher_id] += item.session_hours
        self.hours_scheduled[item.course_id] += item.session_hours
        self.items_by_course[item.course_id].append(item)

    def _uncommit(self, item: ScheduleItem) -> None:
        self.schedule.remove(item)
        if self.backtracking is not None and not item.is_hardcoded:
            self.backtracking.remove_placement(item)
        else:
            self.index.remove_schedule_item(item)
        course = self.course_map.get(item.course_id)
        if course is not None and course.teacher_id:
            self.teacher_load[course.teacher_id] -= item.session_hours
        self.hours_scheduled[item.course_id] -= item.session_hours
        self.items_by_course[item.course_id].remove(item)

    def _record_attempt(
        self,
        course: Course,
        day: Day,
        time_range: str,
        success: bool,
        reason: FailureReason | None = None,
        classroom_id: str | None = None,
    ) -> None:
        if self.backtracking is None:
            return
        self.backtracking.record_attempt(
            course.id,
            day,
            time_range,
            success,
            reason.type if reason is not None else None,
            classroom_id,
        )

    # -- hardcoded -----------------------------------------------------------

    def _resolve_hardcoded_classroom(self, session_type: SessionType) -> Classroom | None:
        for classroom in self.classrooms:
            if classroom.is_active and classroom_supports(classroom, session_type):
                return classroom
        return None

    def _place_hardcoded(self, reporter: ProgressReporter) -> None:
        slot_duration = self.config.time_settings.slot_duration
        for course in self.courses:
            for placement in course.hardcoded:
                classroom_id = placement.classroom_id
                if classroom_id is None:
                    classroom = self._resolve_hardcoded_classroom(placement.session_type)
                    if classroom is None:
                        message = (
                            f"Hardcoded {placement.session_type.value} session of {course.code} on "
                            f"{placement.day.value} {placement.time_range} has no compatible classroom"
                        )
                        logger.warning("Skipping hardcoded placement | course=%s reason=no_classroom", course.code)
                        reporter.add_warning(message)
                        continue
                    classroom_id = classroom.id
                hours = block_count_for_range(placement.time_range, slot_duration)
                if self.hours_scheduled[course.id] + hours > course.required_hours:
                    logger.warning(
                        "Skipping hardcoded placement | course=%s reason=exceeds_required_hours hours=%s",
                        course.code,
                        hours,
                    )
                    reporter.add_warning(
                        f"Hardcoded session of {course.code} on {placement.day.value} {placement.time_range} "
                        f"exceeds the course's {course.required_hours} required hours"
                    )
                    continue
                self._commit(
                    ScheduleItem(
                        course_id=course.id,
                        classroom_id=classroom_id,
                        day=placement.day,
                        time_range=placement.time_range,
                        session_type=placement.session_type,
                        session_hours=hours,
                        is_hardcoded=True,
                    )
                )

    def residual_sessions(self, course: Course) -> list[Session]:
        """Sessions still to place, largest first, after subtracting scheduled hours."""
        covered_by_type: Counter[SessionType] = Counter()
        for item in self.items_by_course.get(course.id, ()):
            covered_by_type[item.session_type] += item.session_hours

        residual: list[Session] = []
        for session in sorted(course.sessions, key=lambda entry: -entry.hours):
            take = min(session.hours, covered_by_type[session.type])
            covered_by_type[session.type] -= take
            if session.hours - take > 0:
                residual.append(Session(type=session.type, hours=session.hours - take))

        leftover = sum(covered_by_type.values())
        trimmed: list[Session] = []
        for session in residual:
            take = min(session.hours, leftover)
            leftover -= take
            if session.hours - take > 0:
                trimmed.append(Session(type=session.type, hours=session.hours - take))
        return trimmed

    # -- candidate evaluation ------------------------------------------------

    def _try_run(
        self,
        course: Course,
        session_type: SessionType,
        day: Day,
        start_index: int,
        length: int,
    ) -> ScheduleItem | FailureReason:
        run = contiguous_run(self.time_blocks, start_index, length)
        if run is None:
            available = 1
            while (
                start_index + available < len(self.time_blocks)
                and self.time_blocks[start_index + available - 1].end == self.time_blocks[start_index + available].start
            ):
                available += 1
            return FailureReason(
                type=FailureType.insufficient_blocks,
                message=f"Only {available} contiguous blocks from {self.time_blocks[start_index].start}, need {length}",
                details={"required_blocks": length, "available_blocks": available, "block_offset": 0},
            )

        for offset, block in enumerate(run):
            if not is_available(course.teacher_availability, day, block):
                return FailureReason(
                    type=FailureType.teacher_unavailable,
                    message=f"Teacher {course.teacher_id} is unavailable on {day.value} {block.time_range}",
                    details={"teacher_id": course.teacher_id, "block": block.time_range, "block_offset": offset},
                )
            conflict = self.index.check_conflicts(course.id, None, day, block.time_range)
            if conflict is not None:
                return replace(
                    conflict,
                    details={**conflict.details, "block": block.time_range, "block_offset": offset},
                )

        occupied: set[str] = set()
        for block in run:
            occupied |= self.index.occupied_classrooms(day, block.time_range)
        classroom = find_suitable_classroom(
            self.classrooms,
            session_type=session_type,
            student_count=course.student_count,
            capacity_margin=course.capacity_margin,
            day=day,
            blocks=run,
            occupied=occupied,
            department=course.main_department,
            capacity=self.settings.capacity,
        )
        if classroom is None:
            return FailureReason(
                type=FailureType.no_classroom,
                message=f"No {session_type.value} classroom fits {course.student_count} students on {day.value} {run_time_range(run)}",
                details=explain_classroom_shortage(
                    self.classrooms,
                    session_type=session_type,
                    student_count=course.student_count,
                    capacity_margin=course.capacity_margin,
                    day=day,
                    blocks=run,
                    occupied=occupied,
                ),
            )
        return ScheduleItem(
            course_id=course.id,
            classroom_id=classroom.id,
            day=day,
            time_range=run_time_range(run),
            session_type=session_type,
            session_hours=length,
        )

    def _shuffled_days(self) -> list[Day]:
        days = list(DAYS)
        self.random.shuffle(days)
        return days

    def _shuffled_starts(self) -> list[int]:
        starts = list(range(len(self.time_blocks)))
        self.random.shuffle(starts)
        return starts

    def _gave_up(self, course: Course) -> bool:
        return self.backtracking is not None and self.backtracking.should_give_up(course.id)

    def _find_on_day(self, course: Course, session_type: SessionType, day: Day, length: int) -> ScheduleItem | None:
        for start in self._shuffled_starts():
            candidate = self._try_run(course, session_type, day, start, length)
            if isinstance(candidate, ScheduleItem):
                return candidate
        return None

    # -- placement strategies ------------------------------------------------

    def _place_direct(self, course: Course, session: Session, diagnostic: SessionFailureDiagnostic) -> bool:
        for day in self._shuffled_days():
            day_attempt = DayAttempt(day=day)
            for start in self._shuffled_starts():
                start_range = self.time_blocks[start].time_range
                if self.domains is not None and not self.domains.has_slot(course.id, day, start_range):
                    continue
                if self._gave_up(course):
                    diagnostic.attempted_days.append(day_attempt)
                    return False
                candidate = self._try_run(course, session.type, day, start, session.hours)
                if isinstance(candidate, ScheduleItem):
                    self._commit(candidate)
                    self._record_attempt(course, day, candidate.time_range, True, classroom_id=candidate.classroom_id)
                    return True
                day_attempt.attempted_slots.append(SlotAttempt(time_range=start_range, reason=candidate))
                self._record_attempt(course, day, start_range, False, candidate)
                if (
                    self.domains is not None
                    and candidate.type in PRUNABLE_REASONS
                    and candidate.details.get("block_offset") == 0
                ):
                    self.domains.remove_slot_option(course.id, day, start_range)
            diagnostic.attempted_days.append(day_attempt)
        return False

    def _place_split(self, course: Course, session: Session) -> bool:
        sizes = _split_sizes(session.hours)
        for day in self._shuffled_days():
            placed: list[ScheduleItem] = []
            for size in sizes:
                item = self._find_on_day(course, session.type, day, size)
                if item is None:
                    break
                self._commit(item)
                placed.append(item)
            if len(placed) == len(sizes):
                logger.debug(
                    "Session split | course=%s day=%s chunks=%s",
                    course.code,
                    day.value,
                    [item.time_range for item in placed],
                )
                return True
            for item in reversed(placed):
                self._uncommit(item)
        return False

    def _place_combined(self, course: Course, theory: Session, lab: Session) -> bool:
        for day in self._shuffled_days():
            theory_item = self._find_on_day(course, theory.type, day, theory.hours)
            if theory_item is None:
                continue
            self._commit(theory_item)
            lab_item = self._find_on_day(course, lab.type, day, lab.hours)
            if lab_item is not None:
                self._commit(lab_item)
                return True
            self._uncommit(theory_item)
        return False

    def _attempt_sessions(self, course: Course, sessions: list[Session]) -> list[SessionFailureDiagnostic]:
        """Place ``sessions``; returns a diagnostic for every session that needed a fallback or failed."""
        pending = list(sessions)
        reports: list[SessionFailureDiagnostic] = []
        combined_attempted = False

        if self.features.enable_combined_theory_lab:
            theory = next((session for session in pending if session.type == SessionType.theory), None)
            lab = next((session for session in pending if session.type == SessionType.lab), None)
            if theory is not None and lab is not None:
                combined_attempted = True
                if self._place_combined(course, theory, lab):
                    pending.remove(theory)
                    pending.remove(lab)

        for session in pending:
            diagnostic = SessionFailureDiagnostic(
                session_type=session.type,
                session_hours=session.hours,
                combined_attempted=combined_attempted,
            )
            if self._place_direct(course, session, diagnostic):
                continue
            if self.features.enable_session_splitting and session.hours > 1 and not self._gave_up(course):
                diagnostic.split_attempted = True
                diagnostic.split_succeeded = self._place_split(course, session)
            reports.append(diagnostic)
        return reports

    # -- chronological backtracking ------------------------------------------

    def _movable_items(self, course_id: str) -> list[ScheduleItem]:
        return [item for item in self.items_by_course.get(course_id, ()) if not item.is_hardcoded]

    def _retry_with_backtracking(self, course: Course) -> bool:
        """Unwind the most recently placed course, place ``course``, then re-place the unwound one."""
        if self.backtracking is None:
            return False
        victims = [course_id for course_id in self.placement_order if self._movable_items(course_id)]
        if not victims:
            return False
        victim = self.course_map[victims[-1]]
        saved_own = self._movable_items(course.id)
        saved_victim = self._movable_items(victim.id)

        for item in reversed(saved_own + saved_victim):
            self._uncommit(item)
        self.backtracking.backtrack_count += 1
        # slots pruned against the unwound placements are free again
        for unwound in (course, victim):
            self._init_domain(unwound)
            self.backtracking.reset_budget(unwound.id)

        own_failures = [
            report for report in self._attempt_sessions(course, self.residual_sessions(course))
            if not report.split_succeeded
        ]
        victim_failures: list[SessionFailureDiagnostic] = []
        if not own_failures:
            victim_failures = [
                report for report in self._attempt_sessions(victim, self.residual_sessions(victim))
                if not report.split_succeeded
            ]
        if not own_failures and not victim_failures:
            logger.info(
                "Backtracking resolved placement | course=%s unwound=%s",
                course.code,
                victim.code,
            )
            return True

        for item in reversed(self._movable_items(course.id) + self._movable_items(victim.id)):
            self._uncommit(item)
        for item in saved_victim + saved_own:
            self._commit(item)
        return False

    # -- per course ----------------------------------------------------------

    def _init_domain(self, course: Course) -> None:
        if self.domains is None:
            return
        slots = [(day, block.time_range) for day in DAYS for block in self.time_blocks]
        session_types = {session.type for session in course.sessions}
        classroom_ids = [
            classroom.id
            for classroom in self.classrooms
            if classroom.is_active
            and classroom.capacity >= course.adjusted_student_count
            and any(classroom_supports(classroom, session_type) for session_type in session_types)
        ]
        self.domains.initialize_domain(course.id, slots, classroom_ids)

    def _schedule_course(self, course: Course) -> None:
        residual = self.residual_sessions(course)
        if not residual:
            return
        self._init_domain(course)
        reports = self._attempt_sessions(course, residual)
        failed = [report for report in reports if not report.split_succeeded]

        if failed and self.backtracking is not None and self._retry_with_backtracking(course):
            failed = []

        if self._movable_items(course.id):
            self.placement_order.append(course.id)

        if not reports:
            return
        diagnostic = CourseFailureDiagnostic(
            course_id=course.id,
            name=course.name,
            code=course.code,
            total_hours=course.required_hours,
            student_count=course.student_count,
            faculty=course.faculty,
            level=course.level,
            semester=course.semester,
            teacher_id=course.teacher_id,
            departments=course.department_names,
            failed_sessions=reports,
            resolved=not failed,
        )
        if failed and self.suggester is not None:
            diagnostic.suggested_slots = self.suggester.suggest_time_slots(course.id)
        self.diagnostics.append(diagnostic)
        if failed:
            self.unscheduled.append(self._unscheduled_entry(course, failed))

    def _unscheduled_entry(self, course: Course, failed: list[SessionFailureDiagnostic]) -> UnscheduledCourse:
        first_seen: dict[FailureType, FailureReason] = {}
        for report in failed:
            for day_attempt in report.attempted_days:
                for slot in day_attempt.attempted_slots:
                    first_seen.setdefault(slot.reason.type, slot.reason)
        reason_type = next(
            (candidate for candidate in REASON_PRECEDENCE if candidate in first_seen),
            FailureType.insufficient_blocks,
        )
        unmet = max(0, course.required_hours - self.hours_scheduled[course.id])
        message = first_seen[reason_type].message if reason_type in first_seen else "No contiguous run of blocks available"
        detail = f"{unmet} of {course.required_hours} hours unplaced; {message}"
        if self.backtracking is not None and course.id in self.backtracking.abandoned:
            detail += f" (gave up after {self.backtracking.attempt_count(course.id)} attempts)"
        logger.debug("Course unscheduled | course=%s reason=%s", course.code, reason_type.value)
        return UnscheduledCourse(
            course_id=course.id,
            code=course.code,
            reason=reason_type,
            detail=detail,
            unmet_hours=unmet,
        )

    # -- optimization --------------------------------------------------------

    def _optimize(self) -> None:
        if self.features.enable_hill_climbing and self.settings.hill_climbing.iterations > 0:
            outcome = HillClimbingOptimizer(
                self.courses,
                self.classrooms,
                self.time_blocks,
                settings=self.settings,
                rng=self.random,
            ).optimize(self.schedule)
            self.schedule = outcome.schedule
        if self.features.enable_simulated_annealing:
            annealed = SimulatedAnnealingOptimizer(
                self.courses,
                self.classrooms,
                self.time_blocks,
                settings=self.settings,
                rng=self.random,
            ).optimize(self.schedule)
            self.schedule = annealed.schedule
        self.index.clear()
        self.index.add_many(self.schedule)

    # -- run -----------------------------------------------------------------

    def run(self) -> SchedulerResult:
        timeout_ms = self.config.timeout_ms
        if timeout_ms is None:
            timeout_ms = self.settings.performance.timeout_ms
        timer = TimeoutManager(timeout_ms, clock=self.config.clock)
        reporter = ProgressReporter(
            self.config.on_progress,
            total_courses=len(self.courses),
            course_interval=self.settings.performance.progress_course_interval,
            timer=timer,
        )
        logger.info(
            "Scheduling run started | courses=%s classrooms=%s blocks=%s seed=%s timeout_ms=%s",
            len(self.courses),
            len(self.classrooms),
            len(self.time_blocks),
            self.seed,
            timeout_ms,
        )
        reporter.stage(STAGE_INITIALIZING, 0, "Initializing scheduler")
        reporter.stage(STAGE_HARDCODED, 10, "Placing hardcoded sessions")
        self._place_hardcoded(reporter)
        reporter.stage(STAGE_HARDCODED, 20, f"Placed {len(self.schedule)} hardcoded sessions")

        ordered = sort_courses_by_difficulty(
            self.courses,
            self.classrooms,
            self.settings.difficulty,
            self.teacher_load,
        )
        timed_out = False
        for position, course in enumerate(ordered):
            if timer.is_expired():
                timed_out = True
                tail = ordered[position:]
                for pending in tail:
                    self.unscheduled.append(
                        UnscheduledCourse(
                            course_id=pending.id,
                            code=pending.code,
                            reason=FailureType.timeout,
                            detail="Not processed before the scheduling deadline",
                            unmet_hours=max(0, pending.required_hours - self.hours_scheduled[pending.id]),
                        )
                    )
                message = (
                    f"Scheduling timed out after {timer.elapsed_ms()} ms; "
                    f"{len(tail)} of {len(ordered)} courses were not processed"
                )
                reporter.add_warning(message)
                logger.warning(
                    "Scheduling deadline reached | processed=%s remaining=%s timeout_ms=%s",
                    position,
                    len(tail),
                    timeout_ms,
                )
                break
            self._schedule_course(course)
            reporter.course_progress(position + 1, position + 1 - len(self.unscheduled), course.code)

        reporter.stage(STAGE_OPTIMIZING, 85, "Optimizing schedule", scheduled_count=len(self.courses) - len(self.unscheduled))
        self._optimize()

        metrics = calculate_schedule_metrics(self.schedule, self.course_map, self.classroom_map)
        scheduled_count = len(self.courses) - len(self.unscheduled)
        reporter.stage(
            STAGE_COMPLETE,
            100,
            f"Scheduled {scheduled_count}/{len(self.courses)} courses",
            scheduled_count=scheduled_count,
        )
        duration_ms = timer.elapsed_ms()
        logger.info(
            "Scheduling run finished | placements=%s unscheduled=%s timed_out=%s duration_ms=%s",
            len(self.schedule),
            len(self.unscheduled),
            timed_out,
            duration_ms,
        )
        return SchedulerResult(
            schedule=list(self.schedule),
            unscheduled=list(self.unscheduled),
            diagnostics=list(self.diagnostics),
            metrics=metrics,
            warnings=list(reporter.warnings),
            seed=self.seed,
            timed_out=timed_out,
            duration_ms=duration_ms,
            total_courses=len(self.courses),
            index_stats={**self.index.stats(), "cache": self.index.cache_stats()},
            backtracking_stats=self.backtracking.stats() if self.backtracking is not None else {},
        )


def generate_schedule(config: SchedulerConfig) -> SchedulerResult:
    return SchedulerEngine(config).run()
