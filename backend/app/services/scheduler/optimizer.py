from __future__ import annotations

from collections import defaultdict
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
import logging
import random
from statistics import pstdev
from time import perf_counter

from app.services.scheduler.config import CapacitySettings, SchedulerSettings
from app.services.scheduler.constraints import has_conflict, is_available, items_conflict, utilization_score
from app.services.scheduler.time_utils import blocks_overlapping
from app.services.scheduler.types import Classroom, Course, Day, ScheduleItem, TimeBlock, parse_time_range

logger = logging.getLogger(__name__)

IDEAL_BAND_BONUS = 10.0
UNDERUSE_PENALTY = 5.0
HEAVY_WASTE_RATIO = 0.3
HEAVY_WASTE_PENALTY = 3.0
PRIORITY_ROOM_BONUS = 5.0
TEACHER_BALANCE_FACTOR = 0.5
DAY_SPREAD_BONUS = 3.0


def teacher_load_hours(schedule: Sequence[ScheduleItem], course_map: Mapping[str, Course]) -> dict[str, int]:
    load: dict[str, int] = defaultdict(int)
    for item in schedule:
        course = course_map.get(item.course_id)
        if course is not None and course.teacher_id:
            load[course.teacher_id] += item.session_hours
    return dict(load)


def teacher_load_stddev(schedule: Sequence[ScheduleItem], course_map: Mapping[str, Course]) -> float:
    loads = list(teacher_load_hours(schedule, course_map).values())
    if len(loads) < 2:
        return 0.0
    return pstdev(loads)


def calculate_soft_score(
    schedule: Sequence[ScheduleItem],
    course_map: Mapping[str, Course],
    classroom_map: Mapping[str, Classroom],
    capacity: CapacitySettings | None = None,
) -> float:
    """Higher is better: utilization band, priority rooms, teacher balance and day spread."""
    capacity = capacity or CapacitySettings()
    score = 0.0
    days_by_course: dict[str, set[str]] = defaultdict(set)
    for item in schedule:
        days_by_course[item.course_id].add(item.day)
        course = course_map.get(item.course_id)
        classroom = classroom_map.get(item.classroom_id)
        if course is None or classroom is None or classroom.capacity <= 0:
            continue
        ratio = course.adjusted_student_count / classroom.capacity
        if capacity.ideal_min_ratio <= ratio <= capacity.ideal_max_ratio:
            score += IDEAL_BAND_BONUS
        elif ratio < capacity.penalty_threshold:
            score -= UNDERUSE_PENALTY
        if ratio < HEAVY_WASTE_RATIO:
            score -= HEAVY_WASTE_PENALTY
        if classroom.priority_department and classroom.priority_department in course.department_names:
            score += PRIORITY_ROOM_BONUS

    score -= teacher_load_stddev(schedule, course_map) * TEACHER_BALANCE_FACTOR
    score += DAY_SPREAD_BONUS * sum(1 for days in days_by_course.values() if len(days) >= 2)
    return score


def evaluate_placement_quality(
    course: Course,
    classroom: Classroom,
    day: Day,
    time_range: str,
    schedule: Sequence[ScheduleItem],
    capacity: CapacitySettings | None = None,
) -> float:
    """Score one prospective placement before it is committed."""
    ratio = course.adjusted_student_count / classroom.capacity if classroom.capacity > 0 else 2.0
    score = utilization_score(ratio, capacity) / 10
    if classroom.priority_department and classroom.priority_department in course.department_names:
        score += PRIORITY_ROOM_BONUS
    used_days = {item.day for item in schedule if item.course_id == course.id}
    if used_days and day not in used_days:
        score += DAY_SPREAD_BONUS
    start, _ = parse_time_range(time_range)
    if 10 * 60 <= start < 15 * 60:
        score += 2
    return score


class SwapValidator:
    """Checks that exchanging two placements' (day, time_range) keeps every hard constraint."""

    def __init__(
        self,
        course_map: Mapping[str, Course],
        classroom_map: Mapping[str, Classroom],
        time_blocks: Sequence[TimeBlock],
    ) -> None:
        self.course_map = course_map
        self.classroom_map = classroom_map
        self.time_blocks = list(time_blocks)

    def swappable_indices(self, schedule: Sequence[ScheduleItem]) -> dict[int, list[int]]:
        groups: dict[int, list[int]] = defaultdict(list)
        for index, item in enumerate(schedule):
            if not item.is_hardcoded:
                groups[item.session_hours].append(index)
        return {hours: indices for hours, indices in groups.items() if len(indices) >= 2}

    def pick_pair(self, schedule: Sequence[ScheduleItem], rng: random.Random) -> tuple[int, int] | None:
        groups = self.swappable_indices(schedule)
        if not groups:
            return None
        hours = rng.choice(sorted(groups))
        first, second = rng.sample(groups[hours], 2)
        return first, second

    def is_placeable(self, item: ScheduleItem) -> bool:
        course = self.course_map.get(item.course_id)
        classroom = self.classroom_map.get(item.classroom_id)
        blocks = blocks_overlapping(self.time_blocks, item.time_range)
        if not blocks:
            return False
        for block in blocks:
            if course is not None and not is_available(course.teacher_availability, item.day, block):
                return False
            if classroom is not None and not is_available(classroom.availability, item.day, block):
                return False
        return True

    def swap(
        self,
        schedule: Sequence[ScheduleItem],
        first: int,
        second: int,
    ) -> tuple[ScheduleItem, ScheduleItem] | None:
        """Swapped copies of the two items, or None when the swap breaks a hard constraint."""
        a = schedule[first]
        b = schedule[second]
        if a.is_hardcoded or b.is_hardcoded or a.session_hours != b.session_hours:
            return None
        if a.day == b.day and a.time_range == b.time_range:
            return None
        moved_a = a.moved(b.day, b.time_range)
        moved_b = b.moved(a.day, a.time_range)
        if not self.is_placeable(moved_a) or not self.is_placeable(moved_b):
            return None
        skip = {first, second}
        if has_conflict(schedule, moved_a, self.course_map, skip_indices=skip):
            return None
        if has_conflict(schedule, moved_b, self.course_map, skip_indices=skip):
            return None
        if items_conflict(moved_a, moved_b, self.course_map):
            return None
        return moved_a, moved_b


@dataclass
class OptimizationOutcome:
    schedule: list[ScheduleItem]
    initial_score: float
    final_score: float
    iterations: int
    accepted_moves: int
    runtime_ms: int


class HillClimbingOptimizer:
    def __init__(
        self,
        courses: Sequence[Course],
        classrooms: Sequence[Classroom],
        time_blocks: Sequence[TimeBlock],
        *,
        settings: SchedulerSettings | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings or SchedulerSettings()
        self.course_map = {course.id: course for course in courses}
        self.classroom_map = {classroom.id: classroom for classroom in classrooms}
        self.validator = SwapValidator(self.course_map, self.classroom_map, time_blocks)
        self.random = rng or random.Random()

    def score(self, schedule: Sequence[ScheduleItem]) -> float:
        return calculate_soft_score(schedule, self.course_map, self.classroom_map, self.settings.capacity)

    def optimize(self, schedule: Sequence[ScheduleItem]) -> OptimizationOutcome:
        start = perf_counter()
        current = list(schedule)
        current_score = self.score(current)
        initial_score = current_score
        params = self.settings.hill_climbing
        non_improving = 0
        accepted = 0
        iteration = 0

        for iteration in range(1, params.iterations + 1):
            pair = self.validator.pick_pair(current, self.random)
            if pair is None:
                break
            first, second = pair
            swapped = self.validator.swap(current, first, second)
            if swapped is None:
                non_improving += 1
            else:
                candidate = list(current)
                candidate[first], candidate[second] = swapped
                candidate_score = self.score(candidate)
                if candidate_score >= current_score:
                    non_improving = 0 if candidate_score > current_score else non_improving + 1
                    current = candidate
                    current_score = candidate_score
                    accepted += 1
                else:
                    non_improving += 1
            if non_improving >= params.improvement_threshold:
                break

        runtime_ms = int((perf_counter() - start) * 1000)
        logger.debug(
            "Hill climbing finished | iterations=%s accepted=%s score=%.2f->%.2f runtime_ms=%s",
            iteration,
            accepted,
            initial_score,
            current_score,
            runtime_ms,
        )
        return OptimizationOutcome(
            schedule=current,
            initial_score=initial_score,
            final_score=current_score,
            iterations=iteration,
            accepted_moves=accepted,
            runtime_ms=runtime_ms,
        )
