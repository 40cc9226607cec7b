from __future__ import annotations

from collections.abc import Collection, Mapping, Sequence
from functools import cmp_to_key
from statistics import fmean
from typing import Any

from app.services.scheduler.config import CapacitySettings, DifficultyWeights
from app.services.scheduler.types import (
    AvailabilityCalendar,
    Classroom,
    ClassroomType,
    Course,
    Day,
    ScheduleItem,
    SessionType,
    TimeBlock,
    adjusted_headcount,
    normalize_day,
    ranges_overlap,
)

DIFFICULTY_TOLERANCE = 0.1
SCORE_TIE_TOLERANCE = 1.0
OVERCAPACITY_SCORE = -1000.0


def is_available(calendar: AvailabilityCalendar | None, day: Day | str, block: TimeBlock) -> bool:
    if calendar is None:
        return True
    return calendar.allows(day, block)


def classroom_supports(classroom: Classroom, session_type: SessionType) -> bool:
    if session_type == SessionType.lab:
        return classroom.type in (ClassroomType.lab, ClassroomType.hybrid)
    if session_type == SessionType.theory:
        return classroom.type != ClassroomType.lab
    return True


def utilization_score(ratio: float, capacity: CapacitySettings | None = None) -> float:
    """Closeness of ``ratio`` (students / seats) to the ideal band, in points."""
    capacity = capacity or CapacitySettings()
    low = capacity.ideal_min_ratio
    high = capacity.ideal_max_ratio
    threshold = capacity.penalty_threshold
    if ratio > 1.0:
        return OVERCAPACITY_SCORE
    if low <= ratio <= high:
        return 100 - abs(ratio - (low + high) / 2) * 100
    if ratio < threshold:
        return ratio * 50
    if ratio < low:
        span = low - threshold
        return 50 + ((ratio - threshold) / span * 40 if span > 0 else 40)
    span = 1.0 - high
    return 100 - ((ratio - high) / span * 30 if span > 0 else 30)


def rank_classrooms(
    classrooms: Sequence[Classroom],
    *,
    session_type: SessionType,
    student_count: int,
    capacity_margin: float,
    day: Day | str,
    blocks: Sequence[TimeBlock],
    occupied: Collection[str] = (),
    department: str | None = None,
    capacity: CapacitySettings | None = None,
) -> list[Classroom]:
    """Every classroom able to host the session, best first."""
    required = adjusted_headcount(student_count, capacity_margin)
    candidates = [
        classroom
        for classroom in classrooms
        if classroom.is_active
        and classroom_supports(classroom, session_type)
        and classroom.capacity >= required
        and classroom.id not in occupied
        and all(is_available(classroom.availability, day, block) for block in blocks)
    ]
    scores = {
        classroom.id: utilization_score(required / classroom.capacity if classroom.capacity > 0 else 2.0, capacity)
        for classroom in candidates
    }

    def compare(first: Classroom, second: Classroom) -> int:
        difference = scores[first.id] - scores[second.id]
        if abs(difference) > SCORE_TIE_TOLERANCE:
            return -1 if difference > 0 else 1
        first_priority = department is not None and first.priority_department == department
        second_priority = department is not None and second.priority_department == department
        if first_priority != second_priority:
            return -1 if first_priority else 1
        return first.capacity - second.capacity

    return sorted(candidates, key=cmp_to_key(compare))


def find_suitable_classroom(
    classrooms: Sequence[Classroom],
    *,
    session_type: SessionType,
    student_count: int,
    capacity_margin: float,
    day: Day | str,
    blocks: Sequence[TimeBlock],
    occupied: Collection[str] = (),
    department: str | None = None,
    capacity: CapacitySettings | None = None,
) -> Classroom | None:
    ranked = rank_classrooms(
        classrooms,
        session_type=session_type,
        student_count=student_count,
        capacity_margin=capacity_margin,
        day=day,
        blocks=blocks,
        occupied=occupied,
        department=department,
        capacity=capacity,
    )
    return ranked[0] if ranked else None


def explain_classroom_shortage(
    classrooms: Sequence[Classroom],
    *,
    session_type: SessionType,
    student_count: int,
    capacity_margin: float,
    day: Day | str,
    blocks: Sequence[TimeBlock],
    occupied: Collection[str] = (),
) -> dict[str, Any]:
    """Counts of classrooms surviving each filter, for failure diagnostics."""
    required = adjusted_headcount(student_count, capacity_margin)
    active = [classroom for classroom in classrooms if classroom.is_active]
    type_ok = [classroom for classroom in active if classroom_supports(classroom, session_type)]
    capacity_ok = [classroom for classroom in type_ok if classroom.capacity >= required]
    free = [classroom for classroom in capacity_ok if classroom.id not in occupied]
    available = [
        classroom
        for classroom in free
        if all(is_available(classroom.availability, day, block) for block in blocks)
    ]
    return {
        "required_capacity": required,
        "session_type": session_type.value,
        "active_classrooms": len(active),
        "type_compatible": len(type_ok),
        "capacity_sufficient": len(capacity_ok),
        "unoccupied": len(free),
        "available": len(available),
        "largest_compatible_capacity": max((classroom.capacity for classroom in type_ok), default=0),
    }


def items_conflict(
    first: ScheduleItem,
    second: ScheduleItem,
    course_map: Mapping[str, Course],
) -> bool:
    if normalize_day(first.day) != normalize_day(second.day):
        return False
    if not ranges_overlap(first.time_range, second.time_range):
        return False
    if first.classroom_id and first.classroom_id == second.classroom_id:
        return True
    first_course = course_map.get(first.course_id)
    second_course = course_map.get(second.course_id)
    if first_course is None or second_course is None:
        return False
    if first_course.teacher_id and first_course.teacher_id == second_course.teacher_id:
        return True
    if first_course.is_compulsory and second_course.is_compulsory:
        if first_course.level == second_course.level and first_course.semester == second_course.semester:
            shared = set(first_course.department_names) & set(second_course.department_names)
            if shared:
                return True
    return False


def has_conflict(
    schedule: Sequence[ScheduleItem],
    candidate: ScheduleItem,
    course_map: Mapping[str, Course],
    *,
    skip_indices: Collection[int] = (),
) -> bool:
    """Linear scan of ``schedule`` for any hard clash with ``candidate``."""
    for index, item in enumerate(schedule):
        if index in skip_indices:
            continue
        if items_conflict(candidate, item, course_map):
            return True
    return False


def matching_classroom_count(course: Course, classrooms: Sequence[Classroom]) -> int:
    required = course.adjusted_student_count
    session_types = {session.type for session in course.sessions} or {SessionType.theory}
    return sum(
        1
        for classroom in classrooms
        if classroom.is_active
        and classroom.capacity >= required
        and all(classroom_supports(classroom, session_type) for session_type in session_types)
    )


def course_difficulty(
    course: Course,
    classrooms: Sequence[Classroom],
    weights: DifficultyWeights | None = None,
) -> float:
    weights = weights or DifficultyWeights()
    matching = matching_classroom_count(course, classrooms)
    scarcity = 1 / matching if matching else 100.0
    average_duration = fmean(session.hours for session in course.sessions) if course.sessions else 0.0
    return (
        course.student_count * weights.student_count_weight
        + scarcity * weights.classroom_scarcity_weight
        + average_duration * weights.duration_weight
    )


def sort_courses_by_difficulty(
    courses: Sequence[Course],
    classrooms: Sequence[Classroom],
    weights: DifficultyWeights | None = None,
    teacher_load: Mapping[str, int] | None = None,
) -> list[Course]:
    """Hardest first; courses within the tolerance go to the less loaded teacher first."""
    teacher_load = teacher_load or {}
    difficulty = {course.id: course_difficulty(course, classrooms, weights) for course in courses}

    def compare(first: Course, second: Course) -> int:
        difference = difficulty[second.id] - difficulty[first.id]
        if abs(difference) > DIFFICULTY_TOLERANCE:
            return 1 if difference > 0 else -1
        first_load = teacher_load.get(first.teacher_id or "", 0)
        second_load = teacher_load.get(second.teacher_id or "", 0)
        return first_load - second_load

    return sorted(courses, key=cmp_to_key(compare))
