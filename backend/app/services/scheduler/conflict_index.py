from __future__ import annotations

from collections import Counter
from collections.abc import Hashable, Iterable, Sequence
from typing import Any

from app.services.scheduler.time_utils import blocks_overlapping
from app.services.scheduler.types import (
    Course,
    Day,
    FailureReason,
    FailureType,
    ScheduleItem,
    TimeBlock,
    normalize_day,
)

Token = tuple[str, str]
CohortKey = tuple[str, str, str]


class _OccupancyIndex:
    """key -> (day, block range) -> multiset of course ids."""

    def __init__(self) -> None:
        self.entries: dict[Hashable, dict[Token, Counter[str]]] = {}

    def add(self, key: Hashable, tokens: Iterable[Token], course_id: str) -> None:
        slots = self.entries.setdefault(key, {})
        for token in tokens:
            slots.setdefault(token, Counter())[course_id] += 1

    def remove(self, key: Hashable, tokens: Iterable[Token], course_id: str) -> None:
        slots = self.entries.get(key)
        if slots is None:
            return
        for token in tokens:
            counter = slots.get(token)
            if counter is None or counter[course_id] <= 0:
                continue
            counter[course_id] -= 1
            if counter[course_id] <= 0:
                del counter[course_id]
            if not counter:
                del slots[token]
        if not slots:
            del self.entries[key]

    def occupants(self, key: Hashable, tokens: Iterable[Token]) -> list[str]:
        slots = self.entries.get(key)
        if not slots:
            return []
        found: list[str] = []
        for token in tokens:
            for course_id in slots.get(token, ()):
                if course_id not in found:
                    found.append(course_id)
        return found

    def is_occupied(self, key: Hashable, tokens: Iterable[Token]) -> bool:
        slots = self.entries.get(key)
        if not slots:
            return False
        return any(token in slots for token in tokens)

    def size(self) -> int:
        return sum(sum(counter.values()) for slots in self.entries.values() for counter in slots.values())


class ConflictIndex:
    """Incremental occupancy index for teachers, classrooms and compulsory cohorts.

    Every item is expanded into the grid blocks its range overlaps, so a three
    block session occupies three tokens and collides with any single-block lookup
    inside it. Entries are reference counted: removing an item that was added
    restores the index exactly, leaving no empty keys behind.
    """

    def __init__(
        self,
        courses: Iterable[Course],
        time_blocks: Sequence[TimeBlock],
        *,
        enable_caching: bool = True,
    ) -> None:
        self.course_map: dict[str, Course] = {course.id: course for course in courses}
        self.time_blocks = list(time_blocks)
        self.enable_caching = enable_caching
        self._teachers = _OccupancyIndex()
        self._classrooms = _OccupancyIndex()
        self._cohorts = _OccupancyIndex()
        self._slot_courses: dict[Token, Counter[str]] = {}
        self._slot_classrooms: dict[Token, Counter[str]] = {}
        self._cache: dict[tuple[str, str | None, str, str], FailureReason | None] = {}
        self._cache_hits = 0
        self._cache_misses = 0

    def tokens(self, day: Day | str, time_range: str) -> list[Token]:
        normalized = normalize_day(day)
        day_key = normalized.value if normalized is not None else str(day)
        blocks = blocks_overlapping(self.time_blocks, time_range)
        if not blocks:
            return [(day_key, time_range)]
        return [(day_key, block.time_range) for block in blocks]

    @staticmethod
    def cohort_keys(course: Course | None) -> list[CohortKey]:
        if course is None or not course.is_compulsory:
            return []
        keys: list[CohortKey] = []
        for department in course.department_names:
            key = (department, course.semester, course.level)
            if key not in keys:
                keys.append(key)
        return keys

    def add_schedule_item(self, item: ScheduleItem) -> None:
        tokens = self.tokens(item.day, item.time_range)
        course = self.course_map.get(item.course_id)
        if course is not None and course.teacher_id:
            self._teachers.add(course.teacher_id, tokens, item.course_id)
        if item.classroom_id:
            self._classrooms.add(item.classroom_id, tokens, item.course_id)
        for key in self.cohort_keys(course):
            self._cohorts.add(key, tokens, item.course_id)
        for token in tokens:
            self._slot_courses.setdefault(token, Counter())[item.course_id] += 1
            if item.classroom_id:
                self._slot_classrooms.setdefault(token, Counter())[item.classroom_id] += 1
        self._invalidate()

    def remove_schedule_item(self, item: ScheduleItem) -> None:
        tokens = self.tokens(item.day, item.time_range)
        course = self.course_map.get(item.course_id)
        if course is not None and course.teacher_id:
            self._teachers.remove(course.teacher_id, tokens, item.course_id)
        if item.classroom_id:
            self._classrooms.remove(item.classroom_id, tokens, item.course_id)
        for key in self.cohort_keys(course):
            self._cohorts.remove(key, tokens, item.course_id)
        for token in tokens:
            _decrement(self._slot_courses, token, item.course_id)
            if item.classroom_id:
                _decrement(self._slot_classrooms, token, item.classroom_id)
        self._invalidate()

    def add_many(self, items: Iterable[ScheduleItem]) -> None:
        for item in items:
            self.add_schedule_item(item)

    def check_conflicts(
        self,
        course_id: str,
        classroom_id: str | None,
        day: Day | str,
        time_range: str,
    ) -> FailureReason | None:
        """First conflict for placing ``course_id`` at (day, time_range), or None.

        Precedence is teacher, then classroom, then compulsory cohort. Passing
        ``classroom_id=None`` skips the classroom check.
        """
        normalized = normalize_day(day)
        day_key = normalized.value if normalized is not None else str(day)
        cache_key = (course_id, classroom_id, day_key, time_range)
        if self.enable_caching and cache_key in self._cache:
            self._cache_hits += 1
            return self._cache[cache_key]
        self._cache_misses += 1

        result = self._compute_conflict(course_id, classroom_id, day_key, time_range)
        if self.enable_caching:
            self._cache[cache_key] = result
        return result

    def _compute_conflict(
        self,
        course_id: str,
        classroom_id: str | None,
        day: str,
        time_range: str,
    ) -> FailureReason | None:
        tokens = self.tokens(day, time_range)
        course = self.course_map.get(course_id)

        if course is not None and course.teacher_id:
            occupants = self._teachers.occupants(course.teacher_id, tokens)
            if occupants:
                return FailureReason(
                    type=FailureType.teacher_conflict,
                    message=f"Teacher {course.teacher_id} is already teaching at {day} {time_range}",
                    details=self._conflict_details(occupants, teacher_id=course.teacher_id),
                )

        if classroom_id:
            occupants = self._classrooms.occupants(classroom_id, tokens)
            if occupants:
                return FailureReason(
                    type=FailureType.classroom_conflict,
                    message=f"Classroom {classroom_id} is occupied at {day} {time_range}",
                    details=self._conflict_details(occupants, classroom_id=classroom_id),
                )

        for key in self.cohort_keys(course):
            occupants = self._cohorts.occupants(key, tokens)
            if occupants:
                department, semester, level = key
                return FailureReason(
                    type=FailureType.department_conflict,
                    message=(
                        f"Compulsory course of {department} (semester {semester}, level {level}) "
                        f"already runs at {day} {time_range}"
                    ),
                    details=self._conflict_details(
                        occupants,
                        department=department,
                        semester=semester,
                        level=level,
                    ),
                )
        return None

    def _conflict_details(self, course_ids: list[str], **extra: Any) -> dict[str, Any]:
        details: dict[str, Any] = dict(extra)
        details["conflicting_course_ids"] = list(course_ids)
        details["conflicting_course_codes"] = [
            self.course_map[course_id].code if course_id in self.course_map else course_id
            for course_id in course_ids
        ]
        return details

    def has_teacher_conflict(self, teacher_id: str, day: Day | str, time_range: str) -> bool:
        return self._teachers.is_occupied(teacher_id, self.tokens(day, time_range))

    def has_classroom_conflict(self, classroom_id: str, day: Day | str, time_range: str) -> bool:
        return self._classrooms.is_occupied(classroom_id, self.tokens(day, time_range))

    def has_department_conflict(self, course: Course, day: Day | str, time_range: str) -> bool:
        tokens = self.tokens(day, time_range)
        return any(self._cohorts.is_occupied(key, tokens) for key in self.cohort_keys(course))

    def occupied_classrooms(self, day: Day | str, time_range: str) -> set[str]:
        occupied: set[str] = set()
        for token in self.tokens(day, time_range):
            occupied.update(self._slot_classrooms.get(token, ()))
        return occupied

    def courses_at(self, day: Day | str, time_range: str) -> list[str]:
        found: list[str] = []
        for token in self.tokens(day, time_range):
            for course_id in self._slot_courses.get(token, ()):
                if course_id not in found:
                    found.append(course_id)
        return found

    def teacher_schedule(self, teacher_id: str) -> list[Token]:
        return sorted(self._teachers.entries.get(teacher_id, {}))

    def classroom_schedule(self, classroom_id: str) -> list[Token]:
        return sorted(self._classrooms.entries.get(classroom_id, {}))

    def clear(self) -> None:
        self._teachers = _OccupancyIndex()
        self._classrooms = _OccupancyIndex()
        self._cohorts = _OccupancyIndex()
        self._slot_courses.clear()
        self._slot_classrooms.clear()
        self._invalidate()

    def _invalidate(self) -> None:
        self._cache.clear()

    def stats(self) -> dict[str, int]:
        return {
            "teachers": len(self._teachers.entries),
            "classrooms": len(self._classrooms.entries),
            "department_cohorts": len(self._cohorts.entries),
            "time_slots": len(self._slot_courses),
            "teacher_entries": self._teachers.size(),
            "classroom_entries": self._classrooms.size(),
            "department_entries": self._cohorts.size(),
        }

    def cache_stats(self) -> dict[str, float]:
        total = self._cache_hits + self._cache_misses
        return {
            "hits": self._cache_hits,
            "misses": self._cache_misses,
            "hit_rate": round(self._cache_hits / total, 4) if total else 0.0,
            "size": len(self._cache),
        }


def _decrement(index: dict[Token, Counter[str]], token: Token, value: str) -> None:
    counter = index.get(token)
    if counter is None or counter[value] <= 0:
        return
    counter[value] -= 1
    if counter[value] <= 0:
        del counter[value]
    if not counter:
        del index[token]
