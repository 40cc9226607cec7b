from __future__ import annotations

from collections import Counter, defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
import logging
from typing import Any

from app.services.scheduler.conflict_index import ConflictIndex
from app.services.scheduler.types import Course, Day, FailureType, ScheduleItem, TimeBlock

logger = logging.getLogger(__name__)

SlotOption = tuple[Day, str]


@dataclass(frozen=True)
class PlacementAttempt:
    course_id: str
    day: Day
    time_range: str
    success: bool
    reason: FailureType | None = None
    classroom_id: str | None = None


class BacktrackingManager:
    """Attempt history, give-up ceiling and an undoable placement stack.

    The stack writes through to ``index``; pass the engine's own index to keep
    both views of the schedule in step.
    """

    def __init__(
        self,
        courses: Iterable[Course],
        time_blocks: Sequence[TimeBlock],
        *,
        max_placement_attempts: int = 100,
        index: ConflictIndex | None = None,
    ) -> None:
        self.max_placement_attempts = max_placement_attempts
        self.index = index or ConflictIndex(courses, time_blocks)
        self.stack: list[ScheduleItem] = []
        self.attempts: dict[str, list[PlacementAttempt]] = defaultdict(list)
        self.backtrack_count = 0
        self.abandoned: list[str] = []
        self.budget_start: dict[str, int] = {}

    def record_attempt(
        self,
        course_id: str,
        day: Day,
        time_range: str,
        success: bool,
        reason: FailureType | None = None,
        classroom_id: str | None = None,
    ) -> None:
        self.attempts[course_id].append(
            PlacementAttempt(
                course_id=course_id,
                day=day,
                time_range=time_range,
                success=success,
                reason=reason,
                classroom_id=classroom_id,
            )
        )

    def attempt_count(self, course_id: str) -> int:
        return len(self.attempts.get(course_id, ()))

    def remaining_attempts(self, course_id: str) -> int:
        used = self.attempt_count(course_id) - self.budget_start.get(course_id, 0)
        return self.max_placement_attempts - used

    def reset_budget(self, course_id: str) -> None:
        """Grant a fresh attempt budget; earlier attempts stay in the history."""
        self.budget_start[course_id] = self.attempt_count(course_id)
        if course_id in self.abandoned:
            self.abandoned.remove(course_id)

    def should_give_up(self, course_id: str) -> bool:
        if self.remaining_attempts(course_id) > 0:
            return False
        if course_id not in self.abandoned:
            self.abandoned.append(course_id)
            logger.warning(
                "Placement attempts exhausted | course_id=%s attempts=%s",
                course_id,
                self.attempt_count(course_id),
            )
        return True

    def push_placement(self, item: ScheduleItem) -> None:
        self.stack.append(item)
        self.index.add_schedule_item(item)

    def remove_placement(self, item: ScheduleItem) -> None:
        for position in range(len(self.stack) - 1, -1, -1):
            if self.stack[position] == item:
                del self.stack[position]
                self.index.remove_schedule_item(item)
                return

    def backtrack(self, count: int = 1) -> list[ScheduleItem]:
        """Undo the ``count`` most recent placements, newest first."""
        removed: list[ScheduleItem] = []
        for _ in range(min(count, len(self.stack))):
            item = self.stack.pop()
            self.index.remove_schedule_item(item)
            removed.append(item)
        if removed:
            self.backtrack_count += 1
        return removed

    def current_schedule(self) -> list[ScheduleItem]:
        return list(self.stack)

    def failed_attempts(self, course_id: str | None = None) -> list[PlacementAttempt]:
        if course_id is not None:
            return [attempt for attempt in self.attempts.get(course_id, ()) if not attempt.success]
        return [attempt for attempts in self.attempts.values() for attempt in attempts if not attempt.success]

    def analyze_failure(self, course_id: str) -> dict[str, Any]:
        failed = self.failed_attempts(course_id)
        by_type = Counter(attempt.reason.value for attempt in failed if attempt.reason is not None)
        by_day = Counter(attempt.day.value for attempt in failed)
        by_time = Counter(attempt.time_range for attempt in failed)
        return {
            "course_id": course_id,
            "total_attempts": self.attempt_count(course_id),
            "failed_attempts": len(failed),
            "failures_by_type": dict(by_type),
            "most_problematic_day": by_day.most_common(1)[0][0] if by_day else None,
            "most_problematic_time": by_time.most_common(1)[0][0] if by_time else None,
        }

    def stats(self) -> dict[str, Any]:
        total = sum(len(attempts) for attempts in self.attempts.values())
        successful = sum(1 for attempts in self.attempts.values() for attempt in attempts if attempt.success)
        return {
            "total_attempts": total,
            "successful_attempts": successful,
            "failed_attempts": total - successful,
            "courses_tracked": len(self.attempts),
            "backtracks": self.backtrack_count,
            "stack_depth": len(self.stack),
            "abandoned_courses": list(self.abandoned),
        }


class DomainTracker:
    """Remaining viable start slots and classrooms per course."""

    def __init__(self) -> None:
        self._slots: dict[str, list[SlotOption]] = {}
        self._classrooms: dict[str, list[str]] = {}

    def initialize_domain(self, course_id: str, slots: Iterable[SlotOption], classroom_ids: Iterable[str]) -> None:
        self._slots[course_id] = list(dict.fromkeys(slots))
        self._classrooms[course_id] = list(dict.fromkeys(classroom_ids))

    def remove_slot_option(self, course_id: str, day: Day, time_range: str) -> None:
        slots = self._slots.get(course_id)
        if slots and (day, time_range) in slots:
            slots.remove((day, time_range))

    def remove_classroom_option(self, course_id: str, classroom_id: str) -> None:
        classrooms = self._classrooms.get(course_id)
        if classrooms and classroom_id in classrooms:
            classrooms.remove(classroom_id)

    def has_slot(self, course_id: str, day: Day, time_range: str) -> bool:
        if course_id not in self._slots:
            return True
        return (day, time_range) in self._slots[course_id]

    def available_slots(self, course_id: str) -> list[SlotOption]:
        return list(self._slots.get(course_id, ()))

    def available_classrooms(self, course_id: str) -> list[str]:
        return list(self._classrooms.get(course_id, ()))

    def has_options(self, course_id: str) -> bool:
        return bool(self._slots.get(course_id)) and bool(self._classrooms.get(course_id))

    def domain_size(self, course_id: str) -> int:
        return len(self._slots.get(course_id, ())) * len(self._classrooms.get(course_id, ()))


class PlacementSuggester:
    """Ranks a course's remaining domain by current conflict pressure."""

    def __init__(self, index: ConflictIndex, domains: DomainTracker) -> None:
        self.index = index
        self.domains = domains

    def suggest_time_slots(self, course_id: str, limit: int = 5) -> list[dict[str, Any]]:
        ranked: list[dict[str, Any]] = []
        for day, time_range in self.domains.available_slots(course_id):
            if self.index.check_conflicts(course_id, None, day, time_range) is not None:
                continue
            pressure = len(self.index.courses_at(day, time_range))
            ranked.append({"day": day.value, "time_range": time_range, "score": 100 - 10 * pressure})
        ranked.sort(key=lambda entry: -entry["score"])
        return ranked[:limit]

    def suggest_classrooms(self, course_id: str, day: Day, time_range: str, limit: int = 5) -> list[dict[str, Any]]:
        occupied = self.index.occupied_classrooms(day, time_range)
        ranked: list[dict[str, Any]] = []
        for classroom_id in self.domains.available_classrooms(course_id):
            if classroom_id in occupied:
                continue
            usage = len(self.index.classroom_schedule(classroom_id))
            ranked.append({"classroom_id": classroom_id, "score": 100 - usage})
        ranked.sort(key=lambda entry: -entry["score"])
        return ranked[:limit]
