from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
import math
from typing import Any

from app.schemas.settings import TIME_PATTERN, parse_time_to_minutes


class Day(str, Enum):
    monday = "Monday"
    tuesday = "Tuesday"
    wednesday = "Wednesday"
    thursday = "Thursday"
    friday = "Friday"


DAYS: tuple[Day, ...] = tuple(Day)

DAY_SHORT_MAP = {
    "mon": Day.monday,
    "tue": Day.tuesday,
    "tues": Day.tuesday,
    "wed": Day.wednesday,
    "thu": Day.thursday,
    "thur": Day.thursday,
    "thurs": Day.thursday,
    "fri": Day.friday,
}


def normalize_day(value: Day | str | None) -> Day | None:
    if isinstance(value, Day):
        return value
    if not isinstance(value, str):
        return None
    key = value.strip().lower()
    if not key:
        return None
    for day in DAYS:
        if day.value.lower() == key:
            return day
    return DAY_SHORT_MAP.get(key)


class SessionType(str, Enum):
    theory = "theory"
    lab = "lab"
    combined = "combined"


class ClassroomType(str, Enum):
    theory = "theory"
    lab = "lab"
    hybrid = "hybrid"


class CourseCategory(str, Enum):
    compulsory = "compulsory"
    elective = "elective"


class FailureType(str, Enum):
    teacher_unavailable = "teacher_unavailable"
    teacher_conflict = "teacher_conflict"
    classroom_conflict = "classroom_conflict"
    department_conflict = "department_conflict"
    no_classroom = "no_classroom"
    insufficient_blocks = "insufficient_blocks"
    timeout = "timeout"


def parse_time_range(time_range: str) -> tuple[int, int]:
    start, _, end = time_range.partition("-")
    return parse_time_to_minutes(start.strip()), parse_time_to_minutes(end.strip())


def ranges_overlap(first: str, second: str) -> bool:
    first_start, first_end = parse_time_range(first)
    second_start, second_end = parse_time_range(second)
    return first_start < second_end and second_start < first_end


@dataclass(frozen=True)
class TimeBlock:
    start: str
    end: str

    @property
    def time_range(self) -> str:
        return f"{self.start}-{self.end}"

    @property
    def start_minutes(self) -> int:
        return parse_time_to_minutes(self.start)

    @property
    def end_minutes(self) -> int:
        return parse_time_to_minutes(self.end)


@dataclass(frozen=True)
class TimeSettings:
    slot_duration: int = 60
    day_start: str = "09:00"
    day_end: str = "17:00"
    lunch_break_start: str = "12:00"
    lunch_break_end: str = "13:00"


@dataclass(frozen=True)
class AvailabilitySlot:
    """A listed availability entry: a half-open range, or a start-only marker when ``end`` is None."""

    start: int
    end: int | None = None

    @classmethod
    def parse(cls, raw: Any) -> AvailabilitySlot | None:
        if not isinstance(raw, str):
            return None
        start_text, sep, end_text = raw.strip().partition("-")
        start_text = start_text.strip()
        end_text = end_text.strip()
        if not TIME_PATTERN.match(start_text):
            return None
        start = parse_time_to_minutes(start_text)
        if not sep:
            return cls(start=start)
        if not TIME_PATTERN.match(end_text):
            return None
        end = parse_time_to_minutes(end_text)
        if end <= start:
            return None
        return cls(start=start, end=end)

    def matches(self, block: TimeBlock) -> bool:
        if self.end is None:
            return block.start_minutes == self.start
        return self.start < block.end_minutes and block.start_minutes < self.end


@dataclass(frozen=True)
class AvailabilityCalendar:
    """Weekly availability keyed by day.

    A missing calendar (``None`` wherever one is expected) or a calendar with no
    slot on any day means fully available. Once any day lists a slot, a day that
    is absent or empty means unavailable on that day.
    """

    days: Mapping[Day, tuple[AvailabilitySlot, ...]] = field(default_factory=dict)

    @classmethod
    def parse(cls, raw: Mapping[str, Iterable[Any]] | None) -> AvailabilityCalendar | None:
        if raw is None:
            return None
        if not isinstance(raw, Mapping):
            return cls()
        days: dict[Day, tuple[AvailabilitySlot, ...]] = {}
        for day_name, slots in raw.items():
            day = normalize_day(day_name)
            if day is None:
                continue
            if isinstance(slots, str) or not isinstance(slots, Iterable):
                continue
            parsed = [slot for slot in (AvailabilitySlot.parse(item) for item in slots) if slot is not None]
            days[day] = tuple(days.get(day, ())) + tuple(parsed)
        return cls(days=days)

    @property
    def is_unrestricted(self) -> bool:
        return not any(self.days.values())

    def slots_for(self, day: Day) -> tuple[AvailabilitySlot, ...]:
        return tuple(self.days.get(day, ()))

    def allows(self, day: Day | str, block: TimeBlock) -> bool:
        if self.is_unrestricted:
            return True
        normalized = normalize_day(day)
        if normalized is None:
            return False
        slots = self.slots_for(normalized)
        if not slots:
            return False
        return any(slot.matches(block) for slot in slots)


@dataclass(frozen=True)
class Session:
    type: SessionType
    hours: int


@dataclass(frozen=True)
class DepartmentCohort:
    department: str
    student_count: int


@dataclass(frozen=True)
class HardcodedPlacement:
    day: Day
    start_time: str
    end_time: str
    session_type: SessionType
    classroom_id: str | None = None

    @property
    def time_range(self) -> str:
        return f"{self.start_time}-{self.end_time}"


@dataclass(frozen=True)
class Course:
    id: str
    name: str
    code: str
    teacher_id: str | None = None
    faculty: str = ""
    level: str = ""
    category: CourseCategory = CourseCategory.compulsory
    semester: str = ""
    capacity_margin: float = 0.0
    sessions: tuple[Session, ...] = ()
    departments: tuple[DepartmentCohort, ...] = ()
    teacher_availability: AvailabilityCalendar | None = None
    hardcoded: tuple[HardcodedPlacement, ...] = ()

    @property
    def student_count(self) -> int:
        return sum(cohort.student_count for cohort in self.departments)

    @property
    def adjusted_student_count(self) -> int:
        return adjusted_headcount(self.student_count, self.capacity_margin)

    @property
    def required_hours(self) -> int:
        return sum(session.hours for session in self.sessions)

    @property
    def main_department(self) -> str | None:
        return self.departments[0].department if self.departments else None

    @property
    def department_names(self) -> tuple[str, ...]:
        return tuple(cohort.department for cohort in self.departments)

    @property
    def is_compulsory(self) -> bool:
        return self.category == CourseCategory.compulsory


def adjusted_headcount(student_count: int, capacity_margin: float) -> int:
    if capacity_margin <= 0:
        return student_count
    return math.ceil(student_count * (1 - capacity_margin / 100))


@dataclass(frozen=True)
class Classroom:
    id: str
    name: str
    capacity: int
    type: ClassroomType = ClassroomType.theory
    is_active: bool = True
    priority_department: str | None = None
    availability: AvailabilityCalendar | None = None


@dataclass(frozen=True)
class ScheduleItem:
    course_id: str
    classroom_id: str
    day: Day
    time_range: str
    session_type: SessionType
    session_hours: int
    is_hardcoded: bool = False

    def moved(self, day: Day, time_range: str) -> ScheduleItem:
        return replace(self, day=day, time_range=time_range)

    @property
    def start_time(self) -> str:
        return self.time_range.split("-", 1)[0]

    @property
    def end_time(self) -> str:
        return self.time_range.split("-", 1)[1]


@dataclass(frozen=True)
class FailureReason:
    type: FailureType
    message: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SlotAttempt:
    time_range: str
    reason: FailureReason


@dataclass
class DayAttempt:
    day: Day
    attempted_slots: list[SlotAttempt] = field(default_factory=list)


@dataclass
class SessionFailureDiagnostic:
    session_type: SessionType
    session_hours: int
    attempted_days: list[DayAttempt] = field(default_factory=list)
    split_attempted: bool = False
    split_succeeded: bool = False
    combined_attempted: bool = False


@dataclass
class CourseFailureDiagnostic:
    course_id: str
    name: str
    code: str
    total_hours: int
    student_count: int
    faculty: str
    level: str
    semester: str
    teacher_id: str | None
    departments: tuple[str, ...]
    failed_sessions: list[SessionFailureDiagnostic] = field(default_factory=list)
    suggested_slots: list[dict[str, Any]] = field(default_factory=list)
    resolved: bool = False


@dataclass(frozen=True)
class UnscheduledCourse:
    course_id: str
    code: str
    reason: FailureType
    detail: str
    unmet_hours: int


@dataclass(frozen=True)
class ScheduleMetrics:
    avg_capacity_margin: float = 0.0
    max_capacity_waste: float = 0.0
    teacher_load_stddev: float = 0.0


@dataclass(frozen=True)
class ProgressSnapshot:
    stage: str
    progress: int
    message: str
    current_course: str | None = None
    scheduled_count: int = 0
    total_courses: int = 0
    estimated_time_remaining_ms: int | None = None
    warnings: tuple[str, ...] = ()


@dataclass
class SchedulerResult:
    schedule: list[ScheduleItem]
    unscheduled: list[UnscheduledCourse]
    diagnostics: list[CourseFailureDiagnostic]
    metrics: ScheduleMetrics
    warnings: list[str]
    seed: int
    timed_out: bool
    duration_ms: int
    total_courses: int
    index_stats: dict[str, Any] = field(default_factory=dict)
    backtracking_stats: dict[str, Any] = field(default_factory=dict)

    @property
    def scheduled_count(self) -> int:
        return self.total_courses - len(self.unscheduled)

    @property
    def unscheduled_count(self) -> int:
        return len(self.unscheduled)

    @property
    def success_rate(self) -> float:
        if self.total_courses == 0:
            return 1.0
        return self.scheduled_count / self.total_courses

    @property
    def perfect(self) -> bool:
        return not self.unscheduled


@dataclass(frozen=True)
class ProblemCharacteristics:
    course_count: int
    classroom_count: int
    avg_students_per_course: float
    total_students: int
    classroom_utilization: float
    teacher_count: int
    avg_courses_per_teacher: float
    has_lab_sessions: bool
    avg_session_hours: float
