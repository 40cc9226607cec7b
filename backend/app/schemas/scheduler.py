from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from app.schemas.settings import TIME_PATTERN, TimeSettingsPayload, parse_time_to_minutes

SessionKind = Literal["theory", "lab", "combined"]
ClassroomKind = Literal["theory", "lab", "hybrid"]
CourseCategoryKind = Literal["compulsory", "elective"]
ConfigPreset = Literal["default", "fast", "quality"]
SelectionCriterion = Literal["combined", "success_rate", "capacity_usage", "teacher_balance"]
OptimizationMethod = Literal["hill_climbing", "simulated_annealing", "hybrid"]

DAY_ALIASES = {
    "mon": "Monday",
    "tue": "Tuesday",
    "tues": "Tuesday",
    "wed": "Wednesday",
    "thu": "Thursday",
    "thur": "Thursday",
    "thurs": "Thursday",
    "fri": "Friday",
}
WEEKDAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday")


def normalize_weekday(value: str) -> str:
    key = value.strip().lower()
    for day in WEEKDAYS:
        if day.lower() == key:
            return day
    if key in DAY_ALIASES:
        return DAY_ALIASES[key]
    raise ValueError("Invalid day value")


class DepartmentCohortPayload(BaseModel):
    department: str = Field(min_length=1, max_length=200)
    student_count: int = Field(default=0, ge=0, le=100_000)


class SessionPayload(BaseModel):
    type: SessionKind = "theory"
    hours: int = Field(ge=1, le=12)


class HardcodedPlacementPayload(BaseModel):
    day: str
    start_time: str
    end_time: str
    session_type: SessionKind = "theory"
    classroom_id: str | None = Field(default=None, min_length=1, max_length=64)

    @field_validator("day")
    @classmethod
    def validate_day(cls, value: str) -> str:
        return normalize_weekday(value)

    @field_validator("start_time", "end_time")
    @classmethod
    def validate_time(cls, value: str) -> str:
        if not TIME_PATTERN.match(value):
            raise ValueError("Time must be in HH:MM 24-hour format")
        return value

    @model_validator(mode="after")
    def validate_time_order(self) -> "HardcodedPlacementPayload":
        if parse_time_to_minutes(self.end_time) <= parse_time_to_minutes(self.start_time):
            raise ValueError("End time must be after start time")
        return self


class CoursePayload(BaseModel):
    id: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=200)
    code: str = Field(min_length=1, max_length=50)
    teacher_id: str | None = Field(default=None, min_length=1, max_length=64)
    faculty: str = ""
    level: str = ""
    category: CourseCategoryKind = "compulsory"
    semester: str = ""
    capacity_margin: float = Field(default=0.0, ge=0.0, le=100.0)
    sessions: list[SessionPayload] = Field(default_factory=list)
    departments: list[DepartmentCohortPayload] = Field(default_factory=list)
    teacher_availability: dict[str, Any] | None = None
    hardcoded: list[HardcodedPlacementPayload] = Field(default_factory=list)


class ClassroomPayload(BaseModel):
    id: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=100)
    capacity: int = Field(ge=0, le=100_000)
    type: ClassroomKind = "theory"
    is_active: bool = True
    priority_department: str | None = None
    availability: dict[str, Any] | None = None


class CatalogPayload(BaseModel):
    time_settings: TimeSettingsPayload | None = None
    courses: list[CoursePayload] = Field(default_factory=list)
    classrooms: list[ClassroomPayload] = Field(default_factory=list)
    preset: ConfigPreset | None = None
    overrides: dict[str, Any] | None = None

    @model_validator(mode="after")
    def validate_unique_ids(self) -> "CatalogPayload":
        course_ids = [course.id for course in self.courses]
        if len(course_ids) != len(set(course_ids)):
            raise ValueError("Course ids must be unique")
        classroom_ids = [classroom.id for classroom in self.classrooms]
        if len(classroom_ids) != len(set(classroom_ids)):
            raise ValueError("Classroom ids must be unique")
        return self


class GenerateScheduleRequest(CatalogPayload):
    seed: int | None = Field(default=None, ge=0, le=2_000_000_000)
    timeout_ms: int | None = Field(default=None, ge=1, le=3_600_000)
    use_adaptive: bool = False
    parallel_attempts: int = Field(default=1, ge=1, le=32)
    select_best_by: SelectionCriterion = "combined"
    record_history: bool = True


class ScheduleItemPayload(BaseModel):
    course_id: str
    classroom_id: str
    day: str
    time_range: str
    session_type: SessionKind
    session_hours: int = Field(ge=1)
    is_hardcoded: bool = False

    @field_validator("day")
    @classmethod
    def validate_day(cls, value: str) -> str:
        return normalize_weekday(value)

    @field_validator("time_range")
    @classmethod
    def validate_time_range(cls, value: str) -> str:
        start, sep, end = value.partition("-")
        if not sep or not TIME_PATTERN.match(start) or not TIME_PATTERN.match(end):
            raise ValueError("Time range must look like HH:MM-HH:MM")
        if parse_time_to_minutes(end) <= parse_time_to_minutes(start):
            raise ValueError("Time range must end after it starts")
        return value


class OptimizeScheduleRequest(CatalogPayload):
    schedule: list[ScheduleItemPayload]
    method: OptimizationMethod = "hybrid"
    seed: int | None = Field(default=None, ge=0, le=2_000_000_000)

    @model_validator(mode="after")
    def validate_references(self) -> "OptimizeScheduleRequest":
        course_ids = {course.id for course in self.courses}
        classroom_ids = {classroom.id for classroom in self.classrooms}
        for item in self.schedule:
            if item.course_id not in course_ids:
                raise ValueError(f"Schedule references unknown course '{item.course_id}'")
            if item.classroom_id not in classroom_ids:
                raise ValueError(f"Schedule references unknown classroom '{item.classroom_id}'")
        return self


class ScheduleItemOut(BaseModel):
    course_id: str
    classroom_id: str
    day: str
    time_range: str
    session_type: SessionKind
    session_hours: int
    is_hardcoded: bool


class UnscheduledCourseOut(BaseModel):
    course_id: str
    code: str
    reason: str
    detail: str
    unmet_hours: int


class FailureReasonOut(BaseModel):
    type: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class SlotAttemptOut(BaseModel):
    time_range: str
    reason: FailureReasonOut


class DayAttemptOut(BaseModel):
    day: str
    attempted_slots: list[SlotAttemptOut] = Field(default_factory=list)


class SessionDiagnosticOut(BaseModel):
    session_type: SessionKind
    session_hours: int
    attempted_days: list[DayAttemptOut] = Field(default_factory=list)
    split_attempted: bool
    split_succeeded: bool
    combined_attempted: bool


class CourseDiagnosticOut(BaseModel):
    course_id: str
    name: str
    code: str
    total_hours: int
    student_count: int
    faculty: str
    level: str
    semester: str
    teacher_id: str | None
    departments: list[str]
    failed_sessions: list[SessionDiagnosticOut] = Field(default_factory=list)
    suggested_slots: list[dict[str, Any]] = Field(default_factory=list)
    resolved: bool


class ScheduleMetricsOut(BaseModel):
    avg_capacity_margin: float
    max_capacity_waste: float
    teacher_load_stddev: float


class AttemptSummaryOut(BaseModel):
    attempt: int
    seed: int
    score: float
    success_rate: float
    unscheduled_count: int


class AdaptiveSummaryOut(BaseModel):
    timeout_ms: int
    learned_sample_size: int = 0
    characteristics: dict[str, Any] = Field(default_factory=dict)


class GenerateScheduleResponse(BaseModel):
    success: bool
    schedule: list[ScheduleItemOut]
    unscheduled: list[UnscheduledCourseOut]
    diagnostics: list[CourseDiagnosticOut]
    metrics: ScheduleMetricsOut
    warnings: list[str]
    seed: int
    timed_out: bool
    duration_ms: int
    total_courses: int
    scheduled_count: int
    success_rate: float
    index_stats: dict[str, Any] = Field(default_factory=dict)
    backtracking_stats: dict[str, Any] = Field(default_factory=dict)
    attempts: list[AttemptSummaryOut] = Field(default_factory=list)
    adaptive: AdaptiveSummaryOut | None = None


class OptimizeScheduleResponse(BaseModel):
    method: OptimizationMethod
    schedule: list[ScheduleItemOut]
    initial_score: float
    final_score: float
    score_kind: Literal["soft_score", "energy"]
    metrics: ScheduleMetricsOut
    runtime_ms: int


class TimeBlockOut(BaseModel):
    start: str
    end: str
    time_range: str


class TimeBlocksResponse(BaseModel):
    blocks: list[TimeBlockOut]


class ProgressEventOut(BaseModel):
    stage: str
    progress: int
    message: str
    current_course: str | None = None
    scheduled_count: int = 0
    total_courses: int = 0
    estimated_time_remaining_ms: int | None = None
    warnings: list[str] = Field(default_factory=list)


class HistoryStatsOut(BaseModel):
    backend: str
    total_records: int
    avg_success_rate: float
    best_success_rate: float
    avg_duration_ms: float
