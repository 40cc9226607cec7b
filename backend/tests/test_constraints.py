import pytest

from app.services.scheduler.config import CapacitySettings, DifficultyWeights
from app.services.scheduler.constraints import (
    classroom_supports,
    course_difficulty,
    explain_classroom_shortage,
    find_suitable_classroom,
    has_conflict,
    items_conflict,
    rank_classrooms,
    sort_courses_by_difficulty,
    utilization_score,
)
from app.services.scheduler.types import (
    AvailabilityCalendar,
    Classroom,
    ClassroomType,
    Course,
    Day,
    DepartmentCohort,
    ScheduleItem,
    Session,
    SessionType,
    TimeBlock,
)

MONDAY_MORNING = [TimeBlock("09:00", "10:00")]


def _room(room_id: str, capacity: int, room_type: ClassroomType = ClassroomType.theory, **kwargs) -> Classroom:
    return Classroom(id=room_id, name=room_id.upper(), capacity=capacity, type=room_type, **kwargs)


def _rank(classrooms, student_count, **kwargs):
    defaults = {
        "session_type": SessionType.theory,
        "student_count": student_count,
        "capacity_margin": 0.0,
        "day": Day.monday,
        "blocks": MONDAY_MORNING,
    }
    defaults.update(kwargs)
    return rank_classrooms(classrooms, **defaults)


def test_utilization_score_bands():
    assert utilization_score(0.8) == pytest.approx(100.0)
    assert utilization_score(1.2) == -1000.0
    assert utilization_score(0.2) == pytest.approx(10.0)
    assert utilization_score(0.4) == pytest.approx(50.0)
    assert 50 < utilization_score(0.6) < 100
    assert utilization_score(0.95) == pytest.approx(85.0)


def test_session_types_match_classroom_types():
    assert classroom_supports(_room("lab", 30, ClassroomType.lab), SessionType.lab)
    assert not classroom_supports(_room("lab", 30, ClassroomType.lab), SessionType.theory)
    assert classroom_supports(_room("hyb", 30, ClassroomType.hybrid), SessionType.lab)
    assert not classroom_supports(_room("hall", 30), SessionType.lab)
    assert classroom_supports(_room("hall", 30), SessionType.combined)


def test_best_fit_classroom_is_preferred():
    rooms = [_room("big", 100), _room("tight", 50), _room("small", 30)]
    ranked = _rank(rooms, 40)
    assert [room.id for room in ranked] == ["tight", "big"]


def test_priority_department_breaks_ties():
    rooms = [_room("plain", 50), _room("owned", 50, priority_department="CS")]
    assert _rank(rooms, 40, department="CS")[0].id == "owned"
    assert _rank(rooms, 40)[0].id == "plain"


def test_smaller_room_wins_equal_scores():
    rooms = [_room("r60", 60), _room("r55", 55)]
    # both rooms score within a point of each other for ten students
    assert _rank(rooms, 10)[0].id == "r55"


def test_capacity_margin_lowers_required_seats():
    rooms = [_room("r85", 85)]
    assert _rank(rooms, 100) == []
    assert [room.id for room in _rank(rooms, 100, capacity_margin=20)] == ["r85"]


def test_capacity_margin_scores_rooms_against_adjusted_seats():
    rooms = [_room("hall", 200), _room("snug", 90)]
    # 80 seats after the margin fill the snug room inside the ideal band
    assert [room.id for room in _rank(rooms, 100, capacity_margin=20)] == ["snug", "hall"]
    assert [room.id for room in _rank(rooms, 100)] == ["hall"]


def test_occupied_inactive_and_unavailable_rooms_are_skipped():
    closed_monday = AvailabilityCalendar.parse({"Tuesday": ["09:00-17:00"]})
    rooms = [
        _room("busy", 50),
        _room("off", 50, is_active=False),
        _room("closed", 50, availability=closed_monday),
        _room("free", 80),
    ]
    found = find_suitable_classroom(
        rooms,
        session_type=SessionType.theory,
        student_count=40,
        capacity_margin=0,
        day=Day.monday,
        blocks=MONDAY_MORNING,
        occupied={"busy"},
    )
    assert found.id == "free"


def test_classroom_shortage_counts():
    rooms = [_room("lab", 20, ClassroomType.lab), _room("hall", 200), _room("mid", 60)]
    details = explain_classroom_shortage(
        rooms,
        session_type=SessionType.theory,
        student_count=100,
        capacity_margin=0,
        day=Day.monday,
        blocks=MONDAY_MORNING,
        occupied={"hall"},
    )
    assert details["type_compatible"] == 2
    assert details["capacity_sufficient"] == 1
    assert details["unoccupied"] == 0
    assert details["largest_compatible_capacity"] == 200


def _course(course_id: str, students: int, teacher_id: str = "t1", hours: int = 2, department: str = "CS") -> Course:
    return Course(
        id=course_id,
        name=course_id,
        code=course_id.upper(),
        teacher_id=teacher_id,
        level="L1",
        semester="S1",
        sessions=(Session(SessionType.theory, hours),),
        departments=(DepartmentCohort(department, students),),
    )


def test_difficulty_ordering_prefers_larger_and_scarcer_courses():
    rooms = [_room("r50", 50), _room("r200", 200)]
    small = _course("small", 20)
    large = _course("large", 150)
    assert course_difficulty(large, rooms) > course_difficulty(small, rooms)
    assert [course.id for course in sort_courses_by_difficulty([small, large], rooms)] == ["large", "small"]


def test_difficulty_ties_go_to_less_loaded_teacher():
    rooms = [_room("r50", 50)]
    busy = _course("busy", 30, teacher_id="t-busy")
    idle = _course("idle", 30, teacher_id="t-idle")
    ordered = sort_courses_by_difficulty([busy, idle], rooms, DifficultyWeights(), {"t-busy": 6})
    assert [course.id for course in ordered] == ["idle", "busy"]


def test_items_conflict_rules():
    courses = {
        "a": _course("a", 30, teacher_id="t1"),
        "b": _course("b", 30, teacher_id="t2", department="EE"),
        "c": _course("c", 30, teacher_id="t3"),
    }

    def item(course_id, classroom_id, time_range="09:00-11:00", day=Day.monday):
        return ScheduleItem(course_id, classroom_id, day, time_range, SessionType.theory, 2)

    assert items_conflict(item("a", "r1"), item("b", "r1", "10:00-12:00"), courses)
    assert not items_conflict(item("a", "r1"), item("b", "r2"), courses)
    assert items_conflict(item("a", "r1"), item("c", "r2"), courses)
    assert not items_conflict(item("a", "r1"), item("c", "r2", day=Day.tuesday), courses)
    assert not items_conflict(item("a", "r1"), item("b", "r1", "11:00-13:00"), courses)

    schedule = [item("a", "r1"), item("b", "r2", "13:00-15:00")]
    assert has_conflict(schedule, item("c", "r3"), courses)
    assert not has_conflict(schedule, item("c", "r3"), courses, skip_indices={0})


def test_capacity_settings_validate_band():
    with pytest.raises(ValueError):
        CapacitySettings(ideal_min_ratio=0.9, ideal_max_ratio=0.7)
