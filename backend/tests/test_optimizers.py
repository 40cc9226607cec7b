from collections import Counter
from dataclasses import replace
import random

import pytest

from app.services.scheduler.config import merge_config
from app.services.scheduler.optimizer import (
    HillClimbingOptimizer,
    SwapValidator,
    calculate_soft_score,
    evaluate_placement_quality,
    teacher_load_stddev,
)
from app.services.scheduler.simulated_annealing import (
    SimulatedAnnealingOptimizer,
    calculate_energy,
    hybrid_optimization,
)
from app.services.scheduler.time_utils import generate_time_blocks
from app.services.scheduler.types import (
    AvailabilityCalendar,
    Classroom,
    Course,
    Day,
    DepartmentCohort,
    ScheduleItem,
    Session,
    SessionType,
    TimeSettings,
)

BLOCKS = generate_time_blocks(TimeSettings())


def _course(course_id: str, students: int = 30, availability: dict | None = None) -> Course:
    return Course(
        id=course_id,
        name=course_id,
        code=course_id.upper(),
        teacher_id=f"t-{course_id}",
        level="L1",
        semester="S1",
        sessions=(Session(SessionType.theory, 1), Session(SessionType.theory, 1)),
        departments=(DepartmentCohort(f"d-{course_id}", students),),
        teacher_availability=AvailabilityCalendar.parse(availability),
    )


def _item(course_id: str, classroom_id: str, day: Day, time_range: str, hardcoded: bool = False) -> ScheduleItem:
    return ScheduleItem(course_id, classroom_id, day, time_range, SessionType.theory, 1, is_hardcoded=hardcoded)


def _bunched_schedule():
    courses = [_course("a"), _course("b")]
    classrooms = [Classroom("r1", "R1", 40), Classroom("r2", "R2", 40)]
    schedule = [
        _item("a", "r1", Day.monday, "09:00-10:00"),
        _item("a", "r1", Day.monday, "10:00-11:00"),
        _item("b", "r2", Day.tuesday, "09:00-10:00"),
        _item("b", "r2", Day.tuesday, "10:00-11:00"),
    ]
    return courses, classrooms, schedule


def _maps(courses, classrooms):
    return {course.id: course for course in courses}, {classroom.id: classroom for classroom in classrooms}


def test_soft_score_rewards_band_and_day_spread():
    courses, classrooms, schedule = _bunched_schedule()
    course_map, classroom_map = _maps(courses, classrooms)
    assert calculate_soft_score(schedule, course_map, classroom_map) == pytest.approx(40.0)

    spread = [schedule[0], schedule[2].moved(Day.monday, "10:00-11:00"), schedule[1].moved(Day.tuesday, "09:00-10:00"), schedule[3]]
    assert calculate_soft_score(spread, course_map, classroom_map) == pytest.approx(46.0)


def test_soft_score_penalizes_wasted_seats_and_imbalance():
    courses = [_course("a", students=5), _course("b")]
    classrooms = [Classroom("hall", "Hall", 100, priority_department="d-a")]
    course_map, classroom_map = _maps(courses, classrooms)
    schedule = [_item("a", "hall", Day.monday, "09:00-10:00")]
    # under threshold (-5), heavy waste (-3), priority room (+5)
    assert calculate_soft_score(schedule, course_map, classroom_map) == pytest.approx(-3.0)

    unbalanced = schedule + [_item("a", "hall", Day.monday, "10:00-11:00"), _item("b", "hall", Day.friday, "09:00-10:00")]
    assert teacher_load_stddev(unbalanced, course_map) == pytest.approx(0.5)


def test_placement_quality_prefers_mid_day_and_new_days():
    course = _course("a")
    room = Classroom("r1", "R1", 40)
    existing = [_item("a", "r1", Day.monday, "09:00-10:00")]
    early_same_day = evaluate_placement_quality(course, room, Day.monday, "09:00-10:00", existing)
    midday_new_day = evaluate_placement_quality(course, room, Day.tuesday, "11:00-12:00", existing)
    assert midday_new_day == pytest.approx(early_same_day + 5)


def test_swap_respects_teacher_availability_and_conflicts():
    restricted = _course("a", availability={"Monday": ["09:00-12:00"]})
    free = _course("b")
    course_map, classroom_map = _maps([restricted, free], [Classroom("r1", "R1", 40), Classroom("r2", "R2", 40)])
    validator = SwapValidator(course_map, classroom_map, BLOCKS)

    schedule = [_item("a", "r1", Day.monday, "09:00-10:00"), _item("b", "r2", Day.tuesday, "09:00-10:00")]
    assert validator.swap(schedule, 0, 1) is None

    schedule = [_item("a", "r1", Day.monday, "09:00-10:00"), _item("b", "r2", Day.monday, "10:00-11:00")]
    swapped = validator.swap(schedule, 0, 1)
    assert swapped is not None
    assert swapped[0].time_range == "10:00-11:00"
    assert swapped[1].time_range == "09:00-10:00"

    pinned = [_item("a", "r1", Day.monday, "09:00-10:00", hardcoded=True), schedule[1]]
    assert validator.swap(pinned, 0, 1) is None
    assert validator.swappable_indices(pinned) == {}


def test_hill_climbing_spreads_bunched_courses():
    courses, classrooms, schedule = _bunched_schedule()
    settings = merge_config({"hill_climbing": {"iterations": 60, "improvement_threshold": 60}})
    outcome = HillClimbingOptimizer(courses, classrooms, BLOCKS, settings=settings, rng=random.Random(3)).optimize(
        schedule
    )

    assert outcome.initial_score == pytest.approx(40.0)
    assert outcome.final_score == pytest.approx(46.0)
    assert outcome.final_score >= outcome.initial_score
    assert Counter((item.course_id, item.classroom_id) for item in outcome.schedule) == Counter(
        (item.course_id, item.classroom_id) for item in schedule
    )


def test_hill_climbing_leaves_hardcoded_items_alone():
    courses, classrooms, schedule = _bunched_schedule()
    schedule = [_item("a", "r1", Day.monday, "09:00-10:00", hardcoded=True), *schedule[1:]]
    outcome = HillClimbingOptimizer(courses, classrooms, BLOCKS, rng=random.Random(5)).optimize(schedule)
    assert outcome.schedule[0] == schedule[0]


def test_energy_terms():
    courses = [_course("fit"), _course("tiny", students=5), _course("crowd", students=60)]
    classrooms = [Classroom("r40", "R40", 40)]
    course_map, classroom_map = _maps(courses, classrooms)
    assert calculate_energy([_item("fit", "r40", Day.monday, "09:00-10:00")], course_map, classroom_map) == -10.0
    assert calculate_energy([_item("tiny", "r40", Day.monday, "09:00-10:00")], course_map, classroom_map) == 15.0
    assert calculate_energy([_item("crowd", "r40", Day.monday, "09:00-10:00")], course_map, classroom_map) == 50.0


def test_margin_admitted_placements_are_not_overcapacity():
    plain = _course("big", students=100)
    margined = replace(plain, capacity_margin=20)
    snug = Classroom("snug", "Snug", 90)
    hall = Classroom("hall", "Hall", 200)
    schedule = [_item("big", "snug", Day.monday, "09:00-10:00")]
    rooms = {"snug": snug}

    assert calculate_energy(schedule, {"big": margined}, rooms) == -10.0
    assert calculate_energy(schedule, {"big": plain}, rooms) == 50.0
    assert calculate_soft_score(schedule, {"big": margined}, rooms) == pytest.approx(10.0)
    assert calculate_soft_score(schedule, {"big": plain}, rooms) == pytest.approx(0.0)

    snug_quality = evaluate_placement_quality(margined, snug, Day.monday, "09:00-10:00", [])
    hall_quality = evaluate_placement_quality(margined, hall, Day.monday, "09:00-10:00", [])
    assert snug_quality > hall_quality > 0


def test_annealing_keeps_best_state_and_placements():
    courses, classrooms, schedule = _bunched_schedule()
    settings = merge_config(
        {
            "annealing": {
                "initial_temperature": 10,
                "cooling_rate": 0.5,
                "min_temperature": 1,
                "iterations_per_temperature": 5,
            }
        }
    )
    outcome = SimulatedAnnealingOptimizer(courses, classrooms, BLOCKS, settings=settings, rng=random.Random(11)).optimize(
        schedule
    )

    assert outcome.rounds == 4
    assert outcome.final_energy <= outcome.initial_energy
    assert len(outcome.schedule) == len(schedule)
    assert sorted(item.course_id for item in outcome.schedule) == ["a", "a", "b", "b"]


def test_hybrid_runs_both_phases():
    courses, classrooms, schedule = _bunched_schedule()
    settings = merge_config(
        {
            "hill_climbing": {"iterations": 20, "improvement_threshold": 20},
            "annealing": {"initial_temperature": 5, "cooling_rate": 0.5, "min_temperature": 1},
        }
    )
    outcome = hybrid_optimization(schedule, courses, classrooms, BLOCKS, settings=settings, rng=random.Random(2))
    course_map, classroom_map = _maps(courses, classrooms)
    assert outcome.initial_energy == calculate_energy(schedule, course_map, classroom_map)
    assert len(outcome.schedule) == 4
