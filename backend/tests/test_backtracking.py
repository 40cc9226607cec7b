from dataclasses import replace

from app.services.scheduler.backtracking import BacktrackingManager, DomainTracker, PlacementSuggester
from app.services.scheduler.config import merge_config
from app.services.scheduler.conflict_index import ConflictIndex
from app.services.scheduler.engine import SchedulerConfig, generate_schedule
from app.services.scheduler.time_utils import generate_time_blocks
from app.services.scheduler.types import (
    AvailabilityCalendar,
    Classroom,
    Course,
    Day,
    DepartmentCohort,
    FailureType,
    ScheduleItem,
    Session,
    SessionType,
    TimeSettings,
)

BLOCKS = generate_time_blocks(TimeSettings())
TWO_BLOCK_DAY = TimeSettings(day_start="09:00", day_end="11:00")


def _course(course_id: str, teacher_id: str, students: int = 30, availability: dict | None = None) -> Course:
    return Course(
        id=course_id,
        name=course_id,
        code=course_id.upper(),
        teacher_id=teacher_id,
        level="L1",
        semester="S1",
        sessions=(Session(SessionType.theory, 1),),
        departments=(DepartmentCohort(f"d-{course_id}", students),),
        teacher_availability=AvailabilityCalendar.parse(availability),
    )


def _item(course_id: str, time_range: str = "09:00-10:00", day: Day = Day.monday) -> ScheduleItem:
    return ScheduleItem(course_id, "r1", day, time_range, SessionType.theory, 1)


def test_manager_stack_writes_through_to_index():
    courses = [_course("a", "t1"), _course("b", "t2")]
    manager = BacktrackingManager(courses, BLOCKS)
    first = _item("a")
    second = _item("b", "10:00-11:00")
    manager.push_placement(first)
    manager.push_placement(second)
    assert manager.index.has_classroom_conflict("r1", Day.monday, "10:00-11:00")

    assert manager.backtrack() == [second]
    assert manager.backtrack_count == 1
    assert not manager.index.has_classroom_conflict("r1", Day.monday, "10:00-11:00")
    assert manager.current_schedule() == [first]

    manager.remove_placement(first)
    assert manager.current_schedule() == []
    assert manager.index.stats()["classroom_entries"] == 0
    assert manager.backtrack() == []
    assert manager.backtrack_count == 1


def test_manager_gives_up_after_attempt_ceiling():
    manager = BacktrackingManager([_course("a", "t1")], BLOCKS, max_placement_attempts=3)
    manager.record_attempt("a", Day.monday, "09:00-10:00", False, FailureType.teacher_conflict)
    manager.record_attempt("a", Day.monday, "10:00-11:00", False, FailureType.no_classroom)
    assert not manager.should_give_up("a")
    manager.record_attempt("a", Day.tuesday, "10:00-11:00", False, FailureType.no_classroom)
    assert manager.should_give_up("a")
    assert manager.should_give_up("a")
    assert manager.abandoned == ["a"]

    analysis = manager.analyze_failure("a")
    assert analysis["failed_attempts"] == 3
    assert analysis["failures_by_type"] == {"teacher_conflict": 1, "no_classroom": 2}
    assert analysis["most_problematic_day"] == "Monday"
    assert analysis["most_problematic_time"] == "10:00-11:00"
    assert manager.stats()["abandoned_courses"] == ["a"]


def test_reset_budget_grants_fresh_attempts():
    manager = BacktrackingManager([_course("a", "t1")], BLOCKS, max_placement_attempts=2)
    for time_range in ("09:00-10:00", "10:00-11:00"):
        manager.record_attempt("a", Day.monday, time_range, False, FailureType.department_conflict)
    assert manager.should_give_up("a")

    manager.reset_budget("a")
    assert manager.abandoned == []
    assert manager.remaining_attempts("a") == 2
    assert not manager.should_give_up("a")
    manager.record_attempt("a", Day.tuesday, "09:00-10:00", False, FailureType.teacher_conflict)
    manager.record_attempt("a", Day.tuesday, "10:00-11:00", False, FailureType.teacher_conflict)
    assert manager.should_give_up("a")
    # history is kept across the reset
    assert manager.analyze_failure("a")["failed_attempts"] == 4


def test_domain_tracker_prunes_options():
    domains = DomainTracker()
    assert domains.has_slot("untracked", Day.monday, "09:00-10:00")

    domains.initialize_domain("a", [(Day.monday, "09:00-10:00"), (Day.monday, "10:00-11:00")], ["r1", "r2"])
    assert domains.domain_size("a") == 4
    domains.remove_slot_option("a", Day.monday, "09:00-10:00")
    domains.remove_classroom_option("a", "r2")
    assert not domains.has_slot("a", Day.monday, "09:00-10:00")
    assert domains.available_slots("a") == [(Day.monday, "10:00-11:00")]
    assert domains.available_classrooms("a") == ["r1"]
    assert domains.has_options("a")

    domains.remove_classroom_option("a", "r1")
    assert not domains.has_options("a")


def test_suggester_ranks_free_slots_by_pressure():
    courses = [_course("a", "t1"), _course("b", "t2"), _course("c", "t3")]
    index = ConflictIndex(courses, BLOCKS)
    index.add_schedule_item(_item("a"))
    index.add_schedule_item(ScheduleItem("b", "r2", Day.monday, "10:00-11:00", SessionType.theory, 1))
    domains = DomainTracker()
    domains.initialize_domain(
        "c",
        [(Day.monday, "10:00-11:00"), (Day.tuesday, "09:00-10:00")],
        ["r1", "r2", "r3"],
    )
    suggester = PlacementSuggester(index, domains)

    # department cohorts differ, so Monday 10:00 is free but busier
    slots = suggester.suggest_time_slots("c")
    assert [(entry["day"], entry["score"]) for entry in slots] == [("Tuesday", 100), ("Monday", 90)]

    rooms = suggester.suggest_classrooms("c", Day.monday, "09:00-10:00")
    assert [(entry["classroom_id"], entry["score"]) for entry in rooms] == [("r3", 100), ("r2", 99)]


def _retry_scenario(seed: int, backtracking: bool):
    # X is harder and may take Y's only slot; X can also use the second block
    x = _course("x", "tx", students=40, availability={"Monday": ["09:00", "10:00"]})
    y = _course("y", "ty", students=10, availability={"Monday": ["09:00"]})
    settings = merge_config({"features": {"enable_backtracking": backtracking}})
    return generate_schedule(
        SchedulerConfig(
            time_settings=TWO_BLOCK_DAY,
            courses=[x, y],
            classrooms=[Classroom("r1", "R1", 50)],
            settings=settings,
            seed=seed,
        )
    )


def test_backtracking_recovers_blocked_course():
    backtracks = 0
    for seed in range(20):
        result = _retry_scenario(seed, backtracking=True)
        assert result.perfect, seed
        placements = {item.course_id: item.time_range for item in result.schedule}
        assert placements == {"y": "09:00-10:00", "x": "10:00-11:00"}
        backtracks += result.backtracking_stats["backtracks"]
    assert backtracks > 0


def test_without_backtracking_blocked_course_stays_unscheduled():
    failures = [_retry_scenario(seed, backtracking=False) for seed in range(20)]
    blocked = [result for result in failures if not result.perfect]
    assert blocked
    for result in blocked:
        assert [entry.course_id for entry in result.unscheduled] == ["y"]
        assert result.unscheduled[0].reason == FailureType.no_classroom
        assert result.backtracking_stats == {}


def test_backtracking_restores_slots_pruned_by_cohort_clash():
    # same compulsory cohort, so a clash at 09:00 prunes that slot from Y's domain
    cohort = (DepartmentCohort("cs", 30),)
    x = replace(_course("x", "tx", availability={"Monday": ["09:00", "10:00"]}), departments=cohort)
    y = replace(_course("y", "ty", availability={"Monday": ["09:00"]}), departments=cohort)
    settings = merge_config({"features": {"enable_backtracking": True}})
    for seed in range(20):
        result = generate_schedule(
            SchedulerConfig(
                time_settings=TWO_BLOCK_DAY,
                courses=[x, y],
                classrooms=[Classroom("r1", "R1", 50), Classroom("r2", "R2", 50)],
                settings=settings,
                seed=seed,
            )
        )
        assert result.perfect, seed
        placements = {item.course_id: item.time_range for item in result.schedule}
        assert placements == {"y": "09:00-10:00", "x": "10:00-11:00"}
        assert result.backtracking_stats["abandoned_courses"] == []
