from dataclasses import replace

import pytest

from app.services.scheduler.engine import SchedulerConfig, generate_schedule
from app.services.scheduler.parallel import parallel_schedule, score_result
from app.services.scheduler.progress import ProgressChannel, ProgressReporter
from app.services.scheduler.timeout import TimeoutManager
from app.services.scheduler.types import (
    Classroom,
    Course,
    DepartmentCohort,
    FailureType,
    ProgressSnapshot,
    ScheduleMetrics,
    SchedulerResult,
    Session,
    SessionType,
    TimeSettings,
    UnscheduledCourse,
)


def _config(seed=None) -> SchedulerConfig:
    courses = [
        Course(
            id=f"c{index}",
            name=f"Course {index}",
            code=f"C{index}",
            teacher_id=f"t{index % 2}",
            sessions=(Session(SessionType.theory, 2),),
            departments=(DepartmentCohort(f"d{index % 3}", 25),),
        )
        for index in range(6)
    ]
    return SchedulerConfig(
        time_settings=TimeSettings(),
        courses=courses,
        classrooms=[Classroom("r1", "R1", 30), Classroom("r2", "R2", 40)],
        seed=seed,
    )


def _result(*, unscheduled: int = 0, margin: float = 0.0, stddev: float = 0.0) -> SchedulerResult:
    return SchedulerResult(
        schedule=[],
        unscheduled=[
            UnscheduledCourse(f"u{index}", "U", FailureType.no_classroom, "no room", 1) for index in range(unscheduled)
        ],
        diagnostics=[],
        metrics=ScheduleMetrics(avg_capacity_margin=margin, teacher_load_stddev=stddev),
        warnings=[],
        seed=0,
        timed_out=False,
        duration_ms=0,
        total_courses=4,
    )


def _snapshot(progress: int) -> ProgressSnapshot:
    return ProgressSnapshot(stage="scheduling", progress=progress, message=f"at {progress}")


def test_score_result_criteria():
    full = _result(margin=50, stddev=5)
    assert score_result(full, "success_rate") == pytest.approx(100)
    assert score_result(full, "capacity_usage") == pytest.approx(-50)
    assert score_result(full, "teacher_balance") == pytest.approx(-5)
    assert score_result(full) == pytest.approx(100 + 10 + 15)

    half = _result(unscheduled=2)
    assert score_result(half) == pytest.approx(50 + 20 + 20)
    assert score_result(full) > score_result(half)


def test_parallel_attempts_use_strided_seeds():
    outcome = parallel_schedule(_config(), attempts=3, seed_base=10)

    assert [entry.seed for entry in outcome.attempts] == [10, 1010, 2010]
    assert [entry.result.seed for entry in outcome.attempts] == [10, 1010, 2010]
    assert outcome.best.score == max(entry.score for entry in outcome.attempts)
    assert outcome.best in outcome.attempts


def test_parallel_seed_falls_back_to_config_seed():
    outcome = parallel_schedule(_config(seed=5), attempts=2)
    assert [entry.seed for entry in outcome.attempts] == [5, 1005]

    unseeded = parallel_schedule(_config(), attempts=2)
    assert [entry.seed for entry in unseeded.attempts] == [0, 1000]


def test_parallel_attempts_match_serial_runs():
    config = _config()
    outcome = parallel_schedule(config, attempts=2, seed_base=42)
    for entry in outcome.attempts:
        serial = generate_schedule(replace(config, seed=entry.seed))
        assert entry.result.schedule == serial.schedule


def test_parallel_requires_an_attempt():
    with pytest.raises(ValueError):
        parallel_schedule(_config(), attempts=0)


def test_reporter_emits_on_course_interval():
    seen = []
    clock = iter([0.0, 2.0]).__next__
    reporter = ProgressReporter(seen.append, total_courses=4, course_interval=2, timer=TimeoutManager(None, clock=clock))
    reporter.add_warning("room r9 inactive")

    reporter.course_progress(1, 1, "c1")
    assert seen == []
    reporter.course_progress(2, 2, "c2")

    assert len(seen) == 1
    snapshot = seen[0]
    assert snapshot.progress == 50
    assert snapshot.current_course == "c2"
    assert snapshot.estimated_time_remaining_ms == 2000
    assert snapshot.warnings == ("room r9 inactive",)
    assert reporter.emitted == 1


def test_reporter_without_callback_still_counts():
    reporter = ProgressReporter(total_courses=1)
    reporter.stage("initializing", 0, "Starting")
    assert reporter.emitted == 1


def test_channel_drops_oldest_when_full():
    channel = ProgressChannel(maxsize=2)
    for progress in (10, 20, 30):
        channel.publish(_snapshot(progress))

    assert channel.dropped == 1
    assert channel.snapshots.get_nowait().progress == 20
    assert channel.snapshots.get_nowait().progress == 30


def test_channel_streams_snapshots_then_result():
    def job(publish):
        for progress in (0, 50, 100):
            publish(_snapshot(progress))
        return "done"

    channel = ProgressChannel(maxsize=16, poll_interval=0.01).start(job)
    received = [snapshot.progress for snapshot in channel]

    assert received == [0, 50, 100]
    assert channel.result(timeout=5) == "done"


def test_channel_propagates_job_errors():
    def job(publish):
        publish(_snapshot(0))
        raise RuntimeError("boom")

    channel = ProgressChannel(poll_interval=0.01).start(job)
    assert [snapshot.progress for snapshot in channel] == [0]
    with pytest.raises(RuntimeError, match="boom"):
        channel.result(timeout=5)
