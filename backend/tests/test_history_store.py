from datetime import datetime, timedelta, timezone

import pytest

from app.models.scheduler_run import SchedulerRun
from app.services.history_store import SqlAlchemyHistoryStore
from app.services.scheduler.learning import RunRecord, learn_optimal_parameters
from app.services.scheduler.types import ProblemCharacteristics

BASE_TIME = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _characteristics(**overrides) -> ProblemCharacteristics:
    values = {
        "course_count": 20,
        "classroom_count": 6,
        "avg_students_per_course": 35.0,
        "total_students": 700,
        "classroom_utilization": 0.7,
        "teacher_count": 8,
        "avg_courses_per_teacher": 2.5,
        "has_lab_sessions": True,
        "avg_session_hours": 2.0,
    }
    values.update(overrides)
    return ProblemCharacteristics(**values)


def _record(minute: int, success_rate: float = 0.95, **overrides) -> RunRecord:
    return RunRecord(
        characteristics=_characteristics(**overrides),
        success_rate=success_rate,
        duration_ms=200 + minute,
        difficulty_weights={"student_count_weight": 2.0, "classroom_scarcity_weight": 6.0, "duration_weight": 1.0},
        hill_climbing_iterations=40,
        metrics={"avg_capacity_margin": 12.5},
        recorded_at=BASE_TIME + timedelta(minutes=minute),
    )


def test_record_persists_row(db_session):
    store = SqlAlchemyHistoryStore(db_session)
    store.record(_record(0))

    row = db_session.query(SchedulerRun).one()
    assert row.signature == _record(0).signature
    assert row.course_count == 20
    assert row.has_lab_sessions is True
    assert row.characteristics["teacher_count"] == 8
    assert row.metrics == {"avg_capacity_margin": 12.5}


def test_record_trims_oldest_rows(db_session):
    store = SqlAlchemyHistoryStore(db_session, max_records=3)
    for minute in range(5):
        store.record(_record(minute))

    durations = sorted(row.duration_ms for row in db_session.query(SchedulerRun).all())
    assert durations == [202, 203, 204]
    assert store.stats()["total_records"] == 3


def test_query_similar_filters_shape(db_session):
    store = SqlAlchemyHistoryStore(db_session)
    store.record(_record(0))
    store.record(_record(1, course_count=22))
    store.record(_record(2, has_lab_sessions=False))
    store.record(_record(3, classroom_utilization=0.2))
    store.record(_record(4, course_count=60))

    similar = store.query_similar(_characteristics())
    assert [record.duration_ms for record in similar] == [200, 201]
    assert similar[0].characteristics == _characteristics()
    assert similar[0].recorded_at.tzinfo is not None


def test_query_signature_matches_exact_shape(db_session):
    store = SqlAlchemyHistoryStore(db_session)
    store.record(_record(0))
    store.record(_record(1, classroom_utilization=0.75))
    store.record(_record(2, course_count=22))

    # 0.7 and 0.75 share the 0.7 utilization bucket
    matches = store.query_signature(_record(0).signature)
    assert [record.duration_ms for record in matches] == [200, 201]
    assert store.query_signature("missing") == []


def test_learning_reads_through_database_store(db_session):
    store = SqlAlchemyHistoryStore(db_session)
    for minute in range(3):
        store.record(_record(minute))

    learned = learn_optimal_parameters(store, _characteristics())
    assert learned is not None
    assert learned.sample_size == 3
    assert learned.difficulty_weights["classroom_scarcity_weight"] == pytest.approx(6.0)
    assert learned.hill_climbing_iterations == 40


def test_stats_and_clear(db_session):
    store = SqlAlchemyHistoryStore(db_session)
    assert store.stats()["total_records"] == 0

    store.record(_record(0, success_rate=0.5))
    store.record(_record(1, success_rate=1.0))
    stats = store.stats()
    assert stats["total_records"] == 2
    assert stats["avg_success_rate"] == pytest.approx(0.75)
    assert stats["best_success_rate"] == pytest.approx(1.0)
    assert stats["avg_duration_ms"] == pytest.approx(200.5)

    store.clear()
    assert store.stats()["total_records"] == 0
