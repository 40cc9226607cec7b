from __future__ import annotations

from dataclasses import asdict
from datetime import timezone
import logging
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.exceptions import HistoryStoreError
from app.models.scheduler_run import SchedulerRun
from app.services.scheduler.learning import (
    DEFAULT_MAX_RECORDS,
    DEFAULT_SIMILARITY_TOLERANCE,
    RunRecord,
    is_similar,
    summarize_records,
)
from app.services.scheduler.types import ProblemCharacteristics

logger = logging.getLogger(__name__)


def _to_record(row: SchedulerRun) -> RunRecord:
    characteristics = ProblemCharacteristics(**row.characteristics)
    recorded_at = row.created_at
    if recorded_at is not None and recorded_at.tzinfo is None:
        recorded_at = recorded_at.replace(tzinfo=timezone.utc)
    kwargs: dict[str, Any] = {}
    if recorded_at is not None:
        kwargs["recorded_at"] = recorded_at
    return RunRecord(
        characteristics=characteristics,
        success_rate=row.success_rate,
        duration_ms=row.duration_ms,
        difficulty_weights=dict(row.difficulty_weights or {}),
        hill_climbing_iterations=row.hill_climbing_iterations,
        metrics=dict(row.metrics or {}),
        **kwargs,
    )


class SqlAlchemyHistoryStore:
    """Run history kept in the ``scheduler_runs`` table, trimmed to ``max_records`` rows."""

    def __init__(self, db: Session, max_records: int = DEFAULT_MAX_RECORDS) -> None:
        self.db = db
        self.max_records = max_records

    def record(self, record: RunRecord) -> None:
        characteristics = record.characteristics
        row = SchedulerRun(
            signature=record.signature,
            course_count=characteristics.course_count,
            classroom_count=characteristics.classroom_count,
            classroom_utilization=characteristics.classroom_utilization,
            has_lab_sessions=characteristics.has_lab_sessions,
            characteristics=asdict(characteristics),
            success_rate=record.success_rate,
            duration_ms=record.duration_ms,
            difficulty_weights=dict(record.difficulty_weights),
            hill_climbing_iterations=record.hill_climbing_iterations,
            metrics=dict(record.metrics),
            created_at=record.recorded_at,
        )
        try:
            self.db.add(row)
            self.db.flush()
            self._trim()
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Failed to record scheduler run | signature=%s", record.signature)
            raise HistoryStoreError("Could not record scheduler run") from exc

    def _trim(self) -> None:
        total = self.db.execute(select(func.count(SchedulerRun.id))).scalar_one()
        overflow = total - self.max_records
        if overflow <= 0:
            return
        stale_ids = (
            self.db.execute(
                select(SchedulerRun.id).order_by(SchedulerRun.created_at.asc(), SchedulerRun.id.asc()).limit(overflow)
            )
            .scalars()
            .all()
        )
        self.db.execute(delete(SchedulerRun).where(SchedulerRun.id.in_(stale_ids)))

    def query_similar(
        self,
        characteristics: ProblemCharacteristics,
        tolerance: float = DEFAULT_SIMILARITY_TOLERANCE,
    ) -> list[RunRecord]:
        try:
            rows = (
                self.db.execute(
                    select(SchedulerRun)
                    .where(SchedulerRun.has_lab_sessions == characteristics.has_lab_sessions)
                    .where(SchedulerRun.classroom_utilization >= characteristics.classroom_utilization - tolerance)
                    .where(SchedulerRun.classroom_utilization <= characteristics.classroom_utilization + tolerance)
                    .order_by(SchedulerRun.created_at.asc())
                )
                .scalars()
                .all()
            )
        except SQLAlchemyError as exc:
            raise HistoryStoreError("Could not query scheduler history") from exc
        records = [_to_record(row) for row in rows]
        return [record for record in records if is_similar(record.characteristics, characteristics, tolerance)]

    def query_signature(self, signature: str) -> list[RunRecord]:
        try:
            rows = (
                self.db.execute(
                    select(SchedulerRun)
                    .where(SchedulerRun.signature == signature)
                    .order_by(SchedulerRun.created_at.asc(), SchedulerRun.id.asc())
                )
                .scalars()
                .all()
            )
        except SQLAlchemyError as exc:
            raise HistoryStoreError("Could not query scheduler history") from exc
        return [_to_record(row) for row in rows]

    def stats(self) -> dict[str, Any]:
        try:
            rows = self.db.execute(select(SchedulerRun)).scalars().all()
        except SQLAlchemyError as exc:
            raise HistoryStoreError("Could not read scheduler history") from exc
        return summarize_records([_to_record(row) for row in rows])

    def clear(self) -> None:
        try:
            self.db.execute(delete(SchedulerRun))
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise HistoryStoreError("Could not clear scheduler history") from exc
