import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, Integer, JSON, String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from app.db.base import Base


class SchedulerRun(Base):
    __tablename__ = "scheduler_runs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    signature: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    course_count: Mapped[int] = mapped_column(Integer, nullable=False)
    classroom_count: Mapped[int] = mapped_column(Integer, nullable=False)
    classroom_utilization: Mapped[float] = mapped_column(Float, nullable=False)
    has_lab_sessions: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    characteristics: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    success_rate: Mapped[float] = mapped_column(Float, nullable=False)
    duration_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    difficulty_weights: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    hill_climbing_iterations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    metrics: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), index=True)
