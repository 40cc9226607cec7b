from __future__ import annotations

from collections.abc import Callable, Iterator
from concurrent.futures import Future
import logging
import math
import queue
import threading
from typing import Generic, TypeVar

from app.services.scheduler.timeout import TimeoutManager
from app.services.scheduler.types import ProgressSnapshot

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressSnapshot], None]
T = TypeVar("T")

STAGE_INITIALIZING = "initializing"
STAGE_HARDCODED = "hardcoded"
STAGE_SCHEDULING = "scheduling"
STAGE_OPTIMIZING = "optimizing"
STAGE_COMPLETE = "complete"

SCHEDULING_PROGRESS_START = 20
SCHEDULING_PROGRESS_SPAN = 60


class ProgressReporter:
    """Builds snapshots for one run and hands them to an optional callback."""

    def __init__(
        self,
        callback: ProgressCallback | None = None,
        *,
        total_courses: int = 0,
        course_interval: int = 5,
        timer: TimeoutManager | None = None,
    ) -> None:
        self.callback = callback
        self.total_courses = total_courses
        self.course_interval = max(1, course_interval)
        self.timer = timer
        self.warnings: list[str] = []
        self.emitted = 0

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    def stage(
        self,
        stage: str,
        progress: int,
        message: str,
        *,
        current_course: str | None = None,
        scheduled_count: int = 0,
        estimated_time_remaining_ms: int | None = None,
    ) -> None:
        self._emit(
            ProgressSnapshot(
                stage=stage,
                progress=progress,
                message=message,
                current_course=current_course,
                scheduled_count=scheduled_count,
                total_courses=self.total_courses,
                estimated_time_remaining_ms=estimated_time_remaining_ms,
                warnings=tuple(self.warnings),
            )
        )

    def course_progress(self, processed: int, scheduled_count: int, current_course: str | None) -> None:
        if processed % self.course_interval != 0:
            return
        total = max(1, self.total_courses)
        progress = SCHEDULING_PROGRESS_START + math.floor(processed / total * SCHEDULING_PROGRESS_SPAN)
        remaining = self.timer.estimate_remaining_ms(processed, self.total_courses) if self.timer else None
        self.stage(
            STAGE_SCHEDULING,
            progress,
            f"Scheduled {processed}/{self.total_courses} courses",
            current_course=current_course,
            scheduled_count=scheduled_count,
            estimated_time_remaining_ms=remaining,
        )

    def _emit(self, snapshot: ProgressSnapshot) -> None:
        self.emitted += 1
        if self.callback is not None:
            self.callback(snapshot)


class ProgressChannel(Generic[T]):
    """Runs a scheduling job on a worker thread.

    Snapshots go through a bounded queue that drops the oldest entry when the
    consumer falls behind; the final result is delivered on a separate future.
    """

    def __init__(self, maxsize: int = 64, poll_interval: float = 0.05) -> None:
        self.snapshots: queue.Queue[ProgressSnapshot] = queue.Queue(maxsize=maxsize)
        self.result_future: Future[T] = Future()
        self.poll_interval = poll_interval
        self.dropped = 0
        self._thread: threading.Thread | None = None

    def publish(self, snapshot: ProgressSnapshot) -> None:
        while True:
            try:
                self.snapshots.put_nowait(snapshot)
                return
            except queue.Full:
                try:
                    self.snapshots.get_nowait()
                    self.dropped += 1
                except queue.Empty:
                    pass

    def start(self, job: Callable[[ProgressCallback], T]) -> ProgressChannel[T]:
        def runner() -> None:
            try:
                self.result_future.set_result(job(self.publish))
            except Exception as exc:
                logger.exception("Scheduling job failed on worker thread")
                self.result_future.set_exception(exc)

        self._thread = threading.Thread(target=runner, name="scheduler-progress", daemon=True)
        self._thread.start()
        return self

    def __iter__(self) -> Iterator[ProgressSnapshot]:
        while True:
            try:
                yield self.snapshots.get(timeout=self.poll_interval)
            except queue.Empty:
                if self.result_future.done() and self.snapshots.empty():
                    return

    def result(self, timeout: float | None = None) -> T:
        return self.result_future.result(timeout=timeout)
