from __future__ import annotations

from collections.abc import Callable
from time import perf_counter


class TimeoutManager:
    """Wall-clock budget for a scheduling run.

    ``clock`` returns seconds and defaults to ``perf_counter``; tests pass a fake
    clock so the deadline trips at a known course.
    """

    def __init__(self, timeout_ms: int | None, *, clock: Callable[[], float] | None = None) -> None:
        self.timeout_ms = timeout_ms
        self.clock = clock or perf_counter
        self.started_at = self.clock()
        self.timed_out = False

    def elapsed_ms(self) -> int:
        return int((self.clock() - self.started_at) * 1000)

    def remaining_ms(self) -> int | None:
        if self.timeout_ms is None:
            return None
        return max(0, self.timeout_ms - self.elapsed_ms())

    def is_expired(self) -> bool:
        if self.timed_out:
            return True
        if self.timeout_ms is None:
            return False
        if self.elapsed_ms() > self.timeout_ms:
            self.timed_out = True
        return self.timed_out

    def estimate_remaining_ms(self, processed: int, total: int) -> int | None:
        if processed <= 0 or total <= processed:
            return None
        elapsed = self.elapsed_ms()
        return int(elapsed / processed * (total - processed))
