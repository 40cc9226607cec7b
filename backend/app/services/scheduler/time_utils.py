from __future__ import annotations

import math
from collections.abc import Sequence

from app.core.exceptions import SchedulerError
from app.schemas.settings import TIME_PATTERN, parse_time_to_minutes
from app.services.scheduler.types import TimeBlock, TimeSettings, parse_time_range


def minutes_to_time(value: int) -> str:
    hours = value // 60
    minutes = value % 60
    return f"{hours:02d}:{minutes:02d}"


def generate_time_blocks(settings: TimeSettings) -> list[TimeBlock]:
    """Build the ordered daily grid of ``slot_duration`` blocks.

    Blocks never cross ``day_end`` and any block touching the lunch window is
    left out, so the block after lunch starts where the skipped one would have.
    """
    for label in ("day_start", "day_end", "lunch_break_start", "lunch_break_end"):
        value = getattr(settings, label)
        if not isinstance(value, str) or not TIME_PATTERN.match(value):
            raise SchedulerError(f"Invalid {label} value", details={label: value})
    if settings.slot_duration <= 0:
        raise SchedulerError("Slot duration must be positive", details={"slot_duration": settings.slot_duration})

    start = parse_time_to_minutes(settings.day_start)
    end = parse_time_to_minutes(settings.day_end)
    lunch_start = parse_time_to_minutes(settings.lunch_break_start)
    lunch_end = parse_time_to_minutes(settings.lunch_break_end)

    blocks: list[TimeBlock] = []
    current = start
    while current < end:
        block_end = current + settings.slot_duration
        if block_end > end:
            break
        if not (current < lunch_end and block_end > lunch_start):
            blocks.append(TimeBlock(start=minutes_to_time(current), end=minutes_to_time(block_end)))
        current = block_end
    return blocks


def calculate_duration(start_time: str, end_time: str) -> int:
    """Whole hours between two clock times, rounded up."""
    minutes = parse_time_to_minutes(end_time) - parse_time_to_minutes(start_time)
    return max(0, math.ceil(minutes / 60))


def block_count_for_range(time_range: str, slot_duration: int) -> int:
    start, end = parse_time_range(time_range)
    return max(1, math.ceil((end - start) / slot_duration))


def blocks_overlapping(blocks: Sequence[TimeBlock], time_range: str) -> list[TimeBlock]:
    start, end = parse_time_range(time_range)
    return [block for block in blocks if block.start_minutes < end and start < block.end_minutes]


def is_contiguous_run(blocks: Sequence[TimeBlock]) -> bool:
    return all(blocks[index].end == blocks[index + 1].start for index in range(len(blocks) - 1))


def contiguous_run(blocks: Sequence[TimeBlock], start_index: int, length: int) -> list[TimeBlock] | None:
    """Return ``length`` structurally adjacent blocks starting at ``start_index``, or None."""
    if length <= 0 or start_index < 0 or start_index + length > len(blocks):
        return None
    run = list(blocks[start_index : start_index + length])
    if not is_contiguous_run(run):
        return None
    return run


def run_time_range(run: Sequence[TimeBlock]) -> str:
    return f"{run[0].start}-{run[-1].end}"
