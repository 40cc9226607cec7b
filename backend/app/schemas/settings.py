from __future__ import annotations

import re

from pydantic import BaseModel, Field, field_validator, model_validator

DAY_VALUES = {
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
}

TIME_PATTERN: re.Pattern[str] = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")
DEFAULT_LUNCH_START = "12:00"
DEFAULT_LUNCH_END = "13:00"


def parse_time_to_minutes(value: str) -> int:
    if not TIME_PATTERN.match(value):
        raise ValueError("Time must be in HH:MM 24-hour format")
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


class TimeSettingsPayload(BaseModel):
    slot_duration: int = Field(default=60, ge=5, le=240)
    day_start: str = "09:00"
    day_end: str = "17:00"
    lunch_break_start: str = DEFAULT_LUNCH_START
    lunch_break_end: str = DEFAULT_LUNCH_END

    @field_validator("day_start", "day_end", "lunch_break_start", "lunch_break_end")
    @classmethod
    def validate_time(cls, value: str) -> str:
        if not TIME_PATTERN.match(value):
            raise ValueError("Time must be in HH:MM 24-hour format")
        return value

    @model_validator(mode="after")
    def validate_time_order(self) -> "TimeSettingsPayload":
        start = parse_time_to_minutes(self.day_start)
        end = parse_time_to_minutes(self.day_end)
        if end <= start:
            raise ValueError("day_end must be after day_start")
        lunch_start = parse_time_to_minutes(self.lunch_break_start)
        lunch_end = parse_time_to_minutes(self.lunch_break_end)
        if lunch_end < lunch_start:
            raise ValueError("lunch_break_end must not be before lunch_break_start")
        return self
