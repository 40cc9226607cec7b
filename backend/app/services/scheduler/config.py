from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from app.core.exceptions import SchedulerError


class DifficultyWeights(BaseModel):
    student_count_weight: float = Field(default=2.0, ge=0.0, le=100.0)
    classroom_scarcity_weight: float = Field(default=5.0, ge=0.0, le=100.0)
    duration_weight: float = Field(default=1.0, ge=0.0, le=100.0)


class CapacitySettings(BaseModel):
    ideal_min_ratio: float = Field(default=0.7, ge=0.0, le=1.0)
    ideal_max_ratio: float = Field(default=0.9, ge=0.0, le=1.0)
    penalty_threshold: float = Field(default=0.4, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def validate_band(self) -> "CapacitySettings":
        if self.ideal_min_ratio > self.ideal_max_ratio:
            raise ValueError("ideal_min_ratio cannot exceed ideal_max_ratio")
        if self.penalty_threshold > self.ideal_min_ratio:
            raise ValueError("penalty_threshold cannot exceed ideal_min_ratio")
        return self


class HillClimbingSettings(BaseModel):
    iterations: int = Field(default=30, ge=0, le=10_000)
    improvement_threshold: int = Field(default=5, ge=1, le=10_000)


class AnnealingSettings(BaseModel):
    initial_temperature: float = Field(default=100.0, gt=0.0, le=100_000.0)
    cooling_rate: float = Field(default=0.95, gt=0.0, lt=1.0)
    min_temperature: float = Field(default=0.1, gt=0.0)
    iterations_per_temperature: int = Field(default=50, ge=1, le=10_000)

    @model_validator(mode="after")
    def validate_temperatures(self) -> "AnnealingSettings":
        if self.min_temperature >= self.initial_temperature:
            raise ValueError("min_temperature must be below initial_temperature")
        return self


class PerformanceSettings(BaseModel):
    max_placement_attempts: int = Field(default=100, ge=1, le=100_000)
    timeout_ms: int = Field(default=60_000, ge=1, le=3_600_000)
    enable_caching: bool = True
    progress_course_interval: int = Field(default=5, ge=1, le=1000)


class FeatureFlags(BaseModel):
    enable_session_splitting: bool = True
    enable_combined_theory_lab: bool = True
    enable_backtracking: bool = False
    enable_hill_climbing: bool = True
    enable_simulated_annealing: bool = False


class SchedulerSettings(BaseModel):
    difficulty: DifficultyWeights = Field(default_factory=DifficultyWeights)
    capacity: CapacitySettings = Field(default_factory=CapacitySettings)
    hill_climbing: HillClimbingSettings = Field(default_factory=HillClimbingSettings)
    annealing: AnnealingSettings = Field(default_factory=AnnealingSettings)
    performance: PerformanceSettings = Field(default_factory=PerformanceSettings)
    features: FeatureFlags = Field(default_factory=FeatureFlags)


ConfigPresetName = Literal["default", "fast", "quality"]

CONFIG_PRESETS: dict[str, dict[str, Any]] = {
    "default": {},
    "fast": {
        "hill_climbing": {"iterations": 10, "improvement_threshold": 3},
        "performance": {"max_placement_attempts": 50, "timeout_ms": 30_000},
        "features": {"enable_simulated_annealing": False, "enable_backtracking": False},
    },
    "quality": {
        "hill_climbing": {"iterations": 100, "improvement_threshold": 15},
        "annealing": {"iterations_per_temperature": 80},
        "performance": {"max_placement_attempts": 200, "timeout_ms": 120_000},
        "features": {"enable_simulated_annealing": True, "enable_backtracking": True},
    },
}


def _deep_merge(base: dict[str, Any], overrides: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            merged[key] = _deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def merge_config(
    overrides: Mapping[str, Any] | None,
    base: SchedulerSettings | None = None,
) -> SchedulerSettings:
    """Overlay a partial, nested settings mapping on ``base`` (defaults when omitted)."""
    source = (base or SchedulerSettings()).model_dump()
    if not overrides:
        return SchedulerSettings.model_validate(source)
    return SchedulerSettings.model_validate(_deep_merge(source, overrides))


def get_config_preset(name: str) -> SchedulerSettings:
    preset = CONFIG_PRESETS.get(name)
    if preset is None:
        raise SchedulerError(
            f"Unknown scheduler preset '{name}'",
            details={"available": sorted(CONFIG_PRESETS)},
        )
    return merge_config(preset)
