import pytest
from pydantic import ValidationError

from app.core.config import Settings
from app.core.exceptions import SchedulerError
from app.services.scheduler.config import SchedulerSettings, get_config_preset, merge_config
from app.services.scheduler_service import resolve_settings


def test_default_preset_matches_model_defaults():
    assert get_config_preset("default") == SchedulerSettings()


def test_fast_and_quality_presets():
    fast = get_config_preset("fast")
    assert fast.hill_climbing.iterations == 10
    assert fast.performance.timeout_ms == 30_000
    assert not fast.features.enable_backtracking

    quality = get_config_preset("quality")
    assert quality.hill_climbing.iterations == 100
    assert quality.annealing.iterations_per_temperature == 80
    assert quality.features.enable_simulated_annealing
    assert quality.features.enable_backtracking
    # untouched sections keep their defaults
    assert quality.capacity == SchedulerSettings().capacity


def test_unknown_preset_lists_available_names():
    with pytest.raises(SchedulerError) as exc_info:
        get_config_preset("turbo")
    assert exc_info.value.details["available"] == ["default", "fast", "quality"]


def test_merge_config_is_deep():
    merged = merge_config({"hill_climbing": {"iterations": 7}}, get_config_preset("quality"))
    assert merged.hill_climbing.iterations == 7
    assert merged.hill_climbing.improvement_threshold == 15
    assert merged.features.enable_backtracking


def test_merge_config_validates_values():
    with pytest.raises(ValidationError):
        merge_config({"annealing": {"cooling_rate": 1.5}})
    with pytest.raises(ValidationError):
        merge_config({"capacity": {"ideal_min_ratio": 0.95}})


def test_resolve_settings_uses_default_preset_and_wraps_errors():
    assert resolve_settings(None, None, "fast") == get_config_preset("fast")
    assert resolve_settings("quality", {}, "fast") == get_config_preset("quality")

    with pytest.raises(SchedulerError) as exc_info:
        resolve_settings(None, {"performance": {"timeout_ms": 0}}, "default")
    assert exc_info.value.status_code == 400
    assert exc_info.value.details["errors"]


def test_app_settings_split_cors_origins():
    settings = Settings(cors_origins="http://a.test, http://b.test")
    assert settings.cors_origins == ["http://a.test", "http://b.test"]

    settings = Settings(cors_origins='["http://c.test"]')
    assert settings.cors_origins == ["http://c.test"]
