import pytest

from app.core.exceptions import ConfigurationError
from app.db import bootstrap


def _raise_error(message: str):
    raise RuntimeError(message)


def test_runtime_schema_bootstrap_raises_on_validation_failure(monkeypatch):
    monkeypatch.setattr(bootstrap.Base.metadata, "create_all", lambda bind: None)
    monkeypatch.setattr(bootstrap, "missing_schema_items", lambda: _raise_error("inspector unavailable"))

    with pytest.raises(ConfigurationError, match="Runtime schema bootstrap failed") as exc_info:
        bootstrap.ensure_runtime_schema()
    assert exc_info.value.details == {"error": "inspector unavailable"}


def test_runtime_schema_bootstrap_reports_missing_columns(monkeypatch):
    monkeypatch.setattr(bootstrap.Base.metadata, "create_all", lambda bind: None)
    monkeypatch.setattr(
        bootstrap,
        "missing_schema_items",
        lambda: ([], {"scheduler_runs": ["signature", "success_rate"]}),
    )

    with pytest.raises(ConfigurationError) as exc_info:
        bootstrap.ensure_runtime_schema()
    assert "scheduler_runs.signature" in exc_info.value.details["error"]
    assert exc_info.value.status_code == 500


def test_runtime_schema_bootstrap_passes_on_complete_schema(monkeypatch):
    monkeypatch.setattr(bootstrap.Base.metadata, "create_all", lambda bind: None)
    monkeypatch.setattr(bootstrap, "missing_schema_items", lambda: ([], {}))

    bootstrap.ensure_runtime_schema()
