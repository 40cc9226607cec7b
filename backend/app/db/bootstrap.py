from __future__ import annotations

import logging

from sqlalchemy import inspect

import app.models  # noqa: F401
from app.core.exceptions import ConfigurationError
from app.db.base import Base
from app.db.session import engine

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS: dict[str, set[str]] = {
    "scheduler_runs": {
        "id",
        "signature",
        "course_count",
        "classroom_count",
        "classroom_utilization",
        "has_lab_sessions",
        "success_rate",
        "duration_ms",
    },
}


def missing_schema_items() -> tuple[list[str], dict[str, list[str]]]:
    with engine.connect() as connection:
        inspector = inspect(connection)
        table_names = set(inspector.get_table_names())
        missing_tables = sorted(name for name in REQUIRED_COLUMNS if name not in table_names)
        missing_columns: dict[str, list[str]] = {}
        for table_name, required in REQUIRED_COLUMNS.items():
            if table_name not in table_names:
                continue
            existing = {item["name"] for item in inspector.get_columns(table_name)}
            missing = sorted(required - existing)
            if missing:
                missing_columns[table_name] = missing
    return missing_tables, missing_columns


def ensure_runtime_schema() -> None:
    try:
        Base.metadata.create_all(bind=engine)
        missing_tables, missing_columns = missing_schema_items()
        if missing_tables:
            raise RuntimeError(f"Missing required tables: {', '.join(missing_tables)}")
        if missing_columns:
            flattened = [f"{table}.{column}" for table, columns in missing_columns.items() for column in columns]
            raise RuntimeError(f"Missing required columns: {', '.join(flattened)}")
    except Exception as exc:  # pragma: no cover - runtime environment dependent
        logger.exception("Runtime schema bootstrap failed")
        raise ConfigurationError("Runtime schema bootstrap failed", details={"error": str(exc)}) from exc
