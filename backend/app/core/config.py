from functools import lru_cache
import json
from pathlib import Path
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


BACKEND_ENV_FILE = Path(__file__).resolve().parents[2] / ".env"


class Settings(BaseSettings):
    # Resolve to backend/.env so `uvicorn --app-dir backend` works from any cwd.
    model_config = SettingsConfigDict(env_file=str(BACKEND_ENV_FILE), env_file_encoding="utf-8")

    project_name: str = "Timetable Scheduler API"
    api_prefix: str = "/api"

    database_url: str = "sqlite+pysqlite:///./scheduler.db"

    default_slot_duration: int = 60
    default_day_start: str = "09:00"
    default_day_end: str = "17:00"
    default_lunch_break_start: str = "12:00"
    default_lunch_break_end: str = "13:00"

    scheduler_default_preset: Literal["default", "fast", "quality"] = "default"
    scheduler_max_parallel_attempts: int = 8
    scheduler_progress_queue_size: int = 64

    history_backend: Literal["memory", "database"] = "memory"
    history_max_records: int = 1000

    cors_origins: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]

    @field_validator("cors_origins", mode="before")
    @classmethod
    def split_cors_origins(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, str):
            stripped = value.strip()
            if stripped.startswith("["):
                try:
                    parsed = json.loads(stripped)
                    if isinstance(parsed, list):
                        return [str(item).strip() for item in parsed if str(item).strip()]
                except json.JSONDecodeError:
                    pass
            return [item.strip() for item in value.split(",") if item.strip()]
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()
