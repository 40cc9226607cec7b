from collections.abc import Generator, Iterator
from contextlib import contextmanager

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.db.session import SessionLocal
from app.services.history_store import SqlAlchemyHistoryStore
from app.services.scheduler.learning import HistoryStore
from app.services.scheduler_service import HistoryStoreFactory


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_history_store(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> HistoryStore:
    if settings.history_backend == "database":
        return SqlAlchemyHistoryStore(db, max_records=settings.history_max_records)
    return request.app.state.history_store


def get_history_store_factory(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> HistoryStoreFactory:
    """Stores for work that outlives the request, such as a streamed run on a worker thread."""
    memory_store: HistoryStore = request.app.state.history_store

    @contextmanager
    def open_store() -> Iterator[HistoryStore]:
        if settings.history_backend != "database":
            yield memory_store
            return
        db = SessionLocal()
        try:
            yield SqlAlchemyHistoryStore(db, max_records=settings.history_max_records)
        finally:
            db.close()

    return open_store
