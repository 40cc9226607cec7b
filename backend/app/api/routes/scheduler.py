import logging

from fastapi import APIRouter, Depends, status
from fastapi.responses import StreamingResponse

from app.api.deps import get_history_store, get_history_store_factory
from app.core.config import Settings, get_settings
from app.schemas.scheduler import (
    GenerateScheduleRequest,
    GenerateScheduleResponse,
    HistoryStatsOut,
    OptimizeScheduleRequest,
    OptimizeScheduleResponse,
    TimeBlocksResponse,
)
from app.schemas.settings import TimeSettingsPayload
from app.services.scheduler.learning import HistoryStore
from app.services.scheduler_service import (
    HistoryStoreFactory,
    history_stats,
    preview_time_blocks,
    run_generation,
    run_optimization,
    stream_generation,
)

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/generate", response_model=GenerateScheduleResponse)
def generate(
    payload: GenerateScheduleRequest,
    history: HistoryStore = Depends(get_history_store),
    settings: Settings = Depends(get_settings),
) -> GenerateScheduleResponse:
    return run_generation(payload, history, settings)


@router.post("/generate-stream")
def generate_stream(
    payload: GenerateScheduleRequest,
    history_factory: HistoryStoreFactory = Depends(get_history_store_factory),
    settings: Settings = Depends(get_settings),
) -> StreamingResponse:
    logger.info("Streaming schedule generation | courses=%s", len(payload.courses))
    return StreamingResponse(
        stream_generation(payload, history_factory, settings),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/optimize", response_model=OptimizeScheduleResponse)
def optimize(
    payload: OptimizeScheduleRequest,
    settings: Settings = Depends(get_settings),
) -> OptimizeScheduleResponse:
    return run_optimization(payload, settings)


@router.post("/time-blocks", response_model=TimeBlocksResponse)
def time_blocks(
    payload: TimeSettingsPayload | None = None,
    settings: Settings = Depends(get_settings),
) -> TimeBlocksResponse:
    return preview_time_blocks(payload, settings)


@router.get("/history/stats", response_model=HistoryStatsOut)
def get_history_stats(
    history: HistoryStore = Depends(get_history_store),
    settings: Settings = Depends(get_settings),
) -> HistoryStatsOut:
    return history_stats(history, settings)


@router.delete("/history", status_code=status.HTTP_204_NO_CONTENT)
def clear_history(history: HistoryStore = Depends(get_history_store)) -> None:
    history.clear()
    logger.info("Scheduler run history cleared")
