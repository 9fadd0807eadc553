"""Queue router - job store health and per-queue counts."""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from app.dependencies import get_engine, verify_cron_secret
from app.engine import SyncEngine
from app.schemas.queue import QueueStats, QueueStatusResponse


router = APIRouter(
    prefix="/queue",
    tags=["Queue"],
    dependencies=[Depends(verify_cron_secret)],
)


@router.get("/status", response_model=QueueStatusResponse)
async def get_queue_status(engine: SyncEngine = Depends(get_engine)):
    """Counts of waiting, active, completed, failed and delayed jobs per queue."""
    redis_ok = engine.store.ping()
    queues = [QueueStats(**stats) for stats in engine.queue_status()] if redis_ok else []
    return QueueStatusResponse(
        healthy=redis_ok,
        redis=redis_ok,
        workers_running=engine.pool.running,
        queues=queues,
        timestamp=datetime.now(timezone.utc),
    )
