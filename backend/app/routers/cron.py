"""Cron router - externally scheduled sync trigger."""

from fastapi import APIRouter, Depends

from app.dependencies import get_scheduler, verify_cron_secret
from app.schemas.sync import ScheduleSummary
from app.services.scheduler_service import SyncScheduler


router = APIRouter(
    prefix="/cron",
    tags=["Cron"],
    dependencies=[Depends(verify_cron_secret)],
)


@router.post("/sync-transactions", response_model=ScheduleSummary)
async def sync_transactions(scheduler: SyncScheduler = Depends(get_scheduler)):
    """Enqueue a scheduled sync for every stale connected item."""
    return scheduler.enqueue_stale_syncs()
