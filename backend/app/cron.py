"""Scheduled cron jobs for background tasks."""

from fastapi.concurrency import run_in_threadpool
from fastapi_utils.tasks import repeat_every

from app.logging_config import get_logger
from app.services.scheduler_service import SyncScheduler


logger = get_logger("cron")


def create_stale_sync_task(scheduler: SyncScheduler, interval_seconds: int):
    """Build the periodic task that enqueues syncs for stale connections.

    Awaiting the returned coroutine function starts the loop in the
    background.
    """

    @repeat_every(seconds=interval_seconds, logger=logger)
    async def enqueue_stale_syncs() -> None:
        """
        Enqueue syncs for connected items that are stale.

        The scheduler only enqueues; workers run the syncs.
        """
        logger.info("[CRON] Starting stale-connection sync pass...")
        summary = await run_in_threadpool(scheduler.enqueue_stale_syncs)
        logger.info(
            f"[CRON] Stale sync pass complete: {summary.items_processed} stale, "
            f"{summary.jobs_enqueued} enqueued, {len(summary.errors)} errors"
        )

    return enqueue_stale_syncs
