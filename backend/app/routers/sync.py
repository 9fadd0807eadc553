"""Sync router - trigger and monitor transaction syncs."""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.config import Settings, get_settings
from app.database import Database
from app.dependencies import get_current_user, get_database, get_engine
from app.engine import SyncEngine
from app.exceptions import ConnectionNotFoundError, ConnectionNotSyncableError
from app.queue.jobs import MAX_PRIORITY, MIN_PRIORITY, PRIORITY_MANUAL, QueueName
from app.schemas.sync import (
    ConnectionFreshness,
    SyncJobResponse,
    SyncStatusResponse,
    SyncTriggerResponse,
)


router = APIRouter(prefix="/sync", tags=["Sync"])


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@router.post("/trigger", response_model=SyncTriggerResponse)
async def trigger_sync_all(
    user: dict = Depends(get_current_user),
    db: Database = Depends(get_database),
    engine: SyncEngine = Depends(get_engine),
):
    """Enqueue a sync for all of the current user's connected Plaid items."""
    items = [item for item in db.get_user_connections(user["id"]) if item["status"] == "connected"]
    if not items:
        return SyncTriggerResponse(job_ids=[], message="No connected Plaid items to sync")

    job_ids = [
        engine.scheduler.enqueue_sync(item["id"], PRIORITY_MANUAL, trigger="manual")
        for item in items
    ]
    return SyncTriggerResponse(
        job_ids=job_ids,
        message=f"Queued sync for {len(job_ids)} item(s)",
    )


@router.post("/trigger/{item_id}", response_model=SyncTriggerResponse)
async def trigger_sync_item(
    item_id: str,
    priority: int = Query(PRIORITY_MANUAL, ge=MIN_PRIORITY, le=MAX_PRIORITY),
    user: dict = Depends(get_current_user),
    db: Database = Depends(get_database),
    engine: SyncEngine = Depends(get_engine),
):
    """Enqueue a sync for a specific Plaid item."""
    item = db.get_connection(item_id)
    if item is None or item["user_id"] != user["id"]:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Plaid item not found",
        )

    try:
        job_id = engine.scheduler.enqueue_manual_sync(item_id, priority)
    except ConnectionNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Plaid item not found",
        )
    except ConnectionNotSyncableError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Plaid item is disconnected; reconnect it before syncing",
        )

    return SyncTriggerResponse(job_ids=[job_id], message="Sync queued")


@router.get("/jobs/{job_id}", response_model=SyncJobResponse)
async def get_sync_job(
    job_id: str,
    user: dict = Depends(get_current_user),
    db: Database = Depends(get_database),
    engine: SyncEngine = Depends(get_engine),
):
    """Get the state of a queued sync job."""
    job = engine.store.get_job(QueueName.TRANSACTION_SYNC.value, job_id)

    # Verify ownership via the plaid_item
    item = db.get_connection(job.connection_id) if job and job.connection_id else None
    if job is None or item is None or item["user_id"] != user["id"]:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Sync job not found",
        )

    return SyncJobResponse(
        id=job.id,
        queue=job.queue,
        type=job.type.value,
        state=job.state.value,
        connection_id=job.connection_id,
        priority=job.priority,
        attempts=job.attempts,
        max_attempts=job.max_attempts,
        last_error=job.last_error,
        created_at=job.created_at,
        run_at=job.run_at,
        finished_at=job.finished_at,
        result=job.result,
    )


@router.get("/status", response_model=SyncStatusResponse)
async def get_sync_status(
    user: dict = Depends(get_current_user),
    db: Database = Depends(get_database),
    engine: SyncEngine = Depends(get_engine),
    settings: Settings = Depends(get_settings),
):
    """Sync freshness of each of the current user's Plaid items."""
    now = datetime.now(timezone.utc)
    connections = []
    for item in db.get_user_connections(user["id"]):
        last_run = db.get_latest_sync_run(item["id"])
        last_sync = _parse_timestamp(item.get("last_sync"))
        minutes = (now - last_sync).total_seconds() / 60 if last_sync else None
        connections.append(
            ConnectionFreshness(
                id=item["id"],
                institution_name=item.get("institution_name"),
                status=item["status"],
                last_sync=last_sync,
                minutes_since_sync=round(minutes, 1) if minutes is not None else None,
                stale=minutes is None or minutes > settings.sync_stale_after_minutes,
                sync_in_progress=engine.locks.is_locked(item["id"]),
                error_code=item.get("error_code"),
                error_message=item.get("error_message"),
                last_run_status=last_run["status"] if last_run else None,
            )
        )
    return SyncStatusResponse(
        connections=connections,
        stale_after_minutes=settings.sync_stale_after_minutes,
    )
