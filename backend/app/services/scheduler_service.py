"""Scheduler service - the periodic and on-demand sync triggers.

Both triggers only enqueue; the worker pool runs the syncs.
"""

from datetime import datetime, timedelta, timezone

from app.database import Database
from app.exceptions import ConnectionNotFoundError, ConnectionNotSyncableError
from app.logging_config import get_logger
from app.queue.jobs import (
    PRIORITY_MANUAL,
    PRIORITY_SCHEDULED,
    JobType,
    QueueName,
    sync_dedup_key,
)
from app.queue.store import JobStore
from app.schemas.sync import ScheduleSummary


logger = get_logger("scheduler")


class SyncScheduler:
    """Enqueues sync jobs for stale connections and for user requests."""

    def __init__(self, db: Database, store: JobStore, stale_after_minutes: int = 10):
        self.db = db
        self.store = store
        self.stale_after = timedelta(minutes=stale_after_minutes)

    def enqueue_sync(self, connection_id: str, priority: int, trigger: str) -> str:
        """Enqueue a sync job, coalescing with one already pending for the connection."""
        job_id, _ = self.submit_sync(connection_id, priority, trigger)
        return job_id

    def submit_sync(self, connection_id: str, priority: int, trigger: str) -> tuple[str, bool]:
        """Like enqueue_sync, also reporting whether a new job was created."""
        return self.store.submit(
            QueueName.TRANSACTION_SYNC.value,
            JobType.SYNC,
            {"connection_id": connection_id, "trigger": trigger},
            priority=priority,
            dedup_key=sync_dedup_key(connection_id),
            connection_id=connection_id,
        )

    def enqueue_stale_syncs(self, now: datetime | None = None) -> ScheduleSummary:
        """
        Enqueue a scheduled sync for every connected item that is stale.

        An item is stale when it never synced or its last successful sync is
        older than the staleness threshold.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = (now - self.stale_after).isoformat()

        connections = self.db.get_stale_connections(cutoff)
        logger.info(f"Found {len(connections)} stale connection(s) to sync")

        job_ids = []
        created = 0
        errors = []
        for connection in connections:
            try:
                job_id, is_new = self.submit_sync(
                    connection["id"], PRIORITY_SCHEDULED, trigger="scheduled"
                )
                job_ids.append(job_id)
                created += is_new
            except Exception as e:
                # One bad enqueue must not stop the rest of the pass.
                logger.exception(f"Failed to enqueue sync for connection {connection['id']}")
                errors.append(f"{connection['id']}: {e}")

        logger.info(
            f"Scheduled sync pass complete: {created} enqueued, "
            f"{len(job_ids) - created} coalesced, {len(errors)} errors"
        )
        return ScheduleSummary(
            success=not errors,
            items_processed=len(connections),
            jobs_enqueued=created,
            jobs_coalesced=len(job_ids) - created,
            job_ids=job_ids,
            errors=errors,
            timestamp=now,
        )

    def enqueue_manual_sync(self, connection_id: str, priority: int = PRIORITY_MANUAL) -> str:
        """
        Enqueue a sync for one connection at the caller's priority.

        Raises:
            ConnectionNotFoundError: No such connection.
            ConnectionNotSyncableError: The connection was disconnected.
        """
        connection = self.db.get_connection(connection_id)
        if connection is None:
            raise ConnectionNotFoundError(f"Connection {connection_id} not found")
        if connection["status"] == "disconnected":
            raise ConnectionNotSyncableError(f"Connection {connection_id} is disconnected")
        return self.enqueue_sync(connection_id, priority, trigger="manual")
