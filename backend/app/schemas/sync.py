"""Sync schemas: fetch batches, cycle results, trigger and status responses."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class SyncBatch(BaseModel):
    """Changes returned by the external fetch capability for one cursor."""

    added: list[dict[str, Any]] = Field(default_factory=list)
    modified: list[dict[str, Any]] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)
    next_cursor: str


class SyncResult(BaseModel):
    """Outcome of one sync cycle for a connection."""

    connection_id: str
    transactions_added: int = 0
    transactions_modified: int = 0
    transactions_removed: int = 0
    new_cursor: str | None = None
    skipped: bool = False
    skip_reason: str | None = None


class ScheduleSummary(BaseModel):
    """Result of one pass of the periodic trigger."""

    success: bool = True
    items_processed: int = 0
    jobs_enqueued: int = 0  # New jobs created
    jobs_coalesced: int = 0  # Requests merged into a job that was already pending
    job_ids: list[str] = []
    errors: list[str] = []
    timestamp: datetime


class SyncTriggerResponse(BaseModel):
    """Response after enqueueing one or more syncs."""

    job_ids: list[str]
    message: str


class SyncJobResponse(BaseModel):
    """State of a queued sync job."""

    id: str
    queue: str
    type: str
    state: str
    connection_id: str | None
    priority: int
    attempts: int
    max_attempts: int
    last_error: str | None
    created_at: datetime
    run_at: datetime
    finished_at: datetime | None
    result: Any = None


class ConnectionFreshness(BaseModel):
    """Sync freshness of one connection."""

    id: str
    institution_name: str | None
    status: str
    last_sync: datetime | None
    minutes_since_sync: float | None
    stale: bool
    sync_in_progress: bool = False
    error_code: str | None
    error_message: str | None
    last_run_status: str | None = None


class SyncStatusResponse(BaseModel):
    """Freshness of every connection owned by the caller."""

    connections: list[ConnectionFreshness]
    stale_after_minutes: int
