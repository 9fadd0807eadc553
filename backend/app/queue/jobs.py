"""Job model and queue constants."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class QueueName(str, Enum):
    """Named queues served by the worker pool."""

    TRANSACTION_SYNC = "transaction-sync"
    WEBHOOK_PROCESSING = "webhook-processing"
    NOTIFICATIONS = "notifications"


class JobType(str, Enum):
    """Kinds of work a job can carry."""

    SYNC = "sync"
    PROCESS_WEBHOOK = "process-webhook"
    NOTIFY = "notify"


class JobState(str, Enum):
    """Lifecycle states of a job in the store."""

    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    DEAD = "dead"


# Larger values are served first.
MIN_PRIORITY = 0
MAX_PRIORITY = 100
PRIORITY_SCHEDULED = 0
PRIORITY_MANUAL = 5
PRIORITY_WEBHOOK = 10


def sync_dedup_key(connection_id: str) -> str:
    """Dedup key that coalesces pending sync jobs for one connection."""
    return f"sync:{connection_id}"


def _from_millis(value: str | None) -> datetime | None:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


class Job(BaseModel):
    """A unit of asynchronous work tracked by the job store."""

    id: str
    queue: str
    type: JobType
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int = PRIORITY_SCHEDULED
    state: JobState
    attempts: int = 0
    max_attempts: int
    connection_id: str | None = None
    dedup_key: str | None = None
    created_at: datetime
    run_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    worker_id: str | None = None
    lease_token: str | None = None
    lease_until: datetime | None = None
    last_error: str | None = None
    result: Any = None

    @classmethod
    def from_redis(cls, data: dict[str, str], payload: dict, result: Any) -> "Job":
        """Build a Job from the string fields of its Redis hash."""
        return cls(
            id=data["id"],
            queue=data["queue"],
            type=JobType(data["type"]),
            payload=payload,
            priority=int(data.get("priority") or 0),
            state=JobState(data["state"]),
            attempts=int(data.get("attempts") or 0),
            max_attempts=int(data["max_attempts"]),
            connection_id=data.get("connection_id") or None,
            dedup_key=data.get("dedup_key") or None,
            created_at=_from_millis(data["created_at"]),
            run_at=_from_millis(data["run_at"]),
            started_at=_from_millis(data.get("started_at")),
            finished_at=_from_millis(data.get("finished_at")),
            worker_id=data.get("worker_id") or None,
            lease_token=data.get("lease_token") or None,
            lease_until=_from_millis(data.get("lease_until")),
            last_error=data.get("last_error") or None,
            result=result,
        )
