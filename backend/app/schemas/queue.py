"""Queue monitoring schemas."""

from datetime import datetime

from pydantic import BaseModel


class QueueStats(BaseModel):
    """Job counts of one queue."""

    name: str
    waiting: int
    active: int
    completed: int
    failed: int
    delayed: int
    total: int


class QueueStatusResponse(BaseModel):
    """Health of the job store and every queue."""

    healthy: bool
    redis: bool
    workers_running: bool
    queues: list[QueueStats]
    timestamp: datetime
