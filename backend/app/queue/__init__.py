"""Job queue: Redis job store, retry policy, connection locks, worker pool."""

from app.queue.jobs import (
    PRIORITY_MANUAL,
    PRIORITY_SCHEDULED,
    PRIORITY_WEBHOOK,
    Job,
    JobState,
    JobType,
    QueueName,
    sync_dedup_key,
)
from app.queue.locks import ConnectionLocks
from app.queue.policy import QueueConfig, RetryPolicy, build_queue_configs
from app.queue.store import JobStore
from app.queue.workers import WorkerPool

__all__ = [
    "PRIORITY_MANUAL",
    "PRIORITY_SCHEDULED",
    "PRIORITY_WEBHOOK",
    "Job",
    "JobState",
    "JobType",
    "QueueName",
    "sync_dedup_key",
    "ConnectionLocks",
    "QueueConfig",
    "RetryPolicy",
    "build_queue_configs",
    "JobStore",
    "WorkerPool",
]
