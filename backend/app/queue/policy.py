"""Declarative retry and lease policy attached to each queue."""

from dataclasses import dataclass, field

from app.config import Settings
from app.queue.jobs import QueueName


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff.

    Attributes:
        max_attempts: Total number of times a job may run, first run included.
        base_delay: Delay in seconds after the first failed attempt.
        max_delay: Upper bound for any single delay, in seconds.
    """

    max_attempts: int = 3
    base_delay: float = 2.0
    max_delay: float = 300.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < self.base_delay:
            raise ValueError("delays must satisfy 0 <= base_delay <= max_delay")

    def should_retry(self, attempts: int) -> bool:
        """Whether a job that has run `attempts` times may run again."""
        return attempts < self.max_attempts

    def delay_for(self, attempts: int) -> float:
        """Seconds to wait after the `attempts`-th failed run."""
        exponent = max(attempts - 1, 0)
        return min(self.base_delay * (2 ** exponent), self.max_delay)


@dataclass(frozen=True)
class QueueConfig:
    """Per-queue execution settings consumed by the store and the worker pool.

    A positive ``rate_limit_max`` caps how many jobs may be claimed from the
    queue within any ``rate_limit_window_seconds`` span.
    """

    name: str
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    lease_seconds: float = 60.0
    concurrency: int = 1
    rate_limit_max: int = 0
    rate_limit_window_seconds: float = 60.0


def build_queue_configs(settings: Settings) -> dict[str, QueueConfig]:
    """Queue configuration for the three engine queues."""
    retry = RetryPolicy(
        max_attempts=settings.job_max_attempts,
        base_delay=settings.job_backoff_base_seconds,
        max_delay=settings.job_backoff_max_seconds,
    )
    configs = [
        QueueConfig(
            name=QueueName.TRANSACTION_SYNC.value,
            retry=retry,
            lease_seconds=settings.sync_lease_seconds,
            concurrency=settings.sync_worker_concurrency,
            rate_limit_max=settings.sync_rate_limit_max,
            rate_limit_window_seconds=settings.sync_rate_limit_window_seconds,
        ),
        QueueConfig(
            name=QueueName.WEBHOOK_PROCESSING.value,
            retry=retry,
            lease_seconds=settings.webhook_lease_seconds,
            concurrency=settings.webhook_worker_concurrency,
        ),
        QueueConfig(
            name=QueueName.NOTIFICATIONS.value,
            retry=retry,
            lease_seconds=settings.notification_lease_seconds,
            concurrency=settings.notification_worker_concurrency,
        ),
    ]
    return {config.name: config for config in configs}
