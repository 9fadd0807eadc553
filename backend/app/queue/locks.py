"""Per-connection mutual exclusion on Redis."""

from contextlib import contextmanager
from typing import Iterator

from redis import Redis
from redis.exceptions import LockError

from app.exceptions import ConnectionBusyError
from app.logging_config import get_logger


logger = get_logger("queue.locks")


class ConnectionLocks:
    """Non-blocking locks keyed by connection id.

    The lock timeout matches the sync lease: if a worker dies mid-sync the
    lock expires at the same time its job becomes reclaimable.
    """

    def __init__(self, redis_client: Redis, prefix: str = "budgetplanner", timeout: float = 300):
        self._redis = redis_client
        self._prefix = prefix
        self._timeout = timeout

    def _name(self, connection_id: str) -> str:
        return f"{self._prefix}:lock:connection:{connection_id}"

    def is_locked(self, connection_id: str) -> bool:
        return bool(self._redis.exists(self._name(connection_id)))

    @contextmanager
    def hold(self, connection_id: str) -> Iterator[None]:
        """Hold the lock for one connection for the duration of the block.

        Raises:
            ConnectionBusyError: Another holder has the lock.
        """
        lock = self._redis.lock(
            self._name(connection_id),
            timeout=self._timeout,
            blocking=False,
        )
        if not lock.acquire():
            raise ConnectionBusyError(f"Sync already running for connection {connection_id}")

        try:
            yield
        finally:
            try:
                lock.release()
            except LockError:
                # Expired and possibly re-acquired by another worker.
                logger.warning(f"Lock for connection {connection_id} expired before release")
