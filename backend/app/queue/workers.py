"""Worker pool: claims jobs, dispatches handlers, applies the retry policy."""

import threading
import uuid
from typing import Any, Callable

from app.exceptions import (
    ConnectionBusyError,
    PermanentJobError,
    RetryableError,
    SyncEngineError,
)
from app.logging_config import get_logger
from app.queue.jobs import Job, JobState, JobType
from app.queue.policy import QueueConfig
from app.queue.store import JobStore


logger = get_logger("queue.workers")

Handler = Callable[[Job], Any]
DeadLetterHook = Callable[[Job, Exception], None]


class WorkerPool:
    """Thread pool serving every configured queue.

    Each queue gets ``concurrency`` threads that loop over claim -> handle ->
    ack. One extra thread periodically reclaims jobs whose lease expired.
    """

    def __init__(
        self,
        store: JobStore,
        queues: dict[str, QueueConfig],
        handlers: dict[JobType, Handler],
        on_dead_letter: DeadLetterHook | None = None,
        poll_interval: float = 1.0,
        reaper_interval: float = 15.0,
        busy_retry_delay: float = 5.0,
    ):
        self._store = store
        self._queues = queues
        self._handlers = handlers
        self._on_dead_letter = on_dead_letter
        self._poll_interval = poll_interval
        self._reaper_interval = reaper_interval
        self._busy_retry_delay = busy_retry_delay

        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._instance_id = uuid.uuid4().hex[:8]

    @property
    def running(self) -> bool:
        return bool(self._threads) and not self._stop.is_set()

    # --- Lifecycle ---

    def start(self) -> None:
        if self._threads:
            return
        self._stop.clear()

        for config in self._queues.values():
            for index in range(config.concurrency):
                worker_id = f"{self._instance_id}:{config.name}:{index}"
                thread = threading.Thread(
                    target=self._run_worker,
                    args=(config.name, worker_id),
                    name=f"worker-{config.name}-{index}",
                    daemon=True,
                )
                self._threads.append(thread)

        self._threads.append(
            threading.Thread(target=self._run_reaper, name="lease-reaper", daemon=True)
        )
        for thread in self._threads:
            thread.start()

        logger.info(f"Worker pool {self._instance_id} started with {len(self._threads)} threads")

    def stop(self, timeout: float = 30.0) -> None:
        """Signal every thread to stop and wait for in-flight jobs to finish."""
        if not self._threads:
            return
        logger.info(f"Stopping worker pool {self._instance_id}...")
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning(f"{thread.name} did not stop within {timeout}s")
        self._threads = []
        logger.info(f"Worker pool {self._instance_id} stopped")

    # --- Loops ---

    def _run_worker(self, queue: str, worker_id: str) -> None:
        while not self._stop.is_set():
            try:
                job = self.process_next(queue, worker_id)
            except Exception:
                # Store unreachable; back off and keep the thread alive.
                logger.exception(f"Worker {worker_id} could not reach the job store")
                job = None
            if job is None:
                self._stop.wait(self._poll_interval)

    def _run_reaper(self) -> None:
        while not self._stop.wait(self._reaper_interval):
            for queue in self._queues:
                try:
                    self.reap(queue)
                except Exception:
                    logger.exception(f"Lease recovery failed for queue {queue}")

    def reap(self, queue: str) -> list[str]:
        """Reclaim expired leases on ``queue``; dead-lettered ones go to the hook."""
        recovered = self._store.recover_expired(queue)
        for job_id in recovered:
            job = self._store.get_job(queue, job_id)
            if job is not None and job.state is JobState.DEAD:
                self._dead_lettered(job, RetryableError("lease expired", code="LEASE_EXPIRED"))
        return recovered

    # --- One cycle ---

    def process_next(self, queue: str, worker_id: str) -> Job | None:
        """Claim and execute one job from ``queue``.

        Returns:
            The job that was processed, or None if the queue had nothing eligible.
        """
        job = self._store.claim(queue, worker_id)
        if job is None:
            return None

        handler = self._handlers.get(job.type)
        if handler is None:
            error = PermanentJobError(f"No handler registered for job type {job.type.value}")
            self._store.fail(job, str(error), permanent=True)
            self._dead_lettered(job, error)
            return job

        logger.info(
            f"Worker {worker_id} running {job.type.value} job {job.id} "
            f"(attempt {job.attempts}/{job.max_attempts})"
        )
        try:
            result = handler(job)
        except ConnectionBusyError as e:
            logger.info(f"Job {job.id}: {e}; queued behind the running sync")
            self._store.defer(job, self._busy_retry_delay)
        except PermanentJobError as e:
            if self._store.fail(job, str(e), permanent=True) is JobState.DEAD:
                self._dead_lettered(job, e)
        except Exception as e:
            if not isinstance(e, SyncEngineError):
                logger.exception(f"Unexpected error in job {job.id}")
            if self._store.fail(job, str(e)) is JobState.DEAD:
                self._dead_lettered(job, e)
        else:
            if hasattr(result, "model_dump"):
                result = result.model_dump(mode="json")
            if self._store.complete(job, result):
                logger.info(f"Job {job.id} completed")
        return job

    def _dead_lettered(self, job: Job, error: Exception) -> None:
        if self._on_dead_letter is None:
            return
        try:
            self._on_dead_letter(job, error)
        except Exception:
            logger.exception(f"Dead-letter hook failed for job {job.id}")
