"""Sync engine container.

Builds every engine component from settings once at startup and owns their
lifecycle. Routers reach it through ``app.state.engine``.
"""

import time
from typing import Callable

from redis import Redis

from app.config import Settings, get_settings
from app.database import Database, get_admin_client
from app.exceptions import CredentialsInvalidError, SyncEngineError
from app.logging_config import get_logger
from app.queue.jobs import Job, JobType
from app.queue.locks import ConnectionLocks
from app.queue.policy import build_queue_configs
from app.queue.store import JobStore
from app.queue.workers import WorkerPool
from app.schemas.sync import SyncResult
from app.services import plaid_service
from app.services.notification_service import NotificationService
from app.services.scheduler_service import SyncScheduler
from app.services.sync_service import FetchChanges, SyncOrchestrator
from app.services.webhook_service import WebhookIngestor, WebhookProcessor


logger = get_logger("engine")


class SyncEngine:
    """Job store, locks, services and worker pool wired together."""

    def __init__(
        self,
        settings: Settings,
        redis_client: Redis,
        db: Database,
        fetch_changes: FetchChanges,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.redis = redis_client
        self.db = db

        self.queues = build_queue_configs(settings)
        self.store = JobStore(
            redis_client,
            self.queues,
            prefix=settings.queue_prefix,
            completed_retention=settings.completed_jobs_retained,
            clock=clock,
        )
        self.locks = ConnectionLocks(
            redis_client,
            prefix=settings.queue_prefix,
            timeout=settings.sync_lease_seconds,
        )

        self.orchestrator = SyncOrchestrator(db, fetch_changes, self.locks)
        self.scheduler = SyncScheduler(db, self.store, settings.sync_stale_after_minutes)
        self.notifications = NotificationService(db, self.store)
        self.ingestor = WebhookIngestor(
            db,
            self.store,
            redis_client,
            secret=settings.plaid_webhook_secret,
            allow_unsigned=settings.is_development,
            dedup_ttl_seconds=settings.webhook_dedup_ttl_seconds,
            prefix=settings.queue_prefix,
        )
        self.webhook_processor = WebhookProcessor(
            db, self.orchestrator, self.scheduler, self.notifications
        )

        self.pool = WorkerPool(
            self.store,
            self.queues,
            handlers={
                JobType.SYNC: self.handle_sync,
                JobType.PROCESS_WEBHOOK: self.webhook_processor.process,
                JobType.NOTIFY: self.notifications.send,
            },
            on_dead_letter=self.on_dead_letter,
            poll_interval=settings.worker_poll_interval_seconds,
            reaper_interval=settings.reaper_interval_seconds,
            busy_retry_delay=settings.busy_retry_delay_seconds,
        )

    # --- Lifecycle ---

    def start(self) -> None:
        self.pool.start()

    def shutdown(self) -> None:
        self.pool.stop()
        self.store.close()
        logger.info("Sync engine shut down")

    # --- Handlers ---

    def handle_sync(self, job: Job) -> SyncResult:
        connection_id = job.connection_id or job.payload["connection_id"]
        return self.orchestrator.run_sync(connection_id, job_id=job.id)

    def on_dead_letter(self, job: Job, error: Exception) -> None:
        """Surface a job that will not run again."""
        logger.critical(
            f"ALERT: {job.type.value} job {job.id} on {job.queue} dead-lettered "
            f"after {job.attempts} attempt(s): {error}"
        )
        if job.type is not JobType.SYNC or job.connection_id is None:
            return

        connection = self.db.get_connection(job.connection_id)
        if connection is None:
            return

        if isinstance(error, CredentialsInvalidError):
            # Status was already set to login_required by the orchestrator.
            self.notifications.enqueue(connection, "login_required", {"error_code": error.code})
            return

        if isinstance(error, SyncEngineError):
            code, message = error.code, error.message
        else:
            code, message = "SYNC_FAILED", str(error)
        self.orchestrator.mark_error(job.connection_id, code, message)
        self.notifications.enqueue(connection, "sync_failed", {"error_code": code})

    # --- Monitoring ---

    def queue_status(self) -> list[dict]:
        return [self.store.stats(name) for name in self.queues]


def build_engine(settings: Settings | None = None) -> SyncEngine:
    """Engine backed by Redis at REDIS_URL, the service-role Supabase client and Plaid."""
    settings = settings or get_settings()
    redis_client = Redis.from_url(settings.redis_url, decode_responses=True)
    return SyncEngine(
        settings,
        redis_client,
        Database(get_admin_client()),
        plaid_service.fetch_transaction_changes,
    )
