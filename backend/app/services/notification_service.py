"""Notification service - in-app notifications about connection health."""

from datetime import datetime, timezone

from app.database import Database
from app.logging_config import get_logger
from app.queue.jobs import Job, JobType, QueueName
from app.queue.store import JobStore


logger = get_logger("notifications")

MESSAGES = {
    "login_required": "{institution} needs you to log in again to keep syncing.",
    "sync_error": "We couldn't sync {institution}. We'll keep trying.",
    "sync_failed": "Syncing {institution} failed repeatedly. Please try reconnecting.",
    "consent_expiring": "Your connection to {institution} expires soon. Reconnect to keep syncing.",
    "disconnected": "{institution} was disconnected.",
    "login_repaired": "{institution} is connected again.",
}


class NotificationService:
    """Queues notifications and delivers them from the notify job handler."""

    def __init__(self, db: Database, store: JobStore):
        self.db = db
        self.store = store

    def enqueue(self, connection: dict, kind: str, metadata: dict | None = None) -> str:
        """Queue a notification about ``connection`` for its owner."""
        institution = connection.get("institution_name") or "Your bank"
        return self.store.enqueue(
            QueueName.NOTIFICATIONS.value,
            JobType.NOTIFY,
            {
                "user_id": connection["user_id"],
                "connection_id": connection["id"],
                "kind": kind,
                "message": MESSAGES[kind].format(institution=institution),
                "metadata": metadata or {},
            },
            connection_id=connection["id"],
        )

    def send(self, job: Job) -> dict:
        """Handler for notify jobs."""
        payload = job.payload
        notification = self.db.create_notification({
            "user_id": payload["user_id"],
            "connection_id": payload.get("connection_id"),
            "kind": payload["kind"],
            "message": payload["message"],
            "metadata": payload.get("metadata") or {},
            "created_at": datetime.now(timezone.utc).isoformat(),
        })
        logger.info(f"Notified user {payload['user_id']}: {payload['kind']}")
        return {"notification_id": notification["id"]}
