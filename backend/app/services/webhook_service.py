"""Webhook service - Plaid webhook ingestion and item-webhook processing.

Ingestion (HTTP request path):
    verify signature -> parse -> resolve connection -> dedup -> enqueue -> record

Processing (process-webhook job handler):
    ITEM webhooks change connection status through the sync orchestrator and
    queue a notification for the owner.
"""

import base64
import hashlib
import hmac
import json
from datetime import datetime, timezone

from redis import Redis

from app.database import Database
from app.exceptions import ConnectionNotFoundError
from app.logging_config import get_logger
from app.queue.jobs import PRIORITY_WEBHOOK, Job, JobType, QueueName, sync_dedup_key
from app.queue.store import JobStore
from app.schemas.webhook import RejectionReason, WebhookReceipt
from app.services.notification_service import NotificationService
from app.services.plaid_service import CREDENTIAL_ERROR_CODES
from app.services.scheduler_service import SyncScheduler
from app.services.sync_service import SyncOrchestrator


logger = get_logger("webhooks")

SIGNATURE_HEADER = "Plaid-Verification"

SYNC_WEBHOOK_CODES = {
    "SYNC_UPDATES_AVAILABLE",
    "INITIAL_UPDATE",
    "HISTORICAL_UPDATE",
    "DEFAULT_UPDATE",
    "TRANSACTIONS_REMOVED",
}

ITEM_WEBHOOK_CODES = {
    "ERROR",
    "LOGIN_REPAIRED",
    "PENDING_EXPIRATION",
    "PENDING_DISCONNECT",
    "USER_PERMISSION_REVOKED",
    "USER_ACCOUNT_REVOKED",
}

REQUIRED_FIELDS = ("webhook_type", "webhook_code", "item_id")


def sign_payload(body: bytes, secret: str) -> str:
    """Base64 HMAC-SHA256 of the raw body."""
    digest = hmac.new(secret.encode(), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def compute_dedup_key(payload: dict) -> str:
    """Stable key for a webhook: type, code, item and the remaining fields.

    Field order in the provider's JSON does not affect the key.
    """
    rest = {
        key: value
        for key, value in payload.items()
        if key not in REQUIRED_FIELDS
    }
    material = "|".join([
        str(payload["webhook_type"]),
        str(payload["webhook_code"]),
        str(payload["item_id"]),
        json.dumps(rest, sort_keys=True, separators=(",", ":"), default=str),
    ])
    return hashlib.sha256(material.encode()).hexdigest()


class WebhookIngestor:
    """Validates, deduplicates and enqueues inbound Plaid webhooks."""

    def __init__(
        self,
        db: Database,
        store: JobStore,
        redis_client: Redis,
        secret: str | None = None,
        allow_unsigned: bool = False,
        dedup_ttl_seconds: int = 60 * 60 * 24,
        prefix: str = "budgetplanner",
    ):
        self.db = db
        self.store = store
        self._redis = redis_client
        self._secret = secret
        self._allow_unsigned = allow_unsigned
        self._dedup_ttl = dedup_ttl_seconds
        self._prefix = prefix

    def verify_signature(self, body: bytes, signature: str | None) -> bool:
        if not self._secret:
            if self._allow_unsigned:
                logger.warning("PLAID_WEBHOOK_SECRET not set; accepting unsigned webhook (development)")
                return True
            logger.error("PLAID_WEBHOOK_SECRET not set; rejecting webhook")
            return False
        if not signature:
            return False
        expected = sign_payload(body, self._secret)
        return hmac.compare_digest(signature.encode(), expected.encode())

    def receive(self, body: bytes, signature: str | None) -> WebhookReceipt:
        """
        Ingest one webhook delivery.

        Rejected deliveries have no side effects. Accepted deliveries are
        recorded in webhook_events; only the first receipt of a dedup key
        creates a job.

        Args:
            body: Raw request body, exactly as signed.
            signature: Value of the Plaid-Verification header.

        Returns:
            WebhookReceipt describing acceptance, duplication and the job id.
        """
        if not self.verify_signature(body, signature):
            logger.warning("Rejected webhook: invalid signature")
            return WebhookReceipt(accepted=False, reason=RejectionReason.INVALID_SIGNATURE)

        try:
            payload = json.loads(body)
        except ValueError:
            logger.warning("Rejected webhook: body is not JSON")
            return WebhookReceipt(accepted=False, reason=RejectionReason.MALFORMED_PAYLOAD)
        if not isinstance(payload, dict) or not all(payload.get(field) for field in REQUIRED_FIELDS):
            logger.warning("Rejected webhook: missing webhook_type, webhook_code or item_id")
            return WebhookReceipt(accepted=False, reason=RejectionReason.MALFORMED_PAYLOAD)

        webhook_type = payload["webhook_type"]
        webhook_code = payload["webhook_code"]
        item_id = payload["item_id"]
        logger.info(f"Plaid webhook received: {webhook_type} - {webhook_code} for item {item_id}")

        connection = self.db.get_connection_by_plaid_item_id(item_id)
        if connection is None:
            logger.warning(f"Rejected webhook: no connection for Plaid item {item_id}")
            return WebhookReceipt(accepted=False, reason=RejectionReason.UNKNOWN_CONNECTION)

        dedup_key = compute_dedup_key(payload)
        marker = f"{self._prefix}:webhook:seen:{dedup_key}"
        first = bool(self._redis.set(marker, "1", nx=True, ex=self._dedup_ttl))

        try:
            job_id = self._dispatch(payload, connection) if first else None
            self.db.insert_webhook_event({
                "plaid_item_id": connection["id"],
                "webhook_type": webhook_type,
                "webhook_code": webhook_code,
                "environment": payload.get("environment"),
                "payload": payload,
                "dedup_key": dedup_key,
                "duplicate": not first,
                "job_id": job_id,
                "received_at": datetime.now(timezone.utc).isoformat(),
            })
        except Exception:
            if first:
                # Let the provider's redelivery be treated as a first receipt.
                self._redis.delete(marker)
            raise

        if not first:
            logger.info(f"Duplicate webhook {webhook_type} - {webhook_code} for item {item_id}")
        return WebhookReceipt(
            accepted=True,
            duplicate=not first,
            job_id=job_id,
            dedup_key=dedup_key,
        )

    def _dispatch(self, payload: dict, connection: dict) -> str | None:
        webhook_type = payload["webhook_type"]
        webhook_code = payload["webhook_code"]
        connection_id = connection["id"]

        if webhook_type == "TRANSACTIONS" and webhook_code in SYNC_WEBHOOK_CODES:
            return self.store.enqueue(
                QueueName.TRANSACTION_SYNC.value,
                JobType.SYNC,
                {
                    "connection_id": connection_id,
                    "trigger": "webhook",
                    "webhook_code": webhook_code,
                },
                priority=PRIORITY_WEBHOOK,
                dedup_key=sync_dedup_key(connection_id),
                connection_id=connection_id,
            )

        if webhook_type == "ITEM" and webhook_code in ITEM_WEBHOOK_CODES:
            return self.store.enqueue(
                QueueName.WEBHOOK_PROCESSING.value,
                JobType.PROCESS_WEBHOOK,
                {
                    "connection_id": connection_id,
                    "webhook_type": webhook_type,
                    "webhook_code": webhook_code,
                    "webhook": payload,
                },
                priority=PRIORITY_WEBHOOK,
                connection_id=connection_id,
            )

        logger.info(f"No action for webhook {webhook_type} - {webhook_code}")
        return None


class WebhookProcessor:
    """Handler for process-webhook jobs (ITEM webhooks)."""

    def __init__(
        self,
        db: Database,
        orchestrator: SyncOrchestrator,
        scheduler: SyncScheduler,
        notifications: NotificationService,
    ):
        self.db = db
        self.orchestrator = orchestrator
        self.scheduler = scheduler
        self.notifications = notifications

    def process(self, job: Job) -> dict:
        connection_id = job.payload["connection_id"]
        webhook_code = job.payload["webhook_code"]
        webhook = job.payload.get("webhook") or {}

        connection = self.db.get_connection(connection_id)
        if connection is None:
            raise ConnectionNotFoundError(f"Connection {connection_id} not found")

        result = {"connection_id": connection_id, "webhook_code": webhook_code}

        if webhook_code == "ERROR":
            error = webhook.get("error") or {}
            error_code = error.get("error_code") or "ITEM_ERROR"
            error_message = error.get("error_message") or "Plaid reported an item error"
            if error_code in CREDENTIAL_ERROR_CODES:
                self.orchestrator.mark_login_required(connection_id, error_code, error_message)
                result["status"], kind = "login_required", "login_required"
            else:
                self.orchestrator.mark_error(connection_id, error_code, error_message)
                result["status"], kind = "error", "sync_error"
            self.notifications.enqueue(connection, kind, {"error_code": error_code})

        elif webhook_code in ("PENDING_EXPIRATION", "PENDING_DISCONNECT"):
            expires_at = webhook.get("consent_expiration_time")
            self.orchestrator.mark_consent_expiring(connection_id, expires_at)
            result["consent_expiration_time"] = expires_at
            self.notifications.enqueue(
                connection, "consent_expiring", {"consent_expiration_time": expires_at}
            )

        elif webhook_code in ("USER_PERMISSION_REVOKED", "USER_ACCOUNT_REVOKED"):
            self.orchestrator.mark_disconnected(connection_id, reason=webhook_code)
            result["status"] = "disconnected"
            self.notifications.enqueue(connection, "disconnected", {"reason": webhook_code})

        elif webhook_code == "LOGIN_REPAIRED":
            self.orchestrator.mark_repaired(connection_id)
            result["status"] = "connected"
            result["sync_job_id"] = self.scheduler.enqueue_sync(
                connection_id, PRIORITY_WEBHOOK, trigger="webhook"
            )
            self.notifications.enqueue(connection, "login_repaired")

        else:
            logger.info(f"Ignoring ITEM webhook {webhook_code} for connection {connection_id}")
            result["ignored"] = True

        logger.info(f"Processed ITEM webhook {webhook_code} for connection {connection_id}")
        return result
