"""Business logic services."""

from app.services import plaid_service
from app.services.notification_service import NotificationService
from app.services.scheduler_service import SyncScheduler
from app.services.sync_service import SyncOrchestrator
from app.services.webhook_service import WebhookIngestor, WebhookProcessor

__all__ = [
    "plaid_service",
    "NotificationService",
    "SyncScheduler",
    "SyncOrchestrator",
    "WebhookIngestor",
    "WebhookProcessor",
]
