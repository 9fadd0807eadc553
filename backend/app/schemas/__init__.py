"""Pydantic schemas for request/response validation."""

from app.schemas.common import (
    SuccessResponse,
    ErrorResponse,
)
from app.schemas.plaid import (
    LinkTokenRequest,
    LinkTokenResponse,
    ExchangeTokenRequest,
    ExchangeTokenResponse,
    PlaidItemResponse,
    ReconnectResponse,
)
from app.schemas.queue import (
    QueueStats,
    QueueStatusResponse,
)
from app.schemas.sync import (
    SyncBatch,
    SyncResult,
    ScheduleSummary,
    SyncTriggerResponse,
    SyncJobResponse,
    ConnectionFreshness,
    SyncStatusResponse,
)
from app.schemas.webhook import (
    RejectionReason,
    WebhookReceipt,
    WebhookResponse,
)

__all__ = [
    # Common
    "SuccessResponse",
    "ErrorResponse",
    # Plaid
    "LinkTokenRequest",
    "LinkTokenResponse",
    "ExchangeTokenRequest",
    "ExchangeTokenResponse",
    "PlaidItemResponse",
    "ReconnectResponse",
    # Queue
    "QueueStats",
    "QueueStatusResponse",
    # Sync
    "SyncBatch",
    "SyncResult",
    "ScheduleSummary",
    "SyncTriggerResponse",
    "SyncJobResponse",
    "ConnectionFreshness",
    "SyncStatusResponse",
    # Webhooks
    "RejectionReason",
    "WebhookReceipt",
    "WebhookResponse",
]
