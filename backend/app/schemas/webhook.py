"""Webhook schemas."""

from enum import Enum

from pydantic import BaseModel


class RejectionReason(str, Enum):
    """Why an inbound webhook was refused."""

    INVALID_SIGNATURE = "invalid_signature"
    MALFORMED_PAYLOAD = "malformed_payload"
    UNKNOWN_CONNECTION = "unknown_connection"


class WebhookReceipt(BaseModel):
    """Outcome of ingesting one webhook delivery."""

    accepted: bool
    duplicate: bool = False
    job_id: str | None = None
    dedup_key: str | None = None
    reason: RejectionReason | None = None


class WebhookResponse(BaseModel):
    """Body returned to the provider for an accepted webhook."""

    received: bool = True
    duplicate: bool
    job_id: str | None
