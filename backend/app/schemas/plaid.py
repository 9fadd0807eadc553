"""Plaid-related schemas."""

from datetime import datetime
from pydantic import BaseModel


class LinkTokenRequest(BaseModel):
    """Request to create a Plaid Link token.

    Pass ``item_id`` to open Link in update mode for an existing item.
    """

    item_id: str | None = None


class LinkTokenResponse(BaseModel):
    """Response containing a Plaid Link token."""

    link_token: str
    expiration: str


class ExchangeTokenRequest(BaseModel):
    """Request to exchange a Plaid public token."""

    public_token: str
    institution_id: str | None = None
    institution_name: str | None = None


class ExchangeTokenResponse(BaseModel):
    """Response after exchanging a public token."""

    item_id: str
    institution_id: str | None
    institution_name: str | None
    sync_job_id: str | None = None


class PlaidItemResponse(BaseModel):
    """Plaid item details."""

    id: str
    plaid_item_id: str
    institution_id: str | None
    institution_name: str | None
    status: str
    last_sync: datetime | None = None
    error_code: str | None = None
    error_message: str | None = None
    consent_expiration_time: datetime | None = None
    created_at: datetime
    updated_at: datetime


class ReconnectResponse(BaseModel):
    """Response after reconnecting an item."""

    item_id: str
    status: str
    sync_job_id: str
