"""Plaid integration router - connection lifecycle."""

import plaid
from fastapi import APIRouter, Depends, HTTPException, status

from app.database import Database
from app.dependencies import get_current_user, get_database, get_engine
from app.engine import SyncEngine
from app.exceptions import CredentialsInvalidError
from app.logging_config import get_logger
from app.queue.jobs import PRIORITY_MANUAL
from app.schemas.common import SuccessResponse
from app.schemas.plaid import (
    LinkTokenRequest,
    LinkTokenResponse,
    ExchangeTokenRequest,
    ExchangeTokenResponse,
    PlaidItemResponse,
    ReconnectResponse,
)
from app.services import plaid_service
from app.utils.encryption import decrypt_token, encrypt_token


logger = get_logger("routers.plaid")

router = APIRouter(prefix="/plaid", tags=["Plaid"])


def _get_owned_item(db: Database, item_id: str, user: dict) -> dict:
    item = db.get_connection(item_id)
    if item is None or item["user_id"] != user["id"]:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Plaid item not found",
        )
    return item


@router.post("/create-link-token", response_model=LinkTokenResponse)
async def create_link_token(
    request: LinkTokenRequest | None = None,
    user: dict = Depends(get_current_user),
    db: Database = Depends(get_database),
):
    """Create a Plaid Link token, in update mode when an item id is given."""
    access_token = None
    if request and request.item_id:
        item = _get_owned_item(db, request.item_id, user)
        try:
            access_token = decrypt_token(item["access_token"])
        except CredentialsInvalidError:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Stored credentials are unreadable; link the institution again",
            )

    try:
        result = plaid_service.create_link_token(user["id"], access_token=access_token)
    except plaid.ApiException as e:
        logger.error(f"Link token creation failed: {e.body}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to create link token",
        )
    return LinkTokenResponse(
        link_token=result["link_token"],
        expiration=result["expiration"],
    )


@router.post("/exchange-token", response_model=ExchangeTokenResponse)
async def exchange_token(
    request: ExchangeTokenRequest,
    user: dict = Depends(get_current_user),
    db: Database = Depends(get_database),
    engine: SyncEngine = Depends(get_engine),
):
    """
    Exchange a Plaid public token for an access token.

    Stores the Plaid item with its encrypted access token and queues the
    initial sync.
    """
    try:
        result = plaid_service.exchange_public_token(request.public_token)
    except plaid.ApiException as e:
        logger.error(f"Public token exchange failed: {e.body}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to exchange public token",
        )

    item = db.create_connection({
        "user_id": user["id"],
        "plaid_item_id": result["item_id"],
        "access_token": encrypt_token(result["access_token"]),
        "institution_id": request.institution_id,
        "institution_name": request.institution_name,
        "status": "connected",
    })
    logger.info(f"Linked Plaid item {item['id']} for user {user['id']}")

    job_id = engine.scheduler.enqueue_sync(item["id"], PRIORITY_MANUAL, trigger="initial")

    return ExchangeTokenResponse(
        item_id=item["id"],
        institution_id=request.institution_id,
        institution_name=request.institution_name,
        sync_job_id=job_id,
    )


@router.get("/items", response_model=list[PlaidItemResponse])
async def list_items(
    user: dict = Depends(get_current_user),
    db: Database = Depends(get_database),
):
    """List all Plaid items for the current user."""
    items = db.get_user_connections(user["id"])
    return [
        PlaidItemResponse(
            id=item["id"],
            plaid_item_id=item["plaid_item_id"],
            institution_id=item.get("institution_id"),
            institution_name=item.get("institution_name"),
            status=item["status"],
            last_sync=item.get("last_sync"),
            error_code=item.get("error_code"),
            error_message=item.get("error_message"),
            consent_expiration_time=item.get("consent_expiration_time"),
            created_at=item["created_at"],
            updated_at=item["updated_at"],
        )
        for item in items
    ]


@router.post("/items/{item_id}/reconnect", response_model=ReconnectResponse)
async def reconnect_item(
    item_id: str,
    user: dict = Depends(get_current_user),
    db: Database = Depends(get_database),
    engine: SyncEngine = Depends(get_engine),
):
    """Mark an item connected again after Link update mode and queue a sync."""
    _get_owned_item(db, item_id, user)

    engine.orchestrator.mark_repaired(item_id)
    job_id = engine.scheduler.enqueue_manual_sync(item_id, PRIORITY_MANUAL)
    return ReconnectResponse(item_id=item_id, status="connected", sync_job_id=job_id)


@router.delete("/items/{item_id}", response_model=SuccessResponse)
async def disconnect_item(
    item_id: str,
    user: dict = Depends(get_current_user),
    db: Database = Depends(get_database),
    engine: SyncEngine = Depends(get_engine),
):
    """Disconnect an item. Its transactions are kept; syncing stops."""
    _get_owned_item(db, item_id, user)

    engine.orchestrator.mark_disconnected(item_id)
    return SuccessResponse(message="Plaid item disconnected", data={"item_id": item_id})
