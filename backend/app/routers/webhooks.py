"""Webhooks router - inbound Plaid webhooks."""

from fastapi import APIRouter, Depends, HTTPException, Request, status

from app.dependencies import get_ingestor
from app.schemas.webhook import RejectionReason, WebhookResponse
from app.services.webhook_service import SIGNATURE_HEADER, WebhookIngestor


router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

REJECTION_STATUS = {
    RejectionReason.INVALID_SIGNATURE: (status.HTTP_401_UNAUTHORIZED, "Invalid signature"),
    RejectionReason.MALFORMED_PAYLOAD: (status.HTTP_400_BAD_REQUEST, "Malformed payload"),
    RejectionReason.UNKNOWN_CONNECTION: (status.HTTP_404_NOT_FOUND, "Item not found"),
}


@router.post("/plaid", response_model=WebhookResponse)
async def receive_plaid_webhook(
    request: Request,
    ingestor: WebhookIngestor = Depends(get_ingestor),
):
    """
    Receive a Plaid webhook.

    Verifies the signature over the raw body, deduplicates redeliveries and
    enqueues follow-up work. Returns as soon as the work is queued.
    """
    body = await request.body()
    receipt = ingestor.receive(body, request.headers.get(SIGNATURE_HEADER))

    if not receipt.accepted:
        status_code, detail = REJECTION_STATUS[receipt.reason]
        raise HTTPException(status_code=status_code, detail=detail)

    return WebhookResponse(duplicate=receipt.duplicate, job_id=receipt.job_id)
