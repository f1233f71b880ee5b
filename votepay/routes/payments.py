"""
Payment routes: initiation, BulkClix webhook and status polling.
"""

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request

from votepay.core.exceptions import PaymentValidationError
from votepay.core.limiter import limiter, INITIATE_RATE_LIMIT, STATUS_RATE_LIMIT
from votepay.schemas.payment import InitiatePaymentRequest, BulkClixWebhookPayload
from votepay.schemas.responses import InitiatePaymentResponse, PaymentStatusResponse, WebhookAck
from votepay.security import verify_webhook_signature
from votepay.services.payment_service import PaymentService
router = APIRouter()


@router.post("/initiate", response_model=InitiatePaymentResponse)
@limiter.limit(INITIATE_RATE_LIMIT)
async def initiate_payment(request: Request, payload: InitiatePaymentRequest):
    """Start a mobile-money collection."""
    return await PaymentService.initiate_payment(payload, str(request.base_url))


# Exempt from rate limiting: BulkClix retries aggressively on any non-2xx
@router.post(
    "/bulkclix-webhook",
    response_model=WebhookAck,
    dependencies=[Depends(verify_webhook_signature)],
)
@limiter.exempt
async def bulkclix_webhook(
    request: Request,
    payload: BulkClixWebhookPayload,
    background_tasks: BackgroundTasks,
):
    """Receive a BulkClix payment status callback."""
    return await PaymentService.process_webhook(payload, background_tasks)


@router.get("/status", response_model=PaymentStatusResponse)
@limiter.limit(STATUS_RATE_LIMIT)
async def payment_status(request: Request, transaction_id: Optional[str] = None):
    """Polling endpoint used by the dashboard while a payment settles."""
    if not transaction_id or not transaction_id.strip():
        raise PaymentValidationError("transaction_id is required", "transaction_id")

    return await PaymentService.get_payment_status(transaction_id.strip())
