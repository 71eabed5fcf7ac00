from typing import Optional
import logging

from fastapi import APIRouter, Request, Header

from agrocycle.api.deps import DB, Gateway
from agrocycle.schemas.payment import WebhookResponse
from agrocycle.services.payment_reconciliation_service import PaymentReconciliationService


logger = logging.getLogger(__name__)

router = APIRouter(tags=["Webhooks"])


@router.post(
    "/razorpay",
    response_model=WebhookResponse,
    summary="Razorpay webhook handler",
    description="Handle payment and payout events from Razorpay. This endpoint is called by Razorpay servers.",
    include_in_schema=False  # Hide from API docs for security
)
async def razorpay_webhook(
    request: Request,
    db: DB,
    gateway: Gateway,
    x_razorpay_signature: Optional[str] = Header(None, alias="X-Razorpay-Signature"),
):
    """
    Handle Razorpay webhook events.

    Events handled:
    - payment.captured / payment.authorized: credit the order
    - payment.failed: recorded, order untouched
    - payout.processed / payout.failed / payout.rejected: update the payout

    Security:
    - Verifies the signature over the raw body using RAZORPAY_WEBHOOK_SECRET
    - Idempotent: duplicates are acknowledged with status "already_processed"
    """
    # Get raw body for signature verification
    body = await request.body()

    if not x_razorpay_signature:
        logger.warning("Webhook received without signature header")

    service = PaymentReconciliationService(db, gateway)
    outcome = await service.handle_webhook(body, x_razorpay_signature)

    return WebhookResponse(status=outcome.status, message=outcome.message or None)
