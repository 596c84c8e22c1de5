"""
Payment webhook
===============

POST /api/v1/payments/webhook -- card checkout succeeded for a delivered move

The raw body must carry a matching ``X-Signature`` (hex HMAC-SHA256 keyed
with ``PAYMENT_WEBHOOK_SECRET``).  With no secret configured every call
is refused.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from src.api.dependencies import get_engine
from src.api.middleware import limiter
from src.api.schemas import MoveResponse, PaymentWebhookRequest
from src.config import settings
from src.domain.errors import Forbidden
from src.infrastructure.payments import verify_webhook_signature
from src.services.dispatch import DispatchEngine

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/webhook", response_model=MoveResponse, summary="Card payment completed")
@limiter.limit("100/minute")
async def payment_webhook(
    request: Request,
    body: PaymentWebhookRequest,
    x_signature: Optional[str] = Header(None),
    engine: DispatchEngine = Depends(get_engine),
):
    if not settings.payment_webhook_secret:
        raise Forbidden("Payment webhook is not configured.")
    if not verify_webhook_signature(
        await request.body(), x_signature, settings.payment_webhook_secret
    ):
        raise Forbidden("Invalid webhook signature.")
    move = await engine.complete_card_payment(body.move_id, body.transaction_id)
    return MoveResponse.from_domain(move)
