"""
HTTP client for the payment sub-system, plus webhook signature checks.

The payment service owns the ledger and the card checkout; this side
only records cash settlement and asks for a checkout session.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Optional

import httpx

from src.domain.entities import Move
from src.domain.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)


class HttpPaymentGateway:
    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 5.0,
    ):
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def _post(self, path: str, body: dict) -> dict:
        try:
            response = await self._client.post(path, json=body)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise UpstreamUnavailable(f"Payment service call {path} failed: {exc}") from exc
        return response.json() if response.content else {}

    async def finalize_cash_payment(self, move_id: str) -> None:
        await self._post("/payments/cash", {"move_id": move_id})
        logger.info("Cash payment recorded for move %s", move_id)

    async def create_card_payment_session(self, move: Move) -> str:
        data = await self._post(
            "/checkout-sessions",
            {
                "move_id": move.id,
                "customer_id": move.customer_id,
                "amount": move.pricing.total,
            },
        )
        url = data.get("url") or data.get("checkout_url")
        if not url:
            raise UpstreamUnavailable("Payment service returned no checkout URL.")
        return url

    async def aclose(self) -> None:
        await self._client.aclose()


def sign_payload(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_webhook_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """Constant-time HMAC-SHA256 check of a webhook body."""
    if not signature:
        return False
    return hmac.compare_digest(sign_payload(body, secret), signature)
