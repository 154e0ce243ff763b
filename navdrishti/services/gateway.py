"""
Thin payment-gateway REST client (Razorpay-style API, no SDK dependency).
Uses HTTP Basic auth with key id/secret; signatures are hex HMAC-SHA256.
"""
from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional

import httpx

from navdrishti.config import Settings, get_settings
from navdrishti.errors import PaymentGatewayError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewayOrderRef:
    id: str
    amount: int          # minor units
    currency: str
    receipt: str


def _hex_hmac(secret: str, msg: bytes) -> str:
    return hmac.new(secret.encode(), msg, hashlib.sha256).hexdigest()


def _safe_equals(expected: str, provided: Optional[str]) -> bool:
    if not provided:
        return False
    return hmac.compare_digest(expected.encode(), provided.strip().encode())


class PaymentGateway:
    def __init__(
        self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> None:
        self._settings = settings
        self._timeout = httpx.Timeout(settings.gateway_timeout_seconds)
        self._transport = transport

    @property
    def key_id(self) -> Optional[str]:
        return self._settings.gateway_key_id

    def _auth(self) -> httpx.BasicAuth:
        if not self._settings.gateway_configured:
            raise PaymentGatewayError("Payment gateway is not configured")
        return httpx.BasicAuth(
            self._settings.gateway_key_id, self._settings.gateway_key_secret
        )

    def _url(self, path: str) -> str:
        return self._settings.gateway_base_url.rstrip("/") + path

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        auth = self._auth()
        try:
            async with httpx.AsyncClient(
                auth=auth, timeout=self._timeout, transport=self._transport
            ) as client:
                resp = await client.post(self._url(path), json=payload)
        except httpx.HTTPError as exc:
            logger.error("Gateway request failed path=%s: %s", path, exc)
            raise PaymentGatewayError("Payment gateway unavailable") from exc

        if not resp.is_success:
            logger.error(
                "Gateway API error path=%s status=%d body=%s",
                path, resp.status_code, resp.text[:300],
            )
            raise PaymentGatewayError("Payment gateway rejected the request")
        try:
            return resp.json()
        except ValueError as exc:
            raise PaymentGatewayError("Malformed payment gateway response") from exc

    async def create_order(
        self,
        amount_minor: int,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, str]] = None,
    ) -> GatewayOrderRef:
        """Issue a gateway order (checkout session) for *amount_minor*."""
        data = await self._post(
            "/orders",
            {
                "amount": amount_minor,
                "currency": currency,
                "receipt": receipt,
                "notes": notes or {},
            },
        )
        try:
            return GatewayOrderRef(
                id=str(data["id"]),
                amount=int(data.get("amount", amount_minor)),
                currency=str(data.get("currency", currency)),
                receipt=str(data.get("receipt", receipt)),
            )
        except (KeyError, TypeError, ValueError) as exc:
            logger.error("Malformed gateway order response: %r", data)
            raise PaymentGatewayError("Malformed payment gateway response") from exc

    async def refund_payment(self, gateway_payment_id: str, amount_minor: int) -> str:
        """Refund *amount_minor* of a captured payment; returns the gateway refund id."""
        data = await self._post(
            f"/payments/{gateway_payment_id}/refund",
            {"amount": amount_minor, "speed": "optimum"},
        )
        refund_id = data.get("id")
        if not refund_id:
            logger.error("Malformed gateway refund response: %r", data)
            raise PaymentGatewayError("Malformed payment gateway response")
        return str(refund_id)

    # ── Signatures ───────────────────────────────────────────────────────────

    def verify_client_signature(
        self, gateway_order_id: str, gateway_payment_id: str, signature: Optional[str]
    ) -> bool:
        secret = self._settings.gateway_key_secret
        if not secret:
            logger.error("Client signature check impossible: GATEWAY_KEY_SECRET not set")
            return False
        expected = _hex_hmac(secret, f"{gateway_order_id}|{gateway_payment_id}".encode())
        return _safe_equals(expected, signature)

    def verify_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        """Check the signature over the raw bytes, before the body is parsed."""
        secret = self._settings.gateway_webhook_secret
        if not secret:
            logger.error("Webhook rejected: GATEWAY_WEBHOOK_SECRET not set")
            return False
        return _safe_equals(_hex_hmac(secret, raw_body), signature)


def to_minor_units(amount: Decimal) -> int:
    """Decimal rupees -> integer paise."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def get_payment_gateway() -> PaymentGateway:
    """FastAPI dependency."""
    return PaymentGateway(get_settings())
