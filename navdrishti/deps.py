"""
FastAPI dependency utilities: caller identity, webhook / carrier-push
authentication and rate limiting.
"""
from __future__ import annotations

import hmac
import logging
from typing import Awaitable, Callable, Optional

import jwt
from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from navdrishti.config import get_settings
from navdrishti.database import get_db
from navdrishti.errors import (
    AuthenticationError,
    AuthorizationError,
    PaymentGatewaySignatureError,
)
from navdrishti.services import rate_limit
from navdrishti.services.gateway import PaymentGateway, get_payment_gateway
from navdrishti.services.state_machine import Actor

logger = logging.getLogger(__name__)
settings = get_settings()


def _client_host(request: Request) -> str:
    return request.client.host if request.client else "unknown"


# ── Identity ─────────────────────────────────────────────────────────────────

async def get_current_user(authorization: str | None = Header(default=None)) -> Actor:
    """
    Verify the bearer token issued by the auth service.
    Claims: ``id`` (or ``sub``) and ``user_type`` / ``role``.
    """
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthenticationError("Missing bearer token")
    token = authorization.removeprefix("Bearer ").strip()
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options={"verify_sub": False},
        )
    except jwt.PyJWTError as exc:
        logger.info("Rejected bearer token: %s", exc)
        raise AuthenticationError("Invalid or expired token") from exc

    raw_id = payload.get("id", payload.get("sub"))
    try:
        user_id = int(raw_id)
    except (TypeError, ValueError):
        raise AuthenticationError("Token carries no user id")
    role = payload.get("role") or payload.get("user_type") or "individual"
    return Actor(id=user_id, role=str(role))


async def require_admin(user: Actor = Depends(get_current_user)) -> Actor:
    if not user.is_admin:
        raise AuthorizationError("Admin access required")
    return user


# ── Rate limiting ────────────────────────────────────────────────────────────

def rate_limited(bucket: str) -> Callable[..., Awaitable[None]]:
    """
    Build a dependency counting the caller's requests to *bucket*.
    Keyed on the user id when authenticated, else the client address.
    """

    async def _check(
        request: Request,
        authorization: str | None = Header(default=None),
        db: AsyncSession = Depends(get_db),
    ) -> None:
        who: Optional[str] = None
        if authorization:
            try:
                who = f"user:{(await get_current_user(authorization)).id}"
            except AuthenticationError:
                who = None
        key = f"{bucket}:{who or 'ip:' + _client_host(request)}"
        await rate_limit.hit(
            db, key, settings.rate_limit_requests, settings.rate_limit_window_seconds
        )

    return _check


# ── Gateway webhook ──────────────────────────────────────────────────────────

async def verify_gateway_webhook(
    request: Request,
    x_signature: str | None = Header(default=None),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> bytes:
    """
    Check the HMAC over the raw body before anything parses it.
    Returns the raw request body so routers don't need to re-read it.
    """
    body = await request.body()
    if not x_signature or not gateway.verify_webhook_signature(body, x_signature):
        logger.warning(
            "Webhook signature rejected from %s (%d bytes)", _client_host(request), len(body)
        )
        raise PaymentGatewaySignatureError()
    return body


# ── Carrier tracking push ────────────────────────────────────────────────────

async def verify_carrier_push(
    request: Request,
    x_carrier_token: str | None = Header(default=None),
) -> None:
    if not settings.carrier_push_token:
        logger.warning("Carrier push from %s refused: no CARRIER_PUSH_TOKEN set", _client_host(request))
        raise AuthenticationError("Carrier push not configured")
    if not x_carrier_token or not hmac.compare_digest(x_carrier_token, settings.carrier_push_token):
        logger.warning("Carrier push token mismatch from %s", _client_host(request))
        raise AuthenticationError("Invalid carrier token")
