"""
Domain error taxonomy.

Every error carries the HTTP status it maps to; ``main.py`` registers a single
exception handler that renders them as ``{"error": code, "detail": ...}``.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class CommerceError(Exception):
    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, detail: str = "", **extra: Any) -> None:
        super().__init__(detail or self.code)
        self.detail = detail or self.code
        self.extra = extra

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.code, "detail": self.detail}
        body.update({k: v for k, v in self.extra.items() if v is not None})
        return body


class AuthenticationError(CommerceError):
    status_code = 401
    code = "authentication_required"


class AuthorizationError(CommerceError):
    status_code = 403
    code = "access_denied"


class NotFoundError(CommerceError):
    status_code = 404
    code = "not_found"


class ValidationError(CommerceError):
    status_code = 400
    code = "validation_error"

    def __init__(self, detail: str, field: Optional[str] = None) -> None:
        super().__init__(detail, field=field)
        self.field = field


class InsufficientStock(CommerceError):
    status_code = 409
    code = "insufficient_stock"

    def __init__(self, item_id: int, requested: int, available: Optional[int] = None) -> None:
        if available is None:
            detail = f"Insufficient stock for item {item_id} (requested {requested})"
        else:
            detail = f"Only {available} unit(s) of item {item_id} available (requested {requested})"
        super().__init__(detail, item_id=item_id, requested=requested, available=available)
        self.item_id = item_id
        self.requested = requested
        self.available = available


class InvalidStateTransition(CommerceError):
    status_code = 409
    code = "invalid_state_transition"

    def __init__(self, current: str, target: str, detail: str = "") -> None:
        super().__init__(
            detail or f"Cannot move order from '{current}' to '{target}'",
            current=current,
            target=target,
        )
        self.current = current
        self.target = target


class PaymentGatewaySignatureError(CommerceError):
    # Never say which part of the signature was wrong
    status_code = 400
    code = "invalid_signature"

    def __init__(self) -> None:
        super().__init__("Invalid signature")


class PaymentGatewayError(CommerceError):
    status_code = 502
    code = "payment_gateway_error"


class ShippingProviderError(CommerceError):
    status_code = 502
    code = "shipping_provider_error"


class RateLimitExceeded(CommerceError):
    status_code = 429
    code = "rate_limited"

    def __init__(self, retry_after: int) -> None:
        super().__init__("Too many requests", retry_after=retry_after)
        self.retry_after = retry_after


class PersistenceError(CommerceError):
    status_code = 500
    code = "internal_error"

    def __init__(self) -> None:
        super().__init__("Internal server error")
