"""
Error taxonomy for the Shop API.

Every error the service raises on purpose is a ShopError with a stable
`kind`; the HTTP layer renders it as {"error": kind, "detail": message}.
"""
from typing import Any, Dict, Optional


class ShopError(Exception):
    kind = "error"
    status_code = 500

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra: Dict[str, Any] = extra

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.kind, "detail": self.message}
        body.update(self.extra)
        return body


class ValidationError(ShopError):
    kind = "validation_error"
    status_code = 400


class EmptyCartError(ValidationError):
    kind = "empty_cart"

    def __init__(self, message: str = "Cart is empty"):
        super().__init__(message)


class InsufficientStockError(ShopError):
    kind = "insufficient_stock"
    status_code = 409

    def __init__(self, product: str, requested: int, available: int):
        super().__init__(
            f"Insufficient stock for {product}: requested {requested}, available {available}",
            product=product,
            requested=requested,
            available=available,
        )
        self.product = product
        self.requested = requested
        self.available = available


class NotFoundError(ShopError):
    kind = "not_found"
    status_code = 404


class InvalidStateError(ShopError):
    kind = "invalid_state"
    status_code = 409


class SignatureError(ShopError):
    kind = "signature_invalid"
    status_code = 400

    def __init__(self, message: str = "Invalid signature"):
        super().__init__(message)


class GatewayError(ShopError):
    kind = "gateway_error"
    status_code = 502

    def __init__(self, message: str, retryable: bool = True, upstream_status: Optional[int] = None):
        super().__init__(message, retryable=retryable)
        self.retryable = retryable
        self.upstream_status = upstream_status


class PersistenceError(ShopError):
    kind = "persistence_error"
    status_code = 500


class RateLimitError(ShopError):
    kind = "rate_limited"
    status_code = 429
