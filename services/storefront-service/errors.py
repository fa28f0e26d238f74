"""Business exceptions rendered as API error envelopes."""
from typing import Any, Dict, List, Optional


class StorefrontError(Exception):
    """Base exception for all business rule failures."""
    status_code = 400
    code = "error"

    def __init__(self, message: str = "Request failed", payload: Optional[Dict[str, Any]] = None):
        self.message = message
        self.payload = payload or {}
        super().__init__(self.message)

    def to_response(self) -> Dict[str, Any]:
        """Build the response envelope for this error."""
        body = {"success": False, "code": self.code, "message": self.message}
        body.update(self.payload)
        return body


class NotFound(StorefrontError):
    """Raised when a requested entity doesn't exist or isn't visible to the caller."""
    status_code = 404
    code = "not_found"


class InsufficientStock(StorefrontError):
    """Raised when the catalog cannot cover a requested quantity."""
    code = "insufficient_stock"

    def __init__(self, product_name: str, available: int, requested: int):
        super().__init__(
            f"Not enough stock available for \"{product_name}\". "
            f"Only {available} items left (requested {requested}).",
            {"available": available, "requested": requested},
        )


class EmptyCart(StorefrontError):
    """Raised when checking out a cart with no lines."""
    code = "empty_cart"

    def __init__(self):
        super().__init__("Cannot checkout with an empty cart")


class ValidationFailed(StorefrontError):
    """Raised when one or more cart lines fail checkout validation."""
    code = "validation_failed"

    def __init__(self, invalid_items: List[Dict[str, Any]]):
        summary = "; ".join(item["message"] for item in invalid_items)
        super().__init__(f"Cart validation failed: {summary}", {"invalidItems": invalid_items})
        self.invalid_items = invalid_items


class PaymentFailed(StorefrontError):
    """Raised when the payment processor declines a payment."""
    code = "payment_failed"

    def __init__(self, reason: str):
        super().__init__(f"Payment processing failed: {reason}", {"reason": reason})
        self.reason = reason


class InventoryChanged(StorefrontError):
    """Raised when catalog state moved between validation and order creation."""
    code = "inventory_changed"


class InvalidStatus(StorefrontError):
    """Raised for an unknown order status or bulk action."""
    code = "invalid_status"


class InvalidTransition(StorefrontError):
    """Raised when an order is asked to leave a terminal state."""
    code = "invalid_transition"


class LockTimeout(StorefrontError):
    """Raised when a row lock could not be acquired in time. Safe to retry."""
    status_code = 503
    code = "lock_timeout"

    def __init__(self, message: str = "The store is busy, please retry in a moment"):
        super().__init__(message)


class Unauthorized(StorefrontError):
    """Raised when a request carries no valid credentials."""
    status_code = 401
    code = "unauthorized"


class Forbidden(StorefrontError):
    """Raised when the caller lacks the role or ownership for a resource."""
    status_code = 403
    code = "forbidden"
