"""
Ordering Engine Error Kinds

Every failure the engine reports derives from OrderingError. Each class
carries a machine-readable code, a category the HTTP layer maps to a
status code, and whether the client may retry the same request.

Categories:
    - validation: the request itself is wrong (400)
    - not_found: the referenced resource does not exist (404)
    - retryable: storage was unreachable or timed out (503)
    - storage: the durable store rejected the write (409)

Author: Khalil Bannouri
Version: 1.0.0
"""

from typing import Optional


class OrderingError(Exception):
    """Base class for all engine errors."""

    code = "ORDERING_ERROR"
    category = "validation"
    retryable = False

    def __init__(self, message: str, *, detail: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "success": False,
            "error": self.code,
            "detail": self.message,
            "retryable": self.retryable,
            **({"context": self.detail} if self.detail else {}),
        }


# =============================================================================
# VALIDATION
# =============================================================================

class InvalidSession(OrderingError):
    code = "INVALID_SESSION"


class SessionExpired(InvalidSession):
    code = "SESSION_EXPIRED"


class UnknownCustomization(OrderingError):
    code = "UNKNOWN_CUSTOMIZATION"


class InvalidQuantity(OrderingError):
    code = "INVALID_QUANTITY"


class EmptyCart(OrderingError):
    code = "EMPTY_CART"


class InvalidOrderStatus(OrderingError):
    code = "INVALID_ORDER_STATUS"


# =============================================================================
# NOT FOUND
# =============================================================================

class LineItemNotFound(OrderingError):
    code = "LINE_ITEM_NOT_FOUND"
    category = "not_found"


class MenuItemNotFound(OrderingError):
    code = "MENU_ITEM_NOT_FOUND"
    category = "not_found"


class OrderNotFound(OrderingError):
    code = "ORDER_NOT_FOUND"
    category = "not_found"


# =============================================================================
# STORAGE
# =============================================================================

class TransientStorageFailure(OrderingError):
    """Cache or durable store unreachable or timed out; safe to retry."""
    code = "TRANSIENT_STORAGE_FAILURE"
    category = "retryable"
    retryable = True


class CacheUnavailable(TransientStorageFailure):
    """Raised by cache backends; the coherence layer recovers from it."""
    code = "CACHE_UNAVAILABLE"


class DurableWriteFailure(OrderingError):
    """The durable store rejected the write (constraint violation etc.)."""
    code = "DURABLE_WRITE_FAILURE"
    category = "storage"
