"""
KeyStock Exception Hierarchy

Every error names the order, cart, variants or payment link it concerns,
so log lines and API error bodies can be traced back to ledger rows.

Exception Hierarchy:
    KeystockError
    ├── ReservationError
    │   ├── ReservationNotFoundError
    │   └── InsufficientStockError
    ├── CartError
    │   └── CartConflictError
    └── PaymentGatewayError
"""
from typing import Any, Dict, Iterable, List, Optional


class KeystockError(Exception):
    """
    Base exception for all KeyStock errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        order_id / cart_id / variant_ids: The ledger rows involved, when known
        details: Those ids plus any extra context, ready for structured logging
    """

    default_code: str = "KEYSTOCK_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        *,
        order_id: Optional[int] = None,
        cart_id: Optional[int] = None,
        variant_ids: Optional[Iterable[int]] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.order_id = order_id
        self.cart_id = cart_id
        self.variant_ids: List[int] = list(variant_ids) if variant_ids is not None else []

        self.details = dict(details or {})
        if order_id is not None:
            self.details["order_id"] = order_id
        if cart_id is not None:
            self.details["cart_id"] = cart_id
        if self.variant_ids:
            self.details["variant_ids"] = self.variant_ids
        super().__init__(self.message)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r}, details={self.details!r})"


# =============================================================================
# RESERVATION ERRORS
# =============================================================================

class ReservationError(KeystockError):
    """Base exception for reservation ledger errors."""
    default_code = "RESERVATION_ERROR"


class ReservationNotFoundError(ReservationError):
    """No Reserved row exists for the order."""
    default_code = "RESERVATION_NOT_FOUND"

    def __init__(self, order_id: int, message: Optional[str] = None):
        super().__init__(message or f"No active reservation for order {order_id}", order_id=order_id)


class InsufficientStockError(ReservationError):
    """Reserved quantity exceeded raw capacity after recalculation."""
    default_code = "INSUFFICIENT_STOCK"

    def __init__(self, order_id: int, variant_ids: Iterable[int], message: Optional[str] = None):
        variant_ids = list(variant_ids)
        super().__init__(
            message or f"Insufficient stock for order {order_id}: variants {variant_ids}",
            order_id=order_id,
            variant_ids=variant_ids,
        )


# =============================================================================
# CART ERRORS
# =============================================================================

class CartError(KeystockError):
    """Base exception for cart lifecycle errors."""
    default_code = "CART_ERROR"


class CartConflictError(CartError):
    """Cart is locked by a checkout in progress."""
    default_code = "CART_CONFLICT"


# =============================================================================
# PAYMENT GATEWAY ERRORS
# =============================================================================

class PaymentGatewayError(KeystockError):
    """Transport or protocol failure talking to the payment gateway."""
    default_code = "PAYMENT_GATEWAY_ERROR"

    def __init__(self, message: str, link_id: Optional[str] = None, status_code: Optional[int] = None):
        details = {}
        if link_id is not None:
            details["link_id"] = link_id
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, details=details)
        self.link_id = link_id
        self.status_code = status_code
