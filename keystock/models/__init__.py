from keystock.models.product import (
    Product,
    ProductVariant,
    ProductType,
    StockStatus,
    StockStatusMixin,
    resolve_stock_status,
)
from keystock.models.inventory import (
    ProductKey,
    ProductAccount,
    ProductAccountCustomer,
    KeyStatus,
    AccountStatus,
)
from keystock.models.order import (
    Order,
    OrderStatus,
    PaymentAttempt,
    PaymentStatus,
    PaymentTargetType,
    ACTIVE_PAYMENT_STATUSES,
)
from keystock.models.reservation import InventoryReservation, ReservationStatus
from keystock.models.cart import Cart, CartItem, CartStatus

__all__ = [
    "Product",
    "ProductVariant",
    "ProductType",
    "StockStatus",
    "StockStatusMixin",
    "resolve_stock_status",
    "ProductKey",
    "ProductAccount",
    "ProductAccountCustomer",
    "KeyStatus",
    "AccountStatus",
    "Order",
    "OrderStatus",
    "PaymentAttempt",
    "PaymentStatus",
    "PaymentTargetType",
    "ACTIVE_PAYMENT_STATUSES",
    "InventoryReservation",
    "ReservationStatus",
    "Cart",
    "CartItem",
    "CartStatus",
]
