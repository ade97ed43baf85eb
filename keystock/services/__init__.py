from keystock.services.stock_recalculator import StockRecalculator, StockSyncResult, stock_recalculator
from keystock.services.reservation_service import (
    InventoryReservationService,
    ReservationLine,
    ReleaseSummary,
    get_reservation_stats,
    inventory_reservations,
)
from keystock.services.cart_service import CartOwner, CartService, cart_service
from keystock.services.payment_gateway import PaymentGateway, PayOSClient, payos_client

__all__ = [
    "StockRecalculator",
    "StockSyncResult",
    "stock_recalculator",
    "InventoryReservationService",
    "ReservationLine",
    "ReleaseSummary",
    "get_reservation_stats",
    "inventory_reservations",
    "CartOwner",
    "CartService",
    "cart_service",
    "PaymentGateway",
    "PayOSClient",
    "payos_client",
]
