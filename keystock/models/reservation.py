"""
Inventory Reservation model

Time-boxed hold of variant quantity tied to one order.

Lifecycle:
1. Reserved at checkout, valid until reserved_until
2. Finalized once payment is confirmed (never returns to the sellable pool)
3. Released on cancellation or expiry (kept for audit, never reused)

Reserved -> {Released, Finalized} only; both are terminal.
"""
from datetime import datetime, timedelta
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import Column, Integer, ForeignKey, Index, CheckConstraint
from sqlalchemy.orm import relationship

from keystock.core.database import Base, UTCDateTime, str_enum
from keystock.core.utils import utcnow

# Default reservation TTL in minutes
RESERVATION_TTL_MINUTES = 5


class ReservationStatus(str, PyEnum):
    RESERVED = "Reserved"
    RELEASED = "Released"
    FINALIZED = "Finalized"


class InventoryReservation(Base):
    __tablename__ = "order_inventory_reservations"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_reservation_quantity_positive"),
        Index("ix_reservations_order_variant", "order_id", "variant_id"),
        Index("ix_reservations_status_until", "status", "reserved_until"),
        Index("ix_reservations_variant_status", "variant_id", "status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    variant_id = Column(Integer, ForeignKey("product_variants.id", ondelete="CASCADE"), nullable=False)
    quantity = Column(Integer, nullable=False)
    status = Column(str_enum(ReservationStatus), nullable=False, default=ReservationStatus.RESERVED)
    reserved_until = Column(UTCDateTime, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    order = relationship("Order", back_populates="reservations")
    variant = relationship("ProductVariant")

    @classmethod
    def create_expiry(cls, ttl_minutes: int = RESERVATION_TTL_MINUTES, now: Optional[datetime] = None) -> datetime:
        """Calculate expiry timestamp from now."""
        return (now or utcnow()) + timedelta(minutes=ttl_minutes)
