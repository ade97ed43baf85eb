"""
Order and payment attempt models

Order.status is the join point between payment outcomes and the fate of
the order's inventory reservations. A target may carry several payment
attempts; at most one of them wins.
"""
from enum import Enum as PyEnum

from sqlalchemy import Column, Integer, String, ForeignKey, Index, Numeric
from sqlalchemy.orm import relationship

from keystock.core.database import Base, UTCDateTime, str_enum
from keystock.core.utils import utcnow


class OrderStatus(str, PyEnum):
    PENDING_PAYMENT = "PendingPayment"
    PAID = "Paid"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    CANCELLED_BY_TIMEOUT = "CancelledByTimeout"


class PaymentStatus(str, PyEnum):
    PENDING = "Pending"
    PAID = "Paid"
    SUCCESS = "Success"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    FAILED = "Failed"
    TIMEOUT = "Timeout"


# Attempts in these states may still win (or already won) the target
ACTIVE_PAYMENT_STATUSES = (
    PaymentStatus.PENDING,
    PaymentStatus.PAID,
    PaymentStatus.SUCCESS,
    PaymentStatus.COMPLETED,
)


class PaymentTargetType(str, PyEnum):
    ORDER = "Order"
    SUPPORT_PLAN = "SupportPlan"


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=True, index=True)
    status = Column(str_enum(OrderStatus), nullable=False, default=OrderStatus.PENDING_PAYMENT, index=True)
    total_amount = Column(Numeric(12, 2), nullable=False, default=0)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    reservations = relationship("InventoryReservation", back_populates="order")


class PaymentAttempt(Base):
    __tablename__ = "payments"
    __table_args__ = (
        Index("ix_payments_target", "target_type", "target_id"),
        Index("ix_payments_status_created", "status", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    provider = Column(String(32), nullable=False, default="PayOS")
    status = Column(str_enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)
    target_type = Column(str_enum(PaymentTargetType), nullable=False)
    # Interpreted per target_type (order id, support plan id, ...)
    target_id = Column(String(64), nullable=True)
    external_link_id = Column(String(128), nullable=True)
    amount = Column(Numeric(12, 2), nullable=False, default=0)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<PaymentAttempt {self.id} {self.target_type}:{self.target_id} {self.status}>"
