"""
Cart model

A cart belongs to a user (user_id) or to a guest (anonymous_id).
Status Converting is a soft lock held while checkout runs; it is broken
by the payment timeout reconciler when the checkout never completes.
"""
from enum import Enum as PyEnum

from sqlalchemy import Column, Integer, String, ForeignKey, Index, UniqueConstraint, CheckConstraint
from sqlalchemy.orm import relationship

from keystock.core.database import Base, UTCDateTime, str_enum
from keystock.core.utils import utcnow


class CartStatus(str, PyEnum):
    ACTIVE = "Active"
    CONVERTING = "Converting"
    EXPIRED = "Expired"


class Cart(Base):
    __tablename__ = "carts"
    __table_args__ = (
        Index("ix_carts_user_status", "user_id", "status"),
        Index("ix_carts_anonymous_status", "anonymous_id", "status"),
        Index("ix_carts_status_updated", "status", "updated_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=True)
    anonymous_id = Column(String(64), nullable=True)
    status = Column(str_enum(CartStatus), nullable=False, default=CartStatus.ACTIVE)
    converted_order_id = Column(Integer, ForeignKey("orders.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, nullable=False)
    expires_at = Column(UTCDateTime, nullable=True)

    items = relationship(
        "CartItem",
        back_populates="cart",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def is_guest(self) -> bool:
        return self.user_id is None

    def __repr__(self):
        return f"<Cart {self.id} {self.status} user={self.user_id} anon={self.anonymous_id}>"


class CartItem(Base):
    __tablename__ = "cart_items"
    __table_args__ = (
        UniqueConstraint("cart_id", "variant_id", name="uq_cart_items_cart_variant"),
        CheckConstraint("quantity > 0", name="ck_cart_item_quantity_positive"),
    )

    id = Column(Integer, primary_key=True, index=True)
    cart_id = Column(Integer, ForeignKey("carts.id", ondelete="CASCADE"), nullable=False, index=True)
    variant_id = Column(Integer, ForeignKey("product_variants.id", ondelete="CASCADE"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False, default=1)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    cart = relationship("Cart", back_populates="items")
