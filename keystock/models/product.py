"""
Product and ProductVariant models

stock_qty on both tables is a derived cache written only by the stock
recalculator. INACTIVE is operator-set and never overwritten by derivation.
"""
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import Column, Integer, String, ForeignKey, Index, CheckConstraint
from sqlalchemy.orm import relationship

from keystock.core.database import Base, UTCDateTime, str_enum
from keystock.core.utils import utcnow


class ProductType(str, PyEnum):
    PERSONAL_KEY = "PERSONAL_KEY"
    PERSONAL_ACCOUNT = "PERSONAL_ACCOUNT"
    SHARED_ACCOUNT = "SHARED_ACCOUNT"
    SHARED_KEY = "SHARED_KEY"


class StockStatus(str, PyEnum):
    ACTIVE = "ACTIVE"
    OUT_OF_STOCK = "OUT_OF_STOCK"
    INACTIVE = "INACTIVE"


def resolve_stock_status(stock: int, current: StockStatus) -> StockStatus:
    """
    Status rule shared by variants and products.

    - INACTIVE => keep
    - stock <= 0 => OUT_OF_STOCK
    - stock > 0 => ACTIVE
    """
    if current == StockStatus.INACTIVE:
        return StockStatus.INACTIVE
    return StockStatus.OUT_OF_STOCK if stock <= 0 else StockStatus.ACTIVE


class StockStatusMixin:
    """Typed stock/status writer for entities carrying derived stock."""

    def apply_stock(self, stock_qty: int, now: datetime) -> None:
        self.stock_qty = max(0, int(stock_qty))
        self.status = resolve_stock_status(self.stock_qty, self.status)
        self.updated_at = now


class Product(StockStatusMixin, Base):
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("stock_qty >= 0", name="ck_product_stock_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    product_type = Column(str_enum(ProductType), nullable=False, index=True)
    status = Column(str_enum(StockStatus), nullable=False, default=StockStatus.ACTIVE)
    stock_qty = Column(Integer, nullable=False, default=0)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    variants = relationship("ProductVariant", back_populates="product", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Product {self.id} {self.product_type.value if self.product_type else None} stock={self.stock_qty}>"


class ProductVariant(StockStatusMixin, Base):
    __tablename__ = "product_variants"
    __table_args__ = (
        CheckConstraint("stock_qty >= 0", name="ck_variant_stock_non_negative"),
        Index("ix_product_variants_product_status", "product_id", "status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    status = Column(str_enum(StockStatus), nullable=False, default=StockStatus.ACTIVE)
    stock_qty = Column(Integer, nullable=False, default=0)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    product = relationship("Product", back_populates="variants")
    keys = relationship("ProductKey", back_populates="variant")
    accounts = relationship("ProductAccount", back_populates="variant")

    def __repr__(self):
        return f"<ProductVariant {self.id} product={self.product_id} stock={self.stock_qty}>"
