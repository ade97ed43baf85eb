"""
Raw inventory models

Three inventory shapes back the sellable stock of a variant:
- ProductKey: single-use license keys
- ProductAccount with max_users == 1: single-tenant accounts
- ProductAccount with max_users > 1: multi-seat shared accounts
"""
from enum import Enum as PyEnum

from sqlalchemy import Column, Integer, String, Boolean, ForeignKey, Index, CheckConstraint
from sqlalchemy.orm import relationship

from keystock.core.database import Base, UTCDateTime, str_enum
from keystock.core.utils import utcnow


class KeyStatus(str, PyEnum):
    AVAILABLE = "Available"
    ASSIGNED = "Assigned"
    EXPIRED = "Expired"
    INVALID = "Invalid"


class AccountStatus(str, PyEnum):
    ACTIVE = "Active"
    FULL = "Full"
    EXPIRED = "Expired"
    INACTIVE = "Inactive"


class ProductKey(Base):
    __tablename__ = "product_keys"
    __table_args__ = (
        Index("ix_product_keys_variant_status", "variant_id", "status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    variant_id = Column(Integer, ForeignKey("product_variants.id", ondelete="CASCADE"), nullable=False, index=True)
    key_code = Column(String(512), nullable=False)
    status = Column(str_enum(KeyStatus), nullable=False, default=KeyStatus.AVAILABLE)
    assigned_order_id = Column(Integer, ForeignKey("orders.id", ondelete="SET NULL"), nullable=True, index=True)
    expiry_date = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    variant = relationship("ProductVariant", back_populates="keys")


class ProductAccount(Base):
    __tablename__ = "product_accounts"
    __table_args__ = (
        CheckConstraint("max_users >= 1", name="ck_account_max_users_positive"),
        Index("ix_product_accounts_variant_status", "variant_id", "status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    variant_id = Column(Integer, ForeignKey("product_variants.id", ondelete="CASCADE"), nullable=False, index=True)
    username = Column(String(255), nullable=False)
    status = Column(str_enum(AccountStatus), nullable=False, default=AccountStatus.ACTIVE)
    max_users = Column(Integer, nullable=False, default=1)
    expiry_date = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    variant = relationship("ProductVariant", back_populates="accounts")
    customers = relationship("ProductAccountCustomer", back_populates="account", cascade="all, delete-orphan")


class ProductAccountCustomer(Base):
    """Seat assignment of a customer on an account."""
    __tablename__ = "product_account_customers"
    __table_args__ = (
        Index("ix_account_customers_account_active", "account_id", "is_active"),
    )

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("product_accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    is_active = Column(Boolean, nullable=False, default=True)
    added_at = Column(UTCDateTime, default=utcnow)

    account = relationship("ProductAccount", back_populates="customers")
