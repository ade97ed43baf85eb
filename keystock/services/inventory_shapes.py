"""
Inventory Shapes

Each sellable product type derives raw capacity from a different kind of
inventory row. A shape answers one question: how many units of a variant
could be sold right now, before subtracting reservations.

PERSONAL_KEY      : keys Available, not assigned to an order, not expired
PERSONAL_ACCOUNT  : accounts Active, max_users == 1, not expired, no active customer
SHARED_ACCOUNT    : free seats (max_users - active customers) of Active,
                    not expired accounts with max_users > 1
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict

from sqlalchemy import select, func, or_, and_, case
from sqlalchemy.ext.asyncio import AsyncSession

from keystock.models import (
    ProductType,
    ProductKey,
    ProductAccount,
    ProductAccountCustomer,
    KeyStatus,
    AccountStatus,
)


class InventoryShape(ABC):
    """Raw capacity reader for one product type."""

    product_type: ProductType

    @abstractmethod
    async def raw_capacity(self, db: AsyncSession, variant_id: int, now: datetime) -> int:
        """Sellable units of the variant before reservations are subtracted."""


class PersonalKeyShape(InventoryShape):
    product_type = ProductType.PERSONAL_KEY

    async def raw_capacity(self, db: AsyncSession, variant_id: int, now: datetime) -> int:
        result = await db.execute(
            select(func.count(ProductKey.id)).where(
                ProductKey.variant_id == variant_id,
                ProductKey.status == KeyStatus.AVAILABLE,
                ProductKey.assigned_order_id.is_(None),
                or_(ProductKey.expiry_date.is_(None), ProductKey.expiry_date >= now),
            )
        )
        return int(result.scalar() or 0)


def _active_customer_count():
    return (
        select(func.count(ProductAccountCustomer.id))
        .where(
            ProductAccountCustomer.account_id == ProductAccount.id,
            ProductAccountCustomer.is_active.is_(True),
        )
        .correlate(ProductAccount)
        .scalar_subquery()
    )


def _account_is_sellable(variant_id: int, now: datetime):
    return and_(
        ProductAccount.variant_id == variant_id,
        ProductAccount.status == AccountStatus.ACTIVE,
        or_(ProductAccount.expiry_date.is_(None), ProductAccount.expiry_date >= now),
    )


class PersonalAccountShape(InventoryShape):
    product_type = ProductType.PERSONAL_ACCOUNT

    async def raw_capacity(self, db: AsyncSession, variant_id: int, now: datetime) -> int:
        result = await db.execute(
            select(func.count(ProductAccount.id)).where(
                _account_is_sellable(variant_id, now),
                ProductAccount.max_users == 1,
                ~ProductAccount.customers.any(ProductAccountCustomer.is_active.is_(True)),
            )
        )
        return int(result.scalar() or 0)


class SharedAccountShape(InventoryShape):
    product_type = ProductType.SHARED_ACCOUNT

    async def raw_capacity(self, db: AsyncSession, variant_id: int, now: datetime) -> int:
        free_seats = ProductAccount.max_users - _active_customer_count()
        # Over-assigned accounts contribute zero, never a negative count
        result = await db.execute(
            select(func.coalesce(func.sum(case((free_seats > 0, free_seats), else_=0)), 0)).where(
                _account_is_sellable(variant_id, now),
                ProductAccount.max_users > 1,
            )
        )
        return max(0, int(result.scalar() or 0))


DEFAULT_SHAPES: Dict[ProductType, InventoryShape] = {
    shape.product_type: shape
    for shape in (PersonalKeyShape(), PersonalAccountShape(), SharedAccountShape())
}

