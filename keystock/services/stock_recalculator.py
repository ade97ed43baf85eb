"""
Stock Recalculator

Single writer of derived stock. Recomputes a variant's sellable quantity
from its raw inventory minus live reservations, then rolls the result up
into the parent product:

    raw      = shape.raw_capacity(variant)
    reserved = SUM(quantity) WHERE status = Reserved AND reserved_until > now
    stock    = max(0, raw - reserved)
    product  = stock + SUM(stored stock of sibling variants)

Finalized reservations do not subtract; the confirming process marks the
underlying key/account assigned, which removes it from raw capacity.

Safe to call repeatedly: with no inventory change in between, a second
call writes the same values.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import joinedload

from keystock.core.database import transaction
from keystock.core.utils import ensure_utc, utcnow
from keystock.models import (
    ProductType,
    ProductVariant,
    StockStatus,
    InventoryReservation,
    ReservationStatus,
)
from keystock.services.inventory_shapes import InventoryShape, DEFAULT_SHAPES

logger = logging.getLogger(__name__)


@dataclass
class StockSyncResult:
    """Before/after snapshot of one recalculation."""
    variant_id: int
    product_id: int
    product_type: ProductType
    raw_qty: int
    reserved_qty: int
    old_stock: int
    new_stock: int
    old_status: StockStatus
    new_status: StockStatus
    old_product_stock: int
    new_product_stock: int
    old_product_status: StockStatus
    new_product_status: StockStatus

    @property
    def oversold(self) -> bool:
        """More units held by live reservations than raw inventory can back."""
        return self.reserved_qty > self.raw_qty

    @property
    def changed(self) -> bool:
        return (
            self.old_stock != self.new_stock
            or self.old_status != self.new_status
            or self.old_product_stock != self.new_product_stock
            or self.old_product_status != self.new_product_status
        )


async def get_reserved_quantity(db: AsyncSession, variant_id: int, now: datetime) -> int:
    """Quantity held by Reserved rows still inside their window."""
    result = await db.execute(
        select(func.coalesce(func.sum(InventoryReservation.quantity), 0)).where(
            InventoryReservation.variant_id == variant_id,
            InventoryReservation.status == ReservationStatus.RESERVED,
            InventoryReservation.reserved_until > now,
            InventoryReservation.quantity > 0,
        )
    )
    return int(result.scalar() or 0)


class StockRecalculator:
    """
    Derives and persists variant/product stock for key and account types.

    Shapes are looked up by product type; types without a shape (e.g.
    SHARED_KEY) are not applicable and are left untouched.
    """

    def __init__(self, shapes: Optional[Dict[ProductType, InventoryShape]] = None):
        self.shapes = dict(shapes if shapes is not None else DEFAULT_SHAPES)

    def supports(self, product_type: Optional[ProductType]) -> bool:
        return product_type is not None and product_type in self.shapes

    async def recalculate(
        self,
        db: AsyncSession,
        variant_id: int,
        now: Optional[datetime] = None,
    ) -> Optional[StockSyncResult]:
        """
        Recalculate and persist stock for one variant and its product.

        Returns None when the variant does not exist or its product type
        has no inventory shape.
        """
        now = ensure_utc(now or utcnow())

        async with transaction(db):
            result = await db.execute(
                select(ProductVariant)
                .options(joinedload(ProductVariant.product))
                .where(ProductVariant.id == variant_id)
                .execution_options(populate_existing=True)
            )
            variant = result.unique().scalar_one_or_none()

            if variant is None or variant.product is None:
                return None

            product = variant.product
            shape = self.shapes.get(product.product_type)
            if shape is None:
                return None

            raw_qty = await shape.raw_capacity(db, variant.id, now)
            reserved_qty = await get_reserved_quantity(db, variant.id, now)
            new_stock = max(0, raw_qty - reserved_qty)

            old_stock = variant.stock_qty or 0
            old_status = variant.status
            old_product_stock = product.stock_qty or 0
            old_product_status = product.status

            variant.apply_stock(new_stock, now)

            # Siblings contribute their stored stock; this variant its fresh value
            sibling_result = await db.execute(
                select(func.coalesce(func.sum(ProductVariant.stock_qty), 0)).where(
                    ProductVariant.product_id == product.id,
                    ProductVariant.id != variant.id,
                )
            )
            other_stock = int(sibling_result.scalar() or 0)
            product.apply_stock(other_stock + new_stock, now)

        if reserved_qty > raw_qty:
            logger.warning(
                f"[StockSync] Variant {variant_id} oversold: reserved={reserved_qty} raw={raw_qty}"
            )

        return StockSyncResult(
            variant_id=variant.id,
            product_id=product.id,
            product_type=product.product_type,
            raw_qty=raw_qty,
            reserved_qty=reserved_qty,
            old_stock=old_stock,
            new_stock=variant.stock_qty,
            old_status=old_status,
            new_status=variant.status,
            old_product_stock=old_product_stock,
            new_product_stock=product.stock_qty,
            old_product_status=old_product_status,
            new_product_status=product.status,
        )

    async def recalculate_many(
        self,
        db: AsyncSession,
        variant_ids: Iterable[int],
        now: Optional[datetime] = None,
    ) -> List[StockSyncResult]:
        """Recalculate each distinct variant once, in first-seen order."""
        now = ensure_utc(now or utcnow())
        results = []
        seen = set()
        for variant_id in variant_ids:
            if variant_id is None or variant_id in seen:
                continue
            seen.add(variant_id)
            synced = await self.recalculate(db, variant_id, now)
            if synced is not None:
                results.append(synced)
        return results


stock_recalculator = StockRecalculator()
