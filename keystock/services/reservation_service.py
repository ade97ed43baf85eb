"""
Inventory Reservation Service

The only writer of the reservation ledger. Every operation is scoped to
one order (or, for the expiry sweep, to every order), runs inside one
transaction, and re-derives stock for each variant it touched.

reserve() does not check capacity up front; oversell shows up in the
recalculation that follows. Callers needing a hard guarantee pass
strict=True, which releases the oversold lines and raises
InsufficientStockError.

All state changes are predicate-scoped UPDATEs that only move rows
forward (Reserved -> Released / Finalized), so running any of them twice,
or from two processes at once, is harmless.
"""
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import select, update, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from keystock.core.config import settings
from keystock.core.database import transaction
from keystock.core.exceptions import InsufficientStockError, ReservationNotFoundError
from keystock.core.utils import ensure_utc, utcnow
from keystock.models import InventoryReservation, ReservationStatus
from keystock.services.stock_recalculator import (
    StockRecalculator,
    StockSyncResult,
    stock_recalculator,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReservationLine:
    variant_id: int
    quantity: int


@dataclass
class ReleaseSummary:
    """Outcome of a release or expiry sweep."""
    reservations_released: int = 0
    variant_ids: List[int] = field(default_factory=list)
    synced: List[StockSyncResult] = field(default_factory=list)

    @property
    def variants_restored(self) -> int:
        return len(self.variant_ids)


def _merge_lines(lines: Iterable) -> "OrderedDict[int, int]":
    """Drop non-positive quantities and merge duplicate variants."""
    merged: "OrderedDict[int, int]" = OrderedDict()
    for line in lines:
        if isinstance(line, ReservationLine):
            variant_id, quantity = line.variant_id, line.quantity
        else:
            variant_id, quantity = line
        if quantity is None or quantity <= 0:
            continue
        merged[variant_id] = merged.get(variant_id, 0) + int(quantity)
    return merged


def _distinct(values: Iterable[int]) -> List[int]:
    return list(OrderedDict.fromkeys(v for v in values if v is not None))


class InventoryReservationService:
    """
    Reserve / extend / release / release-expired / finalize.

    The database session is passed per call; the service holds no
    connection state and can be shared across tasks.
    """

    def __init__(self, recalculator: Optional[StockRecalculator] = None):
        self.recalculator = recalculator or stock_recalculator

    async def reserve(
        self,
        db: AsyncSession,
        order_id: int,
        lines: Sequence,
        now: Optional[datetime] = None,
        reserved_until: Optional[datetime] = None,
        strict: bool = False,
    ) -> List[StockSyncResult]:
        """
        Hold quantity for each line of an order until reserved_until.

        A variant already held by a Reserved row of this order is updated
        in place. Released and Finalized rows are never reused.
        """
        now = ensure_utc(now or utcnow())
        reserved_until = ensure_utc(reserved_until or InventoryReservation.create_expiry(settings.RESERVATION_TTL_MINUTES, now))
        merged = _merge_lines(lines)
        if not merged:
            return []

        async with transaction(db):
            existing_result = await db.execute(
                select(InventoryReservation).where(
                    InventoryReservation.order_id == order_id,
                    InventoryReservation.variant_id.in_(list(merged.keys())),
                    InventoryReservation.status == ReservationStatus.RESERVED,
                )
            )
            existing = {row.variant_id: row for row in existing_result.scalars().all()}
            # variant_id -> (row, previous quantity and reserved_until, or None if inserted here)
            touched = {}

            for variant_id, quantity in merged.items():
                row = existing.get(variant_id)
                if row is None:
                    row = InventoryReservation(
                        order_id=order_id,
                        variant_id=variant_id,
                        quantity=quantity,
                        status=ReservationStatus.RESERVED,
                        reserved_until=reserved_until,
                        created_at=now,
                        updated_at=now,
                    )
                    db.add(row)
                    touched[variant_id] = (row, None)
                else:
                    touched[variant_id] = (row, (row.quantity, row.reserved_until))
                    row.quantity = quantity
                    row.reserved_until = reserved_until
                    row.updated_at = now

            await db.flush()
            synced = await self.recalculator.recalculate_many(db, merged.keys(), now)

            oversold = [s.variant_id for s in synced if s.oversold]
            if oversold:
                logger.warning(f"Order {order_id} reservation oversells variants {oversold}")

            if strict and oversold:
                for variant_id in oversold:
                    row, previous = touched[variant_id]
                    if previous is None:
                        row.status = ReservationStatus.RELEASED
                    else:
                        # Put back the hold the order already had
                        row.quantity, row.reserved_until = previous
                    row.updated_at = now
                await db.flush()
                await self.recalculator.recalculate_many(db, oversold, now)

        if strict and oversold:
            raise InsufficientStockError(order_id, oversold)

        logger.info(f"Reserved {sum(merged.values())} units across {len(merged)} variants for order {order_id}")
        return synced

    async def extend(
        self,
        db: AsyncSession,
        order_id: int,
        new_reserved_until: datetime,
        now: Optional[datetime] = None,
    ) -> int:
        """Push out reserved_until for every Reserved row of the order."""
        now = ensure_utc(now or utcnow())

        async with transaction(db):
            result = await db.execute(
                update(InventoryReservation)
                .where(
                    InventoryReservation.order_id == order_id,
                    InventoryReservation.status == ReservationStatus.RESERVED,
                )
                .values(reserved_until=new_reserved_until, updated_at=now)
                .returning(InventoryReservation.variant_id)
                .execution_options(synchronize_session=False)
            )
            extended = result.scalars().all()
            variant_ids = _distinct(extended)

            if not extended:
                raise ReservationNotFoundError(order_id, f"No active reservation to extend for order {order_id}")

            # Extending can revive a lapsed-but-unswept hold
            await self.recalculator.recalculate_many(db, variant_ids, now)

        return len(extended)

    async def release(
        self,
        db: AsyncSession,
        order_id: int,
        now: Optional[datetime] = None,
    ) -> ReleaseSummary:
        """Release every Reserved row of the order and restore stock."""
        now = ensure_utc(now or utcnow())

        async with transaction(db):
            result = await db.execute(
                update(InventoryReservation)
                .where(
                    InventoryReservation.order_id == order_id,
                    InventoryReservation.status == ReservationStatus.RESERVED,
                )
                .values(status=ReservationStatus.RELEASED, updated_at=now)
                .returning(InventoryReservation.variant_id)
                .execution_options(synchronize_session=False)
            )
            released = result.scalars().all()
            summary = ReleaseSummary(reservations_released=len(released), variant_ids=_distinct(released))
            summary.synced = await self.recalculator.recalculate_many(db, summary.variant_ids, now)

        if summary.reservations_released:
            logger.info(
                f"Released {summary.reservations_released} reservations for order {order_id} "
                f"across {summary.variants_restored} variants"
            )
        return summary

    async def release_expired(
        self,
        db: AsyncSession,
        now: Optional[datetime] = None,
    ) -> ReleaseSummary:
        """Set-based sweep: release every Reserved row whose window has passed."""
        now = ensure_utc(now or utcnow())

        async with transaction(db):
            result = await db.execute(
                update(InventoryReservation)
                .where(
                    InventoryReservation.status == ReservationStatus.RESERVED,
                    InventoryReservation.reserved_until < now,
                )
                .values(status=ReservationStatus.RELEASED, updated_at=now)
                .returning(InventoryReservation.variant_id)
                .execution_options(synchronize_session=False)
            )
            released = result.scalars().all()
            summary = ReleaseSummary(reservations_released=len(released), variant_ids=_distinct(released))
            summary.synced = await self.recalculator.recalculate_many(db, summary.variant_ids, now)

        if summary.reservations_released:
            logger.info(
                f"Released {summary.reservations_released} expired reservations "
                f"across {summary.variants_restored} variants"
            )
        else:
            logger.debug("No expired reservations to clean up")
        return summary

    async def finalize(
        self,
        db: AsyncSession,
        order_id: int,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Mark the order's Reserved rows Finalized once payment is confirmed.

        Stock is not recalculated here: the confirming process assigns the
        keys/accounts first and recalculates afterwards, so stock never
        jumps up in between.
        """
        now = ensure_utc(now or utcnow())

        async with transaction(db):
            result = await db.execute(
                update(InventoryReservation)
                .where(
                    InventoryReservation.order_id == order_id,
                    InventoryReservation.status == ReservationStatus.RESERVED,
                )
                .values(status=ReservationStatus.FINALIZED, updated_at=now)
                .execution_options(synchronize_session=False)
            )

        finalized = result.rowcount or 0
        if finalized:
            logger.info(f"Finalized {finalized} reservations for order {order_id}")
        return finalized


async def get_reservation_stats(db: AsyncSession, now: Optional[datetime] = None) -> dict:
    """
    Get current reservation statistics for monitoring.
    """
    now = ensure_utc(now or utcnow())
    soon = now + timedelta(minutes=5)
    reserved = InventoryReservation.status == ReservationStatus.RESERVED

    stmt = select(
        func.count(InventoryReservation.id).filter(reserved),
        func.count(InventoryReservation.id).filter(and_(reserved, InventoryReservation.reserved_until > now)),
        func.count(InventoryReservation.id).filter(and_(reserved, InventoryReservation.reserved_until <= now)),
        func.count(InventoryReservation.id).filter(
            and_(reserved, InventoryReservation.reserved_until > now, InventoryReservation.reserved_until <= soon)
        ),
    )

    total, active, expired, expiring = (await db.execute(stmt)).one()

    return {
        "total_reservations": int(total or 0),
        "active_reservations": int(active or 0),
        "expired_reservations": int(expired or 0),
        "expiring_within_5min": int(expiring or 0),
    }


inventory_reservations = InventoryReservationService()
