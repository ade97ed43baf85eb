"""
Payment Timeout Reconciler

Runs once a minute. Each tick, in order:

1. Stuck carts: Converting carts with no order whose lock outlived the
   lock timeout go back to Active with a fresh expires_at
2. Reservation sweep: release every Reserved row past reserved_until
3. Payment sweep: Pending attempts older than the payment timeout are
   marked Timeout (after a best-effort gateway cancel). An Order target
   still PendingPayment is cancelled and its reservations released,
   unless another attempt for the same order may still win.

Every step and every attempt is isolated: a failure is logged and
counted, and the rest of the tick carries on.

Every write is a compare-and-set on status, so two reconcilers running
side by side (rolling deploy) do each transition at most once.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import select, update, exists
from sqlalchemy.ext.asyncio import AsyncSession

from keystock.core.config import settings
from keystock.core.database import get_db_session
from keystock.core.utils import ensure_utc, utcnow
from keystock.models import (
    Order,
    OrderStatus,
    PaymentAttempt,
    PaymentStatus,
    PaymentTargetType,
    ACTIVE_PAYMENT_STATUSES,
)
from keystock.services.cart_service import CartService, cart_service
from keystock.services.payment_gateway import PaymentGateway, payos_client
from keystock.services.reservation_service import InventoryReservationService, inventory_reservations

logger = logging.getLogger(__name__)

TIMEOUT_CANCEL_REASON = "Payment timed out"

# Outcomes of a single attempt
SKIPPED = "skipped"
TIMED_OUT = "timed_out"
ORDER_CANCELLED = "order_cancelled"


class PaymentTimeoutReconciler:
    def __init__(
        self,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
        gateway: Optional[PaymentGateway] = None,
        carts: Optional[CartService] = None,
        reservations: Optional[InventoryReservationService] = None,
        payment_timeout_minutes: Optional[int] = None,
    ):
        self.session_factory = session_factory or get_db_session
        self.gateway = gateway or payos_client
        self.carts = carts or cart_service
        self.reservations = reservations or inventory_reservations
        self.payment_timeout = timedelta(minutes=payment_timeout_minutes or settings.PAYMENT_TIMEOUT_MINUTES)

    async def run_once(self, now: Optional[datetime] = None) -> dict:
        """Run one reconciliation tick. Never raises."""
        now = ensure_utc(now or utcnow())
        stats = {
            "carts_recovered": 0,
            "reservations_released": 0,
            "variants_restored": 0,
            "payments_timed_out": 0,
            "orders_cancelled": 0,
            "links_cancelled": 0,
            "gateway_errors": 0,
            "errors": 0,
        }

        try:
            async with self.session_factory() as db:
                stats["carts_recovered"] = await self.carts.recover_stuck_carts(db, now)
        except Exception as e:
            stats["errors"] += 1
            logger.error(f"[PaymentTimeout] Stuck cart recovery failed: {e}", exc_info=True)

        try:
            async with self.session_factory() as db:
                summary = await self.reservations.release_expired(db, now)
            stats["reservations_released"] = summary.reservations_released
            stats["variants_restored"] = summary.variants_restored
        except Exception as e:
            stats["errors"] += 1
            logger.error(f"[PaymentTimeout] Reservation sweep failed: {e}", exc_info=True)

        try:
            await self._sweep_payments(now, stats)
        except Exception as e:
            stats["errors"] += 1
            logger.error(f"[PaymentTimeout] Payment sweep failed: {e}", exc_info=True)

        if any(stats[k] for k in ("carts_recovered", "reservations_released", "payments_timed_out", "errors")):
            logger.info(f"[PaymentTimeout] Tick complete: {stats}")
        return stats

    async def _sweep_payments(self, now: datetime, stats: dict) -> None:
        cutoff = now - self.payment_timeout

        async with self.session_factory() as db:
            result = await db.execute(
                select(PaymentAttempt)
                .where(
                    PaymentAttempt.status == PaymentStatus.PENDING,
                    PaymentAttempt.created_at < cutoff,
                    PaymentAttempt.target_id.is_not(None),
                )
                .order_by(PaymentAttempt.created_at, PaymentAttempt.id)
            )
            attempts = result.scalars().all()

        for attempt in attempts:
            try:
                outcome = await self._time_out_attempt(attempt, now, stats)
            except Exception as e:
                stats["errors"] += 1
                logger.error(f"[PaymentTimeout] Failed to time out payment {attempt.id}: {e}", exc_info=True)
                continue

            if outcome in (TIMED_OUT, ORDER_CANCELLED):
                stats["payments_timed_out"] += 1
            if outcome == ORDER_CANCELLED:
                stats["orders_cancelled"] += 1

    async def _cancel_link(self, attempt: PaymentAttempt, stats: dict) -> None:
        """Best-effort gateway cancel; never blocks the timeout."""
        if not attempt.external_link_id:
            return
        if attempt.provider != self.gateway.provider:
            # Links from other providers are left to expire on their own
            logger.debug(f"[PaymentTimeout] Payment {attempt.id} is a {attempt.provider} attempt, not cancelling link")
            return
        try:
            if await self.gateway.cancel_link(attempt.external_link_id, TIMEOUT_CANCEL_REASON):
                stats["links_cancelled"] += 1
        except Exception as e:
            stats["gateway_errors"] += 1
            logger.warning(
                f"[PaymentTimeout] Could not cancel link {attempt.external_link_id} for payment {attempt.id}: {e}"
            )

    async def _time_out_attempt(self, attempt: PaymentAttempt, now: datetime, stats: dict) -> str:
        await self._cancel_link(attempt, stats)

        async with self.session_factory() as db:
            async with db.begin():
                result = await db.execute(
                    update(PaymentAttempt)
                    .where(
                        PaymentAttempt.id == attempt.id,
                        PaymentAttempt.status == PaymentStatus.PENDING,
                    )
                    .values(status=PaymentStatus.TIMEOUT, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    # Settled or timed out by someone else since the select
                    return SKIPPED

                logger.info(f"[PaymentTimeout] Payment {attempt.id} ({attempt.target_type.value}:{attempt.target_id}) timed out")

                if attempt.target_type != PaymentTargetType.ORDER:
                    return TIMED_OUT

                if await self._cancel_order(db, attempt, now):
                    return ORDER_CANCELLED
                return TIMED_OUT

    async def _cancel_order(self, db: AsyncSession, attempt: PaymentAttempt, now: datetime) -> bool:
        try:
            order_id = int(attempt.target_id)
        except (TypeError, ValueError):
            logger.warning(f"[PaymentTimeout] Payment {attempt.id} has non-numeric order target {attempt.target_id!r}")
            return False

        order = await db.get(Order, order_id)
        if order is None or order.status != OrderStatus.PENDING_PAYMENT:
            return False

        sibling_active = await db.scalar(
            select(
                exists().where(
                    PaymentAttempt.target_type == PaymentTargetType.ORDER,
                    PaymentAttempt.target_id == attempt.target_id,
                    PaymentAttempt.id != attempt.id,
                    PaymentAttempt.status.in_(ACTIVE_PAYMENT_STATUSES),
                )
            )
        )
        if sibling_active:
            logger.info(f"[PaymentTimeout] Order {order_id} has another active payment, leaving it open")
            return False

        result = await db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == OrderStatus.PENDING_PAYMENT)
            .values(status=OrderStatus.CANCELLED_BY_TIMEOUT, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False

        await self.reservations.release(db, order_id, now)
        logger.info(f"[PaymentTimeout] Order {order_id} cancelled by payment timeout")
        return True


payment_timeout_reconciler = PaymentTimeoutReconciler()


async def run_payment_timeout_job() -> dict:
    return await payment_timeout_reconciler.run_once()
