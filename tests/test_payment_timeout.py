"""
Tests for the payment timeout reconciler.
"""
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from keystock.core.exceptions import PaymentGatewayError
from keystock.jobs.payment_timeout import PaymentTimeoutReconciler, TIMEOUT_CANCEL_REASON
from keystock.models import (
    Cart,
    CartStatus,
    Order,
    OrderStatus,
    PaymentAttempt,
    PaymentStatus,
    PaymentTargetType,
    ProductType,
    ProductVariant,
    ReservationStatus,
)
from keystock.services.cart_service import CartService

from tests.conftest import NOW

OLD = NOW - timedelta(minutes=6)
RECENT = NOW - timedelta(minutes=1)


@pytest.fixture
def gateway():
    gateway = AsyncMock()
    gateway.provider = "PayOS"
    gateway.cancel_link = AsyncMock(return_value=True)
    return gateway


@pytest.fixture
def reconciler(session_factory, gateway):
    return PaymentTimeoutReconciler(
        session_factory=session_factory,
        gateway=gateway,
        carts=CartService(guest_ttl_days=7, user_ttl_days=30, lock_timeout_minutes=5),
        payment_timeout_minutes=5,
    )


@pytest.fixture
async def held_order(seed):
    """Pending order holding 2 of 3 keys until well after the tick."""
    variant = await seed.variant(ProductType.PERSONAL_KEY, stock_qty=1)
    await seed.keys(variant.id, 3)
    order = await seed.order()
    await seed.reservation(order.id, variant.id, 2, NOW + timedelta(minutes=30))
    return order, variant


class TestPaymentSweep:
    """Test timing out stale payment attempts."""

    @pytest.mark.asyncio
    async def test_stale_attempt_cancels_order_and_releases(
        self, reconciler, gateway, seed, held_order, fetch, reservations_of
    ):
        order, variant = held_order
        attempt = await seed.payment(order.id, created_at=OLD, external_link_id="link-1")

        stats = await reconciler.run_once(NOW)

        assert stats["payments_timed_out"] == 1
        assert stats["orders_cancelled"] == 1
        assert stats["links_cancelled"] == 1
        gateway.cancel_link.assert_awaited_once_with("link-1", TIMEOUT_CANCEL_REASON)
        assert (await fetch(PaymentAttempt, attempt.id)).status == PaymentStatus.TIMEOUT
        assert (await fetch(Order, order.id)).status == OrderStatus.CANCELLED_BY_TIMEOUT
        assert [r.status for r in await reservations_of(order.id)] == [ReservationStatus.RELEASED]
        assert (await fetch(ProductVariant, variant.id)).stock_qty == 3

    @pytest.mark.asyncio
    async def test_gateway_failure_still_times_out(self, reconciler, gateway, seed, held_order, fetch):
        order, _ = held_order
        attempt = await seed.payment(order.id, created_at=OLD, external_link_id="link-2")
        gateway.cancel_link.side_effect = PaymentGatewayError("connection refused")

        stats = await reconciler.run_once(NOW)

        assert stats["gateway_errors"] == 1
        assert stats["errors"] == 0
        assert (await fetch(PaymentAttempt, attempt.id)).status == PaymentStatus.TIMEOUT
        assert (await fetch(Order, order.id)).status == OrderStatus.CANCELLED_BY_TIMEOUT

    @pytest.mark.asyncio
    async def test_other_provider_link_not_sent_to_gateway(self, reconciler, gateway, seed, held_order, fetch):
        order, _ = held_order
        attempt = await seed.payment(order.id, created_at=OLD, external_link_id="cs_stripe_123", provider="Stripe")

        stats = await reconciler.run_once(NOW)

        gateway.cancel_link.assert_not_awaited()
        assert stats["links_cancelled"] == 0
        assert stats["payments_timed_out"] == 1
        assert (await fetch(PaymentAttempt, attempt.id)).status == PaymentStatus.TIMEOUT
        assert (await fetch(Order, order.id)).status == OrderStatus.CANCELLED_BY_TIMEOUT

    @pytest.mark.asyncio
    async def test_recent_attempt_untouched(self, reconciler, gateway, seed, held_order, fetch):
        order, _ = held_order
        attempt = await seed.payment(order.id, created_at=RECENT, external_link_id="link-3")

        stats = await reconciler.run_once(NOW)

        assert stats["payments_timed_out"] == 0
        gateway.cancel_link.assert_not_awaited()
        assert (await fetch(PaymentAttempt, attempt.id)).status == PaymentStatus.PENDING
        assert (await fetch(Order, order.id)).status == OrderStatus.PENDING_PAYMENT

    @pytest.mark.asyncio
    @pytest.mark.parametrize("sibling_status", [
        PaymentStatus.PENDING,
        PaymentStatus.PAID,
        PaymentStatus.SUCCESS,
        PaymentStatus.COMPLETED,
    ])
    async def test_active_sibling_keeps_order_open(
        self, reconciler, seed, held_order, fetch, reservations_of, sibling_status
    ):
        order, _ = held_order
        stale = await seed.payment(order.id, created_at=OLD)
        await seed.payment(order.id, status=sibling_status, created_at=RECENT)

        stats = await reconciler.run_once(NOW)

        assert stats["payments_timed_out"] == 1
        assert stats["orders_cancelled"] == 0
        assert (await fetch(PaymentAttempt, stale.id)).status == PaymentStatus.TIMEOUT
        assert (await fetch(Order, order.id)).status == OrderStatus.PENDING_PAYMENT
        assert [r.status for r in await reservations_of(order.id)] == [ReservationStatus.RESERVED]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("sibling_status", [
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
        PaymentStatus.TIMEOUT,
    ])
    async def test_dead_sibling_does_not_block(self, reconciler, seed, held_order, fetch, sibling_status):
        order, _ = held_order
        await seed.payment(order.id, created_at=OLD)
        await seed.payment(order.id, status=sibling_status, created_at=OLD)

        await reconciler.run_once(NOW)

        assert (await fetch(Order, order.id)).status == OrderStatus.CANCELLED_BY_TIMEOUT

    @pytest.mark.asyncio
    async def test_two_stale_attempts_cancel_order_once(self, reconciler, seed, held_order, fetch):
        order, _ = held_order
        first = await seed.payment(order.id, created_at=OLD)
        second = await seed.payment(order.id, created_at=OLD + timedelta(seconds=5))

        stats = await reconciler.run_once(NOW)

        # The first is blocked by the still-pending second; the second then cancels
        assert stats["payments_timed_out"] == 2
        assert stats["orders_cancelled"] == 1
        assert (await fetch(PaymentAttempt, first.id)).status == PaymentStatus.TIMEOUT
        assert (await fetch(PaymentAttempt, second.id)).status == PaymentStatus.TIMEOUT
        assert (await fetch(Order, order.id)).status == OrderStatus.CANCELLED_BY_TIMEOUT

    @pytest.mark.asyncio
    async def test_paid_order_left_alone(self, reconciler, seed, fetch):
        order = await seed.order(status=OrderStatus.PAID)
        attempt = await seed.payment(order.id, created_at=OLD)

        stats = await reconciler.run_once(NOW)

        assert stats["orders_cancelled"] == 0
        assert (await fetch(PaymentAttempt, attempt.id)).status == PaymentStatus.TIMEOUT
        assert (await fetch(Order, order.id)).status == OrderStatus.PAID

    @pytest.mark.asyncio
    async def test_support_plan_target_only_times_out_attempt(self, reconciler, seed, held_order, fetch):
        order, _ = held_order
        # Same numeric id as the order, different target kind
        attempt = await seed.payment(order.id, created_at=OLD, target_type=PaymentTargetType.SUPPORT_PLAN)

        stats = await reconciler.run_once(NOW)

        assert stats["payments_timed_out"] == 1
        assert stats["orders_cancelled"] == 0
        assert (await fetch(PaymentAttempt, attempt.id)).status == PaymentStatus.TIMEOUT
        assert (await fetch(Order, order.id)).status == OrderStatus.PENDING_PAYMENT

    @pytest.mark.asyncio
    async def test_attempt_without_target_ignored(self, reconciler, seed, fetch):
        attempt = await seed.payment(None, created_at=OLD)

        await reconciler.run_once(NOW)

        assert (await fetch(PaymentAttempt, attempt.id)).status == PaymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_bad_row_does_not_stop_sweep(self, reconciler, seed, held_order, fetch):
        order, _ = held_order
        bad = await seed.payment("not-a-number", created_at=OLD - timedelta(minutes=1))
        good = await seed.payment(order.id, created_at=OLD)

        stats = await reconciler.run_once(NOW)

        assert (await fetch(PaymentAttempt, bad.id)).status == PaymentStatus.TIMEOUT
        assert (await fetch(PaymentAttempt, good.id)).status == PaymentStatus.TIMEOUT
        assert (await fetch(Order, order.id)).status == OrderStatus.CANCELLED_BY_TIMEOUT
        assert stats["errors"] == 0

    @pytest.mark.asyncio
    async def test_second_tick_is_noop(self, reconciler, gateway, seed, held_order):
        order, _ = held_order
        await seed.payment(order.id, created_at=OLD, external_link_id="link-4")

        await reconciler.run_once(NOW)
        stats = await reconciler.run_once(NOW + timedelta(minutes=1))

        assert stats["payments_timed_out"] == 0
        assert stats["orders_cancelled"] == 0
        assert gateway.cancel_link.await_count == 1


class TestTickSteps:
    """Test the non-payment steps of a tick."""

    @pytest.mark.asyncio
    async def test_recovers_stuck_carts(self, reconciler, seed, fetch):
        stuck = await seed.cart(user_id=8, status=CartStatus.CONVERTING, updated_at=NOW - timedelta(minutes=10))

        stats = await reconciler.run_once(NOW)

        assert stats["carts_recovered"] == 1
        cart = await fetch(Cart, stuck.id)
        assert cart.status == CartStatus.ACTIVE
        assert cart.expires_at > NOW

    @pytest.mark.asyncio
    async def test_sweeps_expired_reservations(self, reconciler, seed, fetch, reservations_of):
        variant = await seed.variant(ProductType.PERSONAL_KEY)
        await seed.keys(variant.id, 3)
        order = await seed.order()
        await seed.reservation(order.id, variant.id, 2, NOW - timedelta(minutes=1))

        stats = await reconciler.run_once(NOW)

        assert stats["reservations_released"] == 1
        assert stats["variants_restored"] == 1
        assert (await fetch(ProductVariant, variant.id)).stock_qty == 3

    @pytest.mark.asyncio
    async def test_failing_step_does_not_stop_tick(self, reconciler, seed, held_order, fetch):
        order, _ = held_order
        attempt = await seed.payment(order.id, created_at=OLD)
        reconciler.carts = AsyncMock()
        reconciler.carts.recover_stuck_carts = AsyncMock(side_effect=RuntimeError("boom"))

        stats = await reconciler.run_once(NOW)

        assert stats["errors"] == 1
        assert (await fetch(PaymentAttempt, attempt.id)).status == PaymentStatus.TIMEOUT
