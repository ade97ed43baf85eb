"""
Cart Lifecycle Service

Carts are owned by a signed-in user or by a guest browser id. Every
mutation stamps updated_at, which drives TTL expiry:

    guest cart : expires 7 days after the last update (or at expires_at)
    user cart  : expires 30 days after the last update (or at expires_at)

Status Converting is a soft lock for checkout. A Converting cart without
a converted_order_id that outlives the lock timeout is stuck and is put
back to Active by the payment timeout reconciler.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Tuple

from sqlalchemy import select, update, delete, or_, and_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from keystock.core.config import settings
from keystock.core.database import transaction
from keystock.core.exceptions import CartError, CartConflictError
from keystock.core.utils import ensure_utc, utcnow
from keystock.models import Cart, CartItem, CartStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CartOwner:
    """A signed-in user, or a guest identified by an anonymous browser id."""
    user_id: Optional[int] = None
    anonymous_id: Optional[str] = None

    def __post_init__(self):
        if self.user_id is None and not self.anonymous_id:
            raise CartError("Cart owner needs a user_id or an anonymous_id")

    @property
    def is_guest(self) -> bool:
        return self.user_id is None

    def predicate(self):
        if self.user_id is not None:
            return Cart.user_id == self.user_id
        return and_(Cart.user_id.is_(None), Cart.anonymous_id == self.anonymous_id)


class CartService:
    def __init__(
        self,
        guest_ttl_days: Optional[int] = None,
        user_ttl_days: Optional[int] = None,
        lock_timeout_minutes: Optional[int] = None,
        expired_grace_days: Optional[int] = None,
    ):
        self.guest_ttl = timedelta(days=guest_ttl_days or settings.GUEST_CART_TTL_DAYS)
        self.user_ttl = timedelta(days=user_ttl_days or settings.USER_CART_TTL_DAYS)
        self.lock_timeout = timedelta(
            minutes=lock_timeout_minutes or settings.CART_CONVERTING_LOCK_TIMEOUT_MINUTES
        )
        self.expired_grace = timedelta(days=expired_grace_days or settings.EXPIRED_CART_GRACE_DAYS)

    def cart_ttl(self, is_guest: bool) -> timedelta:
        return self.guest_ttl if is_guest else self.user_ttl

    def is_cart_expired(self, cart: Cart, now: Optional[datetime] = None) -> bool:
        """TTL since last update breached, or explicit expires_at passed."""
        now = ensure_utc(now or utcnow())
        if cart.updated_at is not None and cart.updated_at < now - self.cart_ttl(cart.is_guest):
            return True
        return cart.expires_at is not None and cart.expires_at < now

    def is_stuck(self, cart: Cart, now: Optional[datetime] = None) -> bool:
        now = ensure_utc(now or utcnow())
        return (
            cart.status == CartStatus.CONVERTING
            and cart.converted_order_id is None
            and cart.updated_at is not None
            and cart.updated_at < now - self.lock_timeout
        )

    def _stamp(self, cart: Cart, now: datetime) -> None:
        cart.updated_at = now
        cart.expires_at = now + self.cart_ttl(cart.is_guest)

    async def touch_or_create(
        self,
        db: AsyncSession,
        owner: CartOwner,
        now: Optional[datetime] = None,
    ) -> Cart:
        """
        Return the owner's usable cart, creating one when needed.

        A checkout in progress (Converting, no order yet) is returned as-is.
        A stuck one is recovered first; an Active one past its TTL is
        expired and replaced.
        """
        now = ensure_utc(now or utcnow())

        async with transaction(db):
            result = await db.execute(
                select(Cart)
                .options(selectinload(Cart.items))
                .where(
                    owner.predicate(),
                    Cart.status.in_([CartStatus.ACTIVE, CartStatus.CONVERTING]),
                    Cart.converted_order_id.is_(None),
                )
                .order_by(Cart.updated_at.desc(), Cart.id.desc())
            )

            for cart in result.scalars().all():
                if cart.status == CartStatus.CONVERTING:
                    if not self.is_stuck(cart, now):
                        return cart
                    logger.info(f"Recovering stuck cart {cart.id} on touch")
                    cart.status = CartStatus.ACTIVE
                    self._stamp(cart, now)
                    return cart

                if self.is_cart_expired(cart, now):
                    cart.status = CartStatus.EXPIRED
                    cart.updated_at = now
                    cart.expires_at = now
                    continue

                self._stamp(cart, now)
                return cart

            cart = Cart(
                user_id=owner.user_id,
                anonymous_id=owner.anonymous_id if owner.is_guest else None,
                status=CartStatus.ACTIVE,
                created_at=now,
                items=[],
            )
            self._stamp(cart, now)
            db.add(cart)
            await db.flush()

        logger.debug(f"Created cart {cart.id} for {owner}")
        return cart

    async def get_cart(self, db: AsyncSession, cart_id: int) -> Cart:
        result = await db.execute(
            select(Cart)
            .options(selectinload(Cart.items))
            .where(Cart.id == cart_id)
            .execution_options(populate_existing=True)
        )
        cart = result.scalar_one_or_none()
        if cart is None:
            raise CartError(f"Cart {cart_id} not found", code="CART_NOT_FOUND", cart_id=cart_id)
        return cart

    async def set_item(
        self,
        db: AsyncSession,
        cart_id: int,
        variant_id: int,
        quantity: int,
        now: Optional[datetime] = None,
    ) -> Cart:
        """Set a line's quantity; zero or less removes the line."""
        now = ensure_utc(now or utcnow())

        async with transaction(db):
            cart = await self.get_cart(db, cart_id)

            if cart.status == CartStatus.CONVERTING:
                raise CartConflictError(
                    f"Cart {cart_id} is checking out",
                    cart_id=cart_id,
                    order_id=cart.converted_order_id,
                )
            if cart.status != CartStatus.ACTIVE:
                raise CartError(f"Cart {cart_id} is {cart.status.value}", cart_id=cart_id)

            line = next((item for item in cart.items if item.variant_id == variant_id), None)
            if quantity <= 0:
                if line is not None:
                    cart.items.remove(line)
            elif line is None:
                cart.items.append(CartItem(variant_id=variant_id, quantity=quantity, created_at=now, updated_at=now))
            else:
                line.quantity = quantity
                line.updated_at = now

            self._stamp(cart, now)

        return cart

    async def begin_conversion(
        self,
        db: AsyncSession,
        cart_id: int,
        now: Optional[datetime] = None,
    ) -> bool:
        """Take the checkout lock. False means the cart was not Active (conflict)."""
        now = ensure_utc(now or utcnow())

        async with transaction(db):
            result = await db.execute(
                update(Cart)
                .where(
                    Cart.id == cart_id,
                    Cart.status == CartStatus.ACTIVE,
                    Cart.converted_order_id.is_(None),
                )
                .values(status=CartStatus.CONVERTING, updated_at=now)
                .execution_options(synchronize_session=False)
            )

        locked = result.rowcount == 1
        if not locked:
            logger.info(f"Cart {cart_id} conversion conflict")
        return locked

    async def mark_converted(
        self,
        db: AsyncSession,
        cart_id: int,
        order_id: int,
        now: Optional[datetime] = None,
    ) -> None:
        """Record the order a Converting cart became. Raises CartConflictError if the lock was lost."""
        now = ensure_utc(now or utcnow())

        async with transaction(db):
            result = await db.execute(
                update(Cart)
                .where(
                    Cart.id == cart_id,
                    Cart.status == CartStatus.CONVERTING,
                    Cart.converted_order_id.is_(None),
                )
                .values(converted_order_id=order_id, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise CartConflictError(
                    f"Cart {cart_id} is no longer locked for checkout",
                    cart_id=cart_id,
                    order_id=order_id,
                )

        logger.info(f"Cart {cart_id} converted to order {order_id}")

    async def release_conversion(
        self,
        db: AsyncSession,
        cart_id: int,
        now: Optional[datetime] = None,
    ) -> bool:
        """Drop the checkout lock after a failed checkout."""
        now = ensure_utc(now or utcnow())

        async with transaction(db):
            cart = await self.get_cart(db, cart_id)
            if cart.status != CartStatus.CONVERTING or cart.converted_order_id is not None:
                return False
            cart.status = CartStatus.ACTIVE
            self._stamp(cart, now)

        return True

    async def recover_stuck_carts(
        self,
        db: AsyncSession,
        now: Optional[datetime] = None,
        lock_timeout: Optional[timedelta] = None,
    ) -> int:
        """Put every stuck Converting cart back to Active with a fresh expires_at."""
        now = ensure_utc(now or utcnow())
        threshold = now - (lock_timeout or self.lock_timeout)
        recovered = 0

        async with transaction(db):
            for is_guest in (True, False):
                owner_filter = Cart.user_id.is_(None) if is_guest else Cart.user_id.is_not(None)
                result = await db.execute(
                    update(Cart)
                    .where(
                        Cart.status == CartStatus.CONVERTING,
                        Cart.converted_order_id.is_(None),
                        Cart.updated_at < threshold,
                        owner_filter,
                    )
                    .values(
                        status=CartStatus.ACTIVE,
                        updated_at=now,
                        expires_at=now + self.cart_ttl(is_guest),
                    )
                    .execution_options(synchronize_session=False)
                )
                recovered += result.rowcount or 0

        if recovered:
            logger.warning(f"Recovered {recovered} carts stuck in Converting")
        return recovered

    async def expire_stale_carts(
        self,
        db: AsyncSession,
        now: Optional[datetime] = None,
    ) -> Tuple[int, int]:
        """Expire Active carts past their TTL. Returns (guest, user) counts."""
        now = ensure_utc(now or utcnow())
        counts = []

        async with transaction(db):
            for is_guest in (True, False):
                owner_filter = Cart.user_id.is_(None) if is_guest else Cart.user_id.is_not(None)
                result = await db.execute(
                    update(Cart)
                    .where(
                        Cart.status == CartStatus.ACTIVE,
                        owner_filter,
                        or_(
                            Cart.updated_at < now - self.cart_ttl(is_guest),
                            and_(Cart.expires_at.is_not(None), Cart.expires_at < now),
                        ),
                    )
                    .values(status=CartStatus.EXPIRED, updated_at=now, expires_at=now)
                    .execution_options(synchronize_session=False)
                )
                counts.append(result.rowcount or 0)

        return counts[0], counts[1]

    async def purge_expired_carts(
        self,
        db: AsyncSession,
        now: Optional[datetime] = None,
    ) -> int:
        """Hard-delete carts Expired for longer than the grace window."""
        now = ensure_utc(now or utcnow())
        purgeable = and_(
            Cart.status == CartStatus.EXPIRED,
            Cart.updated_at < now - self.expired_grace,
        )

        async with transaction(db):
            await db.execute(
                delete(CartItem)
                .where(CartItem.cart_id.in_(select(Cart.id).where(purgeable)))
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(
                delete(Cart).where(purgeable).execution_options(synchronize_session=False)
            )

        return result.rowcount or 0


cart_service = CartService()
