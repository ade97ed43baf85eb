"""
Pytest configuration and fixtures for KeyStock tests.

Tests run against the real schema on a throwaway SQLite file (aiosqlite)
with foreign keys enabled. Each service call gets its own session, like
the background jobs do.
"""
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

# Set test environment before importing keystock modules
os.environ["ENVIRONMENT"] = "development"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["PAYOS_CLIENT_ID"] = ""
os.environ["PAYOS_API_KEY"] = ""

import pytest
import pytest_asyncio
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from keystock.core.database import Base
from keystock.models import (
    AccountStatus,
    Cart,
    CartStatus,
    InventoryReservation,
    KeyStatus,
    Order,
    OrderStatus,
    PaymentAttempt,
    PaymentStatus,
    PaymentTargetType,
    Product,
    ProductAccount,
    ProductAccountCustomer,
    ProductKey,
    ProductType,
    ProductVariant,
    ReservationStatus,
    StockStatus,
)

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Fresh database file per test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'keystock.db'}")

    @event.listens_for(engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Seeder:
    """Writes fixture rows, committing each batch in its own session."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def _save(self, *rows):
        async with self.session_factory() as db:
            db.add_all(rows)
            await db.commit()
        return rows[0] if len(rows) == 1 else rows

    async def variant(
        self,
        product_type: ProductType,
        product_id: Optional[int] = None,
        status: StockStatus = StockStatus.ACTIVE,
        product_status: StockStatus = StockStatus.ACTIVE,
        stock_qty: int = 0,
    ) -> ProductVariant:
        if product_id is None:
            product = await self._save(Product(
                name=f"{product_type.value} product",
                product_type=product_type,
                status=product_status,
                created_at=NOW - timedelta(days=30),
                updated_at=NOW - timedelta(days=30),
            ))
            product_id = product.id
        return await self._save(ProductVariant(
            product_id=product_id,
            title="Standard",
            status=status,
            stock_qty=stock_qty,
            created_at=NOW - timedelta(days=30),
            updated_at=NOW - timedelta(days=30),
        ))

    async def keys(self, variant_id: int, count: int, **kwargs):
        rows = [
            ProductKey(
                variant_id=variant_id,
                key_code=f"KEY-{variant_id}-{i}",
                status=kwargs.get("status", KeyStatus.AVAILABLE),
                assigned_order_id=kwargs.get("assigned_order_id"),
                expiry_date=kwargs.get("expiry_date"),
            )
            for i in range(count)
        ]
        await self._save(*rows)
        return rows

    async def account(
        self,
        variant_id: int,
        max_users: int = 1,
        active_customers: int = 0,
        inactive_customers: int = 0,
        status: AccountStatus = AccountStatus.ACTIVE,
        expiry_date: Optional[datetime] = None,
    ) -> ProductAccount:
        account = ProductAccount(
            variant_id=variant_id,
            username=f"user-{variant_id}-{max_users}",
            status=status,
            max_users=max_users,
            expiry_date=expiry_date,
        )
        account.customers = (
            [ProductAccountCustomer(user_id=1000 + i, is_active=True) for i in range(active_customers)]
            + [ProductAccountCustomer(user_id=2000 + i, is_active=False) for i in range(inactive_customers)]
        )
        return await self._save(account)

    async def order(self, status: OrderStatus = OrderStatus.PENDING_PAYMENT, user_id: Optional[int] = 1) -> Order:
        return await self._save(Order(user_id=user_id, status=status, created_at=NOW, updated_at=NOW))

    async def payment(
        self,
        target_id,
        status: PaymentStatus = PaymentStatus.PENDING,
        created_at: Optional[datetime] = None,
        target_type: PaymentTargetType = PaymentTargetType.ORDER,
        external_link_id: Optional[str] = None,
        provider: str = "PayOS",
    ) -> PaymentAttempt:
        return await self._save(PaymentAttempt(
            provider=provider,
            status=status,
            target_type=target_type,
            target_id=None if target_id is None else str(target_id),
            external_link_id=external_link_id,
            created_at=created_at or NOW,
            updated_at=created_at or NOW,
        ))

    async def reservation(
        self,
        order_id: int,
        variant_id: int,
        quantity: int,
        reserved_until: datetime,
        status=None,
    ) -> InventoryReservation:
        return await self._save(InventoryReservation(
            order_id=order_id,
            variant_id=variant_id,
            quantity=quantity,
            status=status or ReservationStatus.RESERVED,
            reserved_until=reserved_until,
            created_at=NOW,
            updated_at=NOW,
        ))

    async def cart(
        self,
        user_id: Optional[int] = None,
        anonymous_id: Optional[str] = None,
        status: CartStatus = CartStatus.ACTIVE,
        updated_at: Optional[datetime] = None,
        expires_at: Optional[datetime] = None,
        converted_order_id: Optional[int] = None,
    ) -> Cart:
        return await self._save(Cart(
            user_id=user_id,
            anonymous_id=anonymous_id,
            status=status,
            created_at=updated_at or NOW,
            updated_at=updated_at or NOW,
            expires_at=expires_at,
            converted_order_id=converted_order_id,
        ))


@pytest.fixture
def seed(session_factory) -> Seeder:
    return Seeder(session_factory)


@pytest.fixture
def fetch(session_factory):
    """Read a row back through a fresh session."""
    async def _fetch(model, pk):
        async with session_factory() as db:
            return await db.get(model, pk)
    return _fetch


@pytest.fixture
def fetch_all(session_factory):
    async def _fetch_all(stmt):
        async with session_factory() as db:
            result = await db.execute(stmt)
            return result.scalars().all()
    return _fetch_all


@pytest.fixture
def reservations_of(fetch_all):
    async def _reservations_of(order_id):
        return await fetch_all(
            select(InventoryReservation)
            .where(InventoryReservation.order_id == order_id)
            .order_by(InventoryReservation.id)
        )
    return _reservations_of
