"""
Cart Cleanup Job

Runs once at startup, then daily:
1. Expire Active guest carts past the guest TTL
2. Expire Active user carts past the user TTL
3. Hard-delete carts Expired for longer than the grace window

Does not touch reservations; the payment timeout reconciler releases
those independently.
"""
import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from keystock.core.database import get_db_session
from keystock.core.utils import ensure_utc, utcnow
from keystock.services.cart_service import CartService, cart_service

logger = logging.getLogger(__name__)


async def run_cart_cleanup_job(
    session_factory: Optional[Callable[[], AsyncSession]] = None,
    service: Optional[CartService] = None,
    now: Optional[datetime] = None,
) -> dict:
    session_factory = session_factory or get_db_session
    service = service or cart_service
    now = ensure_utc(now or utcnow())

    stats = {
        "guest_carts_expired": 0,
        "user_carts_expired": 0,
        "carts_deleted": 0,
        "errors": 0,
    }

    try:
        async with session_factory() as db:
            guest, user = await service.expire_stale_carts(db, now)
        stats["guest_carts_expired"] = guest
        stats["user_carts_expired"] = user
    except Exception as e:
        stats["errors"] += 1
        logger.error(f"[CartCleanup] Expiring stale carts failed: {e}", exc_info=True)

    try:
        async with session_factory() as db:
            stats["carts_deleted"] = await service.purge_expired_carts(db, now)
    except Exception as e:
        stats["errors"] += 1
        logger.error(f"[CartCleanup] Deleting expired carts failed: {e}", exc_info=True)

    logger.info(
        f"[CartCleanup] Expired {stats['guest_carts_expired']} guest and "
        f"{stats['user_carts_expired']} user carts, deleted {stats['carts_deleted']}"
    )
    return stats
