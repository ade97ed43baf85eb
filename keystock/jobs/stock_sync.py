"""
Startup Stock Sync

One-shot backfill that recalculates every key/account variant, so stored
stock is correct after imports or manual edits made while the service
was down. Variants are paged by id; one failing variant is logged and
skipped.
"""
import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from keystock.core.config import settings
from keystock.core.database import get_db_session
from keystock.core.utils import ensure_utc, utcnow
from keystock.models import Product, ProductVariant
from keystock.services.stock_recalculator import StockRecalculator, stock_recalculator

logger = logging.getLogger(__name__)


async def run_stock_sync_job(
    session_factory: Optional[Callable[[], AsyncSession]] = None,
    recalculator: Optional[StockRecalculator] = None,
    batch_size: Optional[int] = None,
    now: Optional[datetime] = None,
) -> dict:
    session_factory = session_factory or get_db_session
    recalculator = recalculator or stock_recalculator
    batch_size = batch_size or settings.STOCK_SYNC_BATCH_SIZE
    now = ensure_utc(now or utcnow())

    stats = {
        "variants_checked": 0,
        "variants_changed": 0,
        "variants_oversold": 0,
        "errors": 0,
    }
    last_id = 0

    logger.info("[StockSync] Starting stock sync")

    while True:
        async with session_factory() as db:
            result = await db.execute(
                select(ProductVariant.id)
                .join(Product, ProductVariant.product_id == Product.id)
                .where(
                    ProductVariant.id > last_id,
                    Product.product_type.in_(list(recalculator.shapes)),
                )
                .order_by(ProductVariant.id)
                .limit(batch_size)
            )
            batch = result.scalars().all()

        if not batch:
            break

        for variant_id in batch:
            try:
                async with session_factory() as db:
                    synced = await recalculator.recalculate(db, variant_id, now)
            except Exception as e:
                stats["errors"] += 1
                logger.error(f"[StockSync] Variant {variant_id} failed: {e}", exc_info=True)
                continue

            stats["variants_checked"] += 1
            if synced is not None and synced.changed:
                stats["variants_changed"] += 1
            if synced is not None and synced.oversold:
                stats["variants_oversold"] += 1

        last_id = batch[-1]
        logger.info(f"[StockSync] Processed {stats['variants_checked']} variants so far")

    logger.info(f"[StockSync] Finished: {stats}")
    return stats
