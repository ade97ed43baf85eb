"""
KeyStock Service
FastAPI application entry point

The reservation engine is a library over the shared database; this app
hosts its background loops (payment timeout reconciler, cart cleanup,
optional startup stock sync) and exposes a health endpoint.
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from sqlalchemy import text

from keystock import __version__
from keystock.core.config import settings
from keystock.core.database import AsyncSessionLocal
from keystock.jobs import JobScheduler, build_scheduler
from keystock.services.payment_gateway import payos_client
from keystock.services.reservation_service import get_reservation_stats

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

_scheduler: Optional[JobScheduler] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start background jobs on startup, stop them on shutdown."""
    global _scheduler

    _scheduler = build_scheduler()
    await _scheduler.start()
    logger.info(f"{settings.APP_NAME} started with jobs: {_scheduler.jobs}")

    yield

    await _scheduler.stop()
    await payos_client.close()
    logger.info("Payment gateway HTTP client closed")


app = FastAPI(
    title=settings.APP_NAME,
    version=__version__,
    lifespan=lifespan,
)


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check with DB ping, job heartbeats and reservation counts.
    Returns 503 if database is unreachable.
    """
    health_status = {
        "status": "healthy",
        "database": "unknown",
        "jobs": _scheduler.heartbeats() if _scheduler else {},
        "reservations": None,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    try:
        async with AsyncSessionLocal() as db:
            await db.execute(text("SELECT 1"))
            health_status["database"] = "connected"
            health_status["reservations"] = await get_reservation_stats(db)
    except Exception as e:
        health_status["database"] = f"error: {type(e).__name__}: {str(e)[:100]}"
        health_status["status"] = "unhealthy"
        return JSONResponse(status_code=503, content=health_status)

    return health_status


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "keystock.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
    )
