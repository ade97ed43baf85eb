"""
Background jobs and the scheduler that runs them.
"""
from keystock.core.config import settings
from keystock.jobs.cart_cleanup import run_cart_cleanup_job
from keystock.jobs.payment_timeout import (
    PaymentTimeoutReconciler,
    payment_timeout_reconciler,
    run_payment_timeout_job,
)
from keystock.jobs.scheduler import JobScheduler, ScheduledJob
from keystock.jobs.stock_sync import run_stock_sync_job


def build_scheduler() -> JobScheduler:
    """Scheduler with every job enabled in settings."""
    scheduler = JobScheduler()

    if settings.PAYMENT_RECONCILER_ENABLED:
        scheduler.add_job(ScheduledJob(
            name="payment_timeout",
            func=run_payment_timeout_job,
            interval_seconds=settings.PAYMENT_RECONCILER_INTERVAL_SECONDS,
            timeout_seconds=settings.PAYMENT_RECONCILER_JOB_TIMEOUT_SECONDS,
        ))

    if settings.CART_CLEANUP_ENABLED:
        scheduler.add_job(ScheduledJob(
            name="cart_cleanup",
            func=run_cart_cleanup_job,
            interval_seconds=settings.CART_CLEANUP_INTERVAL_MINUTES * 60,
            timeout_seconds=settings.CART_CLEANUP_JOB_TIMEOUT_SECONDS,
        ))

    if settings.STOCK_SYNC_ON_STARTUP_ENABLED:
        scheduler.add_job(ScheduledJob(
            name="stock_sync",
            func=run_stock_sync_job,
            interval_seconds=None,
            initial_delay_seconds=settings.STOCK_SYNC_DELAY_SECONDS,
        ))

    return scheduler


__all__ = [
    "JobScheduler",
    "ScheduledJob",
    "PaymentTimeoutReconciler",
    "payment_timeout_reconciler",
    "run_payment_timeout_job",
    "run_cart_cleanup_job",
    "run_stock_sync_job",
    "build_scheduler",
]
