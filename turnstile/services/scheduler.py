from apscheduler.schedulers.asyncio import AsyncIOScheduler
import logging

from turnstile.config import get_settings
from turnstile.database import SessionLocal
from turnstile.services.gateway import StripeGateway
from turnstile.services.refunds import RefundOrchestrator

settings = get_settings()
logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()

SWEEP_JOB_ID = "sweep_stale_refunds"


def init_scheduler():
    """Start the scheduler with the stale refund sweep."""
    scheduler.add_job(
        sweep_stale_refunds,
        'interval',
        minutes=max(1, settings.stale_refund_minutes // 3),
        id=SWEEP_JOB_ID,
        replace_existing=True,
        coalesce=True,
        max_instances=1
    )
    scheduler.start()
    logger.info("Scheduler started")


def shutdown_scheduler():
    """Shutdown the scheduler."""
    scheduler.shutdown()
    logger.info("Scheduler shutdown")


def sweep_stale_refunds() -> int:
    """Fail refunds stuck in pending. Runs in the scheduler's executor."""
    db = SessionLocal()
    try:
        return RefundOrchestrator(db, StripeGateway()).sweep_stale_pending()
    except Exception as e:
        logger.error(f"Error sweeping stale refunds: {e}")
        return 0
    finally:
        db.close()
