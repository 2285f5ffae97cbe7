"""Scheduled reconciliation jobs using APScheduler."""
from __future__ import annotations

import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from src.db.engine import get_session_factory
from src.services.plans import get_catalog
from src.services.reconciliation import (
    audit_credit_accounts,
    grant_monthly_free_credits,
    retry_dead_letters,
)
from config.settings import settings

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler(timezone="UTC")


async def scheduled_dead_letter_retry():
    """Re-post failed credit grants."""
    try:
        await retry_dead_letters(get_session_factory())
    except Exception:
        logger.exception("Scheduled dead letter retry failed")


async def scheduled_monthly_credits():
    logger.info("Monthly free credit distribution starting...")
    try:
        summary = await grant_monthly_free_credits(get_session_factory(), get_catalog())
        logger.info(f"Monthly free credits complete: {summary['granted']} granted")
    except Exception:
        logger.exception("Scheduled monthly credit distribution failed")


async def scheduled_ledger_audit():
    try:
        discrepancies = await audit_credit_accounts(get_session_factory())
        if discrepancies:
            logger.error(f"Ledger audit found {len(discrepancies)} inconsistent accounts")
    except Exception:
        logger.exception("Scheduled ledger audit failed")


def start_scheduler(interval_minutes: int | None = None):
    """Start the background scheduler for reconciliation jobs."""
    interval_minutes = interval_minutes or settings.RECONCILE_INTERVAL_MINUTES
    scheduler.add_job(
        scheduled_dead_letter_retry,
        trigger=IntervalTrigger(minutes=interval_minutes),
        id="dead_letter_retry",
        name="Retry dead-lettered credit grants",
        replace_existing=True,
    )
    scheduler.add_job(
        scheduled_monthly_credits,
        trigger=CronTrigger(day=1, hour=0, minute=5),
        id="monthly_free_credits",
        name="Monthly free credits",
        replace_existing=True,
    )
    scheduler.add_job(
        scheduled_ledger_audit,
        trigger=CronTrigger(hour=3, minute=0),
        id="ledger_audit",
        name="Daily ledger audit",
        replace_existing=True,
    )
    scheduler.start()
    logger.info(f"Scheduler started, dead letter retry every {interval_minutes}m")


def stop_scheduler():
    """Gracefully shut down the scheduler."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
