"""
Scheduled Tasks

Periodic subscription reconciliation: pulls every billing customer's
subscriptions from Stripe and mirrors them locally, catching any webhook
that was missed. Granting the period allowance is idempotent, so a
reconciled renewal credits the user exactly once.

Uses APScheduler for in-process scheduling. Disable with
ENABLE_SCHEDULER=false in multi-worker deployments.
"""

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select

from app.context import AppContext
from app.db.models import User
from app.services.billing_sync import BillingSync

logger = logging.getLogger(__name__)


async def reconcile_subscriptions(context: AppContext) -> int:
    """Sync subscription status for every user with a billing customer. Returns users synced."""
    if context.billing_gateway is None:
        logger.info("Billing not configured, skipping subscription reconcile")
        return 0

    logger.info("Starting scheduled subscription reconcile...")
    async with context.session_maker() as db:
        result = await db.execute(
            select(User.id).where(
                User.is_active == True,
                User.external_billing_customer_id.is_not(None),
            )
        )
        user_ids = [row[0] for row in result.fetchall()]

    settings = context.settings
    synced = 0
    for user_id in user_ids:
        try:
            # A new session per user to avoid long transactions
            async with context.session_maker() as db:
                billing = BillingSync(db, context.billing_gateway, settings.monthly_credits, settings.topup_credits)
                await billing.sync_subscription_status_for_user(user_id)
            synced += 1
        except Exception as e:
            logger.error(f"Error reconciling subscription for user {user_id}: {e}")

    logger.info(f"Subscription reconcile complete: {synced} of {len(user_ids)} users synced")
    return synced


def start_scheduler(context: AppContext) -> Optional[AsyncIOScheduler]:
    """Start the scheduler with the reconcile job. Returns None when disabled."""
    settings = context.settings
    if not settings.enable_scheduler or context.billing_gateway is None:
        return None

    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        reconcile_subscriptions,
        trigger=IntervalTrigger(hours=settings.subscription_reconcile_interval_hours),
        args=[context],
        id="subscription_reconcile",
        name="Stripe subscription reconcile",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info(
        f"Scheduler started (subscription reconcile every {settings.subscription_reconcile_interval_hours}h)"
    )
    return scheduler


def stop_scheduler(scheduler: Optional[AsyncIOScheduler]):
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
