"""
Background sweeper that applies plan changes scheduled for the period end.

Each due change is claimed with a conditional status flip, so running the
sweeper on several instances never applies the same change twice.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional
from uuid import UUID
from sqlalchemy.ext.asyncio import AsyncSession

from billsync.core.config import settings
from billsync.core import database
from billsync.core.exceptions import NotFoundError
from billsync.crud.organization import organization_crud
from billsync.crud.product import product_price_crud
from billsync.crud.subscription import subscription_crud
from billsync.crud.subscription_change import subscription_change_crud
from billsync.models.base import utcnow
from billsync.models.reconciliation import ReconciliationStatus, ReconciliationType
from billsync.models.subscription import TERMINAL_STATUSES
from billsync.services.checkout_metadata_service import checkout_metadata_service
from billsync.services.plan_change_service import plan_change_service
from billsync.services.reconciliation_service import reconciliation_service
from billsync.services.stripe_service import stripe_service, unwrap

logger = logging.getLogger(__name__)


async def _apply_change(db: AsyncSession, change_id: UUID) -> None:
    change = await subscription_change_crud.get(db, change_id)
    subscription = await subscription_crud.get(db, change.subscription_id)
    if subscription.status in TERMINAL_STATUSES:
        raise ValueError(f"Subscription {subscription.id} is {subscription.status.value}")

    found = await product_price_crud.get_with_product(db, change.to_price_id)
    if found is None:
        raise NotFoundError("Price")
    new_price, new_product = found
    organization = await organization_crud.get(db, subscription.organization_id)

    if subscription.processor_subscription_ref and new_price.processor_price_ref:
        # The old period has been billed already, nothing left to prorate
        result = await stripe_service.update_subscription_price(
            subscription.processor_subscription_ref,
            new_price.processor_price_ref,
            account_ref=organization.processor_account_ref,
            proration_behavior="none",
        )
        unwrap(result, "subscription")

    product_changed = subscription.product_id != new_product.id
    subscription.price_id = new_price.id
    subscription.product_id = new_product.id
    subscription.amount = new_price.amount
    subscription.currency = new_price.currency
    if product_changed:
        await plan_change_service.swap_grants(db, subscription, new_product.id, commit=False)
    await subscription_change_crud.mark_completed(db, change_id, commit=False)
    await db.commit()


async def run_once(
    db: AsyncSession,
    now: Optional[datetime] = None,
    batch_size: Optional[int] = None
) -> Dict[str, int]:
    """Apply every scheduled change that is due; returns per-outcome counts"""
    stats = {"claimed": 0, "completed": 0, "failed": 0, "skipped": 0}
    due = await subscription_change_crud.list_due(
        db, now or utcnow(), limit=batch_size or settings.scheduled_change_batch_size
    )
    change_ids = [change.id for change in due]

    for change_id in change_ids:
        if not await subscription_change_crud.claim(db, change_id):
            stats["skipped"] += 1
            continue
        stats["claimed"] += 1
        try:
            await _apply_change(db, change_id)
            stats["completed"] += 1
            logger.info(f"✅ Scheduled change {change_id} applied")
        except Exception as e:
            await db.rollback()
            stats["failed"] += 1
            logger.error(f"❌ Scheduled change {change_id} failed: {str(e)}")
            try:
                await subscription_change_crud.mark_failed(db, change_id, str(e))
            except Exception as mark_error:
                await db.rollback()
                logger.error(f"❌ Could not mark change {change_id} failed: {str(mark_error)}")
            await reconciliation_service.escalate(
                db,
                type=ReconciliationType.SCHEDULED_CHANGE_FAILED,
                reference_id=str(change_id),
                error=str(e),
                details={"change_id": str(change_id)},
                status=ReconciliationStatus.PENDING_MANUAL_REVIEW,
                priority=3,
            )
    return stats


class ScheduledChangeSweeper:
    """Periodic worker running ``run_once`` plus checkout metadata cleanup"""

    def __init__(
        self,
        interval_seconds: Optional[int] = None,
        session_factory: Optional[Callable[[], AsyncSession]] = None
    ):
        self.interval_seconds = interval_seconds or settings.scheduled_change_interval_seconds
        self.session_factory = session_factory
        self.is_running = False
        self.worker_task: Optional[asyncio.Task] = None
        self.stats = {"runs": 0, "completed": 0, "failed": 0, "expired_checkouts": 0}

    async def start(self):
        """Start the background worker"""
        if not self.is_running:
            self.is_running = True
            self.worker_task = asyncio.create_task(self._worker())
            logger.info("🚀 Scheduled change sweeper started")

    async def stop(self):
        if self.is_running:
            self.is_running = False
            if self.worker_task:
                self.worker_task.cancel()
                try:
                    await self.worker_task
                except asyncio.CancelledError:
                    pass
            logger.info("🛑 Scheduled change sweeper stopped")

    async def sweep(self) -> Dict[str, int]:
        factory = self.session_factory or database.AsyncSessionLocal
        if factory is None:
            raise RuntimeError("Database not configured, cannot run the sweeper")
        async with factory() as db:
            result = await run_once(db)
            expired = await checkout_metadata_service.cleanup_expired(db)
        self.stats["runs"] += 1
        self.stats["completed"] += result["completed"]
        self.stats["failed"] += result["failed"]
        self.stats["expired_checkouts"] += expired
        return result

    async def _worker(self):
        while self.is_running:
            try:
                result = await self.sweep()
                if result["claimed"]:
                    logger.info(f"🔄 Sweep finished: {result}")
            except Exception as e:
                logger.error(f"❌ Error in scheduled change sweeper: {str(e)}")
            await asyncio.sleep(self.interval_seconds)

    def get_stats(self) -> Dict[str, Any]:
        return {**self.stats, "is_running": self.is_running}


scheduled_change_sweeper = ScheduledChangeSweeper()
