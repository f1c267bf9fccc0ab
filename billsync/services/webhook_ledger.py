import logging
from dataclasses import dataclass
from typing import Dict, Any, Optional
from sqlalchemy.ext.asyncio import AsyncSession

from billsync.core.operations import insert_ignore, run_with_retry
from billsync.crud.webhook_event import webhook_event_crud
from billsync.models.webhook_event import WebhookEvent, WebhookEventStatus
from billsync.schemas.events import EventEnvelope

logger = logging.getLogger(__name__)


@dataclass
class LedgerResult:
    is_new: bool
    status: Optional[WebhookEventStatus] = None


class WebhookLedger:
    """
    Durable record of every inbound event, keyed by the processor's event id.

    The row is written before any processing. A second arrival of the same
    id, whatever state the first one reached, is reported as not new and
    must not be processed again.
    """

    async def record_and_check(self, db: AsyncSession, event: Dict[str, Any]) -> LedgerResult:
        envelope = EventEnvelope.model_validate(event)

        async def _insert():
            result = await db.execute(
                insert_ignore(db, WebhookEvent).values(
                    event_id=envelope.id,
                    event_type=envelope.type,
                    livemode=envelope.livemode,
                    account_id=envelope.account,
                    api_version=envelope.api_version,
                    status=WebhookEventStatus.PENDING,
                    payload=event,
                )
            )
            await db.commit()
            return result.rowcount

        try:
            inserted = await run_with_retry(_insert, db=db, operation_name="record webhook event")
        except Exception as e:
            # Audit write failed for a reason other than a duplicate id; still process
            await db.rollback()
            logger.error(f"❌ Failed to record webhook event {envelope.id}: {str(e)}")
            existing = await self._lookup(db, envelope.id)
            if existing is not None:
                return LedgerResult(is_new=False, status=existing.status)
            return LedgerResult(is_new=True)

        if inserted == 1:
            return LedgerResult(is_new=True, status=WebhookEventStatus.PENDING)

        existing = await self._lookup(db, envelope.id)
        status = existing.status if existing is not None else None
        logger.info(f"ℹ️ Duplicate webhook event {envelope.id} ({envelope.type}), previous status: {status}")
        return LedgerResult(is_new=False, status=status)

    async def mark_processed(self, db: AsyncSession, event_id: str) -> None:
        try:
            await webhook_event_crud.mark_processed(db, event_id)
        except Exception as e:
            await db.rollback()
            logger.error(f"❌ Failed to mark webhook event {event_id} processed: {str(e)}")

    async def mark_failed(self, db: AsyncSession, event_id: str, error: str) -> None:
        try:
            await webhook_event_crud.mark_failed(db, event_id, error)
        except Exception as e:
            await db.rollback()
            logger.error(f"❌ Failed to mark webhook event {event_id} failed: {str(e)}")

    async def _lookup(self, db: AsyncSession, event_id: str) -> Optional[WebhookEvent]:
        try:
            return await webhook_event_crud.get_by_event_id(db, event_id)
        except Exception as e:
            await db.rollback()
            logger.error(f"❌ Failed to look up webhook event {event_id}: {str(e)}")
            return None


webhook_ledger = WebhookLedger()
