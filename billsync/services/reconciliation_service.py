import logging
from typing import Optional, Dict, Any, List
from uuid import UUID
from sqlalchemy.ext.asyncio import AsyncSession

from billsync.crud.reconciliation import reconciliation_crud
from billsync.models.reconciliation import ReconciliationQueueItem, ReconciliationStatus, ReconciliationType

logger = logging.getLogger(__name__)


class ReconciliationService:
    """Single escalation sink for failures that need a later fix-up or a human"""

    async def escalate(
        self,
        db: AsyncSession,
        *,
        type: ReconciliationType,
        reference_id: str,
        error: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        status: ReconciliationStatus = ReconciliationStatus.PENDING,
        priority: int = 5
    ) -> Optional[ReconciliationQueueItem]:
        """Append a queue item. Never raises; a failed write is logged at critical level."""
        last_error = None
        for attempt in range(2):
            try:
                item = await reconciliation_crud.enqueue(
                    db,
                    type=type,
                    reference_id=str(reference_id),
                    status=status,
                    priority=priority,
                    error_message=error,
                    details=details or {},
                )
                logger.warning(f"⚠️ Reconciliation item {item.id} queued: {type.value} for {reference_id}")
                return item
            except Exception as e:
                last_error = e
                # Session may still hold the caller's aborted transaction
                await db.rollback()
        logger.critical(
            f"🚨 Could not queue reconciliation item {type.value} for {reference_id}: {str(last_error)} "
            f"(original error: {error}, details: {details})"
        )
        return None

    async def list_open(self, db: AsyncSession, limit: int = 100) -> List[ReconciliationQueueItem]:
        return await reconciliation_crud.list_open(db, limit=limit)

    async def resolve(self, db: AsyncSession, item_id: UUID, resolved_by: str, notes: Optional[str] = None) -> bool:
        resolved = await reconciliation_crud.resolve(db, item_id, resolved_by=resolved_by, notes=notes)
        logger.info(f"✅ Reconciliation item {item_id} resolved by {resolved_by}")
        return resolved


reconciliation_service = ReconciliationService()
