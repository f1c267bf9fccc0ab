from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, and_, update
from typing import Optional, Dict, Any, List
from uuid import UUID
from pydantic import BaseModel, Field

from billsync.crud.base import CRUDBase
from billsync.core.exceptions import NotFoundError
from billsync.models.base import utcnow
from billsync.models.reconciliation import (
    ReconciliationQueueItem,
    ReconciliationStatus,
    ReconciliationType,
    OPEN_STATUSES,
    Refund,
    RefundInitiator,
    SyncEvent,
    SyncOperation,
)


class ReconciliationItemCreate(BaseModel):
    type: ReconciliationType
    reference_id: str
    status: ReconciliationStatus = ReconciliationStatus.PENDING
    priority: int = Field(default=5, ge=1, le=10)
    error_message: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class RefundCreate(BaseModel):
    payment_ref: str
    processor_refund_ref: Optional[str] = None
    processor_account_ref: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    reason: str
    status: str
    initiated_by: RefundInitiator = RefundInitiator.AUTOMATIC
    meta_data: Dict[str, Any] = Field(default_factory=dict)


class SyncEventCreate(BaseModel):
    organization_id: Optional[UUID] = None
    entity_type: str
    entity_id: Optional[UUID] = None
    processor_object_ref: str
    operation: SyncOperation
    status: str
    error_message: Optional[str] = None
    triggered_by: str = "webhook"


class CRUDReconciliationQueue(CRUDBase[ReconciliationQueueItem, ReconciliationItemCreate, BaseModel]):
    async def enqueue(
        self,
        db: AsyncSession,
        *,
        type: ReconciliationType,
        reference_id: str,
        status: ReconciliationStatus = ReconciliationStatus.PENDING,
        priority: int = 5,
        error_message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> ReconciliationQueueItem:
        """Append an item to the reconciliation queue"""
        return await self.create(
            db,
            obj_in=ReconciliationItemCreate(
                type=type,
                reference_id=reference_id,
                status=status,
                priority=priority,
                error_message=error_message,
                details=details or {},
            ),
        )

    async def list_open(self, db: AsyncSession, *, limit: int = 100) -> List[ReconciliationQueueItem]:
        """Items awaiting attention, highest priority (lowest number) and oldest first"""
        result = await db.execute(
            select(self.model)
            .where(and_(self.model.status.in_(OPEN_STATUSES), self.model.is_deleted == False))
            .order_by(self.model.priority.asc(), self.model.created_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def resolve(self, db: AsyncSession, item_id: UUID, *, resolved_by: str, notes: Optional[str] = None) -> bool:
        result = await db.execute(
            update(self.model)
            .where(and_(self.model.id == item_id, self.model.status.in_(OPEN_STATUSES)))
            .values(
                status=ReconciliationStatus.RESOLVED,
                resolved_by=resolved_by,
                resolution_notes=notes,
                processed_at=utcnow()
            )
        )
        await db.commit()
        if result.rowcount == 0:
            raise NotFoundError("Open reconciliation item")
        return True


class CRUDRefund(CRUDBase[Refund, RefundCreate, BaseModel]):
    async def list_for_payment(self, db: AsyncSession, payment_ref: str) -> List[Refund]:
        result = await db.execute(
            select(self.model)
            .where(and_(self.model.payment_ref == payment_ref, self.model.is_deleted == False))
            .order_by(self.model.created_at.desc())
        )
        return list(result.scalars().all())


class CRUDSyncEvent(CRUDBase[SyncEvent, SyncEventCreate, BaseModel]):
    pass


reconciliation_crud = CRUDReconciliationQueue(ReconciliationQueueItem)
refund_crud = CRUDRefund(Refund)
sync_event_crud = CRUDSyncEvent(SyncEvent)
