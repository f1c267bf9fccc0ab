from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, and_, update, delete
from typing import Optional, List
from datetime import datetime
from uuid import UUID
from pydantic import BaseModel

from billsync.crud.base import CRUDBase
from billsync.models.base import utcnow
from billsync.models.subscription_change import SubscriptionChange, ChangeType, ChangeStatus


class SubscriptionChangeCreate(BaseModel):
    subscription_id: UUID
    organization_id: UUID
    change_type: ChangeType
    from_price_id: UUID
    to_price_id: UUID
    from_amount: int
    to_amount: int
    proration_credit: int = 0
    proration_charge: int = 0
    net_amount: int = 0
    status: ChangeStatus
    scheduled_for: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    processor_invoice_ref: Optional[str] = None


class CRUDSubscriptionChange(CRUDBase[SubscriptionChange, SubscriptionChangeCreate, BaseModel]):
    async def get_scheduled_for_subscription(self, db: AsyncSession, subscription_id: UUID) -> Optional[SubscriptionChange]:
        result = await db.execute(
            select(self.model)
            .where(
                and_(
                    self.model.subscription_id == subscription_id,
                    self.model.status == ChangeStatus.SCHEDULED,
                    self.model.is_deleted == False
                )
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_due(self, db: AsyncSession, now: datetime, limit: int = 50) -> List[SubscriptionChange]:
        """Scheduled changes whose time has come, earliest first"""
        result = await db.execute(
            select(self.model)
            .where(
                and_(
                    self.model.status == ChangeStatus.SCHEDULED,
                    self.model.scheduled_for <= now,
                    self.model.is_deleted == False
                )
            )
            .order_by(self.model.scheduled_for.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def claim(self, db: AsyncSession, change_id: UUID) -> bool:
        """scheduled -> processing; False when another worker got there first"""
        result = await db.execute(
            update(self.model)
            .where(and_(self.model.id == change_id, self.model.status == ChangeStatus.SCHEDULED))
            .values(status=ChangeStatus.PROCESSING, updated_at=utcnow())
        )
        await db.commit()
        return result.rowcount == 1

    async def mark_completed(self, db: AsyncSession, change_id: UUID, *, commit: bool = True) -> None:
        await db.execute(
            update(self.model)
            .where(self.model.id == change_id)
            .values(status=ChangeStatus.COMPLETED, completed_at=utcnow(), failed_reason=None)
        )
        if commit:
            await db.commit()

    async def mark_failed(self, db: AsyncSession, change_id: UUID, reason: str) -> None:
        await db.execute(
            update(self.model)
            .where(self.model.id == change_id)
            .values(status=ChangeStatus.FAILED, failed_reason=reason[:2000])
        )
        await db.commit()

    async def delete_scheduled(self, db: AsyncSession, change_id: UUID, subscription_id: UUID) -> bool:
        """Remove a change only while it is still waiting to run"""
        result = await db.execute(
            delete(self.model).where(
                and_(
                    self.model.id == change_id,
                    self.model.subscription_id == subscription_id,
                    self.model.status == ChangeStatus.SCHEDULED
                )
            )
        )
        await db.commit()
        return result.rowcount > 0


subscription_change_crud = CRUDSubscriptionChange(SubscriptionChange)
