from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, and_, update
from typing import Optional, Dict, Any
from datetime import datetime
from uuid import UUID
from pydantic import BaseModel, Field

from billsync.crud.base import CRUDBase
from billsync.models.checkout_metadata import CheckoutMetadata, CheckoutStatus


class CheckoutMetadataCreate(BaseModel):
    organization_id: UUID
    customer_id: Optional[UUID] = None
    product_id: UUID
    price_id: UUID
    customer_email: str
    customer_name: Optional[str] = None
    customer_external_id: Optional[str] = None
    product_name: str
    price_amount: int
    currency: str
    billing_interval: str
    billing_interval_count: int = 1
    trial_period_days: Optional[int] = None
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None
    meta_data: Dict[str, Any] = Field(default_factory=dict)


class CRUDCheckoutMetadata(CRUDBase[CheckoutMetadata, CheckoutMetadataCreate, BaseModel]):
    async def get_by_checkout_ref(self, db: AsyncSession, checkout_session_ref: str) -> Optional[CheckoutMetadata]:
        result = await db.execute(
            select(self.model).where(
                and_(self.model.checkout_session_ref == checkout_session_ref, self.model.is_deleted == False)
            )
        )
        return result.scalar_one_or_none()

    async def expire_if_pending(self, db: AsyncSession, metadata_id: UUID, now: datetime) -> bool:
        result = await db.execute(
            update(self.model)
            .where(
                and_(
                    self.model.id == metadata_id,
                    self.model.status == CheckoutStatus.PENDING,
                    self.model.expires_at < now
                )
            )
            .values(status=CheckoutStatus.EXPIRED)
        )
        await db.commit()
        return result.rowcount > 0

    async def expire_stale(self, db: AsyncSession, now: datetime) -> int:
        """Flip every pending row past its expiry to expired"""
        result = await db.execute(
            update(self.model)
            .where(and_(self.model.status == CheckoutStatus.PENDING, self.model.expires_at < now))
            .values(status=CheckoutStatus.EXPIRED)
        )
        await db.commit()
        return result.rowcount


checkout_metadata_crud = CRUDCheckoutMetadata(CheckoutMetadata)
