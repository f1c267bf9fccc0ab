from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, and_, update
from typing import Optional, List, Iterable, Dict, Any
from datetime import datetime
from uuid import UUID
from pydantic import BaseModel, Field

from billsync.crud.base import CRUDBase
from billsync.models.base import utcnow
from billsync.models.feature_grant import FeatureGrant, UsageRecord, GrantSyncStatus
from billsync.models.product import Feature


class FeatureGrantCreate(BaseModel):
    customer_id: UUID
    feature_id: UUID
    subscription_id: Optional[UUID] = None
    properties: Dict[str, Any] = Field(default_factory=dict)
    processor_entitlement_ref: Optional[str] = None
    sync_status: GrantSyncStatus = GrantSyncStatus.PENDING
    synced_at: Optional[datetime] = None


class UsageRecordCreate(BaseModel):
    customer_id: UUID
    feature_id: UUID
    subscription_id: UUID
    period_start: datetime
    period_end: datetime
    consumed_units: int = 0
    limit_units: int = 0


class CRUDFeatureGrant(CRUDBase[FeatureGrant, FeatureGrantCreate, BaseModel]):
    async def list_active_for_subscription(self, db: AsyncSession, subscription_id: UUID) -> List[FeatureGrant]:
        result = await db.execute(
            select(self.model).where(
                and_(
                    self.model.subscription_id == subscription_id,
                    self.model.revoked_at.is_(None),
                    self.model.is_deleted == False
                )
            )
        )
        return list(result.scalars().all())

    async def get_active(self, db: AsyncSession, customer_id: UUID, feature_id: UUID) -> Optional[FeatureGrant]:
        """Current non-revoked grant of a feature to a customer"""
        result = await db.execute(
            select(self.model)
            .where(
                and_(
                    self.model.customer_id == customer_id,
                    self.model.feature_id == feature_id,
                    self.model.revoked_at.is_(None),
                    self.model.is_deleted == False
                )
            )
            .order_by(self.model.granted_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def revoke_for_subscriptions(
        self,
        db: AsyncSession,
        subscription_ids: Iterable[UUID],
        *,
        revoked_at: Optional[datetime] = None,
        commit: bool = True
    ) -> int:
        """Revoke every active grant of the given subscriptions in one statement"""
        ids = list(subscription_ids)
        if not ids:
            return 0
        result = await db.execute(
            update(self.model)
            .where(
                and_(
                    self.model.subscription_id.in_(ids),
                    self.model.revoked_at.is_(None)
                )
            )
            .values(revoked_at=revoked_at or utcnow())
        )
        if commit:
            await db.commit()
        return result.rowcount

    async def revoke_for_customer(self, db: AsyncSession, customer_id: UUID, *, commit: bool = True) -> int:
        result = await db.execute(
            update(self.model)
            .where(and_(self.model.customer_id == customer_id, self.model.revoked_at.is_(None)))
            .values(revoked_at=utcnow())
        )
        if commit:
            await db.commit()
        return result.rowcount


class CRUDUsageRecord(CRUDBase[UsageRecord, UsageRecordCreate, BaseModel]):
    async def exists_for_period(
        self,
        db: AsyncSession,
        subscription_id: UUID,
        feature_id: UUID,
        period_start: datetime
    ) -> bool:
        result = await db.execute(
            select(self.model.id).where(
                and_(
                    self.model.subscription_id == subscription_id,
                    self.model.feature_id == feature_id,
                    self.model.period_start == period_start
                )
            ).limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def open_period(
        self,
        db: AsyncSession,
        *,
        subscription,
        grants: List[FeatureGrant],
        period_start: datetime,
        period_end: datetime,
        commit: bool = True
    ) -> List[UsageRecord]:
        """Start a zeroed usage counter per grant for a billing period, skipping ones already open"""
        records = []
        for grant in grants:
            if await self.exists_for_period(db, subscription.id, grant.feature_id, period_start):
                continue
            limit = (grant.properties or {}).get("limit")
            if limit is None:
                feature = await db.get(Feature, grant.feature_id)
                limit = (feature.properties or {}).get("limit") if feature else None
            records.append(UsageRecord(
                customer_id=subscription.customer_id,
                feature_id=grant.feature_id,
                subscription_id=subscription.id,
                period_start=period_start,
                period_end=period_end,
                consumed_units=0,
                limit_units=int(limit or 0),
            ))
        if records:
            db.add_all(records)
            if commit:
                await db.commit()
            else:
                await db.flush()
        return records


feature_grant_crud = CRUDFeatureGrant(FeatureGrant)
usage_record_crud = CRUDUsageRecord(UsageRecord)
