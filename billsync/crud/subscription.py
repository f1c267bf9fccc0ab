from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, and_, update
from typing import Optional, List, Iterable, Dict, Any
from uuid import UUID
from pydantic import BaseModel

from billsync.crud.base import CRUDBase
from billsync.models.subscription import Subscription, SubscriptionStatus, LIVE_STATUSES


class CRUDSubscription(CRUDBase[Subscription, BaseModel, BaseModel]):
    async def get_by_processor_ref(self, db: AsyncSession, processor_subscription_ref: str) -> Optional[Subscription]:
        """Get subscription by Stripe subscription id"""
        result = await db.execute(
            select(self.model).where(
                and_(
                    self.model.processor_subscription_ref == processor_subscription_ref,
                    self.model.is_deleted == False
                )
            )
        )
        return result.scalar_one_or_none()

    async def get_latest_live_for_customer(self, db: AsyncSession, customer_id: UUID) -> Optional[Subscription]:
        """Most recent active or trialing subscription of a customer"""
        result = await db.execute(
            select(self.model)
            .where(
                and_(
                    self.model.customer_id == customer_id,
                    self.model.status.in_(LIVE_STATUSES),
                    self.model.is_deleted == False
                )
            )
            .order_by(self.model.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_live_for_customer_product(
        self,
        db: AsyncSession,
        customer_id: UUID,
        product_id: UUID
    ) -> Optional[Subscription]:
        result = await db.execute(
            select(self.model)
            .where(
                and_(
                    self.model.customer_id == customer_id,
                    self.model.product_id == product_id,
                    self.model.status.in_(LIVE_STATUSES),
                    self.model.is_deleted == False
                )
            )
            .order_by(self.model.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_live_for_customer(self, db: AsyncSession, customer_id: UUID) -> List[Subscription]:
        result = await db.execute(
            select(self.model).where(
                and_(
                    self.model.customer_id == customer_id,
                    self.model.status.in_(LIVE_STATUSES + (SubscriptionStatus.PAST_DUE,)),
                    self.model.is_deleted == False
                )
            )
        )
        return list(result.scalars().all())

    async def list_live_free_tier_for_customer(
        self,
        db: AsyncSession,
        customer_id: UUID,
        *,
        exclude_id: Optional[UUID] = None
    ) -> List[Subscription]:
        """Active or trialing subscriptions without a processor subscription"""
        conditions = [
            self.model.customer_id == customer_id,
            self.model.processor_subscription_ref.is_(None),
            self.model.status.in_(LIVE_STATUSES),
            self.model.is_deleted == False,
        ]
        if exclude_id is not None:
            conditions.append(self.model.id != exclude_id)
        result = await db.execute(select(self.model).where(and_(*conditions)))
        return list(result.scalars().all())

    async def update_status_if(
        self,
        db: AsyncSession,
        subscription_id: UUID,
        *,
        expected: Iterable[SubscriptionStatus],
        values: Dict[str, Any],
        commit: bool = True
    ) -> bool:
        """Conditional update; applies only while the row is in one of the expected statuses"""
        result = await db.execute(
            update(self.model)
            .where(
                and_(
                    self.model.id == subscription_id,
                    self.model.status.in_(tuple(expected))
                )
            )
            .values(**values)
        )
        if commit:
            await db.commit()
        return result.rowcount > 0


subscription_crud = CRUDSubscription(Subscription)
