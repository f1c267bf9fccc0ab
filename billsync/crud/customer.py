from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, and_, func
from typing import Optional, Dict, Any
from uuid import UUID
from pydantic import BaseModel, Field

from billsync.crud.base import CRUDBase
from billsync.models.customer import Customer


class CustomerCreate(BaseModel):
    organization_id: UUID
    email: str
    external_id: Optional[str] = None
    name: Optional[str] = None
    billing_address: Optional[Dict[str, Any]] = None
    processor_customer_ref: Optional[str] = None
    meta_data: Dict[str, Any] = Field(default_factory=dict)


class CRUDCustomer(CRUDBase[Customer, CustomerCreate, BaseModel]):
    async def get_by_processor_ref(self, db: AsyncSession, processor_customer_ref: str) -> Optional[Customer]:
        """Get customer by Stripe customer id"""
        result = await db.execute(
            select(self.model).where(
                and_(
                    self.model.processor_customer_ref == processor_customer_ref,
                    self.model.is_deleted == False
                )
            ).limit(1)
        )
        return result.scalar_one_or_none()

    async def get_by_external_id(self, db: AsyncSession, organization_id: UUID, external_id: str) -> Optional[Customer]:
        result = await db.execute(
            select(self.model).where(
                and_(
                    self.model.organization_id == organization_id,
                    self.model.external_id == external_id,
                    self.model.is_deleted == False
                )
            )
        )
        return result.scalar_one_or_none()

    async def get_by_email(self, db: AsyncSession, organization_id: UUID, email: str) -> Optional[Customer]:
        """Case-insensitive email lookup within a tenant"""
        result = await db.execute(
            select(self.model).where(
                and_(
                    self.model.organization_id == organization_id,
                    func.lower(self.model.email) == email.strip().lower(),
                    self.model.is_deleted == False
                )
            )
        )
        return result.scalar_one_or_none()


customer_crud = CRUDCustomer(Customer)
