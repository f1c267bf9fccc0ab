from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, and_
from typing import Optional
from pydantic import BaseModel

from billsync.crud.base import CRUDBase
from billsync.models.organization import Organization, OrganizationStatus


class OrganizationCreate(BaseModel):
    name: str
    processor_account_ref: Optional[str] = None
    status: OrganizationStatus = OrganizationStatus.PENDING
    charges_enabled: bool = False
    payouts_enabled: bool = False
    details_submitted: bool = False


class CRUDOrganization(CRUDBase[Organization, OrganizationCreate, BaseModel]):
    async def get_by_account_ref(self, db: AsyncSession, account_ref: str) -> Optional[Organization]:
        """Get organization by its Stripe connected account id"""
        result = await db.execute(
            select(self.model).where(
                and_(self.model.processor_account_ref == account_ref, self.model.is_deleted == False)
            )
        )
        return result.scalar_one_or_none()


organization_crud = CRUDOrganization(Organization)
