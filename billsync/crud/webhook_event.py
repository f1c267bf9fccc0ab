from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, and_, update
from typing import Optional, Dict, Any
from pydantic import BaseModel

from billsync.crud.base import CRUDBase
from billsync.models.base import utcnow
from billsync.models.webhook_event import WebhookEvent, WebhookEventStatus


class WebhookEventCreate(BaseModel):
    event_id: str
    event_type: str
    livemode: bool = False
    account_id: Optional[str] = None
    api_version: Optional[str] = None
    payload: Dict[str, Any]


class CRUDWebhookEvent(CRUDBase[WebhookEvent, WebhookEventCreate, BaseModel]):
    async def get_by_event_id(self, db: AsyncSession, event_id: str) -> Optional[WebhookEvent]:
        result = await db.execute(
            select(self.model).where(and_(self.model.event_id == event_id, self.model.is_deleted == False))
        )
        return result.scalar_one_or_none()

    async def mark_processed(self, db: AsyncSession, event_id: str) -> bool:
        result = await db.execute(
            update(self.model)
            .where(and_(self.model.event_id == event_id, self.model.status == WebhookEventStatus.PENDING))
            .values(status=WebhookEventStatus.PROCESSED, processed_at=utcnow(), error_message=None)
        )
        await db.commit()
        return result.rowcount > 0

    async def mark_failed(self, db: AsyncSession, event_id: str, error: str) -> bool:
        result = await db.execute(
            update(self.model)
            .where(and_(self.model.event_id == event_id, self.model.status == WebhookEventStatus.PENDING))
            .values(
                status=WebhookEventStatus.FAILED,
                processed_at=utcnow(),
                error_message=error[:2000],
                retry_count=self.model.retry_count + 1
            )
        )
        await db.commit()
        return result.rowcount > 0


webhook_event_crud = CRUDWebhookEvent(WebhookEvent)
