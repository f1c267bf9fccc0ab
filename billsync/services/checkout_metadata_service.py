import logging
from datetime import datetime, timedelta
from typing import Optional, Tuple
from uuid import UUID
from sqlalchemy.ext.asyncio import AsyncSession

from billsync.core.config import settings
from billsync.core.exceptions import CheckoutExpiredError, NotFoundError
from billsync.crud.checkout_metadata import checkout_metadata_crud, CheckoutMetadataCreate
from billsync.models.base import utcnow
from billsync.models.checkout_metadata import CheckoutMetadata, CheckoutStatus

logger = logging.getLogger(__name__)


class CheckoutMetadataService:
    """
    Server-side store for checkout parameters.

    Only the opaque row id travels through the processor; everything else
    is resolved from here when the payment comes back.
    """

    async def create(
        self,
        db: AsyncSession,
        params: CheckoutMetadataCreate,
        now: Optional[datetime] = None
    ) -> Tuple[UUID, datetime]:
        expires_at = (now or utcnow()) + timedelta(minutes=settings.checkout_metadata_ttl_minutes)
        metadata = await checkout_metadata_crud.create_with_extra(
            db,
            obj_in=params,
            extra_data={"status": CheckoutStatus.PENDING, "expires_at": expires_at},
        )
        logger.info(f"📝 Checkout metadata {metadata.id} stored, expires at {expires_at}")
        return metadata.id, expires_at

    async def get(self, db: AsyncSession, metadata_id: UUID, now: Optional[datetime] = None) -> CheckoutMetadata:
        """Resolve metadata by id; expired rows raise CheckoutExpiredError on every read"""
        metadata = await checkout_metadata_crud.get(db, metadata_id, raise_if_not_found=False)
        if metadata is None:
            raise NotFoundError("Checkout metadata")

        if metadata.status == CheckoutStatus.EXPIRED:
            raise CheckoutExpiredError()
        now = now or utcnow()
        if metadata.status == CheckoutStatus.PENDING and metadata.expires_at < now:
            await checkout_metadata_crud.expire_if_pending(db, metadata_id, now)
            logger.info(f"⌛ Checkout metadata {metadata_id} expired")
            raise CheckoutExpiredError()
        return metadata

    async def find_for_payment(self, db: AsyncSession, metadata_id: str, payment_ref: str) -> Optional[CheckoutMetadata]:
        """
        Metadata named by a payment's ``checkout_metadata_id``.

        Falls back to the row the payment was linked to at checkout creation
        when the id is not a valid UUID or names no row. Expiry is not
        enforced here, a captured payment must always find its checkout.
        """
        metadata = None
        try:
            metadata = await checkout_metadata_crud.get(db, UUID(metadata_id), raise_if_not_found=False)
        except ValueError:
            logger.warning(f"⚠️ Payment {payment_ref} carries a malformed checkout metadata id")
        if metadata is None:
            metadata = await checkout_metadata_crud.get_by_checkout_ref(db, payment_ref)
        return metadata

    async def link_to_checkout_ref(self, db: AsyncSession, metadata_id: UUID, checkout_ref: str) -> CheckoutMetadata:
        """Attach the processor payment reference; the row is now in flight"""
        metadata = await checkout_metadata_crud.get(db, metadata_id)
        return await checkout_metadata_crud.update(
            db,
            db_obj=metadata,
            obj_in={"checkout_session_ref": checkout_ref, "status": CheckoutStatus.PROCESSING},
        )

    async def update_status(
        self,
        db: AsyncSession,
        metadata_id: UUID,
        status: CheckoutStatus,
        subscription_id: Optional[UUID] = None,
        commit: bool = True
    ) -> CheckoutMetadata:
        metadata = await checkout_metadata_crud.get(db, metadata_id)
        values = {"status": status}
        if status == CheckoutStatus.COMPLETED:
            values["completed_at"] = utcnow()
        if subscription_id is not None:
            values["subscription_id"] = subscription_id
        return await checkout_metadata_crud.update(db, db_obj=metadata, obj_in=values, commit=commit)

    async def cleanup_expired(self, db: AsyncSession, now: Optional[datetime] = None) -> int:
        count = await checkout_metadata_crud.expire_stale(db, now or utcnow())
        if count:
            logger.info(f"🧹 Expired {count} stale checkout metadata row(s)")
        return count


checkout_metadata_service = CheckoutMetadataService()
