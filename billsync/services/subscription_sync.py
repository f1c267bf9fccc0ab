"""
Applies processor lifecycle events to local subscription and entitlement state.

Each handler looks the local row up by its processor reference, returns
quietly when it is unknown and otherwise applies the mapped change.
Deliveries can arrive out of order, so handlers compare incoming period
and status information against what is stored before writing.
"""

import logging
from typing import Optional
from uuid import UUID
from sqlalchemy.ext.asyncio import AsyncSession

from billsync.crud.customer import customer_crud
from billsync.crud.feature_grant import feature_grant_crud, usage_record_crud, FeatureGrantCreate
from billsync.crud.organization import organization_crud
from billsync.crud.product import feature_crud, product_price_crud
from billsync.crud.reconciliation import sync_event_crud, SyncEventCreate
from billsync.crud.subscription import subscription_crud
from billsync.models.base import utcnow
from billsync.models.checkout_metadata import CheckoutStatus
from billsync.models.feature_grant import GrantSyncStatus
from billsync.models.organization import OrganizationStatus
from billsync.models.reconciliation import SyncOperation
from billsync.models.subscription import SubscriptionStatus, LIVE_STATUSES, TERMINAL_STATUSES
from billsync.services.checkout_metadata_service import checkout_metadata_service
from billsync.utils.periods import from_unix
from billsync.schemas.events import (
    AccountDeauthorizedEvent,
    AccountEvent,
    CustomerEvent,
    EntitlementEvent,
    InvoiceEvent,
    PaymentIntentEvent,
    SubscriptionEvent,
)

logger = logging.getLogger(__name__)

STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.ENDED,
    "canceled": SubscriptionStatus.CANCELED,
}


class SubscriptionSync:

    # Subscriptions

    async def handle_subscription_created(self, db: AsyncSession, event: SubscriptionEvent) -> None:
        await self._sync_subscription(db, event, allow_renewal=False)

    async def handle_subscription_updated(self, db: AsyncSession, event: SubscriptionEvent) -> None:
        await self._sync_subscription(db, event, allow_renewal=True)

    async def _sync_subscription(self, db: AsyncSession, event: SubscriptionEvent, allow_renewal: bool) -> None:
        obj = event.data.object
        subscription = await subscription_crud.get_by_processor_ref(db, obj.id)
        if subscription is None:
            logger.warning(f"⚠️ Subscription {obj.id} not found locally, ignoring {event.type}")
            return

        incoming_status = STATUS_MAP.get(obj.status)
        incoming_start = from_unix(obj.period_start)
        incoming_end = from_unix(obj.period_end)

        if incoming_start and subscription.current_period_start and incoming_start < subscription.current_period_start:
            logger.info(f"ℹ️ Stale {event.type} for {obj.id}: period {incoming_start} older than stored one")
            return
        if subscription.status in TERMINAL_STATUSES and incoming_status not in TERMINAL_STATUSES:
            logger.info(f"ℹ️ Ignoring {event.type} for {obj.id}: already {subscription.status.value}")
            return

        renewed = bool(
            allow_renewal
            and incoming_start
            and subscription.current_period_start
            and incoming_start > subscription.current_period_start
        )

        if incoming_status is not None:
            subscription.status = incoming_status
        else:
            logger.info(f"ℹ️ Unmapped processor status '{obj.status}' for {obj.id}, keeping {subscription.status.value}")
        if incoming_start:
            subscription.current_period_start = incoming_start
        if incoming_end:
            subscription.current_period_end = incoming_end
        subscription.cancel_at_period_end = obj.cancel_at_period_end
        if obj.canceled_at:
            subscription.canceled_at = from_unix(obj.canceled_at)
        if obj.trial_start:
            subscription.trial_start = from_unix(obj.trial_start)
        if obj.trial_end:
            subscription.trial_end = from_unix(obj.trial_end)

        if obj.price_ref:
            price = await product_price_crud.get_by_processor_ref(db, obj.price_ref)
            if price is not None and price.id != subscription.price_id:
                logger.info(f"ℹ️ Subscription {obj.id} price moved to {price.id}")
                subscription.price_id = price.id
                subscription.product_id = price.product_id
                subscription.amount = price.amount
                subscription.currency = price.currency

        await db.commit()
        logger.info(f"✅ Synced {event.type} for subscription {subscription.id}")

        if renewed:
            await self._open_usage_period(db, subscription)

    async def _open_usage_period(self, db: AsyncSession, subscription) -> None:
        grants = await feature_grant_crud.list_active_for_subscription(db, subscription.id)
        records = await usage_record_crud.open_period(
            db,
            subscription=subscription,
            grants=grants,
            period_start=subscription.current_period_start,
            period_end=subscription.current_period_end,
        )
        logger.info(f"🔄 Renewal of {subscription.id}: opened {len(records)} usage period(s)")

    async def handle_subscription_deleted(self, db: AsyncSession, event: SubscriptionEvent) -> None:
        obj = event.data.object
        subscription = await subscription_crud.get_by_processor_ref(db, obj.id)
        if subscription is None:
            logger.warning(f"⚠️ Subscription {obj.id} not found locally, ignoring deletion")
            return

        now = utcnow()
        subscription.status = SubscriptionStatus.CANCELED
        subscription.canceled_at = from_unix(obj.canceled_at) or now
        subscription.ended_at = from_unix(obj.ended_at) or now
        subscription.cancel_at_period_end = False
        revoked = await feature_grant_crud.revoke_for_subscriptions(db, [subscription.id], revoked_at=now, commit=False)
        await db.commit()
        logger.info(f"🛑 Subscription {subscription.id} canceled, {revoked} grant(s) revoked")

    # Invoices

    async def handle_invoice_paid(self, db: AsyncSession, event: InvoiceEvent) -> None:
        subscription = await self._subscription_for_invoice(db, event)
        if subscription is None:
            return
        if subscription.status in TERMINAL_STATUSES:
            logger.info(f"ℹ️ Invoice paid for {subscription.status.value} subscription {subscription.id}, not reactivating")
            return
        updated = await subscription_crud.update_status_if(
            db,
            subscription.id,
            expected=LIVE_STATUSES + (SubscriptionStatus.PAST_DUE, SubscriptionStatus.INCOMPLETE),
            values={"status": SubscriptionStatus.ACTIVE},
        )
        if updated:
            logger.info(f"💳 Invoice {event.data.object.id} paid, subscription {subscription.id} active")

    async def handle_invoice_failed(self, db: AsyncSession, event: InvoiceEvent) -> None:
        subscription = await self._subscription_for_invoice(db, event)
        if subscription is None:
            return
        updated = await subscription_crud.update_status_if(
            db,
            subscription.id,
            expected=LIVE_STATUSES,
            values={"status": SubscriptionStatus.PAST_DUE},
        )
        if updated:
            logger.warning(f"⚠️ Invoice {event.data.object.id} failed, subscription {subscription.id} past due")
        else:
            logger.info(f"ℹ️ Invoice failure ignored for subscription {subscription.id} in status {subscription.status.value}")

    async def _subscription_for_invoice(self, db: AsyncSession, event: InvoiceEvent):
        ref = event.data.object.subscription_ref
        if not ref:
            logger.info(f"ℹ️ Invoice {event.data.object.id} has no subscription, ignoring")
            return None
        subscription = await subscription_crud.get_by_processor_ref(db, ref)
        if subscription is None:
            logger.warning(f"⚠️ Subscription {ref} for invoice {event.data.object.id} not found locally")
        return subscription

    # Entitlements

    async def handle_entitlement_upserted(self, db: AsyncSession, event: EntitlementEvent) -> None:
        obj = event.data.object
        operation = SyncOperation.CREATE if event.type.endswith(".created") else SyncOperation.UPDATE

        feature = await feature_crud.get_by_processor_ref(db, obj.feature_ref) if obj.feature_ref else None
        if feature is None:
            logger.warning(f"⚠️ Feature {obj.feature_ref} of entitlement {obj.id} not found locally")
            await self._record_sync_event(db, None, None, obj.id, operation, "failed", "Feature not found")
            return
        customer = await customer_crud.get_by_processor_ref(db, obj.customer_ref) if obj.customer_ref else None
        if customer is None:
            logger.warning(f"⚠️ Customer {obj.customer_ref} of entitlement {obj.id} not found locally")
            await self._record_sync_event(db, feature.organization_id, None, obj.id, operation, "failed", "Customer not found")
            return

        subscription = await subscription_crud.get_latest_live_for_customer(db, customer.id)
        grant = await feature_grant_crud.get_active(db, customer.id, feature.id)
        now = utcnow()
        if grant is None:
            grant = await feature_grant_crud.create(
                db,
                obj_in=FeatureGrantCreate(
                    customer_id=customer.id,
                    feature_id=feature.id,
                    subscription_id=subscription.id if subscription else None,
                    properties=dict(feature.properties or {}),
                    processor_entitlement_ref=obj.id,
                    sync_status=GrantSyncStatus.SYNCED,
                    synced_at=now,
                ),
            )
        else:
            grant.processor_entitlement_ref = obj.id
            grant.sync_status = GrantSyncStatus.SYNCED
            grant.synced_at = now
            if grant.subscription_id is None and subscription is not None:
                grant.subscription_id = subscription.id
            await db.commit()

        await self._record_sync_event(db, feature.organization_id, grant.id, obj.id, operation, "success")
        logger.info(f"✅ Entitlement {obj.id} synced to grant {grant.id}")

    async def handle_entitlement_deleted(self, db: AsyncSession, event: EntitlementEvent) -> None:
        obj = event.data.object
        feature = await feature_crud.get_by_processor_ref(db, obj.feature_ref) if obj.feature_ref else None
        customer = await customer_crud.get_by_processor_ref(db, obj.customer_ref) if obj.customer_ref else None
        if feature is None or customer is None:
            logger.warning(f"⚠️ Entitlement {obj.id} refers to unknown feature or customer, ignoring deletion")
            await self._record_sync_event(db, None, None, obj.id, SyncOperation.DELETE, "failed", "Feature or customer not found")
            return

        grant = await feature_grant_crud.get_active(db, customer.id, feature.id)
        if grant is None:
            logger.info(f"ℹ️ No active grant for entitlement {obj.id}, nothing to revoke")
            return
        grant.revoked_at = utcnow()
        grant.sync_status = GrantSyncStatus.SYNCED
        grant.synced_at = grant.revoked_at
        await db.commit()
        await self._record_sync_event(db, feature.organization_id, grant.id, obj.id, SyncOperation.DELETE, "success")
        logger.info(f"🛑 Grant {grant.id} revoked for entitlement {obj.id}")

    async def _record_sync_event(
        self,
        db: AsyncSession,
        organization_id: Optional[UUID],
        entity_id: Optional[UUID],
        processor_ref: str,
        operation: SyncOperation,
        status: str,
        error: Optional[str] = None
    ) -> None:
        try:
            await sync_event_crud.create(
                db,
                obj_in=SyncEventCreate(
                    organization_id=organization_id,
                    entity_type="feature_grant",
                    entity_id=entity_id,
                    processor_object_ref=processor_ref,
                    operation=operation,
                    status=status,
                    error_message=error,
                ),
            )
        except Exception as e:
            await db.rollback()
            logger.error(f"❌ Failed to record sync event for {processor_ref}: {str(e)}")

    # Customers

    async def handle_customer_updated(self, db: AsyncSession, event: CustomerEvent) -> None:
        obj = event.data.object
        customer = await customer_crud.get_by_processor_ref(db, obj.id)
        if customer is None:
            logger.warning(f"⚠️ Customer {obj.id} not found locally, ignoring update")
            return

        if obj.email:
            email = obj.email.strip().lower()
            if email != customer.email:
                other = await customer_crud.get_by_email(db, customer.organization_id, email)
                if other is not None and other.id != customer.id:
                    logger.warning(f"⚠️ Email of {obj.id} collides with customer {other.id}, keeping {customer.email}")
                else:
                    customer.email = email
        if obj.name is not None:
            customer.name = obj.name
        if obj.address is not None:
            customer.billing_address = obj.address
        if obj.metadata:
            customer.meta_data = {**(customer.meta_data or {}), **obj.metadata}
            external_id = obj.metadata.get("external_id")
            if external_id and not customer.external_id:
                customer.external_id = external_id
        await db.commit()
        logger.info(f"✅ Customer {customer.id} synced from {obj.id}")

    async def handle_customer_deleted(self, db: AsyncSession, event: CustomerEvent) -> None:
        obj = event.data.object
        customer = await customer_crud.get_by_processor_ref(db, obj.id)
        if customer is None:
            logger.warning(f"⚠️ Customer {obj.id} not found locally, ignoring deletion")
            return

        now = utcnow()
        subscriptions = await subscription_crud.list_live_for_customer(db, customer.id)
        for subscription in subscriptions:
            subscription.status = SubscriptionStatus.CANCELED
            subscription.canceled_at = now
            subscription.ended_at = now
        await feature_grant_crud.revoke_for_customer(db, customer.id, commit=False)
        customer.is_deleted = True
        customer.deleted_at = now
        # Soft-deleted customers release their external id for reuse
        customer.external_id = None
        await db.commit()
        logger.info(f"🛑 Customer {customer.id} deleted, {len(subscriptions)} subscription(s) canceled")

    # Connected accounts

    async def handle_account_updated(self, db: AsyncSession, event: AccountEvent) -> None:
        obj = event.data.object
        organization = await organization_crud.get_by_account_ref(db, obj.id)
        if organization is None:
            logger.warning(f"⚠️ Organization for account {obj.id} not found")
            return

        organization.charges_enabled = obj.charges_enabled
        organization.payouts_enabled = obj.payouts_enabled
        organization.details_submitted = obj.details_submitted
        if organization.status != OrganizationStatus.BLOCKED:
            if obj.charges_enabled and obj.payouts_enabled:
                organization.status = OrganizationStatus.ACTIVE
                if organization.onboarded_at is None:
                    organization.onboarded_at = utcnow()
            elif obj.details_submitted:
                organization.status = OrganizationStatus.ONBOARDING_STARTED
        await db.commit()
        logger.info(f"✅ Organization {organization.id} account status: {organization.status.value}")

    async def handle_account_deauthorized(self, db: AsyncSession, event: AccountDeauthorizedEvent) -> None:
        if not event.account:
            logger.warning(f"⚠️ Deauthorization event {event.id} without account")
            return
        organization = await organization_crud.get_by_account_ref(db, event.account)
        if organization is None:
            logger.warning(f"⚠️ Organization for account {event.account} not found")
            return
        organization.status = OrganizationStatus.BLOCKED
        organization.charges_enabled = False
        organization.payouts_enabled = False
        await db.commit()
        logger.warning(f"🛑 Organization {organization.id} blocked: application deauthorized")

    # Payment intents

    async def handle_payment_failed(self, db: AsyncSession, event: PaymentIntentEvent) -> None:
        obj = event.data.object
        metadata_id = obj.checkout_metadata_id
        if not metadata_id:
            logger.info(f"ℹ️ Payment {obj.id} failed without checkout metadata, ignoring")
            return
        metadata = await checkout_metadata_service.find_for_payment(db, metadata_id, obj.id)
        if metadata is None:
            logger.warning(f"⚠️ Checkout metadata {metadata_id} for payment {obj.id} not found")
            return
        if metadata.status == CheckoutStatus.COMPLETED:
            return
        metadata.status = CheckoutStatus.FAILED
        await db.commit()
        reason = (obj.last_payment_error or {}).get("message")
        logger.warning(f"⚠️ Checkout {metadata_id} payment failed: {reason}")


subscription_sync = SubscriptionSync()
