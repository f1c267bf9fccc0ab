import logging
from typing import Optional
from uuid import UUID
from sqlalchemy.ext.asyncio import AsyncSession

from billsync.core.exceptions import ConflictError, ForbiddenError, NotFoundError, ValidationError
from billsync.core.operations import advisory_lock, create_subscription_atomic, upsert_customer_atomic
from billsync.crud.checkout_metadata import checkout_metadata_crud, CheckoutMetadataCreate
from billsync.crud.customer import customer_crud
from billsync.crud.organization import organization_crud
from billsync.crud.product import product_feature_crud, product_price_crud
from billsync.models.base import utcnow
from billsync.models.checkout_metadata import CheckoutMetadata, CheckoutStatus
from billsync.models.reconciliation import ReconciliationStatus, ReconciliationType
from billsync.models.subscription import SubscriptionStatus
from billsync.schemas.checkout import CreateCheckoutRequest, CreateCheckoutResponse
from billsync.schemas.events import PaymentIntentObject
from billsync.services.checkout_metadata_service import checkout_metadata_service
from billsync.services.reconciliation_service import reconciliation_service
from billsync.services.refund_service import refund_service
from billsync.services.stripe_service import stripe_service, unwrap
from billsync.utils.periods import add_interval, to_unix

logger = logging.getLogger(__name__)


class CheckoutService:
    """Checkout creation and completion built on the metadata indirection store"""

    async def create_checkout(
        self,
        db: AsyncSession,
        organization_id: UUID,
        request: CreateCheckoutRequest
    ) -> CreateCheckoutResponse:
        organization = await organization_crud.get(db, organization_id)
        found = await product_price_crud.get_with_product(db, request.price_id)
        if found is None or found[1].organization_id != organization_id:
            raise NotFoundError("Price")
        price, product = found
        if product.is_archived or price.is_archived:
            raise ValidationError("This plan is no longer available")

        customer, _ = await upsert_customer_atomic(
            db,
            organization_id=organization_id,
            email=request.customer_email,
            external_id=request.external_id,
            name=request.customer_name,
        )

        metadata_id, expires_at = await checkout_metadata_service.create(
            db,
            CheckoutMetadataCreate(
                organization_id=organization_id,
                customer_id=customer.id,
                product_id=product.id,
                price_id=price.id,
                customer_email=customer.email,
                customer_name=request.customer_name,
                customer_external_id=request.external_id,
                product_name=product.name,
                price_amount=price.amount,
                currency=price.currency,
                billing_interval=product.recurring_interval.value,
                billing_interval_count=product.recurring_interval_count,
                trial_period_days=product.trial_days or None,
                success_url=request.success_url,
                cancel_url=request.cancel_url,
                meta_data=request.metadata,
            ),
        )

        if price.is_free:
            return CreateCheckoutResponse(
                checkout_id=metadata_id,
                expires_at=expires_at,
                requires_payment=False,
                amount=0,
                currency=price.currency,
            )

        account_ref = organization.processor_account_ref
        if not account_ref:
            raise ValidationError("Organization is not connected to a payment account")

        if not customer.processor_customer_ref:
            created = await stripe_service.create_customer(
                customer.email,
                name=customer.name,
                metadata={"customer_id": str(customer.id)},
                account_ref=account_ref,
            )
            customer = await customer_crud.update(
                db,
                db_obj=customer,
                obj_in={"processor_customer_ref": unwrap(created, "customer")["id"]},
            )

        # The processor only ever sees the opaque metadata id
        result = await stripe_service.create_payment_intent(
            amount=price.amount,
            currency=price.currency,
            customer_ref=customer.processor_customer_ref,
            metadata={"checkout_metadata_id": str(metadata_id)},
            account_ref=account_ref,
            idempotency_key=f"checkout-{metadata_id}",
        )
        payment_intent = unwrap(result, "payment_intent")
        await checkout_metadata_service.link_to_checkout_ref(db, metadata_id, payment_intent["id"])
        logger.info(f"💳 Checkout {metadata_id} created with payment {payment_intent['id']}")

        return CreateCheckoutResponse(
            checkout_id=metadata_id,
            expires_at=expires_at,
            requires_payment=True,
            amount=price.amount,
            currency=price.currency,
            client_secret=payment_intent.get("client_secret"),
            payment_intent_ref=payment_intent["id"],
        )

    async def confirm_free_checkout(self, db: AsyncSession, metadata_id: UUID, organization_id: UUID) -> CheckoutMetadata:
        """Provision a free-tier subscription without touching the processor"""
        metadata = await checkout_metadata_service.get(db, metadata_id)
        if metadata.organization_id != organization_id:
            raise ForbiddenError()
        if metadata.status == CheckoutStatus.COMPLETED:
            return metadata
        if metadata.price_amount != 0:
            raise ValidationError("Checkout requires payment")

        async with advisory_lock(db, f"checkout:{metadata_id}"):
            metadata = await checkout_metadata_crud.get(db, metadata_id)
            await db.refresh(metadata)
            if metadata.status == CheckoutStatus.COMPLETED:
                return metadata
            subscription_id = await self._provision_local(db, metadata, processor_subscription=None)
            metadata = await checkout_metadata_service.update_status(
                db, metadata_id, CheckoutStatus.COMPLETED, subscription_id=subscription_id
            )
        logger.info(f"✅ Free checkout {metadata_id} completed, subscription {subscription_id}")
        return metadata

    async def complete_paid_checkout(self, db: AsyncSession, payment: PaymentIntentObject) -> Optional[UUID]:
        """
        Provision the subscription for a captured payment.

        Idempotent per checkout: a completed checkout is a no-op and
        concurrent deliveries are serialized by an advisory lock. If anything
        fails after the payment was captured, the payment is refunded, any
        processor subscription created here is canceled and the error is
        re-raised.
        """
        raw_id = payment.checkout_metadata_id
        if not raw_id:
            logger.info(f"ℹ️ Payment {payment.id} has no checkout metadata, nothing to provision")
            return None

        metadata = await checkout_metadata_service.find_for_payment(db, raw_id, payment.id)
        if metadata is None:
            await self._compensate(db, payment, None, None, f"Checkout metadata {raw_id} not found")
            raise NotFoundError("Checkout metadata")
        if metadata.status == CheckoutStatus.COMPLETED:
            logger.info(f"ℹ️ Checkout {metadata.id} already completed, skipping payment {payment.id}")
            return metadata.subscription_id

        metadata_id = metadata.id
        async with advisory_lock(db, f"checkout:{metadata_id}"):
            await db.refresh(metadata)
            if metadata.status == CheckoutStatus.COMPLETED:
                return metadata.subscription_id

            account_ref = None
            processor_subscription = None
            try:
                organization = await organization_crud.get(db, metadata.organization_id)
                account_ref = organization.processor_account_ref
                processor_subscription = await self._create_processor_subscription(
                    db, metadata, payment, account_ref
                )
                subscription_id = await self._provision_local(db, metadata, processor_subscription)
                await checkout_metadata_service.update_status(
                    db, metadata_id, CheckoutStatus.COMPLETED, subscription_id=subscription_id
                )
            except Exception as e:
                await db.rollback()
                logger.error(f"❌ Provisioning failed for checkout {metadata_id}: {str(e)}")
                await self._compensate(db, payment, metadata_id, account_ref, str(e), processor_subscription)
                raise

        logger.info(f"✅ Checkout {metadata_id} completed, subscription {subscription_id}")
        return subscription_id

    async def _create_processor_subscription(self, db: AsyncSession, metadata: CheckoutMetadata, payment, account_ref):
        price = await product_price_crud.get(db, metadata.price_id)
        if not price.processor_price_ref:
            return None
        customer = await customer_crud.get(db, metadata.customer_id)
        customer_ref = customer.processor_customer_ref or payment.customer_ref
        if not customer_ref:
            raise ValidationError("Customer has no payment processor reference")

        # First period was paid through the PaymentIntent, start billing after it
        period_end = add_interval(utcnow(), metadata.billing_interval, metadata.billing_interval_count)
        result = await stripe_service.create_subscription(
            customer_ref=customer_ref,
            price_ref=price.processor_price_ref,
            metadata={"checkout_metadata_id": str(metadata.id)},
            account_ref=account_ref,
            default_payment_method=payment.payment_method_ref,
            billing_cycle_anchor=to_unix(period_end),
            idempotency_key=f"checkout-subscription-{metadata.id}",
        )
        return unwrap(result, "subscription")

    async def _provision_local(self, db: AsyncSession, metadata: CheckoutMetadata, processor_subscription) -> UUID:
        now = utcnow()
        period_end = add_interval(now, metadata.billing_interval, metadata.billing_interval_count)
        features = await product_feature_crud.list_for_product(db, metadata.product_id)
        subscription, created = await create_subscription_atomic(
            db,
            subscription={
                "organization_id": metadata.organization_id,
                "customer_id": metadata.customer_id,
                "product_id": metadata.product_id,
                "price_id": metadata.price_id,
                "status": SubscriptionStatus.ACTIVE,
                "amount": metadata.price_amount,
                "currency": metadata.currency,
                "current_period_start": now,
                "current_period_end": period_end,
                "processor_subscription_ref": processor_subscription["id"] if processor_subscription else None,
                "meta_data": {"checkout_metadata_id": str(metadata.id)},
            },
            features=features,
        )
        if not created:
            logger.warning(f"⚠️ Customer {metadata.customer_id} already had subscription {subscription.id}")
            if metadata.price_amount != 0:
                # The payment bought nothing new, the caller refunds it
                raise ConflictError(f"Customer already has subscription {subscription.id} to this product")
        return subscription.id

    async def _compensate(
        self,
        db: AsyncSession,
        payment: PaymentIntentObject,
        metadata_id: Optional[UUID],
        account_ref: Optional[str],
        reason: str,
        processor_subscription=None
    ) -> None:
        context = {"checkout_metadata_id": str(metadata_id) if metadata_id else None}
        await refund_service.refund_payment_on_failure(
            db,
            payment.id,
            f"Subscription provisioning failed: {reason}",
            amount=payment.amount_received or payment.amount,
            account_ref=account_ref,
            context=context,
        )

        if processor_subscription:
            cancel = await stripe_service.cancel_subscription(processor_subscription["id"], account_ref=account_ref)
            if not cancel.get("success"):
                await reconciliation_service.escalate(
                    db,
                    type=ReconciliationType.COMPENSATION_FAILED,
                    reference_id=processor_subscription["id"],
                    error=cancel.get("error"),
                    details={**context, "action": "cancel_subscription"},
                    status=ReconciliationStatus.PENDING_MANUAL_REVIEW,
                    priority=1,
                )

        if metadata_id is not None:
            try:
                await checkout_metadata_service.update_status(db, metadata_id, CheckoutStatus.FAILED)
            except Exception as e:
                await db.rollback()
                logger.error(f"❌ Could not mark checkout {metadata_id} failed: {str(e)}")


checkout_service = CheckoutService()
