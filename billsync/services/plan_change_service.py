"""
Plan changes: preview, immediate execution and period-end scheduling.

Immediate changes touch the processor first and the local row second. When
the local write fails the processor change is undone (new subscriptions are
canceled, price swaps are reverted) before the error surfaces.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID
from sqlalchemy.ext.asyncio import AsyncSession

from billsync.core.exceptions import ConflictError, ForbiddenError, NotFoundError, ValidationError
from billsync.core.operations import grant_properties
from billsync.crud.customer import customer_crud
from billsync.crud.feature_grant import feature_grant_crud, usage_record_crud
from billsync.crud.organization import organization_crud
from billsync.crud.product import product_crud, product_feature_crud, product_price_crud
from billsync.crud.subscription import subscription_crud
from billsync.crud.subscription_change import subscription_change_crud, SubscriptionChangeCreate
from billsync.models.base import utcnow
from billsync.models.feature_grant import FeatureGrant
from billsync.models.organization import Organization
from billsync.models.product import Product, ProductPrice
from billsync.models.reconciliation import ReconciliationStatus, ReconciliationType
from billsync.models.subscription import Subscription, SubscriptionStatus, LIVE_STATUSES
from billsync.models.subscription_change import ChangeStatus, ChangeType
from billsync.schemas.subscription import (
    AvailablePlan,
    AvailablePlansResponse,
    ChangePlanResponse,
    EffectiveTiming,
    PlanChangePreview,
    PlanSummary,
    ProrationDetails,
)
from billsync.services.reconciliation_service import reconciliation_service
from billsync.services.stripe_service import stripe_service, unwrap
from billsync.services.subscription_sync import STATUS_MAP
from billsync.utils.periods import from_unix, to_unix

logger = logging.getLogger(__name__)

CHANGEABLE_STATUSES = LIVE_STATUSES + (SubscriptionStatus.PAST_DUE,)


@dataclass
class ProrationBreakdown:
    total_days: int
    remaining_days: int
    unused_credit: int
    new_charge: int
    immediate_payment: int
    source: str = "local"


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def latest_invoice_ref(processor_subscription: Dict[str, Any]) -> Optional[str]:
    invoice = processor_subscription.get("latest_invoice")
    if isinstance(invoice, dict):
        return invoice.get("id")
    return invoice


def calculate_local_proration(
    current_amount: int,
    new_amount: int,
    period_start: datetime,
    period_end: datetime,
    now: datetime
) -> ProrationBreakdown:
    """Day-based proration of a price swap happening at ``now``"""
    total_days = max(1, math.ceil((period_end - period_start).total_seconds() / 86400))
    elapsed_days = max(0, math.ceil((now - period_start).total_seconds() / 86400))
    remaining_days = max(0, total_days - elapsed_days)
    unused_credit = round_half_up(current_amount * remaining_days / total_days)
    new_charge = round_half_up(new_amount * remaining_days / total_days)
    return ProrationBreakdown(
        total_days=total_days,
        remaining_days=remaining_days,
        unused_credit=unused_credit,
        new_charge=new_charge,
        immediate_payment=max(0, new_charge - unused_credit),
    )


def classify_change(current_amount: int, new_amount: int) -> ChangeType:
    if new_amount > current_amount:
        return ChangeType.UPGRADE
    if new_amount < current_amount:
        return ChangeType.DOWNGRADE
    return ChangeType.LATERAL


def _plan_summary(price: ProductPrice, product: Product, amount: Optional[int] = None) -> PlanSummary:
    return PlanSummary(
        price_id=price.id,
        product_id=product.id,
        product_name=product.name,
        amount=price.amount if amount is None else amount,
        currency=price.currency,
        interval=product.recurring_interval.value,
        interval_count=product.recurring_interval_count,
    )


def _format_amount(amount: int, currency: str) -> str:
    return f"{amount / 100:.2f} {currency.upper()}"


@dataclass
class ChangeContext:
    subscription: Subscription
    organization: Organization
    current_price: ProductPrice
    current_product: Product
    target_price: ProductPrice
    target_product: Product


class PlanChangeService:

    async def _load_context(
        self,
        db: AsyncSession,
        subscription_id: UUID,
        organization_id: UUID,
        new_price_id: UUID
    ) -> ChangeContext:
        subscription = await subscription_crud.get(db, subscription_id)
        if subscription.organization_id != organization_id:
            raise ForbiddenError("Subscription belongs to another organization")
        if subscription.status not in CHANGEABLE_STATUSES:
            raise ValidationError(f"Cannot change plan of a {subscription.status.value} subscription")

        current = await product_price_crud.get_with_product(db, subscription.price_id)
        if current is None:
            raise NotFoundError("Current price")
        target = await product_price_crud.get_with_product(db, new_price_id)
        if target is None:
            raise NotFoundError("Price")
        current_price, current_product = current
        target_price, target_product = target

        if target_price.id == current_price.id:
            raise ValidationError("Subscription is already on this price")
        if target_price.currency.lower() != current_price.currency.lower():
            raise ValidationError("Cannot change to a price in a different currency")
        if target_product.organization_id != organization_id:
            raise ValidationError("Price belongs to another organization")
        if (
            target_product.recurring_interval != current_product.recurring_interval
            or target_product.recurring_interval_count != current_product.recurring_interval_count
        ):
            raise ValidationError("Cannot change to a price with a different billing interval")
        if target_product.is_archived or target_price.is_archived:
            raise ValidationError("This plan is no longer available")

        organization = await organization_crud.get(db, organization_id)
        return ChangeContext(
            subscription=subscription,
            organization=organization,
            current_price=current_price,
            current_product=current_product,
            target_price=target_price,
            target_product=target_product,
        )

    async def preview(
        self,
        db: AsyncSession,
        subscription_id: UUID,
        organization_id: UUID,
        new_price_id: UUID,
        effective_timing: EffectiveTiming = EffectiveTiming.IMMEDIATE,
        now: Optional[datetime] = None
    ) -> PlanChangePreview:
        ctx = await self._load_context(db, subscription_id, organization_id, new_price_id)
        return await self._build_preview(db, ctx, effective_timing, now or utcnow())

    async def _build_preview(
        self,
        db: AsyncSession,
        ctx: ChangeContext,
        effective_timing: EffectiveTiming,
        now: datetime
    ) -> PlanChangePreview:
        subscription = ctx.subscription
        current_amount = subscription.amount
        new_amount = ctx.target_price.amount
        change_type = classify_change(current_amount, new_amount)

        # Only downgrades can wait for the period end
        if change_type == ChangeType.DOWNGRADE and effective_timing == EffectiveTiming.PERIOD_END:
            timing = EffectiveTiming.PERIOD_END
        else:
            timing = EffectiveTiming.IMMEDIATE

        if timing == EffectiveTiming.PERIOD_END:
            local = calculate_local_proration(
                current_amount, new_amount, subscription.current_period_start, subscription.current_period_end, now
            )
            proration = ProrationBreakdown(
                total_days=local.total_days,
                remaining_days=local.remaining_days,
                unused_credit=0,
                new_charge=new_amount,
                immediate_payment=0,
                source="period_end",
            )
            effective_date = subscription.current_period_end
        else:
            proration = await self._processor_proration(db, ctx, now)
            if proration is None:
                proration = calculate_local_proration(
                    current_amount, new_amount, subscription.current_period_start, subscription.current_period_end, now
                )
            effective_date = now

        currency = ctx.target_price.currency
        notes = []
        if change_type == ChangeType.UPGRADE:
            notes.append(
                f"You will be charged {_format_amount(proration.immediate_payment, currency)} now for the "
                f"remaining {proration.remaining_days} day(s) of the current period."
            )
            notes.append("New features are available immediately.")
        elif change_type == ChangeType.LATERAL:
            notes.append("Your plan switches immediately with no price difference.")
        elif timing == EffectiveTiming.PERIOD_END:
            notes.append(
                f"Your plan changes on {subscription.current_period_end:%Y-%m-%d}. "
                "You keep your current features until then."
            )
        else:
            notes.append(
                f"Unused time worth {_format_amount(proration.unused_credit, currency)} is credited "
                "to your next invoice."
            )
        if subscription.is_free_tier and not ctx.target_price.is_free:
            notes.append("A payment method is required to start the paid plan.")

        return PlanChangePreview(
            subscription_id=subscription.id,
            change_type=change_type.value,
            effective_timing=timing,
            current_plan=_plan_summary(ctx.current_price, ctx.current_product, amount=current_amount),
            new_plan=_plan_summary(ctx.target_price, ctx.target_product),
            proration=ProrationDetails(
                unused_credit=proration.unused_credit,
                new_charge=proration.new_charge,
                immediate_payment=proration.immediate_payment,
                remaining_days=proration.remaining_days,
                total_days=proration.total_days,
                source=proration.source,
            ),
            effective_date=effective_date,
            next_billing_date=subscription.current_period_end,
            next_billing_amount=new_amount,
            notes=notes,
        )

    async def _processor_proration(self, db: AsyncSession, ctx: ChangeContext, now: datetime) -> Optional[ProrationBreakdown]:
        """Proration from the processor's invoice preview; None when unavailable"""
        subscription = ctx.subscription
        account_ref = ctx.organization.processor_account_ref
        if not (subscription.processor_subscription_ref and ctx.target_price.processor_price_ref and account_ref):
            return None
        customer = await customer_crud.get(db, subscription.customer_id, raise_if_not_found=False)
        if customer is None or not customer.processor_customer_ref:
            return None

        result = await stripe_service.preview_invoice(
            customer.processor_customer_ref,
            subscription.processor_subscription_ref,
            ctx.target_price.processor_price_ref,
            proration_date=to_unix(now),
            account_ref=account_ref,
        )
        if not result.get("success"):
            logger.warning(
                f"⚠️ Invoice preview failed for {subscription.processor_subscription_ref}, "
                f"using local proration: {result.get('error')}"
            )
            return None

        invoice = result["invoice"] or {}
        credit, charge = self._split_invoice_lines(invoice, ctx.target_price.processor_price_ref)
        local = calculate_local_proration(
            subscription.amount, ctx.target_price.amount,
            subscription.current_period_start, subscription.current_period_end, now
        )
        return ProrationBreakdown(
            total_days=local.total_days,
            remaining_days=local.remaining_days,
            unused_credit=credit,
            new_charge=charge,
            immediate_payment=max(0, int(invoice.get("amount_due") or 0)),
            source="processor",
        )

    @staticmethod
    def _split_invoice_lines(invoice: Dict[str, Any], target_price_ref: str):
        lines = (invoice.get("lines") or {}).get("data") or []
        credit = 0
        charge = 0
        target_charge = 0
        has_proration = False
        for line in lines:
            amount = int(line.get("amount") or 0)
            details = ((line.get("parent") or {}).get("subscription_item_details") or {})
            is_proration = bool(line.get("proration") or details.get("proration"))
            if is_proration:
                has_proration = True
                if amount < 0:
                    credit += -amount
                else:
                    charge += amount
                continue
            price = line.get("price") or {}
            pricing = ((line.get("pricing") or {}).get("price_details") or {})
            price_ref = price.get("id") if isinstance(price, dict) else price
            if (price_ref or pricing.get("price")) == target_price_ref:
                target_charge += amount
        if not has_proration:
            charge = target_charge
        return credit, charge

    async def change_plan(
        self,
        db: AsyncSession,
        subscription_id: UUID,
        organization_id: UUID,
        new_price_id: UUID,
        effective_timing: EffectiveTiming = EffectiveTiming.IMMEDIATE,
        confirm_amount: Optional[int] = None,
        now: Optional[datetime] = None
    ) -> ChangePlanResponse:
        now = now or utcnow()
        ctx = await self._load_context(db, subscription_id, organization_id, new_price_id)
        preview = await self._build_preview(db, ctx, effective_timing, now)

        if confirm_amount is not None and confirm_amount != preview.proration.immediate_payment:
            raise ValidationError(
                f"Amount due changed from {confirm_amount} to {preview.proration.immediate_payment}, "
                "please review the change again"
            )

        if preview.effective_timing == EffectiveTiming.PERIOD_END:
            return await self._schedule_change(db, ctx, preview)
        return await self._execute_immediate(db, ctx, preview)

    async def _schedule_change(self, db: AsyncSession, ctx: ChangeContext, preview: PlanChangePreview) -> ChangePlanResponse:
        subscription = ctx.subscription
        existing = await subscription_change_crud.get_scheduled_for_subscription(db, subscription.id)
        if existing is not None:
            raise ConflictError("A plan change is already scheduled for this subscription")

        change = await subscription_change_crud.create(
            db,
            obj_in=SubscriptionChangeCreate(
                subscription_id=subscription.id,
                organization_id=subscription.organization_id,
                change_type=ChangeType(preview.change_type),
                from_price_id=ctx.current_price.id,
                to_price_id=ctx.target_price.id,
                from_amount=subscription.amount,
                to_amount=ctx.target_price.amount,
                status=ChangeStatus.SCHEDULED,
                scheduled_for=subscription.current_period_end,
            ),
        )
        logger.info(f"📅 Change {change.id} scheduled for {subscription.id} at {change.scheduled_for}")
        return ChangePlanResponse(
            subscription_id=subscription.id,
            change_id=change.id,
            change_type=preview.change_type,
            status=ChangeStatus.SCHEDULED.value,
            effective_date=change.scheduled_for,
            immediate_payment=0,
            message=f"Plan change scheduled for {change.scheduled_for:%Y-%m-%d}",
        )

    async def _execute_immediate(self, db: AsyncSession, ctx: ChangeContext, preview: PlanChangePreview) -> ChangePlanResponse:
        subscription = ctx.subscription
        subscription_id = subscription.id
        customer_id = subscription.customer_id
        organization_id = ctx.organization.id
        account_ref = ctx.organization.processor_account_ref
        current_price_id = ctx.current_price.id
        processor_ref = subscription.processor_subscription_ref
        old_price_ref = ctx.current_price.processor_price_ref
        new_price = ctx.target_price
        product_changed = ctx.target_product.id != ctx.current_product.id

        created_processor = None
        updated_processor = False
        invoice_ref = None
        cancel_processor_after = False

        if processor_ref is None and not new_price.is_free:
            # free -> paid
            customer_ref = await self._ensure_processor_customer(db, customer_id, account_ref)
            result = await stripe_service.create_subscription(
                customer_ref=customer_ref,
                price_ref=new_price.processor_price_ref,
                metadata={"subscription_id": str(subscription_id)},
                account_ref=account_ref,
                idempotency_key=f"plan-change-{subscription_id}-{new_price.id}",
            )
            created_processor = unwrap(result, "subscription")
            invoice_ref = latest_invoice_ref(created_processor)
        elif processor_ref is not None and not new_price.is_free:
            result = await stripe_service.update_subscription_price(
                processor_ref, new_price.processor_price_ref, account_ref=account_ref
            )
            invoice_ref = latest_invoice_ref(unwrap(result, "subscription"))
            updated_processor = True
        elif processor_ref is not None and new_price.is_free:
            # paid -> free: detach locally first, cancel at the processor afterwards
            cancel_processor_after = True

        try:
            subscription.price_id = new_price.id
            subscription.product_id = ctx.target_product.id
            subscription.amount = new_price.amount
            subscription.currency = new_price.currency
            if created_processor is not None:
                subscription.processor_subscription_ref = created_processor["id"]
                subscription.status = STATUS_MAP.get(created_processor.get("status"), SubscriptionStatus.ACTIVE)
                period_start = from_unix(created_processor.get("current_period_start"))
                period_end = from_unix(created_processor.get("current_period_end"))
                if period_start and period_end:
                    subscription.current_period_start = period_start
                    subscription.current_period_end = period_end
            if cancel_processor_after:
                subscription.processor_subscription_ref = None
            if product_changed:
                await self.swap_grants(db, subscription, ctx.target_product.id, commit=False)
            await db.commit()
        except Exception as e:
            await db.rollback()
            logger.error(f"❌ Local plan change failed for {subscription_id}: {str(e)}")
            await self._compensate_processor(
                db, subscription_id, account_ref, created_processor, processor_ref if updated_processor else None, old_price_ref
            )
            raise

        if cancel_processor_after:
            cancel = await stripe_service.cancel_subscription(processor_ref, account_ref=account_ref)
            if not cancel.get("success"):
                await reconciliation_service.escalate(
                    db,
                    type=ReconciliationType.COMPENSATION_FAILED,
                    reference_id=processor_ref,
                    error=cancel.get("error"),
                    details={"subscription_id": str(subscription_id), "action": "cancel_after_downgrade_to_free"},
                    status=ReconciliationStatus.PENDING_MANUAL_REVIEW,
                    priority=2,
                )

        if preview.new_plan.amount > 0:
            await self._cancel_other_free_tier(db, customer_id, subscription_id)

        change = await subscription_change_crud.create(
            db,
            obj_in=SubscriptionChangeCreate(
                subscription_id=subscription_id,
                organization_id=organization_id,
                change_type=ChangeType(preview.change_type),
                from_price_id=current_price_id,
                to_price_id=preview.new_plan.price_id,
                from_amount=preview.current_plan.amount,
                to_amount=preview.new_plan.amount,
                proration_credit=preview.proration.unused_credit,
                proration_charge=preview.proration.new_charge,
                net_amount=preview.proration.immediate_payment,
                status=ChangeStatus.COMPLETED,
                processor_invoice_ref=invoice_ref,
                completed_at=utcnow(),
            ),
        )
        logger.info(f"✅ Plan of {subscription_id} changed ({preview.change_type.value}) to price {preview.new_plan.price_id}")
        return ChangePlanResponse(
            subscription_id=subscription_id,
            change_id=change.id,
            change_type=preview.change_type,
            status=ChangeStatus.COMPLETED.value,
            effective_date=change.completed_at,
            immediate_payment=preview.proration.immediate_payment,
            message="Plan changed",
        )

    async def _ensure_processor_customer(self, db: AsyncSession, customer_id: UUID, account_ref: Optional[str]) -> str:
        customer = await customer_crud.get(db, customer_id)
        if customer.processor_customer_ref:
            return customer.processor_customer_ref
        if not account_ref:
            raise ValidationError("Organization is not connected to a payment account")
        created = unwrap(
            await stripe_service.create_customer(
                customer.email, name=customer.name, metadata={"customer_id": str(customer.id)}, account_ref=account_ref
            ),
            "customer",
        )
        customer = await customer_crud.update(db, db_obj=customer, obj_in={"processor_customer_ref": created["id"]})
        return customer.processor_customer_ref

    async def _compensate_processor(
        self,
        db: AsyncSession,
        subscription_id: UUID,
        account_ref: Optional[str],
        created_processor: Optional[Dict[str, Any]],
        updated_ref: Optional[str],
        old_price_ref: Optional[str]
    ) -> None:
        if created_processor is not None:
            result = await stripe_service.cancel_subscription(created_processor["id"], account_ref=account_ref)
            if result.get("success"):
                logger.info(f"↩️ Canceled processor subscription {created_processor['id']} after failed change")
                return
            await self._escalate_compensation(db, subscription_id, created_processor["id"], "cancel", result.get("error"))
            return

        if updated_ref is None:
            return
        if old_price_ref:
            result = await stripe_service.update_subscription_price(
                updated_ref, old_price_ref, account_ref=account_ref, proration_behavior="none"
            )
            if result.get("success"):
                logger.info(f"↩️ Restored price {old_price_ref} on {updated_ref} after failed change")
                return
            logger.error(f"❌ Restoring price on {updated_ref} failed, canceling: {result.get('error')}")
        result = await stripe_service.cancel_subscription(updated_ref, account_ref=account_ref)
        if not result.get("success"):
            await self._escalate_compensation(db, subscription_id, updated_ref, "restore_or_cancel", result.get("error"))

    async def _escalate_compensation(self, db, subscription_id, processor_ref, action, error) -> None:
        await reconciliation_service.escalate(
            db,
            type=ReconciliationType.COMPENSATION_FAILED,
            reference_id=processor_ref,
            error=error,
            details={"subscription_id": str(subscription_id), "action": action},
            status=ReconciliationStatus.PENDING_MANUAL_REVIEW,
            priority=1,
        )

    async def swap_grants(self, db: AsyncSession, subscription: Subscription, product_id: UUID, commit: bool = True) -> List[FeatureGrant]:
        """Revoke the subscription's grants and grant the features of ``product_id``"""
        now = utcnow()
        await feature_grant_crud.revoke_for_subscriptions(db, [subscription.id], revoked_at=now, commit=False)
        grants = []
        for link, feature in await product_feature_crud.list_for_product(db, product_id):
            grants.append(FeatureGrant(
                customer_id=subscription.customer_id,
                subscription_id=subscription.id,
                feature_id=feature.id,
                properties=grant_properties(link, feature),
                granted_at=now,
            ))
        db.add_all(grants)
        await db.flush()
        await usage_record_crud.open_period(
            db,
            subscription=subscription,
            grants=grants,
            period_start=subscription.current_period_start,
            period_end=subscription.current_period_end,
            commit=False,
        )
        if commit:
            await db.commit()
        return grants

    async def _cancel_other_free_tier(self, db: AsyncSession, customer_id: UUID, keep_id: UUID) -> int:
        others = await subscription_crud.list_live_free_tier_for_customer(db, customer_id, exclude_id=keep_id)
        if not others:
            return 0
        now = utcnow()
        for other in others:
            other.status = SubscriptionStatus.CANCELLED
            other.canceled_at = now
        await feature_grant_crud.revoke_for_subscriptions(db, [o.id for o in others], revoked_at=now, commit=False)
        await db.commit()
        logger.info(f"🧹 Canceled {len(others)} free-tier subscription(s) of customer {customer_id}")
        return len(others)

    async def list_available_plans(self, db: AsyncSession, subscription_id: UUID, organization_id: UUID) -> AvailablePlansResponse:
        subscription = await subscription_crud.get(db, subscription_id)
        if subscription.organization_id != organization_id:
            raise ForbiddenError("Subscription belongs to another organization")
        current = await product_price_crud.get_with_product(db, subscription.price_id)
        if current is None:
            raise NotFoundError("Current price")
        current_price, current_product = current

        response = AvailablePlansResponse(
            current_plan=_plan_summary(current_price, current_product, amount=subscription.amount)
        )
        candidates = await product_crud.list_with_prices(
            db,
            organization_id,
            recurring_interval=current_product.recurring_interval,
            recurring_interval_count=current_product.recurring_interval_count,
            currency=current_price.currency,
        )
        for product, price in candidates:
            if price.id == current_price.id:
                continue
            plan = AvailablePlan(**_plan_summary(price, product).model_dump())
            change_type = classify_change(subscription.amount, price.amount)
            if change_type == ChangeType.UPGRADE:
                response.upgrades.append(plan)
            elif change_type == ChangeType.DOWNGRADE:
                response.downgrades.append(plan)
            else:
                response.lateral.append(plan)
        response.upgrades.sort(key=lambda p: p.amount)
        response.downgrades.sort(key=lambda p: p.amount, reverse=True)
        return response

    async def cancel_scheduled_change(
        self,
        db: AsyncSession,
        subscription_id: UUID,
        change_id: UUID,
        organization_id: UUID
    ) -> bool:
        subscription = await subscription_crud.get(db, subscription_id)
        if subscription.organization_id != organization_id:
            raise ForbiddenError("Subscription belongs to another organization")
        if not await subscription_change_crud.delete_scheduled(db, change_id, subscription_id):
            raise NotFoundError("Scheduled change")
        logger.info(f"🗑️ Scheduled change {change_id} of {subscription_id} removed")
        return True


plan_change_service = PlanChangeService()
