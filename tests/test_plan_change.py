from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select

from billsync.core.exceptions import ConflictError, ForbiddenError, NotFoundError, ValidationError
from billsync.models import (
    BillingInterval,
    FeatureGrant,
    ReconciliationQueueItem,
    ReconciliationType,
    Subscription,
    SubscriptionChange,
    SubscriptionStatus,
)
from billsync.models.subscription_change import ChangeStatus
from billsync.schemas.subscription import EffectiveTiming
from billsync.services.plan_change_service import plan_change_service


@pytest.fixture
async def catalog(db, seed):
    organization = await seed.organization()
    seats = await seed.feature(organization, "seats", limit=5)
    projects = await seed.feature(organization, "projects", limit=50)
    basic = await seed.price(organization, name="Basic", amount=1000, price_ref="price_basic", features=[seats])
    pro = await seed.price(organization, name="Pro", amount=2000, price_ref="price_pro", features=[seats])
    max_ = await seed.price(organization, name="Max", amount=3000, price_ref="price_max", features=[seats, projects])
    customer = await seed.customer(organization)
    subscription = await seed.subscription(customer, pro)
    return {
        "organization": organization,
        "customer": customer,
        "basic": basic,
        "pro": pro,
        "max": max_,
        "subscription": subscription,
        "features": {"seats": seats, "projects": projects},
    }


async def _changes(db):
    return (await db.execute(select(SubscriptionChange))).scalars().all()


async def test_preview_falls_back_to_local_proration(db, catalog, fake_stripe):
    fake_stripe.failing.add("preview_invoice")
    subscription = catalog["subscription"]

    preview = await plan_change_service.preview(
        db,
        subscription.id,
        catalog["organization"].id,
        catalog["max"].id,
        now=subscription.current_period_start + timedelta(days=10),
    )

    assert preview.change_type.value == "upgrade"
    assert preview.effective_timing == EffectiveTiming.IMMEDIATE
    assert preview.proration.source == "local"
    assert preview.proration.unused_credit == 1333
    assert preview.proration.new_charge == 2000
    assert preview.proration.immediate_payment == 667
    assert preview.next_billing_amount == 3000
    assert preview.notes


async def test_preview_uses_processor_invoice(db, catalog, fake_stripe):
    fake_stripe.invoice_preview = {
        "amount_due": 700,
        "lines": {"data": [{"amount": -1300, "proration": True}, {"amount": 2000, "proration": True}]},
    }

    preview = await plan_change_service.preview(
        db, catalog["subscription"].id, catalog["organization"].id, catalog["max"].id
    )

    assert preview.proration.source == "processor"
    assert preview.proration.unused_credit == 1300
    assert preview.proration.immediate_payment == 700
    assert fake_stripe.called("preview_invoice")[0]["new_price_ref"] == "price_max"


async def test_rejects_same_price(db, catalog, fake_stripe):
    with pytest.raises(ValidationError):
        await plan_change_service.preview(
            db, catalog["subscription"].id, catalog["organization"].id, catalog["pro"].id
        )


async def test_rejects_other_currency_and_interval(db, seed, catalog, fake_stripe):
    euro = await seed.price(catalog["organization"], name="Pro EU", amount=2000, currency="eur", price_ref="price_eu")
    yearly = await seed.price(
        catalog["organization"], name="Pro Yearly", amount=20000, interval=BillingInterval.YEAR, price_ref="price_year"
    )

    for price in (euro, yearly):
        with pytest.raises(ValidationError):
            await plan_change_service.preview(db, catalog["subscription"].id, catalog["organization"].id, price.id)


async def test_rejects_price_of_another_organization(db, seed, catalog, fake_stripe):
    other = await seed.organization(name="Globex", account_ref="acct_globex")
    foreign = await seed.price(other, name="Globex Pro", amount=5000, price_ref="price_globex")

    with pytest.raises(ValidationError):
        await plan_change_service.preview(db, catalog["subscription"].id, catalog["organization"].id, foreign.id)


async def test_rejects_subscription_of_another_organization(db, seed, catalog, fake_stripe):
    other = await seed.organization(name="Globex", account_ref="acct_globex")

    with pytest.raises(ForbiddenError):
        await plan_change_service.preview(db, catalog["subscription"].id, other.id, catalog["max"].id)


async def test_rejects_canceled_subscription(db, catalog, fake_stripe):
    subscription = catalog["subscription"]
    subscription.status = SubscriptionStatus.CANCELED
    await db.commit()

    with pytest.raises(ValidationError):
        await plan_change_service.change_plan(
            db, subscription.id, catalog["organization"].id, catalog["max"].id
        )
    assert fake_stripe.calls == []


async def test_immediate_upgrade_swaps_price_and_grants(db, catalog, fake_stripe):
    fake_stripe.failing.add("preview_invoice")
    subscription_id = catalog["subscription"].id
    projects_id = catalog["features"]["projects"].id

    response = await plan_change_service.change_plan(
        db, subscription_id, catalog["organization"].id, catalog["max"].id
    )

    assert response.status == "completed"
    assert response.change_type.value == "upgrade"
    update = fake_stripe.called("update_subscription_price")
    assert update == [{"subscription_ref": "sub_jane", "price_ref": "price_max", "proration_behavior": "create_prorations"}]

    subscription = await db.get(Subscription, subscription_id, populate_existing=True)
    assert subscription.price_id == catalog["max"].id
    assert subscription.amount == 3000

    active = (await db.execute(
        select(FeatureGrant).where(FeatureGrant.subscription_id == subscription_id, FeatureGrant.revoked_at.is_(None))
    )).scalars().all()
    assert {g.feature_id for g in active} == {catalog["features"]["seats"].id, projects_id}

    changes = await _changes(db)
    assert len(changes) == 1
    assert changes[0].status == ChangeStatus.COMPLETED
    assert changes[0].from_amount == 2000
    assert changes[0].to_amount == 3000
    assert changes[0].processor_invoice_ref == "in_price_change"


async def test_downgrade_at_period_end_is_scheduled_once(db, catalog, fake_stripe):
    subscription = catalog["subscription"]
    period_end = subscription.current_period_end

    response = await plan_change_service.change_plan(
        db, subscription.id, catalog["organization"].id, catalog["basic"].id,
        effective_timing=EffectiveTiming.PERIOD_END,
    )

    assert response.status == "scheduled"
    assert response.immediate_payment == 0
    assert response.effective_date == period_end
    assert fake_stripe.called("update_subscription_price") == []

    with pytest.raises(ConflictError):
        await plan_change_service.change_plan(
            db, subscription.id, catalog["organization"].id, catalog["basic"].id,
            effective_timing=EffectiveTiming.PERIOD_END,
        )

    subscription = await db.get(Subscription, subscription.id, populate_existing=True)
    assert subscription.price_id == catalog["pro"].id


async def test_upgrade_ignores_period_end_request(db, catalog, fake_stripe):
    fake_stripe.failing.add("preview_invoice")

    preview = await plan_change_service.preview(
        db, catalog["subscription"].id, catalog["organization"].id, catalog["max"].id,
        effective_timing=EffectiveTiming.PERIOD_END,
    )
    assert preview.effective_timing == EffectiveTiming.IMMEDIATE


async def test_cancel_scheduled_change(db, catalog, fake_stripe):
    subscription_id = catalog["subscription"].id
    organization_id = catalog["organization"].id
    response = await plan_change_service.change_plan(
        db, subscription_id, organization_id, catalog["basic"].id,
        effective_timing=EffectiveTiming.PERIOD_END,
    )

    assert await plan_change_service.cancel_scheduled_change(db, subscription_id, response.change_id, organization_id)
    assert await _changes(db) == []
    with pytest.raises(NotFoundError):
        await plan_change_service.cancel_scheduled_change(db, subscription_id, response.change_id, organization_id)


async def test_confirm_amount_mismatch_is_rejected(db, catalog, fake_stripe):
    fake_stripe.failing.add("preview_invoice")
    subscription = catalog["subscription"]

    with pytest.raises(ValidationError):
        await plan_change_service.change_plan(
            db, subscription.id, catalog["organization"].id, catalog["max"].id,
            confirm_amount=1,
            now=subscription.current_period_start + timedelta(days=10),
        )
    assert fake_stripe.called("update_subscription_price") == []


async def test_processor_price_is_restored_when_local_write_fails(db, catalog, fake_stripe, monkeypatch):
    fake_stripe.failing.add("preview_invoice")
    subscription_id = catalog["subscription"].id
    pro_id = catalog["pro"].id

    async def broken_swap(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(plan_change_service, "swap_grants", broken_swap)

    with pytest.raises(RuntimeError):
        await plan_change_service.change_plan(
            db, subscription_id, catalog["organization"].id, catalog["max"].id
        )

    updates = fake_stripe.called("update_subscription_price")
    assert [u["price_ref"] for u in updates] == ["price_max", "price_pro"]
    assert updates[1]["proration_behavior"] == "none"

    subscription = await db.get(Subscription, subscription_id, populate_existing=True)
    assert subscription.price_id == pro_id
    assert await _changes(db) == []


async def test_failed_compensation_is_escalated(db, seed, fake_stripe, monkeypatch):
    organization = await seed.organization()
    free = await seed.price(organization, name="Free", amount=0, price_ref=None)
    pro = await seed.price(organization, name="Pro", amount=2000, price_ref="price_pro")
    customer = await seed.customer(organization)
    subscription = await seed.subscription(customer, free, processor_ref=None)
    subscription_id = subscription.id
    fake_stripe.failing.add("cancel_subscription")

    async def broken_swap(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(plan_change_service, "swap_grants", broken_swap)

    with pytest.raises(RuntimeError):
        await plan_change_service.change_plan(db, subscription_id, organization.id, pro.id)

    created = fake_stripe.called("create_subscription")
    assert len(created) == 1
    assert fake_stripe.called("cancel_subscription") == [{"subscription_ref": next(iter(fake_stripe.subscriptions))}]

    item = (await db.execute(select(ReconciliationQueueItem))).scalar_one()
    assert item.type == ReconciliationType.COMPENSATION_FAILED
    assert item.priority == 1
    assert item.details["subscription_id"] == str(subscription_id)


async def test_free_to_paid_creates_processor_subscription(db, seed, fake_stripe):
    organization = await seed.organization()
    free = await seed.price(organization, name="Free", amount=0, price_ref=None)
    starter = await seed.price(organization, name="Starter", amount=0, price_ref=None)
    pro = await seed.price(organization, name="Pro", amount=2000, price_ref="price_pro")
    customer = await seed.customer(organization)
    subscription = await seed.subscription(customer, free, processor_ref=None)
    other = await seed.subscription(customer, starter, processor_ref=None)
    subscription_id, other_id = subscription.id, other.id

    await plan_change_service.change_plan(db, subscription_id, organization.id, pro.id)

    created = fake_stripe.called("create_subscription")
    assert len(created) == 1
    assert created[0]["customer_ref"] == "cus_jane"
    assert created[0]["price_ref"] == "price_pro"
    assert created[0]["idempotency_key"] == f"plan-change-{subscription_id}-{pro.id}"

    subscription = await db.get(Subscription, subscription_id, populate_existing=True)
    assert subscription.processor_subscription_ref.startswith("sub_fake")
    assert subscription.status == SubscriptionStatus.ACTIVE
    other = await db.get(Subscription, other_id, populate_existing=True)
    assert other.status == SubscriptionStatus.CANCELLED


async def test_paid_to_free_cancels_processor_subscription(db, seed, catalog, fake_stripe):
    free = await seed.price(catalog["organization"], name="Free", amount=0, price_ref=None)
    subscription_id = catalog["subscription"].id

    await plan_change_service.change_plan(db, subscription_id, catalog["organization"].id, free.id)

    assert fake_stripe.called("cancel_subscription") == [{"subscription_ref": "sub_jane"}]
    subscription = await db.get(Subscription, subscription_id, populate_existing=True)
    assert subscription.processor_subscription_ref is None
    assert subscription.amount == 0


async def test_available_plans_are_grouped_and_sorted(db, seed, catalog, fake_stripe):
    await seed.price(catalog["organization"], name="Team", amount=2500, price_ref="price_team")

    plans = await plan_change_service.list_available_plans(
        db, catalog["subscription"].id, catalog["organization"].id
    )

    assert plans.current_plan.price_id == catalog["pro"].id
    assert [p.amount for p in plans.upgrades] == [2500, 3000]
    assert [p.amount for p in plans.downgrades] == [1000]
