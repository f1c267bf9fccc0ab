from __future__ import annotations

import uuid
from datetime import timedelta

import pytest
from sqlalchemy import select

from billsync.core.exceptions import CheckoutExpiredError, ConflictError, NotFoundError, ValidationError
from billsync.crud.checkout_metadata import CheckoutMetadataCreate
from billsync.models import (
    CheckoutMetadata,
    CheckoutStatus,
    Customer,
    FeatureGrant,
    ReconciliationQueueItem,
    ReconciliationStatus,
    ReconciliationType,
    Refund,
    Subscription,
    SubscriptionStatus,
)
from billsync.models.base import utcnow
from billsync.schemas.checkout import CreateCheckoutRequest
from billsync.schemas.events import PaymentIntentObject
from billsync.services.checkout_metadata_service import checkout_metadata_service
from billsync.services.checkout_service import checkout_service
from billsync.services.refund_service import refund_service
from billsync.utils.periods import to_unix


def _params(organization, price, email="jane@example.com") -> CheckoutMetadataCreate:
    return CheckoutMetadataCreate(
        organization_id=organization.id,
        product_id=price.product_id,
        price_id=price.id,
        customer_email=email,
        product_name="Pro",
        price_amount=price.amount,
        currency=price.currency,
        billing_interval="month",
    )


def _payment(metadata_id, amount=2000, payment_id="pi_1") -> PaymentIntentObject:
    return PaymentIntentObject(
        id=payment_id,
        amount=amount,
        amount_received=amount,
        customer="cus_jane",
        payment_method="pm_card",
        status="succeeded",
        metadata={"checkout_metadata_id": str(metadata_id)},
    )


async def _reconciliation_items(db):
    return (await db.execute(select(ReconciliationQueueItem))).scalars().all()


# Metadata store

async def test_expired_metadata_raises_on_every_read(db, seed):
    organization = await seed.organization()
    price = await seed.price(organization)
    metadata_id, expires_at = await checkout_metadata_service.create(
        db, _params(organization, price), now=utcnow() - timedelta(hours=2)
    )
    assert expires_at < utcnow()

    with pytest.raises(CheckoutExpiredError):
        await checkout_metadata_service.get(db, metadata_id)
    metadata = await db.get(CheckoutMetadata, metadata_id, populate_existing=True)
    assert metadata.status == CheckoutStatus.EXPIRED
    with pytest.raises(CheckoutExpiredError):
        await checkout_metadata_service.get(db, metadata_id)


async def test_unknown_metadata_is_not_found(db):
    with pytest.raises(NotFoundError):
        await checkout_metadata_service.get(db, uuid.uuid4())


async def test_cleanup_expires_only_stale_pending_rows(db, seed):
    organization = await seed.organization()
    price = await seed.price(organization)
    stale_id, _ = await checkout_metadata_service.create(
        db, _params(organization, price), now=utcnow() - timedelta(hours=2)
    )
    fresh_id, _ = await checkout_metadata_service.create(db, _params(organization, price, email="joe@example.com"))

    assert await checkout_metadata_service.cleanup_expired(db) == 1
    assert (await db.get(CheckoutMetadata, stale_id, populate_existing=True)).status == CheckoutStatus.EXPIRED
    assert (await db.get(CheckoutMetadata, fresh_id, populate_existing=True)).status == CheckoutStatus.PENDING


# Checkout creation

async def test_paid_checkout_only_sends_the_metadata_id(db, seed, fake_stripe):
    organization = await seed.organization()
    price = await seed.price(organization)

    response = await checkout_service.create_checkout(
        db,
        organization.id,
        CreateCheckoutRequest(price_id=price.id, customer_email="Jane@Example.com", external_id="user-1"),
    )

    assert response.requires_payment
    assert response.amount == 2000
    assert response.client_secret == "pi_secret"
    intent = fake_stripe.called("create_payment_intent")[0]
    assert intent["metadata"] == {"checkout_metadata_id": str(response.checkout_id)}
    assert intent["idempotency_key"] == f"checkout-{response.checkout_id}"
    assert intent["account_ref"] == "acct_acme"

    metadata = await db.get(CheckoutMetadata, response.checkout_id, populate_existing=True)
    assert metadata.status == CheckoutStatus.PROCESSING
    assert metadata.checkout_session_ref == response.payment_intent_ref
    customer = (await db.execute(select(Customer))).scalar_one()
    assert customer.email == "jane@example.com"
    assert customer.processor_customer_ref.startswith("cus_fake")


async def test_checkout_rejects_price_of_another_organization(db, seed, fake_stripe):
    organization = await seed.organization()
    other = await seed.organization(name="Globex", account_ref="acct_globex")
    price = await seed.price(other, price_ref="price_globex")

    with pytest.raises(NotFoundError):
        await checkout_service.create_checkout(
            db, organization.id, CreateCheckoutRequest(price_id=price.id, customer_email="jane@example.com")
        )


async def test_paid_checkout_needs_connected_account(db, seed, fake_stripe):
    organization = await seed.organization(account_ref=None)
    price = await seed.price(organization)

    with pytest.raises(ValidationError):
        await checkout_service.create_checkout(
            db, organization.id, CreateCheckoutRequest(price_id=price.id, customer_email="jane@example.com")
        )


async def test_free_checkout_is_confirmed_without_processor(db, seed, fake_stripe):
    organization = await seed.organization()
    seats = await seed.feature(organization, "seats", limit=1)
    free = await seed.price(organization, name="Free", amount=0, price_ref=None, features=[seats])

    response = await checkout_service.create_checkout(
        db, organization.id, CreateCheckoutRequest(price_id=free.id, customer_email="jane@example.com")
    )
    assert not response.requires_payment

    metadata = await checkout_service.confirm_free_checkout(db, response.checkout_id, organization.id)
    assert metadata.status == CheckoutStatus.COMPLETED
    subscription_id = metadata.subscription_id

    again = await checkout_service.confirm_free_checkout(db, response.checkout_id, organization.id)
    assert again.subscription_id == subscription_id

    subscription = await db.get(Subscription, subscription_id, populate_existing=True)
    assert subscription.processor_subscription_ref is None
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert len((await db.execute(select(Subscription))).scalars().all()) == 1
    assert len((await db.execute(select(FeatureGrant))).scalars().all()) == 1
    assert fake_stripe.calls == []


# Completion after payment

@pytest.fixture
async def paid_checkout(db, seed, fake_stripe):
    organization = await seed.organization()
    seats = await seed.feature(organization, "seats", limit=3)
    price = await seed.price(organization, features=[seats])
    response = await checkout_service.create_checkout(
        db, organization.id, CreateCheckoutRequest(price_id=price.id, customer_email="jane@example.com")
    )
    customer = (await db.execute(select(Customer))).scalar_one()
    customer.processor_customer_ref = "cus_jane"
    await db.commit()
    return response.checkout_id


async def test_payment_provisions_subscription_once(db, paid_checkout, fake_stripe):
    subscription_id = await checkout_service.complete_paid_checkout(db, _payment(paid_checkout))

    created = fake_stripe.called("create_subscription")
    assert len(created) == 1
    assert created[0]["customer_ref"] == "cus_jane"
    assert created[0]["idempotency_key"] == f"checkout-subscription-{paid_checkout}"
    assert created[0]["billing_cycle_anchor"] > to_unix(utcnow())

    subscription = await db.get(Subscription, subscription_id, populate_existing=True)
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.processor_subscription_ref.startswith("sub_fake")
    metadata = await db.get(CheckoutMetadata, paid_checkout, populate_existing=True)
    assert metadata.status == CheckoutStatus.COMPLETED
    assert metadata.subscription_id == subscription_id

    again = await checkout_service.complete_paid_checkout(db, _payment(paid_checkout))
    assert again == subscription_id
    assert len(fake_stripe.called("create_subscription")) == 1


async def test_provisioning_failure_refunds_payment(db, paid_checkout, fake_stripe, monkeypatch):
    async def broken_provision(*args, **kwargs):
        raise RuntimeError("constraint violated")

    monkeypatch.setattr(checkout_service, "_provision_local", broken_provision)

    with pytest.raises(RuntimeError):
        await checkout_service.complete_paid_checkout(db, _payment(paid_checkout))

    assert fake_stripe.called("create_refund") == [{"payment_ref": "pi_1", "amount": 2000}]
    created_ref = next(iter(fake_stripe.subscriptions))
    assert fake_stripe.called("cancel_subscription") == [{"subscription_ref": created_ref}]

    metadata = await db.get(CheckoutMetadata, paid_checkout, populate_existing=True)
    assert metadata.status == CheckoutStatus.FAILED
    assert (await db.execute(select(Subscription))).scalars().all() == []

    items = await _reconciliation_items(db)
    assert [i.type for i in items] == [ReconciliationType.AUTOMATIC_REFUND]
    assert items[0].status == ReconciliationStatus.COMPLETED
    assert items[0].details["checkout_metadata_id"] == str(paid_checkout)


async def test_payment_for_unknown_checkout_is_refunded(db, fake_stripe):
    with pytest.raises(NotFoundError):
        await checkout_service.complete_paid_checkout(db, _payment(uuid.uuid4(), payment_id="pi_orphan"))
    assert fake_stripe.called("create_refund")[0]["payment_ref"] == "pi_orphan"


async def test_malformed_metadata_id_is_refunded(db, fake_stripe):
    payment = PaymentIntentObject(
        id="pi_garbled", amount=1500, amount_received=1500, metadata={"checkout_metadata_id": "not-a-uuid"}
    )

    with pytest.raises(NotFoundError):
        await checkout_service.complete_paid_checkout(db, payment)
    assert fake_stripe.called("create_refund") == [{"payment_ref": "pi_garbled", "amount": 1500}]


async def test_malformed_metadata_id_falls_back_to_linked_payment(db, paid_checkout, fake_stripe):
    metadata = await db.get(CheckoutMetadata, paid_checkout)
    payment = _payment("not-a-uuid", payment_id=metadata.checkout_session_ref)

    subscription_id = await checkout_service.complete_paid_checkout(db, payment)

    assert subscription_id is not None
    assert fake_stripe.called("create_refund") == []
    metadata = await db.get(CheckoutMetadata, paid_checkout, populate_existing=True)
    assert metadata.status == CheckoutStatus.COMPLETED


async def test_second_paid_checkout_for_same_product_is_refunded(db, paid_checkout, fake_stripe):
    first = await db.get(CheckoutMetadata, paid_checkout)
    second = await checkout_service.create_checkout(
        db, first.organization_id, CreateCheckoutRequest(price_id=first.price_id, customer_email="jane@example.com")
    )

    subscription_id = await checkout_service.complete_paid_checkout(db, _payment(paid_checkout, payment_id="pi_a"))
    with pytest.raises(ConflictError):
        await checkout_service.complete_paid_checkout(db, _payment(second.checkout_id, payment_id="pi_b"))

    assert fake_stripe.called("create_refund") == [{"payment_ref": "pi_b", "amount": 2000}]
    duplicate_ref = list(fake_stripe.subscriptions)[-1]
    assert fake_stripe.called("cancel_subscription") == [{"subscription_ref": duplicate_ref}]

    subscriptions = (await db.execute(select(Subscription))).scalars().all()
    assert [s.id for s in subscriptions] == [subscription_id]
    metadata = await db.get(CheckoutMetadata, second.checkout_id, populate_existing=True)
    assert metadata.status == CheckoutStatus.FAILED
    items = await _reconciliation_items(db)
    assert [i.type for i in items] == [ReconciliationType.AUTOMATIC_REFUND]


async def test_payment_without_checkout_metadata_is_ignored(db, fake_stripe):
    payment = PaymentIntentObject(id="pi_other", amount=500)
    assert await checkout_service.complete_paid_checkout(db, payment) is None
    assert fake_stripe.calls == []


# Refunds

async def test_failed_refund_is_escalated_for_manual_review(db, fake_stripe):
    fake_stripe.failing.add("create_refund")

    result = await refund_service.refund_payment_on_failure(db, "pi_9", "Provisioning failed", amount=1500)

    assert not result.success
    item = (await _reconciliation_items(db))[0]
    assert item.type == ReconciliationType.REFUND_FAILED
    assert item.status == ReconciliationStatus.PENDING_MANUAL_REVIEW
    assert item.priority == 1
    refund = (await db.execute(select(Refund))).scalar_one()
    assert refund.status == "failed"


async def test_successful_refund_is_logged(db, fake_stripe):
    result = await refund_service.refund_payment_on_failure(db, "pi_9", "Provisioning failed", amount=1500)

    assert result.success
    assert result.refund_ref.startswith("re_fake")
    refunds = await refund_service.list_refunds_for_payment(db, "pi_9")
    assert [r.status for r in refunds] == ["succeeded"]
