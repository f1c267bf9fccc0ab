from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, AsyncGenerator, Dict, List, Optional

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from billsync.core.database import get_db
from billsync.core.operations import create_subscription_atomic
from billsync.crud.product import product_feature_crud
from billsync.main import app
from billsync.models import (
    Base,
    BillingInterval,
    Customer,
    Feature,
    Organization,
    OrganizationStatus,
    Product,
    ProductFeature,
    ProductPrice,
    Subscription,
    SubscriptionStatus,
)
from billsync.models.base import utcnow
from billsync.services.stripe_service import stripe_service


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    async def _override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


class FakeStripe:
    """In-memory stand-in for the Stripe client; every call is recorded"""

    METHODS = (
        "create_customer",
        "create_payment_intent",
        "create_subscription",
        "retrieve_subscription",
        "update_subscription_price",
        "cancel_subscription",
        "preview_invoice",
        "create_refund",
        "retrieve_refund",
        "verify_webhook_signature",
    )

    def __init__(self) -> None:
        self.calls: List[tuple[str, Dict[str, Any]]] = []
        self.failing: set[str] = set()
        self.subscriptions: Dict[str, Dict[str, Any]] = {}
        self.invoice_preview: Optional[Dict[str, Any]] = None
        self._counter = 0

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_fake{self._counter}"

    def _respond(self, name: str, key: str, obj: Any, **params) -> Dict[str, Any]:
        self.calls.append((name, params))
        if name in self.failing:
            return {"success": False, "error": f"{name} failed", "error_code": "processing_error"}
        return {"success": True, key: obj}

    def called(self, name: str) -> List[Dict[str, Any]]:
        return [params for call, params in self.calls if call == name]

    async def create_customer(self, email, name=None, metadata=None, account_ref=None):
        return self._respond(
            "create_customer", "customer", {"id": self._next_id("cus"), "email": email},
            email=email, account_ref=account_ref,
        )

    async def create_payment_intent(self, amount, currency, customer_ref, metadata, account_ref=None, idempotency_key=None):
        intent = {"id": self._next_id("pi"), "client_secret": "pi_secret", "amount": amount, "metadata": metadata}
        return self._respond(
            "create_payment_intent", "payment_intent", intent,
            amount=amount, metadata=metadata, idempotency_key=idempotency_key, account_ref=account_ref,
        )

    async def create_subscription(
        self, customer_ref, price_ref, metadata, account_ref=None, default_payment_method=None,
        billing_cycle_anchor=None, trial_period_days=None, idempotency_key=None
    ):
        sub_id = self._next_id("sub")
        subscription = {
            "id": sub_id,
            "status": "active",
            "items": {"data": [{"id": f"si_{sub_id}", "price": {"id": price_ref}}]},
        }
        result = self._respond(
            "create_subscription", "subscription", subscription,
            customer_ref=customer_ref, price_ref=price_ref, billing_cycle_anchor=billing_cycle_anchor,
            idempotency_key=idempotency_key, account_ref=account_ref,
        )
        if result["success"]:
            self.subscriptions[sub_id] = subscription
        return result

    async def retrieve_subscription(self, subscription_ref, account_ref=None):
        return self._respond("retrieve_subscription", "subscription", self.subscriptions.get(subscription_ref))

    async def update_subscription_price(self, subscription_ref, price_ref, account_ref=None, proration_behavior="create_prorations"):
        return self._respond(
            "update_subscription_price", "subscription",
            {"id": subscription_ref, "status": "active", "latest_invoice": "in_price_change"},
            subscription_ref=subscription_ref, price_ref=price_ref, proration_behavior=proration_behavior,
        )

    async def cancel_subscription(self, subscription_ref, account_ref=None):
        return self._respond(
            "cancel_subscription", "subscription", {"id": subscription_ref, "status": "canceled"},
            subscription_ref=subscription_ref,
        )

    async def preview_invoice(self, customer_ref, subscription_ref, new_price_ref, proration_date, account_ref=None):
        return self._respond(
            "preview_invoice", "invoice", self.invoice_preview,
            subscription_ref=subscription_ref, new_price_ref=new_price_ref,
        )

    async def create_refund(self, payment_ref, reason, amount=None, account_ref=None):
        refund = {"id": self._next_id("re"), "amount": amount, "currency": "usd", "status": "succeeded"}
        return self._respond("create_refund", "refund", refund, payment_ref=payment_ref, amount=amount)

    async def retrieve_refund(self, refund_ref, account_ref=None):
        return self._respond("retrieve_refund", "refund", {"id": refund_ref, "status": "succeeded", "amount": 100})

    def verify_webhook_signature(self, payload, signature):
        return signature == "valid-signature"


@pytest.fixture
def fake_stripe(monkeypatch) -> FakeStripe:
    fake = FakeStripe()
    for name in FakeStripe.METHODS:
        monkeypatch.setattr(stripe_service, name, getattr(fake, name))
    return fake


class Seed:
    """Builders for the catalog, customers and subscriptions used across tests"""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def organization(self, name: str = "Acme", account_ref: Optional[str] = "acct_acme") -> Organization:
        organization = Organization(
            name=name,
            processor_account_ref=account_ref,
            status=OrganizationStatus.ACTIVE,
            charges_enabled=True,
            payouts_enabled=True,
            details_submitted=True,
        )
        self.db.add(organization)
        await self.db.commit()
        return organization

    async def feature(self, organization: Organization, key: str, limit: Optional[int] = None) -> Feature:
        feature = Feature(
            organization_id=organization.id,
            key=key,
            name=key.replace("_", " ").title(),
            properties={"limit": limit} if limit is not None else {},
            processor_feature_ref=f"feat_{key}",
        )
        self.db.add(feature)
        await self.db.commit()
        return feature

    async def price(
        self,
        organization: Organization,
        name: str = "Pro",
        amount: int = 2000,
        currency: str = "usd",
        interval: BillingInterval = BillingInterval.MONTH,
        interval_count: int = 1,
        price_ref: Optional[str] = "price_pro",
        features: Optional[List[Feature]] = None,
    ) -> ProductPrice:
        product = Product(
            organization_id=organization.id,
            name=name,
            recurring_interval=interval,
            recurring_interval_count=interval_count,
        )
        self.db.add(product)
        await self.db.flush()
        price = ProductPrice(product_id=product.id, amount=amount, currency=currency, processor_price_ref=price_ref)
        self.db.add(price)
        for feature in features or []:
            self.db.add(ProductFeature(product_id=product.id, feature_id=feature.id, config={}))
        await self.db.commit()
        return price

    async def customer(
        self,
        organization: Organization,
        email: str = "jane@example.com",
        external_id: Optional[str] = "user-1",
        processor_ref: Optional[str] = "cus_jane",
    ) -> Customer:
        customer = Customer(
            organization_id=organization.id,
            email=email,
            external_id=external_id,
            processor_customer_ref=processor_ref,
            meta_data={},
        )
        self.db.add(customer)
        await self.db.commit()
        return customer

    async def subscription(
        self,
        customer: Customer,
        price: ProductPrice,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        processor_ref: Optional[str] = "sub_jane",
        period_start: Optional[datetime] = None,
        period_days: int = 30,
    ) -> Subscription:
        period_start = period_start or (utcnow() - timedelta(days=10)).replace(microsecond=0)
        product = await self.db.get(Product, price.product_id)
        features = await product_feature_crud.list_for_product(self.db, product.id)
        subscription, _ = await create_subscription_atomic(
            self.db,
            subscription={
                "organization_id": customer.organization_id,
                "customer_id": customer.id,
                "product_id": product.id,
                "price_id": price.id,
                "status": status,
                "amount": price.amount,
                "currency": price.currency,
                "current_period_start": period_start,
                "current_period_end": period_start + timedelta(days=period_days),
                "processor_subscription_ref": processor_ref,
                "meta_data": {},
            },
            features=features,
        )
        return subscription


@pytest.fixture
def seed(db) -> Seed:
    return Seed(db)
