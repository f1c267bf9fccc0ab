from __future__ import annotations

import json
import uuid

from billsync.services import event_dispatcher


def _payload(event_id: str = "evt_1", event_type: str = "invoice.payment_succeeded") -> bytes:
    return json.dumps({
        "id": event_id,
        "type": event_type,
        "data": {"object": {"id": "in_1", "subscription": "sub_missing"}},
    }).encode()


async def test_missing_signature_is_rejected(client, fake_stripe):
    response = await client.post("/api/webhooks/stripe", content=_payload(), headers={"X-Request-ID": "req-1"})

    assert response.status_code == 400
    assert response.json() == {"detail": "Missing Stripe signature", "request_id": "req-1"}
    assert response.headers["X-Request-ID"] == "req-1"


async def test_invalid_signature_is_rejected(client, fake_stripe):
    response = await client.post(
        "/api/webhooks/stripe", content=_payload(), headers={"stripe-signature": "forged"}
    )

    assert response.status_code == 400
    body = response.json()
    assert body["detail"] == "Invalid Stripe signature"
    assert body["request_id"] == response.headers["X-Request-ID"]


async def test_malformed_payload_is_rejected(client, fake_stripe):
    response = await client.post(
        "/api/webhooks/stripe", content=b"{not json", headers={"stripe-signature": "valid-signature"}
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "Malformed event payload"


async def test_verified_event_is_processed_once(client, fake_stripe):
    headers = {"stripe-signature": "valid-signature"}

    first = await client.post("/api/webhooks/stripe", content=_payload(), headers=headers)
    second = await client.post("/api/webhooks/stripe", content=_payload(), headers=headers)

    assert first.status_code == 200
    assert first.json() == {"received": True, "handled": True}
    assert second.json() == {"received": True, "duplicate": True}


async def test_malformed_subscription_event_is_acknowledged(client, fake_stripe):
    payload = json.dumps({
        "id": "evt_thin",
        "type": "customer.subscription.updated",
        "data": {"object": {"id": "sub_x"}},
    }).encode()

    response = await client.post(
        "/api/webhooks/stripe", content=payload, headers={"stripe-signature": "valid-signature"}
    )

    assert response.status_code == 200
    assert response.json() == {"received": True, "handled": False}


async def test_processing_failure_returns_500(client, fake_stripe, monkeypatch):
    async def broken(db, event):
        raise RuntimeError("boom")

    monkeypatch.setattr(event_dispatcher, "dispatch", broken)

    response = await client.post(
        "/api/webhooks/stripe", content=_payload("evt_2"), headers={"stripe-signature": "valid-signature"}
    )

    assert response.status_code == 500
    assert response.json()["detail"] == "Webhook processing failed"


async def test_health_reports_sweeper(client):
    response = await client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert "sweeper" in body


async def test_tenant_routes_require_organization_header(client):
    response = await client.get(f"/api/checkout/{uuid.uuid4()}")
    assert response.status_code == 401

    response = await client.get(f"/api/checkout/{uuid.uuid4()}", headers={"X-Organization-Id": "not-a-uuid"})
    assert response.status_code == 401


async def test_unknown_checkout_is_404(client):
    response = await client.get(f"/api/checkout/{uuid.uuid4()}", headers={"X-Organization-Id": str(uuid.uuid4())})
    assert response.status_code == 404


async def test_preview_change_over_http(client, seed, fake_stripe):
    organization = await seed.organization()
    pro = await seed.price(organization, name="Pro", amount=2000, price_ref="price_pro")
    max_ = await seed.price(organization, name="Max", amount=3000, price_ref="price_max")
    customer = await seed.customer(organization)
    subscription = await seed.subscription(customer, pro)
    fake_stripe.failing.add("preview_invoice")

    response = await client.post(
        f"/api/subscriptions/{subscription.id}/preview-change",
        json={"new_price_id": str(max_.id)},
        headers={"X-Organization-Id": str(organization.id)},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["change_type"] == "upgrade"
    assert body["proration"]["source"] == "local"

    forbidden = await client.post(
        f"/api/subscriptions/{subscription.id}/preview-change",
        json={"new_price_id": str(max_.id)},
        headers={"X-Organization-Id": str(uuid.uuid4())},
    )
    assert forbidden.status_code == 403
