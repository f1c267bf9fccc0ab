from __future__ import annotations

import uuid

import pytest
from pydantic import ValidationError
from sqlalchemy import select

from billsync.crud.subscription import subscription_crud
from billsync.models import (
    ReconciliationQueueItem,
    ReconciliationType,
    WebhookEvent,
    WebhookEventStatus,
)
from billsync.services.event_dispatcher import HANDLERS, dispatch, handle_verified_event
from billsync.schemas.events import HANDLED_EVENT_TYPES


def _subscription_updated(event_id: str = "evt_sub") -> dict:
    return {
        "id": event_id,
        "type": "customer.subscription.updated",
        "data": {"object": {"id": "sub_jane", "customer": "cus_jane", "status": "active"}},
    }


async def _ledger_row(db, event_id):
    await db.rollback()
    return (await db.execute(
        select(WebhookEvent).where(WebhookEvent.event_id == event_id).execution_options(populate_existing=True)
    )).scalar_one()


def test_every_handled_type_has_a_handler():
    assert set(HANDLERS) == HANDLED_EVENT_TYPES


async def test_unhandled_type_is_acknowledged(db):
    event = {"id": "evt_charge", "type": "charge.refunded", "data": {"object": {"id": "ch_1"}}}

    assert await dispatch(db, event) is False
    result = await handle_verified_event(db, event)

    assert result == {"received": True, "handled": False}
    assert (await _ledger_row(db, "evt_charge")).status == WebhookEventStatus.PROCESSED


async def test_redelivery_is_a_duplicate(db):
    event = _subscription_updated()

    first = await handle_verified_event(db, event)
    second = await handle_verified_event(db, event)

    assert first == {"received": True, "handled": True}
    assert second == {"received": True, "duplicate": True}


async def test_sync_failure_is_escalated_not_raised(db, monkeypatch):
    async def broken_lookup(*args, **kwargs):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(subscription_crud, "get_by_processor_ref", broken_lookup)

    result = await handle_verified_event(db, _subscription_updated("evt_broken"))

    assert result == {"received": True, "handled": True}
    assert (await _ledger_row(db, "evt_broken")).status == WebhookEventStatus.PROCESSED
    item = (await db.execute(select(ReconciliationQueueItem))).scalar_one()
    assert item.type == ReconciliationType.SYNC_FAILED
    assert item.reference_id == "sub_jane"
    assert item.details == {"event_id": "evt_broken", "event_type": "customer.subscription.updated"}


async def test_malformed_sync_event_is_escalated_not_raised(db):
    event = {"id": "evt_thin", "type": "customer.subscription.updated", "data": {"object": {"id": "sub_x"}}}

    result = await handle_verified_event(db, event)

    assert result == {"received": True, "handled": False}
    assert (await _ledger_row(db, "evt_thin")).status == WebhookEventStatus.PROCESSED
    item = (await db.execute(select(ReconciliationQueueItem))).scalar_one()
    assert item.type == ReconciliationType.SYNC_FAILED
    assert item.reference_id == "sub_x"


async def test_malformed_payment_event_fails_the_delivery(db):
    event = {"id": "evt_bad_pi", "type": "payment_intent.succeeded", "data": {"object": {"amount": "lots"}}}

    with pytest.raises(ValidationError):
        await dispatch(db, event)


async def test_provisioning_failure_fails_the_delivery(db, fake_stripe):
    event = {
        "id": "evt_pi",
        "type": "payment_intent.succeeded",
        "data": {"object": {
            "id": "pi_1",
            "amount": 2000,
            "amount_received": 2000,
            "metadata": {"checkout_metadata_id": str(uuid.uuid4())},
        }},
    }

    with pytest.raises(Exception):
        await handle_verified_event(db, event)

    row = await _ledger_row(db, "evt_pi")
    assert row.status == WebhookEventStatus.FAILED
    assert row.error_message
    types = {i.type for i in (await db.execute(select(ReconciliationQueueItem))).scalars().all()}
    assert types == {ReconciliationType.AUTOMATIC_REFUND, ReconciliationType.WEBHOOK_PROCESSING_FAILED}

    # the retried delivery is recognised and not provisioned twice
    assert await handle_verified_event(db, event) == {"received": True, "duplicate": True}
    assert len(fake_stripe.called("create_refund")) == 1
