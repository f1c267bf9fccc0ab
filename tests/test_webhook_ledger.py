from __future__ import annotations

from sqlalchemy import select

from billsync.models import WebhookEvent, WebhookEventStatus
from billsync.services.webhook_ledger import webhook_ledger


def _event(event_id: str = "evt_1", event_type: str = "invoice.payment_succeeded") -> dict:
    return {
        "id": event_id,
        "type": event_type,
        "livemode": False,
        "account": "acct_acme",
        "api_version": "2024-06-20",
        "data": {"object": {"id": "in_1"}},
    }


async def test_first_delivery_is_new_and_recorded(db):
    result = await webhook_ledger.record_and_check(db, _event())
    assert result.is_new
    assert result.status == WebhookEventStatus.PENDING

    row = (await db.execute(select(WebhookEvent))).scalar_one()
    assert row.event_id == "evt_1"
    assert row.account_id == "acct_acme"
    assert row.payload["data"]["object"]["id"] == "in_1"


async def test_redelivery_is_not_new_whatever_the_first_outcome(db):
    await webhook_ledger.record_and_check(db, _event())
    await webhook_ledger.mark_failed(db, "evt_1", "handler exploded")

    again = await webhook_ledger.record_and_check(db, _event())
    assert not again.is_new
    assert again.status == WebhookEventStatus.FAILED

    rows = (await db.execute(select(WebhookEvent))).scalars().all()
    assert len(rows) == 1
    assert rows[0].retry_count == 1
    assert rows[0].error_message == "handler exploded"


async def test_mark_processed_only_moves_pending_rows(db):
    await webhook_ledger.record_and_check(db, _event())
    await webhook_ledger.mark_processed(db, "evt_1")
    await webhook_ledger.mark_failed(db, "evt_1", "late failure")

    row = (await db.execute(select(WebhookEvent))).scalar_one()
    assert row.status == WebhookEventStatus.PROCESSED
    assert row.processed_at is not None
    assert row.error_message is None
