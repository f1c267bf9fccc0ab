from __future__ import annotations

from datetime import datetime, timedelta

from billsync.models.subscription_change import ChangeType
from billsync.services.plan_change_service import PlanChangeService, calculate_local_proration, classify_change

PERIOD_START = datetime(2026, 1, 1)
PERIOD_END = PERIOD_START + timedelta(days=30)


def test_upgrade_ten_days_into_a_thirty_day_period():
    proration = calculate_local_proration(2000, 3000, PERIOD_START, PERIOD_END, PERIOD_START + timedelta(days=10))

    assert proration.total_days == 30
    assert proration.remaining_days == 20
    assert proration.unused_credit == 1333
    assert proration.new_charge == 2000
    assert proration.immediate_payment == 667
    assert proration.source == "local"


def test_downgrade_never_produces_a_negative_payment():
    proration = calculate_local_proration(3000, 1000, PERIOD_START, PERIOD_END, PERIOD_START + timedelta(days=15))

    assert proration.unused_credit == 1500
    assert proration.new_charge == 500
    assert proration.immediate_payment == 0


def test_half_cent_amounts_round_up():
    proration = calculate_local_proration(2997, 4001, PERIOD_START, PERIOD_END, PERIOD_START + timedelta(days=15))

    assert proration.unused_credit == 1499
    assert proration.new_charge == 2001
    assert proration.immediate_payment == 502


def test_partial_day_counts_as_elapsed():
    proration = calculate_local_proration(
        3000, 3000, PERIOD_START, PERIOD_END, PERIOD_START + timedelta(days=2, hours=1)
    )
    assert proration.remaining_days == 27


def test_change_after_period_end_has_nothing_left():
    proration = calculate_local_proration(2000, 3000, PERIOD_START, PERIOD_END, PERIOD_END + timedelta(days=1))

    assert proration.remaining_days == 0
    assert proration.unused_credit == 0
    assert proration.immediate_payment == 0


def test_classify_change():
    assert classify_change(1000, 2000) == ChangeType.UPGRADE
    assert classify_change(2000, 1000) == ChangeType.DOWNGRADE
    assert classify_change(1500, 1500) == ChangeType.LATERAL


def test_invoice_lines_split_into_credit_and_charge():
    invoice = {
        "amount_due": 700,
        "lines": {"data": [
            {"amount": -1300, "proration": True},
            {"amount": 2000, "parent": {"subscription_item_details": {"proration": True}}},
            {"amount": 3000, "price": {"id": "price_max"}},
        ]},
    }
    assert PlanChangeService._split_invoice_lines(invoice, "price_max") == (1300, 2000)


def test_invoice_without_proration_lines_charges_the_target_price():
    invoice = {"lines": {"data": [
        {"amount": 3000, "pricing": {"price_details": {"price": "price_max"}}},
        {"amount": 500, "price": {"id": "price_addon"}},
    ]}}
    assert PlanChangeService._split_invoice_lines(invoice, "price_max") == (0, 3000)
