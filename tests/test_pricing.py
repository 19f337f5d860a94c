from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from dateutil.relativedelta import relativedelta

from vendor_billing.errors import InvalidRequest
from vendor_billing.models import BillingUnit
from vendor_billing.pricing import (
    PackagePricing, as_utc, compute_new_subscription, compute_upgrade, days_left,
    remaining_days, round_money,
)

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
MONTHLY = PackagePricing(monthly_price=Decimal("100"))
TWO_WEEK = PackagePricing(monthly_price=Decimal("120"), biweekly_price=Decimal("70"), biweekly_vendor=True)


def test_slots_and_months_upgrade():
    end = NOW + timedelta(days=10)
    quote = compute_upgrade(
        slot_count=5, end_date=end, billing_unit=BillingUnit.monthly, pricing=MONTHLY,
        delta_slots=3, delta_months=1, now=NOW,
    )
    assert quote.slot_charge == Decimal("100.00")
    assert quote.duration_charge == Decimal("800.00")
    assert quote.charge == Decimal("900.00")
    assert quote.new_slot_count == 8
    assert quote.new_end_date == end + relativedelta(months=1)


def test_slots_only_keeps_end_date():
    end = NOW + timedelta(days=10)
    quote = compute_upgrade(
        slot_count=5, end_date=end, billing_unit=BillingUnit.monthly, pricing=MONTHLY,
        delta_slots=2, now=NOW,
    )
    assert quote.charge == Decimal("66.67")
    assert quote.duration_charge == Decimal("0.00")
    assert quote.new_slot_count == 7
    assert quote.new_end_date == end


def test_duration_only_keeps_slots():
    end = NOW + timedelta(days=10)
    quote = compute_upgrade(
        slot_count=5, end_date=end, billing_unit=BillingUnit.monthly, pricing=MONTHLY,
        delta_months=2, now=NOW,
    )
    assert quote.charge == Decimal("1000.00")
    assert quote.slot_charge == Decimal("0.00")
    assert quote.new_slot_count == 5
    assert quote.new_end_date == end + relativedelta(months=2)


def test_two_week_extension_by_days():
    end = NOW + timedelta(days=3)
    quote = compute_upgrade(
        slot_count=2, end_date=end, billing_unit=BillingUnit.biweekly, pricing=TWO_WEEK,
        delta_days=14, now=NOW,
    )
    assert quote.charge == Decimal("140.00")
    assert quote.new_end_date == end + timedelta(days=14)


def test_two_week_slots_prorate_over_fourteen_days():
    quote = compute_upgrade(
        slot_count=2, end_date=NOW + timedelta(days=7), billing_unit=BillingUnit.biweekly,
        pricing=TWO_WEEK, delta_slots=1, now=NOW,
    )
    assert quote.charge == Decimal("35.00")


def test_two_week_vendor_extending_by_months_pays_monthly_price():
    quote = compute_upgrade(
        slot_count=2, end_date=NOW + timedelta(days=7), billing_unit=BillingUnit.biweekly,
        pricing=TWO_WEEK, delta_months=1, now=NOW,
    )
    assert quote.charge == Decimal("240.00")


def test_missing_two_week_price():
    pricing = PackagePricing(monthly_price=Decimal("100"), biweekly_vendor=True)
    with pytest.raises(InvalidRequest):
        compute_upgrade(
            slot_count=1, end_date=NOW + timedelta(days=5), billing_unit=BillingUnit.biweekly,
            pricing=pricing, delta_days=14, now=NOW,
        )


def test_past_end_date_charges_one_day():
    quote = compute_upgrade(
        slot_count=5, end_date=NOW - timedelta(days=3), billing_unit=BillingUnit.monthly,
        pricing=MONTHLY, delta_slots=3, now=NOW,
    )
    assert quote.charge == Decimal("10.00")


def test_partial_day_rounds_up():
    assert remaining_days(NOW + timedelta(days=2, hours=1), NOW) == 3
    assert remaining_days(NOW, NOW) == 1
    assert days_left(NOW - timedelta(days=4), NOW) == 0


def test_half_cent_rounds_up():
    assert round_money(Decimal("2.675")) == Decimal("2.68")
    assert round_money(Decimal("2.665")) == Decimal("2.67")
    pricing = PackagePricing(monthly_price=Decimal("1"), biweekly_price=Decimal("0.01"), biweekly_vendor=True)
    quote = compute_upgrade(
        slot_count=1, end_date=NOW + timedelta(days=1), billing_unit=BillingUnit.biweekly,
        pricing=pricing, delta_days=7, now=NOW,
    )
    assert quote.charge == Decimal("0.01")


@pytest.mark.parametrize("kwargs", [
    {},
    {"delta_slots": -1},
    {"delta_days": 14, "delta_months": 1},
    {"delta_months": -1},
])
def test_invalid_upgrade_requests(kwargs):
    with pytest.raises(InvalidRequest):
        compute_upgrade(
            slot_count=5, end_date=NOW + timedelta(days=10), billing_unit=BillingUnit.monthly,
            pricing=MONTHLY, now=NOW, **kwargs,
        )


def test_new_monthly_subscription():
    quote = compute_new_subscription(pricing=MONTHLY, slots=5, months=1, now=NOW)
    assert quote.charge == Decimal("500.00")
    assert quote.billing_unit == BillingUnit.monthly
    assert quote.start_date == NOW
    assert quote.end_date == datetime(2026, 4, 10, 12, 0, tzinfo=timezone.utc)


def test_new_two_week_subscription():
    quote = compute_new_subscription(pricing=TWO_WEEK, slots=3, days=28, now=NOW)
    assert quote.charge == Decimal("420.00")
    assert quote.billing_unit == BillingUnit.biweekly
    assert quote.end_date == NOW + timedelta(days=28)


def test_month_end_is_clamped():
    start = datetime(2026, 1, 31, 9, 0, tzinfo=timezone.utc)
    quote = compute_new_subscription(pricing=MONTHLY, slots=1, months=1, now=start)
    assert quote.end_date == datetime(2026, 2, 28, 9, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize("kwargs", [
    {"slots": 1},
    {"slots": 0, "months": 1},
    {"slots": 1, "days": 14},
    {"slots": 1, "days": 14, "months": 1},
])
def test_invalid_new_subscriptions(kwargs):
    with pytest.raises(InvalidRequest):
        compute_new_subscription(pricing=MONTHLY, now=NOW, **kwargs)


def test_naive_datetimes_are_read_as_utc():
    naive = datetime(2026, 3, 10, 12, 0)
    assert as_utc(naive) == NOW
    assert as_utc(None) is None


def test_total_is_sum_of_rounded_parts():
    pricing = PackagePricing(monthly_price=Decimal("1"), biweekly_price=Decimal("0.01"), biweekly_vendor=True)
    quote = compute_upgrade(
        slot_count=0, end_date=NOW + timedelta(days=7), billing_unit=BillingUnit.biweekly,
        pricing=pricing, delta_slots=1, delta_days=7, now=NOW,
    )
    assert quote.slot_charge == Decimal("0.01")
    assert quote.duration_charge == Decimal("0.01")
    assert quote.charge == quote.slot_charge + quote.duration_charge == Decimal("0.02")
