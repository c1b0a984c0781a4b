from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from foresight.budgets import (
    add_months,
    calculate_budget_allocation,
    calculate_bucket_renewal,
    calculate_next_renewal,
    category_color,
    format_budget_amount,
    handle_income_increase,
    should_renew_bucket,
    validate_budget_percentages,
)
from foresight.exceptions import ValidationError
from foresight.models import BudgetAllocation, Bucket

NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


def make_bucket(**overrides):
    values = dict(
        id="b1",
        user_id="alice",
        name="Groceries",
        category="essentials",
        target_amount=Decimal("500.00"),
        current_amount=Decimal("100.00"),
        currency="USD",
        renewal_rate="monthly",
        next_renewal=NOW - timedelta(days=1),
        is_active=True,
        auto_renew=True,
        created_at=NOW,
        updated_at=NOW,
    )
    values.update(overrides)
    return Bucket(**values)


def test_default_split_of_net_income():
    calculation = calculate_budget_allocation(Decimal("5000"), Decimal("20"))

    assert calculation.tax_amount == Decimal("1000")
    assert calculation.net_income == Decimal("4000")
    amounts = {name: values["amount"] for name, values in calculation.categories.items()}
    assert amounts == {
        "essentials": Decimal("2000.00"),
        "lifestyle": Decimal("800.00"),
        "savingsFuture": Decimal("800.00"),
        "sinkingFund": Decimal("400.00"),
        "unallocated": Decimal("0.00"),
        "misc": Decimal("0.00"),
    }


def test_custom_percentages_leave_remainder_unallocated():
    calculation = calculate_budget_allocation(
        Decimal("4000"), Decimal("0"), {"essentials": Decimal("40")}
    )

    assert calculation.categories["essentials"]["amount"] == Decimal("1600.00")
    assert calculation.categories["unallocated"]["amount"] == Decimal("400.00")
    assert calculation.categories["unallocated"]["percentage"] == Decimal("10.00")


def test_serialised_calculation_uses_two_decimals():
    data = calculate_budget_allocation(Decimal("1000"), Decimal("10")).to_dict()

    assert data["net_income"] == "900.00"
    assert data["categories"]["essentials"] == {"amount": "450.00", "percentage": "50"}


def test_income_increase_lands_in_unallocated():
    base = calculate_budget_allocation(Decimal("5000"), Decimal("20"))
    allocation = BudgetAllocation(
        id="a1",
        user_id="alice",
        gross_income=base.gross_income,
        net_income=base.net_income,
        tax_rate=Decimal("20"),
        currency="USD",
        categories=base.categories,
        last_updated=NOW,
        created_at=NOW,
    )

    increased = handle_income_increase(allocation, Decimal("1000"))

    assert increased.gross_income == Decimal("6000")
    assert increased.net_income == Decimal("4800")
    assert increased.tax_amount == Decimal("1200")
    assert increased.categories["unallocated"]["amount"] == Decimal("800.00")
    assert increased.categories["unallocated"]["percentage"] == Decimal("16.67")
    assert increased.categories["essentials"]["amount"] == Decimal("2000.00")
    assert increased.categories["essentials"]["percentage"] == Decimal("41.67")


def test_add_months_clamps_to_month_end():
    assert add_months(datetime(2024, 1, 31, tzinfo=timezone.utc), 1).date().isoformat() == "2024-02-29"
    assert add_months(datetime(2024, 11, 30, tzinfo=timezone.utc), 3).date().isoformat() == "2025-02-28"


@pytest.mark.parametrize(
    "rate, expected",
    [
        ("daily", datetime(2024, 6, 16, 12, 0, tzinfo=timezone.utc)),
        ("every2days", datetime(2024, 6, 17, 12, 0, tzinfo=timezone.utc)),
        ("biweekly", datetime(2024, 6, 29, 12, 0, tzinfo=timezone.utc)),
        ("biyearly", datetime(2024, 12, 15, 12, 0, tzinfo=timezone.utc)),
        ("yearly", datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc)),
    ],
)
def test_next_renewal_steps(rate, expected):
    assert calculate_next_renewal(rate, NOW) == expected


def test_next_renewal_rejects_unknown_rate():
    with pytest.raises(ValidationError):
        calculate_next_renewal("fortnightly", NOW)


def test_bucket_renewal_is_capped_by_shortfall_and_allocation():
    bucket = make_bucket()

    assert should_renew_bucket(bucket, NOW)
    renewal = calculate_bucket_renewal(bucket, Decimal("1000"), NOW)
    assert renewal.should_renew
    assert renewal.renewal_amount == Decimal("400.00")
    assert renewal.next_renewal == datetime(2024, 7, 15, 12, 0, tzinfo=timezone.utc)

    assert calculate_bucket_renewal(bucket, Decimal("150"), NOW).renewal_amount == Decimal("150.00")


def test_inactive_or_manual_buckets_do_not_renew():
    assert not should_renew_bucket(make_bucket(is_active=False), NOW)
    assert not should_renew_bucket(make_bucket(auto_renew=False), NOW)
    assert not should_renew_bucket(make_bucket(next_renewal=NOW + timedelta(days=3)), NOW)
    assert calculate_bucket_renewal(make_bucket(auto_renew=False), Decimal("100"), NOW).renewal_amount == 0


def test_percentage_warnings():
    assert validate_budget_percentages(
        {"essentials": 50, "lifestyle": 20, "savingsFuture": 20, "sinkingFund": 10}
    ) == []

    warnings = validate_budget_percentages(
        {"essentials": 20, "lifestyle": 70, "savingsFuture": 5, "sinkingFund": 10}
    )
    assert "Total allocation (105%) cannot exceed 100%" in warnings
    assert "Essentials allocation below 30% may not cover basic needs" in warnings
    assert "Savings allocation below 10% may not provide adequate financial security" in warnings


def test_formatting_helpers():
    assert format_budget_amount(Decimal("1234.5")) == "$1,234.50"
    assert format_budget_amount(Decimal("1234.5"), "JPY") == "¥1,235"
    assert category_color("essentials") == "#ef4444"
    assert category_color("unknown") == "#6b7280"
