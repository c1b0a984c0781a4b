from datetime import datetime, timezone
from decimal import Decimal

from foresight.income import IncomeCalculator, monthly_equivalent
from foresight.models import IncomeSource, OneTimeIncome

NOW = datetime(2024, 6, 15, tzinfo=timezone.utc)


def make_source(source_id, amount, currency="USD", frequency="monthly", kind="salary", active=True):
    return IncomeSource(
        id=source_id,
        user_id="alice",
        type=kind,
        name=f"Source {source_id}",
        amount=Decimal(amount),
        currency=currency,
        frequency=frequency,
        is_active=active,
        start_date=datetime(2024, 1, 1, tzinfo=timezone.utc),
        created_at=NOW,
        updated_at=NOW,
    )


def make_one_time(income_id, amount, date, recorded=True, currency="USD"):
    return OneTimeIncome(
        id=income_id,
        user_id="alice",
        type="bonus",
        name="Bonus",
        amount=Decimal(amount),
        currency=currency,
        date=date,
        is_recorded=recorded,
        created_at=NOW,
        updated_at=NOW,
    )


def test_monthly_equivalent():
    assert monthly_equivalent(Decimal("1200"), "yearly") == Decimal("100")
    assert monthly_equivalent(Decimal("300"), "quarterly") == Decimal("100")
    assert round(monthly_equivalent(Decimal("1200"), "weekly"), 2) == Decimal("5200.00")
    assert monthly_equivalent(Decimal("50"), "unknown") == Decimal("50")


def test_summary_totals_active_sources_in_primary_currency(exchange_rates):
    calculator = IncomeCalculator(exchange_rates)
    sources = [
        make_source("s1", "3000"),
        make_source("s2", "1000", currency="EUR", kind="rental"),
        make_source("s3", "12000", frequency="yearly", kind="other", active=False),
    ]

    summary = calculator.summarize(sources, [], "USD", NOW)

    assert summary.total_monthly == Decimal("4080.00")
    assert summary.total_annual == Decimal("48960.00")
    assert summary.monthly_by_type == {"salary": Decimal("3000.00"), "rental": Decimal("1080.00")}
    converted = {item.id: item for item in summary.sources}
    assert converted["s2"].exchange_rate == Decimal("1.08")
    assert converted["s3"].converted_monthly_amount == Decimal("1000.00")


def test_one_time_total_counts_recorded_income_of_current_year(exchange_rates):
    calculator = IncomeCalculator(exchange_rates)
    one_time = [
        make_one_time("o1", "500", datetime(2024, 3, 1, tzinfo=timezone.utc)),
        make_one_time("o2", "700", datetime(2023, 12, 1, tzinfo=timezone.utc)),
        make_one_time("o3", "900", datetime(2024, 4, 1, tzinfo=timezone.utc), recorded=False),
    ]

    summary = calculator.summarize([], one_time, "USD", NOW)

    assert summary.one_time_this_year == Decimal("500.00")
    assert len(summary.one_time) == 3


def test_conversion_failure_is_reported_per_source(exchange_rates):
    calculator = IncomeCalculator(exchange_rates)
    sources = [make_source("s1", "1000"), make_source("bad", "500", currency="usd")]

    summary = calculator.summarize(sources, [], "USD", NOW)

    bad = next(item for item in summary.sources if item.id == "bad")
    assert bad.conversion_error is not None
    assert bad.to_dict()["converted_amount"] is None
    assert summary.total_monthly == Decimal("1000.00")
