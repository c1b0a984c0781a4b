from datetime import datetime, timezone

import pytest

from foresight.insights import InsightsService
from foresight.services import (
    BudgetService,
    ExpenseService,
    IncomeSourceService,
    InvestmentService,
    OneTimeIncomeService,
    ProfileService,
)

NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def services(storage):
    return {
        "profiles": ProfileService(storage),
        "income_sources": IncomeSourceService(storage),
        "one_time_incomes": OneTimeIncomeService(storage),
        "expenses": ExpenseService(storage),
        "investments": InvestmentService(storage),
        "budgets": BudgetService(storage),
    }


@pytest.fixture
def insights(services, exchange_rates):
    return InsightsService(exchange_rates=exchange_rates, **services)


def seed(services):
    services["income_sources"].add(
        "alice",
        {
            "type": "salary",
            "name": "Job",
            "amount": "3000",
            "currency": "USD",
            "frequency": "monthly",
            "start_date": "2024-01-01T00:00:00Z",
        },
    )
    services["one_time_incomes"].add(
        "alice",
        {"type": "gift", "name": "Gift", "amount": "250", "currency": "USD", "date": "2024-05-20T00:00:00Z"},
    )
    for date, amount, category in [
        ("2024-05-03T00:00:00Z", "200", "groceries"),
        ("2024-06-01T00:00:00Z", "1000", "rent"),
        ("2024-06-05T00:00:00Z", "100", "groceries"),
    ]:
        services["expenses"].add(
            "alice", {"amount": amount, "currency": "USD", "category": category, "date": date}
        )


def test_overview_for_current_month(services, insights):
    seed(services)

    overview = insights.overview("alice", now=NOW)

    assert overview["expenses"] == {
        "month": "2024-06",
        "total": "1100.00",
        "by_category": {"rent": "1000.00", "groceries": "100.00"},
        "count": 2,
    }
    assert overview["income"]["total_monthly"] == "3000.00"
    assert overview["net_cash_flow"] == "1900.00"
    assert overview["savings_rate"] == "63.33"
    assert overview["budget"] is None


def test_cashflow_by_month(services, insights):
    seed(services)

    cashflow = insights.cashflow("alice", months=2, now=NOW)

    assert cashflow == {
        "primary_currency": "USD",
        "months": [
            {"month": "2024-05", "income": "3250.00", "expenses": "200.00", "net": "3050.00"},
            {"month": "2024-06", "income": "3000.00", "expenses": "1100.00", "net": "1900.00"},
        ],
    }


def test_portfolio_in_primary_currency(services, insights):
    services["profiles"].update("alice", {"primary_currency": "EUR"})
    services["investments"].add(
        "alice",
        {
            "symbol": "AAPL",
            "type": "stock",
            "quantity": "10",
            "purchase_price": "108",
            "purchase_currency": "USD",
            "purchase_date": "2024-01-10T00:00:00Z",
        },
    )

    portfolio = insights.portfolio("alice")

    assert portfolio["summary"]["currency"] == "EUR"
    assert portfolio["summary"]["total_value"] == "1000.00"
    assert portfolio["allocation"][0]["type"] == "stock"
    assert portfolio["holdings"][0]["symbol"] == "AAPL"
