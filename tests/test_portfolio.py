from datetime import datetime, timezone
from decimal import Decimal

from foresight.models import Investment
from foresight.portfolio import (
    calculate_asset_allocation,
    calculate_diversification_score,
    calculate_investment_performance,
    calculate_portfolio_summary,
    format_percentage_change,
    top_performers,
    worst_performers,
)

NOW = datetime(2024, 6, 15, tzinfo=timezone.utc)


def make_investment(symbol, kind, quantity, purchase_price, last_price, current_value=None):
    return Investment(
        id=f"inv-{symbol}",
        user_id="alice",
        symbol=symbol,
        type=kind,
        quantity=Decimal(quantity),
        purchase_price=Decimal(purchase_price),
        purchase_currency="USD",
        purchase_date=NOW,
        last_synced_price=Decimal(last_price),
        last_synced_price_currency="USD",
        last_sync_timestamp=NOW,
        current_value=Decimal(current_value) if current_value is not None else None,
    )


def sample_portfolio():
    return [
        make_investment("AAPL", "stock", "10", "100", "150"),
        make_investment("BTC", "crypto", "0.5", "40000", "30000"),
        make_investment("UST", "bond", "1", "1000", "1000"),
    ]


def test_summary_totals_and_today_change():
    summary = calculate_portfolio_summary(sample_portfolio(), "USD", {"AAPL": 2.0})

    assert summary.total_value == Decimal("17500.00")
    assert summary.total_invested == Decimal("22000.00")
    assert summary.total_return == Decimal("-4500.00")
    assert summary.total_return_percentage == Decimal("-20.45")
    assert summary.today_change == Decimal("20.00")
    assert summary.today_change_percentage == Decimal("0.11")
    assert summary.to_dict()["currency"] == "USD"


def test_current_value_overrides_synced_price():
    holding = make_investment("MSFT", "stock", "2", "100", "100", current_value="500")
    assert calculate_portfolio_summary([holding]).total_value == Decimal("500.00")


def test_empty_portfolio():
    summary = calculate_portfolio_summary([])
    assert summary.total_value == Decimal("0.00")
    assert summary.total_return_percentage == Decimal("0.00")
    assert calculate_asset_allocation([]) == []


def test_asset_allocation_sorted_by_value():
    allocation = calculate_asset_allocation(sample_portfolio())

    assert [item.type for item in allocation] == ["crypto", "stock", "bond"]
    assert [item.percentage for item in allocation] == [
        Decimal("85.71"),
        Decimal("8.57"),
        Decimal("5.71"),
    ]
    assert allocation[0].to_dict() == {
        "type": "crypto",
        "value": "15000.00",
        "percentage": "85.71",
        "count": 1,
    }


def test_performance_and_rankings():
    performance = {item.symbol: item for item in calculate_investment_performance(sample_portfolio())}

    assert performance["AAPL"].gain == Decimal("500.00")
    assert performance["AAPL"].return_percentage == Decimal("50.00")
    assert performance["AAPL"].to_dict()["return"] == "500.00"
    assert performance["BTC"].current_price == Decimal("30000.00")

    assert [p.symbol for p in top_performers(sample_portfolio())] == ["AAPL"]
    assert [p.symbol for p in worst_performers(sample_portfolio())] == ["BTC"]


def test_concentrated_portfolio_scores_fair():
    score = calculate_diversification_score(sample_portfolio())

    assert score.score == 60
    assert score.level == "fair"
    assert "Consider reducing concentration in your largest asset class" in score.recommendations
    assert "Consider diversifying across more asset classes" in score.recommendations


def test_balanced_portfolio_scores_excellent():
    holdings = [
        make_investment("AAPL", "stock", "1", "100", "100"),
        make_investment("BTC", "crypto", "1", "100", "100"),
        make_investment("UST", "bond", "1", "100", "100"),
        make_investment("VFIAX", "mutual-fund", "1", "100", "100"),
    ]
    score = calculate_diversification_score(holdings)

    assert score.score == 100
    assert score.level == "excellent"
    assert score.recommendations == []


def test_empty_portfolio_scores_poor():
    score = calculate_diversification_score([])
    assert score.to_dict() == {
        "score": 0,
        "level": "poor",
        "recommendations": ["Start building your investment portfolio"],
    }


def test_format_percentage_change():
    assert format_percentage_change(Decimal("2.5")) == {"formatted": "+2.50%", "color": "green", "sign": "+"}
    assert format_percentage_change(Decimal("-1.25"))["formatted"] == "-1.25%"
    assert format_percentage_change(Decimal("0"))["color"] == "gray"
