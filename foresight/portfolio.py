"""Investment portfolio calculations."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Dict, List, Mapping, Optional, Sequence

from .models import Investment
from .validators import quantize_cents

INVESTMENT_CATEGORIES = [
    {"type": "stock", "label": "Stocks", "description": "Individual company shares",
     "examples": ["AAPL", "MSFT", "GOOGL", "TSLA"]},
    {"type": "bond", "label": "Bonds", "description": "Government and corporate bonds",
     "examples": ["US Treasury", "Corporate Bonds", "Municipal Bonds"]},
    {"type": "mutual-fund", "label": "Mutual Funds", "description": "Professionally managed investment funds",
     "examples": ["VFIAX", "FXNAX", "VTSMX"]},
    {"type": "real-estate", "label": "Real Estate", "description": "Property investments and REITs",
     "examples": ["REITs", "Rental Properties", "Real Estate Funds"]},
    {"type": "crypto", "label": "Cryptocurrency", "description": "Digital currencies and tokens",
     "examples": ["BTC", "ETH", "ADA", "DOT"]},
    {"type": "other", "label": "Other", "description": "Commodities, derivatives, and alternative investments",
     "examples": ["Gold", "Oil", "Options", "Futures"]},
]


@dataclass(frozen=True)
class PortfolioSummary:
    total_value: Decimal
    total_invested: Decimal
    total_return: Decimal
    total_return_percentage: Decimal
    today_change: Decimal
    today_change_percentage: Decimal
    currency: str

    def to_dict(self) -> Dict[str, str]:
        return {key: str(value) for key, value in asdict(self).items()}


@dataclass(frozen=True)
class AssetAllocation:
    type: str
    value: Decimal
    percentage: Decimal
    count: int

    def to_dict(self) -> Dict[str, object]:
        return {"type": self.type, "value": str(self.value),
                "percentage": str(self.percentage), "count": self.count}


@dataclass(frozen=True)
class InvestmentPerformance:
    symbol: str
    type: str
    current_value: Decimal
    invested: Decimal
    gain: Decimal
    return_percentage: Decimal
    quantity: Decimal
    current_price: Decimal

    def to_dict(self) -> Dict[str, object]:
        data = {key: str(value) for key, value in asdict(self).items()}
        data["return"] = data.pop("gain")
        return data


@dataclass(frozen=True)
class DiversificationScore:
    score: int
    level: str
    recommendations: List[str]

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


def _percentage(part: Decimal, whole: Decimal) -> Decimal:
    return quantize_cents(part / whole * 100) if whole > 0 else Decimal("0.00")


def calculate_portfolio_summary(
    investments: Sequence[Investment],
    currency: str = "USD",
    daily_changes: Optional[Mapping[str, float]] = None,
) -> PortfolioSummary:
    """Totals across holdings.

    ``daily_changes`` maps a symbol to today's per-unit price change; holdings
    without an entry contribute nothing to today's change.
    """
    daily_changes = daily_changes or {}
    total_value = Decimal(0)
    total_invested = Decimal(0)
    today_change = Decimal(0)
    for investment in investments:
        total_value += investment.value
        total_invested += investment.invested
        change = daily_changes.get(investment.symbol.upper())
        if change is not None:
            today_change += investment.quantity * Decimal(str(change))

    total_return = total_value - total_invested
    previous_value = total_value - today_change
    return PortfolioSummary(
        total_value=quantize_cents(total_value),
        total_invested=quantize_cents(total_invested),
        total_return=quantize_cents(total_return),
        total_return_percentage=_percentage(total_return, total_invested),
        today_change=quantize_cents(today_change),
        today_change_percentage=_percentage(today_change, previous_value),
        currency=currency,
    )


def calculate_asset_allocation(investments: Sequence[Investment]) -> List[AssetAllocation]:
    if not investments:
        return []
    values: Dict[str, Decimal] = {}
    counts: Dict[str, int] = {}
    for investment in investments:
        values[investment.type] = values.get(investment.type, Decimal(0)) + investment.value
        counts[investment.type] = counts.get(investment.type, 0) + 1

    total = sum(values.values(), start=Decimal(0))
    allocation = [
        AssetAllocation(
            type=kind,
            value=quantize_cents(value),
            percentage=_percentage(value, total),
            count=counts[kind],
        )
        for kind, value in values.items()
    ]
    return sorted(allocation, key=lambda item: item.value, reverse=True)


def calculate_investment_performance(investments: Sequence[Investment]) -> List[InvestmentPerformance]:
    performances = []
    for investment in investments:
        value = investment.value
        invested = investment.invested
        gain = value - invested
        price = value / investment.quantity if investment.quantity > 0 else Decimal(0)
        performances.append(
            InvestmentPerformance(
                symbol=investment.symbol,
                type=investment.type,
                current_value=quantize_cents(value),
                invested=quantize_cents(invested),
                gain=quantize_cents(gain),
                return_percentage=_percentage(gain, invested),
                quantity=investment.quantity,
                current_price=quantize_cents(price),
            )
        )
    return sorted(performances, key=lambda item: item.current_value, reverse=True)


def top_performers(investments: Sequence[Investment], limit: int = 5) -> List[InvestmentPerformance]:
    winners = [p for p in calculate_investment_performance(investments) if p.return_percentage > 0]
    return sorted(winners, key=lambda p: p.return_percentage, reverse=True)[:limit]


def worst_performers(investments: Sequence[Investment], limit: int = 5) -> List[InvestmentPerformance]:
    losers = [p for p in calculate_investment_performance(investments) if p.return_percentage < 0]
    return sorted(losers, key=lambda p: p.return_percentage)[:limit]


def calculate_diversification_score(investments: Sequence[Investment]) -> DiversificationScore:
    if not investments:
        return DiversificationScore(0, "poor", ["Start building your investment portfolio"])

    allocation = calculate_asset_allocation(investments)
    recommendations: List[str] = []

    score = min(len(allocation) * 15, 60)

    largest = max(item.percentage for item in allocation)
    if largest <= 40:
        score += 25
    elif largest <= 60:
        score += 15
    elif largest <= 80:
        score += 5
    else:
        recommendations.append("Consider reducing concentration in your largest asset class")

    if any(item.type == "bond" for item in allocation):
        score += 15
    else:
        recommendations.append("Consider adding bonds for stability")

    if score >= 85:
        level = "excellent"
    elif score >= 70:
        level = "good"
    elif score >= 50:
        level = "fair"
        recommendations.append("Consider diversifying across more asset classes")
    else:
        level = "poor"
        recommendations.append("Your portfolio needs better diversification")

    return DiversificationScore(min(score, 100), level, recommendations)


def format_percentage_change(percentage: Decimal) -> Dict[str, str]:
    percentage = Decimal(percentage)
    if percentage > 0:
        sign, color = "+", "green"
    elif percentage < 0:
        sign, color = "-", "red"
    else:
        sign, color = "", "gray"
    return {"formatted": f"{sign}{abs(percentage):.2f}%", "color": color, "sign": sign}
