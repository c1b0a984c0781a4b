"""Dashboard aggregates across income, expenses, budgets and investments."""

from __future__ import annotations

import calendar
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from .currency import ExchangeRateService
from .income import IncomeCalculator, monthly_equivalent
from .market_data import MarketDataService
from .models import Expense, Investment
from .portfolio import (
    calculate_asset_allocation,
    calculate_diversification_score,
    calculate_portfolio_summary,
)
from .services import (
    BudgetService,
    ExpenseService,
    IncomeSourceService,
    InvestmentService,
    OneTimeIncomeService,
    ProfileService,
)
from .validators import quantize_cents


def _month_bounds(year: int, month: int) -> tuple:
    last_day = calendar.monthrange(year, month)[1]
    start = datetime(year, month, 1, tzinfo=timezone.utc)
    end = datetime(year, month, last_day, 23, 59, 59, tzinfo=timezone.utc)
    return start, end


def _previous_months(now: datetime, months: int) -> List[tuple]:
    result = []
    year, month = now.year, now.month
    for _ in range(months):
        result.append((year, month))
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return list(reversed(result))


class InsightsService:
    def __init__(
        self,
        profiles: ProfileService,
        income_sources: IncomeSourceService,
        one_time_incomes: OneTimeIncomeService,
        expenses: ExpenseService,
        investments: InvestmentService,
        budgets: BudgetService,
        exchange_rates: ExchangeRateService,
        market_data: Optional[MarketDataService] = None,
    ) -> None:
        self._profiles = profiles
        self._income_sources = income_sources
        self._one_time = one_time_incomes
        self._expenses = expenses
        self._investments = investments
        self._budgets = budgets
        self._rates = exchange_rates
        self._market_data = market_data
        self._income = IncomeCalculator(exchange_rates)

    def _convert(self, amount: Decimal, currency: str, target: str) -> Decimal:
        return self._rates.convert(amount, currency, target).converted_amount

    def _rate(self, currency: str, target: str) -> Decimal:
        return self._rates.get_rate(currency, target).rate

    def _expenses_total(self, expenses: Sequence[Expense], target: str) -> Dict[str, Decimal]:
        by_category: Dict[str, Decimal] = {}
        for expense in expenses:
            amount = self._convert(expense.amount, expense.currency, target)
            by_category[expense.category] = by_category.get(expense.category, Decimal(0)) + amount
        return by_category

    def converted_investments(self, investments: Sequence[Investment], target: str) -> List[Investment]:
        """Holdings restated in ``target`` currency for portfolio arithmetic."""
        converted = []
        for investment in investments:
            value_rate = self._rate(investment.last_synced_price_currency, target)
            cost_rate = self._rate(investment.purchase_currency, target)
            converted.append(
                replace(
                    investment,
                    current_value=investment.value * value_rate,
                    purchase_price=investment.purchase_price * cost_rate,
                    purchase_currency=target,
                    last_synced_price=investment.last_synced_price * value_rate,
                    last_synced_price_currency=target,
                )
            )
        return converted

    def portfolio(self, user_id: str) -> Dict[str, object]:
        primary = self._profiles.get(user_id).primary_currency
        holdings = self.converted_investments(self._investments.list(user_id), primary)
        daily_changes: Dict[str, float] = {}
        if self._market_data is not None:
            usd_rate = self._rate("USD", primary)
            raw = self._market_data.daily_changes(self._investments.symbols_by_type(user_id))
            daily_changes = {symbol: float(Decimal(str(change)) * usd_rate) for symbol, change in raw.items()}
        return {
            "summary": calculate_portfolio_summary(holdings, primary, daily_changes).to_dict(),
            "allocation": [item.to_dict() for item in calculate_asset_allocation(holdings)],
            "diversification": calculate_diversification_score(holdings).to_dict(),
            "holdings": [investment.to_dict() for investment in self._investments.list(user_id)],
        }

    def overview(self, user_id: str, now: Optional[datetime] = None) -> Dict[str, object]:
        now = now or datetime.now(timezone.utc)
        primary = self._profiles.get(user_id).primary_currency

        income = self._income.summarize(
            self._income_sources.list(user_id), self._one_time.list(user_id), primary, now
        )

        start, end = _month_bounds(now.year, now.month)
        month_expenses = self._expenses.list(user_id, start=start, end=end)
        by_category = self._expenses_total(month_expenses, primary)
        expenses_total = sum(by_category.values(), start=Decimal(0))

        net = income.total_monthly - expenses_total
        savings_rate = (
            quantize_cents(net / income.total_monthly * 100) if income.total_monthly > 0 else Decimal("0.00")
        )

        allocation = self._budgets.find(user_id)
        return {
            "primary_currency": primary,
            "income": income.to_dict(),
            "expenses": {
                "month": f"{now.year:04d}-{now.month:02d}",
                "total": f"{quantize_cents(expenses_total):.2f}",
                "by_category": {name: f"{quantize_cents(value):.2f}" for name, value in by_category.items()},
                "count": len(month_expenses),
            },
            "net_cash_flow": f"{quantize_cents(net):.2f}",
            "savings_rate": str(savings_rate),
            "portfolio": self.portfolio(user_id),
            "budget": allocation.to_dict() if allocation else None,
        }

    def cashflow(self, user_id: str, months: int = 6, now: Optional[datetime] = None) -> Dict[str, object]:
        """Income against expenses for each of the last ``months`` calendar months."""
        now = now or datetime.now(timezone.utc)
        primary = self._profiles.get(user_id).primary_currency
        sources = self._income_sources.list(user_id)
        one_time = self._one_time.list(user_id)
        expenses = self._expenses.list(user_id)

        rows = []
        for year, month in _previous_months(now, months):
            start, end = _month_bounds(year, month)
            recurring = sum(
                (
                    monthly_equivalent(self._convert(s.amount, s.currency, primary), s.frequency)
                    for s in sources
                    if s.is_active and s.start_date <= end and (s.end_date is None or s.end_date >= start)
                ),
                start=Decimal(0),
            )
            extra = sum(
                (
                    self._convert(i.amount, i.currency, primary)
                    for i in one_time
                    if i.is_recorded and start <= i.date <= end
                ),
                start=Decimal(0),
            )
            spent = sum(
                self._expenses_total([e for e in expenses if start <= e.date <= end], primary).values(),
                start=Decimal(0),
            )
            income_total = recurring + extra
            rows.append(
                {
                    "month": f"{year:04d}-{month:02d}",
                    "income": f"{quantize_cents(income_total):.2f}",
                    "expenses": f"{quantize_cents(spent):.2f}",
                    "net": f"{quantize_cents(income_total - spent):.2f}",
                }
            )
        return {"primary_currency": primary, "months": rows}
