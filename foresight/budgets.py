"""Budget allocation arithmetic for the six-category budgeting system."""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Mapping, Optional

from .currency import format_currency
from .exceptions import ValidationError
from .models import BudgetAllocation, Bucket
from .validators import quantize_cents

DEFAULT_BUDGET_PERCENTAGES: Dict[str, Decimal] = {
    "essentials": Decimal(50),
    "lifestyle": Decimal(20),
    "savingsFuture": Decimal(20),
    "sinkingFund": Decimal(10),
    "unallocated": Decimal(0),
    "misc": Decimal(0),
}

ALLOCATED_CATEGORIES = ("essentials", "lifestyle", "savingsFuture", "sinkingFund")
ALL_CATEGORIES = ALLOCATED_CATEGORIES + ("unallocated", "misc")

CATEGORY_COLORS = {
    "essentials": "#ef4444",
    "lifestyle": "#f59e0b",
    "savingsFuture": "#10b981",
    "sinkingFund": "#3b82f6",
    "unallocated": "#6b7280",
    "misc": "#8b5cf6",
}

_DAY_STEPS = {"daily": 1, "every2days": 2, "weekly": 7, "biweekly": 14}
_MONTH_STEPS = {"monthly": 1, "bimonthly": 2, "quarterly": 3, "biyearly": 6, "yearly": 12}

BUCKET_EXAMPLES: Dict[str, List[Dict[str, str]]] = {
    "essentials": [
        {"name": "Housing", "description": "Rent, mortgage, property taxes", "renewal_rate": "monthly"},
        {"name": "Groceries", "description": "Food and household essentials", "renewal_rate": "weekly"},
        {"name": "Transportation", "description": "Gas, public transport, car maintenance", "renewal_rate": "monthly"},
        {"name": "Insurance", "description": "Health, auto, home insurance", "renewal_rate": "monthly"},
        {"name": "Debt Repayment", "description": "Minimum debt payments", "renewal_rate": "monthly"},
        {"name": "Medical", "description": "Healthcare and medical expenses", "renewal_rate": "monthly"},
    ],
    "lifestyle": [
        {"name": "Dining Out", "description": "Restaurants and takeout", "renewal_rate": "weekly"},
        {"name": "Subscriptions", "description": "Streaming, music, gym memberships", "renewal_rate": "monthly"},
        {"name": "Travel", "description": "Vacations and weekend trips", "renewal_rate": "monthly"},
        {"name": "Personal Fun Money", "description": "Hobbies and entertainment", "renewal_rate": "weekly"},
        {"name": "Shopping", "description": "Non-essential purchases", "renewal_rate": "monthly"},
    ],
    "savingsFuture": [
        {"name": "Emergency Fund", "description": "3-6 months of expenses", "renewal_rate": "monthly"},
        {"name": "Retirement/Investments", "description": "401k, IRA, investment accounts", "renewal_rate": "monthly"},
        {"name": "General Savings", "description": "Long-term savings goals", "renewal_rate": "monthly"},
        {"name": "Education Fund", "description": "College or skill development", "renewal_rate": "monthly"},
    ],
    "sinkingFund": [
        {"name": "Electronics", "description": "Phone, laptop, gadgets", "renewal_rate": "monthly"},
        {"name": "Clothing", "description": "Seasonal clothing purchases", "renewal_rate": "quarterly"},
        {"name": "Home & Furniture", "description": "Home improvements and furniture", "renewal_rate": "monthly"},
        {"name": "Gifts", "description": "Birthday and holiday gifts", "renewal_rate": "monthly"},
        {"name": "Annual Expenses", "description": "Car registration, annual fees", "renewal_rate": "yearly"},
        {"name": "Car Maintenance", "description": "Oil changes, repairs, tires", "renewal_rate": "monthly"},
    ],
}


@dataclass(frozen=True)
class BudgetCalculation:
    gross_income: Decimal
    net_income: Decimal
    tax_amount: Decimal
    categories: Dict[str, Dict[str, Decimal]]

    def to_dict(self) -> Dict[str, object]:
        return {
            "gross_income": f"{self.gross_income:.2f}",
            "net_income": f"{self.net_income:.2f}",
            "tax_amount": f"{self.tax_amount:.2f}",
            "categories": {
                name: {"amount": f"{values['amount']:.2f}", "percentage": str(values["percentage"])}
                for name, values in self.categories.items()
            },
        }


@dataclass(frozen=True)
class BucketRenewal:
    should_renew: bool
    renewal_amount: Decimal
    next_renewal: datetime


def _percent_of(part: Decimal, whole: Decimal) -> Decimal:
    if whole == 0:
        return Decimal(0)
    return quantize_cents(part / whole * 100)


def calculate_budget_allocation(
    gross_income: Decimal,
    tax_rate: Decimal,
    custom_percentages: Optional[Mapping[str, Decimal]] = None,
) -> BudgetCalculation:
    """Split net income across the budget categories.

    Each allocated category receives its percentage of net income rounded to
    cents. Whatever the percentages leave over lands in ``unallocated``;
    ``misc`` starts at zero and is adjusted by the user.
    """
    custom_percentages = custom_percentages or {}
    gross_income = Decimal(gross_income)
    tax_amount = gross_income * Decimal(tax_rate) / 100
    net_income = gross_income - tax_amount

    categories: Dict[str, Dict[str, Decimal]] = {}
    allocated_total = Decimal(0)
    for name in ALLOCATED_CATEGORIES:
        percentage = Decimal(custom_percentages.get(name, DEFAULT_BUDGET_PERCENTAGES[name]))
        amount = net_income * percentage / 100
        allocated_total += amount
        categories[name] = {"amount": quantize_cents(amount), "percentage": percentage}

    unallocated = net_income - allocated_total
    categories["unallocated"] = {
        "amount": quantize_cents(unallocated),
        "percentage": _percent_of(unallocated, net_income),
    }
    categories["misc"] = {"amount": Decimal("0.00"), "percentage": Decimal(0)}

    return BudgetCalculation(
        gross_income=gross_income,
        net_income=net_income,
        tax_amount=tax_amount,
        categories=categories,
    )


def handle_income_increase(allocation: BudgetAllocation, additional_income: Decimal) -> BudgetCalculation:
    """Route a mid-month income increase, after tax, into ``unallocated``."""
    additional_income = Decimal(additional_income)
    additional_tax = additional_income * allocation.tax_rate / 100
    additional_net = additional_income - additional_tax
    new_net = allocation.net_income + additional_net

    categories: Dict[str, Dict[str, Decimal]] = {}
    for name in ALL_CATEGORIES:
        current = allocation.categories.get(name, {"amount": Decimal(0)})["amount"]
        amount = current + additional_net if name == "unallocated" else current
        categories[name] = {
            "amount": quantize_cents(amount),
            "percentage": _percent_of(amount, new_net),
        }

    return BudgetCalculation(
        gross_income=allocation.gross_income + additional_income,
        net_income=new_net,
        tax_amount=allocation.gross_income * allocation.tax_rate / 100 + additional_tax,
        categories=categories,
    )


def add_months(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def calculate_next_renewal(renewal_rate: str, last_renewal: Optional[datetime] = None) -> datetime:
    """Next renewal date; month-based steps clamp to the end of the target month."""
    base = last_renewal or datetime.now(timezone.utc)
    if renewal_rate in _DAY_STEPS:
        return base + timedelta(days=_DAY_STEPS[renewal_rate])
    if renewal_rate in _MONTH_STEPS:
        return add_months(base, _MONTH_STEPS[renewal_rate])
    raise ValidationError(f"Invalid renewal rate: {renewal_rate}")


def should_renew_bucket(bucket: Bucket, now: Optional[datetime] = None) -> bool:
    if not bucket.is_active or not bucket.auto_renew:
        return False
    now = now or datetime.now(timezone.utc)
    return now >= bucket.next_renewal


def calculate_bucket_renewal(
    bucket: Bucket, category_allocation: Decimal, now: Optional[datetime] = None
) -> BucketRenewal:
    now = now or datetime.now(timezone.utc)
    if not should_renew_bucket(bucket, now):
        return BucketRenewal(False, Decimal("0.00"), bucket.next_renewal)

    shortfall = bucket.target_amount - bucket.current_amount
    amount = max(Decimal(0), min(shortfall, Decimal(category_allocation)))
    return BucketRenewal(True, quantize_cents(amount), calculate_next_renewal(bucket.renewal_rate, now))


def validate_budget_percentages(percentages: Mapping[str, Decimal]) -> List[str]:
    """Return a list of problems; an empty list means the split is acceptable."""
    errors: List[str] = []
    values = {name: Decimal(percentages.get(name, 0)) for name in ALLOCATED_CATEGORIES}

    for name, value in values.items():
        if value < 0:
            errors.append(f"{name} percentage cannot be negative")
        if value > 100:
            errors.append(f"{name} percentage cannot exceed 100%")

    total = sum(values.values(), start=Decimal(0))
    if total > 100:
        errors.append(f"Total allocation ({total}%) cannot exceed 100%")
    if values["essentials"] < 30:
        errors.append("Essentials allocation below 30% may not cover basic needs")
    if values["savingsFuture"] < 10:
        errors.append("Savings allocation below 10% may not provide adequate financial security")
    return errors


def category_color(category: str) -> str:
    return CATEGORY_COLORS.get(category, CATEGORY_COLORS["unallocated"])


def format_budget_amount(amount: Decimal, currency: str = "USD") -> str:
    return format_currency(amount, currency)
