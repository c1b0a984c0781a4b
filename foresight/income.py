"""Income arithmetic: monthly equivalents and currency-aware totals."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from .currency import ExchangeRateService
from .exceptions import ValidationError
from .models import IncomeSource, OneTimeIncome
from .validators import quantize_cents

logger = logging.getLogger(__name__)

# Payments per year.
_PERIODS_PER_YEAR = {
    "weekly": 52,
    "biweekly": 26,
    "monthly": 12,
    "quarterly": 4,
    "yearly": 1,
}


def monthly_equivalent(amount: Decimal, frequency: str) -> Decimal:
    """Scale a per-period amount to its average monthly value."""
    periods = _PERIODS_PER_YEAR.get(frequency)
    if periods is None:
        return Decimal(amount)
    return Decimal(amount) * periods / 12


@dataclass(frozen=True)
class ConvertedIncome:
    id: str
    type: str
    name: str
    amount: Decimal
    currency: str
    converted_amount: Optional[Decimal]
    converted_monthly_amount: Optional[Decimal]
    exchange_rate: Optional[Decimal]
    conversion_error: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        def text(value: Optional[Decimal]) -> Optional[str]:
            return f"{value:.2f}" if value is not None else None

        return {
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "amount": f"{self.amount:.2f}",
            "currency": self.currency,
            "converted_amount": text(self.converted_amount),
            "converted_monthly_amount": text(self.converted_monthly_amount),
            "exchange_rate": str(self.exchange_rate) if self.exchange_rate is not None else None,
            "conversion_error": self.conversion_error,
        }


@dataclass(frozen=True)
class IncomeSummary:
    primary_currency: str
    sources: List[ConvertedIncome]
    one_time: List[ConvertedIncome]
    total_monthly: Decimal
    total_annual: Decimal
    one_time_this_year: Decimal
    monthly_by_type: Dict[str, Decimal] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, object]:
        return {
            "primary_currency": self.primary_currency,
            "sources": [item.to_dict() for item in self.sources],
            "one_time": [item.to_dict() for item in self.one_time],
            "total_monthly": f"{self.total_monthly:.2f}",
            "total_annual": f"{self.total_annual:.2f}",
            "one_time_this_year": f"{self.one_time_this_year:.2f}",
            "monthly_by_type": {key: f"{value:.2f}" for key, value in self.monthly_by_type.items()},
        }


class IncomeCalculator:
    """Converts income records into the user's primary currency and totals them."""

    def __init__(self, exchange_rates: ExchangeRateService) -> None:
        self._rates = exchange_rates

    def _convert(self, record_id: str, kind: str, name: str, amount: Decimal,
                 currency: str, primary_currency: str, frequency: Optional[str] = None) -> ConvertedIncome:
        try:
            conversion = self._rates.convert(amount, currency, primary_currency)
        except ValidationError as exc:
            logger.warning("Could not convert income %s from %s: %s", record_id, currency, exc)
            return ConvertedIncome(record_id, kind, name, amount, currency, None, None, None, str(exc))
        monthly = (
            quantize_cents(monthly_equivalent(conversion.converted_amount, frequency))
            if frequency
            else None
        )
        return ConvertedIncome(
            id=record_id,
            type=kind,
            name=name,
            amount=amount,
            currency=currency,
            converted_amount=conversion.converted_amount,
            converted_monthly_amount=monthly,
            exchange_rate=conversion.exchange_rate,
        )

    def summarize(
        self,
        sources: Sequence[IncomeSource],
        one_time: Sequence[OneTimeIncome],
        primary_currency: str,
        now: Optional[datetime] = None,
    ) -> IncomeSummary:
        now = now or datetime.now(timezone.utc)
        converted_sources = [
            self._convert(s.id, s.type, s.name, s.amount, s.currency, primary_currency, s.frequency)
            for s in sources
        ]
        converted_one_time = [
            self._convert(i.id, i.type, i.name, i.amount, i.currency, primary_currency)
            for i in one_time
        ]

        active = {source.id for source in sources if source.is_active}
        total_monthly = Decimal(0)
        by_type: Dict[str, Decimal] = {}
        for item in converted_sources:
            if item.id not in active or item.conversion_error or item.converted_monthly_amount is None:
                continue
            total_monthly += item.converted_monthly_amount
            by_type[item.type] = by_type.get(item.type, Decimal(0)) + item.converted_monthly_amount

        recorded_this_year = {
            income.id for income in one_time
            if income.is_recorded and income.date.year == now.year
        }
        one_time_total = sum(
            (
                item.converted_amount
                for item in converted_one_time
                if item.id in recorded_this_year and item.converted_amount is not None
            ),
            start=Decimal(0),
        )

        return IncomeSummary(
            primary_currency=primary_currency,
            sources=converted_sources,
            one_time=converted_one_time,
            total_monthly=quantize_cents(total_monthly),
            total_annual=quantize_cents(total_monthly * 12),
            one_time_this_year=quantize_cents(one_time_total),
            monthly_by_type={key: quantize_cents(value) for key, value in by_type.items()},
        )
