"""User-scoped record services backed by the document store."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Generic, Iterable, List, Mapping, Optional, Tuple, Type, TypeVar
from uuid import uuid4

from .budgets import (
    ALLOCATED_CATEGORIES,
    BudgetCalculation,
    add_months,
    calculate_budget_allocation,
    calculate_bucket_renewal,
    calculate_next_renewal,
    handle_income_increase,
)
from .currency import is_supported_currency
from .exceptions import PersistenceError, RecordNotFoundError, ValidationError
from .models import (
    BudgetAllocation,
    Bucket,
    Expense,
    IncomeSource,
    Investment,
    Loan,
    OneTimeIncome,
    Pot,
    SourceAllocation,
    UserProfile,
)
from .storage import JSONStorage
from .validators import (
    BUDGET_CATEGORIES,
    EXPENSE_CATEGORIES,
    INCOME_FREQUENCIES,
    INCOME_SOURCE_TYPES,
    INVESTMENT_TYPES,
    LOAN_REGIONS,
    LOAN_TYPES,
    ONE_TIME_INCOME_TYPES,
    POT_CATEGORIES,
    POT_GOAL_TYPES,
    RATE_TYPES,
    RECURRING_FREQUENCIES,
    RENEWAL_RATES,
    SYMBOL_PATTERN,
    THEMES,
    ensure_not_future,
    parse_amount,
    parse_non_negative_amount,
    parse_optional_amount,
    parse_positive,
    quantize_cents,
    validate_bool,
    validate_currency,
    validate_datetime,
    validate_enum,
    validate_enum_list,
    validate_int,
    validate_mapping,
    validate_optional_datetime,
    validate_optional_str,
    validate_percentage,
    validate_required_str,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Fifty years.
MAX_LOAN_TERM_MONTHS = 600

DEFAULT_PREFERENCES = {"theme": "system", "language": "en", "timezone": "UTC"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _currency(raw: object) -> str:
    return validate_currency(str(raw or "").strip().upper())


def _parse_flag(raw: object) -> Optional[bool]:
    if raw is None or isinstance(raw, bool):
        return raw
    text = str(raw).strip().lower()
    if text in {"true", "1", "yes"}:
        return True
    if text in {"false", "0", "no"}:
        return False
    raise ValidationError("is_active filter must be true or false")


class UserScopedService(Generic[T]):
    """CRUD over one collection whose records belong to a single user each.

    Records owned by another user are treated exactly like missing ones.
    """

    record_type: Type[T]
    resource: str
    label: str = "Record"
    sort_field: str = "created_at"
    filter_fields: Tuple[str, ...] = ()
    # Recomputed from other fields unless an update sets them explicitly.
    derived_fields: Tuple[str, ...] = ()

    def __init__(self, storage: JSONStorage, resource: Optional[str] = None) -> None:
        self._storage = storage
        self._resource = resource or self.resource
        self._records: Dict[str, T] = {}
        self.load()

    # Public API -----------------------------------------------------------
    def add(self, user_id: str, payload: Mapping[str, object]) -> T:
        data = self._validate_payload(user_id, dict(payload))
        record = self.record_type(**data)
        self._records[data["id"]] = record
        self._persist()
        return record

    def update(self, user_id: str, record_id: str, changes: Mapping[str, object]) -> T:
        existing = self._get_or_raise(user_id, record_id)
        stored = {k: v for k, v in existing.to_dict().items() if k not in self.derived_fields}
        merged_payload = {**stored, **changes}
        data = self._validate_payload(user_id, merged_payload, current=existing)
        updated = self.record_type(**data)
        self._records[record_id] = updated
        self._persist()
        return updated

    def delete(self, user_id: str, record_id: str) -> None:
        self._get_or_raise(user_id, record_id)
        del self._records[record_id]
        self._persist()

    def get(self, user_id: str, record_id: str) -> T:
        return self._get_or_raise(user_id, record_id)

    def list(self, user_id: str, **filters: object) -> List[T]:
        self.check_filters(filters)
        records: Iterable[T] = (r for r in self._records.values() if r.user_id == user_id)
        records = list(self._apply_filters(records, filters))
        return sorted(records, key=lambda record: getattr(record, self.sort_field), reverse=True)

    def load(self) -> None:
        raw_records = self._storage.load(self._resource)
        self._records = {
            payload["id"]: self.record_type.from_dict(payload) for payload in raw_records
        }

    def check_filters(self, filters: Mapping[str, object]) -> Dict[str, object]:
        """Reject filter names this collection does not support."""
        unknown = sorted(set(filters) - set(self.filter_fields))
        if unknown:
            raise ValidationError(f"Unsupported filter(s) for {self.label.lower()}: {', '.join(unknown)}")
        return dict(filters)

    # Internal helpers -----------------------------------------------------
    def _persist(self) -> None:
        try:
            self._storage.save(
                self._resource, [record.to_dict() for record in self._records.values()]
            )
        except PersistenceError:
            raise
        except Exception as exc:  # pragma: no cover - unexpected storage failure
            raise PersistenceError(f"Unexpected error while saving {self._resource}") from exc

    def _get_or_raise(self, user_id: str, record_id: str) -> T:
        record = self._records.get(record_id)
        if record is None or record.user_id != user_id:
            raise RecordNotFoundError(f"{self.label} {record_id} not found")
        return record

    def _validate_payload(
        self, user_id: str, payload: Dict[str, object], *, current: Optional[T] = None
    ) -> Dict[str, object]:
        raise NotImplementedError

    def _apply_filters(self, records: Iterable[T], filters: Dict[str, object]) -> Iterable[T]:
        return records

    @staticmethod
    def _identity(user_id: str, current: Optional[Any]) -> Dict[str, object]:
        return {
            "id": current.id if current else str(uuid4()),
            "user_id": user_id,
        }

    @staticmethod
    def _timestamps(current: Optional[Any]) -> Dict[str, datetime]:
        now = _utcnow()
        return {"created_at": current.created_at if current else now, "updated_at": now}


class IncomeSourceService(UserScopedService[IncomeSource]):
    """Recurring income such as salary or rent received."""

    record_type = IncomeSource
    resource = "income_sources.json"
    label = "Income source"
    sort_field = "start_date"
    filter_fields = ("type", "is_active")

    def _validate_payload(
        self, user_id: str, payload: Dict[str, object], *, current: Optional[IncomeSource] = None
    ) -> Dict[str, object]:
        start_date = validate_datetime(payload.get("start_date"), "start_date")
        end_date = validate_optional_datetime(payload.get("end_date"), "end_date")
        if end_date and end_date < start_date:
            raise ValidationError("end_date cannot be before start_date")
        return {
            **self._identity(user_id, current),
            "type": validate_enum(payload.get("type"), "type", INCOME_SOURCE_TYPES),
            "name": validate_required_str(payload.get("name"), "name", 100),
            "amount": parse_amount(payload.get("amount"), "amount"),
            "currency": _currency(payload.get("currency")),
            "frequency": validate_enum(payload.get("frequency"), "frequency", INCOME_FREQUENCIES),
            "is_active": validate_bool(payload.get("is_active"), "is_active", default=True),
            "start_date": start_date,
            "end_date": end_date,
            "metadata": validate_mapping(payload.get("metadata"), "metadata"),
            **self._timestamps(current),
        }

    def _apply_filters(
        self, records: Iterable[IncomeSource], filters: Dict[str, object]
    ) -> Iterable[IncomeSource]:
        kind = filters.get("type")
        is_active = _parse_flag(filters.get("is_active"))

        def matches(source: IncomeSource) -> bool:
            if kind and source.type != str(kind).strip().lower():
                return False
            if is_active is not None and source.is_active != is_active:
                return False
            return True

        return filter(matches, records)


class OneTimeIncomeService(UserScopedService[OneTimeIncome]):
    record_type = OneTimeIncome
    resource = "one_time_incomes.json"
    label = "One-time income"
    sort_field = "date"
    filter_fields = ("type", "year")

    def _validate_payload(
        self, user_id: str, payload: Dict[str, object], *, current: Optional[OneTimeIncome] = None
    ) -> Dict[str, object]:
        return {
            **self._identity(user_id, current),
            "type": validate_enum(payload.get("type"), "type", ONE_TIME_INCOME_TYPES),
            "name": validate_required_str(payload.get("name"), "name", 100),
            "description": validate_optional_str(payload.get("description"), "description", 500),
            "amount": parse_amount(payload.get("amount"), "amount"),
            "currency": _currency(payload.get("currency")),
            "date": validate_datetime(payload.get("date"), "date"),
            "source": validate_optional_str(payload.get("source"), "source", 100),
            "is_recorded": validate_bool(payload.get("is_recorded"), "is_recorded", default=True),
            **self._timestamps(current),
        }

    def _apply_filters(
        self, records: Iterable[OneTimeIncome], filters: Dict[str, object]
    ) -> Iterable[OneTimeIncome]:
        kind = filters.get("type")
        year = validate_int(filters["year"], "year") if filters.get("year") is not None else None

        def matches(income: OneTimeIncome) -> bool:
            if kind and income.type != str(kind).strip().lower():
                return False
            if year is not None and income.date.year != year:
                return False
            return True

        return filter(matches, records)


class ExpenseService(UserScopedService[Expense]):
    """Manages expense records and mediates persistence."""

    record_type = Expense
    resource = "expenses.json"
    label = "Expense"
    sort_field = "date"
    filter_fields = ("category", "bucket_id", "start", "end")

    def total(self, user_id: str, **filters: object) -> Decimal:
        expenses = self.list(user_id, **filters)
        return sum((expense.amount for expense in expenses), start=Decimal("0.00"))

    def _validate_payload(
        self, user_id: str, payload: Dict[str, object], *, current: Optional[Expense] = None
    ) -> Dict[str, object]:
        is_recurring = validate_bool(payload.get("is_recurring"), "is_recurring", default=False)
        frequency = payload.get("recurring_frequency")
        if is_recurring:
            if frequency in (None, ""):
                raise ValidationError("recurring_frequency is required for recurring expenses")
            frequency = validate_enum(frequency, "recurring_frequency", RECURRING_FREQUENCIES)
        else:
            frequency = None
        return {
            **self._identity(user_id, current),
            "category": validate_enum(payload.get("category"), "category", EXPENSE_CATEGORIES),
            "subcategory": validate_optional_str(payload.get("subcategory"), "subcategory", 50),
            "amount": parse_amount(payload.get("amount"), "amount"),
            "currency": _currency(payload.get("currency")),
            "description": validate_optional_str(payload.get("description"), "description", 200) or "",
            "date": validate_datetime(payload.get("date"), "date"),
            "is_recurring": is_recurring,
            "recurring_frequency": frequency,
            "bucket_id": validate_optional_str(payload.get("bucket_id"), "bucket_id", 64),
            **self._timestamps(current),
        }

    def _apply_filters(
        self, records: Iterable[Expense], filters: Dict[str, object]
    ) -> Iterable[Expense]:
        category = (
            str(filters["category"]).strip().lower()
            if filters.get("category") is not None
            else None
        )
        bucket_id = filters.get("bucket_id")
        start = (
            validate_datetime(filters["start"], "start")
            if filters.get("start") is not None
            else None
        )
        end = (
            validate_datetime(filters["end"], "end")
            if filters.get("end") is not None
            else None
        )

        def matches(expense: Expense) -> bool:
            if category and expense.category != category:
                return False
            if bucket_id and expense.bucket_id != bucket_id:
                return False
            if start and expense.date < start:
                return False
            if end and expense.date > end:
                return False
            return True

        return filter(matches, records)


class InvestmentService(UserScopedService[Investment]):
    record_type = Investment
    resource = "investments.json"
    label = "Investment"
    sort_field = "purchase_date"
    filter_fields = ("type", "symbol")
    derived_fields = ("current_value",)

    def symbols_by_type(self, user_id: str) -> Dict[str, List[str]]:
        """Distinct stock and crypto symbols held by the user."""
        grouped: Dict[str, List[str]] = {"stock": [], "crypto": []}
        for investment in self.list(user_id):
            bucket = grouped.get(investment.type)
            if bucket is not None and investment.symbol not in bucket:
                bucket.append(investment.symbol)
        return grouped

    def apply_prices(
        self,
        user_id: str,
        quotes: Mapping[str, float],
        currency: str = "USD",
        now: Optional[datetime] = None,
    ) -> List[Investment]:
        """Set the synced price of every holding of each quoted symbol.

        All holdings are recomputed before anything is stored, so either every
        update lands or the first failure propagates and nothing changes.
        """
        now = now or _utcnow()
        prices = {symbol.upper(): Decimal(str(price)) for symbol, price in quotes.items()}
        updated: Dict[str, Investment] = {}
        for investment in self.list(user_id):
            price = prices.get(investment.symbol.upper())
            if price is None:
                continue
            if price <= 0:
                raise ValidationError(f"Invalid price for {investment.symbol}: {price}")
            updated[investment.id] = replace(
                investment,
                last_synced_price=price,
                last_synced_price_currency=currency,
                last_sync_timestamp=now,
                current_value=quantize_cents(investment.quantity * price),
            )
        if updated:
            self._records.update(updated)
            self._persist()
            logger.info("Updated %d holdings for user %s", len(updated), user_id)
        return list(updated.values())

    def _validate_payload(
        self, user_id: str, payload: Dict[str, object], *, current: Optional[Investment] = None
    ) -> Dict[str, object]:
        symbol = validate_required_str(payload.get("symbol"), "symbol", 20).upper()
        if not SYMBOL_PATTERN.fullmatch(symbol):
            raise ValidationError(f"Invalid symbol '{symbol}'")
        purchase_price = parse_positive(payload.get("purchase_price"), "purchase_price")
        purchase_currency = _currency(payload.get("purchase_currency") or payload.get("currency"))
        purchase_date = ensure_not_future(
            validate_datetime(payload.get("purchase_date"), "purchase_date"), "purchase_date"
        )
        quantity = parse_positive(payload.get("quantity"), "quantity")
        raw_price = payload.get("last_synced_price")
        last_price = parse_positive(raw_price, "last_synced_price") if raw_price is not None else purchase_price
        current_value = parse_optional_amount(payload.get("current_value"), "current_value")
        if current_value is None and current is not None and current.current_value is not None:
            current_value = quantize_cents(quantity * last_price)
        return {
            **self._identity(user_id, current),
            "symbol": symbol,
            "type": validate_enum(payload.get("type"), "type", INVESTMENT_TYPES),
            "quantity": quantity,
            "purchase_price": purchase_price,
            "purchase_currency": purchase_currency,
            "purchase_date": purchase_date,
            "last_synced_price": last_price,
            "last_synced_price_currency": _currency(
                payload.get("last_synced_price_currency") or purchase_currency
            ),
            "last_sync_timestamp": validate_optional_datetime(
                payload.get("last_sync_timestamp"), "last_sync_timestamp"
            ) or _utcnow(),
            "current_value": current_value,
        }

    def _apply_filters(
        self, records: Iterable[Investment], filters: Dict[str, object]
    ) -> Iterable[Investment]:
        kind = filters.get("type")
        symbol = filters.get("symbol")

        def matches(investment: Investment) -> bool:
            if kind and investment.type != str(kind).strip().lower():
                return False
            if symbol and investment.symbol != str(symbol).strip().upper():
                return False
            return True

        return filter(matches, records)


@dataclass(frozen=True)
class LoanScheduleEntry:
    month: int
    payment: Decimal
    principal: Decimal
    interest: Decimal
    balance: Decimal

    def to_dict(self) -> Dict[str, object]:
        return {
            "month": self.month,
            "payment": f"{self.payment:.2f}",
            "principal": f"{self.principal:.2f}",
            "interest": f"{self.interest:.2f}",
            "balance": f"{self.balance:.2f}",
        }


@dataclass(frozen=True)
class LoanSchedule:
    loan_id: str
    currency: str
    monthly_payment: Decimal
    total_payment: Decimal
    total_interest: Decimal
    payoff_date: datetime
    entries: List[LoanScheduleEntry]

    def to_dict(self) -> Dict[str, object]:
        return {
            "loan_id": self.loan_id,
            "currency": self.currency,
            "monthly_payment": f"{self.monthly_payment:.2f}",
            "total_payment": f"{self.total_payment:.2f}",
            "total_interest": f"{self.total_interest:.2f}",
            "payoff_date": self.payoff_date.isoformat().replace("+00:00", "Z"),
            "entries": [entry.to_dict() for entry in self.entries],
        }


class LoanService(UserScopedService[Loan]):
    record_type = Loan
    resource = "loans.json"
    label = "Loan"
    sort_field = "start_date"

    @staticmethod
    def monthly_payment(loan: Loan) -> Decimal:
        """Amortised instalment for a fixed monthly rate."""
        rate = loan.interest_rate / Decimal(1200)
        if rate == 0:
            return quantize_cents(loan.principal / loan.term_months)
        growth = (1 + rate) ** loan.term_months
        return quantize_cents(loan.principal * rate * growth / (growth - 1))

    def schedule(self, loan: Loan) -> LoanSchedule:
        payment = self.monthly_payment(loan)
        rate = loan.interest_rate / Decimal(1200)
        balance = loan.principal
        entries: List[LoanScheduleEntry] = []
        total_payment = Decimal(0)
        for month in range(1, loan.term_months + 1):
            interest = quantize_cents(balance * rate)
            principal = payment - interest
            # Last instalment absorbs rounding drift.
            if month == loan.term_months or principal > balance:
                principal = balance
            instalment = principal + interest
            balance = balance - principal
            total_payment += instalment
            entries.append(LoanScheduleEntry(month, instalment, principal, interest, balance))
        return LoanSchedule(
            loan_id=loan.id,
            currency=loan.currency,
            monthly_payment=payment,
            total_payment=total_payment,
            total_interest=total_payment - loan.principal,
            payoff_date=add_months(loan.start_date, loan.term_months),
            entries=entries,
        )

    def _validate_payload(
        self, user_id: str, payload: Dict[str, object], *, current: Optional[Loan] = None
    ) -> Dict[str, object]:
        return {
            **self._identity(user_id, current),
            "type": validate_enum(payload.get("type"), "type", LOAN_TYPES),
            "principal": parse_amount(payload.get("principal"), "principal"),
            "interest_rate": validate_percentage(payload.get("interest_rate"), "interest_rate"),
            "term_months": validate_int(
                payload.get("term_months"), "term_months", maximum=MAX_LOAN_TERM_MONTHS
            ),
            "start_date": validate_datetime(payload.get("start_date"), "start_date"),
            "currency": _currency(payload.get("currency")),
            "region": validate_enum(payload.get("region"), "region", LOAN_REGIONS),
            "rate_type": validate_enum(payload.get("rate_type"), "rate_type", RATE_TYPES),
            "compliance": validate_mapping(payload.get("compliance"), "compliance"),
        }


class PotService(UserScopedService[Pot]):
    """Savings goals funded from budget categories."""

    record_type = Pot
    resource = "pots.json"
    label = "Pot"

    def contribute(
        self,
        user_id: str,
        pot_id: str,
        category_id: object,
        amount: object,
        date: Optional[datetime] = None,
    ) -> Pot:
        pot = self._get_or_raise(user_id, pot_id)
        allocation = SourceAllocation(
            category_id=validate_enum(category_id, "category_id", POT_CATEGORIES),
            amount=parse_amount(amount, "amount"),
            date=date or _utcnow(),
        )
        current_amount = pot.current_amount + allocation.amount
        updated = replace(
            pot,
            current_amount=current_amount,
            source_allocations=[*pot.source_allocations, allocation],
            is_completed=current_amount >= pot.target_amount,
        )
        self._records[pot_id] = updated
        self._persist()
        return updated

    def _validate_payload(
        self, user_id: str, payload: Dict[str, object], *, current: Optional[Pot] = None
    ) -> Dict[str, object]:
        target_amount = parse_amount(payload.get("target_amount"), "target_amount")
        current_amount = parse_non_negative_amount(payload.get("current_amount", 0), "current_amount")
        raw_allocations = payload.get("source_allocations") or []
        if not isinstance(raw_allocations, list):
            raise ValidationError("source_allocations must be a list")
        if not all(isinstance(item, dict) for item in raw_allocations):
            raise ValidationError("source_allocations entries must be objects")
        allocations = [
            SourceAllocation(
                category_id=validate_enum(item.get("category_id"), "category_id", POT_CATEGORIES),
                amount=parse_amount(item.get("amount"), "amount"),
                date=validate_datetime(item.get("date"), "date"),
            )
            for item in raw_allocations
        ]
        completed = validate_bool(payload.get("is_completed"), "is_completed", default=False)
        return {
            **self._identity(user_id, current),
            "name": validate_required_str(payload.get("name"), "name", 100),
            "description": validate_optional_str(payload.get("description"), "description", 500) or "",
            "target_amount": target_amount,
            "current_amount": current_amount,
            "currency": _currency(payload.get("currency")),
            "linked_categories": validate_enum_list(
                payload.get("linked_categories"), "linked_categories", POT_CATEGORIES
            ),
            "source_allocations": allocations,
            "goal_type": validate_enum(payload.get("goal_type"), "goal_type", POT_GOAL_TYPES),
            "target_date": validate_optional_datetime(payload.get("target_date"), "target_date"),
            "is_completed": completed or current_amount >= target_amount,
            "created_at": current.created_at if current else _utcnow(),
        }


class BucketService(UserScopedService[Bucket]):
    """Spending buckets that refill on a renewal schedule."""

    record_type = Bucket
    resource = "buckets.json"
    label = "Bucket"

    def renew_due(
        self,
        user_id: str,
        allocation: Optional[BudgetAllocation] = None,
        now: Optional[datetime] = None,
    ) -> List[Bucket]:
        """Top up every due bucket from its category's allocation.

        Without a saved allocation a due bucket is refilled up to its target.
        """
        now = now or _utcnow()
        renewed: Dict[str, Bucket] = {}
        for bucket in self.list(user_id):
            if allocation is not None:
                available = allocation.categories.get(bucket.category, {}).get("amount", Decimal(0))
            else:
                available = bucket.target_amount
            renewal = calculate_bucket_renewal(bucket, available, now)
            if not renewal.should_renew:
                continue
            renewed[bucket.id] = replace(
                bucket,
                current_amount=bucket.current_amount + renewal.renewal_amount,
                last_renewal=now,
                next_renewal=renewal.next_renewal,
                updated_at=now,
            )
        if renewed:
            self._records.update(renewed)
            self._persist()
            logger.info("Renewed %d buckets for user %s", len(renewed), user_id)
        return list(renewed.values())

    def _validate_payload(
        self, user_id: str, payload: Dict[str, object], *, current: Optional[Bucket] = None
    ) -> Dict[str, object]:
        renewal_rate = validate_enum(payload.get("renewal_rate"), "renewal_rate", RENEWAL_RATES)
        next_renewal = validate_optional_datetime(payload.get("next_renewal"), "next_renewal")
        return {
            **self._identity(user_id, current),
            "name": validate_required_str(payload.get("name"), "name", 100),
            "description": validate_optional_str(payload.get("description"), "description", 500),
            "category": validate_enum(payload.get("category"), "category", BUDGET_CATEGORIES),
            "target_amount": parse_amount(payload.get("target_amount"), "target_amount"),
            "current_amount": parse_non_negative_amount(
                payload.get("current_amount", 0), "current_amount"
            ),
            "currency": _currency(payload.get("currency")),
            "renewal_rate": renewal_rate,
            "next_renewal": next_renewal or calculate_next_renewal(renewal_rate, _utcnow()),
            "last_renewal": validate_optional_datetime(payload.get("last_renewal"), "last_renewal"),
            "is_active": validate_bool(payload.get("is_active"), "is_active", default=True),
            "auto_renew": validate_bool(payload.get("auto_renew"), "auto_renew", default=True),
            **self._timestamps(current),
        }


class BudgetService:
    """Holds the single budget allocation of each user."""

    def __init__(self, storage: JSONStorage, resource: str = "budget_allocations.json") -> None:
        self._storage = storage
        self._resource = resource
        self._allocations: Dict[str, BudgetAllocation] = {}
        self.load()

    def find(self, user_id: str) -> Optional[BudgetAllocation]:
        return self._allocations.get(user_id)

    def get(self, user_id: str) -> BudgetAllocation:
        allocation = self.find(user_id)
        if allocation is None:
            raise RecordNotFoundError(f"No budget allocation saved for user {user_id}")
        return allocation

    def calculate(self, payload: Mapping[str, object]) -> BudgetCalculation:
        gross_income = parse_non_negative_amount(payload.get("gross_income"), "gross_income")
        tax_rate = validate_percentage(payload.get("tax_rate", 0), "tax_rate")
        return calculate_budget_allocation(gross_income, tax_rate, self._percentages(payload))

    def save(self, user_id: str, payload: Mapping[str, object]) -> BudgetAllocation:
        calculation = self.calculate(payload)
        existing = self.find(user_id)
        now = _utcnow()
        allocation = BudgetAllocation(
            id=existing.id if existing else str(uuid4()),
            user_id=user_id,
            gross_income=calculation.gross_income,
            net_income=calculation.net_income,
            tax_rate=validate_percentage(payload.get("tax_rate", 0), "tax_rate"),
            currency=_currency(payload.get("currency") or (existing.currency if existing else "USD")),
            categories=calculation.categories,
            last_updated=now,
            created_at=existing.created_at if existing else now,
        )
        self._store(allocation)
        return allocation

    def increase_income(self, user_id: str, additional_income: object) -> BudgetAllocation:
        existing = self.get(user_id)
        calculation = handle_income_increase(existing, parse_amount(additional_income, "additional_income"))
        allocation = replace(
            existing,
            gross_income=calculation.gross_income,
            net_income=calculation.net_income,
            categories=calculation.categories,
            last_updated=_utcnow(),
        )
        self._store(allocation)
        return allocation

    def load(self) -> None:
        raw_records = self._storage.load(self._resource)
        self._allocations = {
            payload["user_id"]: BudgetAllocation.from_dict(payload) for payload in raw_records
        }

    def _store(self, allocation: BudgetAllocation) -> None:
        self._allocations[allocation.user_id] = allocation
        self._storage.save(
            self._resource, [item.to_dict() for item in self._allocations.values()]
        )

    @staticmethod
    def _percentages(payload: Mapping[str, object]) -> Dict[str, Decimal]:
        raw = validate_mapping(payload.get("percentages"), "percentages")
        percentages: Dict[str, Decimal] = {}
        for name, value in raw.items():
            if name not in ALLOCATED_CATEGORIES:
                raise ValidationError(f"Unknown budget category '{name}'")
            percentages[name] = validate_percentage(value, name)
        total = sum(percentages.values(), start=Decimal(0))
        if total > 100:
            raise ValidationError(f"Total allocation ({total}%) cannot exceed 100%")
        return percentages


class ProfileService:
    """Get-or-create access to user profiles."""

    def __init__(self, storage: JSONStorage, resource: str = "profiles.json") -> None:
        self._storage = storage
        self._resource = resource
        self._profiles: Dict[str, UserProfile] = {}
        self.load()

    def get(self, user_id: str) -> UserProfile:
        profile = self._profiles.get(user_id)
        if profile is None:
            now = _utcnow()
            profile = UserProfile(
                id=user_id,
                primary_currency="USD",
                preferences=dict(DEFAULT_PREFERENCES),
                created_at=now,
                updated_at=now,
            )
            self._store(profile)
            logger.info("Created default profile for user %s", user_id)
        return profile

    def update(self, user_id: str, changes: Mapping[str, object]) -> UserProfile:
        profile = self.get(user_id)
        primary_currency = profile.primary_currency
        preferences = dict(profile.preferences)

        if "primary_currency" in changes:
            raw = changes["primary_currency"]
            if not isinstance(raw, str):
                raise ValidationError("primary_currency must be a string")
            if not is_supported_currency(raw.strip().upper()):
                raise ValidationError(f"Unsupported currency '{raw}'")
            primary_currency = raw.strip().upper()

        if "preferences" in changes:
            raw_preferences = changes["preferences"]
            if not isinstance(raw_preferences, dict):
                raise ValidationError("preferences must be an object")
            for key, value in raw_preferences.items():
                if key == "theme":
                    value = validate_enum(value, "theme", THEMES)
                elif key in {"language", "timezone"}:
                    value = validate_required_str(value, key, 64)
                preferences[key] = value

        updated = replace(
            profile,
            primary_currency=primary_currency,
            preferences=preferences,
            updated_at=_utcnow(),
        )
        self._store(updated)
        return updated

    def load(self) -> None:
        raw_records = self._storage.load(self._resource)
        self._profiles = {payload["id"]: UserProfile.from_dict(payload) for payload in raw_records}

    def _store(self, profile: UserProfile) -> None:
        self._profiles[profile.id] = profile
        self._storage.save(self._resource, [item.to_dict() for item in self._profiles.values()])
