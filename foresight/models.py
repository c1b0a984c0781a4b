"""Data models for the Foresight personal-finance domain."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

__all__ = [
    "UserProfile",
    "IncomeSource",
    "OneTimeIncome",
    "Expense",
    "Investment",
    "Loan",
    "Pot",
    "SourceAllocation",
    "Bucket",
    "BudgetAllocation",
    "PriceCacheEntry",
    "isoformat_utc",
    "parse_datetime",
]


def isoformat_utc(dt: datetime) -> str:
    """Return an ISO 8601 string with trailing Z for UTC-aware datetimes."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    else:
        dt = dt.astimezone(timezone.utc)
    iso = dt.isoformat(timespec="seconds")
    return iso.replace("+00:00", "Z")


def parse_datetime(value: str) -> datetime:
    """Parse ISO 8601 datetime strings with optional trailing Z into UTC-aware datetime."""
    value = value.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        # Naive datetimes are treated as UTC.
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _money(amount: Decimal) -> str:
    return f"{amount:.2f}"


def _number(value: Decimal) -> str:
    """Serialise quantities and prices without forcing two decimals."""
    text = format(value.normalize(), "f")
    return text if text != "-0" else "0"


def _optional_dt(value: Optional[datetime]) -> Optional[str]:
    return isoformat_utc(value) if value is not None else None


def _parse_optional_dt(value: Optional[str]) -> Optional[datetime]:
    return parse_datetime(value) if value else None


def _optional_decimal(value: Optional[object]) -> Optional[Decimal]:
    return Decimal(str(value)) if value is not None else None


@dataclass(frozen=True)
class UserProfile:
    id: str
    primary_currency: str
    preferences: Dict[str, str]
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "primary_currency": self.primary_currency,
            "preferences": dict(self.preferences),
            "created_at": isoformat_utc(self.created_at),
            "updated_at": isoformat_utc(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserProfile":
        return cls(
            id=data["id"],
            primary_currency=data.get("primary_currency", "USD"),
            preferences=dict(data.get("preferences", {})),
            created_at=parse_datetime(data["created_at"]),
            updated_at=parse_datetime(data["updated_at"]),
        )


@dataclass(frozen=True)
class IncomeSource:
    id: str
    user_id: str
    type: str
    name: str
    amount: Decimal
    currency: str
    frequency: str
    is_active: bool
    start_date: datetime
    created_at: datetime
    updated_at: datetime
    end_date: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type,
            "name": self.name,
            "amount": _money(self.amount),
            "currency": self.currency,
            "frequency": self.frequency,
            "is_active": self.is_active,
            "start_date": isoformat_utc(self.start_date),
            "end_date": _optional_dt(self.end_date),
            "metadata": dict(self.metadata),
            "created_at": isoformat_utc(self.created_at),
            "updated_at": isoformat_utc(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IncomeSource":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            type=data["type"],
            name=data["name"],
            amount=Decimal(str(data["amount"])),
            currency=data["currency"],
            frequency=data["frequency"],
            is_active=bool(data.get("is_active", True)),
            start_date=parse_datetime(data["start_date"]),
            end_date=_parse_optional_dt(data.get("end_date")),
            metadata=dict(data.get("metadata") or {}),
            created_at=parse_datetime(data["created_at"]),
            updated_at=parse_datetime(data["updated_at"]),
        )


@dataclass(frozen=True)
class OneTimeIncome:
    id: str
    user_id: str
    type: str
    name: str
    amount: Decimal
    currency: str
    date: datetime
    is_recorded: bool
    created_at: datetime
    updated_at: datetime
    description: Optional[str] = None
    source: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type,
            "name": self.name,
            "description": self.description,
            "amount": _money(self.amount),
            "currency": self.currency,
            "date": isoformat_utc(self.date),
            "source": self.source,
            "is_recorded": self.is_recorded,
            "created_at": isoformat_utc(self.created_at),
            "updated_at": isoformat_utc(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OneTimeIncome":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            type=data["type"],
            name=data["name"],
            description=data.get("description"),
            amount=Decimal(str(data["amount"])),
            currency=data["currency"],
            date=parse_datetime(data["date"]),
            source=data.get("source"),
            is_recorded=bool(data.get("is_recorded", True)),
            created_at=parse_datetime(data["created_at"]),
            updated_at=parse_datetime(data["updated_at"]),
        )


@dataclass(frozen=True)
class Expense:
    id: str
    user_id: str
    category: str
    amount: Decimal
    currency: str
    description: str
    date: datetime
    is_recurring: bool
    created_at: datetime
    updated_at: datetime
    subcategory: Optional[str] = None
    recurring_frequency: Optional[str] = None
    bucket_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialise the expense to JSON-friendly natives."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "category": self.category,
            "subcategory": self.subcategory,
            "amount": _money(self.amount),
            "currency": self.currency,
            "description": self.description,
            "date": isoformat_utc(self.date),
            "is_recurring": self.is_recurring,
            "recurring_frequency": self.recurring_frequency,
            "bucket_id": self.bucket_id,
            "created_at": isoformat_utc(self.created_at),
            "updated_at": isoformat_utc(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Expense":
        """Hydrate an Expense from JSON-native data."""
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            category=data["category"],
            subcategory=data.get("subcategory"),
            amount=Decimal(str(data["amount"])),
            currency=data["currency"],
            description=data.get("description", ""),
            date=parse_datetime(data["date"]),
            is_recurring=bool(data.get("is_recurring", False)),
            recurring_frequency=data.get("recurring_frequency"),
            bucket_id=data.get("bucket_id"),
            created_at=parse_datetime(data["created_at"]),
            updated_at=parse_datetime(data["updated_at"]),
        )


@dataclass(frozen=True)
class Investment:
    id: str
    user_id: str
    symbol: str
    type: str
    quantity: Decimal
    purchase_price: Decimal
    purchase_currency: str
    purchase_date: datetime
    last_synced_price: Decimal
    last_synced_price_currency: str
    last_sync_timestamp: datetime
    current_value: Optional[Decimal] = None

    @property
    def value(self) -> Decimal:
        """Current value, falling back to quantity times the last synced price."""
        if self.current_value is not None:
            return self.current_value
        return self.quantity * self.last_synced_price

    @property
    def invested(self) -> Decimal:
        return self.quantity * self.purchase_price

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "symbol": self.symbol,
            "type": self.type,
            "quantity": _number(self.quantity),
            "purchase_price": _number(self.purchase_price),
            "purchase_currency": self.purchase_currency,
            "purchase_date": isoformat_utc(self.purchase_date),
            "last_synced_price": _number(self.last_synced_price),
            "last_synced_price_currency": self.last_synced_price_currency,
            "last_sync_timestamp": isoformat_utc(self.last_sync_timestamp),
            "current_value": _money(self.current_value) if self.current_value is not None else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Investment":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            symbol=data["symbol"],
            type=data["type"],
            quantity=Decimal(str(data["quantity"])),
            purchase_price=Decimal(str(data["purchase_price"])),
            purchase_currency=data["purchase_currency"],
            purchase_date=parse_datetime(data["purchase_date"]),
            last_synced_price=Decimal(str(data["last_synced_price"])),
            last_synced_price_currency=data["last_synced_price_currency"],
            last_sync_timestamp=parse_datetime(data["last_sync_timestamp"]),
            current_value=_optional_decimal(data.get("current_value")),
        )


@dataclass(frozen=True)
class Loan:
    id: str
    user_id: str
    type: str
    principal: Decimal
    interest_rate: Decimal
    term_months: int
    start_date: datetime
    currency: str
    region: str
    rate_type: str
    compliance: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type,
            "principal": _money(self.principal),
            "interest_rate": _number(self.interest_rate),
            "term_months": self.term_months,
            "start_date": isoformat_utc(self.start_date),
            "currency": self.currency,
            "region": self.region,
            "rate_type": self.rate_type,
            "compliance": dict(self.compliance),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Loan":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            type=data["type"],
            principal=Decimal(str(data["principal"])),
            interest_rate=Decimal(str(data["interest_rate"])),
            term_months=int(data["term_months"]),
            start_date=parse_datetime(data["start_date"]),
            currency=data["currency"],
            region=data["region"],
            rate_type=data["rate_type"],
            compliance=dict(data.get("compliance") or {}),
        )


@dataclass(frozen=True)
class SourceAllocation:
    category_id: str
    amount: Decimal
    date: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category_id": self.category_id,
            "amount": _money(self.amount),
            "date": isoformat_utc(self.date),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SourceAllocation":
        return cls(
            category_id=data["category_id"],
            amount=Decimal(str(data["amount"])),
            date=parse_datetime(data["date"]),
        )


@dataclass(frozen=True)
class Pot:
    id: str
    user_id: str
    name: str
    description: str
    target_amount: Decimal
    current_amount: Decimal
    currency: str
    goal_type: str
    is_completed: bool
    created_at: datetime
    linked_categories: List[str] = field(default_factory=list)
    source_allocations: List[SourceAllocation] = field(default_factory=list)
    target_date: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "description": self.description,
            "target_amount": _money(self.target_amount),
            "current_amount": _money(self.current_amount),
            "currency": self.currency,
            "linked_categories": list(self.linked_categories),
            "source_allocations": [item.to_dict() for item in self.source_allocations],
            "goal_type": self.goal_type,
            "target_date": _optional_dt(self.target_date),
            "is_completed": self.is_completed,
            "created_at": isoformat_utc(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Pot":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            name=data["name"],
            description=data.get("description", ""),
            target_amount=Decimal(str(data["target_amount"])),
            current_amount=Decimal(str(data.get("current_amount", "0"))),
            currency=data["currency"],
            linked_categories=list(data.get("linked_categories", [])),
            source_allocations=[
                SourceAllocation.from_dict(item) for item in data.get("source_allocations", [])
            ],
            goal_type=data["goal_type"],
            target_date=_parse_optional_dt(data.get("target_date")),
            is_completed=bool(data.get("is_completed", False)),
            created_at=parse_datetime(data["created_at"]),
        )


@dataclass(frozen=True)
class Bucket:
    id: str
    user_id: str
    name: str
    category: str
    target_amount: Decimal
    current_amount: Decimal
    currency: str
    renewal_rate: str
    next_renewal: datetime
    is_active: bool
    auto_renew: bool
    created_at: datetime
    updated_at: datetime
    description: Optional[str] = None
    last_renewal: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "target_amount": _money(self.target_amount),
            "current_amount": _money(self.current_amount),
            "currency": self.currency,
            "renewal_rate": self.renewal_rate,
            "next_renewal": isoformat_utc(self.next_renewal),
            "last_renewal": _optional_dt(self.last_renewal),
            "is_active": self.is_active,
            "auto_renew": self.auto_renew,
            "created_at": isoformat_utc(self.created_at),
            "updated_at": isoformat_utc(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Bucket":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            name=data["name"],
            description=data.get("description"),
            category=data["category"],
            target_amount=Decimal(str(data["target_amount"])),
            current_amount=Decimal(str(data.get("current_amount", "0"))),
            currency=data["currency"],
            renewal_rate=data["renewal_rate"],
            next_renewal=parse_datetime(data["next_renewal"]),
            last_renewal=_parse_optional_dt(data.get("last_renewal")),
            is_active=bool(data.get("is_active", True)),
            auto_renew=bool(data.get("auto_renew", True)),
            created_at=parse_datetime(data["created_at"]),
            updated_at=parse_datetime(data["updated_at"]),
        )


@dataclass(frozen=True)
class BudgetAllocation:
    id: str
    user_id: str
    gross_income: Decimal
    net_income: Decimal
    tax_rate: Decimal
    currency: str
    # category name -> {"percentage": Decimal, "amount": Decimal}
    categories: Dict[str, Dict[str, Decimal]]
    last_updated: datetime
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "gross_income": _money(self.gross_income),
            "net_income": _money(self.net_income),
            "tax_rate": _number(self.tax_rate),
            "currency": self.currency,
            "categories": {
                name: {
                    "percentage": _number(values["percentage"]),
                    "amount": _money(values["amount"]),
                }
                for name, values in self.categories.items()
            },
            "last_updated": isoformat_utc(self.last_updated),
            "created_at": isoformat_utc(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BudgetAllocation":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            gross_income=Decimal(str(data["gross_income"])),
            net_income=Decimal(str(data["net_income"])),
            tax_rate=Decimal(str(data["tax_rate"])),
            currency=data["currency"],
            categories={
                name: {
                    "percentage": Decimal(str(values["percentage"])),
                    "amount": Decimal(str(values["amount"])),
                }
                for name, values in data["categories"].items()
            },
            last_updated=parse_datetime(data["last_updated"]),
            created_at=parse_datetime(data["created_at"]),
        )


@dataclass(frozen=True)
class PriceCacheEntry:
    symbol: str
    type: str
    price: float
    currency: str
    last_updated: datetime
    source: str
    metadata: Dict[str, float] = field(default_factory=dict)

    @property
    def doc_id(self) -> str:
        return f"{self.type}_{self.symbol.upper()}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.doc_id,
            "symbol": self.symbol,
            "type": self.type,
            "price": self.price,
            "currency": self.currency,
            "last_updated": isoformat_utc(self.last_updated),
            "source": self.source,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PriceCacheEntry":
        return cls(
            symbol=data["symbol"],
            type=data["type"],
            price=float(data["price"]),
            currency=data.get("currency", "USD"),
            last_updated=parse_datetime(data["last_updated"]),
            source=data.get("source", "finnhub"),
            metadata=dict(data.get("metadata") or {}),
        )
