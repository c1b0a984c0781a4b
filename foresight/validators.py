"""Validation helpers shared across Foresight services."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional

from .exceptions import ValidationError
from .models import parse_datetime

CURRENCY_PATTERN = re.compile(r"^[A-Z]{3}$")
SYMBOL_PATTERN = re.compile(r"^[A-Z0-9.\-:^=]{1,20}$")

MAX_SEARCH_SYMBOLS = 20

INCOME_SOURCE_TYPES = {"salary", "rental", "other"}
INCOME_FREQUENCIES = {"weekly", "biweekly", "monthly", "quarterly", "yearly"}
ONE_TIME_INCOME_TYPES = {
    "bonus",
    "gift",
    "inheritance",
    "investment-maturity",
    "lottery",
    "refund",
    "side-gig",
    "other",
}
EXPENSE_CATEGORIES = {"rent", "groceries", "utilities", "entertainment", "other"}
RECURRING_FREQUENCIES = {"daily", "weekly", "monthly", "yearly"}
INVESTMENT_TYPES = {"stock", "bond", "mutual-fund", "real-estate", "crypto", "other"}
PRICE_TYPES = {"stock", "crypto"}
LOAN_TYPES = {"home", "car", "personal", "other"}
LOAN_REGIONS = {"india", "us", "eu"}
RATE_TYPES = {"fixed", "floating"}
BUDGET_CATEGORIES = {"essentials", "lifestyle", "savingsFuture", "sinkingFund"}
POT_CATEGORIES = BUDGET_CATEGORIES | {"unallocated"}
POT_GOAL_TYPES = {"vacation", "house-downpayment", "laptop", "other"}
RENEWAL_RATES = {
    "daily",
    "every2days",
    "weekly",
    "biweekly",
    "monthly",
    "bimonthly",
    "quarterly",
    "biyearly",
    "yearly",
}
THEMES = {"light", "dark", "system"}


def quantize_cents(amount: Decimal) -> Decimal:
    """Round the amount to two decimal places using HALF_UP rounding."""
    return amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def parse_decimal(raw: object, field: str) -> Decimal:
    if isinstance(raw, bool):
        raise ValidationError(f"{field} must be a numeric value")
    try:
        value = Decimal(str(raw))
    except (InvalidOperation, TypeError) as exc:
        raise ValidationError(f"{field} must be a numeric value") from exc
    if not value.is_finite():
        raise ValidationError(f"{field} must be a finite number")
    return value


def parse_amount(raw: object, field: str) -> Decimal:
    """Convert raw input to a positive Decimal with exactly two fraction digits."""
    amount = parse_decimal(raw, field)
    if amount <= 0:
        raise ValidationError(f"{field} must be greater than zero")
    return quantize_cents(amount)


def parse_non_negative_amount(raw: object, field: str) -> Decimal:
    amount = parse_decimal(raw, field)
    if amount < 0:
        raise ValidationError(f"{field} cannot be negative")
    return quantize_cents(amount)


def parse_positive(raw: object, field: str) -> Decimal:
    """Positive Decimal without rounding, for quantities and unit prices."""
    value = parse_decimal(raw, field)
    if value <= 0:
        raise ValidationError(f"{field} must be greater than 0")
    return value


def parse_optional_amount(raw: object, field: str) -> Optional[Decimal]:
    if raw is None:
        return None
    return parse_non_negative_amount(raw, field)


def validate_percentage(raw: object, field: str) -> Decimal:
    value = parse_decimal(raw, field)
    if value < 0:
        raise ValidationError(f"{field} percentage cannot be negative")
    if value > 100:
        raise ValidationError(f"{field} percentage cannot exceed 100%")
    return value


def validate_int(
    raw: object, field: str, minimum: int = 1, maximum: Optional[int] = None
) -> int:
    if isinstance(raw, bool):
        raise ValidationError(f"{field} must be an integer")
    try:
        value = int(str(raw))
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field} must be an integer") from exc
    if value < minimum:
        raise ValidationError(f"{field} must be at least {minimum}")
    if maximum is not None and value > maximum:
        raise ValidationError(f"{field} must be at most {maximum}")
    return value


def validate_currency(code: object) -> str:
    if not isinstance(code, str) or not CURRENCY_PATTERN.fullmatch(code):
        raise ValidationError("currency must be a 3-letter ISO 4217 code (uppercase)")
    return code


def validate_required_str(value: object, field: str, max_length: int) -> str:
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string")
    trimmed = value.strip()
    if not trimmed:
        raise ValidationError(f"{field} cannot be empty")
    if len(trimmed) > max_length:
        raise ValidationError(f"{field} must be at most {max_length} characters")
    return trimmed


def validate_optional_str(value: object, field: str, max_length: int) -> Optional[str]:
    if value is None or value == "":
        return None
    return validate_required_str(value, field, max_length)


def validate_bool(value: object, field: str, default: Optional[bool] = None) -> bool:
    if value is None and default is not None:
        return default
    if not isinstance(value, bool):
        raise ValidationError(f"{field} must be true or false")
    return value


def validate_datetime(value: object, field: str) -> datetime:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        try:
            dt = parse_datetime(value)
        except ValueError as exc:
            raise ValidationError(f"{field} must be an ISO 8601 datetime") from exc
    else:
        raise ValidationError(f"{field} must be a datetime or ISO 8601 string")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def validate_optional_datetime(value: object, field: str) -> Optional[datetime]:
    if value is None or value == "":
        return None
    return validate_datetime(value, field)


def ensure_not_future(value: datetime, field: str, now: Optional[datetime] = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    if value > now:
        raise ValidationError(f"{field} cannot be in the future")
    return value


def validate_enum(value: object, field: str, allowed: Iterable[str]) -> str:
    """Match ``value`` case-insensitively and return the canonical spelling."""
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string")
    canonical = {item.lower(): item for item in allowed}
    key = value.strip().lower()
    if key not in canonical:
        raise ValidationError(f"{field} must be one of: {', '.join(sorted(canonical.values()))}")
    return canonical[key]


def validate_enum_list(values: object, field: str, allowed: Iterable[str]) -> List[str]:
    if values is None:
        return []
    if not isinstance(values, list):
        raise ValidationError(f"{field} must be a list")
    result: List[str] = []
    for value in values:
        item = validate_enum(value, field, allowed)
        if item not in result:
            result.append(item)
    return result


def validate_mapping(value: object, field: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValidationError(f"{field} must be an object")
    return dict(value)


def normalize_symbols(raw: object, field: str = "symbols") -> List[str]:
    """Trim, upper-case, drop empties and duplicates while keeping order."""
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError(f"{field} must be a list of strings")
    symbols: List[str] = []
    for item in raw:
        if not isinstance(item, str):
            raise ValidationError(f"{field} must be a list of strings")
        symbol = item.strip().upper()
        if not symbol:
            continue
        if not SYMBOL_PATTERN.fullmatch(symbol):
            raise ValidationError(f"Invalid symbol '{item}'")
        if symbol not in symbols:
            symbols.append(symbol)
    return symbols
