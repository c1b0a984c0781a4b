"""Currencies, fallback exchange rates and the exchange-rate service."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import requests

from .exceptions import ValidationError

logger = logging.getLogger(__name__)

EXCHANGE_RATE_URL = "https://v6.exchangerate-api.com/v6/{key}/latest/{base}"
CACHE_DURATION = timedelta(hours=1)


@dataclass(frozen=True)
class Currency:
    code: str
    name: str
    symbol: str
    decimals: int


SUPPORTED_CURRENCIES: Tuple[Currency, ...] = (
    Currency("USD", "US Dollar", "$", 2),
    Currency("EUR", "Euro", "€", 2),
    Currency("GBP", "British Pound", "£", 2),
    Currency("JPY", "Japanese Yen", "¥", 0),
    Currency("INR", "Indian Rupee", "₹", 2),
    Currency("CAD", "Canadian Dollar", "C$", 2),
    Currency("AUD", "Australian Dollar", "A$", 2),
    Currency("CHF", "Swiss Franc", "CHF", 2),
    Currency("CNY", "Chinese Yuan", "¥", 2),
    Currency("SEK", "Swedish Krona", "kr", 2),
    Currency("NZD", "New Zealand Dollar", "NZ$", 2),
    Currency("MXN", "Mexican Peso", "$", 2),
    Currency("SGD", "Singapore Dollar", "S$", 2),
    Currency("HKD", "Hong Kong Dollar", "HK$", 2),
    Currency("NOK", "Norwegian Krone", "kr", 2),
    Currency("KRW", "South Korean Won", "₩", 0),
    Currency("TRY", "Turkish Lira", "₺", 2),
    Currency("RUB", "Russian Ruble", "₽", 2),
    Currency("BRL", "Brazilian Real", "R$", 2),
    Currency("ZAR", "South African Rand", "R", 2),
)

_CURRENCIES_BY_CODE = {currency.code: currency for currency in SUPPORTED_CURRENCIES}

# Approximate rates for offline use, quoted as "<code>/USD".
FALLBACK_EXCHANGE_RATES: Dict[str, Decimal] = {
    "EUR/USD": Decimal("1.08"),
    "GBP/USD": Decimal("1.25"),
    "JPY/USD": Decimal("0.0067"),
    "INR/USD": Decimal("0.012"),
    "CAD/USD": Decimal("0.74"),
    "AUD/USD": Decimal("0.66"),
    "CHF/USD": Decimal("1.10"),
    "CNY/USD": Decimal("0.14"),
    "SEK/USD": Decimal("0.092"),
    "NZD/USD": Decimal("0.60"),
    "MXN/USD": Decimal("0.058"),
    "SGD/USD": Decimal("0.74"),
    "HKD/USD": Decimal("0.13"),
    "NOK/USD": Decimal("0.092"),
    "KRW/USD": Decimal("0.00075"),
    "TRY/USD": Decimal("0.031"),
    "RUB/USD": Decimal("0.011"),
    "BRL/USD": Decimal("0.20"),
    "ZAR/USD": Decimal("0.053"),
}

_CODE_SUFFIX = re.compile(r"([A-Z]{3})$")
_NON_NUMERIC = re.compile(r"[^0-9.\-]")


def get_currency(code: str) -> Optional[Currency]:
    return _CURRENCIES_BY_CODE.get(code)


def is_supported_currency(code: str) -> bool:
    return code in _CURRENCIES_BY_CODE


def is_valid_currency_code(code: str) -> bool:
    return bool(re.fullmatch(r"[A-Z]{3}", code or ""))


def currency_symbol(code: str) -> str:
    currency = get_currency(code)
    return currency.symbol if currency else code


def currency_display_name(code: str) -> str:
    currency = get_currency(code)
    return f"{currency.name} ({currency.code})" if currency else code


def round_to_currency_decimals(amount: Decimal, code: str) -> Decimal:
    currency = get_currency(code)
    decimals = currency.decimals if currency else 2
    exponent = Decimal(1).scaleb(-decimals)
    return Decimal(amount).quantize(exponent, rounding=ROUND_HALF_UP)


def format_currency(
    amount: Decimal,
    code: str,
    *,
    show_symbol: bool = True,
    show_code: bool = False,
) -> str:
    """Format ``amount`` with thousands separators and the currency's decimals."""
    currency = get_currency(code)
    if currency is None:
        return f"{Decimal(amount):.2f} {code}"

    value = round_to_currency_decimals(Decimal(amount), code)
    sign = "-" if value < 0 else ""
    digits = f"{abs(value):,.{currency.decimals}f}"
    if show_symbol and show_code:
        return f"{sign}{currency.symbol}{digits} {currency.code}"
    if show_symbol:
        return f"{sign}{currency.symbol}{digits}"
    if show_code:
        return f"{sign}{digits} {currency.code}"
    return f"{sign}{digits}"


def parse_currency_amount(text: str) -> Optional[Tuple[Decimal, Optional[str]]]:
    """Parse strings such as ``"1,234.56 USD"`` into ``(amount, code)``."""
    cleaned = text.strip().replace(",", "")
    match = _CODE_SUFFIX.search(cleaned)
    code = match.group(1) if match else None
    numeric = _NON_NUMERIC.sub("", cleaned)
    try:
        amount = Decimal(numeric)
    except InvalidOperation:
        return None
    return amount, code


def _rate_to_usd(code: str) -> Decimal:
    if code == "USD":
        return Decimal(1)
    direct = FALLBACK_EXCHANGE_RATES.get(f"{code}/USD")
    if direct:
        return direct
    inverse = FALLBACK_EXCHANGE_RATES.get(f"USD/{code}")
    if inverse:
        return Decimal(1) / inverse
    return Decimal(1)


def fallback_exchange_rate(from_currency: str, to_currency: str) -> Decimal:
    """Static rate: identity, direct, inverse, then a cross rate through USD."""
    if from_currency == to_currency:
        return Decimal(1)
    direct = FALLBACK_EXCHANGE_RATES.get(f"{from_currency}/{to_currency}")
    if direct:
        return direct
    inverse = FALLBACK_EXCHANGE_RATES.get(f"{to_currency}/{from_currency}")
    if inverse:
        return Decimal(1) / inverse
    return _rate_to_usd(from_currency) / _rate_to_usd(to_currency)


@dataclass(frozen=True)
class ExchangeRate:
    from_currency: str
    to_currency: str
    rate: Decimal
    timestamp: datetime
    source: str  # api | cache | fallback


@dataclass(frozen=True)
class CurrencyConversion:
    original_amount: Decimal
    original_currency: str
    converted_amount: Decimal
    target_currency: str
    exchange_rate: Decimal
    timestamp: datetime
    source: str = "api"

    def to_dict(self) -> Dict[str, object]:
        return {
            "original_amount": str(self.original_amount),
            "original_currency": self.original_currency,
            "converted_amount": str(self.converted_amount),
            "target_currency": self.target_currency,
            "exchange_rate": str(self.exchange_rate),
            "timestamp": self.timestamp.isoformat(),
            "source": self.source,
        }


@dataclass
class _RateCache:
    base_currency: str
    rates: Dict[str, Decimal]
    last_updated: datetime
    expires_at: datetime


def convert_with_fallback(amount: Decimal, from_currency: str, to_currency: str) -> CurrencyConversion:
    rate = fallback_exchange_rate(from_currency, to_currency)
    return CurrencyConversion(
        original_amount=amount,
        original_currency=from_currency,
        converted_amount=amount * rate,
        target_currency=to_currency,
        exchange_rate=rate,
        timestamp=datetime.now(timezone.utc),
        source="fallback",
    )


class ExchangeRateService:
    """Fetches and caches exchange rates, falling back to the static table."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        session: Optional[requests.Session] = None,
        cache_duration: timedelta = CACHE_DURATION,
        timeout: float = 10.0,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._api_key = api_key
        self._session = session or requests.Session()
        self._cache_duration = cache_duration
        self._timeout = timeout
        self._clock = clock
        self._caches: Dict[str, _RateCache] = {}

    def _fetch_rates(self, base_currency: str) -> Dict[str, Decimal]:
        if not self._api_key:
            logger.debug("No exchange rate API key configured, using fallback rates")
            return {}
        url = EXCHANGE_RATE_URL.format(key=self._api_key, base=base_currency)
        try:
            response = self._session.get(
                url, headers={"Accept": "application/json"}, timeout=self._timeout
            )
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Error fetching exchange rates for %s: %s", base_currency, exc)
            return {}
        if data.get("result") != "success":
            logger.warning("Exchange rate API error: %s", data.get("error-type"))
            return {}
        return {
            code: Decimal(str(rate))
            for code, rate in (data.get("conversion_rates") or {}).items()
        }

    def rates(self, base_currency: str = "USD") -> Dict[str, Decimal]:
        """Return cached rates for ``base_currency``, refreshing expired entries."""
        now = self._clock()
        cached = self._caches.get(base_currency)
        if cached and cached.expires_at > now:
            return cached.rates
        rates = self._fetch_rates(base_currency)
        self._caches[base_currency] = _RateCache(
            base_currency=base_currency,
            rates=rates,
            last_updated=now,
            expires_at=now + self._cache_duration,
        )
        return rates

    def clear_cache(self) -> None:
        self._caches.clear()

    def cache_status(self) -> Dict[str, object]:
        now = self._clock()
        return {
            base: {
                "is_valid": cache.expires_at > now,
                "last_updated": cache.last_updated.isoformat(),
                "expires_at": cache.expires_at.isoformat(),
                "rates": len(cache.rates),
            }
            for base, cache in self._caches.items()
        }

    def get_rate(self, from_currency: str, to_currency: str) -> ExchangeRate:
        now = self._clock()
        if from_currency == to_currency:
            return ExchangeRate(from_currency, to_currency, Decimal(1), now, "api")

        direct = self.rates(from_currency)
        if to_currency in direct:
            return ExchangeRate(from_currency, to_currency, direct[to_currency], now, "api")

        usd_rates = self.rates("USD")
        from_rate = usd_rates.get(from_currency)
        to_rate = usd_rates.get(to_currency)
        if from_rate and to_rate:
            return ExchangeRate(from_currency, to_currency, to_rate / from_rate, now, "api")

        rate = fallback_exchange_rate(from_currency, to_currency)
        return ExchangeRate(from_currency, to_currency, rate, now, "fallback")

    def convert(self, amount: Decimal, from_currency: str, to_currency: str) -> CurrencyConversion:
        for code in (from_currency, to_currency):
            if not is_valid_currency_code(code):
                raise ValidationError(f"Invalid currency code '{code}'")
        amount = Decimal(amount)
        if from_currency == to_currency:
            return CurrencyConversion(
                original_amount=amount,
                original_currency=from_currency,
                converted_amount=amount,
                target_currency=to_currency,
                exchange_rate=Decimal(1),
                timestamp=self._clock(),
            )
        rate = self.get_rate(from_currency, to_currency)
        return CurrencyConversion(
            original_amount=amount,
            original_currency=from_currency,
            converted_amount=round_to_currency_decimals(amount * rate.rate, to_currency),
            target_currency=to_currency,
            exchange_rate=rate.rate,
            timestamp=rate.timestamp,
            source=rate.source,
        )

    def convert_many(
        self, amounts: Iterable[Tuple[Decimal, str]], target_currency: str
    ) -> List[CurrencyConversion]:
        return [self.convert(amount, code, target_currency) for amount, code in amounts]
