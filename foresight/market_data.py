"""Stock and crypto quotes from Finnhub and Alpha Vantage with cache fallback."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import requests

from .exceptions import MarketDataError, PersistenceError, ValidationError
from .models import PriceCacheEntry
from .price_cache import MAX_STALE_HOURS, PriceCacheStore
from .validators import MAX_SEARCH_SYMBOLS, PRICE_TYPES, normalize_symbols

logger = logging.getLogger(__name__)

FINNHUB_URL = "https://finnhub.io/api/v1"
ALPHA_VANTAGE_URL = "https://www.alphavantage.co/query"

# Alpha Vantage's free tier allows very few calls, so only a handful of
# leftover symbols are tried there.
ALPHA_VANTAGE_STOCK_LIMIT = 3
ALPHA_VANTAGE_CRYPTO_LIMIT = 2

MOCK_CRYPTO_PRICES: Dict[str, Dict[str, float]] = {
    "BTC": {"price": 43250.00, "change": 1250.50, "change_percent": 2.98},
    "ETH": {"price": 2675.30, "change": -45.20, "change_percent": -1.66},
    "ADA": {"price": 0.485, "change": 0.012, "change_percent": 2.54},
    "DOT": {"price": 7.82, "change": -0.15, "change_percent": -1.88},
    "SOL": {"price": 98.75, "change": 3.25, "change_percent": 3.40},
    "AVAX": {"price": 24.15, "change": 0.85, "change_percent": 3.65},
    "MATIC": {"price": 0.92, "change": -0.03, "change_percent": -3.15},
    "LINK": {"price": 14.85, "change": 0.45, "change_percent": 3.13},
    "UNI": {"price": 6.72, "change": -0.08, "change_percent": -1.17},
    "LTC": {"price": 73.50, "change": 1.20, "change_percent": 1.66},
    "BCH": {"price": 245.80, "change": -2.30, "change_percent": -0.93},
    "XRP": {"price": 0.615, "change": 0.015, "change_percent": 2.50},
}
DEFAULT_MOCK_PRICE = {"price": 100.0, "change": 0.0, "change_percent": 0.0}


def mock_crypto_prices(symbols: Sequence[str]) -> Dict[str, Dict[str, float]]:
    return {symbol: dict(MOCK_CRYPTO_PRICES.get(symbol, DEFAULT_MOCK_PRICE)) for symbol in symbols}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _float(value: Any) -> Optional[float]:
    if value in (None, ""):
        return None
    try:
        return float(str(value).rstrip("%"))
    except ValueError:
        return None


@dataclass(frozen=True)
class Quote:
    symbol: str
    price: float
    source: str
    timestamp: datetime
    currency: str = "USD"
    change: Optional[float] = None
    change_percent: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    open: Optional[float] = None
    previous_close: Optional[float] = None
    volume: Optional[float] = None

    _METADATA_FIELDS = ("change", "change_percent", "high", "low", "open", "previous_close", "volume")

    def metadata(self) -> Dict[str, float]:
        values = {name: getattr(self, name) for name in self._METADATA_FIELDS}
        return {name: value for name, value in values.items() if value is not None}

    def to_cache_entry(self, kind: str, now: Optional[datetime] = None) -> PriceCacheEntry:
        """Cache entries are stamped with the time they were fetched."""
        return PriceCacheEntry(
            symbol=self.symbol.upper(),
            type=kind,
            price=self.price,
            currency=self.currency.upper(),
            last_updated=now or _utcnow(),
            source=self.source,
            metadata=self.metadata(),
        )

    @classmethod
    def from_cache(cls, entry: PriceCacheEntry) -> "Quote":
        meta = entry.metadata
        return cls(
            symbol=entry.symbol,
            price=entry.price,
            source="cache",
            timestamp=entry.last_updated,
            currency=entry.currency,
            change=meta.get("change"),
            change_percent=meta.get("change_percent"),
            high=meta.get("high"),
            low=meta.get("low"),
            open=meta.get("open"),
            previous_close=meta.get("previous_close"),
            volume=meta.get("volume"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "price": self.price,
            "currency": self.currency,
            "source": self.source,
            "timestamp": self.timestamp.isoformat(),
            **self.metadata(),
        }


class RateLimitedError(MarketDataError):
    """Provider answered 429; the request may be retried."""


class _ProviderClient:
    name = "provider"
    min_interval = 1.0

    def __init__(
        self,
        api_key: str,
        *,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
        retry_delay: float = 1.0,
        min_interval: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        if not api_key:
            raise MarketDataError(f"{self.name} API key is not configured")
        self._api_key = api_key
        self._session = session or requests.Session()
        self._timeout = timeout
        self._retry_delay = retry_delay
        self._min_interval = self.min_interval if min_interval is None else min_interval
        self._sleep = sleep
        self._monotonic = monotonic
        self._last_request: Optional[float] = None
        self.calls = 0

    def _wait_for_rate_limit(self) -> None:
        if self._last_request is not None:
            elapsed = self._monotonic() - self._last_request
            if elapsed < self._min_interval:
                self._sleep(self._min_interval - elapsed)
        self._last_request = self._monotonic()

    def _auth_params(self) -> Dict[str, str]:
        raise NotImplementedError

    def _check_payload(self, data: Dict[str, Any]) -> None:
        pass

    def _request(self, url: str, params: Dict[str, str], retries: int = 1) -> Dict[str, Any]:
        attempts = max(1, retries)
        for attempt in range(1, attempts + 1):
            try:
                return self._request_once(url, params)
            except (RateLimitedError, requests.RequestException) as exc:
                if attempt == attempts:
                    if isinstance(exc, MarketDataError):
                        raise
                    raise MarketDataError(f"Network error: {exc}") from exc
                logger.debug("%s request failed (attempt %d/%d): %s", self.name, attempt, attempts, exc)
                self._sleep(self._retry_delay)
        raise MarketDataError(f"{self.name} request failed")  # pragma: no cover

    def _request_once(self, url: str, params: Dict[str, str]) -> Dict[str, Any]:
        self._wait_for_rate_limit()
        self.calls += 1
        response = self._session.get(
            url,
            params={**params, **self._auth_params()},
            headers={"Accept": "application/json"},
            timeout=self._timeout,
        )
        if response.status_code == 429:
            raise RateLimitedError("Rate limit exceeded")
        if response.status_code == 401:
            raise MarketDataError("Invalid API key")
        if response.status_code == 403:
            raise MarketDataError("Access forbidden - check API key permissions")
        if not response.ok:
            raise MarketDataError(f"HTTP {response.status_code}: {response.reason}")
        try:
            data = response.json()
        except ValueError as exc:
            raise MarketDataError("Malformed response from provider") from exc
        if not isinstance(data, dict):
            raise MarketDataError("Unexpected response shape from provider")
        self._check_payload(data)
        return data

    def _batch(self, fetch: Callable[[str, int], Quote], symbols: Sequence[str], retries: int, label: str) -> Dict[str, Quote]:
        """Fetch sequentially; raise only when every symbol failed."""
        results: Dict[str, Quote] = {}
        errors: List[str] = []
        for symbol in symbols:
            try:
                results[symbol.upper()] = fetch(symbol, retries)
            except MarketDataError as exc:
                errors.append(f"{symbol}: {exc}")
                logger.warning("Failed to fetch %s data for %s: %s", label, symbol, exc)
        if errors and not results:
            raise MarketDataError(f"Failed to fetch any {label} data. Errors: {', '.join(errors)}")
        return results


class FinnhubClient(_ProviderClient):
    name = "Finnhub"
    min_interval = 1.0

    def _auth_params(self) -> Dict[str, str]:
        return {"token": self._api_key}

    def _check_payload(self, data: Dict[str, Any]) -> None:
        if data.get("error"):
            raise MarketDataError(str(data["error"]))

    def stock_quote(self, symbol: str, retries: int = 1) -> Quote:
        symbol = symbol.upper()
        try:
            quote = self._request(f"{FINNHUB_URL}/quote", {"symbol": symbol}, retries)
        except MarketDataError as exc:
            raise MarketDataError(f"Failed to fetch stock data for {symbol}: {exc}") from exc
        if not quote.get("c") and not quote.get("d") and not quote.get("dp"):
            raise MarketDataError(f"No data available for symbol: {symbol}")
        timestamp = quote.get("t")
        return Quote(
            symbol=symbol,
            price=float(quote["c"]),
            source="finnhub",
            timestamp=datetime.fromtimestamp(timestamp, timezone.utc) if timestamp else _utcnow(),
            change=_float(quote.get("d")),
            change_percent=_float(quote.get("dp")),
            high=_float(quote.get("h")),
            low=_float(quote.get("l")),
            open=_float(quote.get("o")),
            previous_close=_float(quote.get("pc")),
        )

    def crypto_quote(self, symbol: str, retries: int = 1) -> Quote:
        """Latest one-minute candle close on Binance against USDT."""
        symbol = symbol.upper()
        to = int(time.time())
        params = {
            "symbol": f"BINANCE:{symbol}USDT",
            "resolution": "1",
            "from": str(to - 300),
            "to": str(to),
        }
        try:
            candles = self._request(f"{FINNHUB_URL}/crypto/candle", params, retries)
        except MarketDataError as exc:
            raise MarketDataError(f"Failed to fetch crypto data for {symbol}: {exc}") from exc
        closes = candles.get("c") or []
        if candles.get("s") != "ok" or not closes:
            raise MarketDataError(f"No crypto data available for symbol: {symbol}")

        latest = len(closes) - 1
        price = float(closes[latest])
        previous = float(closes[latest - 1]) if latest > 0 else float((candles.get("o") or [price])[latest])
        change = price - previous
        volumes = candles.get("v") or []
        stamps = candles.get("t") or []
        return Quote(
            symbol=symbol,
            price=price,
            source="finnhub",
            timestamp=datetime.fromtimestamp(stamps[latest], timezone.utc) if stamps else _utcnow(),
            change=change,
            change_percent=change / previous * 100 if previous > 0 else 0.0,
            volume=_float(volumes[latest]) if volumes else None,
        )

    def stock_quotes(self, symbols: Sequence[str], retries: int = 1) -> Dict[str, Quote]:
        return self._batch(self.stock_quote, symbols, retries, "stock")

    def crypto_quotes(self, symbols: Sequence[str], retries: int = 1) -> Dict[str, Quote]:
        return self._batch(self.crypto_quote, symbols, retries, "crypto")

    def test_connection(self) -> Dict[str, object]:
        try:
            self.stock_quote("AAPL")
        except MarketDataError as exc:
            return {"success": False, "message": f"Finnhub API connection failed: {exc}"}
        return {"success": True, "message": "Finnhub API connection successful"}


class AlphaVantageClient(_ProviderClient):
    name = "Alpha Vantage"
    # Free tier: five requests per minute.
    min_interval = 12.0

    def _auth_params(self) -> Dict[str, str]:
        return {"apikey": self._api_key}

    def _check_payload(self, data: Dict[str, Any]) -> None:
        if "Error Message" in data:
            raise MarketDataError(data["Error Message"])
        if "Note" in data:
            raise RateLimitedError("API call frequency limit reached")
        if "Information" in data:
            raise MarketDataError(data["Information"])

    def stock_quote(self, symbol: str, retries: int = 1) -> Quote:
        symbol = symbol.upper()
        try:
            data = self._request(ALPHA_VANTAGE_URL, {"function": "GLOBAL_QUOTE", "symbol": symbol}, retries)
        except MarketDataError as exc:
            raise MarketDataError(f"Failed to fetch stock data for {symbol}: {exc}") from exc
        quote = data.get("Global Quote") or {}
        price = _float(quote.get("05. price"))
        if not price:
            raise MarketDataError(f"No data available for symbol: {symbol}")
        return Quote(
            symbol=symbol,
            price=price,
            source="alphavantage",
            timestamp=_utcnow(),
            change=_float(quote.get("09. change")),
            change_percent=_float(quote.get("10. change percent")),
            high=_float(quote.get("03. high")),
            low=_float(quote.get("04. low")),
            open=_float(quote.get("02. open")),
            previous_close=_float(quote.get("08. previous close")),
            volume=_float(quote.get("06. volume")),
        )

    def crypto_quote(self, symbol: str, retries: int = 1) -> Quote:
        symbol = symbol.upper()
        params = {"function": "CURRENCY_EXCHANGE_RATE", "from_currency": symbol, "to_currency": "USD"}
        try:
            data = self._request(ALPHA_VANTAGE_URL, params, retries)
        except MarketDataError as exc:
            raise MarketDataError(f"Failed to fetch crypto data for {symbol}: {exc}") from exc
        rate = data.get("Realtime Currency Exchange Rate") or {}
        price = _float(rate.get("5. Exchange Rate"))
        if not price:
            raise MarketDataError(f"No crypto data available for symbol: {symbol}")
        return Quote(symbol=symbol, price=price, source="alphavantage", timestamp=_utcnow())

    def stock_quotes(self, symbols: Sequence[str], retries: int = 1) -> Dict[str, Quote]:
        return self._batch(self.stock_quote, symbols, retries, "stock")

    def crypto_quotes(self, symbols: Sequence[str], retries: int = 1) -> Dict[str, Quote]:
        return self._batch(self.crypto_quote, symbols, retries, "crypto")

    def test_connection(self) -> Dict[str, object]:
        try:
            self.stock_quote("AAPL")
        except MarketDataError as exc:
            return {"success": False, "message": f"Alpha Vantage API connection failed: {exc}"}
        return {"success": True, "message": "Alpha Vantage API connection successful"}


@dataclass
class FetchResult:
    success: bool = False
    data: Dict[str, Quote] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)
    source: str = "cache"
    cache_updated: bool = False
    api_calls_used: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "data": {symbol: quote.to_dict() for symbol, quote in self.data.items()},
            "errors": dict(self.errors),
            "source": self.source,
            "cache_updated": self.cache_updated,
            "api_calls_used": self.api_calls_used,
        }


class MarketDataService:
    """Provider fallback chain: Finnhub, then Alpha Vantage, then the shared cache."""

    def __init__(
        self,
        finnhub: Optional[FinnhubClient] = None,
        alpha_vantage: Optional[AlphaVantageClient] = None,
        cache: Optional[PriceCacheStore] = None,
    ) -> None:
        self._finnhub = finnhub
        self._alpha_vantage = alpha_vantage
        self._cache = cache

    @classmethod
    def from_keys(
        cls,
        finnhub_api_key: Optional[str],
        alpha_vantage_api_key: Optional[str],
        cache: Optional[PriceCacheStore] = None,
        session: Optional[requests.Session] = None,
    ) -> "MarketDataService":
        session = session or requests.Session()
        return cls(
            finnhub=FinnhubClient(finnhub_api_key, session=session) if finnhub_api_key else None,
            alpha_vantage=(
                AlphaVantageClient(alpha_vantage_api_key, session=session) if alpha_vantage_api_key else None
            ),
            cache=cache,
        )

    def fetch_stock_data(self, symbols: Sequence[str], **options: Any) -> FetchResult:
        return self._fetch("stock", symbols, **options)

    def fetch_crypto_data(self, symbols: Sequence[str], **options: Any) -> FetchResult:
        return self._fetch("crypto", symbols, **options)

    def _fetch(
        self,
        kind: str,
        symbols: Sequence[str],
        use_finnhub: bool = True,
        use_alpha_vantage: bool = True,
        use_cache: bool = True,
        max_retries: int = 2,
    ) -> FetchResult:
        result = FetchResult()
        if not symbols:
            result.success = True
            return result

        remaining = [symbol.upper() for symbol in symbols]
        primary = "cache"

        if use_finnhub and remaining:
            try:
                if self._finnhub is None:
                    raise MarketDataError("FINNHUB_API_KEY environment variable is not set")
                fetch = self._finnhub.stock_quotes if kind == "stock" else self._finnhub.crypto_quotes
                quotes = fetch(remaining, max_retries)
                result.api_calls_used += len(remaining)
                primary = "finnhub"
                result.data.update(quotes)
                remaining = [symbol for symbol in remaining if symbol not in quotes]
                logger.info("Finnhub returned %s data for %d symbols", kind, len(quotes))
            except MarketDataError as exc:
                logger.warning("Finnhub API failed: %s", exc)
                result.errors["finnhub"] = str(exc)

        if use_alpha_vantage and remaining:
            limit = ALPHA_VANTAGE_STOCK_LIMIT if kind == "stock" else ALPHA_VANTAGE_CRYPTO_LIMIT
            limited = remaining[:limit]
            try:
                if self._alpha_vantage is None:
                    raise MarketDataError("ALPHA_VANTAGE_API_KEY environment variable is not set")
                fetch = (
                    self._alpha_vantage.stock_quotes if kind == "stock" else self._alpha_vantage.crypto_quotes
                )
                quotes = fetch(limited, max_retries)
                result.api_calls_used += len(limited)
                if primary == "cache":
                    primary = "alphavantage"
                result.data.update(quotes)
                remaining = [symbol for symbol in remaining if symbol not in quotes]
                logger.info("Alpha Vantage returned %s data for %d symbols", kind, len(quotes))
            except MarketDataError as exc:
                logger.warning("Alpha Vantage API failed: %s", exc)
                result.errors["alphavantage"] = str(exc)

        if use_cache and remaining and self._cache is not None:
            try:
                cached = self._cache.get_many(remaining, kind, max_age=timedelta(hours=MAX_STALE_HOURS))
                for symbol, entry in cached.items():
                    result.data[symbol] = Quote.from_cache(entry)
                remaining = [symbol for symbol in remaining if symbol not in cached]
                logger.info("Cache returned %s data for %d symbols", kind, len(cached))
            except PersistenceError as exc:
                logger.warning("Cache lookup failed: %s", exc)
                result.errors["cache"] = str(exc)

        fresh = [quote.to_cache_entry(kind) for quote in result.data.values() if quote.source != "cache"]
        if fresh and self._cache is not None:
            try:
                result.cache_updated = self._cache.put_many(fresh) > 0
            except PersistenceError as exc:
                logger.warning("Failed to update cache: %s", exc)

        result.success = bool(result.data)
        if result.data:
            result.source = primary if len(result.data) == len(symbols) else "mixed"
        for symbol in remaining:
            result.errors[symbol] = "No data available from any source"
        logger.info("%s data fetch completed: %d/%d symbols", kind.capitalize(), len(result.data), len(symbols))
        return result

    def search_prices(self, raw_symbols: object, kind: object) -> Dict[str, Dict[str, float]]:
        """Best-effort quotes for a symbol search.

        Crypto searches fall back to the mock price table whenever the
        providers return nothing or fail; stock searches return an empty
        mapping instead.
        """
        if not isinstance(raw_symbols, list) or not raw_symbols:
            raise ValidationError("Invalid symbols array")
        if kind not in PRICE_TYPES:
            raise ValidationError('Invalid type. Must be "stock" or "crypto"')
        if len(raw_symbols) > MAX_SEARCH_SYMBOLS:
            raise ValidationError(f"Too many symbols. Maximum {MAX_SEARCH_SYMBOLS} allowed")
        symbols = normalize_symbols(raw_symbols)
        if not symbols:
            raise ValidationError("Invalid symbols array")

        try:
            fetch = self.fetch_stock_data if kind == "stock" else self.fetch_crypto_data
            result = fetch(symbols, use_alpha_vantage=False, max_retries=1)
            prices = {
                symbol: {
                    "price": quote.price,
                    "change": quote.change or 0.0,
                    "change_percent": quote.change_percent or 0.0,
                }
                for symbol, quote in result.data.items()
            }
        except Exception as exc:  # any provider failure falls back below
            logger.warning("Price search for %s failed: %s", symbols, exc)
            if kind == "crypto":
                logger.info("Using mock crypto prices for %s", symbols)
                return mock_crypto_prices(symbols)
            return {}

        if not prices and kind == "crypto":
            logger.info("No live crypto data, using mock prices for %s", symbols)
            return mock_crypto_prices(symbols)
        return prices

    def daily_changes(self, symbols_by_type: Mapping[str, Sequence[str]]) -> Dict[str, float]:
        """Per-unit daily change for each symbol with a cached quote."""
        changes: Dict[str, float] = {}
        if self._cache is None:
            return changes
        for kind, symbols in symbols_by_type.items():
            for symbol, entry in self._cache.get_many(symbols, kind).items():
                change = entry.metadata.get("change")
                if change is not None:
                    changes[symbol] = change
        return changes

    def test_connections(self) -> Dict[str, Dict[str, object]]:
        def check_provider(client: Optional[_ProviderClient], name: str, env_var: str) -> Dict[str, object]:
            if client is None:
                return {"success": False, "message": f"{name} API connection failed: {env_var} is not set"}
            return client.test_connection()

        finnhub = check_provider(self._finnhub, "Finnhub", "FINNHUB_API_KEY")
        alpha_vantage = check_provider(self._alpha_vantage, "Alpha Vantage", "ALPHA_VANTAGE_API_KEY")
        available = bool(finnhub["success"] or alpha_vantage["success"])
        return {
            "finnhub": finnhub,
            "alphavantage": alpha_vantage,
            "overall": {
                "success": available,
                "message": "At least one price provider is available" if available else "No price provider is available",
            },
        }

    def usage_stats(self) -> Dict[str, Dict[str, object]]:
        return {
            "finnhub": {
                "configured": self._finnhub is not None,
                "calls": self._finnhub.calls if self._finnhub else 0,
                "rate_limit_per_minute": 60,
            },
            "alphavantage": {
                "configured": self._alpha_vantage is not None,
                "calls": self._alpha_vantage.calls if self._alpha_vantage else 0,
                "rate_limit_per_minute": 5,
                "daily_limit": 25,
            },
        }
