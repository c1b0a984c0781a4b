"""Shared price cache: storage, freshness rules and the user-triggered update flow."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable, Dict, Iterable, List, Mapping, Optional, Sequence
from uuid import uuid4

from .exceptions import MarketDataError, PersistenceError, ValidationError
from .models import PriceCacheEntry, isoformat_utc
from .storage import JSONStorage
from .validators import PRICE_TYPES

if TYPE_CHECKING:
    from .market_data import MarketDataService
    from .services import InvestmentService

logger = logging.getLogger(__name__)

DEFAULT_TTL_MINUTES = 4
MAX_STALE_HOURS = 24
# Request log entries kept per user.
MAX_LOGGED_REQUESTS = 20

CACHE_RESOURCES = {"stock": "stock_cache.json", "crypto": "crypto_cache.json"}
REQUESTS_RESOURCE = "cache_requests.json"
SYNC_RESOURCE = "user_sync_timestamps.json"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def cache_age_minutes(last_updated: datetime, now: Optional[datetime] = None) -> int:
    now = now or _utcnow()
    return math.floor((now - last_updated).total_seconds() / 60)


def is_entry_fresh(
    last_updated: datetime, ttl_minutes: int = DEFAULT_TTL_MINUTES, now: Optional[datetime] = None
) -> bool:
    return cache_age_minutes(last_updated, now) <= ttl_minutes


def is_entry_usable(
    last_updated: datetime, max_stale_hours: int = MAX_STALE_HOURS, now: Optional[datetime] = None
) -> bool:
    return cache_age_minutes(last_updated, now) <= max_stale_hours * 60


def parse_doc_id(doc_id: str) -> Optional[Dict[str, str]]:
    parts = doc_id.split("_")
    if len(parts) != 2 or parts[0] not in PRICE_TYPES:
        return None
    return {"type": parts[0], "symbol": parts[1]}


def is_valid_entry(entry: PriceCacheEntry) -> bool:
    return bool(
        entry.symbol
        and entry.type in PRICE_TYPES
        and isinstance(entry.price, (int, float))
        and entry.price > 0
        and entry.currency
        and entry.last_updated
        and entry.source
    )


@dataclass(frozen=True)
class FreshnessResult:
    fresh: List[str]
    stale: List[str]
    missing: List[str]
    total_symbols: int
    fresh_percentage: float


@dataclass(frozen=True)
class UpdateStrategy:
    update_required: List[str]
    use_cache: List[str]
    strategy: str  # full_update | partial_update | use_cache | mixed
    reasoning: str


def analyze_freshness(
    symbols: Sequence[str],
    cache_data: Mapping[str, PriceCacheEntry],
    ttl_minutes: int = DEFAULT_TTL_MINUTES,
    now: Optional[datetime] = None,
) -> FreshnessResult:
    fresh: List[str] = []
    stale: List[str] = []
    missing: List[str] = []
    for symbol in symbols:
        entry = cache_data.get(symbol)
        if entry is None:
            missing.append(symbol)
        elif is_entry_fresh(entry.last_updated, ttl_minutes, now):
            fresh.append(symbol)
        else:
            stale.append(symbol)
    total = len(symbols)
    percentage = len(fresh) / total * 100 if total else 0.0
    return FreshnessResult(fresh, stale, missing, total, percentage)


def determine_update_strategy(
    symbols: Sequence[str],
    cache_data: Mapping[str, PriceCacheEntry],
    ttl_minutes: int = DEFAULT_TTL_MINUTES,
    now: Optional[datetime] = None,
) -> UpdateStrategy:
    freshness = analyze_freshness(symbols, cache_data, ttl_minutes, now)
    percentage = freshness.fresh_percentage
    if percentage == 0:
        strategy, reasoning = "full_update", "No fresh cache data available, full update required"
    elif percentage == 100:
        strategy, reasoning = "use_cache", "All cache data is fresh, no update needed"
    elif percentage >= 50:
        strategy = "partial_update"
        reasoning = f"{percentage:.1f}% of cache is fresh, partial update recommended"
    else:
        strategy = "mixed"
        reasoning = f"{percentage:.1f}% of cache is fresh, mixed strategy recommended"
    return UpdateStrategy(
        update_required=freshness.stale + freshness.missing,
        use_cache=freshness.fresh,
        strategy=strategy,
        reasoning=reasoning,
    )


class PriceCacheStore:
    """Latest known quote per symbol, one collection per price type."""

    def __init__(self, storage: JSONStorage) -> None:
        self._storage = storage
        self._entries: Dict[str, Dict[str, PriceCacheEntry]] = {}
        self.load()

    def load(self) -> None:
        self._entries = {}
        for kind, resource in CACHE_RESOURCES.items():
            records = self._storage.load(resource)
            collection: Dict[str, PriceCacheEntry] = {}
            for record in records:
                parsed = parse_doc_id(str(record.get("id", "")))
                if parsed is None or parsed["type"] != kind:
                    logger.warning("Ignoring malformed %s cache document %r", kind, record.get("id"))
                    continue
                collection[record["id"]] = PriceCacheEntry.from_dict(record)
            self._entries[kind] = collection

    def get_many(
        self,
        symbols: Iterable[str],
        kind: str,
        max_age: Optional[timedelta] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, PriceCacheEntry]:
        """Cached entries keyed by upper-cased symbol; ``max_age`` drops older ones."""
        collection = self._entries.get(kind, {})
        now = now or _utcnow()
        found: Dict[str, PriceCacheEntry] = {}
        for symbol in symbols:
            entry = collection.get(f"{kind}_{symbol.upper()}")
            if entry is None or not is_valid_entry(entry):
                continue
            if max_age is not None and now - entry.last_updated > max_age:
                continue
            found[entry.symbol.upper()] = entry
        return found

    def put_many(self, entries: Iterable[PriceCacheEntry]) -> int:
        """Store valid entries; returns how many were written."""
        touched = set()
        stored = 0
        for entry in entries:
            if not is_valid_entry(entry):
                logger.warning("Skipping invalid cache entry for %s", entry.symbol)
                continue
            self._entries.setdefault(entry.type, {})[entry.doc_id] = entry
            touched.add(entry.type)
            stored += 1
        for kind in touched:
            self._save(kind)
        return stored

    def entries(self, kind: str) -> List[PriceCacheEntry]:
        return list(self._entries.get(kind, {}).values())

    def statistics(self, ttl_minutes: int = DEFAULT_TTL_MINUTES, now: Optional[datetime] = None) -> Dict[str, object]:
        now = now or _utcnow()
        all_entries = self.entries("stock") + self.entries("crypto")
        ages = [cache_age_minutes(entry.last_updated, now) for entry in all_entries]
        fresh = sum(1 for age in ages if age <= ttl_minutes)
        return {
            "total_stock_entries": len(self.entries("stock")),
            "total_crypto_entries": len(self.entries("crypto")),
            "average_age_minutes": round(sum(ages) / len(ages), 1) if ages else 0,
            "fresh_entries": fresh,
            "stale_entries": len(ages) - fresh,
        }

    def cleanup(self, max_age_hours: int = MAX_STALE_HOURS, now: Optional[datetime] = None) -> int:
        """Drop entries older than ``max_age_hours``; returns how many were removed."""
        deleted = 0
        for kind, collection in self._entries.items():
            expired = [
                doc_id
                for doc_id, entry in collection.items()
                if not is_entry_usable(entry.last_updated, max_age_hours, now)
            ]
            for doc_id in expired:
                del collection[doc_id]
            if expired:
                deleted += len(expired)
                self._save(kind)
        return deleted

    def _save(self, kind: str) -> None:
        self._storage.save(
            CACHE_RESOURCES[kind], [entry.to_dict() for entry in self._entries[kind].values()]
        )


@dataclass
class CacheUpdateResult:
    success: bool = False
    updated_symbols: List[str] = field(default_factory=list)
    failed_symbols: List[str] = field(default_factory=list)
    cache_hits: List[str] = field(default_factory=list)
    api_calls: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            "updated_symbols": list(self.updated_symbols),
            "failed_symbols": list(self.failed_symbols),
            "cache_hits": list(self.cache_hits),
            "api_calls": self.api_calls,
            "source": "mixed",
            "errors": list(self.errors),
        }


class PriceCacheManager:
    """Runs a user's price refresh: cache first, providers for the rest."""

    def __init__(
        self,
        storage: JSONStorage,
        store: PriceCacheStore,
        market_data: "MarketDataService",
        investments: "InvestmentService",
        ttl_minutes: int = DEFAULT_TTL_MINUTES,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._storage = storage
        self._store = store
        self._market_data = market_data
        self._investments = investments
        self._ttl_minutes = ttl_minutes
        self._clock = clock

    def request_update(
        self,
        user_id: str,
        stocks: Sequence[str],
        crypto: Sequence[str],
        force: bool = False,
    ) -> CacheUpdateResult:
        result = CacheUpdateResult()
        all_symbols = [*stocks, *crypto]
        request = self._log_request(user_id, all_symbols)
        prices: Dict[str, float] = {}

        try:
            for kind, symbols in (("stock", stocks), ("crypto", crypto)):
                if symbols:
                    self._refresh(kind, list(symbols), force, prices, result)
            if prices:
                self._investments.apply_prices(user_id, prices, now=self._clock())
            self._record_sync(user_id, stocks, crypto)
        except (MarketDataError, PersistenceError, ValidationError) as exc:
            logger.error("Price update for user %s failed: %s", user_id, exc)
            result.errors.append(str(exc))
            result.updated_symbols = []
            result.cache_hits = []
            result.failed_symbols = list(all_symbols)
            result.success = False
            self._finish_request(request, "failed", result)
            return result

        result.success = not result.failed_symbols
        self._finish_request(request, "completed" if result.success else "failed", result)
        logger.info(
            "Price update for user %s: %d updated, %d cached, %d failed",
            user_id,
            len(result.updated_symbols),
            len(result.cache_hits),
            len(result.failed_symbols),
        )
        return result

    def user_sync_timestamp(self, user_id: str) -> Optional[Dict[str, object]]:
        return self._storage.find(SYNC_RESOURCE, "user_id", user_id)

    def cache_status(self, user_id: str) -> Dict[str, object]:
        """Cache statistics plus the user's last sync, for the status endpoint."""
        return {
            "statistics": self._store.statistics(self._ttl_minutes, self._clock()),
            "last_sync": self.user_sync_timestamp(user_id),
        }

    def cleanup(self, max_age_hours: int = MAX_STALE_HOURS) -> Dict[str, int]:
        """Drop expired cache entries and finished requests older than ``max_age_hours``."""
        cutoff = isoformat_utc(self._clock() - timedelta(hours=max_age_hours))
        removed_entries = self._store.cleanup(max_age_hours, self._clock())
        # ISO timestamps in UTC sort chronologically.
        removed_requests = self._storage.prune(
            REQUESTS_RESOURCE,
            lambda record: record.get("status") == "processing"
            or str(record.get("requested_at", "")) >= cutoff,
        )
        logger.info(
            "Cache cleanup removed %d entries and %d requests", removed_entries, removed_requests
        )
        return {"cache_entries": removed_entries, "requests": removed_requests}

    def _refresh(
        self,
        kind: str,
        symbols: List[str],
        force: bool,
        prices: Dict[str, float],
        result: CacheUpdateResult,
    ) -> None:
        to_fetch = symbols
        if not force:
            cached = self._store.get_many(symbols, kind, now=self._clock())
            strategy = determine_update_strategy(symbols, cached, self._ttl_minutes, self._clock())
            logger.debug("%s cache strategy: %s", kind, strategy.reasoning)
            for symbol in strategy.use_cache:
                prices[symbol] = cached[symbol].price
                result.cache_hits.append(symbol)
            to_fetch = strategy.update_required
        if not to_fetch:
            return

        if kind == "stock":
            fetched = self._market_data.fetch_stock_data(to_fetch)
        else:
            fetched = self._market_data.fetch_crypto_data(to_fetch)
        result.api_calls += fetched.api_calls_used
        for symbol in to_fetch:
            quote = fetched.data.get(symbol)
            if quote is None:
                result.failed_symbols.append(symbol)
            else:
                prices[symbol] = quote.price
                result.updated_symbols.append(symbol)
        result.errors.extend(f"{key}: {message}" for key, message in fetched.errors.items())

    def _log_request(self, user_id: str, symbols: List[str]) -> Dict[str, object]:
        request = {
            "id": str(uuid4()),
            "user_id": user_id,
            "symbols": symbols,
            "requested_at": isoformat_utc(self._clock()),
            "status": "processing",
        }
        records = self._storage.load(REQUESTS_RESOURCE)
        records.append(request)
        own = [record["id"] for record in records if record.get("user_id") == user_id]
        expired = set(own[:-MAX_LOGGED_REQUESTS])
        self._storage.save(REQUESTS_RESOURCE, [r for r in records if r.get("id") not in expired])
        return request

    def _finish_request(self, request: Dict[str, object], status: str, result: CacheUpdateResult) -> None:
        finished = {
            **request,
            "status": status,
            "updated_symbols": list(result.updated_symbols),
            "completed_at": isoformat_utc(self._clock()),
        }
        if result.errors:
            finished["error"] = "; ".join(result.errors)
        self._storage.upsert(REQUESTS_RESOURCE, finished)

    def _record_sync(self, user_id: str, stocks: Sequence[str], crypto: Sequence[str]) -> None:
        now = isoformat_utc(self._clock())
        self._storage.upsert(
            SYNC_RESOURCE,
            {
                "id": user_id,
                "user_id": user_id,
                "last_sync_timestamp": now,
                "portfolio_symbols": {"stocks": list(stocks), "crypto": list(crypto)},
                "updated_at": now,
            },
            key="user_id",
        )
