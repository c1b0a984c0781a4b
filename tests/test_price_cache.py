from datetime import datetime, timedelta, timezone
from unittest import mock

from foresight.exceptions import MarketDataError
from foresight.market_data import MarketDataService
from foresight.models import PriceCacheEntry
from foresight.price_cache import (
    MAX_LOGGED_REQUESTS,
    REQUESTS_RESOURCE,
    PriceCacheManager,
    PriceCacheStore,
    cache_age_minutes,
    determine_update_strategy,
    is_entry_fresh,
    is_entry_usable,
    parse_doc_id,
)
from foresight.services import InvestmentService

NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


def entry(symbol, kind="stock", price=100.0, age=timedelta(minutes=1)):
    return PriceCacheEntry(
        symbol=symbol,
        type=kind,
        price=price,
        currency="USD",
        last_updated=NOW - age,
        source="finnhub",
    )


def test_age_and_freshness_rules():
    assert cache_age_minutes(NOW - timedelta(minutes=4, seconds=59), NOW) == 4
    assert is_entry_fresh(NOW - timedelta(minutes=4), now=NOW)
    assert not is_entry_fresh(NOW - timedelta(minutes=5), now=NOW)
    assert is_entry_usable(NOW - timedelta(hours=23), now=NOW)
    assert not is_entry_usable(NOW - timedelta(hours=25), now=NOW)


def test_parse_doc_id():
    assert parse_doc_id("crypto_BTC") == {"type": "crypto", "symbol": "BTC"}
    assert parse_doc_id("bond_UST") is None
    assert parse_doc_id("stock_BRK_B") is None


def test_update_strategies():
    cache = {"AAA": entry("AAA"), "BBB": entry("BBB", age=timedelta(minutes=30))}

    assert determine_update_strategy(["AAA"], cache, now=NOW).strategy == "use_cache"
    assert determine_update_strategy(["CCC"], cache, now=NOW).strategy == "full_update"
    half = determine_update_strategy(["AAA", "BBB"], cache, now=NOW)
    assert half.strategy == "partial_update"
    assert half.use_cache == ["AAA"]
    assert half.update_required == ["BBB"]
    third = determine_update_strategy(["AAA", "BBB", "CCC"], cache, now=NOW)
    assert third.strategy == "mixed"
    assert third.update_required == ["BBB", "CCC"]


def test_store_skips_invalid_entries_and_persists(storage):
    store = PriceCacheStore(storage)

    stored = store.put_many([entry("AAPL"), entry("BAD", price=0.0), entry("BTC", kind="crypto")])

    assert stored == 2
    reloaded = PriceCacheStore(storage)
    assert set(reloaded.get_many(["aapl", "bad"], "stock")) == {"AAPL"}
    assert reloaded.entries("crypto")[0].symbol == "BTC"


def test_store_statistics_and_cleanup(storage):
    store = PriceCacheStore(storage)
    store.put_many([entry("AAPL"), entry("MSFT", age=timedelta(hours=2)), entry("OLD", age=timedelta(hours=30))])

    stats = store.statistics(now=NOW)
    assert stats["total_stock_entries"] == 3
    assert stats["fresh_entries"] == 1
    assert stats["stale_entries"] == 2

    assert store.cleanup(now=NOW) == 1
    assert [e.symbol for e in PriceCacheStore(storage).entries("stock")] == ["AAPL", "MSFT"]


class TestPriceCacheManager:
    def setup_holdings(self, storage):
        investments = InvestmentService(storage)
        base = {"quantity": "2", "purchase_price": "100", "purchase_currency": "USD",
                "purchase_date": "2024-01-10T00:00:00Z"}
        aapl = investments.add("alice", {**base, "symbol": "AAPL", "type": "stock"})
        btc = investments.add("alice", {**base, "symbol": "BTC", "type": "crypto"})
        return investments, aapl, btc

    def test_fresh_cache_is_served_and_rest_fetched(self, storage, provider_factory):
        investments, aapl, btc = self.setup_holdings(storage)
        store = PriceCacheStore(storage)
        store.put_many([entry("AAPL", price=200.0)])
        market_data = MarketDataService(provider_factory({"BTC": 60000.0}), None, store)
        manager = PriceCacheManager(storage, store, market_data, investments, clock=lambda: NOW)

        result = manager.request_update("alice", ["AAPL"], ["BTC"])

        assert result.success
        assert result.cache_hits == ["AAPL"]
        assert result.updated_symbols == ["BTC"]
        assert result.failed_symbols == []
        assert result.api_calls == 1
        assert result.to_dict()["source"] == "mixed"

        stored = InvestmentService(storage)
        assert str(stored.get("alice", aapl.id).current_value) == "400.00"
        assert str(stored.get("alice", btc.id).current_value) == "120000.00"

        requests_log = storage.load(REQUESTS_RESOURCE)
        assert requests_log[0]["status"] == "completed"
        assert requests_log[0]["updated_symbols"] == ["BTC"]
        sync = manager.user_sync_timestamp("alice")
        assert sync["portfolio_symbols"] == {"stocks": ["AAPL"], "crypto": ["BTC"]}

    def test_forced_update_bypasses_cache(self, storage, provider_factory):
        investments, _, _ = self.setup_holdings(storage)
        store = PriceCacheStore(storage)
        store.put_many([entry("AAPL", price=200.0)])
        finnhub = provider_factory({"BTC": 60000.0})
        manager = PriceCacheManager(
            storage, store, MarketDataService(finnhub, None, store), investments, clock=lambda: NOW
        )

        result = manager.request_update("alice", ["AAPL"], ["BTC"], force=True)

        assert not result.success
        assert result.cache_hits == []
        assert result.failed_symbols == ["AAPL"]
        assert result.updated_symbols == ["BTC"]
        assert ["AAPL"] in finnhub.requested
        assert storage.load(REQUESTS_RESOURCE)[0]["status"] == "failed"

    def test_provider_exception_fails_every_symbol(self, storage):
        investments, aapl, _ = self.setup_holdings(storage)
        store = PriceCacheStore(storage)
        market_data = mock.Mock(spec=MarketDataService)
        market_data.fetch_stock_data.side_effect = MarketDataError("quota exhausted")
        manager = PriceCacheManager(storage, store, market_data, investments, clock=lambda: NOW)

        result = manager.request_update("alice", ["AAPL"], ["BTC"])

        assert not result.success
        assert result.failed_symbols == ["AAPL", "BTC"]
        assert result.errors == ["quota exhausted"]
        assert InvestmentService(storage).get("alice", aapl.id).current_value is None
        log = storage.load(REQUESTS_RESOURCE)[0]
        assert log["status"] == "failed"
        assert log["error"] == "quota exhausted"
        assert manager.user_sync_timestamp("alice") is None


def test_store_ignores_documents_with_malformed_ids(storage):
    storage.save(
        "stock_cache.json",
        [
            entry("AAPL").to_dict(),
            {**entry("MSFT").to_dict(), "id": "crypto_MSFT"},
            {**entry("IBM").to_dict(), "id": "IBM"},
        ],
    )

    store = PriceCacheStore(storage)

    assert [e.symbol for e in store.entries("stock")] == ["AAPL"]


class TestRequestLog:
    def manager(self, storage, *cached):
        store = PriceCacheStore(storage)
        store.put_many(cached)
        market_data = mock.Mock(spec=MarketDataService)
        return PriceCacheManager(storage, store, market_data, InvestmentService(storage), clock=lambda: NOW)

    def test_log_keeps_only_recent_requests_per_user(self, storage):
        manager = self.manager(storage, entry("AAPL"))

        for _ in range(MAX_LOGGED_REQUESTS + 5):
            manager.request_update("alice", ["AAPL"], [])
        manager.request_update("bob", ["AAPL"], [])

        log = storage.load(REQUESTS_RESOURCE)
        assert sum(1 for record in log if record["user_id"] == "alice") == MAX_LOGGED_REQUESTS
        assert sum(1 for record in log if record["user_id"] == "bob") == 1
        assert all(record["status"] == "completed" for record in log)

    def test_cleanup_prunes_old_requests_and_entries(self, storage):
        storage.save(
            REQUESTS_RESOURCE,
            [
                {"id": "old", "user_id": "alice", "requested_at": "2024-06-13T12:00:00Z", "status": "completed"},
                {"id": "stuck", "user_id": "alice", "requested_at": "2024-06-13T12:00:00Z", "status": "processing"},
                {"id": "recent", "user_id": "alice", "requested_at": "2024-06-15T11:00:00Z", "status": "failed"},
            ],
        )
        manager = self.manager(storage, entry("AAPL"), entry("OLD", age=timedelta(hours=30)))

        removed = manager.cleanup()

        assert removed == {"cache_entries": 1, "requests": 1}
        assert [r["id"] for r in storage.load(REQUESTS_RESOURCE)] == ["stuck", "recent"]
        assert [e.symbol for e in PriceCacheStore(storage).entries("stock")] == ["AAPL"]

    def test_cache_status_reports_statistics_and_last_sync(self, storage):
        manager = self.manager(storage, entry("AAPL"), entry("BTC", kind="crypto", age=timedelta(hours=1)))
        assert manager.cache_status("alice")["last_sync"] is None

        manager.request_update("alice", ["AAPL"], [])
        status = manager.cache_status("alice")

        assert status["statistics"]["total_stock_entries"] == 1
        assert status["statistics"]["fresh_entries"] == 1
        assert status["statistics"]["stale_entries"] == 1
        assert status["last_sync"]["portfolio_symbols"] == {"stocks": ["AAPL"], "crypto": []}
