from datetime import datetime, timedelta, timezone
from unittest import mock

import pytest

from foresight.exceptions import MarketDataError, ValidationError
from foresight.market_data import (
    MOCK_CRYPTO_PRICES,
    AlphaVantageClient,
    FinnhubClient,
    MarketDataService,
    Quote,
)
from foresight.models import PriceCacheEntry
from foresight.price_cache import PriceCacheStore


def make_response(payload, status=200):
    response = mock.Mock()
    response.status_code = status
    response.ok = status < 400
    response.reason = "Error" if status >= 400 else "OK"
    response.json.return_value = payload
    return response


def make_client(cls, *responses):
    session = mock.Mock()
    session.get.side_effect = list(responses)
    sleeps = []
    client = cls("key", session=session, sleep=sleeps.append)
    return client, session, sleeps


def cache_entry(symbol, kind, price, age, change=None):
    return PriceCacheEntry(
        symbol=symbol,
        type=kind,
        price=price,
        currency="USD",
        last_updated=datetime.now(timezone.utc) - age,
        source="finnhub",
        metadata={"change": change} if change is not None else {},
    )


class TestFinnhubClient:
    def test_requires_api_key(self):
        with pytest.raises(MarketDataError):
            FinnhubClient("")

    def test_parses_stock_quote(self):
        client, session, _ = make_client(
            FinnhubClient,
            make_response({"c": 150.5, "d": 1.5, "dp": 1.01, "h": 151, "l": 149, "o": 149.5, "pc": 149, "t": 1718452800}),
        )

        quote = client.stock_quote("aapl")

        assert quote.symbol == "AAPL"
        assert quote.price == 150.5
        assert quote.change_percent == 1.01
        assert quote.timestamp == datetime.fromtimestamp(1718452800, timezone.utc)
        params = session.get.call_args.kwargs["params"]
        assert params == {"symbol": "AAPL", "token": "key"}

    def test_retries_after_rate_limit(self):
        client, session, sleeps = make_client(
            FinnhubClient,
            make_response({}, status=429),
            make_response({"c": 10, "d": 0.1, "dp": 1}),
        )

        quote = client.stock_quote("IBM", retries=2)

        assert quote.price == 10
        assert session.get.call_count == 2
        assert 1.0 in sleeps
        assert client.calls == 2

    def test_invalid_key_is_not_retried(self):
        client, session, _ = make_client(FinnhubClient, make_response({}, status=401))

        with pytest.raises(MarketDataError, match="Invalid API key"):
            client.stock_quote("IBM", retries=3)
        assert session.get.call_count == 1

    def test_empty_quote_means_unknown_symbol(self):
        client, _, _ = make_client(FinnhubClient, make_response({"c": 0, "d": None, "dp": None}))
        with pytest.raises(MarketDataError, match="No data available"):
            client.stock_quote("NOPE")

    def test_crypto_quote_from_latest_candle(self):
        client, session, _ = make_client(
            FinnhubClient,
            make_response({"s": "ok", "c": [100.0, 110.0], "o": [99.0, 100.0], "v": [5, 7], "t": [1, 2]}),
        )

        quote = client.crypto_quote("btc")

        assert quote.price == 110.0
        assert quote.change == 10.0
        assert quote.change_percent == 10.0
        assert quote.volume == 7.0
        assert session.get.call_args.kwargs["params"]["symbol"] == "BINANCE:BTCUSDT"

    def test_batch_keeps_partial_results(self):
        client, _, _ = make_client(
            FinnhubClient,
            make_response({"c": 10, "d": 1, "dp": 1}),
            make_response({}, status=500),
        )

        quotes = client.stock_quotes(["AAA", "BBB"])

        assert list(quotes) == ["AAA"]

    def test_batch_raises_when_everything_fails(self):
        client, _, _ = make_client(
            FinnhubClient, make_response({}, status=500), make_response({}, status=500)
        )
        with pytest.raises(MarketDataError, match="Failed to fetch any stock data"):
            client.stock_quotes(["AAA", "BBB"])


class TestAlphaVantageClient:
    def test_parses_global_quote(self):
        client, session, _ = make_client(
            AlphaVantageClient,
            make_response(
                {"Global Quote": {"05. price": "123.45", "09. change": "1.2", "10. change percent": "0.98%"}}
            ),
        )

        quote = client.stock_quote("ibm")

        assert quote.price == 123.45
        assert quote.change_percent == 0.98
        assert quote.source == "alphavantage"
        assert session.get.call_args.kwargs["params"]["apikey"] == "key"

    def test_note_payload_is_a_rate_limit(self):
        client, _, _ = make_client(AlphaVantageClient, make_response({"Note": "slow down"}))
        with pytest.raises(MarketDataError, match="frequency limit"):
            client.stock_quote("IBM")

    def test_crypto_exchange_rate(self):
        client, _, _ = make_client(
            AlphaVantageClient,
            make_response({"Realtime Currency Exchange Rate": {"5. Exchange Rate": "43000.5"}}),
        )
        assert client.crypto_quote("BTC").price == 43000.5


class TestFetchChain:
    def test_alpha_vantage_fills_finnhub_gaps(self, storage, provider_factory):
        finnhub = provider_factory({"AAPL": 150.0})
        alpha = provider_factory({"MSFT": 300.0}, source="alphavantage")
        cache = PriceCacheStore(storage)
        service = MarketDataService(finnhub, alpha, cache)

        result = service.fetch_stock_data(["AAPL", "MSFT", "GOOG"])

        assert set(result.data) == {"AAPL", "MSFT"}
        assert result.source == "mixed"
        assert result.errors["GOOG"] == "No data available from any source"
        assert result.api_calls_used == 5
        assert result.cache_updated
        assert set(cache.get_many(["AAPL", "MSFT"], "stock")) == {"AAPL", "MSFT"}

    def test_single_provider_source(self, provider_factory):
        service = MarketDataService(provider_factory({"ETH": 2500.0}))
        result = service.fetch_crypto_data(["ETH"])
        assert result.success
        assert result.source == "finnhub"

    def test_falls_back_to_recent_cache(self, storage, provider_factory):
        cache = PriceCacheStore(storage)
        cache.put_many(
            [
                cache_entry("TSLA", "stock", 250.0, timedelta(hours=10)),
                cache_entry("OLD", "stock", 5.0, timedelta(hours=30)),
            ]
        )
        service = MarketDataService(provider_factory(fail=True), None, cache)

        result = service.fetch_stock_data(["TSLA", "OLD"])

        assert result.data["TSLA"].source == "cache"
        assert result.data["TSLA"].price == 250.0
        assert "OLD" not in result.data
        assert "finnhub" in result.errors
        assert "alphavantage" in result.errors
        assert result.source == "mixed"


class TestSearchPrices:
    @pytest.mark.parametrize(
        "symbols, kind, message",
        [
            ("BTC", "crypto", "Invalid symbols array"),
            ([], "crypto", "Invalid symbols array"),
            (["BTC"], "bond", 'Invalid type. Must be "stock" or "crypto"'),
            ([f"S{i}" for i in range(21)], "stock", "Too many symbols. Maximum 20 allowed"),
        ],
    )
    def test_rejects_malformed_requests(self, symbols, kind, message):
        with pytest.raises(ValidationError) as excinfo:
            MarketDataService().search_prices(symbols, kind)
        assert str(excinfo.value) == message

    def test_crypto_without_providers_uses_mock_table(self):
        prices = MarketDataService().search_prices(["btc", "FOO"], "crypto")

        assert prices["BTC"] == MOCK_CRYPTO_PRICES["BTC"]
        assert prices["FOO"] == {"price": 100.0, "change": 0.0, "change_percent": 0.0}

    def test_stock_without_providers_is_empty(self):
        assert MarketDataService().search_prices(["AAPL"], "stock") == {}

    def test_mock_table_used_when_upstream_raises(self, provider_factory):
        service = MarketDataService(provider_factory({"ETH": 1.0}))
        with mock.patch.object(service, "fetch_crypto_data", side_effect=RuntimeError("boom")):
            assert service.search_prices(["ETH"], "crypto") == {"ETH": MOCK_CRYPTO_PRICES["ETH"]}
        with mock.patch.object(service, "fetch_stock_data", side_effect=RuntimeError("boom")):
            assert service.search_prices(["AAPL"], "stock") == {}

    def test_live_prices_skip_alpha_vantage(self, provider_factory):
        finnhub = provider_factory({"BTC": 50000.0})
        alpha = provider_factory({"BTC": 1.0})
        service = MarketDataService(finnhub, alpha)

        prices = service.search_prices(["BTC"], "crypto")

        assert prices == {"BTC": {"price": 50000.0, "change": 1.5, "change_percent": 1.0}}
        assert alpha.calls == 0


class TestStatus:
    def test_daily_changes_from_cache(self, storage):
        cache = PriceCacheStore(storage)
        cache.put_many([cache_entry("AAPL", "stock", 150.0, timedelta(minutes=1), change=2.5)])
        service = MarketDataService(cache=cache)

        assert service.daily_changes({"stock": ["AAPL", "MSFT"], "crypto": []}) == {"AAPL": 2.5}

    def test_connections_and_usage(self, provider_factory):
        service = MarketDataService(provider_factory())

        connections = service.test_connections()

        assert connections["finnhub"]["success"]
        assert not connections["alphavantage"]["success"]
        assert "ALPHA_VANTAGE_API_KEY" in connections["alphavantage"]["message"]
        assert connections["overall"]["success"]
        usage = service.usage_stats()
        assert usage["finnhub"]["configured"]
        assert not usage["alphavantage"]["configured"]

    def test_quote_cache_entry_carries_metadata(self):
        now = datetime(2024, 6, 15, tzinfo=timezone.utc)
        quote = Quote(symbol="aapl", price=10.0, source="finnhub", timestamp=now, change=0.5)

        entry = quote.to_cache_entry("stock", now)

        assert entry.doc_id == "stock_AAPL"
        assert entry.metadata == {"change": 0.5}
        assert Quote.from_cache(entry).source == "cache"
