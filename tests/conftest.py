from datetime import datetime, timezone

import pytest

from foresight.currency import ExchangeRateService
from foresight.exceptions import MarketDataError
from foresight.market_data import Quote
from foresight.storage import JSONStorage

NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


class FakeProvider:
    """Stands in for a Finnhub or Alpha Vantage client."""

    def __init__(self, prices=None, fail=False, source="finnhub"):
        self.prices = prices or {}
        self.fail = fail
        self.source = source
        self.calls = 0
        self.requested = []

    def _quotes(self, symbols):
        self.calls += 1
        self.requested.append(list(symbols))
        if self.fail:
            raise MarketDataError("provider unavailable")
        found = {
            symbol: Quote(
                symbol=symbol,
                price=self.prices[symbol],
                source=self.source,
                timestamp=NOW,
                change=1.5,
                change_percent=1.0,
            )
            for symbol in symbols
            if symbol in self.prices
        }
        if not found:
            raise MarketDataError("Failed to fetch any data")
        return found

    def stock_quotes(self, symbols, retries=1):
        return self._quotes(symbols)

    def crypto_quotes(self, symbols, retries=1):
        return self._quotes(symbols)

    def test_connection(self):
        if self.fail:
            return {"success": False, "message": "connection failed"}
        return {"success": True, "message": "connection successful"}


@pytest.fixture
def storage(tmp_path):
    return JSONStorage(tmp_path / "data")


@pytest.fixture
def provider_factory():
    return FakeProvider


@pytest.fixture
def exchange_rates():
    # No API key: every conversion uses the static fallback table.
    return ExchangeRateService(None)
