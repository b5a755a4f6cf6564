"""
Pytest configuration and shared fixtures.
"""

import pytest
from datetime import datetime
from unittest.mock import Mock

from smartcapital.data.fetcher import MarketDataGateway, StockData
from smartcapital.database.connection import Database
from smartcapital.errors import QuoteUnavailableError
from smartcapital.notifiers.base import Notifier, NotificationResult


def _make_quote(ticker, price, previous_close=None, name=None):
    return StockData(
        ticker=ticker,
        name=name,
        current_price=price,
        previous_close=price if previous_close is None else previous_close,
        timestamp=datetime.now(),
    )


@pytest.fixture
def make_quote():
    """Factory for StockData quotes."""
    return _make_quote


@pytest.fixture
def db():
    """Create in-memory database with schema."""
    database = Database(":memory:")
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def quotes():
    """Quotes served by the gateway fixture, keyed by symbol."""
    return {}


@pytest.fixture
def gateway(quotes):
    """Market data gateway answering from the quotes fixture."""
    mock = Mock(spec=MarketDataGateway)

    def quote(symbol):
        if symbol not in quotes:
            raise QuoteUnavailableError(symbol)
        return quotes[symbol]

    mock.quote.side_effect = quote
    mock.quote_many.side_effect = lambda symbols: {
        s: quotes[s] for s in symbols if s in quotes
    }
    return mock


@pytest.fixture
def notifier():
    """Notifier that records pushes instead of sending them."""
    mock = Mock(spec=Notifier)
    mock.send_text.return_value = NotificationResult(success=True, channel="test")
    mock.send.return_value = NotificationResult(success=True, channel="test")
    return mock


@pytest.fixture
def sample_stock_info():
    """Sample Yahoo Finance stock info response."""
    return {
        "regularMarketPrice": 250.00,
        "previousClose": 240.00,
        "open": 242.00,
        "dayHigh": 252.00,
        "dayLow": 239.50,
        "volume": 80_000_000,
        "longName": "Tesla, Inc.",
        "shortName": "Tesla",
        "currency": "USD",
    }
