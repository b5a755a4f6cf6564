"""
Yahoo Finance data fetcher and the bounded gateway in front of it.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

import yfinance as yf

from smartcapital.errors import QuoteUnavailableError
from .symbols import currency_for_symbol

logger = logging.getLogger(__name__)


@dataclass
class StockData:
    """Current stock quote."""

    ticker: str
    current_price: float
    previous_close: float
    timestamp: datetime
    name: Optional[str] = None
    currency: str = "USD"

    @property
    def change(self) -> float:
        return self.current_price - self.previous_close

    @property
    def daily_change_pct(self) -> float:
        """Calculate daily change percentage."""
        if self.previous_close == 0:
            return 0.0
        return (self.change / self.previous_close) * 100

    @property
    def display_name(self) -> str:
        return self.name or self.ticker


class StockDataFetcher:
    """Fetches stock data from Yahoo Finance."""

    def __init__(self, max_retries: int = 2, retry_delay: float = 1.0):
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    def get_current_data(self, ticker: str) -> StockData:
        """
        Fetch current stock data.

        Transport errors are retried up to ``max_retries`` times,
        ``retry_delay`` seconds apart. A symbol with no data is not retried.

        Args:
            ticker: Stock symbol (e.g., "AAPL", "2330.TW")

        Returns:
            StockData with current price info

        Raises:
            ValueError: If symbol is invalid or data unavailable
        """
        attempt = 0
        while True:
            try:
                return self._fetch(ticker)
            except ValueError:
                raise
            except Exception as e:
                if attempt >= self.max_retries:
                    raise
                attempt += 1
                logger.warning(
                    f"Fetching {ticker} failed ({e}), retry {attempt}/{self.max_retries}"
                )
                time.sleep(self.retry_delay)

    def _fetch(self, ticker: str) -> StockData:
        info = yf.Ticker(ticker).info

        if not info or "regularMarketPrice" not in info and "previousClose" not in info:
            raise ValueError(f"Invalid symbol or no data available: {ticker}")

        current_price = info.get("regularMarketPrice")
        if current_price is None:
            current_price = info.get("previousClose")

        if current_price is None:
            raise ValueError(f"Invalid symbol or no data available: {ticker}")

        return StockData(
            ticker=ticker,
            name=info.get("longName") or info.get("shortName"),
            current_price=float(current_price),
            previous_close=float(info.get("previousClose") or current_price),
            currency=info.get("currency") or currency_for_symbol(ticker),
            timestamp=datetime.now(),
        )


class MarketDataGateway:
    """
    Bounded-latency quote lookups.

    Every fetch runs on a worker pool and is abandoned after ``timeout``
    seconds, retries included. Any failure, including a timeout, is reported
    as QuoteUnavailableError so callers only ever handle one error type.

    Single quotes and batch quotes use separate pools, so a slow batch (an
    alert tick over many symbols) never queues ahead of a chat lookup.
    """

    def __init__(
        self,
        fetcher: Optional[StockDataFetcher] = None,
        timeout: float = 10.0,
        max_workers: int = 5,
    ):
        self.fetcher = fetcher or StockDataFetcher()
        self.timeout = timeout
        self.max_workers = max_workers
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="quote"
        )
        self._batch_executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="quote-batch"
        )

    def quote(self, symbol: str) -> StockData:
        """
        Get a live quote.

        Raises:
            QuoteUnavailableError: If the lookup fails or times out
        """
        future = self._executor.submit(self.fetcher.get_current_data, symbol)
        return self._wait(symbol, future)

    def quote_many(self, symbols: Iterable[str]) -> dict[str, StockData]:
        """
        Quote several symbols concurrently.

        At most ``max_workers`` lookups are in flight at once. Symbols whose
        quote is unavailable are left out of the result.
        """
        futures = {
            symbol: self._batch_executor.submit(self.fetcher.get_current_data, symbol)
            for symbol in dict.fromkeys(symbols)
        }
        results = {}
        for symbol, future in futures.items():
            try:
                results[symbol] = self._wait(symbol, future)
            except QuoteUnavailableError as e:
                logger.warning(str(e))
        return results

    def _wait(self, symbol: str, future) -> StockData:
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeoutError:
            future.cancel()
            raise QuoteUnavailableError(
                symbol, f"timed out after {self.timeout:g}s"
            ) from None
        except Exception as e:
            raise QuoteUnavailableError(symbol, str(e)) from e

    def close(self) -> None:
        """Release the worker pools."""
        self._executor.shutdown(wait=False)
        self._batch_executor.shutdown(wait=False)
