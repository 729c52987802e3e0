"""
Market Data Providers

Quote sources consumed by the valuation updater. Providers may block on
network I/O; the updater always calls them before taking any ledger lock.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Dict, Optional, Tuple

import yfinance as yf

from ..utils.validators import TICKER_PATTERN, quantize_price

logger = logging.getLogger(__name__)


class MarketDataProvider(ABC):
    """Abstract quote source."""

    @abstractmethod
    def current_price(self, ticker: str) -> Optional[Decimal]:
        """Latest price per share, or None if the symbol is not found."""

    @abstractmethod
    def is_valid_symbol(self, ticker: str) -> bool:
        """Whether the source recognises the ticker."""


class StaticPriceProvider(MarketDataProvider):
    """
    Provider backed by a fixed price table.

    Useful for batch revaluation from a price file and for tests; ``delay``
    simulates a slow upstream.
    """

    def __init__(self, prices: Dict[str, Decimal] = None, delay: float = 0.0):
        self._prices: Dict[str, Decimal] = {
            ticker: Decimal(str(price)) for ticker, price in (prices or {}).items()
        }
        self._lock = threading.Lock()
        self.delay = delay

    def set_price(self, ticker: str, price: Decimal):
        with self._lock:
            self._prices[ticker] = Decimal(str(price))

    def current_price(self, ticker: str) -> Optional[Decimal]:
        if self.delay:
            time.sleep(self.delay)
        with self._lock:
            return self._prices.get(ticker)

    def is_valid_symbol(self, ticker: str) -> bool:
        with self._lock:
            return ticker in self._prices


class YFinanceProvider(MarketDataProvider):
    """
    Yahoo Finance quote source.

    Quotes are cached for ``cache_ttl_seconds`` so that a refresh of many
    portfolios holding the same ticker makes one upstream call.
    """

    def __init__(self, cache_ttl_seconds: int = 60, symbol_mapping: Dict[str, str] = None):
        """
        Initialize provider.

        Args:
            cache_ttl_seconds: How long a fetched quote is reused
            symbol_mapping: Optional ledger ticker -> Yahoo symbol overrides
        """
        self.cache_ttl_seconds = cache_ttl_seconds
        self.symbol_mapping = dict(symbol_mapping or {})
        self._cache: Dict[str, Tuple[float, Optional[Decimal]]] = {}
        self._lock = threading.Lock()

    def _yahoo_symbol(self, ticker: str) -> str:
        return self.symbol_mapping.get(ticker, ticker)

    def _fetch(self, ticker: str) -> Optional[Decimal]:
        history = yf.Ticker(self._yahoo_symbol(ticker)).history(period="5d")
        if history is None or history.empty or 'Close' not in history.columns:
            return None
        closes = history['Close'].dropna()
        if closes.empty:
            return None
        return quantize_price(Decimal(str(float(closes.iloc[-1]))))

    def current_price(self, ticker: str) -> Optional[Decimal]:
        """
        Latest close, or None if Yahoo has no data for the symbol.

        Upstream errors are logged and propagate to the caller; they are
        not cached.
        """
        now = time.monotonic()
        with self._lock:
            cached = self._cache.get(ticker)
            if cached and now - cached[0] < self.cache_ttl_seconds:
                return cached[1]

        try:
            price = self._fetch(ticker)
        except Exception as e:
            logger.warning(f"Quote fetch failed for {ticker}: {str(e)}")
            raise

        if price is None:
            logger.info(f"No quote found for {ticker}")
        with self._lock:
            self._cache[ticker] = (now, price)
        return price

    def is_valid_symbol(self, ticker: str) -> bool:
        if not isinstance(ticker, str) or not TICKER_PATTERN.match(ticker):
            return False
        return self.current_price(ticker) is not None
