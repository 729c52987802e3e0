"""
Valuation Updater

Applies market prices to positions and reports portfolio valuations with
staleness warnings. Quotes are fetched from the market data provider before
any ledger lock is taken; a batch is then applied under the write locks of
every ticker in it, so readers never see a half-applied batch.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Any

from ..core.exceptions import PositionNotFound
from ..core.portfolio import Portfolio
from ..core.position import Position
from ..data.providers import MarketDataProvider
from ..utils.validators import validate_ticker, require_positive, quantize_price
from .events import PriceUpdated

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StalePriceWarning:
    """A held position whose last quote is older than the freshness threshold."""
    ticker: str
    last_price_update: Optional[datetime]
    age: Optional[timedelta]

    @property
    def never_priced(self) -> bool:
        return self.last_price_update is None


@dataclass(frozen=True)
class PositionValuation:
    ticker: str
    shares: Decimal
    average_cost_basis: Decimal
    total_cost: Decimal
    current_price: Decimal
    current_value: Decimal
    unrealized_gain_loss: Decimal
    weight_pct: float
    is_significant: bool
    last_price_update: Optional[datetime]
    is_stale: bool


@dataclass(frozen=True)
class PortfolioValuation:
    """Point-in-time valuation read under the portfolio lock."""
    portfolio_id: str
    as_of: datetime
    total_value: Decimal
    total_cost: Decimal
    cash_balance: Decimal
    unrealized_gain_loss: Decimal
    realized_gain_loss: Decimal
    total_return: Decimal
    return_percentage: float
    positions: List[PositionValuation] = field(default_factory=list)
    stale_warnings: List[StalePriceWarning] = field(default_factory=list)

    @property
    def has_stale_prices(self) -> bool:
        return bool(self.stale_warnings)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'portfolio_id': self.portfolio_id,
            'as_of': self.as_of.isoformat(),
            'total_value': float(self.total_value),
            'total_cost': float(self.total_cost),
            'cash_balance': float(self.cash_balance),
            'unrealized_gain_loss': float(self.unrealized_gain_loss),
            'realized_gain_loss': float(self.realized_gain_loss),
            'total_return': float(self.total_return),
            'return_percentage': self.return_percentage,
            'positions': [
                {
                    'ticker': p.ticker,
                    'shares': float(p.shares),
                    'average_cost_basis': float(p.average_cost_basis),
                    'current_price': float(p.current_price),
                    'current_value': float(p.current_value),
                    'unrealized_gain_loss': float(p.unrealized_gain_loss),
                    'weight_pct': p.weight_pct,
                    'is_stale': p.is_stale,
                }
                for p in self.positions
            ],
            'stale_tickers': [w.ticker for w in self.stale_warnings],
        }


@dataclass
class RefreshResult:
    """Outcome of a provider-driven price refresh, by ticker."""
    updated: Dict[str, Decimal] = field(default_factory=dict)
    not_found: List[str] = field(default_factory=list)
    timed_out: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)


class ValuationUpdater:
    """
    Price update and valuation service attached to an AccountingEngine.

    Uses the engine for portfolio lookup and persistence so that price
    updates roll back the same way trades do.
    """

    def __init__(self, engine, market_data: MarketDataProvider = None):
        """
        Initialize the updater.

        Args:
            engine: Owning AccountingEngine
            market_data: Quote source for refresh_prices
        """
        self.engine = engine
        self.market_data = market_data
        self._executor = ThreadPoolExecutor(max_workers=engine.config.price_fetch_workers,
                                            thread_name_prefix="ledger-quotes")

    def update_price(self, portfolio_id: str, ticker: str, new_price, as_of: datetime = None) -> Position:
        """
        Set the market price of one held position.

        current_value becomes shares * price; the portfolio total value is
        recomputed and the day's value recorded.

        Raises:
            PositionNotFound: If the ticker is not held
        """
        return self.update_prices(portfolio_id, {ticker: new_price}, as_of)[validate_ticker(ticker)]

    def update_prices(self, portfolio_id: str, prices: Dict[str, Any],
                      as_of: datetime = None) -> Dict[str, Position]:
        """
        Apply a batch of prices atomically.

        Every ticker must be held; otherwise PositionNotFound is raised and
        nothing is changed.

        Args:
            portfolio_id: Target portfolio
            prices: Ticker -> new price per share
            as_of: Quote timestamp (defaults to now)

        Returns:
            Updated positions keyed by ticker
        """
        validated = self._validate_prices(prices)
        portfolio = self.engine._get_active(portfolio_id)
        return self._apply_prices(portfolio, validated, as_of or datetime.now(), skip_missing=False)

    def refresh_prices(self, portfolio_id: str) -> RefreshResult:
        """
        Fetch quotes for every held ticker and apply them as one batch.

        Quotes are fetched concurrently with a per-refresh timeout. Tickers
        the provider does not know, that time out or that fail keep their
        previous price and show up as stale in later valuations.

        Returns:
            RefreshResult describing each ticker's outcome
        """
        if self.market_data is None:
            raise ValueError("No market data provider configured")

        portfolio = self.engine._get_active(portfolio_id)
        tickers = sorted(portfolio.get_all_positions())
        result = RefreshResult()
        if not tickers:
            return result

        futures = {ticker: self._executor.submit(self.market_data.current_price, ticker) for ticker in tickers}
        wait(futures.values(), timeout=self.engine.config.price_fetch_timeout_seconds)

        fetched: Dict[str, Decimal] = {}
        for ticker, future in futures.items():
            if not future.done():
                future.cancel()
                result.timed_out.append(ticker)
                continue
            error = future.exception()
            if error is not None:
                result.failed[ticker] = str(error)
                continue
            price = future.result()
            if price is None or price <= 0:
                result.not_found.append(ticker)
            else:
                fetched[ticker] = quantize_price(Decimal(str(price)))

        if result.timed_out:
            logger.warning(f"Quote fetch timed out for {result.timed_out}")
        if result.failed:
            logger.warning(f"Quote fetch failed for {sorted(result.failed)}")

        if fetched:
            updated = self._apply_prices(portfolio, fetched, datetime.now(), skip_missing=True)
            result.updated = {ticker: fetched[ticker] for ticker in updated}

        logger.info(f"Refreshed {len(result.updated)}/{len(tickers)} prices for portfolio {portfolio_id}")
        return result

    def _validate_prices(self, prices: Dict[str, Any]) -> Dict[str, Decimal]:
        validated = {}
        for ticker, price in prices.items():
            validated[validate_ticker(ticker)] = require_positive(price, "price")
        return validated

    def _apply_prices(self, portfolio: Portfolio, prices: Dict[str, Decimal],
                      as_of: datetime, skip_missing: bool) -> Dict[str, Position]:
        with portfolio.position_locks(prices):
            with portfolio.persistence_lock:
                with portfolio.lock:
                    held = portfolio.get_all_positions()
                    missing = [ticker for ticker in prices if ticker not in held]
                    if missing and not skip_missing:
                        raise PositionNotFound(portfolio.portfolio_id, missing[0])
                    if missing:
                        logger.info(f"Skipping prices for tickers no longer held: {missing}")

                    updated: Dict[str, Position] = {}
                    states = {}
                    for ticker, price in prices.items():
                        position = held.get(ticker)
                        if position is None:
                            continue
                        states[ticker] = position._capture_state()
                        position._apply_price(price, as_of)
                        updated[ticker] = position

                    if not updated:
                        return updated

                    previous_daily_values = list(portfolio.daily_values)
                    portfolio._recalculate()
                    portfolio._record_daily_value(as_of)
                    values = {ticker: position.current_value for ticker, position in updated.items()}

                def undo():
                    for ticker, position in updated.items():
                        position._restore_state(states[ticker])
                    portfolio.daily_values[:] = previous_daily_values

                self.engine._persist(portfolio, None, undo, "price_update")

        for ticker, position in updated.items():
            self.engine.dispatcher.publish(PriceUpdated(portfolio.portfolio_id, ticker,
                                                        price=position.current_price,
                                                        current_value=values[ticker]))
        logger.debug(f"Applied {len(updated)} prices to portfolio {portfolio.portfolio_id}")
        return updated

    def get_valuation(self, portfolio_id: str, now: datetime = None) -> PortfolioValuation:
        """
        Value a portfolio at current prices, flagging stale quotes.

        A position is stale when it was never priced or its last quote is
        older than the configured threshold.

        Args:
            portfolio_id: Portfolio to value
            now: Reference time for staleness (defaults to now)

        Returns:
            PortfolioValuation with per-position rows and stale warnings
        """
        portfolio = self.engine.get_portfolio(portfolio_id)
        now = now or datetime.now()
        stale_after = self.engine.config.stale_after
        threshold = self.engine.config.significant_weight_pct

        with portfolio.lock:
            rows = []
            warnings = []
            for ticker in sorted(portfolio.get_all_positions()):
                position = portfolio.get_position(ticker)
                stale = position.is_price_stale(now, stale_after)
                last = position.last_price_update
                if stale:
                    warnings.append(StalePriceWarning(ticker, last, now - last if last else None))
                rows.append(PositionValuation(
                    ticker=ticker,
                    shares=position.shares,
                    average_cost_basis=position.average_cost_basis,
                    total_cost=position.total_cost,
                    current_price=position.current_price,
                    current_value=position.current_value,
                    unrealized_gain_loss=position.gain_loss(),
                    weight_pct=portfolio.position_weight(ticker),
                    is_significant=portfolio.is_significant_position(ticker, threshold),
                    last_price_update=last,
                    is_stale=stale,
                ))

            valuation = PortfolioValuation(
                portfolio_id=portfolio_id,
                as_of=now,
                total_value=portfolio.total_value,
                total_cost=portfolio.total_cost,
                cash_balance=portfolio.cash_balance,
                unrealized_gain_loss=portfolio.unrealized_gain_loss(),
                realized_gain_loss=portfolio.realized_gain_loss,
                total_return=portfolio.total_return(),
                return_percentage=portfolio.return_percentage(),
                positions=rows,
                stale_warnings=warnings,
            )

        if warnings:
            logger.warning(f"Portfolio {portfolio_id} has {len(warnings)} stale prices: "
                           f"{[w.ticker for w in warnings]}")
        return valuation

    def shutdown(self, wait_for_fetches: bool = False):
        self._executor.shutdown(wait=wait_for_fetches)
