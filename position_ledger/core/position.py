"""
Position Management Module

This module provides the Position class for tracking one ticker held within
one portfolio, using a single weighted-average cost basis per ticker.

Positions expose read-only properties. Shares, cost basis and valuation only
change through the private ``_apply_*`` methods, which the accounting engine
calls while holding the position's lock.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Optional, Tuple
import uuid

from ..utils.validators import (
    validate_ticker,
    quantize_shares,
    quantize_price,
    quantize_money,
    cost_tolerance,
    HALF_CENT,
)
from .exceptions import InsufficientShares

ZERO = Decimal('0')

DEFAULT_STALE_AFTER = timedelta(hours=1)


class Position:
    """
    Represents a holding in a single ticker.

    This class tracks:
    - Share quantity (6 dp) and weighted-average cost basis (4 dp)
    - Total cost (2 dp), stored independently and reconciled against
      shares * average cost basis
    - Current price, current value and price freshness
    - Cumulative dividends received
    """

    def __init__(self,
                 ticker: str,
                 shares: Decimal,
                 price_per_share: Decimal,
                 opened_at: datetime = None,
                 company_name: str = None,
                 sector: str = None,
                 exchange: str = None):
        """
        Open a new position from its first purchase.

        Args:
            ticker: Ticker symbol (e.g., 'AAPL'); immutable once created
            shares: Shares bought, must be positive
            price_per_share: Purchase price, becomes the average cost basis
            opened_at: Time of the first purchase (defaults to now)
            company_name: Optional descriptive name
            sector: Optional sector label
            exchange: Optional listing exchange (NYSE, NASDAQ, ...)
        """
        self._ticker = validate_ticker(ticker)
        self.position_id = str(uuid.uuid4())
        self.company_name = company_name
        self.sector = sector
        self.exchange = exchange

        self._shares = quantize_shares(shares)
        self._average_cost_basis = quantize_price(price_per_share)
        self._total_cost = quantize_money(shares * price_per_share)
        self._cost_tolerance = cost_tolerance(self._shares)

        # Valuation
        self._current_price = ZERO
        self._current_value = ZERO
        self._last_price_update: Optional[datetime] = None

        self._cumulative_dividends = ZERO

        self.first_purchase_date = opened_at or datetime.now()
        self.last_updated = self.first_purchase_date

    # ------------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------------

    @property
    def ticker(self) -> str:
        return self._ticker

    @property
    def shares(self) -> Decimal:
        return self._shares

    @property
    def average_cost_basis(self) -> Decimal:
        return self._average_cost_basis

    @property
    def total_cost(self) -> Decimal:
        return self._total_cost

    @property
    def current_price(self) -> Decimal:
        return self._current_price

    @property
    def current_value(self) -> Decimal:
        return self._current_value

    @property
    def cumulative_dividends(self) -> Decimal:
        return self._cumulative_dividends

    @property
    def last_price_update(self) -> Optional[datetime]:
        return self._last_price_update

    @property
    def cost_tolerance(self) -> Decimal:
        """Allowed gap between total cost and shares * average cost basis."""
        return self._cost_tolerance

    @property
    def is_closed(self) -> bool:
        return self._shares == 0

    # ------------------------------------------------------------------
    # Mutations (engine only)
    # ------------------------------------------------------------------

    def _apply_buy(self, shares: Decimal, price_per_share: Decimal, timestamp: datetime = None):
        """
        Add shares and recompute the weighted-average cost basis.

        Args:
            shares: Shares bought
            price_per_share: Purchase price per share
            timestamp: Time of the purchase
        """
        new_total_shares = quantize_shares(self._shares + shares)
        new_total_cost = quantize_money(self._total_cost + shares * price_per_share)

        self._average_cost_basis = quantize_price(new_total_cost / new_total_shares)
        self._shares = new_total_shares
        self._total_cost = new_total_cost
        self._cost_tolerance = cost_tolerance(new_total_shares)

        if self._last_price_update is not None:
            self._current_value = quantize_money(self._shares * self._current_price)
        self.last_updated = timestamp or datetime.now()

    def _apply_sell(self, shares: Decimal, timestamp: datetime = None) -> Decimal:
        """
        Remove shares at the current average cost basis.

        The average cost basis is unchanged; only shares and total cost
        decrease.

        Args:
            shares: Shares sold
            timestamp: Time of the sale

        Returns:
            Cost basis of the sold shares
        """
        if shares > self._shares:
            raise InsufficientShares(self._ticker, shares, self._shares)

        if shares == self._shares:
            # Closing sale takes whatever cost remains so no residue is left
            cost_basis_sold = self._total_cost
        else:
            cost_basis_sold = min(quantize_money(shares * self._average_cost_basis), self._total_cost)
            # each rounded partial sale can move total cost up to half a cent off the average
            self._cost_tolerance += HALF_CENT

        self._shares = quantize_shares(self._shares - shares)
        self._total_cost = self._total_cost - cost_basis_sold

        if self._last_price_update is not None:
            self._current_value = quantize_money(self._shares * self._current_price)
        self.last_updated = timestamp or datetime.now()

        return cost_basis_sold

    def _apply_dividend(self, amount: Decimal, timestamp: datetime = None):
        """Accrue a dividend; shares, cost basis and value are untouched."""
        self._cumulative_dividends = quantize_money(self._cumulative_dividends + amount)
        self.last_updated = timestamp or datetime.now()

    def _apply_price(self, new_price: Decimal, as_of: datetime):
        """
        Update the current market price and recalculate current value.

        Args:
            new_price: New market price per share
            as_of: Timestamp of the quote
        """
        self._current_price = quantize_price(new_price)
        self._current_value = quantize_money(self._shares * new_price)
        self._last_price_update = as_of
        self.last_updated = as_of

    def _capture_state(self) -> Tuple:
        """Mutable state, for rollback after a failed save."""
        return (
            self._shares,
            self._average_cost_basis,
            self._total_cost,
            self._current_price,
            self._current_value,
            self._cumulative_dividends,
            self._last_price_update,
            self.last_updated,
            self._cost_tolerance,
        )

    def _restore_state(self, state: Tuple):
        (
            self._shares,
            self._average_cost_basis,
            self._total_cost,
            self._current_price,
            self._current_value,
            self._cumulative_dividends,
            self._last_price_update,
            self.last_updated,
            self._cost_tolerance,
        ) = state

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    def is_price_stale(self, now: datetime = None, stale_after: timedelta = DEFAULT_STALE_AFTER) -> bool:
        """
        Check whether the last quote is older than the freshness threshold.

        A position that was never priced is stale.

        Args:
            now: Reference time (defaults to now)
            stale_after: Freshness threshold (default 1 hour)
        """
        if self._last_price_update is None:
            return True
        now = now or datetime.now()
        return now - self._last_price_update > stale_after

    def is_reconciled(self) -> bool:
        """Check total cost against shares * average cost basis within rounding tolerance."""
        expected = self._shares * self._average_cost_basis
        return abs(self._total_cost - expected) <= self._cost_tolerance

    def gain_loss(self) -> Decimal:
        """Unrealized gain/loss on the shares held."""
        return self._current_value - self._total_cost

    def gain_loss_percentage(self) -> float:
        if self._total_cost == 0:
            return 0.0
        return float((self.gain_loss() / self._total_cost * 100).quantize(Decimal('0.01')))

    def total_return(self) -> Decimal:
        """Unrealized gain/loss plus dividends received."""
        return self.gain_loss() + self._cumulative_dividends

    def total_return_percentage(self) -> float:
        if self._total_cost == 0:
            return 0.0
        return float((self.total_return() / self._total_cost * 100).quantize(Decimal('0.01')))

    def is_profitable(self) -> bool:
        return self.gain_loss() > 0

    def get_position_summary(self, now: datetime = None) -> Dict:
        """
        Get comprehensive position summary.

        Returns:
            Dictionary with complete position information
        """
        return {
            'ticker': self._ticker,
            'position_id': self.position_id,
            'company_name': self.company_name,
            'sector': self.sector,
            'exchange': self.exchange,

            # Quantity and cost
            'shares': float(self._shares),
            'average_cost_basis': float(self._average_cost_basis),
            'total_cost': float(self._total_cost),

            # Valuation
            'current_price': float(self._current_price),
            'current_value': float(self._current_value),
            'gain_loss': float(self.gain_loss()),
            'gain_loss_percentage': self.gain_loss_percentage(),
            'cumulative_dividends': float(self._cumulative_dividends),
            'total_return_percentage': self.total_return_percentage(),
            'price_stale': self.is_price_stale(now),

            # Timestamps
            'first_purchase_date': self.first_purchase_date.isoformat(),
            'last_price_update': self._last_price_update.isoformat() if self._last_price_update else None,
            'last_updated': self.last_updated.isoformat()
        }

    def to_dict(self) -> Dict:
        """Exact (string-encoded Decimal) representation for snapshots."""
        return {
            'ticker': self._ticker,
            'position_id': self.position_id,
            'company_name': self.company_name,
            'sector': self.sector,
            'exchange': self.exchange,
            'shares': str(self._shares),
            'average_cost_basis': str(self._average_cost_basis),
            'total_cost': str(self._total_cost),
            'current_price': str(self._current_price),
            'current_value': str(self._current_value),
            'cumulative_dividends': str(self._cumulative_dividends),
            'first_purchase_date': self.first_purchase_date.isoformat(),
            'last_price_update': self._last_price_update.isoformat() if self._last_price_update else None,
        }

    def __str__(self) -> str:
        return f"Position({self._ticker}: {self._shares} @ {self._average_cost_basis})"

    def __repr__(self) -> str:
        return (f"Position(ticker={self._ticker}, shares={self._shares}, "
                f"average_cost_basis={self._average_cost_basis}, total_cost={self._total_cost}, "
                f"current_value={self._current_value})")
