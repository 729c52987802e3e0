"""
Portfolio Module

This module provides the Portfolio class, the aggregate owner of a client's
positions and cash. Aggregates (total value, total cost) are always
recomputed from the positions, never adjusted incrementally.

Locking:
- ``position_lock(ticker)`` serializes every mutation of one ticker.
- ``cash_lock`` serializes deposits, withdrawals and fees.
- ``persistence_lock`` is held from the commit of a mutation until it has been
  saved or rolled back. It is taken after any position or cash lock and
  before the portfolio lock.
- ``lock`` (the portfolio lock) is held while mutated state is committed and
  the aggregates recomputed, and by every aggregate read. It is always taken
  after any position locks, never before.
"""

from contextlib import contextmanager, ExitStack
from datetime import datetime, date, timedelta
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Any, Iterable
import threading
import uuid
import json

from ..utils.validators import quantize_money
from .position import Position, DEFAULT_STALE_AFTER

ZERO = Decimal('0')

SIGNIFICANT_WEIGHT_PCT = Decimal('10')


class RiskProfile(Enum):
    """Risk profile set by advisor policy; never derived by the ledger."""
    CONSERVATIVE = "CONSERVATIVE"
    MODERATE = "MODERATE"
    AGGRESSIVE = "AGGRESSIVE"


def _percentage(numerator: Decimal, denominator: Decimal) -> float:
    """numerator / denominator * 100 rounded to 2 dp; 0.0 for a zero denominator."""
    if denominator == 0:
        return 0.0
    return float((numerator / denominator * 100).quantize(Decimal('0.01')))


class Portfolio:
    """
    Portfolio of positions for one client.

    This class provides:
    - Positions keyed by ticker (at most one per ticker)
    - Cash balance, realized gain/loss, dividends and fee totals
    - Aggregates recomputed from positions on every committed mutation
    - Read-only analytics: gain/loss, returns, weights, risk profile checks
    """

    def __init__(self,
                 client_id: str,
                 name: str = "Main Portfolio",
                 risk_profile: RiskProfile = RiskProfile.MODERATE,
                 initial_cash: Decimal = ZERO,
                 portfolio_id: str = None,
                 created_date: datetime = None):
        """
        Initialize a new portfolio.

        Args:
            client_id: Owning client
            name: Portfolio name
            risk_profile: Advisor-assigned risk profile
            initial_cash: Opening cash balance
            portfolio_id: Identifier (generated if omitted)
            created_date: Creation time (defaults to now)
        """
        self.portfolio_id = portfolio_id or str(uuid.uuid4())
        self.client_id = client_id
        self.name = name
        self._risk_profile = RiskProfile(risk_profile)

        self._positions: Dict[str, Position] = {}
        self._position_locks: Dict[str, threading.RLock] = {}
        self._lock = threading.RLock()
        self._cash_lock = threading.RLock()
        self._persistence_lock = threading.RLock()

        # Cash and running totals
        self._cash_balance = quantize_money(initial_cash)
        self._realized_gain_loss = ZERO
        self._cumulative_dividends = ZERO
        self._total_fees = ZERO

        # Aggregates
        self._total_value = ZERO
        self._total_cost = ZERO

        self._is_active = True
        self.created_date = created_date or datetime.now()
        self.last_calculated: Optional[datetime] = None
        self._version = 0

        # One record per day with a price update
        self.daily_values: List[Dict] = []

    # ------------------------------------------------------------------
    # Locks
    # ------------------------------------------------------------------

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    @property
    def cash_lock(self) -> threading.RLock:
        """Write lock for cash movements; ordered like a position lock."""
        return self._cash_lock

    @property
    def persistence_lock(self) -> threading.RLock:
        return self._persistence_lock

    def position_lock(self, ticker: str) -> threading.RLock:
        """Get (creating on first use) the write lock for a ticker."""
        with self._lock:
            lock = self._position_locks.get(ticker)
            if lock is None:
                lock = threading.RLock()
                self._position_locks[ticker] = lock
            return lock

    @contextmanager
    def position_locks(self, tickers: Iterable[str]):
        """Hold the write locks for several tickers, acquired in sorted order."""
        with ExitStack() as stack:
            for ticker in sorted(set(tickers)):
                stack.enter_context(self.position_lock(ticker))
            yield

    # ------------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------------

    @property
    def cash_balance(self) -> Decimal:
        return self._cash_balance

    @property
    def total_value(self) -> Decimal:
        return self._total_value

    @property
    def total_cost(self) -> Decimal:
        return self._total_cost

    @property
    def realized_gain_loss(self) -> Decimal:
        return self._realized_gain_loss

    @property
    def cumulative_dividends(self) -> Decimal:
        return self._cumulative_dividends

    @property
    def total_fees(self) -> Decimal:
        return self._total_fees

    @property
    def risk_profile(self) -> RiskProfile:
        return self._risk_profile

    @property
    def is_active(self) -> bool:
        return self._is_active

    @property
    def version(self) -> int:
        return self._version

    def get_position(self, ticker: str) -> Optional[Position]:
        with self._lock:
            return self._positions.get(ticker)

    def get_all_positions(self) -> Dict[str, Position]:
        with self._lock:
            return self._positions.copy()

    def has_positions(self) -> bool:
        with self._lock:
            return bool(self._positions)

    def get_positions_count(self) -> int:
        with self._lock:
            return len(self._positions)

    # ------------------------------------------------------------------
    # Mutations (engine only, under the portfolio lock)
    # ------------------------------------------------------------------

    def _add_position(self, position: Position):
        if position.ticker in self._positions:
            raise ValueError(f"Position for {position.ticker} already exists")
        self._positions[position.ticker] = position

    def _remove_position(self, ticker: str) -> Optional[Position]:
        return self._positions.pop(ticker, None)

    def _adjust_cash(self, delta: Decimal):
        new_balance = self._cash_balance + delta
        if new_balance < 0:
            raise ValueError(f"Cash balance cannot go negative ({new_balance})")
        self._cash_balance = quantize_money(new_balance)

    def _add_realized_gain_loss(self, amount: Decimal):
        self._realized_gain_loss = quantize_money(self._realized_gain_loss + amount)

    def _add_dividends(self, amount: Decimal):
        self._cumulative_dividends = quantize_money(self._cumulative_dividends + amount)

    def _add_fees(self, amount: Decimal):
        self._total_fees = quantize_money(self._total_fees + amount)

    def _set_risk_profile(self, profile: RiskProfile):
        self._risk_profile = RiskProfile(profile)

    def _set_active(self, active: bool):
        self._is_active = active

    def _recalculate(self, timestamp: datetime = None):
        """Recompute aggregates from the positions and bump the version."""
        self._total_value = sum((p.current_value for p in self._positions.values()), ZERO)
        self._total_cost = sum((p.total_cost for p in self._positions.values()), ZERO)
        self.last_calculated = timestamp or datetime.now()
        self._version += 1

    def _record_daily_value(self, timestamp: datetime):
        """Record the portfolio value for the day; a later update the same day replaces it."""
        record = {
            'date': timestamp.date().isoformat(),
            'timestamp': timestamp.isoformat(),
            'total_value': float(self._total_value),
            'cash_balance': float(self._cash_balance),
            'total_assets': float(self._total_value + self._cash_balance),
            'total_cost': float(self._total_cost),
            'unrealized_gain_loss': float(self._total_value - self._total_cost),
            'realized_gain_loss': float(self._realized_gain_loss),
        }
        if self.daily_values and self.daily_values[-1]['date'] == record['date']:
            self.daily_values[-1] = record
        else:
            self.daily_values.append(record)

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    def unrealized_gain_loss(self) -> Decimal:
        with self._lock:
            return self._total_value - self._total_cost

    def total_gain_loss(self) -> Decimal:
        with self._lock:
            return self._total_value - self._total_cost + self._realized_gain_loss

    def total_return(self) -> Decimal:
        """Total gain/loss plus dividends received."""
        with self._lock:
            return self.total_gain_loss() + self._cumulative_dividends

    def return_percentage(self) -> float:
        """Total return as a percentage of total cost; 0.0 with no cost basis."""
        with self._lock:
            return _percentage(self.total_return(), self._total_cost)

    def total_assets(self) -> Decimal:
        with self._lock:
            return self._total_value + self._cash_balance

    def investment_percentage(self) -> float:
        with self._lock:
            return _percentage(self._total_value, self.total_assets())

    def cash_percentage(self) -> float:
        with self._lock:
            return _percentage(self._cash_balance, self.total_assets())

    def position_weight(self, ticker: str) -> float:
        """
        Share of total assets (positions + cash) held in one ticker, as a percentage.

        Returns 0.0 for an unknown ticker or a zero denominator.
        """
        with self._lock:
            position = self._positions.get(ticker)
            if position is None:
                return 0.0
            return _percentage(position.current_value, self.total_assets())

    def get_position_weights(self) -> Dict[str, float]:
        with self._lock:
            return {ticker: self.position_weight(ticker) for ticker in self._positions}

    def is_significant_position(self, ticker: str,
                                threshold_pct: Decimal = SIGNIFICANT_WEIGHT_PCT) -> bool:
        return self.position_weight(ticker) > float(threshold_pct)

    def days_held(self, today: date = None) -> int:
        today = today or date.today()
        return max((today - self.created_date.date()).days, 0)

    def annualized_return(self, today: date = None) -> float:
        """
        Compounded annualized return as a fraction.

        (1 + total_return / total_cost) ** (365 / days_held) - 1, where
        days_held counts from the portfolio's creation date. Returns 0.0 on
        the creation day and -1.0 once the whole cost basis is lost.
        """
        days = self.days_held(today)
        if days == 0:
            return 0.0
        with self._lock:
            if self._total_cost == 0:
                return 0.0
            fraction = float(self.total_return() / self._total_cost)
        if fraction <= -1.0:
            return -1.0
        return (1 + fraction) ** (365.0 / days) - 1

    def is_profitable(self) -> bool:
        return self.unrealized_gain_loss() > 0

    def is_high_risk(self) -> bool:
        return self._risk_profile is RiskProfile.AGGRESSIVE

    def is_low_risk(self) -> bool:
        return self._risk_profile is RiskProfile.CONSERVATIVE

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def stale_tickers(self, now: datetime = None,
                      stale_after: timedelta = DEFAULT_STALE_AFTER) -> List[str]:
        """Tickers whose last quote is older than ``stale_after`` or missing."""
        with self._lock:
            return sorted(ticker for ticker, position in self._positions.items()
                          if position.is_price_stale(now, stale_after))

    def get_portfolio_summary(self, now: datetime = None,
                              stale_after: timedelta = DEFAULT_STALE_AFTER) -> Dict[str, Any]:
        """
        Get comprehensive portfolio summary.

        Args:
            now: Reference time for price staleness (defaults to now)
            stale_after: Freshness threshold for position prices

        Returns:
            Dictionary with complete portfolio information
        """
        with self._lock:
            stale = self.stale_tickers(now, stale_after)
            return {
                'portfolio_id': self.portfolio_id,
                'client_id': self.client_id,
                'name': self.name,
                'risk_profile': self._risk_profile.value,
                'is_active': self._is_active,

                # Values
                'total_value': float(self._total_value),
                'total_cost': float(self._total_cost),
                'cash_balance': float(self._cash_balance),
                'total_assets': float(self.total_assets()),
                'has_stale_prices': bool(stale),
                'stale_tickers': stale,

                # Performance
                'unrealized_gain_loss': float(self.unrealized_gain_loss()),
                'realized_gain_loss': float(self._realized_gain_loss),
                'total_gain_loss': float(self.total_gain_loss()),
                'cumulative_dividends': float(self._cumulative_dividends),
                'total_return': float(self.total_return()),
                'return_percentage': self.return_percentage(),
                'annualized_return': self.annualized_return(),
                'total_fees': float(self._total_fees),

                # Allocation
                'number_of_positions': len(self._positions),
                'investment_percentage': self.investment_percentage(),
                'cash_percentage': self.cash_percentage(),
                'position_weights': self.get_position_weights(),

                # Timestamps
                'created_date': self.created_date.isoformat(),
                'last_calculated': self.last_calculated.isoformat() if self.last_calculated else None,
                'version': self._version
            }

    def get_detailed_positions(self, now: datetime = None) -> List[Dict]:
        with self._lock:
            return [p.get_position_summary(now) for p in self._positions.values()]

    def to_dict(self) -> Dict[str, Any]:
        """Exact (string-encoded Decimal) representation for snapshots."""
        with self._lock:
            return {
                'portfolio_id': self.portfolio_id,
                'client_id': self.client_id,
                'name': self.name,
                'risk_profile': self._risk_profile.value,
                'is_active': self._is_active,
                'cash_balance': str(self._cash_balance),
                'total_value': str(self._total_value),
                'total_cost': str(self._total_cost),
                'realized_gain_loss': str(self._realized_gain_loss),
                'cumulative_dividends': str(self._cumulative_dividends),
                'total_fees': str(self._total_fees),
                'created_date': self.created_date.isoformat(),
                'last_calculated': self.last_calculated.isoformat() if self.last_calculated else None,
                'version': self._version,
                'positions': [p.to_dict() for p in self._positions.values()],
                'daily_values': list(self.daily_values),
            }

    def export_to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, default=str)

    def __str__(self) -> str:
        return f"Portfolio('{self.name}', {len(self._positions)} positions, ${self._total_value:,.2f})"

    def __repr__(self) -> str:
        return (f"Portfolio(id={self.portfolio_id}, client={self.client_id}, name='{self.name}', "
                f"value=${self._total_value}, active={self._is_active})")
