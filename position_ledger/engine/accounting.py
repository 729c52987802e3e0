"""
Accounting Engine

The single mutation path for positions and portfolios. Every operation
validates its input, mutates under the ticker's write lock, commits and
recomputes aggregates under the portfolio lock, and persists under the
portfolio's persistence lock before the operation is reported complete. A
persistence failure rolls the in-memory mutation back, saves the restored
state, marks the transaction FAILED and raises PersistenceFailure.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Any

from ..config import EngineConfig
from ..core.exceptions import (
    InsufficientCash,
    InsufficientShares,
    InvalidQuantity,
    PersistenceFailure,
    PortfolioInactive,
    PortfolioNotFound,
    PositionNotFound,
)
from ..core.portfolio import Portfolio, RiskProfile
from ..core.position import Position
from ..core.transaction import (
    Transaction,
    TransactionJournal,
    TransactionType,
    BuyDetails,
    SellDetails,
    DividendDetails,
    FeeDetails,
    CashDetails,
)
from ..data.providers import MarketDataProvider
from ..data.repository import PortfolioRepository, InMemoryPortfolioRepository
from ..data.snapshot import PortfolioSnapshot
from ..utils.validators import (
    validate_ticker,
    require_positive,
    require_non_negative,
    quantize_shares,
    quantize_money,
)
from .events import (
    EventDispatcher,
    PositionOpened,
    SharesBought,
    SharesSold,
    PositionClosed,
    DividendReceived,
)
from .valuation import ValuationUpdater

logger = logging.getLogger(__name__)

ZERO = Decimal('0')

Undo = Callable[[], None]


def _shares_argument(shares) -> Decimal:
    """Positive share count at the ledger's 6 dp precision."""
    value = quantize_shares(require_positive(shares, "shares"))
    if value <= 0:
        raise InvalidQuantity("shares", shares)
    return value


# ----------------------------------------------------------------------
# Ledger mutations
#
# Callers hold the portfolio lock (and, in the engine, the ticker lock).
# Each returns an undo callable that reverses exactly its own changes.
# ----------------------------------------------------------------------

def _execute_buy(portfolio: Portfolio, ticker: str, shares: Decimal, price: Decimal,
                 fee: Decimal, timestamp: datetime) -> Tuple[Position, bool, Undo]:
    position = portfolio.get_position(ticker)
    if position is None:
        position = Position(ticker, shares, price, opened_at=timestamp)
        portfolio._add_position(position)
        opened = True

        def undo_position():
            portfolio._remove_position(ticker)
    else:
        state = position._capture_state()
        position._apply_buy(shares, price, timestamp)
        opened = False

        def undo_position():
            position._restore_state(state)

    portfolio._add_fees(fee)

    def undo():
        undo_position()
        portfolio._add_fees(-fee)

    return position, opened, undo


def _execute_sell(portfolio: Portfolio, ticker: str, shares: Decimal, price: Decimal,
                  fee: Decimal, timestamp: datetime,
                  remove_closed: bool) -> Tuple[Position, Decimal, Decimal, bool, Undo]:
    position = portfolio.get_position(ticker)
    if position is None:
        raise PositionNotFound(portfolio.portfolio_id, ticker)
    if shares > position.shares:
        raise InsufficientShares(ticker, shares, position.shares)

    state = position._capture_state()
    cost_basis_sold = position._apply_sell(shares, timestamp)
    realized = quantize_money(shares * price - cost_basis_sold - fee)
    portfolio._add_realized_gain_loss(realized)
    portfolio._add_fees(fee)

    closed = position.is_closed
    removed = closed and remove_closed
    if removed:
        portfolio._remove_position(ticker)

    def undo():
        position._restore_state(state)
        if removed:
            portfolio._add_position(position)
        portfolio._add_realized_gain_loss(-realized)
        portfolio._add_fees(-fee)

    return position, cost_basis_sold, realized, closed, undo


def _execute_dividend(portfolio: Portfolio, ticker: str, amount: Decimal,
                      timestamp: datetime) -> Tuple[Position, Undo]:
    position = portfolio.get_position(ticker)
    if position is None:
        raise PositionNotFound(portfolio.portfolio_id, ticker)

    state = position._capture_state()
    position._apply_dividend(amount, timestamp)
    portfolio._add_dividends(amount)

    def undo():
        position._restore_state(state)
        portfolio._add_dividends(-amount)

    return position, undo


def _execute_cash(portfolio: Portfolio, delta: Decimal, fee: Decimal = ZERO) -> Undo:
    if portfolio.cash_balance + delta < 0:
        raise InsufficientCash(-delta, portfolio.cash_balance)
    portfolio._adjust_cash(delta)
    portfolio._add_fees(fee)

    def undo():
        portfolio._adjust_cash(-delta)
        portfolio._add_fees(-fee)

    return undo


@dataclass(frozen=True)
class Discrepancy:
    """One field where live state differs from a replay of the journal."""
    ticker: Optional[str]
    field: str
    expected: Any
    actual: Any


class AccountingEngine:
    """
    Mutation façade for the position ledger.

    This class provides:
    - Buy / sell / dividend / fee / cash operations with validation
    - Price updates via the attached ValuationUpdater
    - Journal replay and reconciliation
    - Consistent snapshots for backup
    """

    def __init__(self,
                 repository: PortfolioRepository = None,
                 market_data: MarketDataProvider = None,
                 config: EngineConfig = None,
                 journal: TransactionJournal = None,
                 dispatcher: EventDispatcher = None):
        """
        Initialize the engine.

        Args:
            repository: Persistence collaborator (in-memory if omitted)
            market_data: Quote source for refresh_prices
            config: Engine configuration (defaults if omitted)
            journal: Transaction journal (a new one if omitted)
            dispatcher: Event dispatcher for notifications
        """
        self.config = config or EngineConfig()
        self.repository = repository or InMemoryPortfolioRepository()
        self.journal = journal or TransactionJournal()
        self.dispatcher = dispatcher or EventDispatcher(max_workers=self.config.notification_workers)
        self.valuation = ValuationUpdater(self, market_data)

        self._portfolios: Dict[str, Portfolio] = {}
        self._registry_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Portfolio lifecycle
    # ------------------------------------------------------------------

    def create_portfolio(self,
                         client_id: str,
                         name: str = "Main Portfolio",
                         risk_profile: RiskProfile = RiskProfile.MODERATE,
                         initial_cash: Decimal = ZERO) -> Portfolio:
        """
        Create and persist a portfolio.

        An opening cash balance is recorded as a DEPOSIT transaction so the
        journal alone can rebuild the portfolio.
        """
        initial_cash = require_non_negative(initial_cash, "initial_cash")
        portfolio = Portfolio(client_id, name=name, risk_profile=RiskProfile(risk_profile))
        try:
            self.repository.save(portfolio)
        except Exception as e:
            raise PersistenceFailure("create_portfolio", e) from e

        with self._registry_lock:
            self._portfolios[portfolio.portfolio_id] = portfolio
        logger.info(f"Created portfolio {portfolio.portfolio_id} for client {client_id}")

        if initial_cash > 0:
            self.deposit_cash(portfolio.portfolio_id, initial_cash, "Initial deposit")
        return portfolio

    def get_portfolio(self, portfolio_id: str) -> Portfolio:
        """
        Get the live portfolio, loading it from the repository on first use.

        Raises:
            PortfolioNotFound: If the repository does not know the id
        """
        with self._registry_lock:
            portfolio = self._portfolios.get(portfolio_id)
            if portfolio is not None:
                return portfolio
            try:
                portfolio = self.repository.load(portfolio_id)
            except Exception as e:
                raise PersistenceFailure("load", e) from e
            if portfolio is None:
                raise PortfolioNotFound(portfolio_id)
            self._portfolios[portfolio_id] = portfolio
            return portfolio

    def _get_active(self, portfolio_id: str) -> Portfolio:
        portfolio = self.get_portfolio(portfolio_id)
        if not portfolio.is_active:
            raise PortfolioInactive(portfolio_id)
        return portfolio

    def archive_portfolio(self, portfolio_id: str) -> Portfolio:
        """Mark a portfolio inactive; it keeps its positions and history."""
        portfolio = self.get_portfolio(portfolio_id)
        with portfolio.persistence_lock:
            with portfolio.lock:
                if not portfolio.is_active:
                    return portfolio
                portfolio._set_active(False)
            self._persist(portfolio, None, lambda: portfolio._set_active(True), "archive")
        logger.info(f"Archived portfolio {portfolio_id}")
        return portfolio

    def set_risk_profile(self, portfolio_id: str, risk_profile: RiskProfile) -> Portfolio:
        """Record the advisor-assigned risk profile."""
        profile = RiskProfile(risk_profile)
        portfolio = self._get_active(portfolio_id)
        with portfolio.persistence_lock:
            with portfolio.lock:
                previous = portfolio.risk_profile
                portfolio._set_risk_profile(profile)
            self._persist(portfolio, None, lambda: portfolio._set_risk_profile(previous), "set_risk_profile")
        return portfolio

    # ------------------------------------------------------------------
    # Position operations
    # ------------------------------------------------------------------

    def apply_buy(self,
                  portfolio_id: str,
                  ticker: str,
                  shares,
                  price_per_share,
                  fee=ZERO) -> Transaction:
        """
        Buy shares, opening the position on the first purchase.

        The average cost basis becomes (old total cost + shares * price) /
        (old shares + shares). The fee is charged to the transaction total
        and the portfolio's fee total, not to the cost basis.

        Args:
            portfolio_id: Target portfolio
            ticker: Ticker symbol
            shares: Shares bought (> 0)
            price_per_share: Purchase price (> 0)
            fee: Commission (>= 0)

        Returns:
            COMPLETED BUY transaction
        """
        ticker = validate_ticker(ticker)
        shares = _shares_argument(shares)
        price = require_positive(price_per_share, "price_per_share")
        fee = quantize_money(require_non_negative(fee, "fee"))
        portfolio = self._get_active(portfolio_id)

        with portfolio.position_lock(ticker):
            with portfolio.persistence_lock:
                with portfolio.lock:
                    if not portfolio.is_active:
                        raise PortfolioInactive(portfolio_id)
                    transaction = Transaction(portfolio_id, BuyDetails(shares, price, fee), ticker=ticker)
                    position, opened, undo = _execute_buy(
                        portfolio, ticker, shares, price, fee, transaction.timestamp)
                    portfolio._recalculate()
                    average_cost_basis = position.average_cost_basis
                self._persist(portfolio, transaction, undo, "buy")

        logger.info(f"BUY {shares} {ticker} @ {price} in {portfolio_id} "
                    f"(avg cost {average_cost_basis})")
        if opened:
            self.dispatcher.publish(PositionOpened(portfolio_id, ticker, shares=shares, price_per_share=price))
        else:
            self.dispatcher.publish(SharesBought(portfolio_id, ticker, shares=shares, price_per_share=price,
                                                 average_cost_basis=average_cost_basis))
        return transaction

    def apply_sell(self,
                   portfolio_id: str,
                   ticker: str,
                   shares,
                   price_per_share,
                   fee=ZERO) -> Tuple[Transaction, Decimal]:
        """
        Sell shares at the position's average cost basis.

        The average cost basis is unchanged; shares and total cost decrease.
        Realized gain/loss = shares * price - cost basis of sold shares - fee.

        Args:
            portfolio_id: Target portfolio
            ticker: Ticker symbol
            shares: Shares sold (> 0 and <= held)
            price_per_share: Sale price (> 0)
            fee: Commission (>= 0)

        Returns:
            Tuple of (COMPLETED SELL transaction, cost basis of the sold shares)

        Raises:
            InsufficientShares: If more shares are requested than held
            PositionNotFound: If no position exists for the ticker
        """
        ticker = validate_ticker(ticker)
        shares = _shares_argument(shares)
        price = require_positive(price_per_share, "price_per_share")
        fee = quantize_money(require_non_negative(fee, "fee"))
        portfolio = self._get_active(portfolio_id)

        with portfolio.position_lock(ticker):
            with portfolio.persistence_lock:
                with portfolio.lock:
                    if not portfolio.is_active:
                        raise PortfolioInactive(portfolio_id)
                    position = portfolio.get_position(ticker)
                    if position is None:
                        raise PositionNotFound(portfolio_id, ticker)
                    if shares > position.shares:
                        raise InsufficientShares(ticker, shares, position.shares)

                    transaction = Transaction(portfolio_id, SellDetails(shares, price, fee), ticker=ticker)
                    position, cost_basis_sold, realized, closed, undo = _execute_sell(
                        portfolio, ticker, shares, price, fee, transaction.timestamp,
                        self.config.remove_closed_positions)
                    transaction._record_execution(
                        SellDetails(shares, price, fee, cost_basis_sold=cost_basis_sold, realized_gain_loss=realized))
                    portfolio._recalculate()
                self._persist(portfolio, transaction, undo, "sell")

        logger.info(f"SELL {shares} {ticker} @ {price} in {portfolio_id} (realized {realized})")
        self.dispatcher.publish(SharesSold(portfolio_id, ticker, shares=shares, price_per_share=price,
                                           realized_gain_loss=realized))
        if closed:
            self.dispatcher.publish(PositionClosed(portfolio_id, ticker, realized_gain_loss=realized))
        return transaction, cost_basis_sold

    def apply_dividend(self, portfolio_id: str, ticker: str, amount) -> Transaction:
        """
        Record a cash dividend on a held position.

        Only cumulative dividends change, on the position and the portfolio;
        shares, cost basis and current value are untouched.

        Raises:
            PositionNotFound: If the ticker is not held
        """
        ticker = validate_ticker(ticker)
        amount = quantize_money(require_positive(amount, "amount"))
        if amount <= 0:
            raise InvalidQuantity("amount", amount)
        portfolio = self._get_active(portfolio_id)

        with portfolio.position_lock(ticker):
            with portfolio.persistence_lock:
                with portfolio.lock:
                    if not portfolio.is_active:
                        raise PortfolioInactive(portfolio_id)
                    if portfolio.get_position(ticker) is None:
                        raise PositionNotFound(portfolio_id, ticker)
                    transaction = Transaction(portfolio_id, DividendDetails(amount), ticker=ticker)
                    position, undo = _execute_dividend(portfolio, ticker, amount, transaction.timestamp)
                    portfolio._recalculate()
                self._persist(portfolio, transaction, undo, "dividend")

        logger.info(f"DIVIDEND {amount} on {ticker} in {portfolio_id}")
        self.dispatcher.publish(DividendReceived(portfolio_id, ticker, amount=amount))
        return transaction

    # ------------------------------------------------------------------
    # Cash operations
    # ------------------------------------------------------------------

    def _apply_cash(self, portfolio_id: str, transaction_type: TransactionType,
                    details, delta: Decimal, fee: Decimal, operation: str) -> Transaction:
        portfolio = self._get_active(portfolio_id)
        with portfolio.cash_lock:
            with portfolio.persistence_lock:
                with portfolio.lock:
                    if not portfolio.is_active:
                        raise PortfolioInactive(portfolio_id)
                    if portfolio.cash_balance + delta < 0:
                        raise InsufficientCash(-delta, portfolio.cash_balance)
                    transaction = Transaction(portfolio_id, details, transaction_type=transaction_type)
                    undo = _execute_cash(portfolio, delta, fee)
                    portfolio._recalculate()
                self._persist(portfolio, transaction, undo, operation)
        logger.info(f"{transaction_type.value} {details.amount} in {portfolio_id}")
        return transaction

    def deposit_cash(self, portfolio_id: str, amount, description: str = "Cash deposit") -> Transaction:
        amount = quantize_money(require_positive(amount, "amount"))
        return self._apply_cash(portfolio_id, TransactionType.DEPOSIT,
                                CashDetails(amount, description), amount, ZERO, "deposit")

    def withdraw_cash(self, portfolio_id: str, amount, description: str = "Cash withdrawal") -> Transaction:
        """
        Raises:
            InsufficientCash: If the amount exceeds the cash balance
        """
        amount = quantize_money(require_positive(amount, "amount"))
        return self._apply_cash(portfolio_id, TransactionType.WITHDRAWAL,
                                CashDetails(amount, description), -amount, ZERO, "withdrawal")

    def apply_fee(self, portfolio_id: str, amount, description: str = "") -> Transaction:
        """
        Charge an account-level fee against cash.

        Raises:
            InsufficientCash: If the cash balance cannot cover the fee
        """
        amount = quantize_money(require_positive(amount, "amount"))
        return self._apply_cash(portfolio_id, TransactionType.FEE,
                                FeeDetails(amount, description), -amount, amount, "fee")

    # ------------------------------------------------------------------
    # Valuation (delegated)
    # ------------------------------------------------------------------

    def update_price(self, portfolio_id: str, ticker: str, new_price, as_of: datetime = None) -> Position:
        return self.valuation.update_price(portfolio_id, ticker, new_price, as_of)

    def update_prices(self, portfolio_id: str, prices: Dict[str, Any],
                      as_of: datetime = None) -> Dict[str, Position]:
        return self.valuation.update_prices(portfolio_id, prices, as_of)

    def refresh_prices(self, portfolio_id: str):
        return self.valuation.refresh_prices(portfolio_id)

    def get_valuation(self, portfolio_id: str, now: datetime = None):
        return self.valuation.get_valuation(portfolio_id, now)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persist(self, portfolio: Portfolio, transaction: Optional[Transaction],
                 undo: Undo, operation: str):
        """
        Save the portfolio and journal the transaction, or roll back.

        The caller holds the portfolio's persistence lock from the commit of
        the mutation, so storage never receives another writer's save while
        this one is unresolved. After a rollback the restored state is saved
        again whichever step failed.
        """
        def write():
            self.repository.save(portfolio)
            if transaction is not None:
                self.repository.append_transaction(transaction)

        try:
            if transaction is None:
                write()
            else:
                transaction._complete_with(write)
        except Exception as e:
            with portfolio.lock:
                undo()
                portfolio._recalculate()
            logger.error(f"{operation} on portfolio {portfolio.portfolio_id} rolled back: {str(e)}")
            self._resave_after_rollback(portfolio)
            if transaction is not None:
                transaction.fail(str(e))
                self.journal.append(transaction)
            raise PersistenceFailure(operation, e) from e

        if transaction is not None:
            self.journal.append(transaction)

    def _resave_after_rollback(self, portfolio: Portfolio):
        """Best-effort save of the state restored by a rollback."""
        try:
            self.repository.save(portfolio)
        except Exception as e:
            logger.error(f"Could not restore persisted state of portfolio {portfolio.portfolio_id} "
                         f"after rollback: {str(e)}")

    # ------------------------------------------------------------------
    # Journal replay and reconciliation
    # ------------------------------------------------------------------

    def get_transactions(self, portfolio_id: str) -> List[Transaction]:
        return self.journal.for_portfolio(portfolio_id)

    def replay(self,
               transactions: Iterable[Transaction],
               portfolio_id: str = None,
               client_id: str = "replay",
               created_date: datetime = None) -> Portfolio:
        """
        Rebuild a portfolio from journal entries.

        Only COMPLETED transactions are applied, in timestamp order. Nothing
        is persisted, journaled or published.

        Args:
            transactions: Journal entries (any order)
            portfolio_id: Identifier for the rebuilt portfolio
            client_id: Client of the rebuilt portfolio
            created_date: Creation date of the rebuilt portfolio

        Returns:
            Rebuilt Portfolio
        """
        portfolio = Portfolio(client_id, portfolio_id=portfolio_id, created_date=created_date)
        completed = sorted((t for t in transactions if t.is_completed()), key=lambda t: t.timestamp)

        with portfolio.lock:
            for transaction in completed:
                details = transaction.details
                transaction_type = transaction.transaction_type
                if transaction_type == TransactionType.BUY:
                    _execute_buy(portfolio, transaction.ticker, details.shares, details.price_per_share,
                                 details.fee, transaction.timestamp)
                elif transaction_type == TransactionType.SELL:
                    _execute_sell(portfolio, transaction.ticker, details.shares, details.price_per_share,
                                  details.fee, transaction.timestamp, self.config.remove_closed_positions)
                elif transaction_type == TransactionType.DIVIDEND:
                    _execute_dividend(portfolio, transaction.ticker, details.amount, transaction.timestamp)
                elif transaction_type == TransactionType.DEPOSIT:
                    _execute_cash(portfolio, details.amount)
                elif transaction_type == TransactionType.WITHDRAWAL:
                    _execute_cash(portfolio, -details.amount)
                elif transaction_type == TransactionType.FEE:
                    _execute_cash(portfolio, -details.amount, details.amount)
            portfolio._recalculate()

        logger.info(f"Replayed {len(completed)} transactions into portfolio {portfolio.portfolio_id}")
        return portfolio

    def reconcile(self, portfolio_id: str) -> List[Discrepancy]:
        """
        Compare live state with a replay of the journal.

        Call between operations; a mutation in flight may be reflected in
        live state before its transaction reaches the journal.

        Returns:
            List of discrepancies (empty when the ledger agrees with the journal)
        """
        portfolio = self.get_portfolio(portfolio_id)
        rebuilt = self.replay(self.journal.completed(portfolio_id), portfolio_id=portfolio_id,
                              client_id=portfolio.client_id, created_date=portfolio.created_date)

        discrepancies = []
        with portfolio.lock:
            live_positions = portfolio.get_all_positions()
            rebuilt_positions = rebuilt.get_all_positions()
            for ticker in sorted(set(live_positions) | set(rebuilt_positions)):
                live = live_positions.get(ticker)
                expected = rebuilt_positions.get(ticker)
                if live is None or expected is None:
                    discrepancies.append(Discrepancy(ticker, 'position', expected is not None, live is not None))
                    continue
                for field_name in ('shares', 'average_cost_basis', 'total_cost', 'cumulative_dividends'):
                    expected_value = getattr(expected, field_name)
                    actual_value = getattr(live, field_name)
                    if expected_value != actual_value:
                        discrepancies.append(Discrepancy(ticker, field_name, expected_value, actual_value))

            for field_name in ('cash_balance', 'realized_gain_loss', 'cumulative_dividends', 'total_fees'):
                expected_value = getattr(rebuilt, field_name)
                actual_value = getattr(portfolio, field_name)
                if expected_value != actual_value:
                    discrepancies.append(Discrepancy(None, field_name, expected_value, actual_value))

        if discrepancies:
            logger.warning(f"Portfolio {portfolio_id} has {len(discrepancies)} discrepancies with its journal")
        return discrepancies

    def snapshot(self, portfolio_id: str) -> PortfolioSnapshot:
        """Consistent snapshot of a portfolio and its journal for backup."""
        portfolio = self.get_portfolio(portfolio_id)
        return PortfolioSnapshot.capture(portfolio, self.journal.for_portfolio(portfolio_id))

    def close(self):
        """Stop the notification and quote-fetch worker pools."""
        self.valuation.shutdown()
        self.dispatcher.shutdown()
