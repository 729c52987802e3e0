"""
Position Ledger Package

Position and cost-basis accounting for client portfolios: weighted-average
cost basis, realized and unrealized gain/loss, dividends and fees, with
thread-safe mutation, rollback on persistence failure and a replayable
transaction journal.

Key Components:
- Core: Portfolio, Position, Transaction and the error hierarchy
- Engine: AccountingEngine, ValuationUpdater and domain events
- Data: Persistence and market data interfaces, backup snapshots
- Analytics: Performance statistics over recorded daily values
- Utils: Validation and rounding helpers
"""

__version__ = "1.0.0"

# Core imports (first: utils.validators depends on core.exceptions)
from .core.portfolio import Portfolio, RiskProfile
from .core.position import Position
from .core.transaction import Transaction, TransactionJournal, TransactionType, TransactionStatus
from .core.exceptions import AccountingError

# Engine imports
from .engine.accounting import AccountingEngine, Discrepancy
from .engine.valuation import ValuationUpdater, PortfolioValuation, StalePriceWarning

# Data imports
from .data.repository import PortfolioRepository, InMemoryPortfolioRepository
from .data.providers import MarketDataProvider, StaticPriceProvider, YFinanceProvider
from .data.snapshot import PortfolioSnapshot

from .config import EngineConfig

__all__ = [
    # Core
    'Portfolio',
    'RiskProfile',
    'Position',
    'Transaction',
    'TransactionJournal',
    'TransactionType',
    'TransactionStatus',
    'AccountingError',
    # Engine
    'AccountingEngine',
    'Discrepancy',
    'ValuationUpdater',
    'PortfolioValuation',
    'StalePriceWarning',
    # Data
    'PortfolioRepository',
    'InMemoryPortfolioRepository',
    'MarketDataProvider',
    'StaticPriceProvider',
    'YFinanceProvider',
    'PortfolioSnapshot',
    # Config
    'EngineConfig',
]
