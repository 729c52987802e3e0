"""
Accounting Engine Components

- AccountingEngine: validated, locked, persisted ledger mutations
- ValuationUpdater: price updates and stale-price aware valuations
- EventDispatcher: asynchronous notification of committed changes
"""

from .accounting import AccountingEngine, Discrepancy
from .valuation import ValuationUpdater, PortfolioValuation, PositionValuation, StalePriceWarning, RefreshResult
from .events import EventDispatcher, DomainEvent

__all__ = ['AccountingEngine', 'Discrepancy', 'ValuationUpdater', 'PortfolioValuation',
           'PositionValuation', 'StalePriceWarning', 'RefreshResult', 'EventDispatcher', 'DomainEvent']
