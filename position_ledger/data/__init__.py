"""
Data Components

External collaborators of the ledger:
- Persistence interface and an in-memory implementation
- Market data providers (Yahoo Finance, static price tables)
- Backup snapshots
"""

from .repository import PortfolioRepository, InMemoryPortfolioRepository
from .providers import MarketDataProvider, StaticPriceProvider, YFinanceProvider
from .snapshot import PortfolioSnapshot

__all__ = ['PortfolioRepository', 'InMemoryPortfolioRepository', 'MarketDataProvider',
           'StaticPriceProvider', 'YFinanceProvider', 'PortfolioSnapshot']
