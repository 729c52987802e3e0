"""
Core Ledger Components

The fundamental building blocks of the position ledger:
- Portfolio: Aggregate owner of positions, cash and running totals
- Position: Holding in one ticker with weighted-average cost basis
- Transaction: Typed journal entry with a PENDING -> terminal lifecycle
"""

from .portfolio import Portfolio, RiskProfile
from .position import Position
from .transaction import Transaction, TransactionJournal, TransactionType, TransactionStatus

__all__ = ['Portfolio', 'RiskProfile', 'Position', 'Transaction', 'TransactionJournal',
           'TransactionType', 'TransactionStatus']
