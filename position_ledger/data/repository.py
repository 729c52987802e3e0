"""
Persistence Interface

The engine treats storage as an external collaborator. Implementations must
raise on failure; the engine turns any exception into a PersistenceFailure
and rolls back the in-memory mutation.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from ..core.portfolio import Portfolio
from ..core.transaction import Transaction

logger = logging.getLogger(__name__)


class PortfolioRepository(ABC):
    """Storage collaborator for portfolios and journal entries."""

    @abstractmethod
    def load(self, portfolio_id: str) -> Optional[Portfolio]:
        """Return the portfolio, or None if the id is unknown."""

    @abstractmethod
    def save(self, portfolio: Portfolio) -> None:
        """Persist the portfolio's current state."""

    @abstractmethod
    def append_transaction(self, transaction: Transaction) -> None:
        """Persist one terminal journal entry."""


class InMemoryPortfolioRepository(PortfolioRepository):
    """
    Process-local repository.

    Keeps the live portfolio objects for ``load`` and a serialized copy of
    each saved state, so tests can compare what was persisted with what is
    in memory.
    """

    def __init__(self):
        self._portfolios: Dict[str, Portfolio] = {}
        self._saved_states: Dict[str, Dict] = {}
        self._transactions: List[Dict] = []
        self._lock = threading.Lock()

    def load(self, portfolio_id: str) -> Optional[Portfolio]:
        with self._lock:
            return self._portfolios.get(portfolio_id)

    def save(self, portfolio: Portfolio) -> None:
        state = portfolio.to_dict()
        with self._lock:
            self._portfolios[portfolio.portfolio_id] = portfolio
            self._saved_states[portfolio.portfolio_id] = state
        logger.debug(f"Saved portfolio {portfolio.portfolio_id} (version {state['version']})")

    def append_transaction(self, transaction: Transaction) -> None:
        record = transaction.to_dict()
        with self._lock:
            self._transactions.append(record)

    def saved_state(self, portfolio_id: str) -> Optional[Dict]:
        with self._lock:
            return self._saved_states.get(portfolio_id)

    def saved_transactions(self, portfolio_id: str = None) -> List[Dict]:
        with self._lock:
            return [
                t for t in self._transactions
                if portfolio_id is None or t['portfolio_id'] == portfolio_id
            ]
