"""
Backup Snapshots

A PortfolioSnapshot is an exact, serializable copy of one portfolio and its
journal entries, taken under the portfolio lock so that positions and
aggregates agree with each other.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Any, Iterable

import pandas as pd

from ..core.portfolio import Portfolio
from ..core.transaction import Transaction
from ..utils.validators import PortfolioValidator

logger = logging.getLogger(__name__)


@dataclass
class PortfolioSnapshot:
    """Serialized portfolio state plus the invariant violations found at capture time."""
    portfolio: Dict[str, Any]
    transactions: List[Dict[str, Any]] = field(default_factory=list)
    taken_at: datetime = field(default_factory=datetime.now)
    issues: List[str] = field(default_factory=list)

    @classmethod
    def capture(cls, portfolio: Portfolio, transactions: Iterable[Transaction] = ()) -> 'PortfolioSnapshot':
        """
        Take a snapshot of a live portfolio.

        Args:
            portfolio: Portfolio to copy
            transactions: Journal entries to include

        Returns:
            PortfolioSnapshot
        """
        with portfolio.lock:
            state = portfolio.to_dict()
            issues = PortfolioValidator().validate_portfolio(portfolio)
        if issues:
            logger.warning(f"Snapshot of portfolio {portfolio.portfolio_id} found {len(issues)} issues: {issues}")
        return cls(
            portfolio=state,
            transactions=[t.to_dict() for t in transactions],
            issues=issues,
        )

    @property
    def portfolio_id(self) -> str:
        return self.portfolio['portfolio_id']

    @property
    def is_consistent(self) -> bool:
        return not self.issues

    def to_dict(self) -> Dict[str, Any]:
        return {
            'taken_at': self.taken_at.isoformat(),
            'portfolio': self.portfolio,
            'transactions': self.transactions,
            'issues': list(self.issues),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, default=str)

    @classmethod
    def from_json(cls, payload: str) -> 'PortfolioSnapshot':
        data = json.loads(payload)
        return cls(
            portfolio=data['portfolio'],
            transactions=data.get('transactions', []),
            taken_at=datetime.fromisoformat(data['taken_at']),
            issues=data.get('issues', []),
        )

    def to_dataframes(self) -> Dict[str, pd.DataFrame]:
        """
        Tabular view of the snapshot for spreadsheet-style backups.

        Returns:
            Dictionary with 'positions', 'transactions' and 'daily_values' frames
        """
        positions = pd.DataFrame(self.portfolio.get('positions', []))
        if not positions.empty:
            for column in ('shares', 'average_cost_basis', 'total_cost', 'current_price',
                           'current_value', 'cumulative_dividends'):
                positions[column] = positions[column].astype(float)

        transactions = pd.DataFrame(
            [{k: v for k, v in t.items() if k != 'details'} for t in self.transactions]
        )
        if not transactions.empty:
            transactions['timestamp'] = pd.to_datetime(transactions['timestamp'])
            transactions['total_amount'] = transactions['total_amount'].astype(float)
            transactions['fee_amount'] = transactions['fee_amount'].astype(float)

        daily_values = pd.DataFrame(self.portfolio.get('daily_values', []))
        if not daily_values.empty:
            daily_values['date'] = pd.to_datetime(daily_values['date'])
            daily_values = daily_values.set_index('date')

        return {
            'positions': positions,
            'transactions': transactions,
            'daily_values': daily_values,
        }
