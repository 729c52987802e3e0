"""
Portfolio Analytics Components

Performance statistics over recorded daily values:
- Value history and daily returns
- Volatility, maximum drawdown and Sharpe ratio
"""

from .performance import value_history, daily_returns, max_drawdown, calculate_performance_metrics

__all__ = ['value_history', 'daily_returns', 'max_drawdown', 'calculate_performance_metrics']
