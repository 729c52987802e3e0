"""
Performance Analytics

Return and risk statistics over a portfolio's recorded daily values. The
ledger records one value per day with a price update; these helpers turn
that history into a pandas series and summarise it.
"""

import logging
from typing import Dict, Optional

import numpy as np
import pandas as pd

from ..core.portfolio import Portfolio

logger = logging.getLogger(__name__)

TRADING_DAYS = 252


def value_history(portfolio: Portfolio, column: str = 'total_assets') -> pd.Series:
    """
    Daily value history of a portfolio.

    Args:
        portfolio: Portfolio whose daily values to read
        column: Recorded field to use ('total_assets', 'total_value', ...)

    Returns:
        pandas.Series indexed by date, empty if nothing was recorded
    """
    with portfolio.lock:
        records = list(portfolio.daily_values)
    if not records:
        return pd.Series(dtype=float, name=column)

    df = pd.DataFrame(records)
    if column not in df.columns:
        raise ValueError(f"Column '{column}' not found in daily values. Available columns: {list(df.columns)}")
    df['date'] = pd.to_datetime(df['date'])
    df = df.drop_duplicates(subset=['date'], keep='last').set_index('date').sort_index()
    return df[column].astype(float).rename(column)


def daily_returns(values: pd.Series) -> pd.Series:
    """Day-over-day percentage change, skipping days that start from zero."""
    values = values[values > 0]
    return values.pct_change().dropna()


def max_drawdown(values: pd.Series) -> float:
    """
    Largest peak-to-trough fall as a (non-positive) fraction.

    Returns 0.0 for fewer than two positive values.
    """
    values = values[values > 0].to_numpy(dtype=float)
    if len(values) < 2:
        return 0.0
    running_max = np.maximum.accumulate(values)
    drawdowns = (values - running_max) / running_max
    return float(drawdowns.min())


def calculate_performance_metrics(portfolio: Portfolio,
                                  risk_free_rate: float = 0.02,
                                  column: str = 'total_assets') -> Dict[str, Optional[float]]:
    """
    Summarise the recorded value history of a portfolio.

    Deposits and withdrawals move total assets too, so returns over
    'total_assets' include external cash flows; use 'total_value' to look
    at invested positions alone.

    Args:
        portfolio: Portfolio to analyse
        risk_free_rate: Annual risk-free rate for the Sharpe ratio
        column: Daily value field to analyse

    Returns:
        Dictionary with period return, annualized volatility, max drawdown
        and Sharpe ratio (None where the history is too short)
    """
    values = value_history(portfolio, column)
    returns = daily_returns(values)

    metrics: Dict[str, Optional[float]] = {
        'observations': int(len(values)),
        'start_value': float(values.iloc[0]) if len(values) else None,
        'end_value': float(values.iloc[-1]) if len(values) else None,
        'period_return': None,
        'mean_daily_return': None,
        'annualized_volatility': None,
        'max_drawdown': max_drawdown(values),
        'sharpe_ratio': None,
        'annualized_return': portfolio.annualized_return(),
    }

    if len(values) >= 2 and values.iloc[0] > 0:
        metrics['period_return'] = float(values.iloc[-1] / values.iloc[0] - 1)

    if len(returns) >= 2:
        mean_return = float(returns.mean())
        volatility = float(returns.std() * np.sqrt(TRADING_DAYS))
        metrics['mean_daily_return'] = mean_return
        metrics['annualized_volatility'] = volatility
        if volatility > 0:
            metrics['sharpe_ratio'] = (mean_return * TRADING_DAYS - risk_free_rate) / volatility
    else:
        logger.info(f"Portfolio {portfolio.portfolio_id} has too little history for volatility")

    return metrics
