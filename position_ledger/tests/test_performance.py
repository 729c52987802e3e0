"""
Test cases for performance analytics over daily values
"""

from datetime import datetime

import pandas as pd
import pytest

from position_ledger.analytics import calculate_performance_metrics, daily_returns, max_drawdown, value_history


def priced_history(engine, portfolio_id, closes):
    engine.apply_buy(portfolio_id, 'AAPL', 10, 100)
    for day, price in enumerate(closes, start=1):
        engine.update_price(portfolio_id, 'AAPL', price, as_of=datetime(2024, 3, day, 16, 0))


def test_value_history(engine, portfolio_id):
    priced_history(engine, portfolio_id, [100, 110, 99])

    values = value_history(engine.get_portfolio(portfolio_id), 'total_value')

    assert list(values) == [1000.0, 1100.0, 990.0]
    assert isinstance(values.index, pd.DatetimeIndex)


def test_empty_history(engine, portfolio_id):
    metrics = calculate_performance_metrics(engine.get_portfolio(portfolio_id))
    assert metrics['observations'] == 0
    assert metrics['period_return'] is None
    assert metrics['max_drawdown'] == 0.0
    assert metrics['sharpe_ratio'] is None


def test_max_drawdown():
    values = pd.Series([100.0, 120.0, 90.0, 130.0, 117.0])
    assert max_drawdown(values) == pytest.approx(-0.25)
    assert max_drawdown(pd.Series([100.0])) == 0.0


def test_daily_returns_skip_zero_values():
    values = pd.Series([0.0, 100.0, 110.0])
    assert list(daily_returns(values)) == pytest.approx([0.1])


def test_performance_metrics(engine, portfolio_id):
    priced_history(engine, portfolio_id, [100, 110, 99, 120])

    metrics = calculate_performance_metrics(engine.get_portfolio(portfolio_id), column='total_value')

    assert metrics['observations'] == 4
    assert metrics['period_return'] == pytest.approx(0.2)
    assert metrics['max_drawdown'] == pytest.approx(-0.1)
    assert metrics['annualized_volatility'] > 0
    assert metrics['sharpe_ratio'] is not None


def test_unknown_column(engine, portfolio_id):
    priced_history(engine, portfolio_id, [100])
    with pytest.raises(ValueError):
        value_history(engine.get_portfolio(portfolio_id), 'nope')
