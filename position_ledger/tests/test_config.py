"""
Test cases for engine configuration loading
"""

import json
from datetime import timedelta
from decimal import Decimal

import pytest

from position_ledger import EngineConfig


def test_defaults():
    config = EngineConfig.load()
    assert config.stale_after == timedelta(hours=1)
    assert config.significant_weight_pct == Decimal('10')
    assert config.remove_closed_positions is True


def test_load_from_file(tmp_path):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({
        "stale_after_minutes": 15,
        "significant_weight_pct": 12.5,
        "log_level": "DEBUG",
        "unknown_key": 1,
    }))

    config = EngineConfig.load(str(config_path))

    assert config.stale_after == timedelta(minutes=15)
    assert config.significant_weight_pct == Decimal('12.5')
    assert config.log_level == "DEBUG"


@pytest.mark.parametrize("overrides", [
    {"stale_after_minutes": 0},
    {"price_fetch_timeout_seconds": -1},
    {"notification_workers": 0},
])
def test_invalid_values(overrides):
    with pytest.raises(ValueError):
        EngineConfig.from_dict(overrides)


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        EngineConfig.load(str(tmp_path / "missing.json"))


def test_keep_closed_positions(repository):
    from position_ledger import AccountingEngine

    engine = AccountingEngine(repository=repository, config=EngineConfig(remove_closed_positions=False))
    try:
        portfolio = engine.create_portfolio("client-1")
        engine.apply_buy(portfolio.portfolio_id, 'AAPL', 10, 10)
        engine.apply_sell(portfolio.portfolio_id, 'AAPL', 10, 12)

        position = portfolio.get_position('AAPL')
        assert position.is_closed
        assert position.total_cost == Decimal('0')
        assert engine.reconcile(portfolio.portfolio_id) == []

        engine.apply_buy(portfolio.portfolio_id, 'AAPL', 5, 20)
        assert position.average_cost_basis == Decimal('20')
    finally:
        engine.close()
