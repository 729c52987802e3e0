"""
Test cases for market data providers
"""

from decimal import Decimal

import pandas as pd
import pytest

from position_ledger import AccountingEngine, StaticPriceProvider, YFinanceProvider
import position_ledger.data.providers as providers


class FakeTicker:
    calls = 0

    def __init__(self, symbol):
        self.symbol = symbol

    def history(self, period="5d"):
        FakeTicker.calls += 1
        if self.symbol == "NONE":
            return pd.DataFrame()
        if self.symbol == "FAIL":
            raise ConnectionError("network down")
        return pd.DataFrame({'Close': [101.0, 102.123456]})


def test_static_provider():
    provider = StaticPriceProvider({'AAPL': 150})
    provider.set_price('MSFT', '300.25')

    assert provider.current_price('AAPL') == Decimal('150')
    assert provider.current_price('MSFT') == Decimal('300.25')
    assert provider.current_price('GOOG') is None
    assert provider.is_valid_symbol('MSFT')
    assert not provider.is_valid_symbol('GOOG')


def test_yfinance_provider(monkeypatch):
    monkeypatch.setattr(providers.yf, "Ticker", FakeTicker)
    FakeTicker.calls = 0
    provider = YFinanceProvider(cache_ttl_seconds=60, symbol_mapping={'RELI': 'FAIL'})

    assert provider.current_price('AAPL') == Decimal('102.1235')
    assert provider.current_price('AAPL') == Decimal('102.1235')
    assert FakeTicker.calls == 1
    assert provider.current_price('NONE') is None
    assert provider.is_valid_symbol('AAPL')
    assert not provider.is_valid_symbol('bad symbol')


def test_yfinance_errors_propagate(monkeypatch):
    monkeypatch.setattr(providers.yf, "Ticker", FakeTicker)
    FakeTicker.calls = 0
    provider = YFinanceProvider(symbol_mapping={'RELI': 'FAIL'})

    with pytest.raises(ConnectionError):
        provider.current_price('RELI')
    with pytest.raises(ConnectionError):
        provider.current_price('RELI')
    assert FakeTicker.calls == 2


def test_refresh_reports_provider_errors_as_failed(monkeypatch, repository):
    monkeypatch.setattr(providers.yf, "Ticker", FakeTicker)
    engine = AccountingEngine(repository=repository,
                              market_data=YFinanceProvider(symbol_mapping={'RELI': 'FAIL'}))
    try:
        portfolio_id = engine.create_portfolio("client-4").portfolio_id
        engine.apply_buy(portfolio_id, 'AAPL', 1, 100)
        engine.apply_buy(portfolio_id, 'RELI', 1, 100)
        engine.apply_buy(portfolio_id, 'NONE', 1, 100)

        result = engine.refresh_prices(portfolio_id)

        assert result.updated == {'AAPL': Decimal('102.1235')}
        assert result.failed == {'RELI': "network down"}
        assert result.not_found == ['NONE']
        assert result.timed_out == []
    finally:
        engine.close()
