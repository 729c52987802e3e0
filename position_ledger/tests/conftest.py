"""
Shared fixtures for the position ledger tests
"""

from decimal import Decimal

import pytest

from position_ledger import AccountingEngine, EngineConfig, InMemoryPortfolioRepository, StaticPriceProvider


class FailingRepository(InMemoryPortfolioRepository):
    """In-memory repository that can be told to fail saves or journal appends."""

    def __init__(self):
        super().__init__()
        self.fail_save = False
        self.fail_append = False
        self.save_calls = 0

    def save(self, portfolio):
        self.save_calls += 1
        if self.fail_save:
            raise IOError("disk full")
        super().save(portfolio)

    def append_transaction(self, transaction):
        if self.fail_append:
            raise IOError("journal store unavailable")
        super().append_transaction(transaction)


@pytest.fixture
def repository():
    return FailingRepository()


@pytest.fixture
def prices():
    return StaticPriceProvider({'AAPL': Decimal('150'), 'MSFT': Decimal('300')})


@pytest.fixture
def engine(repository, prices):
    engine = AccountingEngine(repository=repository, market_data=prices,
                              config=EngineConfig(price_fetch_timeout_seconds=2.0))
    yield engine
    engine.close()


@pytest.fixture
def portfolio(engine):
    return engine.create_portfolio("client-1", name="Test Portfolio")


@pytest.fixture
def portfolio_id(portfolio):
    return portfolio.portfolio_id
