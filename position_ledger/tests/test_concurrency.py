"""
Test cases for concurrent mutation and reading of one portfolio
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

from position_ledger.core.exceptions import InsufficientShares


def test_concurrent_buys_same_ticker(engine, portfolio_id):
    """No buy is lost when many threads buy the same ticker"""
    def buy(i):
        engine.apply_buy(portfolio_id, 'AAPL', 1, 10 + i % 5)

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(buy, range(200)))

    position = engine.get_portfolio(portfolio_id).get_position('AAPL')
    assert position.shares == Decimal('200')
    assert position.total_cost == Decimal(sum(10 + i % 5 for i in range(200)))
    assert engine.reconcile(portfolio_id) == []


def test_concurrent_sells_never_oversell(engine, portfolio_id):
    engine.apply_buy(portfolio_id, 'AAPL', 100, 10)
    outcomes = []
    outcomes_lock = threading.Lock()

    def sell(_):
        try:
            engine.apply_sell(portfolio_id, 'AAPL', 10, 12)
            result = 'sold'
        except InsufficientShares:
            result = 'rejected'
        except Exception as e:  # PositionNotFound once the position is closed
            result = type(e).__name__
        with outcomes_lock:
            outcomes.append(result)

    with ThreadPoolExecutor(max_workers=10) as pool:
        list(pool.map(sell, range(20)))

    portfolio = engine.get_portfolio(portfolio_id)
    assert outcomes.count('sold') == 10
    assert portfolio.get_position('AAPL') is None
    assert portfolio.realized_gain_loss == Decimal('200.00')


def test_readers_see_consistent_aggregates(engine, portfolio_id):
    """Aggregates always equal the sum of positions while writers run"""
    tickers = ['AAPL', 'MSFT', 'GOOG', 'AMZN']
    for ticker in tickers:
        engine.apply_buy(portfolio_id, ticker, 10, 100)
    portfolio = engine.get_portfolio(portfolio_id)
    stop = threading.Event()
    violations = []

    def reader():
        while not stop.is_set():
            with portfolio.lock:
                positions = portfolio.get_all_positions().values()
                value_sum = sum((p.current_value for p in positions), Decimal('0'))
                cost_sum = sum((p.total_cost for p in positions), Decimal('0'))
                if value_sum != portfolio.total_value or cost_sum != portfolio.total_cost:
                    violations.append((value_sum, portfolio.total_value))

    def writer(i):
        ticker = tickers[i % len(tickers)]
        if i % 3 == 0:
            engine.update_prices(portfolio_id, {t: 100 + i % 7 for t in tickers})
        elif i % 3 == 1:
            engine.apply_buy(portfolio_id, ticker, 1, 100 + i % 11)
        else:
            engine.apply_sell(portfolio_id, ticker, 1, 105)

    readers = [threading.Thread(target=reader) for _ in range(2)]
    for thread in readers:
        thread.start()
    with ThreadPoolExecutor(max_workers=6) as pool:
        list(pool.map(writer, range(300)))
    stop.set()
    for thread in readers:
        thread.join()

    assert violations == []
    assert engine.reconcile(portfolio_id) == []


def test_independent_portfolios_in_parallel(engine):
    portfolios = [engine.create_portfolio(f"client-{i}") for i in range(4)]

    def trade(portfolio):
        for _ in range(25):
            engine.apply_buy(portfolio.portfolio_id, 'AAPL', 2, 10)
            engine.apply_sell(portfolio.portfolio_id, 'AAPL', 1, 11)

    with ThreadPoolExecutor(max_workers=4) as pool:
        list(pool.map(trade, portfolios))

    for portfolio in portfolios:
        assert portfolio.get_position('AAPL').shares == Decimal('25')
        assert portfolio.realized_gain_loss == Decimal('25.00')
