"""
Test cases for journal replay, reconciliation and backup snapshots
"""

from decimal import Decimal

import pytest

from position_ledger import PortfolioSnapshot
from position_ledger.core.exceptions import PersistenceFailure
from position_ledger.core.position import Position


def build_history(engine, portfolio_id):
    engine.deposit_cash(portfolio_id, 1000)
    engine.apply_buy(portfolio_id, 'AAPL', 100, 10, fee=1)
    engine.apply_buy(portfolio_id, 'AAPL', 50, 16)
    engine.apply_buy(portfolio_id, 'MSFT', 10, '300.5')
    engine.apply_sell(portfolio_id, 'AAPL', 60, 20, fee=1)
    engine.apply_dividend(portfolio_id, 'AAPL', 50)
    engine.apply_sell(portfolio_id, 'MSFT', 10, 310)
    engine.apply_fee(portfolio_id, 25)
    engine.withdraw_cash(portfolio_id, 100)


def test_replay_rebuilds_portfolio(engine, portfolio_id):
    build_history(engine, portfolio_id)
    live = engine.get_portfolio(portfolio_id)

    rebuilt = engine.replay(engine.get_transactions(portfolio_id))

    assert set(rebuilt.get_all_positions()) == {'AAPL'}
    position = rebuilt.get_position('AAPL')
    assert position.shares == Decimal('90')
    assert position.total_cost == Decimal('1080.00')
    assert position.average_cost_basis == Decimal('12.0000')
    assert rebuilt.realized_gain_loss == live.realized_gain_loss == Decimal('574.00')
    assert rebuilt.cash_balance == live.cash_balance == Decimal('875.00')
    assert rebuilt.total_fees == live.total_fees == Decimal('27.00')
    assert rebuilt.cumulative_dividends == Decimal('50.00')


def test_replay_ignores_unfinished_transactions(engine, repository, portfolio_id):
    engine.apply_buy(portfolio_id, 'AAPL', 10, 10)
    repository.fail_save = True
    with pytest.raises(PersistenceFailure):
        engine.apply_buy(portfolio_id, 'AAPL', 10, 20)
    repository.fail_save = False

    rebuilt = engine.replay(engine.get_transactions(portfolio_id))
    assert rebuilt.get_position('AAPL').shares == Decimal('10')


def test_replay_order_independent_of_input_order(engine, portfolio_id):
    build_history(engine, portfolio_id)
    transactions = engine.get_transactions(portfolio_id)

    forward = engine.replay(transactions)
    backward = engine.replay(list(reversed(transactions)))

    assert forward.to_dict()['positions'][0]['total_cost'] == backward.to_dict()['positions'][0]['total_cost']
    assert forward.realized_gain_loss == backward.realized_gain_loss


def test_reconcile_clean(engine, portfolio_id):
    build_history(engine, portfolio_id)
    assert engine.reconcile(portfolio_id) == []


def test_reconcile_detects_drift(engine, portfolio_id):
    build_history(engine, portfolio_id)
    portfolio = engine.get_portfolio(portfolio_id)

    # state changed without going through the engine
    with portfolio.lock:
        portfolio.get_position('AAPL')._apply_dividend(Decimal('5'))
        portfolio._add_position(Position('GOOG', Decimal('1'), Decimal('100')))

    discrepancies = engine.reconcile(portfolio_id)
    fields = {(d.ticker, d.field) for d in discrepancies}
    assert ('AAPL', 'cumulative_dividends') in fields
    assert ('GOOG', 'position') in fields


def test_snapshot_round_trip(engine, portfolio_id):
    build_history(engine, portfolio_id)
    engine.update_price(portfolio_id, 'AAPL', 25)

    snapshot = engine.snapshot(portfolio_id)
    restored = PortfolioSnapshot.from_json(snapshot.to_json())

    assert snapshot.is_consistent
    assert restored.portfolio_id == portfolio_id
    assert restored.portfolio['total_value'] == '2250.00'
    assert len(restored.transactions) == 9
    assert restored.taken_at == snapshot.taken_at


def test_snapshot_dataframes(engine, portfolio_id):
    build_history(engine, portfolio_id)
    engine.update_price(portfolio_id, 'AAPL', 25)

    frames = engine.snapshot(portfolio_id).to_dataframes()

    assert list(frames['positions']['ticker']) == ['AAPL']
    assert frames['positions']['total_cost'].iloc[0] == 1080.0
    assert len(frames['transactions']) == 9
    assert frames['daily_values']['total_value'].iloc[-1] == 2250.0


def test_snapshot_reports_invariant_violations(engine, portfolio_id):
    engine.apply_buy(portfolio_id, 'AAPL', 10, 10)
    portfolio = engine.get_portfolio(portfolio_id)
    with portfolio.lock:
        portfolio.get_position('AAPL')._total_cost = Decimal('55.00')

    snapshot = engine.snapshot(portfolio_id)
    assert not snapshot.is_consistent
    assert any("does not reconcile" in issue for issue in snapshot.issues)
