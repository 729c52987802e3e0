"""
Test cases for transactions and the transaction journal
"""

import json
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from position_ledger import Transaction, TransactionJournal, TransactionStatus, TransactionType
from position_ledger.core.exceptions import DuplicateTransaction, InvalidQuantity, InvalidTransactionState
from position_ledger.core.transaction import BuyDetails, CashDetails, FeeDetails, SellDetails


def make_buy(portfolio_id="p1", ticker="AAPL", shares='10', price='10', fee='0', **kwargs):
    return Transaction(portfolio_id, BuyDetails(Decimal(shares), Decimal(price), Decimal(fee)),
                       ticker=ticker, **kwargs)


def test_transaction_starts_pending():
    transaction = make_buy(fee='1.50')
    assert transaction.is_pending()
    assert transaction.transaction_type == TransactionType.BUY
    assert transaction.total_amount == Decimal('101.50')
    assert transaction.reference_number.startswith("TXN-")
    assert len(transaction.reference_number) == 20


def test_terminal_state_is_final():
    transaction = make_buy()
    transaction.complete()

    with pytest.raises(InvalidTransactionState):
        transaction.cancel("too late")
    with pytest.raises(InvalidTransactionState):
        transaction.fail("too late")
    assert transaction.status == TransactionStatus.COMPLETED
    assert [e['action'] for e in transaction.audit_trail] == [
        "Transaction created", "Status changed from PENDING to COMPLETED"]


def test_cancel_pending():
    transaction = make_buy()
    transaction.cancel("client request")
    assert transaction.status == TransactionStatus.CANCELLED
    assert transaction.audit_trail[-1]['details']['notes'] == "client request"


def test_complete_with_reverts_on_error():
    transaction = make_buy()
    seen = []

    def persist():
        seen.append(transaction.status)
        raise IOError("boom")

    with pytest.raises(IOError):
        transaction._complete_with(persist)

    assert seen == [TransactionStatus.COMPLETED]
    assert transaction.is_pending()


def test_transaction_validation():
    with pytest.raises(InvalidQuantity):
        make_buy(shares='0')
    with pytest.raises(InvalidQuantity):
        make_buy(fee='-1')
    with pytest.raises(InvalidQuantity):
        Transaction("p1", FeeDetails(Decimal('0')))
    with pytest.raises(ValueError):
        Transaction("p1", CashDetails(Decimal('10')))


def test_cash_and_fee_amounts():
    deposit = Transaction("p1", CashDetails(Decimal('250')), transaction_type=TransactionType.DEPOSIT)
    fee = Transaction("p1", FeeDetails(Decimal('12.5'), "Custody"))

    assert deposit.total_amount == Decimal('250.00')
    assert deposit.fee_amount == Decimal('0')
    assert fee.fee_amount == Decimal('12.5')
    assert fee.ticker is None


def test_sell_total_amount():
    sell = Transaction("p1", SellDetails(Decimal('10'), Decimal('12'), Decimal('5')), ticker="AAPL")
    assert sell.total_amount == Decimal('115.00')
    assert sell.realized_gain_loss is None


def test_journal_rejects_duplicates():
    journal = TransactionJournal()
    transaction = make_buy()
    journal.append(transaction)

    with pytest.raises(DuplicateTransaction):
        journal.append(transaction)
    assert len(journal) == 1


def test_journal_queries():
    journal = TransactionJournal()
    start = datetime(2024, 1, 1, 9, 30)
    entries = [
        make_buy("p1", "AAPL", timestamp=start),
        make_buy("p1", "MSFT", timestamp=start + timedelta(days=1)),
        make_buy("p2", "AAPL", timestamp=start + timedelta(days=2)),
    ]
    for transaction in entries:
        transaction.complete()
        journal.append(transaction)
    pending = make_buy("p1", "AAPL", timestamp=start + timedelta(days=3))
    journal.append(pending)

    assert journal.get(entries[0].reference_number) is entries[0]
    assert len(journal.for_portfolio("p1")) == 3
    assert len(journal.by_ticker("AAPL")) == 3
    assert len(journal.by_ticker("AAPL", portfolio_id="p1")) == 2
    assert journal.by_status(TransactionStatus.PENDING) == [pending]
    assert len(journal.by_type(TransactionType.BUY)) == 4
    assert journal.between(start, start + timedelta(days=1)) == entries[:2]
    assert len(journal.completed("p1")) == 2
    assert list(journal) == entries + [pending]


def test_journal_report_and_fees(engine, portfolio_id):
    engine.apply_buy(portfolio_id, 'AAPL', 10, 10, fee=2)
    engine.apply_sell(portfolio_id, 'AAPL', 5, 12, fee=1)
    engine.deposit_cash(portfolio_id, 100)
    engine.apply_fee(portfolio_id, 3)

    report = engine.journal.generate_report(portfolio_id)

    assert engine.journal.total_fees(portfolio_id) == Decimal('6.00')
    assert report['summary']['total_transactions'] == 4
    assert report['summary']['buy_transactions'] == 1
    assert report['summary']['sell_transactions'] == 1
    assert report['summary']['total_volume'] == 160.0
    assert report['summary']['realized_gain_loss'] == 9.0
    assert report['by_ticker']['AAPL']['transaction_count'] == 2
    assert report['failed_transactions'] == 0


def test_journal_dataframe(engine, portfolio_id):
    engine.apply_buy(portfolio_id, 'AAPL', 10, 10)
    engine.apply_dividend(portfolio_id, 'AAPL', 4)

    df = engine.journal.to_dataframe(portfolio_id)

    assert list(df['transaction_type']) == ['BUY', 'DIVIDEND']
    assert df['total_amount'].sum() == pytest.approx(104.0)
    assert (df['status'] == 'COMPLETED').all()


def test_export_to_json(engine, portfolio_id):
    transaction = engine.apply_buy(portfolio_id, 'AAPL', 10, 10)
    data = json.loads(transaction.export_to_json())

    assert data['status'] == 'COMPLETED'
    assert data['details']['shares'] == '10.000000'
    assert len(data['audit_trail']) == 2
