"""
Transaction Management Module

This module provides the immutable transaction record and the append-only
journal that serves as the audit trail and replay source for the ledger.
"""

from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Any, Union
from dataclasses import dataclass
from enum import Enum
import threading
import uuid
import json

import pandas as pd

from ..utils.validators import quantize_money
from .exceptions import InvalidQuantity, InvalidTransactionState, DuplicateTransaction

ZERO = Decimal('0')


class TransactionType(Enum):
    """Transaction type enumeration."""
    BUY = "BUY"
    SELL = "SELL"
    DIVIDEND = "DIVIDEND"
    FEE = "FEE"
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"


class TransactionStatus(Enum):
    """Transaction status enumeration."""
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not TransactionStatus.PENDING


@dataclass(frozen=True)
class BuyDetails:
    shares: Decimal
    price_per_share: Decimal
    fee: Decimal = ZERO


@dataclass(frozen=True)
class SellDetails:
    """Sale fields; cost basis and realized gain are filled in once executed."""
    shares: Decimal
    price_per_share: Decimal
    fee: Decimal = ZERO
    cost_basis_sold: Optional[Decimal] = None
    realized_gain_loss: Optional[Decimal] = None


@dataclass(frozen=True)
class DividendDetails:
    amount: Decimal


@dataclass(frozen=True)
class FeeDetails:
    amount: Decimal
    description: str = ""


@dataclass(frozen=True)
class CashDetails:
    amount: Decimal
    description: str = ""


TransactionDetails = Union[BuyDetails, SellDetails, DividendDetails, FeeDetails, CashDetails]

_DETAIL_TYPES = {
    BuyDetails: TransactionType.BUY,
    SellDetails: TransactionType.SELL,
    DividendDetails: TransactionType.DIVIDEND,
    FeeDetails: TransactionType.FEE,
}


def generate_reference_number() -> str:
    return f"TXN-{uuid.uuid4().hex[:16].upper()}"


class Transaction:
    """
    Immutable record of one ledger event.

    A transaction is created PENDING and moves exactly once to COMPLETED,
    CANCELLED or FAILED. Corrections are made by appending a new transaction,
    never by editing a terminal one.
    """

    def __init__(self,
                 portfolio_id: str,
                 details: TransactionDetails,
                 ticker: Optional[str] = None,
                 transaction_type: TransactionType = None,
                 timestamp: datetime = None,
                 reference_number: str = None):
        """
        Initialize a new transaction.

        Args:
            portfolio_id: Owning portfolio
            details: Typed detail record for the event type
            ticker: Ticker symbol (None for cash movements and account fees)
            transaction_type: Required only for CashDetails (DEPOSIT or WITHDRAWAL)
            timestamp: Event time (defaults to now)
            reference_number: Unique reference (generated if omitted)
        """
        if transaction_type is None:
            transaction_type = _DETAIL_TYPES.get(type(details))
            if transaction_type is None:
                raise ValueError("transaction_type is required for cash movements")

        self._portfolio_id = portfolio_id
        self._details = details
        self._ticker = ticker
        self._transaction_type = transaction_type
        self._timestamp = timestamp or datetime.now()
        self._reference_number = reference_number or generate_reference_number()
        self._status = TransactionStatus.PENDING
        self._failure_reason: Optional[str] = None

        self._validate()
        self._total_amount = self._calculate_total_amount()

        self._lock = threading.Lock()
        self.audit_trail: List[Dict] = []
        self._add_audit_entry("Transaction created")

    def _validate(self):
        details = self._details
        if isinstance(details, (BuyDetails, SellDetails)):
            if details.shares is None or details.shares <= 0:
                raise InvalidQuantity("shares", details.shares)
            if details.price_per_share is None or details.price_per_share <= 0:
                raise InvalidQuantity("price_per_share", details.price_per_share)
            if details.fee < 0:
                raise InvalidQuantity("fee", details.fee)
        elif details.amount is None or details.amount <= 0:
            raise InvalidQuantity("amount", details.amount)

    def _calculate_total_amount(self) -> Decimal:
        details = self._details
        if isinstance(details, BuyDetails):
            return quantize_money(details.shares * details.price_per_share + details.fee)
        if isinstance(details, SellDetails):
            return quantize_money(details.shares * details.price_per_share - details.fee)
        return quantize_money(details.amount)

    def _add_audit_entry(self, action: str, details: Dict[str, Any] = None):
        self.audit_trail.append({
            'timestamp': datetime.now().isoformat(),
            'action': action,
            'details': details or {},
        })

    # ------------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------------

    @property
    def portfolio_id(self) -> str:
        return self._portfolio_id

    @property
    def transaction_type(self) -> TransactionType:
        return self._transaction_type

    @property
    def details(self) -> TransactionDetails:
        return self._details

    @property
    def ticker(self) -> Optional[str]:
        return self._ticker

    @property
    def shares(self) -> Optional[Decimal]:
        return getattr(self._details, 'shares', None)

    @property
    def price_per_share(self) -> Optional[Decimal]:
        return getattr(self._details, 'price_per_share', None)

    @property
    def fee_amount(self) -> Decimal:
        if isinstance(self._details, FeeDetails):
            return self._details.amount
        return getattr(self._details, 'fee', ZERO)

    @property
    def total_amount(self) -> Decimal:
        return self._total_amount

    @property
    def status(self) -> TransactionStatus:
        return self._status

    @property
    def timestamp(self) -> datetime:
        return self._timestamp

    @property
    def reference_number(self) -> str:
        return self._reference_number

    @property
    def failure_reason(self) -> Optional[str]:
        return self._failure_reason

    @property
    def realized_gain_loss(self) -> Optional[Decimal]:
        return getattr(self._details, 'realized_gain_loss', None)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _transition(self, new_status: TransactionStatus, notes: str = ""):
        with self._lock:
            if self._status.is_terminal:
                raise InvalidTransactionState(self._reference_number, self._status, new_status)
            old_status = self._status
            self._status = new_status
        self._add_audit_entry(
            f"Status changed from {old_status.value} to {new_status.value}",
            {'old_status': old_status.value, 'new_status': new_status.value, 'notes': notes}
        )

    def _record_execution(self, details: TransactionDetails):
        """Attach execution results (sell cost basis) while still PENDING."""
        if self._status.is_terminal:
            raise InvalidTransactionState(self._reference_number, self._status, self._status)
        if type(details) is not type(self._details):
            raise ValueError("Execution details must match the transaction type")
        self._details = details
        self._add_audit_entry("Execution recorded")

    def complete(self):
        self._transition(TransactionStatus.COMPLETED)

    def _complete_with(self, persist: Callable[[], None]):
        """
        Complete the transaction only if ``persist`` succeeds.

        The status reads COMPLETED while ``persist`` runs so that the stored
        record is the completed one; if ``persist`` raises, the status goes
        back to PENDING and the exception propagates.
        """
        with self._lock:
            if self._status.is_terminal:
                raise InvalidTransactionState(self._reference_number, self._status,
                                              TransactionStatus.COMPLETED)
            self._status = TransactionStatus.COMPLETED
            try:
                persist()
            except Exception:
                self._status = TransactionStatus.PENDING
                raise
        self._add_audit_entry(
            "Status changed from PENDING to COMPLETED",
            {'old_status': 'PENDING', 'new_status': 'COMPLETED', 'notes': ''}
        )

    def cancel(self, reason: str = ""):
        self._transition(TransactionStatus.CANCELLED, reason)

    def fail(self, reason: str = ""):
        self._transition(TransactionStatus.FAILED, reason)
        self._failure_reason = reason

    def is_completed(self) -> bool:
        return self._status is TransactionStatus.COMPLETED

    def is_pending(self) -> bool:
        return self._status is TransactionStatus.PENDING

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Exact representation (Decimals as strings) for snapshots and exports."""
        details = {
            key: (str(value) if isinstance(value, Decimal) else value)
            for key, value in self._details.__dict__.items()
        }
        return {
            'reference_number': self._reference_number,
            'portfolio_id': self._portfolio_id,
            'transaction_type': self._transaction_type.value,
            'ticker': self._ticker,
            'shares': str(self.shares) if self.shares is not None else None,
            'price_per_share': str(self.price_per_share) if self.price_per_share is not None else None,
            'fee_amount': str(self.fee_amount),
            'total_amount': str(self._total_amount),
            'status': self._status.value,
            'timestamp': self._timestamp.isoformat(),
            'failure_reason': self._failure_reason,
            'details': details,
        }

    def export_to_json(self) -> str:
        data = self.to_dict()
        data['audit_trail'] = self.audit_trail
        return json.dumps(data, indent=2, default=str)

    def __str__(self) -> str:
        if self.shares is not None:
            return (f"Transaction({self._transaction_type.value} {self.shares} "
                    f"{self._ticker} @ ${self.price_per_share} [{self._status.value}])")
        return (f"Transaction({self._transaction_type.value} {self._ticker or 'CASH'} "
                f"${self._total_amount} [{self._status.value}])")

    def __repr__(self) -> str:
        return (f"Transaction(ref={self._reference_number}, type={self._transaction_type.value}, "
                f"ticker={self._ticker}, total={self._total_amount}, status={self._status.value})")


class TransactionJournal:
    """
    Append-only journal of transactions.

    Appends are atomic; entries are never removed or replaced. Queries return
    lists in append order.
    """

    def __init__(self):
        self._entries: List[Transaction] = []
        self._by_reference: Dict[str, Transaction] = {}
        self._lock = threading.Lock()
        self.created_date = datetime.now()

    def append(self, transaction: Transaction) -> str:
        """
        Append a transaction.

        Args:
            transaction: Transaction to record

        Returns:
            Reference number

        Raises:
            DuplicateTransaction: If the reference number is already journaled
        """
        with self._lock:
            if transaction.reference_number in self._by_reference:
                raise DuplicateTransaction(transaction.reference_number)
            self._entries.append(transaction)
            self._by_reference[transaction.reference_number] = transaction
        return transaction.reference_number

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(self.entries())

    def entries(self) -> List[Transaction]:
        with self._lock:
            return list(self._entries)

    def get(self, reference_number: str) -> Optional[Transaction]:
        return self._by_reference.get(reference_number)

    def for_portfolio(self, portfolio_id: str) -> List[Transaction]:
        return [t for t in self.entries() if t.portfolio_id == portfolio_id]

    def by_ticker(self, ticker: str, portfolio_id: str = None) -> List[Transaction]:
        return [
            t for t in self.entries()
            if t.ticker == ticker and (portfolio_id is None or t.portfolio_id == portfolio_id)
        ]

    def by_type(self, transaction_type: TransactionType) -> List[Transaction]:
        return [t for t in self.entries() if t.transaction_type == transaction_type]

    def by_status(self, status: TransactionStatus) -> List[Transaction]:
        return [t for t in self.entries() if t.status == status]

    def between(self, start: datetime, end: datetime) -> List[Transaction]:
        return [t for t in self.entries() if start <= t.timestamp <= end]

    def completed(self, portfolio_id: str = None) -> List[Transaction]:
        return [
            t for t in self.entries()
            if t.is_completed() and (portfolio_id is None or t.portfolio_id == portfolio_id)
        ]

    def total_fees(self, portfolio_id: str = None) -> Decimal:
        """Sum of fees on completed transactions."""
        return sum((t.fee_amount for t in self.completed(portfolio_id)), ZERO)

    def generate_report(self, portfolio_id: str = None) -> Dict[str, Any]:
        """
        Generate a transaction report.

        Args:
            portfolio_id: Restrict the report to one portfolio

        Returns:
            Report dictionary with summary and per-ticker breakdown
        """
        transactions = self.completed(portfolio_id)

        buys = [t for t in transactions if t.transaction_type == TransactionType.BUY]
        sells = [t for t in transactions if t.transaction_type == TransactionType.SELL]
        dividends = [t for t in transactions if t.transaction_type == TransactionType.DIVIDEND]
        traded = buys + sells
        total_volume = sum((t.shares * t.price_per_share for t in traded), ZERO)
        total_fees = sum((t.fee_amount for t in transactions), ZERO)

        by_ticker: Dict[str, List[Transaction]] = {}
        for transaction in transactions:
            if transaction.ticker:
                by_ticker.setdefault(transaction.ticker, []).append(transaction)

        return {
            'summary': {
                'total_transactions': len(transactions),
                'buy_transactions': len(buys),
                'sell_transactions': len(sells),
                'dividend_transactions': len(dividends),
                'total_fees': float(total_fees),
                'total_volume': float(total_volume),
                'total_dividends': float(sum((t.total_amount for t in dividends), ZERO)),
                'realized_gain_loss': float(sum((t.realized_gain_loss or ZERO for t in sells), ZERO)),
                'average_trade_size': float(total_volume / len(traded)) if traded else 0.0
            },
            'by_ticker': {
                ticker: {
                    'transaction_count': len(items),
                    'total_volume': float(sum(
                        (t.shares * t.price_per_share for t in items if t.shares is not None), ZERO)),
                    'total_fees': float(sum((t.fee_amount for t in items), ZERO))
                }
                for ticker, items in by_ticker.items()
            },
            'failed_transactions': len([
                t for t in self.entries()
                if t.status == TransactionStatus.FAILED and (portfolio_id is None or t.portfolio_id == portfolio_id)
            ])
        }

    def to_dataframe(self, portfolio_id: str = None) -> pd.DataFrame:
        """
        Journal as a DataFrame, one row per transaction, for audit exports.

        Amount columns are floats; use ``to_dict`` on the transactions when
        exact Decimal values are needed.
        """
        columns = ['reference_number', 'portfolio_id', 'timestamp', 'transaction_type', 'ticker',
                   'shares', 'price_per_share', 'fee_amount', 'total_amount', 'status']
        rows = []
        for t in self.entries():
            if portfolio_id is not None and t.portfolio_id != portfolio_id:
                continue
            rows.append({
                'reference_number': t.reference_number,
                'portfolio_id': t.portfolio_id,
                'timestamp': t.timestamp,
                'transaction_type': t.transaction_type.value,
                'ticker': t.ticker,
                'shares': float(t.shares) if t.shares is not None else None,
                'price_per_share': float(t.price_per_share) if t.price_per_share is not None else None,
                'fee_amount': float(t.fee_amount),
                'total_amount': float(t.total_amount),
                'status': t.status.value,
            })
        return pd.DataFrame(rows, columns=columns)
