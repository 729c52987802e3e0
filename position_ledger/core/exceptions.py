"""
Accounting Errors

Every rejected ledger operation raises one of the typed errors below so that
callers can render an actionable message instead of a generic failure.
"""

from decimal import Decimal
from typing import Optional


class AccountingError(Exception):
    """Base class for all ledger errors."""


class InvalidQuantity(AccountingError):
    """Shares, price or amount outside the allowed range."""

    def __init__(self, field_name: str, value):
        self.field_name = field_name
        self.value = value
        super().__init__(f"Invalid {field_name}: {value}")


class InvalidTicker(AccountingError):
    """Ticker symbol does not match the accepted format."""

    def __init__(self, ticker):
        self.ticker = ticker
        super().__init__(f"Invalid ticker symbol: {ticker!r}")


class InsufficientShares(AccountingError):
    """Sell request larger than the held position."""

    def __init__(self, ticker: str, requested: Decimal, held: Decimal):
        self.ticker = ticker
        self.requested = requested
        self.held = held
        super().__init__(
            f"Cannot sell {requested} shares of {ticker}, only {held} held"
        )


class InsufficientCash(AccountingError):
    """Cash movement larger than the available balance."""

    def __init__(self, requested: Decimal, available: Decimal):
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient cash. Required: {requested}, Available: {available}"
        )


class PositionNotFound(AccountingError):
    """No open position for the ticker in the portfolio."""

    def __init__(self, portfolio_id: str, ticker: str):
        self.portfolio_id = portfolio_id
        self.ticker = ticker
        super().__init__(f"No position found for {ticker} in portfolio {portfolio_id}")


class PortfolioNotFound(AccountingError):
    """Unknown portfolio id."""

    def __init__(self, portfolio_id: str):
        self.portfolio_id = portfolio_id
        super().__init__(f"Portfolio not found: {portfolio_id}")


class PortfolioInactive(AccountingError):
    """Mutation attempted on an archived portfolio."""

    def __init__(self, portfolio_id: str):
        self.portfolio_id = portfolio_id
        super().__init__(f"Portfolio {portfolio_id} is archived")


class InvalidTransactionState(AccountingError):
    """Status transition out of a terminal state."""

    def __init__(self, reference_number: str, current_status, requested_status):
        self.reference_number = reference_number
        self.current_status = current_status
        self.requested_status = requested_status
        super().__init__(
            f"Transaction {reference_number} is {current_status.value}, "
            f"cannot move to {requested_status.value}"
        )


class DuplicateTransaction(AccountingError):
    """Journal already holds a transaction with this reference number."""

    def __init__(self, reference_number: str):
        self.reference_number = reference_number
        super().__init__(f"Duplicate transaction reference: {reference_number}")


class PersistenceFailure(AccountingError):
    """Saving the mutated state failed; the mutation was rolled back."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        message = f"Persistence failed during {operation}"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)
