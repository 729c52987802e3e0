"""
Validation Utilities

Input checks and rounding helpers shared by the ledger entities, plus the
PortfolioValidator used to verify snapshot consistency.
"""

import re
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import List, Union

from ..core.exceptions import InvalidQuantity, InvalidTicker

TICKER_PATTERN = re.compile(r"^[A-Z]{1,5}$")

# Declared scale of each stored field
SHARES_SCALE = Decimal('0.000001')
PRICE_SCALE = Decimal('0.0001')
MONEY_SCALE = Decimal('0.01')
HALF_CENT = Decimal('0.005')

Number = Union[Decimal, int, float, str]


def to_decimal(value: Number, field_name: str = "value") -> Decimal:
    """
    Convert a number to Decimal without going through binary float rounding.

    Args:
        value: Decimal, int, float or numeric string
        field_name: Name used in the error message

    Returns:
        Decimal value
    """
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except (InvalidOperation, ValueError, TypeError):
            raise InvalidQuantity(field_name, value)
    if not result.is_finite():
        raise InvalidQuantity(field_name, value)
    return result


def quantize_shares(value: Decimal) -> Decimal:
    return value.quantize(SHARES_SCALE, rounding=ROUND_HALF_UP)


def quantize_price(value: Decimal) -> Decimal:
    return value.quantize(PRICE_SCALE, rounding=ROUND_HALF_UP)


def quantize_money(value: Decimal) -> Decimal:
    return value.quantize(MONEY_SCALE, rounding=ROUND_HALF_UP)


def validate_ticker(ticker: str) -> str:
    """Return the ticker unchanged if it matches ^[A-Z]{1,5}$."""
    if not isinstance(ticker, str) or not TICKER_PATTERN.match(ticker):
        raise InvalidTicker(ticker)
    return ticker


def require_positive(value: Number, field_name: str) -> Decimal:
    """Convert and check value > 0."""
    result = to_decimal(value, field_name)
    if result <= 0:
        raise InvalidQuantity(field_name, value)
    return result


def require_non_negative(value: Number, field_name: str) -> Decimal:
    """Convert and check value >= 0."""
    result = to_decimal(value, field_name)
    if result < 0:
        raise InvalidQuantity(field_name, value)
    return result


def cost_tolerance(shares: Decimal) -> Decimal:
    """
    Allowed gap between stored total cost and shares * average cost right
    after the average is set.

    Half a unit of the average-cost scale per share, plus half a cent for
    the rounding of the total itself. Positions widen this by half a cent
    for every rounded partial sale since.
    """
    return abs(shares) * Decimal('0.00005') + HALF_CENT


class PortfolioValidator:
    """
    Checks the structural invariants of a portfolio.

    Used by the backup snapshot and by tests; returns a list of human-readable
    violations rather than raising, so callers can report all of them at once.
    """

    def validate_position(self, position) -> List[str]:
        """
        Validate a single position.

        Args:
            position: Position (or anything exposing the same attributes)

        Returns:
            List of violation messages, empty if the position is consistent
        """
        issues = []
        if not TICKER_PATTERN.match(position.ticker or ""):
            issues.append(f"{position.ticker}: invalid ticker")
        if position.shares < 0:
            issues.append(f"{position.ticker}: negative shares {position.shares}")
        if position.total_cost < 0:
            issues.append(f"{position.ticker}: negative total cost {position.total_cost}")
        expected = position.shares * position.average_cost_basis
        tolerance = getattr(position, 'cost_tolerance', None) or cost_tolerance(position.shares)
        if abs(position.total_cost - expected) > tolerance:
            issues.append(
                f"{position.ticker}: total cost {position.total_cost} does not reconcile "
                f"with {position.shares} x {position.average_cost_basis}"
            )
        return issues

    def validate_portfolio(self, portfolio) -> List[str]:
        """
        Validate a portfolio and all of its positions.

        Args:
            portfolio: Portfolio to check

        Returns:
            List of violation messages
        """
        issues = []
        positions = portfolio.get_all_positions()
        for ticker, position in positions.items():
            if ticker != position.ticker:
                issues.append(f"{ticker}: keyed under a different ticker ({position.ticker})")
            issues.extend(self.validate_position(position))

        value_sum = sum((p.current_value for p in positions.values()), Decimal('0'))
        cost_sum = sum((p.total_cost for p in positions.values()), Decimal('0'))
        if portfolio.total_value != value_sum:
            issues.append(f"total value {portfolio.total_value} != sum of positions {value_sum}")
        if portfolio.total_cost != cost_sum:
            issues.append(f"total cost {portfolio.total_cost} != sum of positions {cost_sum}")
        if portfolio.cash_balance < 0:
            issues.append(f"negative cash balance {portfolio.cash_balance}")
        return issues

    def is_valid(self, portfolio) -> bool:
        return not self.validate_portfolio(portfolio)
