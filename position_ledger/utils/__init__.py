"""
Utility Components

Input validation, rounding helpers and portfolio consistency checks.
"""

from .validators import PortfolioValidator

__all__ = ['PortfolioValidator']
