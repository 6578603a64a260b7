"""
Formatting utilities.
"""

from decimal import Decimal
from typing import Union

Number = Union[int, float, Decimal]


def format_currency(amount: Number, currency: str = "AUD", decimals: int = 2) -> str:
    """
    Format an amount as currency.

    Args:
        amount: The amount in whole units (dollars, not cents).
        currency: Currency code (default AUD).
        decimals: Number of decimal places.

    Returns:
        Formatted currency string, e.g. "A$9,075.00".
    """
    symbols = {
        "AUD": "A$",
        "USD": "$",
        "GBP": "£",
        "EUR": "€",
    }
    symbol = symbols.get(currency, currency + " ")
    sign = "-" if amount < 0 else ""
    return f"{sign}{symbol}{abs(amount):,.{decimals}f}"


def format_percent(value: Number, decimals: int = 2) -> str:
    """
    Format a number as a percentage.

    Args:
        value: The percentage value.
        decimals: Number of decimal places.

    Returns:
        Formatted percentage string.
    """
    return f"{value:.{decimals}f}%"
