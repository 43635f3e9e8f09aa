"""Amount parsing and rounding utilities."""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional
import re

# ISO 4217 currencies without a minor unit
ZERO_DECIMAL_CURRENCIES = frozenset(
    {"BIF", "CLP", "DJF", "GNF", "ISK", "JPY", "KMF", "KRW", "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF"}
)

RAW_COST_QUANTUM = Decimal("0.0001")


def parse_amount(amount_str: str) -> Decimal:
    """Parse an amount string into a Decimal.

    Handles various formats:
    - "123.45"
    - "$123.45"
    - "-123.45"
    - "-$123.45"
    - "1,234.56"
    - "(123.45)" (negative in parentheses, used for refund rows)

    Args:
        amount_str: Amount string

    Returns:
        Decimal amount

    Raises:
        ValueError: If amount string cannot be parsed
    """
    if not amount_str or not amount_str.strip():
        raise ValueError("Empty amount string")

    amount_str = amount_str.strip()

    # Handle parentheses notation (negative)
    is_negative = False
    if amount_str.startswith("(") and amount_str.endswith(")"):
        is_negative = True
        amount_str = amount_str[1:-1]

    # Remove currency symbols and thousands separators
    amount_str = re.sub(r"[$€£¥]", "", amount_str)
    amount_str = amount_str.replace(",", "").strip()

    try:
        amount = Decimal(amount_str)
    except InvalidOperation as e:
        raise ValueError(f"Could not parse amount '{amount_str}': {e}") from e
    if not amount.is_finite():
        raise ValueError(f"Could not parse amount '{amount_str}': not a finite number")
    return -amount if is_negative else amount


def parse_optional_amount(amount_str: Optional[str]) -> Optional[Decimal]:
    """Parse an amount, returning None for blank cells."""
    if amount_str is None or not amount_str.strip():
        return None
    return parse_amount(amount_str)


def round_raw_cost(amount: Decimal) -> Decimal:
    """Round a raw cost to the four places it is stored with."""
    return Decimal(amount).quantize(RAW_COST_QUANTUM, rounding=ROUND_HALF_UP)


def minor_unit(currency: Optional[str]) -> Decimal:
    """Return the quantum for a currency's smallest unit."""
    if currency and currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return Decimal("1")
    return Decimal("0.01")


def round_money(amount: Decimal, currency: Optional[str] = "USD") -> Decimal:
    """Round half-up to the currency's minor unit.

    Examples:
        round_money(Decimal("9.775")) -> Decimal("9.78")
        round_money(Decimal("1234.5"), "JPY") -> Decimal("1235")
    """
    return Decimal(amount).quantize(minor_unit(currency), rounding=ROUND_HALF_UP)
