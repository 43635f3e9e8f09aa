"""Tests for amount parsing and rounding."""

import pytest
from decimal import Decimal

from fulfillbill.utils.amount_parser import minor_unit, parse_amount, parse_optional_amount, round_money, round_raw_cost


@pytest.mark.parametrize(
    "text,expected",
    [
        ("123.45", Decimal("123.45")),
        ("$123.45", Decimal("123.45")),
        ("-123.45", Decimal("-123.45")),
        ("-$123.45", Decimal("-123.45")),
        ("1,234.56", Decimal("1234.56")),
        ("(5.97)", Decimal("-5.97")),
        ("($1,204.50)", Decimal("-1204.50")),
        ("  8.5 ", Decimal("8.5")),
    ],
)
def test_parse_amount(text, expected):
    """Test the amount formats found in files and API payloads."""
    assert parse_amount(text) == expected


@pytest.mark.parametrize("text", ["", "   ", "abc", "NaN", "Infinity"])
def test_parse_amount_invalid(text):
    """Test unparseable and non-finite amounts are rejected."""
    with pytest.raises(ValueError):
        parse_amount(text)


def test_parse_optional_amount():
    """Test blank cells parse to None."""
    assert parse_optional_amount(None) is None
    assert parse_optional_amount("  ") is None
    assert parse_optional_amount("0.15") == Decimal("0.15")


def test_minor_unit():
    """Test zero-decimal currencies round to whole units."""
    assert minor_unit("USD") == Decimal("0.01")
    assert minor_unit("jpy") == Decimal("1")
    assert minor_unit(None) == Decimal("0.01")


def test_round_money():
    """Test halves round away from zero."""
    assert round_money(Decimal("1.275")) == Decimal("1.28")
    assert round_money(Decimal("-1.275")) == Decimal("-1.28")
    assert round_money(Decimal("1.274")) == Decimal("1.27")
    assert round_money(Decimal("1234.5"), "JPY") == Decimal("1235")


def test_round_raw_cost():
    """Test raw costs keep four places."""
    assert round_raw_cost(Decimal("0.0345")) == Decimal("0.0345")
    assert round_raw_cost(Decimal("0.03455")) == Decimal("0.0346")
    assert str(round_raw_cost(Decimal("8.5"))) == "8.5000"
