"""Date parsing utilities."""

from datetime import date, datetime, timedelta
from typing import Any, Optional
from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta

BILLING_PERIODS = ("last-week", "this-week", "last-month", "this-month")


def parse_date(date_str: str, today: Optional[date] = None) -> date:
    """Parse an operator-supplied date string into a date object.

    Supports absolute dates ("2025-01-15", "January 15, 2025") and a few
    relative forms useful for billing runs: "today", "yesterday",
    "last monday" and "this monday".

    Args:
        date_str: Date string in various formats
        today: Reference date (defaults to date.today())

    Returns:
        Date object

    Raises:
        ValueError: If date string cannot be parsed
    """
    date_str = date_str.strip().lower()
    today = today or date.today()

    # Source invoices are dated on Mondays
    relative_dates = {
        "today": today,
        "yesterday": today - timedelta(days=1),
        "this monday": today - timedelta(days=today.weekday()),
        "last monday": today - timedelta(days=today.weekday() or 7),
    }
    if date_str in relative_dates:
        return relative_dates[date_str]

    try:
        dt = date_parser.parse(date_str)
        return dt.date()
    except (ValueError, OverflowError) as e:
        raise ValueError(f"Could not parse date '{date_str}': {e}")


def parse_source_date(value: Any) -> Optional[date]:
    """Parse a date as the cost source reports it.

    The API mixes plain dates ("2025-03-03") with timestamps
    ("2025-03-03T14:22:05.123Z"); only the calendar date is kept.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date_parser.isoparse(str(value)).date()
    except ValueError:
        pass
    try:
        return date_parser.parse(str(value)).date()
    except (ValueError, OverflowError) as e:
        raise ValueError(f"Could not parse source date '{value}': {e}")


def source_invoice_period(invoice_date: date) -> tuple[date, date]:
    """Default billing period covered by a weekly source invoice.

    Invoices close the seven days ending the day before their invoice date.
    """
    return (invoice_date - timedelta(days=7), invoice_date - timedelta(days=1))


def period_cadence(start_date: date, end_date: date) -> str:
    """Billing cadence a period belongs to.

    Periods longer than a week are monthly runs; a week or less is weekly.
    """
    return "monthly" if (end_date - start_date).days >= 7 else "weekly"


def get_date_range(period: str, today: Optional[date] = None) -> tuple[date, date]:
    """Get start and end dates for a billing period.

    Args:
        period: One of last-week, this-week, last-month, this-month
        today: Reference date (defaults to date.today())

    Returns:
        Tuple of (start_date, end_date) for the specified period

    Raises:
        ValueError: If period string is not recognized
    """
    period = period.strip().lower()
    today = today or date.today()

    if period == "this-week":
        start_date = today - timedelta(days=today.weekday())
        return (start_date, today)

    elif period == "last-week":
        # Monday through Sunday of last week
        start_date = today - timedelta(days=today.weekday() + 7)
        return (start_date, start_date + timedelta(days=6))

    elif period == "this-month":
        return (today.replace(day=1), today)

    elif period == "last-month":
        start_date = (today - relativedelta(months=1)).replace(day=1)
        end_date = today.replace(day=1) - timedelta(days=1)
        return (start_date, end_date)

    raise ValueError(f"Unknown period: '{period}'. Supported periods: {', '.join(BILLING_PERIODS)}")
