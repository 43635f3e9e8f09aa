"""Reader for the weekly shipping cost-breakdown file.

The provider drops one delimited file per day named ``extras-MMDDYY.csv``.
Charges dated day N appear in the file dated N+1. Columns:

- OrderID: the shipment reference id
- Invoice Number: source invoice id
- Fulfillment without Surcharge: base shipping cost
- Surcharge Applied: carrier surcharges
- Insurance Amount: insurance cost
- Original Invoice: base plus surcharge (insurance excluded)

Refund rows carry parenthesized negative amounts.
"""

import csv
from datetime import date, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any

from fulfillbill.domain.entities import CostBreakdownRow, SourceInvoiceRef
from fulfillbill.utils.amount_parser import parse_optional_amount

COLUMN_REFERENCE = "OrderID"
COLUMN_INVOICE = "Invoice Number"
COLUMN_BASE = "Fulfillment without Surcharge"
COLUMN_SURCHARGE = "Surcharge Applied"
COLUMN_INSURANCE = "Insurance Amount"
COLUMN_TOTAL = "Original Invoice"

ZERO = Decimal("0")
REQUIRED_COLUMNS = (COLUMN_REFERENCE, COLUMN_BASE)


def breakdown_file_date(charge_date: date) -> date:
    """Date of the file that carries charges from ``charge_date``."""
    return charge_date + timedelta(days=1)


def breakdown_filename(file_date: date) -> str:
    """File name for a given file date, e.g. extras-120125.csv."""
    return f"extras-{file_date.strftime('%m%d%y')}.csv"


def _cell(row: dict[str, Any], column: str) -> str | None:
    value = row.get(column)
    if value is None:
        return None
    value = value.strip()
    return value or None


def read_breakdown_file(file_path: str | Path) -> dict[str, Any]:
    """Parse a breakdown file.

    Args:
        file_path: Path to the file

    Returns:
        Dictionary with:
            - rows: list of CostBreakdownRow
            - errors: list of error messages

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the file lacks required columns
    """
    path = Path(file_path)
    if not path.exists():
        raise FileNotFoundError(f"Breakdown file not found: {file_path}")

    rows: list[CostBreakdownRow] = []
    errors: list[str] = []

    with open(path, "r", encoding="utf-8-sig", newline="") as f:
        sample = f.read(1024)
        f.seek(0)
        try:
            delimiter = csv.Sniffer().sniff(sample, delimiters=",;\t|").delimiter
        except csv.Error:
            delimiter = ","

        reader = csv.DictReader(f, delimiter=delimiter)
        if reader.fieldnames is None:
            raise ValueError("Breakdown file has no columns")
        missing_columns = [c for c in REQUIRED_COLUMNS if c not in reader.fieldnames]
        if missing_columns:
            raise ValueError(f"Breakdown file missing required columns: {', '.join(missing_columns)}")

        for row_num, row in enumerate(reader, start=2):
            try:
                reference_id = _cell(row, COLUMN_REFERENCE)
                if not reference_id:
                    errors.append(f"Row {row_num}: Missing {COLUMN_REFERENCE}")
                    continue

                invoice = _cell(row, COLUMN_INVOICE)
                rows.append(
                    CostBreakdownRow(
                        reference_id=reference_id,
                        source_invoice_id=SourceInvoiceRef(int(invoice)) if invoice else None,
                        base_cost=parse_optional_amount(_cell(row, COLUMN_BASE)),
                        surcharge=parse_optional_amount(_cell(row, COLUMN_SURCHARGE)) or ZERO,
                        insurance_cost=parse_optional_amount(_cell(row, COLUMN_INSURANCE)) or ZERO,
                        total=parse_optional_amount(_cell(row, COLUMN_TOTAL)),
                    )
                )
            except ValueError as e:
                errors.append(f"Row {row_num}: {e}")
                continue

    return {"rows": rows, "errors": errors}
