"""Overdue Reminders - XLSX Data Loader.

Imports invoices and customers from a workbook and returns typed
``Invoice`` and ``Customer`` objects ready for classification.

Sheet layout
~~~~~~~~~~~~

+---------------+-----------------------------------------------------+
| Sheet         | Purpose                                             |
+===============+=====================================================+
| ``Invoices``  | One row per invoice (required)                      |
| ``Customers`` | Customer contacts and consolidation preferences     |
+---------------+-----------------------------------------------------+

Columns are matched by header text (case-insensitive aliases), so column
order does not matter.  Rows that cannot be parsed are skipped and
reported in ``LoadResult.warnings``.

Usage::

    from overdue_reminders.data_loader import load_workbook

    result = load_workbook("data/receivables.xlsx", company_id="acme")
    print(f"Invoices: {len(result.invoices)}")
    result.print_summary()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import IO, Optional, Union

import openpyxl
from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet

from .models import Customer, Invoice, InvoiceStatus

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_INVOICES_SHEET = "Invoices"
_CUSTOMERS_SHEET = "Customers"
DEFAULT_COMPANY_ID = "default"

_INVOICE_HEADERS: dict[str, list[str]] = {
    "id":             ["Invoice ID", "ID"],
    "number":         ["Invoice Number", "Invoice No", "Number"],
    "company":        ["Company", "Company ID"],
    "customer_id":    ["Customer ID"],
    "customer_name":  ["Customer Name", "Customer"],
    "customer_email": ["Customer Email", "Email"],
    "amount":         ["Amount", "Total Due", "Total"],
    "currency":       ["Currency"],
    "due_date":       ["Due Date"],
    "status":         ["Status"],
    "last_reminder":  ["Last Reminder", "Last Reminder At", "Last Reminder Sent"],
}

_CUSTOMER_HEADERS: dict[str, list[str]] = {
    "id":            ["Customer ID", "ID"],
    "company":       ["Company", "Company ID"],
    "name":          ["Name", "Customer Name"],
    "email":         ["Email", "Contact Email"],
    "consolidation": ["Consolidation", "Consolidation Enabled"],
    "min_invoices":  ["Min Invoices", "Min Invoice Count"],
    "min_interval":  ["Min Contact Interval", "Contact Interval Days",
                      "Min Contact Interval Days"],
}

# Cell values that should be treated as null / unknown.
_NULL_SIGNALS: set[str | None] = {"", "#N/A", "N/A", "#REF!", None}


# ---------------------------------------------------------------------------
# Result container
# ---------------------------------------------------------------------------

@dataclass
class LoadResult:
    """Aggregated output from :func:`load_workbook`."""

    invoices: list[Invoice] = field(default_factory=list)
    customers: list[Customer] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    skipped_rows: int = 0

    @property
    def total_amount(self) -> float:
        return round(sum(inv.amount for inv in self.invoices), 2)

    def print_summary(self) -> None:
        print(f"Invoices loaded : {len(self.invoices)}")
        print(f"Customers loaded: {len(self.customers)}")
        print(f"Total amount    : {self.total_amount:,.2f}")
        print(f"Skipped rows    : {self.skipped_rows}")
        for w in self.warnings[:20]:
            print(f"  WARNING: {w}")
        if len(self.warnings) > 20:
            print(f"  ... {len(self.warnings) - 20} more warnings")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def load_workbook(
    source: Union[str, Path, IO[bytes]],
    company_id: str = DEFAULT_COMPANY_ID,
) -> LoadResult:
    """Load invoices and customers from an ``.xlsx`` workbook.

    Args:
        source: File path or binary buffer.
        company_id: Company owning rows that do not name one.

    Raises:
        FileNotFoundError: The path does not exist.
        ValueError: The workbook has no ``Invoices`` sheet.
    """
    wb = _open_workbook(source)
    result = LoadResult()

    if _INVOICES_SHEET not in wb.sheetnames:
        raise ValueError(
            f"No '{_INVOICES_SHEET}' sheet found.  Available sheets: {wb.sheetnames}")

    if _CUSTOMERS_SHEET in wb.sheetnames:
        _parse_customers(wb[_CUSTOMERS_SHEET], company_id, result)
    else:
        logger.info("No '%s' sheet; invoices will be reminded individually", _CUSTOMERS_SHEET)

    _parse_invoices(wb[_INVOICES_SHEET], company_id, result)
    _link_customers(result)

    logger.info(
        "Loaded %d invoices and %d customers (%d rows skipped)",
        len(result.invoices), len(result.customers), result.skipped_rows,
    )
    return result


# ---------------------------------------------------------------------------
# Workbook opening
# ---------------------------------------------------------------------------

def _open_workbook(source: Union[str, Path, IO[bytes]]) -> Workbook:
    """Open an openpyxl Workbook from a file path or bytes buffer."""
    if isinstance(source, (str, Path)):
        path = Path(source)
        if not path.exists():
            raise FileNotFoundError(f"XLSX file not found: {path}")
        logger.info("Opening XLSX file: %s", path)
        return openpyxl.load_workbook(path, data_only=True)

    logger.info("Opening XLSX from bytes buffer")
    return openpyxl.load_workbook(source, data_only=True)


# ---------------------------------------------------------------------------
# Sheet parsing
# ---------------------------------------------------------------------------

def _parse_invoices(ws: Worksheet, company_id: str, result: LoadResult) -> None:
    header_map = _build_header_map(ws, _INVOICE_HEADERS)
    if "amount" not in header_map or "due_date" not in header_map:
        raise ValueError(f"'{ws.title}' sheet needs at least 'Amount' and 'Due Date' columns")

    seen: set[str] = set()
    for row_num, row in enumerate(ws.iter_rows(min_row=2), start=2):
        if all(c.value is None for c in row):
            continue
        ctx = f"{ws.title} row {row_num}"

        number = _clean_str(_cell_value(row, header_map, "number"))
        inv_id = _clean_str(_cell_value(row, header_map, "id")) or number
        if not inv_id:
            result.warnings.append(f"{ctx}: no invoice id or number, skipped")
            result.skipped_rows += 1
            continue
        if inv_id in seen:
            result.warnings.append(f"{ctx}: duplicate invoice id '{inv_id}', skipped")
            result.skipped_rows += 1
            continue

        due = _parse_date(_cell_value(row, header_map, "due_date"), ctx, result.warnings)
        if due is None:
            result.skipped_rows += 1
            continue

        last_reminder = _parse_date(
            _cell_value(row, header_map, "last_reminder"), ctx, result.warnings)

        seen.add(inv_id)
        result.invoices.append(Invoice(
            id=inv_id,
            company_id=_clean_str(_cell_value(row, header_map, "company")) or company_id,
            number=number or inv_id,
            amount=_parse_currency(_cell_value(row, header_map, "amount")),
            currency=_clean_str(_cell_value(row, header_map, "currency")).upper() or "AED",
            due_date=due,
            status=_parse_invoice_status(
                _clean_str_or_none(_cell_value(row, header_map, "status")), ctx, result.warnings),
            customer_id=_clean_str_or_none(_cell_value(row, header_map, "customer_id")),
            customer_name=_clean_str(_cell_value(row, header_map, "customer_name")),
            customer_email=_clean_str(_cell_value(row, header_map, "customer_email")),
            last_reminder_at=(
                datetime.combine(last_reminder, datetime.min.time(), tzinfo=timezone.utc)
                if last_reminder else None
            ),
        ))


def _parse_customers(ws: Worksheet, company_id: str, result: LoadResult) -> None:
    header_map = _build_header_map(ws, _CUSTOMER_HEADERS)
    for row_num, row in enumerate(ws.iter_rows(min_row=2), start=2):
        if all(c.value is None for c in row):
            continue
        cust_id = _clean_str(_cell_value(row, header_map, "id"))
        if not cust_id:
            result.warnings.append(f"{ws.title} row {row_num}: no customer id, skipped")
            result.skipped_rows += 1
            continue

        consolidation_raw = _cell_value(row, header_map, "consolidation")
        result.customers.append(Customer(
            id=cust_id,
            company_id=_clean_str(_cell_value(row, header_map, "company")) or company_id,
            name=_clean_str(_cell_value(row, header_map, "name")),
            email=_clean_str(_cell_value(row, header_map, "email")),
            consolidation_enabled=(
                True if consolidation_raw is None else _parse_bool(consolidation_raw)),
            min_invoice_count=_parse_optional_int(_cell_value(row, header_map, "min_invoices")),
            min_contact_interval_days=_parse_optional_int(
                _cell_value(row, header_map, "min_interval")),
        ))


def _link_customers(result: LoadResult) -> None:
    """Fill invoice contact fields from the linked customer when blank."""
    by_id = {c.id: c for c in result.customers}
    for inv in result.invoices:
        if not inv.customer_id:
            continue
        customer = by_id.get(inv.customer_id)
        if customer is None:
            result.warnings.append(
                f"Invoice {inv.id}: unknown customer '{inv.customer_id}'")
            continue
        inv.customer_name = inv.customer_name or customer.name
        inv.customer_email = inv.customer_email or customer.email


# ---------------------------------------------------------------------------
# Header map builder
# ---------------------------------------------------------------------------

def _build_header_map(
    ws: Worksheet,
    header_spec: dict[str, list[str]],
) -> dict[str, int]:
    """Map logical field names to 0-based column indices from row 1."""
    header_map: dict[str, int] = {}
    row1 = [str(c.value).strip().lower() if c.value is not None else None for c in ws[1]]

    for logical_name, aliases in header_spec.items():
        wanted = {a.lower() for a in aliases}
        for idx, header_text in enumerate(row1):
            if header_text in wanted:
                header_map[logical_name] = idx
                break

    logger.debug("Header map for %s (%d/%d): %s",
                 ws.title, len(header_map), len(header_spec), list(header_map))
    return header_map


def _cell_value(row, header_map: dict[str, int], field_name: str):
    """Read a cell by logical field name; None when the column is absent."""
    idx = header_map.get(field_name)
    if idx is None or idx >= len(row):
        return None
    return row[idx].value


# ---------------------------------------------------------------------------
# Data cleaning / type coercion helpers
# ---------------------------------------------------------------------------

def _clean_str(val) -> str:
    """Convert a cell value to a stripped string.  None becomes ``""``."""
    if val is None:
        return ""
    if isinstance(val, float) and val.is_integer():
        val = int(val)
    s = str(val).strip()
    return "" if s in _NULL_SIGNALS else s


def _clean_str_or_none(val) -> str | None:
    s = _clean_str(val)
    return s or None


def _parse_bool(val) -> bool:
    if isinstance(val, bool):
        return val
    s = str(val).strip().lower()
    return s in ("true", "1", "yes", "y", "enabled")


def _parse_optional_int(val) -> Optional[int]:
    if val is None or _clean_str(val) == "":
        return None
    try:
        return int(float(val))
    except (ValueError, TypeError):
        return None


def _parse_currency(val, default: float = 0.0) -> float:
    """Parse an amount cell.

    Handles numbers, ``"AED 1,234.56"``, ``"$1,234.56"`` and parenthesized
    negatives like ``"(500.00)"``.
    """
    if val is None:
        return default
    if isinstance(val, (int, float)):
        return float(val)

    s = str(val).strip()
    if not s or s in _NULL_SIGNALS:
        return default

    negative = s.startswith("(") and s.endswith(")")
    if negative:
        s = s[1:-1]
    s = s.upper().replace("AED", "").replace("$", "").replace(",", "").strip()
    try:
        amount = float(s)
    except ValueError:
        return default
    return -amount if negative else amount


def _parse_date(val, context: str, warnings: list[str]) -> date | None:
    """Parse a date cell (datetime, Excel serial number or common string formats)."""
    if val is None:
        return None
    if isinstance(val, datetime):
        return val.date()
    if isinstance(val, date):
        return val

    if isinstance(val, (int, float)):
        serial = int(val)
        if 30000 < serial < 60000:
            return (datetime(1899, 12, 30) + timedelta(days=serial)).date()

    s = str(val).strip()
    if not s or s in _NULL_SIGNALS:
        return None
    for fmt in ("%Y-%m-%d", "%d/%m/%Y", "%m/%d/%Y", "%Y-%m-%dT%H:%M:%S",
                "%b %d, %Y", "%B %d, %Y"):
        try:
            return datetime.strptime(s, fmt).date()
        except ValueError:
            continue

    warnings.append(f"{context}: could not parse date '{val}'")
    return None


def _parse_invoice_status(raw: str | None, context: str, warnings: list[str]) -> InvoiceStatus:
    """Map a raw status string to ``InvoiceStatus``; unknown values become SENT."""
    if raw is None:
        return InvoiceStatus.SENT
    key = raw.strip().upper()
    for member in InvoiceStatus:
        if member.value == key:
            return member
    warnings.append(f"{context}: unknown status '{raw}', treated as SENT")
    return InvoiceStatus.SENT
