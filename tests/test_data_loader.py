"""Tests for overdue_reminders.data_loader -- XLSX invoice/customer import.

Covers:
- Header aliases in any column order
- Invoice field parsing and type coercion (amounts, dates, statuses)
- Customer consolidation preferences
- Linking invoices to customers
- Skipped rows and warnings
- Error handling (missing file, missing sheet, missing columns)
"""

import io
from datetime import date, datetime, timezone

import openpyxl
import pytest

from overdue_reminders.data_loader import (
    DEFAULT_COMPANY_ID,
    _parse_currency,
    _parse_date,
    load_workbook,
)
from overdue_reminders.models import InvoiceStatus


# ============================================================================
# Workbook builders
# ============================================================================

INVOICE_HEADER = ["Invoice Number", "Customer ID", "Total Due", "Due Date", "Status",
                  "Currency", "Last Reminder"]
CUSTOMER_HEADER = ["Customer ID", "Name", "Email", "Consolidation", "Min Invoices",
                   "Min Contact Interval"]


def _write_workbook(path, invoices, customers=None, invoice_header=INVOICE_HEADER):
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = "Invoices"
    ws.append(invoice_header)
    for row in invoices:
        ws.append(row)
    if customers is not None:
        cs = wb.create_sheet("Customers")
        cs.append(CUSTOMER_HEADER)
        for row in customers:
            cs.append(row)
    wb.save(path)
    return path


@pytest.fixture
def workbook(tmp_path):
    return _write_workbook(
        tmp_path / "receivables.xlsx",
        invoices=[
            ["INV-001", "alpha", 1500.5, datetime(2025, 2, 1), "OVERDUE", "aed", None],
            ["INV-002", "alpha", "AED 2,000.00", "2025-02-20", None, None, "2025-03-01"],
            ["INV-003", "beta", "$300", "15/03/2025", "paid", "USD", None],
            ["INV-004", "ghost", 100, "2025-03-01", "Disputed", None, None],
        ],
        customers=[
            ["alpha", "Alpha Trading", "ap@alpha.example", "yes", 3, None],
            ["beta", "Beta LLC", "pay@beta.example", "no", None, 14],
        ],
    )


# ============================================================================
# Happy path
# ============================================================================

class TestLoadWorkbook:

    def test_counts(self, workbook):
        result = load_workbook(workbook, company_id="acme")
        assert len(result.invoices) == 4
        assert len(result.customers) == 2
        assert result.skipped_rows == 0
        assert result.total_amount == 3900.5

    def test_invoice_fields(self, workbook):
        inv = load_workbook(workbook, company_id="acme").invoices[0]
        assert inv.id == "INV-001"
        assert inv.number == "INV-001"
        assert inv.company_id == "acme"
        assert inv.amount == 1500.5
        assert inv.currency == "AED"
        assert inv.due_date == date(2025, 2, 1)
        assert inv.status == InvoiceStatus.OVERDUE
        assert inv.last_reminder_at is None

    def test_string_cells_coerced(self, workbook):
        invoices = load_workbook(workbook).invoices
        assert invoices[1].amount == 2000.0
        assert invoices[1].due_date == date(2025, 2, 20)
        assert invoices[1].status == InvoiceStatus.SENT
        assert invoices[1].last_reminder_at == datetime(2025, 3, 1, tzinfo=timezone.utc)
        assert invoices[2].amount == 300.0
        assert invoices[2].due_date == date(2025, 3, 15)
        assert invoices[2].status == InvoiceStatus.PAID
        assert invoices[2].currency == "USD"

    def test_default_company(self, workbook):
        result = load_workbook(workbook)
        assert {inv.company_id for inv in result.invoices} == {DEFAULT_COMPANY_ID}

    def test_customer_preferences(self, workbook):
        alpha, beta = load_workbook(workbook).customers
        assert alpha.consolidation_enabled is True
        assert alpha.min_invoice_count == 3
        assert alpha.min_contact_interval_days is None
        assert beta.consolidation_enabled is False
        assert beta.min_contact_interval_days == 14

    def test_invoices_linked_to_customers(self, workbook):
        invoices = load_workbook(workbook).invoices
        assert invoices[0].customer_name == "Alpha Trading"
        assert invoices[0].customer_email == "ap@alpha.example"

    def test_warnings(self, workbook):
        warnings = load_workbook(workbook).warnings
        assert any("unknown status 'Disputed'" in w for w in warnings)
        assert any("unknown customer 'ghost'" in w for w in warnings)

    def test_from_bytes_buffer(self, workbook):
        buffer = io.BytesIO(workbook.read_bytes())
        assert len(load_workbook(buffer).invoices) == 4

    def test_no_customers_sheet(self, tmp_path):
        path = _write_workbook(tmp_path / "only.xlsx",
                               [["INV-1", None, 10, "2025-03-01", None, None, None]])
        result = load_workbook(path)
        assert result.customers == []
        assert result.invoices[0].customer_id is None

    def test_header_aliases_any_order(self, tmp_path):
        path = _write_workbook(
            tmp_path / "alias.xlsx",
            [["2025-01-31", 75, "X-9", "x@buyer.example"]],
            invoice_header=["due date", "AMOUNT", "Invoice ID", "Email"],
        )
        inv = load_workbook(path).invoices[0]
        assert inv.id == "X-9"
        assert inv.amount == 75.0
        assert inv.customer_email == "x@buyer.example"


# ============================================================================
# Skipped rows
# ============================================================================

class TestSkippedRows:

    def test_bad_rows_skipped(self, tmp_path):
        path = _write_workbook(tmp_path / "bad.xlsx", [
            [None, None, 10, "2025-03-01", None, None, None],
            ["INV-1", None, 10, "2025-03-01", None, None, None],
            ["INV-1", None, 20, "2025-03-02", None, None, None],
            ["INV-2", None, 10, "not a date", None, None, None],
            ["INV-3", None, 10, None, None, None, None],
        ])
        result = load_workbook(path)
        assert [inv.id for inv in result.invoices] == ["INV-1"]
        assert result.skipped_rows == 4
        assert any("duplicate invoice id 'INV-1'" in w for w in result.warnings)
        assert any("could not parse date 'not a date'" in w for w in result.warnings)

    def test_blank_rows_ignored(self, tmp_path):
        path = _write_workbook(tmp_path / "blank.xlsx", [
            [None] * 7,
            ["INV-1", None, 10, "2025-03-01", None, None, None],
        ])
        result = load_workbook(path)
        assert len(result.invoices) == 1
        assert result.skipped_rows == 0


# ============================================================================
# Errors
# ============================================================================

class TestErrors:

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_workbook(tmp_path / "nope.xlsx")

    def test_missing_invoices_sheet(self, tmp_path):
        wb = openpyxl.Workbook()
        wb.active.title = "Sheet1"
        path = tmp_path / "wrong.xlsx"
        wb.save(path)
        with pytest.raises(ValueError, match="Invoices"):
            load_workbook(path)

    def test_missing_required_columns(self, tmp_path):
        path = _write_workbook(tmp_path / "cols.xlsx", [["INV-1"]],
                               invoice_header=["Invoice Number"])
        with pytest.raises(ValueError, match="Amount"):
            load_workbook(path)


# ============================================================================
# Coercion helpers
# ============================================================================

class TestHelpers:

    @pytest.mark.parametrize("raw, expected", [
        (None, 0.0),
        (12, 12.0),
        ("AED 1,234.56", 1234.56),
        ("$99", 99.0),
        ("(500.00)", -500.0),
        ("#N/A", 0.0),
        ("abc", 0.0),
    ])
    def test_parse_currency(self, raw, expected):
        assert _parse_currency(raw) == expected

    @pytest.mark.parametrize("raw, expected", [
        (datetime(2025, 1, 2, 13, 0), date(2025, 1, 2)),
        (date(2025, 1, 2), date(2025, 1, 2)),
        (45659, date(2025, 1, 2)),
        ("2025-01-02", date(2025, 1, 2)),
        ("Jan 02, 2025", date(2025, 1, 2)),
        ("N/A", None),
    ])
    def test_parse_date(self, raw, expected):
        assert _parse_date(raw, "ctx", []) == expected

    def test_parse_date_warns(self):
        warnings = []
        assert _parse_date("someday", "row 9", warnings) is None
        assert warnings == ["row 9: could not parse date 'someday'"]
