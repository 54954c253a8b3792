"""
Overdue Reminders -- Bucket Classifier

Classifies invoices into aging buckets from their due date and status.
Each bucket selects the reminder template and orders candidates by urgency.

Buckets (inclusive day ranges of ``today - due_date``):
    not_due:          <= 0      (due today or in the future)
    overdue_1_3:      1-3
    overdue_4_7:      4-7
    overdue_8_14:     8-14
    overdue_15_30:    15-30
    overdue_30_plus:  >= 31

PAID and CANCELLED invoices never receive a bucket.  Day counts are
calendar-day differences between date-only values, so the result does not
depend on the time of day or the time zone of the caller.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable, Optional

from .models import Bucket, Invoice, InvoiceStatus


# ---------------------------------------------------------------------------
# Bucket Boundaries
# ---------------------------------------------------------------------------
# Upper bound (inclusive) of each overdue bucket.  A day count belongs to
# the first bucket whose upper bound it does not exceed.

BUCKET_UPPER_BOUNDS: list[tuple[Bucket, int]] = [
    (Bucket.OVERDUE_1_3, 3),
    (Bucket.OVERDUE_4_7, 7),
    (Bucket.OVERDUE_8_14, 14),
    (Bucket.OVERDUE_15_30, 30),
]

BUCKET_LABELS: dict[Bucket, str] = {
    Bucket.NOT_DUE: "Not Yet Due",
    Bucket.OVERDUE_1_3: "1-3 Days Overdue",
    Bucket.OVERDUE_4_7: "4-7 Days Overdue",
    Bucket.OVERDUE_8_14: "8-14 Days Overdue",
    Bucket.OVERDUE_15_30: "15-30 Days Overdue",
    Bucket.OVERDUE_30_PLUS: "30+ Days Overdue",
}

# An invoice counts as reminder-eligible in a summary when it has not been
# reminded within this many days.
SUMMARY_REMINDER_COOLDOWN_DAYS: int = 3


# ---------------------------------------------------------------------------
# Core Classification Functions
# ---------------------------------------------------------------------------

def as_date(value: date | datetime) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def days_overdue(due_date: date | datetime, today: date | datetime) -> int:
    """
    Calendar days between the due date and today.

    Negative when the invoice is not yet due.

    >>> days_overdue(date(2025, 1, 1), date(2025, 1, 5))
    4
    """
    return (as_date(today) - as_date(due_date)).days


def bucket_for_days(days: int) -> Bucket:
    """
    Map a day count onto a bucket.  Boundary days go to the lower bucket.

    >>> bucket_for_days(3)
    <Bucket.OVERDUE_1_3: 'overdue_1_3'>
    >>> bucket_for_days(4)
    <Bucket.OVERDUE_4_7: 'overdue_4_7'>
    """
    if days <= 0:
        return Bucket.NOT_DUE
    for bucket, upper in BUCKET_UPPER_BOUNDS:
        if days <= upper:
            return bucket
    return Bucket.OVERDUE_30_PLUS


def classify(
    due_date: date | datetime | None,
    status: InvoiceStatus,
    today: date | datetime,
) -> Optional[Bucket]:
    """
    Classify a single invoice into an aging bucket.

    Args:
        due_date: The invoice due date.  An invoice without one is treated
            as not yet due.
        status: Invoice lifecycle status.
        today: The evaluation date.

    Returns:
        The bucket, or None ("not applicable") for PAID/CANCELLED invoices.

    Examples:
        >>> classify(date(2025, 1, 1), InvoiceStatus.OVERDUE, date(2025, 1, 5))
        <Bucket.OVERDUE_4_7: 'overdue_4_7'>
        >>> classify(date(2020, 1, 1), InvoiceStatus.PAID, date(2025, 1, 5)) is None
        True
    """
    if status.is_closed:
        return None
    if due_date is None:
        return Bucket.NOT_DUE
    return bucket_for_days(days_overdue(due_date, today))


def classify_invoice(invoice: Invoice, today: date | datetime) -> Optional[Bucket]:
    """Convenience wrapper around :func:`classify` for an Invoice."""
    return classify(invoice.due_date, invoice.status, today)


def most_urgent(buckets: Iterable[Optional[Bucket]]) -> Optional[Bucket]:
    """Return the most urgent bucket, ignoring "not applicable" entries."""
    present = [b for b in buckets if b is not None]
    if not present:
        return None
    return max(present, key=lambda b: b.urgency)


def bucket_label(bucket: Optional[Bucket]) -> str:
    if bucket is None:
        return "Not Applicable"
    return BUCKET_LABELS[bucket]


# ---------------------------------------------------------------------------
# Status Sync
# ---------------------------------------------------------------------------

def sync_status(invoice: Invoice, today: date | datetime) -> bool:
    """
    Move a SENT invoice whose due date has passed to OVERDUE.

    Returns True when the invoice was changed.  Other statuses are left
    alone; in particular PAID/CANCELLED invoices are never touched.
    """
    if invoice.status != InvoiceStatus.SENT or invoice.due_date is None:
        return False
    if days_overdue(invoice.due_date, today) > 0:
        invoice.status = InvoiceStatus.OVERDUE
        return True
    return False


def sync_statuses(invoices: Iterable[Invoice], today: date | datetime) -> int:
    """Apply :func:`sync_status` to every invoice; return how many changed."""
    return sum(1 for inv in invoices if sync_status(inv, today))


# ---------------------------------------------------------------------------
# Bucket Summaries
# ---------------------------------------------------------------------------

@dataclass
class BucketSummary:
    """
    Aggregate view of one bucket for a company.

    Attributes:
        bucket: The bucket summarized.
        invoice_count: Open invoices in the bucket.
        total_amount: Sum of their amounts.
        eligible_count: Invoices not reminded within the cooldown window.
    """
    bucket: Bucket
    invoice_count: int = 0
    total_amount: float = 0.0
    eligible_count: int = 0

    @property
    def label(self) -> str:
        return BUCKET_LABELS[self.bucket]


def is_reminder_eligible(
    invoice: Invoice,
    today: date | datetime,
    cooldown_days: int = SUMMARY_REMINDER_COOLDOWN_DAYS,
) -> bool:
    """True when the invoice was never reminded, or at least ``cooldown_days`` ago."""
    if invoice.last_reminder_at is None:
        return True
    return (as_date(today) - as_date(invoice.last_reminder_at)).days >= cooldown_days


def summarize(
    invoices: Iterable[Invoice],
    today: date | datetime,
) -> dict[Bucket, BucketSummary]:
    """
    Build a summary for every bucket, including empty ones.

    Closed invoices are excluded.  Buckets appear in urgency order.
    """
    summaries = {bucket: BucketSummary(bucket=bucket) for bucket in Bucket}
    for inv in invoices:
        bucket = classify_invoice(inv, today)
        if bucket is None:
            continue
        entry = summaries[bucket]
        entry.invoice_count += 1
        entry.total_amount = round(entry.total_amount + inv.amount, 2)
        if is_reminder_eligible(inv, today):
            entry.eligible_count += 1
    return summaries


def invoices_in_bucket(
    invoices: Iterable[Invoice],
    bucket: Bucket,
    today: date | datetime,
) -> list[Invoice]:
    """Open invoices that currently fall in ``bucket``."""
    return [inv for inv in invoices if classify_invoice(inv, today) == bucket]
