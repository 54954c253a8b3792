"""Tests for overdue_reminders.bucket_classifier -- aging buckets.

Covers:
- Every bucket boundary (exact boundary values, +-1)
- PAID / CANCELLED invoices are not applicable
- Missing due dates, datetime inputs
- SENT -> OVERDUE status sync
- Bucket summaries and reminder eligibility
- most_urgent ordering
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from helpers import TODAY, make_invoice
from overdue_reminders.bucket_classifier import (
    BUCKET_LABELS,
    bucket_for_days,
    bucket_label,
    classify,
    classify_invoice,
    days_overdue,
    invoices_in_bucket,
    is_reminder_eligible,
    most_urgent,
    summarize,
    sync_status,
    sync_statuses,
)
from overdue_reminders.models import Bucket, InvoiceStatus


# ============================================================================
# Boundaries
# ============================================================================

class TestBucketBoundaries:

    @pytest.mark.parametrize("days, expected", [
        (-30, Bucket.NOT_DUE),
        (-1, Bucket.NOT_DUE),
        (0, Bucket.NOT_DUE),
        (1, Bucket.OVERDUE_1_3),
        (3, Bucket.OVERDUE_1_3),
        (4, Bucket.OVERDUE_4_7),
        (7, Bucket.OVERDUE_4_7),
        (8, Bucket.OVERDUE_8_14),
        (14, Bucket.OVERDUE_8_14),
        (15, Bucket.OVERDUE_15_30),
        (30, Bucket.OVERDUE_15_30),
        (31, Bucket.OVERDUE_30_PLUS),
        (999, Bucket.OVERDUE_30_PLUS),
    ])
    def test_bucket_for_days(self, days, expected):
        assert bucket_for_days(days) == expected

    @pytest.mark.parametrize("days, expected", [
        (0, Bucket.NOT_DUE),
        (3, Bucket.OVERDUE_1_3),
        (7, Bucket.OVERDUE_4_7),
        (14, Bucket.OVERDUE_8_14),
        (30, Bucket.OVERDUE_15_30),
        (31, Bucket.OVERDUE_30_PLUS),
    ])
    def test_classify_from_due_date(self, days, expected):
        due = TODAY - timedelta(days=days)
        assert classify(due, InvoiceStatus.OVERDUE, TODAY) == expected

    def test_four_days_after_due_date(self):
        assert classify(date(2025, 1, 1), InvoiceStatus.OVERDUE, date(2025, 1, 5)) == \
            Bucket.OVERDUE_4_7

    def test_days_overdue_negative_before_due(self):
        assert days_overdue(date(2025, 1, 10), date(2025, 1, 5)) == -5


# ============================================================================
# Status handling
# ============================================================================

class TestStatuses:

    @pytest.mark.parametrize("status", [InvoiceStatus.PAID, InvoiceStatus.CANCELLED])
    def test_closed_invoices_not_applicable(self, status):
        assert classify(date(2020, 1, 1), status, TODAY) is None

    @pytest.mark.parametrize("status", [
        InvoiceStatus.DRAFT, InvoiceStatus.SENT, InvoiceStatus.OVERDUE,
    ])
    def test_open_statuses_classified(self, status):
        assert classify(TODAY - timedelta(days=10), status, TODAY) == Bucket.OVERDUE_8_14

    def test_missing_due_date_is_not_due(self):
        assert classify(None, InvoiceStatus.SENT, TODAY) == Bucket.NOT_DUE

    def test_datetime_inputs_use_calendar_days(self):
        due = datetime(2025, 3, 6, 23, 59, tzinfo=timezone.utc)
        now = datetime(2025, 3, 10, 0, 1, tzinfo=timezone.utc)
        assert classify(due, InvoiceStatus.SENT, now) == Bucket.OVERDUE_4_7

    def test_classify_invoice(self):
        inv = make_invoice("INV-1", TODAY - timedelta(days=2))
        assert classify_invoice(inv, TODAY) == Bucket.OVERDUE_1_3


class TestSyncStatus:

    def test_sent_past_due_becomes_overdue(self):
        inv = make_invoice("INV-1", TODAY - timedelta(days=1))
        assert sync_status(inv, TODAY) is True
        assert inv.status == InvoiceStatus.OVERDUE

    def test_due_today_stays_sent(self):
        inv = make_invoice("INV-1", TODAY)
        assert sync_status(inv, TODAY) is False
        assert inv.status == InvoiceStatus.SENT

    @pytest.mark.parametrize("status", [
        InvoiceStatus.PAID, InvoiceStatus.CANCELLED, InvoiceStatus.DRAFT, InvoiceStatus.OVERDUE,
    ])
    def test_other_statuses_untouched(self, status):
        inv = make_invoice("INV-1", TODAY - timedelta(days=40), status=status)
        assert sync_status(inv, TODAY) is False
        assert inv.status == status

    def test_sync_statuses_counts_changes(self):
        invoices = [
            make_invoice("A", TODAY - timedelta(days=3)),
            make_invoice("B", TODAY + timedelta(days=3)),
            make_invoice("C", TODAY - timedelta(days=9)),
        ]
        assert sync_statuses(invoices, TODAY) == 2


# ============================================================================
# Summaries
# ============================================================================

class TestSummaries:

    def test_every_bucket_present_in_urgency_order(self):
        summaries = summarize([], TODAY)
        assert list(summaries) == list(Bucket)
        assert all(s.invoice_count == 0 for s in summaries.values())

    def test_counts_amounts_and_eligibility(self):
        recent = datetime(2025, 3, 9, tzinfo=timezone.utc)
        invoices = [
            make_invoice("A", TODAY - timedelta(days=5), amount=100.0),
            make_invoice("B", TODAY - timedelta(days=6), amount=250.5, last_reminder_at=recent),
            make_invoice("C", TODAY - timedelta(days=40), amount=1000.0),
            make_invoice("D", TODAY - timedelta(days=40), amount=999.0,
                         status=InvoiceStatus.PAID),
        ]
        summaries = summarize(invoices, TODAY)

        mid = summaries[Bucket.OVERDUE_4_7]
        assert mid.invoice_count == 2
        assert mid.total_amount == 350.5
        assert mid.eligible_count == 1
        assert mid.label == "4-7 Days Overdue"

        old = summaries[Bucket.OVERDUE_30_PLUS]
        assert old.invoice_count == 1
        assert old.total_amount == 1000.0

    @pytest.mark.parametrize("reminded_on, eligible", [
        (datetime(2025, 3, 6, tzinfo=timezone.utc), True),
        (datetime(2025, 3, 7, 23, 30, tzinfo=timezone.utc), True),   # exactly 3 days
        (datetime(2025, 3, 8, tzinfo=timezone.utc), False),
        (datetime(2025, 3, 10, tzinfo=timezone.utc), False),
        (None, True),
    ])
    def test_reminder_eligibility_cooldown(self, reminded_on, eligible):
        inv = make_invoice("A", TODAY - timedelta(days=5), last_reminder_at=reminded_on)
        assert is_reminder_eligible(inv, TODAY) is eligible

    def test_invoices_in_bucket(self):
        invoices = [
            make_invoice("A", TODAY - timedelta(days=2)),
            make_invoice("B", TODAY - timedelta(days=20)),
        ]
        assert [i.id for i in invoices_in_bucket(invoices, Bucket.OVERDUE_15_30, TODAY)] == ["B"]


class TestHelpers:

    def test_most_urgent_ignores_none(self):
        assert most_urgent([None, Bucket.OVERDUE_4_7, Bucket.NOT_DUE]) == Bucket.OVERDUE_4_7

    def test_most_urgent_empty(self):
        assert most_urgent([None]) is None

    def test_labels_cover_every_bucket(self):
        assert set(BUCKET_LABELS) == set(Bucket)
        assert bucket_label(None) == "Not Applicable"
