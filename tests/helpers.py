"""Fakes, builders and fixed dates shared by the test modules."""

import threading
import uuid
from datetime import date, datetime, timezone

from overdue_reminders.models import Customer, Invoice, InvoiceStatus, Recipient
from overdue_reminders.transport import MailTransport


# Monday.  09:00 in Asia/Dubai is 05:00 UTC.
TODAY = date(2025, 3, 10)
NOW = datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)
COMPANY = "acme"


# ============================================================================
# Fake transport
# ============================================================================

class FakeTransport(MailTransport):
    """Records every message; failures can be scripted per address.

    ``script`` maps an address to a list of exceptions consumed one per
    send; once the list is empty the send succeeds.  ``fail_all`` is
    raised for every send when set.
    """

    name = "fake"

    def __init__(self, script=None, fail_all=None):
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.fail_all = fail_all
        self.calls = 0
        self.sent = []          # (OutboundMessage, message_id)
        self._lock = threading.Lock()

    def send(self, message):
        with self._lock:
            self.calls += 1
            if self.fail_all is not None:
                raise self.fail_all
            steps = self.script.get(message.to)
            if steps:
                raise steps.pop(0)
            message_id = f"msg-{uuid.uuid4().hex[:12]}"
            self.sent.append((message, message_id))
            return message_id

    @property
    def sent_to(self):
        return [m.to for m, _ in self.sent]


class RecordingSleep:
    """Stand-in for time.sleep; optionally runs a hook on each call."""

    def __init__(self, hook=None):
        self.calls = []
        self.hook = hook

    def __call__(self, seconds):
        self.calls.append(seconds)
        if self.hook is not None:
            self.hook(len(self.calls))


# ============================================================================
# Builders
# ============================================================================

def make_recipients(n, company=COMPANY, prefix="customer"):
    return [
        Recipient(
            recipient_email=f"{prefix}{i}@example.com",
            company_id=company,
            subject=f"Payment Reminder {i}",
            body_html=f"<p>Reminder {i}</p>",
            body_text=f"Reminder {i}",
            invoice_ids=[f"INV-{i:03d}"],
        )
        for i in range(1, n + 1)
    ]


def make_invoice(inv_id, due, amount=1000.0, customer_id=None, status=InvoiceStatus.SENT,
                 last_reminder_at=None, email="", company=COMPANY):
    return Invoice(
        id=inv_id,
        company_id=company,
        number=inv_id,
        amount=amount,
        due_date=due,
        status=status,
        customer_id=customer_id,
        customer_email=email,
        last_reminder_at=last_reminder_at,
    )


def make_customer(cust_id, email=None, company=COMPANY, **kwargs):
    return Customer(
        id=cust_id,
        company_id=company,
        name=f"{cust_id.title()} Trading",
        email=email if email is not None else f"{cust_id}@example.com",
        **kwargs,
    )
