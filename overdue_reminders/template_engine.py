"""
Overdue Reminders -- Template Engine

Renders Jinja2 HTML reminder templates for a single invoice or for a
consolidated group of invoices, and produces subject, HTML body and a
plain-text alternative.

Templates live in ``overdue_reminders/templates/``:
    <bucket>.html        one per aging bucket (e.g. overdue_4_7.html)
    consolidated.html    several invoices for one customer
    base.html            shared layout extended by the above

Usage:
    from overdue_reminders.template_engine import TemplateEngine

    engine = TemplateEngine()
    rendered = engine.render_invoice_reminder(invoice, today=date.today())
    print(rendered.subject)
"""

from __future__ import annotations

import html
import re
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape

from .bucket_classifier import bucket_label, classify_invoice, days_overdue
from .config import ReminderConfig, SenderInfo, get_config
from .models import (
    Bucket,
    ConsolidatedCandidate,
    Customer,
    EscalationLevel,
    Invoice,
)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_DEFAULT_TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"
_DATE_FORMAT = "%b %d, %Y"
CONSOLIDATED_TEMPLATE = "consolidated.html"

_SUBJECT_PREFIX: dict[Bucket, str] = {
    Bucket.NOT_DUE: "Upcoming Payment",
    Bucket.OVERDUE_1_3: "Payment Reminder",
    Bucket.OVERDUE_4_7: "Payment Reminder",
    Bucket.OVERDUE_8_14: "Second Notice",
    Bucket.OVERDUE_15_30: "Urgent: Payment Overdue",
    Bucket.OVERDUE_30_PLUS: "Final Notice",
}

_ESCALATION_PREFIX: dict[EscalationLevel, str] = {
    EscalationLevel.POLITE: "Payment Reminder",
    EscalationLevel.FIRM: "Second Notice",
    EscalationLevel.URGENT: "Urgent: Payment Overdue",
    EscalationLevel.FINAL: "Final Notice",
}


# ---------------------------------------------------------------------------
# Formatting Helpers
# ---------------------------------------------------------------------------

def format_date(d: date | None) -> str:
    """Format a date as 'Mon DD, YYYY' (e.g. 'Feb 05, 2026').

    Returns empty string for None.
    """
    if d is None:
        return ""
    return d.strftime(_DATE_FORMAT)


def format_currency(amount: float | None, currency: str = "AED") -> str:
    """Format an amount as 'AED 1,510.00'."""
    if amount is None:
        amount = 0.0
    return f"{currency} {amount:,.2f}"


def html_to_plaintext(html_content: str) -> str:
    """Convert a rendered HTML body to a plain-text alternative.

    Strips tags, keeps line structure for block elements and list items,
    and keeps link targets in parentheses.
    """
    text = html_content
    text = re.sub(r"<br\s*/?>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</(?:div|tr|h\d)>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</p>", "\n\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</li>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"<li[^>]*>", "  - ", text, flags=re.IGNORECASE)
    text = re.sub(r"</t[dh]>", "  ", text, flags=re.IGNORECASE)
    text = re.sub(
        r'<a[^>]+href=["\']([^"\']+)["\'][^>]*>(.*?)</a>',
        r"\2 (\1)",
        text,
        flags=re.IGNORECASE | re.DOTALL,
    )
    text = re.sub(r"<(?:style|head)[^>]*>.*?</(?:style|head)>", "", text,
                  flags=re.IGNORECASE | re.DOTALL)
    text = re.sub(r"<[^>]+>", "", text)
    text = html.unescape(text)

    lines = [line.strip() for line in text.split("\n")]
    text = "\n".join(lines)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def build_subject_line(
    bucket: Optional[Bucket],
    invoice_number: str,
    amount_label: str,
) -> str:
    """Subject for an individual reminder.

    Format: ``"<prefix>: Invoice <number> - <amount>"``

    >>> build_subject_line(Bucket.OVERDUE_4_7, "INV-001", "AED 500.00")
    'Payment Reminder: Invoice INV-001 - AED 500.00'
    """
    prefix = _SUBJECT_PREFIX.get(bucket, "Payment Reminder") if bucket else "Payment Reminder"
    return f"{prefix}: Invoice {invoice_number} - {amount_label}"


def build_consolidated_subject(
    level: EscalationLevel,
    invoice_count: int,
    total_label: str,
) -> str:
    """Subject for a consolidated reminder.

    >>> build_consolidated_subject(EscalationLevel.FIRM, 3, "AED 12,000.00")
    'Second Notice: 3 outstanding invoices - AED 12,000.00'
    """
    return f"{_ESCALATION_PREFIX[level]}: {invoice_count} outstanding invoices - {total_label}"


# ---------------------------------------------------------------------------
# Rendered Output
# ---------------------------------------------------------------------------

@dataclass
class RenderedEmail:
    subject: str
    body_html: str
    body_text: str


# ---------------------------------------------------------------------------
# TemplateEngine
# ---------------------------------------------------------------------------

class TemplateEngine:
    """Jinja2-based renderer for reminder emails.

    Attributes:
        env: The Jinja2 Environment configured with the template directory.
        template_dir: Path to the templates directory.
    """

    def __init__(
        self,
        template_dir: str | Path | None = None,
        config: ReminderConfig | None = None,
    ) -> None:
        self.config = config or get_config()
        if template_dir is None:
            template_dir = _DEFAULT_TEMPLATE_DIR
        self.template_dir = Path(template_dir)

        self.env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            autoescape=select_autoescape(["html"]),
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )
        self.env.filters["format_date"] = format_date
        self.env.filters["format_currency"] = format_currency

    @property
    def sender(self) -> SenderInfo:
        return self.config.sender

    # -------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------

    def render_invoice_reminder(
        self,
        invoice: Invoice,
        today: date,
        customer: Customer | None = None,
    ) -> RenderedEmail:
        """Render the bucket-specific reminder for one invoice.

        Raises:
            ValueError: If the invoice is PAID or CANCELLED.
        """
        bucket = classify_invoice(invoice, today)
        if bucket is None:
            raise ValueError(f"Invoice {invoice.id} is closed and cannot be reminded")

        days = days_overdue(invoice.due_date, today) if invoice.due_date else 0
        context = self._base_context(customer, invoice)
        context.update({
            "invoice": _invoice_row(invoice, today),
            "invoices": [_invoice_row(invoice, today)],
            "bucket": bucket.value,
            "bucket_label": bucket_label(bucket),
            "days_overdue": max(days, 0),
            "days_until_due": max(-days, 0),
            "total_amount": format_currency(invoice.amount, invoice.currency),
        })

        body_html = self._render(f"{bucket.value}.html", context)
        subject = build_subject_line(bucket, invoice.number or invoice.id, context["total_amount"])
        return RenderedEmail(subject=subject, body_html=body_html,
                             body_text=html_to_plaintext(body_html))

    def render_consolidated_reminder(
        self,
        candidate: ConsolidatedCandidate,
        invoices: list[Invoice],
        today: date,
        customer: Customer | None = None,
    ) -> RenderedEmail:
        """Render one reminder covering every invoice of a candidate."""
        covered = set(candidate.invoice_ids)
        rows = [
            _invoice_row(inv, today)
            for inv in sorted(invoices, key=lambda i: (i.due_date or today))
            if inv.id in covered
        ]
        if not rows:
            raise ValueError(f"Candidate for customer {candidate.customer_id} covers no invoices")

        total_label = format_currency(candidate.total_amount, candidate.currency)
        context = self._base_context(customer, invoices[0])
        context.update({
            "invoices": rows,
            "invoice_count": len(rows),
            "total_amount": total_label,
            "max_days_overdue": candidate.max_days_overdue,
            "bucket": candidate.most_urgent_bucket.value if candidate.most_urgent_bucket else "",
            "bucket_label": bucket_label(candidate.most_urgent_bucket),
            "escalation_level": candidate.escalation_level.value,
        })

        body_html = self._render(CONSOLIDATED_TEMPLATE, context)
        subject = build_consolidated_subject(candidate.escalation_level, len(rows), total_label)
        return RenderedEmail(subject=subject, body_html=body_html,
                             body_text=html_to_plaintext(body_html))

    def get_available_templates(self) -> list[str]:
        """Sorted list of HTML template filenames."""
        if not self.template_dir.is_dir():
            return []
        return sorted(
            f.name for f in self.template_dir.iterdir()
            if f.suffix == ".html" and f.is_file()
        )

    # -------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------

    def _render(self, template_file: str, context: dict) -> str:
        template = self.env.get_template(template_file)
        return template.render(**context)

    def _base_context(self, customer: Customer | None, invoice: Invoice) -> dict:
        name = ""
        if customer and customer.name:
            name = customer.name
        elif invoice.customer_name:
            name = invoice.customer_name
        return {
            "customer_name": name or "Customer",
            "sender_name": self.sender.name,
            "sender_email": self.sender.email,
            "sender_company": self.sender.company,
        }


def _invoice_row(invoice: Invoice, today: date) -> dict:
    days = days_overdue(invoice.due_date, today) if invoice.due_date else 0
    return {
        "number": invoice.number or invoice.id,
        "amount": format_currency(invoice.amount, invoice.currency),
        "due_date": format_date(invoice.due_date),
        "days_overdue": max(days, 0),
    }
