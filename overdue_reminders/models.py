"""Data models for the overdue reminder system.

All models are plain dataclasses with type hints.  No ORM, no Pydantic --
persistence lives in ``store.py`` and maps rows onto these types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Optional, Union

from .exceptions import TransportErrorCode


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class InvoiceStatus(str, Enum):
    """Invoice lifecycle.  PAID and CANCELLED are closed for reminders."""

    DRAFT = "DRAFT"
    SENT = "SENT"
    OVERDUE = "OVERDUE"
    PAID = "PAID"
    CANCELLED = "CANCELLED"

    @property
    def is_closed(self) -> bool:
        return self in (InvoiceStatus.PAID, InvoiceStatus.CANCELLED)


class Bucket(str, Enum):
    """Aging buckets, least urgent first."""

    NOT_DUE = "not_due"
    OVERDUE_1_3 = "overdue_1_3"
    OVERDUE_4_7 = "overdue_4_7"
    OVERDUE_8_14 = "overdue_8_14"
    OVERDUE_15_30 = "overdue_15_30"
    OVERDUE_30_PLUS = "overdue_30_plus"

    @property
    def urgency(self) -> int:
        """0 for not_due up to 5 for overdue_30_plus."""
        return list(Bucket).index(self)


class CampaignStatus(str, Enum):
    """Campaign lifecycle: draft -> sending -> completed | paused | failed."""

    DRAFT = "draft"
    SENDING = "sending"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class DeliveryStatus(str, Enum):
    """Delivery state of one SendLog."""

    QUEUED = "QUEUED"
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    OPENED = "OPENED"
    CLICKED = "CLICKED"
    BOUNCED = "BOUNCED"
    FAILED = "FAILED"
    COMPLAINED = "COMPLAINED"

    @property
    def is_terminal(self) -> bool:
        return self in (DeliveryStatus.BOUNCED, DeliveryStatus.FAILED, DeliveryStatus.COMPLAINED)


class DeliveryEventType(str, Enum):
    """Provider callback types understood by the delivery tracker."""

    SENT = "sent"
    DELIVERED = "delivered"
    OPENED = "opened"
    CLICKED = "clicked"
    BOUNCED = "bounced"
    COMPLAINED = "complained"
    REJECTED = "rejected"

    @classmethod
    def parse(cls, raw: str) -> DeliveryEventType:
        """Accept our own names and the provider's short names.

        >>> DeliveryEventType.parse("Open")
        <DeliveryEventType.OPENED: 'opened'>
        >>> DeliveryEventType.parse("delivery")
        <DeliveryEventType.DELIVERED: 'delivered'>
        """
        key = (raw or "").strip().lower()
        key = _EVENT_ALIASES.get(key, key)
        return cls(key)


_EVENT_ALIASES: dict[str, str] = {
    "send": "sent",
    "delivery": "delivered",
    "open": "opened",
    "click": "clicked",
    "bounce": "bounced",
    "complaint": "complained",
    "reject": "rejected",
}


class IneligibleReason(str, Enum):
    """Why a consolidated candidate should not be acted on."""

    DISABLED = "disabled"
    BELOW_THRESHOLD = "below_threshold"
    CONTACTED_RECENTLY = "contacted_recently"


class EscalationLevel(str, Enum):
    POLITE = "POLITE"
    FIRM = "FIRM"
    URGENT = "URGENT"
    FINAL = "FINAL"


# ---------------------------------------------------------------------------
# Core Data Models
# ---------------------------------------------------------------------------

@dataclass
class Invoice:
    """One invoice owned by a company, optionally linked to a customer."""

    id: str
    company_id: str
    number: str = ""
    amount: float = 0.0
    currency: str = "AED"
    due_date: date | None = None
    status: InvoiceStatus = InvoiceStatus.SENT
    customer_id: str | None = None
    customer_name: str = ""
    customer_email: str = ""
    last_reminder_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return not self.status.is_closed

    @property
    def amount_formatted(self) -> str:
        """Currency-prefixed amount, e.g. 'AED 2,700.56'."""
        return f"{self.currency} {self.amount:,.2f}"

    @property
    def due_date_formatted(self) -> str:
        """Human-readable due date, e.g. 'Feb 05, 2026'."""
        if self.due_date is None:
            return ""
        return self.due_date.strftime("%b %d, %Y")


@dataclass
class Customer:
    """A customer and its consolidation preference.

    ``min_invoice_count`` and ``min_contact_interval_days`` override the
    company policy when set.
    """

    id: str
    company_id: str
    name: str = ""
    email: str = ""
    consolidation_enabled: bool = True
    min_invoice_count: int | None = None
    min_contact_interval_days: int | None = None

    @property
    def first_name(self) -> str:
        if not self.name:
            return ""
        return self.name.split()[0]


@dataclass
class BucketConfig:
    """Per-company, per-bucket auto-send schedule.

    ``send_weekdays`` uses ``date.weekday()`` numbering (Monday = 0).
    Rows are provisioned manual-only.
    """

    company_id: str
    bucket: Bucket
    auto_send: bool = False
    send_hour: int = 9
    send_weekdays: list[int] = field(default_factory=lambda: [0, 1, 2, 3, 4])
    last_auto_send_at: datetime | None = None


@dataclass
class ConsolidatedCandidate:
    """Advisory result of evaluating one customer's open invoices."""

    customer_id: str
    company_id: str
    invoice_ids: list[str] = field(default_factory=list)
    total_amount: float = 0.0
    currency: str = "AED"
    most_urgent_bucket: Bucket | None = None
    max_days_overdue: int = 0
    priority_score: float = 0.0
    eligible: bool = False
    ineligible_reason: IneligibleReason | None = None
    escalation_level: EscalationLevel = EscalationLevel.POLITE
    last_contact_at: datetime | None = None
    next_eligible_contact: date | None = None
    reason: str = ""

    @property
    def invoice_count(self) -> int:
        return len(self.invoice_ids)

    @property
    def priority_level(self) -> str:
        if self.priority_score >= 70:
            return "high"
        if self.priority_score >= 40:
            return "medium"
        return "low"

    @property
    def reference(self) -> str:
        """Stable identifier for SendLog back-references."""
        return f"{self.customer_id}:{','.join(sorted(self.invoice_ids))}"

    def to_dict(self) -> dict:
        return {
            "customer_id": self.customer_id,
            "company_id": self.company_id,
            "invoice_ids": list(self.invoice_ids),
            "total_amount": self.total_amount,
            "currency": self.currency,
            "most_urgent_bucket": self.most_urgent_bucket.value if self.most_urgent_bucket else None,
            "max_days_overdue": self.max_days_overdue,
            "priority_score": self.priority_score,
            "priority_level": self.priority_level,
            "eligible": self.eligible,
            "ineligible_reason": self.ineligible_reason.value if self.ineligible_reason else None,
            "escalation_level": self.escalation_level.value,
            "reason": self.reason,
        }


@dataclass
class Recipient:
    """One entry of a campaign's frozen recipient snapshot.

    Covers a single invoice or, when ``candidate_ref`` is set, a
    consolidated group of invoices for one customer.
    """

    recipient_email: str
    company_id: str
    subject: str = ""
    body_html: str = ""
    body_text: str = ""
    customer_id: str | None = None
    invoice_ids: list[str] = field(default_factory=list)
    candidate_ref: str | None = None
    bucket: Bucket | None = None

    # --- snapshot bookkeeping, filled in by the store ---
    id: str | None = None
    ordinal: int = 0
    attempted: bool = False

    @property
    def is_consolidated(self) -> bool:
        return self.candidate_ref is not None

    @property
    def invoice_id(self) -> str | None:
        """The single invoice for individual reminders, else None."""
        if len(self.invoice_ids) == 1 and not self.is_consolidated:
            return self.invoice_ids[0]
        return None


@dataclass
class Campaign:
    """A batch reminder send with its own lifecycle and counters."""

    id: str
    company_id: str
    name: str = ""
    status: CampaignStatus = CampaignStatus.DRAFT
    total_recipients: int = 0
    sent_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    batch_size: int = 5
    batch_delay_seconds: float = 3.0
    pause_requested: bool = False
    pause_reason: str = ""
    failure_reason: str = ""
    created_at: datetime | None = None
    started_at: datetime | None = None
    paused_at: datetime | None = None
    resumed_at: datetime | None = None
    completed_at: datetime | None = None
    last_sent_at: datetime | None = None

    @property
    def attempted_count(self) -> int:
        return self.sent_count + self.failed_count + self.skipped_count

    @property
    def remaining_count(self) -> int:
        return max(0, self.total_recipients - self.attempted_count)


@dataclass
class CampaignProgress:
    """Pull-based progress view computed from persisted counters."""

    campaign_id: str
    status: CampaignStatus
    total_recipients: int
    attempted: int
    sent: int
    failed: int
    skipped: int
    remaining: int
    current_batch: int
    total_batches: int
    percent_complete: int
    estimated_seconds_remaining: float | None = None
    pause_reason: str = ""
    failure_reason: str = ""
    last_sent_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "campaign_id": self.campaign_id,
            "status": self.status.value,
            "total_recipients": self.total_recipients,
            "attempted": self.attempted,
            "sent": self.sent,
            "failed": self.failed,
            "skipped": self.skipped,
            "remaining": self.remaining,
            "current_batch": self.current_batch,
            "total_batches": self.total_batches,
            "percent_complete": self.percent_complete,
            "estimated_seconds_remaining": self.estimated_seconds_remaining,
            "pause_reason": self.pause_reason,
            "failure_reason": self.failure_reason,
            "last_sent_at": self.last_sent_at.isoformat() if self.last_sent_at else None,
        }


@dataclass
class StartResult:
    """Returned immediately by CampaignEngine.start()."""

    campaign_id: str
    total_recipients: int
    total_batches: int
    estimated_seconds: float

    @property
    def estimated_duration(self) -> str:
        if self.estimated_seconds > 60:
            return f"{round(self.estimated_seconds / 60)} minutes"
        return f"{round(self.estimated_seconds)} seconds"


@dataclass
class SendLog:
    """Durable record of one send and its delivery history."""

    id: str
    company_id: str
    recipient_email: str
    subject: str = ""
    body_html: str = ""
    status: DeliveryStatus = DeliveryStatus.QUEUED
    provider_message_id: str | None = None
    campaign_id: str | None = None
    recipient_id: str | None = None
    invoice_id: str | None = None
    customer_id: str | None = None
    candidate_ref: str | None = None
    invoice_ids: list[str] = field(default_factory=list)
    retry_count: int = 0
    error_code: str = ""
    error_message: str = ""
    bounce_reason: str = ""
    queued_at: datetime | None = None
    sent_at: datetime | None = None
    delivered_at: datetime | None = None
    opened_at: datetime | None = None
    clicked_at: datetime | None = None
    bounced_at: datetime | None = None
    complained_at: datetime | None = None
    failed_at: datetime | None = None


@dataclass
class DeliveryEventRecord:
    """Immutable detail row appended for every accepted provider event."""

    send_log_id: str
    event_type: DeliveryEventType
    occurred_at: datetime
    user_agent: str = ""
    ip_address: str = ""
    location: str = ""
    link: str = ""
    metadata: dict = field(default_factory=dict)
    id: int | None = None


# ---------------------------------------------------------------------------
# Send attempt results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Sent:
    message_id: str


@dataclass(frozen=True)
class RetryableFailure:
    code: TransportErrorCode
    message: str = ""


@dataclass(frozen=True)
class PermanentFailure:
    code: TransportErrorCode
    message: str = ""


SendOutcome = Union[Sent, RetryableFailure, PermanentFailure]


@dataclass
class DeliveryReport:
    """Final outcome for one recipient after the retry policy ran."""

    recipient: Recipient
    outcome: SendOutcome
    attempts: int = 1
    send_log_id: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return isinstance(self.outcome, Sent)

    @property
    def retry_count(self) -> int:
        return max(0, self.attempts - 1)
