"""
Overdue Reminders -- Consolidation Engine

Decides whether a customer's open invoices should be grouped into a single
reminder, scores the resulting candidate for ordering, and turns a company's
candidates into a campaign recipient list.

Evaluation is a pure read-and-score step: nothing here mutates persisted
state, so it is safe to re-run on every scheduling tick.

Usage:
    from overdue_reminders.consolidation import ConsolidationPolicy, evaluate

    policy = ConsolidationPolicy(min_invoice_count=2, min_contact_interval_days=7)
    candidate = evaluate(customer, invoices, policy, today=date.today())
    if candidate.eligible:
        ...
"""

from __future__ import annotations

import logging
import re
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Iterable, Optional

from .bucket_classifier import (
    as_date,
    classify_invoice,
    days_overdue,
    most_urgent,
)
from .config import PriorityWeights, ReminderConfig
from .exceptions import ConfigurationError
from .models import (
    Bucket,
    ConsolidatedCandidate,
    Customer,
    EscalationLevel,
    IneligibleReason,
    Invoice,
    Recipient,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Escalation thresholds: (days overdue, total amount) -> level
# ---------------------------------------------------------------------------

ESCALATION_THRESHOLDS: list[tuple[EscalationLevel, int, float]] = [
    (EscalationLevel.FINAL, 90, 50_000.0),
    (EscalationLevel.URGENT, 60, 25_000.0),
    (EscalationLevel.FIRM, 30, 10_000.0),
]

HIGH_VALUE_AMOUNT: float = 10_000.0

# Loose address check: something@domain.tld, no whitespace.
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------

@dataclass
class ConsolidationPolicy:
    """Company consolidation policy plus the priority weights used to score."""
    min_invoice_count: int = 2
    min_contact_interval_days: int = 7
    weights: PriorityWeights = field(default_factory=PriorityWeights)

    @classmethod
    def from_config(cls, config: ReminderConfig) -> ConsolidationPolicy:
        return cls(
            min_invoice_count=config.consolidation.min_invoice_count,
            min_contact_interval_days=config.consolidation.min_contact_interval_days,
            weights=config.priority,
        )

    def validate(self) -> None:
        if self.min_invoice_count < 1:
            raise ConfigurationError(
                f"min_invoice_count must be >= 1, got {self.min_invoice_count}")
        if self.min_contact_interval_days < 0:
            raise ConfigurationError(
                f"min_contact_interval_days must not be negative, "
                f"got {self.min_contact_interval_days}")
        w = self.weights
        if min(w.amount_weight, w.age_weight, w.count_weight) < 0:
            raise ConfigurationError("priority weights must not be negative")
        if w.reference_amount <= 0 or w.reference_days <= 0 or w.reference_count <= 0:
            raise ConfigurationError("priority reference points must be positive")

    def effective_for(self, customer: Customer) -> tuple[int, int]:
        """(min_invoice_count, min_contact_interval_days) after customer overrides."""
        count = self.min_invoice_count
        interval = self.min_contact_interval_days
        if customer.min_invoice_count is not None:
            count = customer.min_invoice_count
        if customer.min_contact_interval_days is not None:
            interval = customer.min_contact_interval_days
        return count, interval


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

def priority_score(
    max_days_overdue: int,
    total_amount: float,
    invoice_count: int,
    weights: PriorityWeights | None = None,
) -> float:
    """
    Weighted 0-100 score of age, amount and invoice count.

    Each factor is normalized against its reference point and capped at
    100 before weighting.

    >>> priority_score(180, 100_000, 25)
    100.0
    >>> priority_score(0, 0, 0)
    0.0
    """
    w = weights or PriorityWeights()
    amount_score = min(max(total_amount, 0.0) / w.reference_amount * 100, 100.0)
    age_score = min(max(max_days_overdue, 0) / w.reference_days * 100, 100.0)
    count_score = min(max(invoice_count, 0) / w.reference_count * 100, 100.0)
    score = (
        amount_score * w.amount_weight
        + age_score * w.age_weight
        + count_score * w.count_weight
    )
    return float(max(0, min(100, round(score))))


def escalation_level(max_days_overdue: int, total_amount: float) -> EscalationLevel:
    """
    Escalation tone from the oldest invoice's age and the total owed.

    >>> escalation_level(95, 100)
    <EscalationLevel.FINAL: 'FINAL'>
    >>> escalation_level(5, 12_000)
    <EscalationLevel.FIRM: 'FIRM'>
    """
    for level, days, amount in ESCALATION_THRESHOLDS:
        if max_days_overdue >= days or total_amount >= amount:
            return level
    return EscalationLevel.POLITE


def consolidation_reason(invoice_count: int, total_amount: float,
                         max_days: int, currency: str = "AED") -> str:
    reasons = [f"{invoice_count} overdue invoices"]
    if total_amount >= HIGH_VALUE_AMOUNT:
        reasons.append(f"high value ({currency} {total_amount:,.2f})")
    if max_days >= 30:
        reasons.append(f"oldest {max_days} days overdue")
    return "Consolidated due to " + ", ".join(reasons)


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------

def last_contact(invoices: Iterable[Invoice]) -> Optional[datetime]:
    """Most recent reminder timestamp across the given invoices."""
    stamps = [inv.last_reminder_at for inv in invoices if inv.last_reminder_at]
    return max(stamps) if stamps else None


def evaluate(
    customer: Customer,
    open_invoices: list[Invoice],
    policy: ConsolidationPolicy,
    today: date | datetime,
) -> ConsolidatedCandidate:
    """
    Evaluate one customer's invoices against the consolidation policy.

    Args:
        customer: The customer and its consolidation preference.
        open_invoices: The customer's invoices.  Closed ones are ignored
            for grouping but still count as prior contact.
        policy: Company policy; customer preferences override it.
        today: Evaluation date.

    Returns:
        An advisory ConsolidatedCandidate.

    Raises:
        ConfigurationError: If the policy is invalid.
    """
    policy.validate()
    min_count, interval_days = policy.effective_for(customer)
    today_d = as_date(today)

    qualifying: list[tuple[Invoice, Bucket]] = []
    for inv in open_invoices:
        bucket = classify_invoice(inv, today_d)
        if bucket is not None:
            qualifying.append((inv, bucket))

    total = round(sum(inv.amount for inv, _ in qualifying), 2)
    max_days = max(
        (max(days_overdue(inv.due_date, today_d), 0) for inv, _ in qualifying if inv.due_date),
        default=0,
    )
    currency = qualifying[0][0].currency if qualifying else "AED"
    contacted_at = last_contact(open_invoices)

    candidate = ConsolidatedCandidate(
        customer_id=customer.id,
        company_id=customer.company_id,
        invoice_ids=[inv.id for inv, _ in qualifying],
        total_amount=total,
        currency=currency,
        most_urgent_bucket=most_urgent(b for _, b in qualifying),
        max_days_overdue=max_days,
        priority_score=priority_score(max_days, total, len(qualifying), policy.weights),
        escalation_level=escalation_level(max_days, total),
        last_contact_at=contacted_at,
    )

    if not customer.consolidation_enabled:
        candidate.ineligible_reason = IneligibleReason.DISABLED
        candidate.reason = "Consolidation disabled for customer"
    elif len(qualifying) < min_count:
        candidate.ineligible_reason = IneligibleReason.BELOW_THRESHOLD
        candidate.reason = f"{len(qualifying)} qualifying invoices, minimum is {min_count}"
    elif contacted_at is not None and (today_d - as_date(contacted_at)).days < interval_days:
        candidate.ineligible_reason = IneligibleReason.CONTACTED_RECENTLY
        candidate.next_eligible_contact = as_date(contacted_at) + timedelta(days=interval_days)
        candidate.reason = (
            f"Last contacted {as_date(contacted_at).isoformat()}, "
            f"next contact allowed {candidate.next_eligible_contact.isoformat()}"
        )
    else:
        candidate.eligible = True
        candidate.reason = consolidation_reason(len(qualifying), total, max_days, currency)

    logger.debug(
        "Customer %s: %d qualifying, eligible=%s (%s)",
        customer.id, len(qualifying), candidate.eligible, candidate.reason,
    )
    return candidate


def evaluate_company(
    customers: Iterable[Customer],
    invoices: Iterable[Invoice],
    policy: ConsolidationPolicy,
    today: date | datetime,
) -> list[ConsolidatedCandidate]:
    """
    Evaluate every customer that owns at least one invoice.

    Returns candidates with eligible ones first, each group sorted by
    priority score (highest first).
    """
    by_customer: dict[str, list[Invoice]] = defaultdict(list)
    for inv in invoices:
        if inv.customer_id:
            by_customer[inv.customer_id].append(inv)

    candidates = []
    for customer in customers:
        owned = by_customer.get(customer.id)
        if not owned:
            continue
        candidates.append(evaluate(customer, owned, policy, today))

    candidates.sort(key=lambda c: (not c.eligible, -c.priority_score, c.customer_id))
    logger.info(
        "Evaluated %d customers: %d eligible for consolidation",
        len(candidates), sum(1 for c in candidates if c.eligible),
    )
    return candidates


def candidate_stats(candidates: list[ConsolidatedCandidate]) -> dict:
    """Counts, priority distribution and emails saved by consolidating."""
    eligible = [c for c in candidates if c.eligible]
    distribution = {"high": 0, "medium": 0, "low": 0}
    for c in candidates:
        distribution[c.priority_level] += 1
    individual = sum(c.invoice_count for c in eligible)
    saved = individual - len(eligible)
    return {
        "total_candidates": len(candidates),
        "eligible": len(eligible),
        "emails_saved": saved,
        "percentage_reduction": round(saved / individual * 100, 1) if individual else 0.0,
        "priority_distribution": distribution,
    }


# ---------------------------------------------------------------------------
# Recipient Building
# ---------------------------------------------------------------------------

def build_recipients(
    customers: Iterable[Customer],
    invoices: Iterable[Invoice],
    policy: ConsolidationPolicy,
    today: date | datetime,
    renderer,
    buckets: Optional[set[Bucket]] = None,
) -> list[Recipient]:
    """
    Turn a company's open invoices into campaign recipients.

    One recipient per eligible consolidated candidate, then one per
    remaining invoice.  Invoices of customers contacted recently are
    skipped, and invoices without a customer are always individual.

    Args:
        renderer: A TemplateEngine (anything with ``render_invoice_reminder``
            and ``render_consolidated_reminder``).
        buckets: Only include invoices (or candidates whose most urgent
            bucket is) in these buckets.  Defaults to every overdue bucket.
    """
    today_d = as_date(today)
    if buckets is None:
        buckets = {b for b in Bucket if b != Bucket.NOT_DUE}

    customers = list(customers)
    invoices = [inv for inv in invoices if inv.is_open]
    customer_by_id = {c.id: c for c in customers}
    candidates = evaluate_company(customers, invoices, policy, today_d)

    recipients: list[Recipient] = []
    covered: set[str] = set()
    blocked_customers: set[str] = set()

    for cand in candidates:
        if cand.ineligible_reason == IneligibleReason.CONTACTED_RECENTLY:
            blocked_customers.add(cand.customer_id)
            continue
        if not cand.eligible:
            continue
        if cand.most_urgent_bucket not in buckets:
            # reminded as a group under its most urgent bucket
            covered.update(cand.invoice_ids)
            continue
        customer = customer_by_id[cand.customer_id]
        owned = [inv for inv in invoices if inv.id in set(cand.invoice_ids)]
        rendered = renderer.render_consolidated_reminder(cand, owned, today_d, customer)
        recipients.append(Recipient(
            recipient_email=customer.email,
            company_id=cand.company_id,
            subject=rendered.subject,
            body_html=rendered.body_html,
            body_text=rendered.body_text,
            customer_id=customer.id,
            invoice_ids=list(cand.invoice_ids),
            candidate_ref=cand.reference,
            bucket=cand.most_urgent_bucket,
        ))
        covered.update(cand.invoice_ids)

    for inv in invoices:
        if inv.id in covered or inv.customer_id in blocked_customers:
            continue
        bucket = classify_invoice(inv, today_d)
        if bucket not in buckets:
            continue
        customer = customer_by_id.get(inv.customer_id) if inv.customer_id else None
        email = customer.email if customer and customer.email else inv.customer_email
        rendered = renderer.render_invoice_reminder(inv, today_d, customer)
        recipients.append(Recipient(
            recipient_email=email,
            company_id=inv.company_id,
            subject=rendered.subject,
            body_html=rendered.body_html,
            body_text=rendered.body_text,
            customer_id=inv.customer_id,
            invoice_ids=[inv.id],
            bucket=bucket,
        ))

    logger.info("Built %d recipients (%d consolidated)",
                len(recipients), sum(1 for r in recipients if r.is_consolidated))
    return recipients


# ---------------------------------------------------------------------------
# Recipient Validation
# ---------------------------------------------------------------------------

@dataclass
class RecipientValidation:
    """Outcome of validating a recipient list before campaign creation."""
    valid: list[Recipient] = field(default_factory=list)
    excluded: list[tuple[Recipient, str]] = field(default_factory=list)

    @property
    def excluded_count(self) -> int:
        return len(self.excluded)

    def reasons(self) -> dict[str, int]:
        counts: dict[str, int] = defaultdict(int)
        for _, reason in self.excluded:
            counts[reason] += 1
        return dict(counts)


def is_valid_email(address: str) -> bool:
    return bool(address) and bool(_EMAIL_RE.match(address.strip()))


def validate_recipients(
    recipients: Iterable[Recipient],
    suppressed: Iterable[str] = (),
) -> RecipientValidation:
    """
    Drop recipients with a missing, malformed or suppressed address, and
    repeats of the same reminder.

    Addresses are compared case-insensitively.  A reminder is identified by
    its address plus the invoices it covers, so one customer may receive a
    separate reminder per invoice.  The first occurrence of a repeat is kept.
    """
    blocked = {s.strip().lower() for s in suppressed}
    seen: set[tuple[str, str]] = set()
    result = RecipientValidation()

    for r in recipients:
        address = (r.recipient_email or "").strip()
        key = (address.lower(), r.candidate_ref or ",".join(sorted(r.invoice_ids)))
        if not address:
            result.excluded.append((r, "missing_email"))
        elif not is_valid_email(address):
            result.excluded.append((r, "invalid_email"))
        elif key[0] in blocked:
            result.excluded.append((r, "suppressed"))
        elif key in seen:
            result.excluded.append((r, "duplicate"))
        else:
            seen.add(key)
            r.recipient_email = address
            result.valid.append(r)

    if result.excluded:
        logger.warning("Excluded %d recipients: %s", result.excluded_count, result.reasons())
    return result
