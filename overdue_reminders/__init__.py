"""Overdue Reminders - Payment Reminder Campaigns.

Aging-bucket classification, invoice consolidation, batched campaign
sends with pause/resume and daily quotas, and idempotent delivery
tracking from provider webhooks.

The ReminderStore provides SQLite-backed persistence for campaigns,
send logs, delivery history and the suppression list.
"""

__version__ = "0.1.0"

from .models import (
    Bucket,
    BucketConfig,
    Campaign,
    CampaignProgress,
    CampaignStatus,
    ConsolidatedCandidate,
    Customer,
    DeliveryEventType,
    DeliveryReport,
    DeliveryStatus,
    EscalationLevel,
    Invoice,
    InvoiceStatus,
    PermanentFailure,
    Recipient,
    RetryableFailure,
    SendLog,
    Sent,
)

from .store import ReminderStore

__all__ = [
    "Bucket",
    "BucketConfig",
    "Campaign",
    "CampaignProgress",
    "CampaignStatus",
    "ConsolidatedCandidate",
    "Customer",
    "DeliveryEventType",
    "DeliveryReport",
    "DeliveryStatus",
    "EscalationLevel",
    "Invoice",
    "InvoiceStatus",
    "PermanentFailure",
    "Recipient",
    "ReminderStore",
    "RetryableFailure",
    "SendLog",
    "Sent",
]
