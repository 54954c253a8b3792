"""
Overdue Reminders -- Delivery Tracking

Applies asynchronous provider events to SendLogs.  Webhooks arrive
at-least-once and out of order, so every transition is monotonic and safe
to replay:

    QUEUED -> SENT -> DELIVERED -> OPENED -> CLICKED
    QUEUED/SENT -> BOUNCED                      (terminal)
    QUEUED/SENT -> FAILED      on reject        (terminal)
    SENT..CLICKED -> COMPLAINED                 (terminal)

An event whose target is not strictly more advanced than the current
status leaves the status alone.  Each accepted event appends one detail
row (deduplicated on send log, event type and timestamp) and fills the
matching first-occurrence timestamp.  Logs in a terminal status ignore
all further events.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from .models import DeliveryEventRecord, DeliveryEventType, DeliveryStatus, SendLog
from .store import ReminderStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Transition table
# ---------------------------------------------------------------------------

PROGRESS_RANK: dict[DeliveryStatus, int] = {
    DeliveryStatus.QUEUED: 0,
    DeliveryStatus.SENT: 1,
    DeliveryStatus.DELIVERED: 2,
    DeliveryStatus.OPENED: 3,
    DeliveryStatus.CLICKED: 4,
}

EVENT_TARGET: dict[DeliveryEventType, DeliveryStatus] = {
    DeliveryEventType.SENT: DeliveryStatus.SENT,
    DeliveryEventType.DELIVERED: DeliveryStatus.DELIVERED,
    DeliveryEventType.OPENED: DeliveryStatus.OPENED,
    DeliveryEventType.CLICKED: DeliveryStatus.CLICKED,
    DeliveryEventType.BOUNCED: DeliveryStatus.BOUNCED,
    DeliveryEventType.COMPLAINED: DeliveryStatus.COMPLAINED,
    DeliveryEventType.REJECTED: DeliveryStatus.FAILED,
}

# Which current statuses each terminal target may be entered from.
TERMINAL_SOURCES: dict[DeliveryStatus, frozenset[DeliveryStatus]] = {
    DeliveryStatus.BOUNCED: frozenset({DeliveryStatus.QUEUED, DeliveryStatus.SENT}),
    DeliveryStatus.FAILED: frozenset({DeliveryStatus.QUEUED, DeliveryStatus.SENT}),
    DeliveryStatus.COMPLAINED: frozenset({
        DeliveryStatus.SENT, DeliveryStatus.DELIVERED,
        DeliveryStatus.OPENED, DeliveryStatus.CLICKED,
    }),
}

TIMESTAMP_FIELD: dict[DeliveryStatus, str] = {
    DeliveryStatus.SENT: "sent_at",
    DeliveryStatus.DELIVERED: "delivered_at",
    DeliveryStatus.OPENED: "opened_at",
    DeliveryStatus.CLICKED: "clicked_at",
    DeliveryStatus.BOUNCED: "bounced_at",
    DeliveryStatus.COMPLAINED: "complained_at",
    DeliveryStatus.FAILED: "failed_at",
}

HARD_BOUNCE_TYPES = {"permanent", "hard"}
_DETAIL_KEYS = ("user_agent", "ip_address", "location", "link")


def next_status(current: DeliveryStatus, event: DeliveryEventType) -> Optional[DeliveryStatus]:
    """
    The status ``event`` moves a log to, or None if the status must not change.

    >>> next_status(DeliveryStatus.CLICKED, DeliveryEventType.OPENED) is None
    True
    >>> next_status(DeliveryStatus.SENT, DeliveryEventType.BOUNCED)
    <DeliveryStatus.BOUNCED: 'BOUNCED'>
    """
    if current.is_terminal:
        return None
    target = EVENT_TARGET[event]
    if target in TERMINAL_SOURCES:
        return target if current in TERMINAL_SOURCES[target] else None
    if PROGRESS_RANK[target] > PROGRESS_RANK[current]:
        return target
    return None


def is_accepted(current: DeliveryStatus, event: DeliveryEventType) -> bool:
    """Whether the event is recorded at all (detail row + first-seen timestamp).

    Progress events are always recorded on a live log even when they do not
    advance it; terminal events only when the transition is legal.
    """
    if current.is_terminal:
        return False
    target = EVENT_TARGET[event]
    if target in TERMINAL_SOURCES:
        return current in TERMINAL_SOURCES[target]
    return True


def to_utc(value: datetime | str) -> datetime:
    """Parse ISO-8601 (``Z`` suffix allowed) and normalize to aware UTC."""
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        value = datetime.fromisoformat(text)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Tracker
# ---------------------------------------------------------------------------

@dataclass
class EventOutcome:
    """What applying one provider event did."""
    matched: bool
    send_log_id: Optional[str] = None
    previous_status: Optional[DeliveryStatus] = None
    status: Optional[DeliveryStatus] = None
    changed: bool = False
    recorded: bool = False
    suppressed: bool = False


class DeliveryTracker:
    """Correlates provider events with SendLogs by provider message id."""

    def __init__(self, store: ReminderStore) -> None:
        self.store = store

    def apply_event(
        self,
        provider_message_id: str,
        event_type: DeliveryEventType | str,
        occurred_at: datetime | str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> EventOutcome:
        """Apply one event.  Unknown message ids are logged and discarded.

        Raises:
            ValueError: Unknown event type or unparseable timestamp.
        """
        if not isinstance(event_type, DeliveryEventType):
            event_type = DeliveryEventType.parse(event_type)
        occurred = to_utc(occurred_at)
        metadata = dict(metadata or {})

        with self.store.transaction() as conn:
            log = self.store.fetch_send_log(conn, provider_message_id)
            if log is None:
                logger.warning("No send log for message %s (%s event discarded)",
                               provider_message_id, event_type.value)
                return EventOutcome(matched=False)

            outcome = EventOutcome(matched=True, send_log_id=log.id,
                                   previous_status=log.status, status=log.status)
            if not is_accepted(log.status, event_type):
                logger.info("Ignoring %s for message %s in status %s",
                            event_type.value, provider_message_id, log.status.value)
                return outcome

            record = DeliveryEventRecord(
                send_log_id=log.id,
                event_type=event_type,
                occurred_at=occurred,
                metadata={k: v for k, v in metadata.items() if k not in _DETAIL_KEYS},
                **{k: str(metadata.get(k) or "") for k in _DETAIL_KEYS},
            )
            outcome.recorded = self.store.insert_delivery_event(conn, record)
            if not outcome.recorded:
                logger.debug("Duplicate %s for message %s", event_type.value, provider_message_id)
                return outcome

            changes = self._changes_for(log, event_type, occurred, metadata)
            self.store.update_send_log(conn, log.id, changes)
            if "status" in changes:
                outcome.status = changes["status"]
                outcome.changed = True
                logger.info("Message %s: %s -> %s", provider_message_id,
                            log.status.value, outcome.status.value)

            reason = self._suppression_reason(outcome.status if outcome.changed else None,
                                              metadata)
            if reason:
                self.store.add_suppression(conn, log.company_id, log.recipient_email, reason)
                outcome.suppressed = True
                logger.warning("Suppressed %s for company %s (%s)",
                               log.recipient_email, log.company_id, reason)
        return outcome

    def history(self, send_log_id: str) -> list[DeliveryEventRecord]:
        return self.store.list_delivery_events(send_log_id)

    # -------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------

    @staticmethod
    def _changes_for(log: SendLog, event_type: DeliveryEventType,
                     occurred: datetime, metadata: dict) -> dict[str, Any]:
        changes: dict[str, Any] = {}
        new_status = next_status(log.status, event_type)
        if new_status is not None:
            changes["status"] = new_status

        ts_field = TIMESTAMP_FIELD[EVENT_TARGET[event_type]]
        existing = getattr(log, ts_field)
        if existing is None or occurred < to_utc(existing):
            changes[ts_field] = occurred

        if new_status == DeliveryStatus.BOUNCED:
            changes["bounce_reason"] = str(
                metadata.get("bounce_reason") or metadata.get("bounce_type") or "")
        elif new_status == DeliveryStatus.FAILED:
            changes["error_code"] = "REJECTED"
            changes["error_message"] = str(metadata.get("reason") or "rejected by provider")
        return changes

    @staticmethod
    def _suppression_reason(new_status: Optional[DeliveryStatus], metadata: dict) -> str:
        if new_status == DeliveryStatus.COMPLAINED:
            return "complaint"
        if new_status == DeliveryStatus.BOUNCED:
            bounce_type = str(metadata.get("bounce_type") or "Permanent").lower()
            if bounce_type in HARD_BOUNCE_TYPES:
                return "hard_bounce"
        return ""
