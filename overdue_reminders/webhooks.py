"""
Overdue Reminders -- Webhook Ingress

Framework-agnostic handler for provider delivery callbacks.  Accepts:

  * SNS envelopes (``Type`` = ``Notification`` / ``SubscriptionConfirmation``)
    whose ``Message`` holds the provider event as a JSON string
  * bare provider events, e.g.
        {"eventType": "open", "messageId": "...", "timestamp": "...",
         "open": {"userAgent": "...", "ipAddress": "..."}}

The handler answers 200 whenever the payload was understood, including
events for unknown message ids, because providers disable endpoints that
keep failing.  Malformed payloads get 400; storage errors get 500 so the
provider retries.

Usage:
    tracker = DeliveryTracker(store)
    response = handle_webhook(tracker, request_body)
    return response.body, response.status
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Optional

from .delivery_tracking import DeliveryTracker
from .models import DeliveryEventType

logger = logging.getLogger(__name__)


@dataclass
class WebhookResponse:
    status: int
    body: dict = field(default_factory=dict)


@dataclass
class ProviderEvent:
    """A provider callback reduced to what the tracker needs."""
    message_id: str
    event_type: DeliveryEventType
    occurred_at: str
    metadata: dict[str, Any] = field(default_factory=dict)


class PayloadError(ValueError):
    """The webhook body is not a recognizable provider event."""


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def _loads(body: str | bytes | dict) -> dict:
    if isinstance(body, dict):
        return body
    if isinstance(body, bytes):
        body = body.decode("utf-8")
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, TypeError) as exc:
        raise PayloadError(f"Body is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise PayloadError("Body must be a JSON object")
    return data


def _event_metadata(event_type: DeliveryEventType, payload: dict) -> tuple[dict, Optional[str]]:
    """Extract detail fields and the event's own timestamp from the nested block."""
    key = {
        DeliveryEventType.SENT: "send",
        DeliveryEventType.DELIVERED: "delivery",
        DeliveryEventType.OPENED: "open",
        DeliveryEventType.CLICKED: "click",
        DeliveryEventType.BOUNCED: "bounce",
        DeliveryEventType.COMPLAINED: "complaint",
        DeliveryEventType.REJECTED: "reject",
    }[event_type]
    block = payload.get(key) or {}
    if not isinstance(block, dict):
        block = {}

    meta: dict[str, Any] = {}
    if block.get("userAgent"):
        meta["user_agent"] = block["userAgent"]
    if block.get("ipAddress"):
        meta["ip_address"] = block["ipAddress"]
    if block.get("link"):
        meta["link"] = block["link"]
    if block.get("location"):
        meta["location"] = block["location"]

    if event_type == DeliveryEventType.BOUNCED:
        meta["bounce_type"] = block.get("bounceType", "")
        recipients = block.get("bouncedRecipients") or []
        diagnostic = recipients[0].get("diagnosticCode", "") if recipients else ""
        meta["bounce_reason"] = " ".join(
            p for p in (block.get("bounceSubType", ""), diagnostic) if p)
    elif event_type == DeliveryEventType.COMPLAINED:
        meta["feedback_type"] = block.get("complaintFeedbackType", "")
    elif event_type == DeliveryEventType.REJECTED:
        meta["reason"] = block.get("reason", "")
    elif event_type == DeliveryEventType.DELIVERED:
        if block.get("smtpResponse"):
            meta["smtp_response"] = block["smtpResponse"]

    if isinstance(payload.get("metadata"), dict):
        meta.update(payload["metadata"])
    return meta, block.get("timestamp")


def parse_provider_event(payload: dict) -> Optional[ProviderEvent]:
    """
    Reduce a provider event dict to a ProviderEvent.

    Returns None for event types this system does not track (e.g.
    ``deliveryDelay``).

    Raises:
        PayloadError: Missing message id, event type or timestamp.
    """
    mail = payload.get("mail") if isinstance(payload.get("mail"), dict) else {}
    message_id = payload.get("messageId") or mail.get("messageId")
    raw_type = payload.get("eventType") or payload.get("notificationType")
    if not message_id or not raw_type:
        raise PayloadError("Event must carry messageId and eventType")

    try:
        event_type = DeliveryEventType.parse(str(raw_type))
    except ValueError:
        logger.info("Ignoring untracked event type %r for %s", raw_type, message_id)
        return None

    metadata, nested_ts = _event_metadata(event_type, payload)
    occurred_at = nested_ts or payload.get("timestamp") or mail.get("timestamp")
    if not occurred_at:
        raise PayloadError(f"Event {raw_type} for {message_id} has no timestamp")
    return ProviderEvent(str(message_id), event_type, str(occurred_at), metadata)


# ---------------------------------------------------------------------------
# Handler
# ---------------------------------------------------------------------------

def handle_webhook(tracker: DeliveryTracker, body: str | bytes | dict) -> WebhookResponse:
    """Process one webhook request body and build the HTTP reply."""
    try:
        payload = _loads(body)

        envelope_type = payload.get("Type")
        if envelope_type == "SubscriptionConfirmation":
            logger.info("Subscription confirmation received for %s", payload.get("TopicArn", ""))
            return WebhookResponse(200, {
                "message": "Subscription confirmation received",
                "subscribe_url": payload.get("SubscribeURL", ""),
            })
        if envelope_type == "Notification":
            payload = _loads(payload.get("Message") or "")
        elif envelope_type is not None:
            raise PayloadError(f"Unsupported envelope type {envelope_type!r}")

        event = parse_provider_event(payload)
        if event is None:
            return WebhookResponse(200, {"message": "Event type ignored"})

        outcome = tracker.apply_event(
            event.message_id, event.event_type, event.occurred_at, event.metadata)
    except (PayloadError, ValueError) as exc:
        logger.warning("Rejected webhook payload: %s", exc)
        return WebhookResponse(400, {"error": "Invalid payload", "details": str(exc)})
    except sqlite3.Error as exc:
        logger.exception("Failed to process webhook")
        return WebhookResponse(500, {"error": "Failed to process webhook", "details": str(exc)})

    return WebhookResponse(200, {
        "message": "Event processed successfully",
        "matched": outcome.matched,
        "status": outcome.status.value if outcome.status else None,
    })
