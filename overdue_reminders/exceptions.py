"""Typed errors for the reminder campaign system.

Every error carries a stable ``code`` so callers (CLI, HTTP layer) can tell
"already running" apart from "failed to start" without parsing messages.
Quota exhaustion is deliberately absent: it pauses a campaign instead.
"""

from __future__ import annotations

from enum import Enum


class ReminderError(Exception):
    """Base class for all errors raised by this package."""

    code = "REMINDER_ERROR"

    def __init__(self, message: str, *, details: dict | None = None) -> None:
        super().__init__(message)
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": str(self), "code": self.code, "details": self.details}


class ConfigurationError(ReminderError):
    """Missing or invalid configuration / policy, raised before any send."""

    code = "INVALID_CONFIGURATION"


class CampaignNotFoundError(ReminderError):
    code = "CAMPAIGN_NOT_FOUND"


class CampaignAlreadyRunningError(ReminderError):
    """A second start/resume on a campaign whose loop is already active."""

    code = "ALREADY_RUNNING"


class InvalidCampaignStateError(ReminderError):
    """The requested transition is not legal from the campaign's status."""

    code = "INVALID_CAMPAIGN_STATUS"


class NoRecipientsError(ReminderError):
    code = "NO_VALID_RECIPIENTS"


class TransportErrorCode(str, Enum):
    """Failure classes reported by the mail transport."""

    RATE_LIMITED = "RATE_LIMITED"
    INVALID_RECIPIENT = "INVALID_RECIPIENT"
    AUTH_FAILED = "AUTH_FAILED"
    TRANSIENT = "TRANSIENT"

    @property
    def retryable(self) -> bool:
        return self in (TransportErrorCode.RATE_LIMITED, TransportErrorCode.TRANSIENT)


class TransportError(ReminderError):
    """Raised by a MailTransport when a message could not be handed off."""

    code = "TRANSPORT_ERROR"

    def __init__(self, error_code: TransportErrorCode, message: str = "") -> None:
        super().__init__(message or error_code.value, details={"transport_code": error_code.value})
        self.error_code = error_code

    @property
    def retryable(self) -> bool:
        return self.error_code.retryable
