"""
Overdue Reminders -- Mail Transports

A transport hands one message to a mail provider and returns the
provider's message id, or raises a TransportError carrying one of the
failure classes in TransportErrorCode.

Transports:
    SMTPTransport      sends through an SMTP relay (smtplib + STARTTLS)
    EmlFileTransport   dry run: writes each message as an .eml file
"""

from __future__ import annotations

import logging
import re
import smtplib
import ssl
import uuid
from dataclasses import dataclass, field
from email import encoders
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate, make_msgid
from pathlib import Path
from typing import Optional

from .config import SMTPSettings
from .exceptions import TransportError, TransportErrorCode
from .template_engine import html_to_plaintext

logger = logging.getLogger(__name__)

# SMTP reply codes that signal throttling rather than a generic failure.
_RATE_LIMIT_CODES = {421, 450, 451, 452}
_RATE_LIMIT_HINTS = re.compile(r"\b(?:rate|too many|throttl\w*|quota)\b", re.IGNORECASE)
_INVALID_RECIPIENT_CODES = {550, 551, 553}
_AUTH_CODES = {530, 534, 535}


@dataclass
class OutboundMessage:
    """Everything a transport needs to send one reminder."""
    sender: str
    to: str
    subject: str
    html: str
    text: str = ""
    sender_name: str = ""
    attachment: Optional[Path] = None
    headers: dict[str, str] = field(default_factory=dict)


def build_mime_message(message: OutboundMessage, message_id: str) -> MIMEMultipart:
    """Build a multipart/mixed message with text+HTML alternatives."""
    msg = MIMEMultipart("mixed")
    msg["From"] = formataddr((message.sender_name, message.sender)) if message.sender_name else message.sender
    msg["To"] = message.to
    msg["Subject"] = message.subject
    msg["Date"] = formatdate(localtime=False)
    msg["Message-ID"] = message_id
    for name, value in message.headers.items():
        msg[name] = value

    body = MIMEMultipart("alternative")
    body.attach(MIMEText(message.text or html_to_plaintext(message.html), "plain", "utf-8"))
    body.attach(MIMEText(message.html, "html", "utf-8"))
    msg.attach(body)

    if message.attachment is not None and message.attachment.exists():
        with open(message.attachment, "rb") as f:
            part = MIMEBase("application", "octet-stream")
            part.set_payload(f.read())
        encoders.encode_base64(part)
        part.add_header("Content-Disposition", "attachment", filename=message.attachment.name)
        msg.attach(part)

    return msg


class MailTransport:
    """Interface for mail providers."""

    name = "base"

    def send(self, message: OutboundMessage) -> str:
        """Send ``message`` and return the provider message id.

        Raises:
            TransportError: On any failure, classified by error code.
        """
        raise NotImplementedError


# ---------------------------------------------------------------------------
# SMTP
# ---------------------------------------------------------------------------

def classify_smtp_error(exc: Exception) -> TransportErrorCode:
    """Map an smtplib / socket exception onto a transport failure class."""
    if isinstance(exc, smtplib.SMTPAuthenticationError):
        return TransportErrorCode.AUTH_FAILED
    if isinstance(exc, smtplib.SMTPRecipientsRefused):
        codes = {code for code, _ in exc.recipients.values()}
        if codes and all(c in _RATE_LIMIT_CODES for c in codes):
            return TransportErrorCode.RATE_LIMITED
        return TransportErrorCode.INVALID_RECIPIENT
    if isinstance(exc, smtplib.SMTPResponseException):
        code = exc.smtp_code
        text = exc.smtp_error.decode("utf-8", "replace") if isinstance(exc.smtp_error, bytes) \
            else str(exc.smtp_error)
        if code in _RATE_LIMIT_CODES or _RATE_LIMIT_HINTS.search(text):
            return TransportErrorCode.RATE_LIMITED
        if code in _AUTH_CODES:
            return TransportErrorCode.AUTH_FAILED
        if code in _INVALID_RECIPIENT_CODES:
            return TransportErrorCode.INVALID_RECIPIENT
        return TransportErrorCode.TRANSIENT
    return TransportErrorCode.TRANSIENT


class SMTPTransport(MailTransport):
    """Send through an SMTP relay, one connection per message."""

    name = "smtp"

    def __init__(self, settings: SMTPSettings) -> None:
        self.settings = settings

    def send(self, message: OutboundMessage) -> str:
        domain = message.sender.rsplit("@", 1)[-1] if "@" in message.sender else None
        message_id = make_msgid(domain=domain)
        mime = build_mime_message(message, message_id)

        try:
            with smtplib.SMTP(self.settings.host, self.settings.port,
                              timeout=self.settings.timeout_seconds) as server:
                if self.settings.use_tls:
                    server.starttls(context=ssl.create_default_context())
                if self.settings.username:
                    server.login(self.settings.username, self.settings.password)
                server.sendmail(message.sender, [message.to], mime.as_string())
        except (smtplib.SMTPException, OSError) as exc:
            code = classify_smtp_error(exc)
            logger.warning("SMTP send to %s failed (%s): %s", message.to, code.value, exc)
            raise TransportError(code, str(exc)) from exc

        logger.debug("Sent %s to %s", message_id, message.to)
        return message_id.strip("<>")


# ---------------------------------------------------------------------------
# Dry run
# ---------------------------------------------------------------------------

class EmlFileTransport(MailTransport):
    """Write each message to ``<output_dir>/<message id>.eml`` instead of sending."""

    name = "eml"

    def __init__(self, output_dir: str | Path) -> None:
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)

    def send(self, message: OutboundMessage) -> str:
        if "@" not in message.to:
            raise TransportError(TransportErrorCode.INVALID_RECIPIENT,
                                 f"Invalid recipient address: {message.to!r}")
        message_id = f"dryrun-{uuid.uuid4().hex}"
        mime = build_mime_message(message, f"<{message_id}@localhost>")
        path = self.output_dir / f"{message_id}.eml"
        try:
            path.write_text(mime.as_string(), encoding="utf-8")
        except OSError as exc:
            raise TransportError(TransportErrorCode.TRANSIENT, str(exc)) from exc
        logger.info("Wrote %s for %s", path.name, message.to)
        return message_id
