"""
Overdue Reminders -- Campaign Execution Engine

Runs batch reminder campaigns against a mail transport under the
provider's throughput limits and the company's daily quota.

Lifecycle:
    draft --start--> sending --(all attempted)--> completed
                     sending --pause--> paused --resume--> sending
                     sending --(unrecoverable)--> failed

Each send loop:
  1. takes the next ``batch_size`` unattempted recipients from the frozen
     snapshot, sleeping ``batch_delay_seconds`` between batches
  2. checks the cooperative pause flag before every batch
  3. reserves the batch from the company's daily quota, pausing the
     campaign with reason ``daily_quota_exhausted`` when nothing is left
  4. dispatches the batch concurrently, retrying RATE_LIMITED/TRANSIENT
     failures with exponential backoff
  5. records one SendLog per recipient together with the campaign
     counter increment

Usage:
    engine = CampaignEngine(store, transport, config)
    campaign = engine.create_campaign("acme", "March overdue")
    result = engine.start(campaign.id, recipients)
    engine.get_progress(campaign.id)
"""

from __future__ import annotations

import logging
import math
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import date, datetime
from typing import Callable, Optional

from .config import ReminderConfig, get_config
from .consolidation import RecipientValidation, validate_recipients
from .exceptions import (
    NoRecipientsError,
    ReminderError,
    TransportError,
    TransportErrorCode,
)
from .models import (
    Campaign,
    CampaignProgress,
    CampaignStatus,
    DeliveryReport,
    PermanentFailure,
    Recipient,
    RetryableFailure,
    SendOutcome,
    Sent,
    StartResult,
)
from .store import ReminderStore, utcnow
from .transport import MailTransport, OutboundMessage

logger = logging.getLogger(__name__)

PAUSE_REASON_REQUESTED = "paused_by_user"
PAUSE_REASON_QUOTA = "daily_quota_exhausted"
FAILURE_REASON_AUTH = "mail provider rejected credentials for the whole batch"

# Failures raised before the provider accepted the message; they do not use quota.
_NOT_HANDED_OFF = {TransportErrorCode.INVALID_RECIPIENT, TransportErrorCode.AUTH_FAILED}


class CampaignEngine:
    """Executes campaigns and ad hoc sends.

    Attributes:
        store: Persistence for campaigns, snapshots, send logs and quota.
        transport: Mail transport used for every send.
        config: Batch, retry and quota settings.
        run_async: Run send loops on a background thread (default).  With
            False, ``start``/``resume`` return only after the loop exits.
    """

    def __init__(
        self,
        store: ReminderStore,
        transport: MailTransport,
        config: ReminderConfig | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
        run_async: bool = True,
        owner: str | None = None,
    ) -> None:
        self.store = store
        self.transport = transport
        self.config = config or get_config()
        self.config.campaign.validate()
        self.run_async = run_async
        self.owner = owner or f"engine-{uuid.uuid4().hex[:8]}"
        self._sleep = sleep
        self._clock = clock
        self._threads: dict[str, threading.Thread] = {}
        self._threads_lock = threading.Lock()

    @property
    def settings(self):
        return self.config.campaign

    # -------------------------------------------------------------------
    # Campaign lifecycle
    # -------------------------------------------------------------------

    def create_campaign(self, company_id: str, name: str = "") -> Campaign:
        return self.store.create_campaign(
            company_id,
            name,
            batch_size=self.settings.batch_size,
            batch_delay_seconds=self.settings.batch_delay_seconds,
        )

    def validate(self, company_id: str, recipients: list[Recipient]) -> RecipientValidation:
        """Drop recipients that must not be emailed for this company."""
        return validate_recipients(recipients, self.store.list_suppressed(company_id))

    def start(self, campaign_id: str, recipients: list[Recipient]) -> StartResult:
        """Freeze the recipient snapshot and launch the send loop.

        Returns immediately (unless ``run_async`` is False) with an estimate.

        Raises:
            NoRecipientsError: Nothing left after validation.
            CampaignAlreadyRunningError: The campaign is already sending.
            InvalidCampaignStateError: The campaign is not a draft.
        """
        campaign = self.store.get_campaign(campaign_id)
        validation = self.validate(campaign.company_id, recipients)
        if not validation.valid:
            raise NoRecipientsError(
                f"Campaign {campaign_id} has no valid recipients",
                details={"excluded": validation.reasons()},
            )

        campaign = self.store.begin_sending(campaign_id, validation.valid, self.owner)
        result = self._estimate(campaign, len(validation.valid))
        logger.info(
            "Campaign %s started: %d recipients in %d batches (~%s)",
            campaign_id, result.total_recipients, result.total_batches,
            result.estimated_duration,
        )
        self._launch(campaign_id)
        return result

    def resume(self, campaign_id: str) -> StartResult:
        """Continue a paused campaign with its unattempted recipients.

        The frozen snapshot is reused as-is; nothing is re-evaluated.
        """
        campaign = self.store.begin_resume(campaign_id, self.owner)
        result = self._estimate(campaign, campaign.remaining_count)
        logger.info("Campaign %s resumed: %d recipients remaining",
                    campaign_id, result.total_recipients)
        self._launch(campaign_id)
        return result

    def pause(self, campaign_id: str) -> Campaign:
        """Ask the running loop to stop at the next batch boundary."""
        campaign = self.store.request_pause(campaign_id)
        logger.info("Pause requested for campaign %s", campaign_id)
        return campaign

    def wait(self, campaign_id: str, timeout: float | None = None) -> Campaign:
        """Block until this engine's loop for ``campaign_id`` exits."""
        with self._threads_lock:
            thread = self._threads.get(campaign_id)
        if thread is not None:
            thread.join(timeout)
        return self.store.get_campaign(campaign_id)

    def get_progress(self, campaign_id: str) -> CampaignProgress:
        """Progress computed from persisted counters; safe from any process."""
        c = self.store.get_campaign(campaign_id)
        batch_size = max(1, c.batch_size)
        attempted = c.attempted_count
        remaining = c.remaining_count

        if c.total_recipients:
            percent = round(attempted / c.total_recipients * 100)
        else:
            percent = 100 if c.status == CampaignStatus.COMPLETED else 0

        eta: Optional[float]
        if c.status in (CampaignStatus.SENDING, CampaignStatus.PAUSED, CampaignStatus.DRAFT):
            eta = self._estimated_seconds(remaining, batch_size, c.batch_delay_seconds)
        elif c.status == CampaignStatus.COMPLETED:
            eta = 0.0
        else:
            eta = None

        return CampaignProgress(
            campaign_id=c.id,
            status=c.status,
            total_recipients=c.total_recipients,
            attempted=attempted,
            sent=c.sent_count,
            failed=c.failed_count,
            skipped=c.skipped_count,
            remaining=remaining,
            current_batch=math.ceil(attempted / batch_size),
            total_batches=math.ceil(c.total_recipients / batch_size),
            percent_complete=percent,
            estimated_seconds_remaining=eta,
            pause_reason=c.pause_reason,
            failure_reason=c.failure_reason,
            last_sent_at=c.last_sent_at,
        )

    # -------------------------------------------------------------------
    # Send loop
    # -------------------------------------------------------------------

    def _launch(self, campaign_id: str) -> None:
        if not self.run_async:
            self.run(campaign_id)
            return
        thread = threading.Thread(
            target=self.run,
            args=(campaign_id,),
            name=f"campaign-{campaign_id[:8]}",
            daemon=True,
        )
        with self._threads_lock:
            self._threads[campaign_id] = thread
        thread.start()

    def run(self, campaign_id: str) -> Campaign:
        """Send loop for one campaign.  The caller must hold the campaign lock."""
        try:
            self._run_batches(campaign_id)
        except Exception as exc:
            logger.exception("Campaign %s failed", campaign_id)
            try:
                self.store.mark_failed(campaign_id, f"{type(exc).__name__}: {exc}")
            except ReminderError as mark_exc:
                logger.error("Could not mark campaign %s failed: %s", campaign_id, mark_exc)
        finally:
            self.store.release_lock(campaign_id)
        return self.store.get_campaign(campaign_id)

    def _run_batches(self, campaign_id: str) -> None:
        campaign = self.store.get_campaign(campaign_id)
        batches_run = 0

        while True:
            batch = self.store.pending_recipients(campaign_id, limit=campaign.batch_size)
            if not batch:
                done = self.store.mark_completed(campaign_id)
                logger.info("Campaign %s completed: %d sent, %d failed, %d skipped",
                            campaign_id, done.sent_count, done.failed_count, done.skipped_count)
                return

            if batches_run:
                self._sleep(campaign.batch_delay_seconds)

            if self.store.is_pause_requested(campaign_id):
                self.store.mark_paused(campaign_id, PAUSE_REASON_REQUESTED)
                logger.info("Campaign %s paused with %d recipients remaining",
                            campaign_id, len(self.store.pending_recipients(campaign_id)))
                return

            sendable = self._drop_suppressed(campaign_id, batch)
            if not sendable:
                batches_run += 1
                continue

            day = self._clock().date()
            granted = self.store.reserve_quota(
                campaign.company_id, len(sendable), self.settings.max_daily_emails, day)
            if granted == 0:
                self.store.mark_paused(campaign_id, PAUSE_REASON_QUOTA)
                logger.warning("Campaign %s paused: daily quota of %d reached for %s",
                               campaign_id, self.settings.max_daily_emails, campaign.company_id)
                return
            sendable = sendable[:granted]

            batches_run += 1
            logger.info("Campaign %s: dispatching batch %d (%d recipients)",
                        campaign_id, batches_run, len(sendable))
            reports = self._dispatch_batch(campaign_id, sendable)
            self._release_unsent(campaign.company_id, reports, day)

            if reports and all(
                isinstance(r.outcome, PermanentFailure)
                and r.outcome.code == TransportErrorCode.AUTH_FAILED
                for r in reports
            ):
                self.store.mark_failed(campaign_id, FAILURE_REASON_AUTH)
                logger.error("Campaign %s failed: %s", campaign_id, FAILURE_REASON_AUTH)
                return

    def _drop_suppressed(self, campaign_id: str, batch: list[Recipient]) -> list[Recipient]:
        """Skip recipients suppressed after the snapshot was taken."""
        suppressed = set(self.store.list_suppressed(batch[0].company_id))
        sendable = []
        for r in batch:
            if r.recipient_email.strip().lower() in suppressed:
                self.store.skip_recipient(campaign_id, r.id, "suppressed")
                logger.info("Skipped suppressed recipient %s", r.recipient_email)
            else:
                sendable.append(r)
        return sendable

    def _dispatch_batch(self, campaign_id: str, batch: list[Recipient]) -> list[DeliveryReport]:
        reports: list[DeliveryReport] = []
        with ThreadPoolExecutor(max_workers=len(batch)) as pool:
            futures = [pool.submit(self.dispatch, r) for r in batch]
            for future in as_completed(futures):
                report = future.result()
                self.store.record_dispatch(report, campaign_id=campaign_id, now=self._clock())
                reports.append(report)
        return reports

    # -------------------------------------------------------------------
    # Single recipient
    # -------------------------------------------------------------------

    def attempt(self, recipient: Recipient) -> SendOutcome:
        """One transport call, converted into an explicit result."""
        try:
            message_id = self.transport.send(self._build_message(recipient))
        except TransportError as exc:
            if exc.retryable:
                return RetryableFailure(exc.error_code, str(exc))
            return PermanentFailure(exc.error_code, str(exc))
        except Exception as exc:
            logger.exception("Unexpected transport error for %s", recipient.recipient_email)
            return RetryableFailure(TransportErrorCode.TRANSIENT, f"{type(exc).__name__}: {exc}")
        return Sent(message_id)

    def dispatch(self, recipient: Recipient) -> DeliveryReport:
        """Send to one recipient, applying the retry policy."""
        attempts = 0
        while True:
            outcome = self.attempt(recipient)
            attempts += 1
            if not isinstance(outcome, RetryableFailure) or attempts > self.settings.max_retries:
                break
            delay = self.settings.retry_base_delay_seconds * (2 ** (attempts - 1))
            logger.warning("Retrying %s in %.1fs after %s (attempt %d of %d)",
                           recipient.recipient_email, delay, outcome.code.value,
                           attempts, self.settings.max_retries + 1)
            self._sleep(delay)

        if not isinstance(outcome, Sent):
            logger.warning("Send to %s failed after %d attempt(s): %s %s",
                           recipient.recipient_email, attempts, outcome.code.value,
                           outcome.message)
        return DeliveryReport(recipient=recipient, outcome=outcome, attempts=attempts)

    def send_single(self, recipient: Recipient) -> DeliveryReport:
        """Send one reminder outside any campaign.

        Uses the same validation, quota, retry policy and SendLog recording
        as campaign sends.  When the daily quota is exhausted nothing is
        sent or recorded and the report carries a RATE_LIMITED failure.

        Raises:
            NoRecipientsError: The address is missing, malformed or suppressed.
        """
        validation = self.validate(recipient.company_id, [recipient])
        if not validation.valid:
            raise NoRecipientsError(
                f"Recipient {recipient.recipient_email!r} cannot be emailed",
                details={"excluded": validation.reasons()},
            )

        day = self._clock().date()
        granted = self.store.reserve_quota(
            recipient.company_id, 1, self.settings.max_daily_emails, day)
        if not granted:
            logger.warning("Daily quota reached for %s; ad hoc send skipped",
                           recipient.company_id)
            return DeliveryReport(
                recipient=recipient,
                outcome=RetryableFailure(TransportErrorCode.RATE_LIMITED, PAUSE_REASON_QUOTA),
                attempts=0,
            )

        report = self.dispatch(recipient)
        self.store.record_dispatch(report, campaign_id=None, now=self._clock())
        self._release_unsent(recipient.company_id, [report], day)
        return report

    # -------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------

    def _release_unsent(self, company_id: str, reports: list[DeliveryReport], day: date) -> None:
        """Give back the quota reserved for messages the provider never accepted."""
        unsent = sum(
            1 for r in reports
            if isinstance(r.outcome, PermanentFailure) and r.outcome.code in _NOT_HANDED_OFF
        )
        if unsent:
            self.store.release_quota(company_id, unsent, day)
            logger.debug("Released %d unused quota reservations for %s", unsent, company_id)

    def _build_message(self, recipient: Recipient) -> OutboundMessage:
        headers = {}
        if recipient.id:
            headers["X-Reminder-Recipient-Id"] = recipient.id
        if recipient.candidate_ref:
            headers["X-Reminder-Candidate"] = recipient.candidate_ref
        return OutboundMessage(
            sender=self.config.sender.email,
            sender_name=self.config.sender.name,
            to=recipient.recipient_email,
            subject=recipient.subject,
            html=recipient.body_html,
            text=recipient.body_text,
            headers=headers,
        )

    def _estimated_seconds(self, recipients: int, batch_size: int, delay: float) -> float:
        batches = math.ceil(recipients / max(1, batch_size))
        return batches * (delay + self.settings.estimated_batch_processing_seconds)

    def _estimate(self, campaign: Campaign, recipients: int) -> StartResult:
        return StartResult(
            campaign_id=campaign.id,
            total_recipients=recipients,
            total_batches=math.ceil(recipients / max(1, campaign.batch_size)),
            estimated_seconds=self._estimated_seconds(
                recipients, campaign.batch_size, campaign.batch_delay_seconds),
        )
