"""Tests for overdue_reminders.campaign_engine -- batched campaign sends.

Covers:
- ceil(N / batch_size) batches with a delay between batches only
- Cooperative pause at a batch boundary and resume from the frozen snapshot
- Start / resume state guards (already running, invalid state)
- Daily quota: partial grants and pausing with daily_quota_exhausted
- Retry policy: backoff, exhaustion, permanent failures, auth failure
- Suppression applied at dispatch time
- Progress and start estimates
- Ad hoc single sends
- One reminder per invoice when a customer is not consolidated
- Background execution: start returns early, duplicate start rejected
"""

import threading
from datetime import timedelta

import pytest

from helpers import (
    COMPANY,
    NOW,
    TODAY,
    FakeTransport,
    RecordingSleep,
    make_customer,
    make_invoice,
    make_recipients,
)
from overdue_reminders.campaign_engine import (
    FAILURE_REASON_AUTH,
    PAUSE_REASON_QUOTA,
    PAUSE_REASON_REQUESTED,
    CampaignEngine,
)
from overdue_reminders.consolidation import ConsolidationPolicy, build_recipients
from overdue_reminders.exceptions import (
    CampaignAlreadyRunningError,
    CampaignNotFoundError,
    ConfigurationError,
    InvalidCampaignStateError,
    NoRecipientsError,
    TransportError,
    TransportErrorCode,
)
from overdue_reminders.models import (
    CampaignStatus,
    DeliveryStatus,
    PermanentFailure,
    RetryableFailure,
    Sent,
)


def _engine(store, transport, config, sleep=None, clock=None):
    return CampaignEngine(store, transport, config, sleep=sleep or RecordingSleep(),
                          clock=clock or (lambda: NOW), run_async=False)


# ============================================================================
# Batching
# ============================================================================

class TestBatching:

    def test_all_recipients_sent_in_ceil_batches(self, engine, store, transport, sleeper):
        campaign = engine.create_campaign(COMPANY, "March overdue")
        result = engine.start(campaign.id, make_recipients(12))

        assert result.total_recipients == 12
        assert result.total_batches == 3
        assert transport.calls == 12
        assert sorted(transport.sent_to) == sorted(f"customer{i}@example.com" for i in range(1, 13))

        done = store.get_campaign(campaign.id)
        assert done.status == CampaignStatus.COMPLETED
        assert done.sent_count == 12
        assert done.failed_count == 0
        assert done.completed_at is not None
        assert done.last_sent_at == NOW

    def test_delay_only_between_batches(self, engine, sleeper):
        campaign = engine.create_campaign(COMPANY)
        engine.start(campaign.id, make_recipients(12))
        assert sleeper.calls == [3.0, 3.0]

    def test_single_batch_never_sleeps(self, engine, sleeper):
        campaign = engine.create_campaign(COMPANY)
        engine.start(campaign.id, make_recipients(5))
        assert sleeper.calls == []

    def test_one_send_log_per_recipient(self, engine, store):
        campaign = engine.create_campaign(COMPANY)
        engine.start(campaign.id, make_recipients(7))
        logs = store.list_send_logs(campaign.id)
        assert len(logs) == 7
        assert all(log.status == DeliveryStatus.SENT for log in logs)
        assert all(log.provider_message_id.startswith("msg-") for log in logs)
        assert len({log.recipient_id for log in logs}) == 7

    def test_lock_released_after_run(self, engine, store):
        campaign = engine.create_campaign(COMPANY)
        engine.start(campaign.id, make_recipients(3))
        assert store.has_lock(campaign.id) is False

    def test_message_headers(self, engine, transport):
        campaign = engine.create_campaign(COMPANY)
        engine.start(campaign.id, make_recipients(1))
        message, _ = transport.sent[0]
        assert message.sender == "ar@acme.example"
        assert message.sender_name == "Acme Receivables"
        assert "X-Reminder-Recipient-Id" in message.headers

    def test_start_estimate(self, engine):
        campaign = engine.create_campaign(COMPANY)
        result = engine.start(campaign.id, make_recipients(12))
        assert result.estimated_seconds == 15.0
        assert result.estimated_duration == "15 seconds"


# ============================================================================
# Pause / resume
# ============================================================================

class TestPauseResume:

    def _paused_after_first_batch(self, store, transport, config):
        holder = {}

        def pause_on_first_delay(call_number):
            if call_number == 1:
                holder["engine"].pause(holder["campaign_id"])

        engine = _engine(store, transport, config, sleep=RecordingSleep(pause_on_first_delay))
        campaign = engine.create_campaign(COMPANY)
        holder.update(engine=engine, campaign_id=campaign.id)
        engine.start(campaign.id, make_recipients(7))
        return engine, campaign.id

    def test_pause_stops_at_batch_boundary(self, store, transport, config):
        _, campaign_id = self._paused_after_first_batch(store, transport, config)
        paused = store.get_campaign(campaign_id)
        assert paused.status == CampaignStatus.PAUSED
        assert paused.pause_reason == PAUSE_REASON_REQUESTED
        assert paused.sent_count == 5
        assert paused.pause_requested is False
        assert transport.calls == 5
        assert len(store.pending_recipients(campaign_id)) == 2

    def test_resume_sends_only_remaining(self, store, transport, config):
        engine, campaign_id = self._paused_after_first_batch(store, transport, config)
        result = engine.resume(campaign_id)

        assert result.total_recipients == 2
        assert transport.calls == 7
        assert len(set(transport.sent_to)) == 7
        done = store.get_campaign(campaign_id)
        assert done.status == CampaignStatus.COMPLETED
        assert done.sent_count == 7
        assert done.pause_reason == ""

    def test_progress_while_paused(self, store, transport, config):
        engine, campaign_id = self._paused_after_first_batch(store, transport, config)
        progress = engine.get_progress(campaign_id)
        assert progress.status == CampaignStatus.PAUSED
        assert progress.attempted == 5
        assert progress.remaining == 2
        assert progress.current_batch == 1
        assert progress.total_batches == 2
        assert progress.percent_complete == 71
        assert progress.estimated_seconds_remaining == 5.0
        assert progress.pause_reason == PAUSE_REASON_REQUESTED

    def test_pause_paused_campaign_is_noop(self, store, transport, config):
        engine, campaign_id = self._paused_after_first_batch(store, transport, config)
        assert engine.pause(campaign_id).status == CampaignStatus.PAUSED

    def test_pause_draft_rejected(self, engine):
        campaign = engine.create_campaign(COMPANY)
        with pytest.raises(InvalidCampaignStateError):
            engine.pause(campaign.id)

    def test_resume_completed_rejected(self, engine):
        campaign = engine.create_campaign(COMPANY)
        engine.start(campaign.id, make_recipients(2))
        with pytest.raises(InvalidCampaignStateError):
            engine.resume(campaign.id)

    def test_resume_while_loop_still_holds_lock(self, engine, store):
        campaign = engine.create_campaign(COMPANY)
        store.begin_sending(campaign.id, make_recipients(3), owner="worker-a")
        store.mark_paused(campaign.id, PAUSE_REASON_REQUESTED)

        with pytest.raises(CampaignAlreadyRunningError):
            engine.resume(campaign.id)
        assert store.get_campaign(campaign.id).status == CampaignStatus.PAUSED


# ============================================================================
# State guards
# ============================================================================

class TestStateGuards:

    def test_start_while_sending(self, engine, store, transport):
        campaign = engine.create_campaign(COMPANY)
        store.begin_sending(campaign.id, make_recipients(3), owner="worker-a")

        with pytest.raises(CampaignAlreadyRunningError):
            engine.start(campaign.id, make_recipients(3))
        assert transport.calls == 0

    def test_resume_while_sending(self, engine, store):
        campaign = engine.create_campaign(COMPANY)
        store.begin_sending(campaign.id, make_recipients(3), owner="worker-a")
        with pytest.raises(CampaignAlreadyRunningError):
            engine.resume(campaign.id)

    def test_start_completed_campaign(self, engine):
        campaign = engine.create_campaign(COMPANY)
        engine.start(campaign.id, make_recipients(2))
        with pytest.raises(InvalidCampaignStateError):
            engine.start(campaign.id, make_recipients(2))

    def test_unknown_campaign(self, engine):
        with pytest.raises(CampaignNotFoundError):
            engine.start("missing", make_recipients(1))

    def test_no_valid_recipients(self, engine, store):
        campaign = engine.create_campaign(COMPANY)
        recipients = make_recipients(2)
        for r in recipients:
            r.recipient_email = "not-an-email"
        with pytest.raises(NoRecipientsError) as exc_info:
            engine.start(campaign.id, recipients)
        assert exc_info.value.details["excluded"] == {"invalid_email": 2}
        assert store.get_campaign(campaign.id).status == CampaignStatus.DRAFT

    def test_invalid_and_suppressed_excluded_from_snapshot(self, engine, store, transport):
        store.suppress(COMPANY, "customer2@example.com", "hard_bounce")
        recipients = make_recipients(4)
        recipients[3].recipient_email = "CUSTOMER1@example.com"

        campaign = engine.create_campaign(COMPANY)
        result = engine.start(campaign.id, recipients)
        assert result.total_recipients == 2
        assert sorted(transport.sent_to) == ["customer1@example.com", "customer3@example.com"]

    def test_invalid_batch_size_rejected(self, store, transport, config):
        config.campaign.batch_size = 0
        with pytest.raises(ConfigurationError):
            _engine(store, transport, config)


# ============================================================================
# Daily quota
# ============================================================================

class TestDailyQuota:

    def test_quota_exhaustion_pauses(self, store, transport, config):
        config.campaign.max_daily_emails = 3
        engine = _engine(store, transport, config)
        campaign = engine.create_campaign(COMPANY)
        engine.start(campaign.id, make_recipients(7))

        paused = store.get_campaign(campaign.id)
        assert paused.status == CampaignStatus.PAUSED
        assert paused.pause_reason == PAUSE_REASON_QUOTA
        assert paused.sent_count == 3
        assert transport.calls == 3
        assert len(store.pending_recipients(campaign.id)) == 4
        assert store.quota_used(COMPANY, NOW.date()) == 3

    def test_resume_next_day(self, store, transport, config):
        config.campaign.max_daily_emails = 5
        engine = _engine(store, transport, config)
        campaign = engine.create_campaign(COMPANY)
        engine.start(campaign.id, make_recipients(7))
        assert store.get_campaign(campaign.id).pause_reason == PAUSE_REASON_QUOTA

        tomorrow = _engine(store, transport, config, clock=lambda: NOW + timedelta(days=1))
        tomorrow.resume(campaign.id)
        assert store.get_campaign(campaign.id).status == CampaignStatus.COMPLETED
        assert transport.calls == 7

    def test_rejected_before_handoff_returns_quota(self, store, config):
        transport = FakeTransport(script={"customer2@example.com": [
            TransportError(TransportErrorCode.INVALID_RECIPIENT, "550 no such user"),
        ]})
        engine = _engine(store, transport, config)
        campaign = engine.create_campaign(COMPANY)
        engine.start(campaign.id, make_recipients(3))

        done = store.get_campaign(campaign.id)
        assert done.sent_count == 2
        assert done.failed_count == 1
        assert store.quota_used(COMPANY, NOW.date()) == 2

    def test_transient_failure_keeps_quota(self, store, config):
        transport = FakeTransport(
            fail_all=TransportError(TransportErrorCode.TRANSIENT, "timeout"))
        engine = _engine(store, transport, config)
        campaign = engine.create_campaign(COMPANY)
        engine.start(campaign.id, make_recipients(2))
        assert store.quota_used(COMPANY, NOW.date()) == 2

    def test_quota_is_company_scoped(self, store, transport, config):
        config.campaign.max_daily_emails = 2
        engine = _engine(store, transport, config)
        first = engine.create_campaign(COMPANY)
        engine.start(first.id, make_recipients(2))
        other = engine.create_campaign("globex")
        engine.start(other.id, make_recipients(2, company="globex"))
        assert store.get_campaign(other.id).status == CampaignStatus.COMPLETED


# ============================================================================
# Retry policy
# ============================================================================

class TestRetries:

    def test_retry_then_success(self, store, config):
        transport = FakeTransport(script={"customer1@example.com": [
            TransportError(TransportErrorCode.RATE_LIMITED, "slow down"),
            TransportError(TransportErrorCode.TRANSIENT, "timeout"),
        ]})
        sleeper = RecordingSleep()
        engine = _engine(store, transport, config, sleep=sleeper)
        campaign = engine.create_campaign(COMPANY)
        engine.start(campaign.id, make_recipients(1))

        assert sleeper.calls == [1.0, 2.0]
        log = store.list_send_logs(campaign.id)[0]
        assert log.status == DeliveryStatus.SENT
        assert log.retry_count == 2
        assert store.get_campaign(campaign.id).sent_count == 1

    def test_retries_exhausted(self, store, config):
        failures = [TransportError(TransportErrorCode.TRANSIENT, "timeout") for _ in range(3)]
        transport = FakeTransport(script={"customer1@example.com": failures})
        engine = _engine(store, transport, config)
        campaign = engine.create_campaign(COMPANY)
        engine.start(campaign.id, make_recipients(2))

        assert transport.calls == 4
        done = store.get_campaign(campaign.id)
        assert done.status == CampaignStatus.COMPLETED
        assert done.sent_count == 1
        assert done.failed_count == 1
        failed = [log for log in store.list_send_logs(campaign.id)
                  if log.status == DeliveryStatus.FAILED][0]
        assert failed.error_code == "TRANSIENT"
        assert failed.retry_count == 2
        assert failed.provider_message_id is None

    def test_permanent_failure_not_retried(self, store, config):
        transport = FakeTransport(script={"customer1@example.com": [
            TransportError(TransportErrorCode.INVALID_RECIPIENT, "550 no such user"),
        ]})
        sleeper = RecordingSleep()
        engine = _engine(store, transport, config, sleep=sleeper)
        campaign = engine.create_campaign(COMPANY)
        engine.start(campaign.id, make_recipients(1))

        assert transport.calls == 1
        assert sleeper.calls == []
        log = store.list_send_logs(campaign.id)[0]
        assert log.error_code == "INVALID_RECIPIENT"
        assert log.retry_count == 0

    def test_auth_failure_fails_campaign(self, store, config):
        transport = FakeTransport(
            fail_all=TransportError(TransportErrorCode.AUTH_FAILED, "535 bad credentials"))
        engine = _engine(store, transport, config)
        campaign = engine.create_campaign(COMPANY)
        engine.start(campaign.id, make_recipients(7))

        failed = store.get_campaign(campaign.id)
        assert failed.status == CampaignStatus.FAILED
        assert failed.failure_reason == FAILURE_REASON_AUTH
        assert failed.failed_count == 5
        assert transport.calls == 5
        assert engine.get_progress(campaign.id).estimated_seconds_remaining is None

    def test_unexpected_exception_is_transient(self, engine, store):
        class Broken(FakeTransport):
            def send(self, message):
                raise RuntimeError("socket closed")

        engine.transport = Broken()
        outcome = engine.attempt(make_recipients(1)[0])
        assert isinstance(outcome, RetryableFailure)
        assert outcome.code == TransportErrorCode.TRANSIENT

    def test_attempt_results(self, engine):
        engine.transport = FakeTransport(script={"customer1@example.com": [
            TransportError(TransportErrorCode.AUTH_FAILED, "535"),
        ]})
        recipient = make_recipients(1)[0]
        assert isinstance(engine.attempt(recipient), PermanentFailure)
        assert isinstance(engine.attempt(recipient), Sent)


# ============================================================================
# Suppression at dispatch time
# ============================================================================

class TestDispatchSuppression:

    def test_suppressed_after_snapshot_is_skipped(self, store, transport, config):
        def suppress_later(call_number):
            if call_number == 1:
                store.suppress(COMPANY, "customer6@example.com", "complaint")

        engine = _engine(store, transport, config, sleep=RecordingSleep(suppress_later))
        campaign = engine.create_campaign(COMPANY)
        engine.start(campaign.id, make_recipients(7))

        done = store.get_campaign(campaign.id)
        assert done.status == CampaignStatus.COMPLETED
        assert done.sent_count == 6
        assert done.skipped_count == 1
        assert "customer6@example.com" not in transport.sent_to


# ============================================================================
# Progress
# ============================================================================

class TestProgress:

    def test_draft_progress(self, engine):
        campaign = engine.create_campaign(COMPANY)
        progress = engine.get_progress(campaign.id)
        assert progress.status == CampaignStatus.DRAFT
        assert progress.total_recipients == 0
        assert progress.percent_complete == 0
        assert progress.estimated_seconds_remaining == 0.0

    def test_completed_progress(self, engine):
        campaign = engine.create_campaign(COMPANY)
        engine.start(campaign.id, make_recipients(7))
        progress = engine.get_progress(campaign.id)
        assert progress.percent_complete == 100
        assert progress.current_batch == 2
        assert progress.total_batches == 2
        assert progress.remaining == 0
        assert progress.estimated_seconds_remaining == 0.0
        assert progress.to_dict()["status"] == "completed"


# ============================================================================
# Ad hoc sends
# ============================================================================

class TestSendSingle:

    def test_send_single_records_log(self, engine, store, transport):
        recipient = make_recipients(1)[0]
        report = engine.send_single(recipient)

        assert report.succeeded
        log = store.get_send_log(report.send_log_id)
        assert log.campaign_id is None
        assert log.status == DeliveryStatus.SENT
        assert log.invoice_id == "INV-001"
        assert store.quota_used(COMPANY, NOW.date()) == 1

    def test_send_single_quota_exhausted(self, store, transport, config):
        config.campaign.max_daily_emails = 1
        engine = _engine(store, transport, config)
        engine.send_single(make_recipients(1)[0])
        report = engine.send_single(make_recipients(2)[1])

        assert not report.succeeded
        assert report.attempts == 0
        assert report.outcome.code == TransportErrorCode.RATE_LIMITED
        assert report.send_log_id is None
        assert transport.calls == 1

    def test_send_single_invalid_recipient_returns_quota(self, store, config):
        transport = FakeTransport(script={"customer1@example.com": [
            TransportError(TransportErrorCode.INVALID_RECIPIENT, "553 mailbox name not allowed"),
        ]})
        engine = _engine(store, transport, config)
        report = engine.send_single(make_recipients(1)[0])
        assert not report.succeeded
        assert store.quota_used(COMPANY, NOW.date()) == 0

    def test_send_single_suppressed(self, engine, store):
        store.suppress(COMPANY, "customer1@example.com")
        with pytest.raises(NoRecipientsError):
            engine.send_single(make_recipients(1)[0])

    def test_send_single_retries(self, store, config):
        transport = FakeTransport(script={"customer1@example.com": [
            TransportError(TransportErrorCode.RATE_LIMITED, "421"),
        ]})
        engine = _engine(store, transport, config)
        report = engine.send_single(make_recipients(1)[0])
        assert report.succeeded
        assert report.retry_count == 1


# ============================================================================
# Individual reminders for one customer
# ============================================================================

class TestIndividualReminders:

    def test_every_invoice_sent_when_consolidation_disabled(
            self, engine, store, transport, renderer):
        customer = make_customer("alpha", consolidation_enabled=False)
        invoices = [
            make_invoice("A1", TODAY - timedelta(days=5), customer_id="alpha"),
            make_invoice("A2", TODAY - timedelta(days=10), customer_id="alpha"),
            make_invoice("A3", TODAY - timedelta(days=40), customer_id="alpha"),
        ]
        store.upsert_invoices(invoices)
        recipients = build_recipients([customer], invoices, ConsolidationPolicy(), TODAY, renderer)

        campaign = engine.create_campaign(COMPANY)
        result = engine.start(campaign.id, recipients)

        assert result.total_recipients == 3
        assert transport.calls == 3
        assert transport.sent_to == ["alpha@example.com"] * 3
        done = store.get_campaign(campaign.id)
        assert done.sent_count == 3
        assert done.skipped_count == 0
        assert sorted(log.invoice_id for log in store.list_send_logs(campaign.id)) == \
            ["A1", "A2", "A3"]
        assert all(inv.last_reminder_at == NOW for inv in store.list_invoices(COMPANY))


# ============================================================================
# Background execution
# ============================================================================

class GatedSleep:
    """Sleep that blocks the send loop until the test opens the gate."""

    def __init__(self):
        self.entered = threading.Event()
        self.gate = threading.Event()

    def __call__(self, seconds):
        self.entered.set()
        self.gate.wait(5)


class TestBackgroundExecution:

    def test_start_returns_before_loop_finishes(self, store, transport, config):
        sleep = GatedSleep()
        engine = CampaignEngine(store, transport, config, sleep=sleep, clock=lambda: NOW)
        campaign = engine.create_campaign(COMPANY)

        result = engine.start(campaign.id, make_recipients(7))
        assert result.total_batches == 2
        assert sleep.entered.wait(5)
        assert transport.calls == 5
        assert store.get_campaign(campaign.id).status == CampaignStatus.SENDING

        with pytest.raises(CampaignAlreadyRunningError):
            engine.start(campaign.id, make_recipients(7))

        engine.pause(campaign.id)
        sleep.gate.set()
        paused = engine.wait(campaign.id, timeout=5)
        assert paused.status == CampaignStatus.PAUSED
        assert paused.sent_count == 5

        engine.resume(campaign.id)
        done = engine.wait(campaign.id, timeout=5)
        assert done.status == CampaignStatus.COMPLETED
        assert done.sent_count == 7
        assert transport.calls == 7
        assert len(set(transport.sent_to)) == 7
        assert store.has_lock(campaign.id) is False
