"""
Overdue Reminders -- Bucket Auto-Send

Entry point for the external time-based trigger: "evaluate buckets for
company X".  For every BucketConfig with auto-send enabled whose send hour
and weekday match the current local time, builds the bucket's recipients
and starts a campaign, at most once per day per bucket.

The trigger itself (cron, systemd timer) lives outside this package; run
``overdue-reminders auto-send`` hourly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from .bucket_classifier import sync_status
from .campaign_engine import CampaignEngine
from .config import ReminderConfig
from .consolidation import ConsolidationPolicy, build_recipients
from .exceptions import NoRecipientsError
from .models import Bucket, BucketConfig
from .store import ReminderStore, utcnow
from .template_engine import TemplateEngine

logger = logging.getLogger(__name__)


def should_send_now(cfg: BucketConfig, local_now: datetime) -> bool:
    """
    True when auto-send is on, the hour and weekday match, and no auto-send
    has happened yet on this local day.

    ``local_now`` must already be in the company's time zone.
    """
    if not cfg.auto_send:
        return False
    if local_now.hour != cfg.send_hour:
        return False
    if local_now.weekday() not in cfg.send_weekdays:
        return False
    last = cfg.last_auto_send_at
    if last is not None:
        if last.tzinfo is None:
            last = last.replace(tzinfo=timezone.utc)
        if local_now.tzinfo is not None:
            last = last.astimezone(local_now.tzinfo)
        if last.date() == local_now.date():
            return False
    return True


@dataclass
class AutoSendResult:
    company_id: str
    bucket: Bucket
    campaign_id: Optional[str] = None
    recipients: int = 0
    skipped_reason: str = ""


class BucketScheduler:
    """Evaluates BucketConfigs and starts auto-send campaigns."""

    def __init__(
        self,
        store: ReminderStore,
        engine: CampaignEngine,
        renderer: TemplateEngine,
        config: ReminderConfig,
    ) -> None:
        self.store = store
        self.engine = engine
        self.renderer = renderer
        self.config = config
        self.policy = ConsolidationPolicy.from_config(config)
        self.tz = ZoneInfo(config.schedule.timezone)

    def provision_company(self, company_id: str) -> list[BucketConfig]:
        """Ensure the company has a manual-only config for every bucket."""
        created = self.store.provision_bucket_configs(company_id)
        if created:
            logger.info("Provisioned %d bucket configs for %s", created, company_id)
        return self.store.get_bucket_configs(company_id)

    def evaluate_company(
        self,
        company_id: str,
        now: datetime | None = None,
        only: Optional[Bucket] = None,
        force: bool = False,
    ) -> list[AutoSendResult]:
        """Start campaigns for every bucket due now.

        Args:
            only: Restrict to one bucket.
            force: Ignore the schedule (manual "send this bucket now").
        """
        local_now = (now or utcnow()).astimezone(self.tz)
        configs = self.provision_company(company_id)
        due = [
            c for c in configs
            if (only is None or c.bucket == only) and (force or should_send_now(c, local_now))
        ]
        if not due:
            logger.debug("No buckets due for %s at %s", company_id, local_now.isoformat())
            return []

        invoices = self.store.list_invoices(company_id)
        changed = [inv for inv in invoices if sync_status(inv, local_now.date())]
        if changed:
            self.store.save_invoice_statuses(changed)
            logger.info("Marked %d invoices OVERDUE for %s", len(changed), company_id)
        customers = self.store.list_customers(company_id)

        results = []
        for cfg in due:
            results.append(self._send_bucket(company_id, cfg, invoices, customers, local_now))
        return results

    def evaluate_all(self, now: datetime | None = None) -> list[AutoSendResult]:
        results = []
        for company_id in self.store.list_company_ids():
            results.extend(self.evaluate_company(company_id, now))
        return results

    def _send_bucket(self, company_id, cfg, invoices, customers, local_now) -> AutoSendResult:
        result = AutoSendResult(company_id=company_id, bucket=cfg.bucket)
        recipients = build_recipients(
            customers, invoices, self.policy, local_now.date(), self.renderer,
            buckets={cfg.bucket},
        )
        self.store.mark_auto_sent(company_id, cfg.bucket, local_now)

        if not recipients:
            result.skipped_reason = "no_recipients"
            logger.info("Bucket %s for %s: nothing to send", cfg.bucket.value, company_id)
            return result

        campaign = self.engine.create_campaign(
            company_id, f"Auto-send {cfg.bucket.value} {local_now.date().isoformat()}")
        try:
            started = self.engine.start(campaign.id, recipients)
        except NoRecipientsError as exc:
            result.skipped_reason = "no_valid_recipients"
            logger.warning("Bucket %s for %s: %s", cfg.bucket.value, company_id, exc)
            return result

        result.campaign_id = campaign.id
        result.recipients = started.total_recipients
        logger.info("Bucket %s for %s: campaign %s started with %d recipients",
                    cfg.bucket.value, company_id, campaign.id, started.total_recipients)
        return result
