"""Overdue Reminders -- Command Line Interface.

Subcommands::

    import      Load invoices and customers from an .xlsx workbook
    evaluate    Print bucket summaries and consolidation candidates
    campaign    run | progress | pause | resume | recover | list
    send        Send one invoice reminder outside any campaign
    webhook     Replay provider webhook bodies from a file
    auto-send   Evaluate bucket schedules (run hourly from cron)
    suppress    Add an address to a company's suppression list

Usage::

    overdue-reminders import data/receivables.xlsx --company acme
    overdue-reminders evaluate --company acme
    overdue-reminders campaign run --company acme --bucket overdue_8_14 --dry-run
    overdue-reminders campaign progress <campaign-id>
    overdue-reminders webhook replay events.jsonl
    overdue-reminders auto-send
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import date
from pathlib import Path
from typing import Optional

from .bucket_classifier import summarize, sync_status
from .campaign_engine import CampaignEngine
from .config import ReminderConfig, get_config
from .consolidation import (
    ConsolidationPolicy,
    build_recipients,
    candidate_stats,
    evaluate_company,
)
from .data_loader import DEFAULT_COMPANY_ID, load_workbook
from .delivery_tracking import DeliveryTracker
from .exceptions import ReminderError
from .models import Bucket, Recipient
from .scheduler import BucketScheduler
from .store import ReminderStore, utcnow
from .template_engine import TemplateEngine
from .transport import EmlFileTransport, MailTransport, SMTPTransport
from .webhooks import handle_webhook

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

def _build_transport(config: ReminderConfig, dry_run: bool) -> MailTransport:
    if dry_run:
        out = config.output.resolve(config.output.eml_dir)
        logger.info("Dry run: writing reminders to %s", out)
        return EmlFileTransport(out)
    return SMTPTransport(config.smtp)


def _attach_log_file(config: ReminderConfig) -> None:
    if not config.output.log_file:
        return
    path = config.output.resolve(config.output.log_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(handler)


def _open_store(config: ReminderConfig) -> ReminderStore:
    return ReminderStore(config.database.resolved_path)


def _today(args) -> date:
    if getattr(args, "date", None):
        return date.fromisoformat(args.date)
    return utcnow().date()


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def _parse_buckets(values: Optional[list[str]]) -> Optional[set[Bucket]]:
    if not values:
        return None
    return {Bucket(v) for v in values}


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_import(args, config: ReminderConfig) -> int:
    result = load_workbook(args.xlsx, company_id=args.company)
    result.print_summary()
    store = _open_store(config)
    store.upsert_customers(result.customers)
    store.upsert_invoices(result.invoices)
    for company_id in {inv.company_id for inv in result.invoices}:
        store.provision_bucket_configs(company_id)
    return 0


def cmd_evaluate(args, config: ReminderConfig) -> int:
    store = _open_store(config)
    today = _today(args)
    invoices = store.list_invoices(args.company)
    for inv in invoices:
        sync_status(inv, today)
    customers = store.list_customers(args.company)

    print()
    print("=" * 65)
    print(f"  Overdue Reminders -- {args.company} as of {today.isoformat()}")
    print("=" * 65)
    for summary in summarize(invoices, today).values():
        print(f"  {summary.label:<22s}: {summary.invoice_count:4d} invoices  "
              f"{summary.total_amount:>14,.2f}  ({summary.eligible_count} eligible)")
    print("-" * 65)

    policy = ConsolidationPolicy.from_config(config)
    candidates = evaluate_company(customers, invoices, policy, today)
    for cand in candidates:
        flag = "ELIGIBLE" if cand.eligible else cand.ineligible_reason.value
        print(f"  {cand.customer_id:<16s} {cand.invoice_count:3d} inv  "
              f"{cand.total_amount:>12,.2f}  score {cand.priority_score:5.1f}  "
              f"{cand.escalation_level.value:<7s} {flag}")
    stats = candidate_stats(candidates)
    print("-" * 65)
    print(f"  Eligible: {stats['eligible']}/{stats['total_candidates']}  "
          f"emails saved: {stats['emails_saved']} ({stats['percentage_reduction']}%)")
    print("=" * 65)
    return 0


def cmd_campaign_run(args, config: ReminderConfig) -> int:
    store = _open_store(config)
    today = _today(args)
    invoices = store.list_invoices(args.company)
    changed = [inv for inv in invoices if sync_status(inv, today)]
    if changed:
        store.save_invoice_statuses(changed)

    renderer = TemplateEngine(config.template_paths.resolved_dir, config=config)
    recipients = build_recipients(
        store.list_customers(args.company), invoices,
        ConsolidationPolicy.from_config(config), today, renderer,
        buckets=_parse_buckets(args.bucket),
    )
    engine = CampaignEngine(store, _build_transport(config, args.dry_run), config,
                            run_async=False)
    campaign = engine.create_campaign(args.company, args.name or f"Reminders {today.isoformat()}")
    started = engine.start(campaign.id, recipients)
    print(f"Campaign {campaign.id}: {started.total_recipients} recipients, "
          f"{started.total_batches} batches (~{started.estimated_duration})")
    _print_json(engine.get_progress(campaign.id).to_dict())
    return 0


def cmd_campaign_progress(args, config: ReminderConfig) -> int:
    engine = CampaignEngine(_open_store(config), MailTransport(), config)
    _print_json(engine.get_progress(args.campaign_id).to_dict())
    return 0


def cmd_campaign_pause(args, config: ReminderConfig) -> int:
    campaign = _open_store(config).request_pause(args.campaign_id)
    print(f"Pause requested for {campaign.id} (status {campaign.status.value})")
    return 0


def cmd_campaign_resume(args, config: ReminderConfig) -> int:
    store = _open_store(config)
    engine = CampaignEngine(store, _build_transport(config, args.dry_run), config,
                            run_async=False)
    started = engine.resume(args.campaign_id)
    print(f"Campaign {args.campaign_id} resumed with {started.total_recipients} recipients")
    _print_json(engine.get_progress(args.campaign_id).to_dict())
    return 0


def cmd_campaign_recover(args, config: ReminderConfig) -> int:
    campaign = _open_store(config).recover_interrupted(args.campaign_id)
    print(f"Campaign {campaign.id} is now {campaign.status.value}")
    return 0


def cmd_campaign_list(args, config: ReminderConfig) -> int:
    for c in _open_store(config).list_campaigns(args.company):
        print(f"{c.id}  {c.status.value:<9s}  {c.sent_count:5d} sent  "
              f"{c.failed_count:4d} failed  {c.remaining_count:5d} left  {c.name}")
    return 0


def cmd_send(args, config: ReminderConfig) -> int:
    store = _open_store(config)
    today = _today(args)
    invoice = next((i for i in store.list_invoices(args.company) if i.id == args.invoice_id), None)
    if invoice is None:
        print(f"ERROR: invoice {args.invoice_id} not found for {args.company}")
        return 1
    customer = next(
        (c for c in store.list_customers(args.company) if c.id == invoice.customer_id), None)

    renderer = TemplateEngine(config.template_paths.resolved_dir, config=config)
    rendered = renderer.render_invoice_reminder(invoice, today, customer)
    recipient = Recipient(
        recipient_email=args.to or (customer.email if customer and customer.email
                                    else invoice.customer_email),
        company_id=args.company,
        subject=rendered.subject,
        body_html=rendered.body_html,
        body_text=rendered.body_text,
        customer_id=invoice.customer_id,
        invoice_ids=[invoice.id],
    )
    engine = CampaignEngine(store, _build_transport(config, args.dry_run), config)
    report = engine.send_single(recipient)
    print(f"{recipient.recipient_email}: {report.outcome} after {report.attempts} attempt(s)")
    return 0 if report.succeeded else 1


def cmd_webhook_replay(args, config: ReminderConfig) -> int:
    """Replay one JSON body per line (or a single JSON array) through the handler."""
    tracker = DeliveryTracker(_open_store(config))
    text = Path(args.file).read_text(encoding="utf-8").strip()
    if text.startswith("["):
        bodies = json.loads(text)
    else:
        bodies = [line for line in text.splitlines() if line.strip()]

    failures = 0
    for body in bodies:
        response = handle_webhook(tracker, body)
        if response.status != 200:
            failures += 1
        print(response.status, json.dumps(response.body))
    print(f"Replayed {len(bodies)} events, {failures} rejected")
    return 1 if failures else 0


def cmd_auto_send(args, config: ReminderConfig) -> int:
    store = _open_store(config)
    engine = CampaignEngine(store, _build_transport(config, args.dry_run), config,
                            run_async=False)
    renderer = TemplateEngine(config.template_paths.resolved_dir, config=config)
    scheduler = BucketScheduler(store, engine, renderer, config)

    if args.company:
        only = Bucket(args.bucket) if args.bucket else None
        results = scheduler.evaluate_company(args.company, only=only, force=args.force)
    else:
        results = scheduler.evaluate_all()

    for r in results:
        status = r.campaign_id or r.skipped_reason
        print(f"{r.company_id:<12s} {r.bucket.value:<16s} {r.recipients:4d} recipients  {status}")
    if not results:
        print("No buckets due.")
    return 0


def cmd_suppress(args, config: ReminderConfig) -> int:
    _open_store(config).suppress(args.company, args.email, args.reason)
    print(f"Suppressed {args.email} for {args.company}")
    return 0


# ---------------------------------------------------------------------------
# CLI Entry Point
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="overdue-reminders",
        description="Overdue Reminders - payment reminder campaigns",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", default=None,
                        help="Path to config.yaml (default: project root config.yaml)")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Enable verbose (DEBUG) logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("import", help="Import an .xlsx workbook")
    p.add_argument("xlsx")
    p.add_argument("--company", default=DEFAULT_COMPANY_ID)
    p.set_defaults(func=cmd_import)

    p = sub.add_parser("evaluate", help="Bucket summary and consolidation candidates")
    p.add_argument("--company", required=True)
    p.add_argument("--date", help="Evaluate as of YYYY-MM-DD (default: today, UTC)")
    p.set_defaults(func=cmd_evaluate)

    campaign = sub.add_parser("campaign", help="Campaign operations")
    csub = campaign.add_subparsers(dest="action", required=True)

    p = csub.add_parser("run", help="Create and send a campaign (blocks until done or paused)")
    p.add_argument("--company", required=True)
    p.add_argument("--name", default="")
    p.add_argument("--bucket", action="append", choices=[b.value for b in Bucket],
                   help="Restrict to a bucket (repeatable)")
    p.add_argument("--date")
    p.add_argument("--dry-run", action="store_true", help="Write .eml files instead of sending")
    p.set_defaults(func=cmd_campaign_run)

    for name, func in (("progress", cmd_campaign_progress),
                       ("pause", cmd_campaign_pause),
                       ("recover", cmd_campaign_recover)):
        p = csub.add_parser(name)
        p.add_argument("campaign_id")
        p.set_defaults(func=func)

    p = csub.add_parser("resume")
    p.add_argument("campaign_id")
    p.add_argument("--dry-run", action="store_true")
    p.set_defaults(func=cmd_campaign_resume)

    p = csub.add_parser("list")
    p.add_argument("--company", default=None)
    p.set_defaults(func=cmd_campaign_list)

    p = sub.add_parser("send", help="Send one invoice reminder")
    p.add_argument("invoice_id")
    p.add_argument("--company", required=True)
    p.add_argument("--to", help="Override the recipient address")
    p.add_argument("--date")
    p.add_argument("--dry-run", action="store_true")
    p.set_defaults(func=cmd_send)

    webhook = sub.add_parser("webhook", help="Webhook tools")
    wsub = webhook.add_subparsers(dest="action", required=True)
    p = wsub.add_parser("replay", help="Replay JSON bodies from a file")
    p.add_argument("file")
    p.set_defaults(func=cmd_webhook_replay)

    p = sub.add_parser("auto-send", help="Evaluate bucket auto-send schedules")
    p.add_argument("--company")
    p.add_argument("--bucket", choices=[b.value for b in Bucket])
    p.add_argument("--force", action="store_true", help="Ignore the schedule")
    p.add_argument("--dry-run", action="store_true")
    p.set_defaults(func=cmd_auto_send)

    p = sub.add_parser("suppress", help="Suppress an address for a company")
    p.add_argument("email")
    p.add_argument("--company", required=True)
    p.add_argument("--reason", default="manual")
    p.set_defaults(func=cmd_suppress)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """CLI entry point.

    Returns:
        Exit code (0 = success, 1 = error).
    """
    args = build_parser().parse_args(argv)

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(level=log_level, format=LOG_FORMAT, datefmt="%H:%M:%S")

    try:
        config = get_config(args.config)
        _attach_log_file(config)
        return args.func(args, config)
    except ReminderError as exc:
        logger.error("%s: %s", exc.code, exc)
        print(f"\nERROR: {exc}")
        return 1
    except FileNotFoundError as exc:
        logger.error("File not found: %s", exc)
        print(f"\nERROR: {exc}")
        return 1
    except ValueError as exc:
        logger.error("Data error: %s", exc)
        print(f"\nERROR: {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
