"""
Overdue Reminders -- SQLite Store

Persistent state for the reminder system: invoices, customers, bucket
schedules, campaigns with their frozen recipient snapshots, send logs,
delivery event history, the company daily quota and the suppression list.

Campaign lifecycle as persisted here:

    draft -> sending -> completed
                    |-> paused -> sending
                    |-> failed

Database schema:
    invoices              - Invoices imported or synced from the platform
    customers             - Customers and their consolidation preference
    bucket_configs        - Per-company, per-bucket auto-send schedule
    campaigns             - Campaign lifecycle and persisted progress counters
    campaign_recipients   - Ordered, immutable recipient snapshot per campaign
    campaign_locks        - One row while a campaign's send loop is active
    send_logs             - One row per dispatched recipient, updated by webhooks
    delivery_events       - Immutable detail row per accepted provider event
    daily_quota           - Company-scoped daily send counter
    suppressions          - Addresses that must not be emailed again
    audit_log             - Every state change, for compliance

Usage:
    from overdue_reminders.store import ReminderStore

    store = ReminderStore("data/reminders.db")
    campaign = store.create_campaign("acme", "March overdue")
    store.begin_sending(campaign.id, recipients, owner="worker-1")
    store.record_dispatch(report, campaign_id=campaign.id)

Thread safety: every method opens and closes its own connection.  State
changes that must not interleave run inside ``BEGIN IMMEDIATE``
transactions, which SQLite serializes across connections and processes.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from .exceptions import (
    CampaignAlreadyRunningError,
    CampaignNotFoundError,
    InvalidCampaignStateError,
)
from .models import (
    Bucket,
    BucketConfig,
    Campaign,
    CampaignStatus,
    Customer,
    DeliveryEventRecord,
    DeliveryEventType,
    DeliveryReport,
    DeliveryStatus,
    Invoice,
    InvoiceStatus,
    Recipient,
    SendLog,
    Sent,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_PRAGMA_SETTINGS = [
    "PRAGMA journal_mode=WAL;",
    "PRAGMA foreign_keys=ON;",
    "PRAGMA busy_timeout=5000;",
]


# ---------------------------------------------------------------------------
# Database Schema
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS invoices (
    id                  TEXT PRIMARY KEY,
    company_id          TEXT NOT NULL,
    customer_id         TEXT,
    number              TEXT NOT NULL DEFAULT '',
    amount              REAL NOT NULL DEFAULT 0.0,
    currency            TEXT NOT NULL DEFAULT 'AED',
    due_date            TEXT,
    status              TEXT NOT NULL DEFAULT 'SENT',
    customer_name       TEXT NOT NULL DEFAULT '',
    customer_email      TEXT NOT NULL DEFAULT '',
    last_reminder_at    TEXT
);

CREATE TABLE IF NOT EXISTS customers (
    id                          TEXT PRIMARY KEY,
    company_id                  TEXT NOT NULL,
    name                        TEXT NOT NULL DEFAULT '',
    email                       TEXT NOT NULL DEFAULT '',
    consolidation_enabled       INTEGER NOT NULL DEFAULT 1,
    min_invoice_count           INTEGER,
    min_contact_interval_days   INTEGER
);

CREATE TABLE IF NOT EXISTS bucket_configs (
    company_id          TEXT NOT NULL,
    bucket              TEXT NOT NULL,
    auto_send           INTEGER NOT NULL DEFAULT 0,
    send_hour           INTEGER NOT NULL DEFAULT 9,
    send_weekdays       TEXT NOT NULL DEFAULT '[0, 1, 2, 3, 4]',   -- JSON array
    last_auto_send_at   TEXT,
    PRIMARY KEY (company_id, bucket)
);

CREATE TABLE IF NOT EXISTS campaigns (
    id                  TEXT PRIMARY KEY,
    company_id          TEXT NOT NULL,
    name                TEXT NOT NULL DEFAULT '',
    status              TEXT NOT NULL DEFAULT 'draft',
    total_recipients    INTEGER NOT NULL DEFAULT 0,
    sent_count          INTEGER NOT NULL DEFAULT 0,
    failed_count        INTEGER NOT NULL DEFAULT 0,
    skipped_count       INTEGER NOT NULL DEFAULT 0,
    batch_size          INTEGER NOT NULL DEFAULT 5,
    batch_delay_seconds REAL NOT NULL DEFAULT 3.0,
    pause_requested     INTEGER NOT NULL DEFAULT 0,
    pause_reason        TEXT NOT NULL DEFAULT '',
    failure_reason      TEXT NOT NULL DEFAULT '',
    created_at          TEXT NOT NULL DEFAULT '',
    started_at          TEXT,
    paused_at           TEXT,
    resumed_at          TEXT,
    completed_at        TEXT,
    last_sent_at        TEXT
);

CREATE TABLE IF NOT EXISTS campaign_recipients (
    id                  TEXT PRIMARY KEY,
    campaign_id         TEXT NOT NULL,
    ordinal             INTEGER NOT NULL,
    recipient_email     TEXT NOT NULL DEFAULT '',
    company_id          TEXT NOT NULL,
    customer_id         TEXT,
    invoice_ids         TEXT NOT NULL DEFAULT '[]',        -- JSON array
    candidate_ref       TEXT,
    bucket              TEXT,
    subject             TEXT NOT NULL DEFAULT '',
    body_html           TEXT NOT NULL DEFAULT '',
    body_text           TEXT NOT NULL DEFAULT '',
    attempted           INTEGER NOT NULL DEFAULT 0,
    UNIQUE (campaign_id, ordinal),
    FOREIGN KEY (campaign_id) REFERENCES campaigns(id)
);

CREATE TABLE IF NOT EXISTS campaign_locks (
    campaign_id         TEXT PRIMARY KEY,
    owner               TEXT NOT NULL DEFAULT '',
    acquired_at         TEXT NOT NULL DEFAULT '',
    FOREIGN KEY (campaign_id) REFERENCES campaigns(id)
);

CREATE TABLE IF NOT EXISTS send_logs (
    id                  TEXT PRIMARY KEY,
    company_id          TEXT NOT NULL,
    recipient_email     TEXT NOT NULL DEFAULT '',
    subject             TEXT NOT NULL DEFAULT '',
    body_html           TEXT NOT NULL DEFAULT '',
    status              TEXT NOT NULL DEFAULT 'QUEUED',
    provider_message_id TEXT UNIQUE,
    campaign_id         TEXT,
    recipient_id        TEXT,
    invoice_id          TEXT,
    customer_id         TEXT,
    candidate_ref       TEXT,
    invoice_ids         TEXT NOT NULL DEFAULT '[]',        -- JSON array
    retry_count         INTEGER NOT NULL DEFAULT 0,
    error_code          TEXT NOT NULL DEFAULT '',
    error_message       TEXT NOT NULL DEFAULT '',
    bounce_reason       TEXT NOT NULL DEFAULT '',
    queued_at           TEXT,
    sent_at             TEXT,
    delivered_at        TEXT,
    opened_at           TEXT,
    clicked_at          TEXT,
    bounced_at          TEXT,
    complained_at       TEXT,
    failed_at           TEXT
);

CREATE TABLE IF NOT EXISTS delivery_events (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    send_log_id         TEXT NOT NULL,
    event_type          TEXT NOT NULL,
    occurred_at         TEXT NOT NULL,
    user_agent          TEXT NOT NULL DEFAULT '',
    ip_address          TEXT NOT NULL DEFAULT '',
    location            TEXT NOT NULL DEFAULT '',
    link                TEXT NOT NULL DEFAULT '',
    metadata            TEXT NOT NULL DEFAULT '{}',        -- JSON dict
    recorded_at         TEXT NOT NULL DEFAULT '',
    UNIQUE (send_log_id, event_type, occurred_at),
    FOREIGN KEY (send_log_id) REFERENCES send_logs(id)
);

CREATE TABLE IF NOT EXISTS daily_quota (
    company_id          TEXT NOT NULL,
    quota_date          TEXT NOT NULL,
    sent_count          INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (company_id, quota_date)
);

CREATE TABLE IF NOT EXISTS suppressions (
    company_id          TEXT NOT NULL,
    email               TEXT NOT NULL,
    reason              TEXT NOT NULL DEFAULT '',
    created_at          TEXT NOT NULL DEFAULT '',
    PRIMARY KEY (company_id, email)
);

CREATE TABLE IF NOT EXISTS audit_log (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_id   TEXT NOT NULL,
    action      TEXT NOT NULL,
    actor       TEXT NOT NULL DEFAULT 'system',
    details     TEXT NOT NULL DEFAULT '{}',
    timestamp   TEXT NOT NULL DEFAULT ''
);

CREATE INDEX IF NOT EXISTS idx_invoices_company ON invoices(company_id);
CREATE INDEX IF NOT EXISTS idx_customers_company ON customers(company_id);
CREATE INDEX IF NOT EXISTS idx_campaigns_company ON campaigns(company_id);
CREATE INDEX IF NOT EXISTS idx_recipients_pending ON campaign_recipients(campaign_id, attempted, ordinal);
CREATE INDEX IF NOT EXISTS idx_send_logs_campaign ON send_logs(campaign_id);
CREATE INDEX IF NOT EXISTS idx_events_log ON delivery_events(send_log_id);
CREATE INDEX IF NOT EXISTS idx_audit_entity ON audit_log(entity_id);
"""


# ---------------------------------------------------------------------------
# Serialization Helpers
# ---------------------------------------------------------------------------

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | date | None) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError):
        logger.warning("Unparseable timestamp in database: %r", value)
        return None


def _parse_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except (TypeError, ValueError):
        logger.warning("Unparseable date in database: %r", value)
        return None


def _json_list(value: Any) -> list:
    if not value:
        return []
    try:
        parsed = json.loads(value)
    except (json.JSONDecodeError, TypeError):
        return []
    return parsed if isinstance(parsed, list) else []


def _row_to_invoice(row: sqlite3.Row) -> Invoice:
    return Invoice(
        id=row["id"],
        company_id=row["company_id"],
        customer_id=row["customer_id"],
        number=row["number"],
        amount=float(row["amount"]),
        currency=row["currency"],
        due_date=_parse_date(row["due_date"]),
        status=InvoiceStatus(row["status"]),
        customer_name=row["customer_name"],
        customer_email=row["customer_email"],
        last_reminder_at=_parse_dt(row["last_reminder_at"]),
    )


def _row_to_customer(row: sqlite3.Row) -> Customer:
    return Customer(
        id=row["id"],
        company_id=row["company_id"],
        name=row["name"],
        email=row["email"],
        consolidation_enabled=bool(row["consolidation_enabled"]),
        min_invoice_count=row["min_invoice_count"],
        min_contact_interval_days=row["min_contact_interval_days"],
    )


def _row_to_bucket_config(row: sqlite3.Row) -> BucketConfig:
    return BucketConfig(
        company_id=row["company_id"],
        bucket=Bucket(row["bucket"]),
        auto_send=bool(row["auto_send"]),
        send_hour=int(row["send_hour"]),
        send_weekdays=[int(d) for d in _json_list(row["send_weekdays"])],
        last_auto_send_at=_parse_dt(row["last_auto_send_at"]),
    )


def _row_to_campaign(row: sqlite3.Row) -> Campaign:
    return Campaign(
        id=row["id"],
        company_id=row["company_id"],
        name=row["name"],
        status=CampaignStatus(row["status"]),
        total_recipients=row["total_recipients"],
        sent_count=row["sent_count"],
        failed_count=row["failed_count"],
        skipped_count=row["skipped_count"],
        batch_size=row["batch_size"],
        batch_delay_seconds=row["batch_delay_seconds"],
        pause_requested=bool(row["pause_requested"]),
        pause_reason=row["pause_reason"],
        failure_reason=row["failure_reason"],
        created_at=_parse_dt(row["created_at"]),
        started_at=_parse_dt(row["started_at"]),
        paused_at=_parse_dt(row["paused_at"]),
        resumed_at=_parse_dt(row["resumed_at"]),
        completed_at=_parse_dt(row["completed_at"]),
        last_sent_at=_parse_dt(row["last_sent_at"]),
    )


def _row_to_recipient(row: sqlite3.Row) -> Recipient:
    return Recipient(
        id=row["id"],
        ordinal=row["ordinal"],
        recipient_email=row["recipient_email"],
        company_id=row["company_id"],
        customer_id=row["customer_id"],
        invoice_ids=[str(i) for i in _json_list(row["invoice_ids"])],
        candidate_ref=row["candidate_ref"],
        bucket=Bucket(row["bucket"]) if row["bucket"] else None,
        subject=row["subject"],
        body_html=row["body_html"],
        body_text=row["body_text"],
        attempted=bool(row["attempted"]),
    )


def _row_to_send_log(row: sqlite3.Row) -> SendLog:
    return SendLog(
        id=row["id"],
        company_id=row["company_id"],
        recipient_email=row["recipient_email"],
        subject=row["subject"],
        body_html=row["body_html"],
        status=DeliveryStatus(row["status"]),
        provider_message_id=row["provider_message_id"],
        campaign_id=row["campaign_id"],
        recipient_id=row["recipient_id"],
        invoice_id=row["invoice_id"],
        customer_id=row["customer_id"],
        candidate_ref=row["candidate_ref"],
        invoice_ids=[str(i) for i in _json_list(row["invoice_ids"])],
        retry_count=row["retry_count"],
        error_code=row["error_code"],
        error_message=row["error_message"],
        bounce_reason=row["bounce_reason"],
        queued_at=_parse_dt(row["queued_at"]),
        sent_at=_parse_dt(row["sent_at"]),
        delivered_at=_parse_dt(row["delivered_at"]),
        opened_at=_parse_dt(row["opened_at"]),
        clicked_at=_parse_dt(row["clicked_at"]),
        bounced_at=_parse_dt(row["bounced_at"]),
        complained_at=_parse_dt(row["complained_at"]),
        failed_at=_parse_dt(row["failed_at"]),
    )


def _row_to_event(row: sqlite3.Row) -> DeliveryEventRecord:
    try:
        metadata = json.loads(row["metadata"] or "{}")
    except json.JSONDecodeError:
        metadata = {}
    return DeliveryEventRecord(
        id=row["id"],
        send_log_id=row["send_log_id"],
        event_type=DeliveryEventType(row["event_type"]),
        occurred_at=_parse_dt(row["occurred_at"]),
        user_agent=row["user_agent"],
        ip_address=row["ip_address"],
        location=row["location"],
        link=row["link"],
        metadata=metadata,
    )


# ---------------------------------------------------------------------------
# ReminderStore -- the main public API
# ---------------------------------------------------------------------------

class ReminderStore:
    """SQLite-backed persistence for campaigns, send logs and delivery history."""

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    # ------------------------------------------------------------------
    # Database connection helpers
    # ------------------------------------------------------------------

    def _get_conn(self) -> sqlite3.Connection:
        """Open a new SQLite connection with row_factory and pragmas."""
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row
        for pragma in _PRAGMA_SETTINGS:
            conn.execute(pragma)
        return conn

    def _init_db(self) -> None:
        conn = self._get_conn()
        try:
            conn.executescript(_SCHEMA_SQL)
            conn.commit()
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Write transaction holding the database write lock from the start.

        Commits on normal exit, rolls back if the block raises.
        """
        conn = self._get_conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            conn.commit()
        finally:
            conn.close()

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        conn = self._get_conn()
        try:
            return conn.execute(sql, params).fetchall()
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Invoices & Customers
    # ------------------------------------------------------------------

    def upsert_invoices(self, invoices: list[Invoice]) -> int:
        """Insert or replace invoices; returns the number written."""
        with self.transaction() as conn:
            for inv in invoices:
                conn.execute(
                    """INSERT OR REPLACE INTO invoices
                       (id, company_id, customer_id, number, amount, currency, due_date,
                        status, customer_name, customer_email, last_reminder_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (inv.id, inv.company_id, inv.customer_id, inv.number, inv.amount,
                     inv.currency, _iso(inv.due_date), inv.status.value, inv.customer_name,
                     inv.customer_email, _iso(inv.last_reminder_at)),
                )
        return len(invoices)

    def upsert_customers(self, customers: list[Customer]) -> int:
        with self.transaction() as conn:
            for c in customers:
                conn.execute(
                    """INSERT OR REPLACE INTO customers
                       (id, company_id, name, email, consolidation_enabled,
                        min_invoice_count, min_contact_interval_days)
                       VALUES (?, ?, ?, ?, ?, ?, ?)""",
                    (c.id, c.company_id, c.name, c.email, int(c.consolidation_enabled),
                     c.min_invoice_count, c.min_contact_interval_days),
                )
        return len(customers)

    def list_invoices(self, company_id: str) -> list[Invoice]:
        rows = self._query(
            "SELECT * FROM invoices WHERE company_id = ? ORDER BY due_date, id", (company_id,))
        return [_row_to_invoice(r) for r in rows]

    def list_customers(self, company_id: str) -> list[Customer]:
        rows = self._query(
            "SELECT * FROM customers WHERE company_id = ? ORDER BY id", (company_id,))
        return [_row_to_customer(r) for r in rows]

    def list_company_ids(self) -> list[str]:
        rows = self._query("SELECT DISTINCT company_id FROM invoices ORDER BY company_id")
        return [r["company_id"] for r in rows]

    def save_invoice_statuses(self, invoices: list[Invoice]) -> None:
        """Persist the status field of the given invoices."""
        with self.transaction() as conn:
            conn.executemany(
                "UPDATE invoices SET status = ? WHERE id = ?",
                [(inv.status.value, inv.id) for inv in invoices],
            )

    # ------------------------------------------------------------------
    # Bucket Configs
    # ------------------------------------------------------------------

    def provision_bucket_configs(self, company_id: str) -> int:
        """Create manual-only config rows for every bucket; existing rows are kept."""
        created = 0
        with self.transaction() as conn:
            for bucket in Bucket:
                cur = conn.execute(
                    "INSERT OR IGNORE INTO bucket_configs (company_id, bucket) VALUES (?, ?)",
                    (company_id, bucket.value),
                )
                created += cur.rowcount
        return created

    def get_bucket_configs(self, company_id: str) -> list[BucketConfig]:
        rows = self._query("SELECT * FROM bucket_configs WHERE company_id = ?", (company_id,))
        configs = [_row_to_bucket_config(r) for r in rows]
        configs.sort(key=lambda c: c.bucket.urgency)
        return configs

    def save_bucket_config(self, cfg: BucketConfig) -> None:
        with self.transaction() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO bucket_configs
                   (company_id, bucket, auto_send, send_hour, send_weekdays, last_auto_send_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (cfg.company_id, cfg.bucket.value, int(cfg.auto_send), cfg.send_hour,
                 json.dumps(sorted(cfg.send_weekdays)), _iso(cfg.last_auto_send_at)),
            )

    def mark_auto_sent(self, company_id: str, bucket: Bucket, when: datetime) -> None:
        with self.transaction() as conn:
            conn.execute(
                "UPDATE bucket_configs SET last_auto_send_at = ? WHERE company_id = ? AND bucket = ?",
                (_iso(when), company_id, bucket.value),
            )

    # ------------------------------------------------------------------
    # Campaign lifecycle
    # ------------------------------------------------------------------

    def create_campaign(
        self,
        company_id: str,
        name: str = "",
        batch_size: int = 5,
        batch_delay_seconds: float = 3.0,
    ) -> Campaign:
        campaign_id = str(uuid.uuid4())
        now = utcnow()
        with self.transaction() as conn:
            conn.execute(
                """INSERT INTO campaigns
                   (id, company_id, name, status, batch_size, batch_delay_seconds, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (campaign_id, company_id, name, CampaignStatus.DRAFT.value,
                 batch_size, batch_delay_seconds, _iso(now)),
            )
            self._log_action(conn, campaign_id, "campaign_created", details={"name": name})
        return self.get_campaign(campaign_id)

    def get_campaign(self, campaign_id: str) -> Campaign:
        rows = self._query("SELECT * FROM campaigns WHERE id = ?", (campaign_id,))
        if not rows:
            raise CampaignNotFoundError(f"Campaign {campaign_id} not found",
                                        details={"campaign_id": campaign_id})
        return _row_to_campaign(rows[0])

    def list_campaigns(self, company_id: str | None = None) -> list[Campaign]:
        if company_id:
            rows = self._query(
                "SELECT * FROM campaigns WHERE company_id = ? ORDER BY created_at DESC",
                (company_id,))
        else:
            rows = self._query("SELECT * FROM campaigns ORDER BY created_at DESC")
        return [_row_to_campaign(r) for r in rows]

    def _current_status(self, conn: sqlite3.Connection, campaign_id: str) -> CampaignStatus:
        row = conn.execute("SELECT status FROM campaigns WHERE id = ?", (campaign_id,)).fetchone()
        if row is None:
            raise CampaignNotFoundError(f"Campaign {campaign_id} not found",
                                        details={"campaign_id": campaign_id})
        return CampaignStatus(row["status"])

    def _acquire_lock(self, conn: sqlite3.Connection, campaign_id: str, owner: str) -> None:
        try:
            conn.execute(
                "INSERT INTO campaign_locks (campaign_id, owner, acquired_at) VALUES (?, ?, ?)",
                (campaign_id, owner, _iso(utcnow())),
            )
        except sqlite3.IntegrityError as exc:
            raise CampaignAlreadyRunningError(
                f"Campaign {campaign_id} already has an active send loop",
                details={"campaign_id": campaign_id},
            ) from exc

    def begin_sending(self, campaign_id: str, recipients: list[Recipient], owner: str) -> Campaign:
        """Freeze the recipient snapshot and move draft -> sending.

        The status change, the lock row and the snapshot commit together.

        Raises:
            CampaignNotFoundError: Unknown campaign.
            CampaignAlreadyRunningError: The campaign is already sending.
            InvalidCampaignStateError: The campaign is not a draft.
        """
        now = utcnow()
        with self.transaction() as conn:
            cur = conn.execute(
                """UPDATE campaigns SET status = ?, started_at = ?, total_recipients = ?
                   WHERE id = ? AND status = ?""",
                (CampaignStatus.SENDING.value, _iso(now), len(recipients),
                 campaign_id, CampaignStatus.DRAFT.value),
            )
            if cur.rowcount == 0:
                status = self._current_status(conn, campaign_id)
                if status == CampaignStatus.SENDING:
                    raise CampaignAlreadyRunningError(
                        f"Campaign {campaign_id} is already sending",
                        details={"campaign_id": campaign_id})
                raise InvalidCampaignStateError(
                    f"Campaign {campaign_id} cannot start from status '{status.value}'",
                    details={"campaign_id": campaign_id, "status": status.value})

            self._acquire_lock(conn, campaign_id, owner)

            for ordinal, r in enumerate(recipients):
                r.id = str(uuid.uuid4())
                r.ordinal = ordinal
                conn.execute(
                    """INSERT INTO campaign_recipients
                       (id, campaign_id, ordinal, recipient_email, company_id, customer_id,
                        invoice_ids, candidate_ref, bucket, subject, body_html, body_text)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (r.id, campaign_id, ordinal, r.recipient_email, r.company_id,
                     r.customer_id, json.dumps(r.invoice_ids), r.candidate_ref,
                     r.bucket.value if r.bucket else None, r.subject, r.body_html,
                     r.body_text),
                )
            self._log_action(conn, campaign_id, "campaign_started", actor=owner,
                             details={"total_recipients": len(recipients)})
        return self.get_campaign(campaign_id)

    def begin_resume(self, campaign_id: str, owner: str) -> Campaign:
        """Move paused -> sending and take the loop lock.

        Raises:
            CampaignAlreadyRunningError: The campaign is sending or its loop
                has not exited yet.
            InvalidCampaignStateError: The campaign is not paused.
        """
        now = utcnow()
        with self.transaction() as conn:
            cur = conn.execute(
                """UPDATE campaigns SET status = ?, resumed_at = ?, pause_requested = 0,
                          pause_reason = ''
                   WHERE id = ? AND status = ?""",
                (CampaignStatus.SENDING.value, _iso(now), campaign_id,
                 CampaignStatus.PAUSED.value),
            )
            if cur.rowcount == 0:
                status = self._current_status(conn, campaign_id)
                if status == CampaignStatus.SENDING:
                    raise CampaignAlreadyRunningError(
                        f"Campaign {campaign_id} is already sending",
                        details={"campaign_id": campaign_id})
                raise InvalidCampaignStateError(
                    f"Campaign {campaign_id} cannot resume from status '{status.value}'",
                    details={"campaign_id": campaign_id, "status": status.value})
            self._acquire_lock(conn, campaign_id, owner)
            self._log_action(conn, campaign_id, "campaign_resumed", actor=owner)
        return self.get_campaign(campaign_id)

    def release_lock(self, campaign_id: str) -> None:
        with self.transaction() as conn:
            conn.execute("DELETE FROM campaign_locks WHERE campaign_id = ?", (campaign_id,))

    def has_lock(self, campaign_id: str) -> bool:
        rows = self._query("SELECT 1 FROM campaign_locks WHERE campaign_id = ?", (campaign_id,))
        return bool(rows)

    def request_pause(self, campaign_id: str) -> Campaign:
        """Set the cooperative pause flag on a sending campaign.

        Pausing an already paused campaign is a no-op.
        """
        with self.transaction() as conn:
            status = self._current_status(conn, campaign_id)
            if status == CampaignStatus.SENDING:
                conn.execute("UPDATE campaigns SET pause_requested = 1 WHERE id = ?",
                             (campaign_id,))
                self._log_action(conn, campaign_id, "pause_requested")
            elif status != CampaignStatus.PAUSED:
                raise InvalidCampaignStateError(
                    f"Campaign {campaign_id} cannot be paused from status '{status.value}'",
                    details={"campaign_id": campaign_id, "status": status.value})
        return self.get_campaign(campaign_id)

    def is_pause_requested(self, campaign_id: str) -> bool:
        rows = self._query("SELECT pause_requested FROM campaigns WHERE id = ?", (campaign_id,))
        return bool(rows and rows[0]["pause_requested"])

    def _finish(self, campaign_id: str, status: CampaignStatus, stamp_field: str,
                reason_field: str | None = None, reason: str = "") -> Campaign:
        sets = ["status = ?", f"{stamp_field} = ?", "pause_requested = 0"]
        params: list[Any] = [status.value, _iso(utcnow())]
        if reason_field:
            sets.append(f"{reason_field} = ?")
            params.append(reason)
        params.extend([campaign_id, CampaignStatus.SENDING.value])
        with self.transaction() as conn:
            cur = conn.execute(
                f"UPDATE campaigns SET {', '.join(sets)} WHERE id = ? AND status = ?", params)
            if cur.rowcount == 0:
                current = self._current_status(conn, campaign_id)
                raise InvalidCampaignStateError(
                    f"Campaign {campaign_id} is '{current.value}', expected 'sending'",
                    details={"campaign_id": campaign_id, "status": current.value})
            self._log_action(conn, campaign_id, f"campaign_{status.value}",
                             details={"reason": reason} if reason else None)
        return self.get_campaign(campaign_id)

    def mark_paused(self, campaign_id: str, reason: str) -> Campaign:
        return self._finish(campaign_id, CampaignStatus.PAUSED, "paused_at", "pause_reason", reason)

    def mark_completed(self, campaign_id: str) -> Campaign:
        return self._finish(campaign_id, CampaignStatus.COMPLETED, "completed_at")

    def mark_failed(self, campaign_id: str, reason: str) -> Campaign:
        return self._finish(campaign_id, CampaignStatus.FAILED, "completed_at",
                            "failure_reason", reason)

    def recover_interrupted(self, campaign_id: str) -> Campaign:
        """Pause a campaign left 'sending' by a process that died, and drop its lock."""
        with self.transaction() as conn:
            status = self._current_status(conn, campaign_id)
            if status != CampaignStatus.SENDING:
                raise InvalidCampaignStateError(
                    f"Campaign {campaign_id} is '{status.value}', nothing to recover",
                    details={"campaign_id": campaign_id, "status": status.value})
            conn.execute(
                """UPDATE campaigns SET status = ?, paused_at = ?, pause_reason = ?,
                          pause_requested = 0 WHERE id = ?""",
                (CampaignStatus.PAUSED.value, _iso(utcnow()), "interrupted", campaign_id),
            )
            conn.execute("DELETE FROM campaign_locks WHERE campaign_id = ?", (campaign_id,))
            self._log_action(conn, campaign_id, "campaign_recovered")
        return self.get_campaign(campaign_id)

    # ------------------------------------------------------------------
    # Recipient snapshot
    # ------------------------------------------------------------------

    def pending_recipients(self, campaign_id: str, limit: int | None = None) -> list[Recipient]:
        """Unattempted recipients in snapshot order."""
        sql = ("SELECT * FROM campaign_recipients WHERE campaign_id = ? AND attempted = 0 "
               "ORDER BY ordinal")
        params: tuple = (campaign_id,)
        if limit is not None:
            sql += " LIMIT ?"
            params = (campaign_id, limit)
        return [_row_to_recipient(r) for r in self._query(sql, params)]

    def list_recipients(self, campaign_id: str) -> list[Recipient]:
        rows = self._query(
            "SELECT * FROM campaign_recipients WHERE campaign_id = ? ORDER BY ordinal",
            (campaign_id,))
        return [_row_to_recipient(r) for r in rows]

    def skip_recipient(self, campaign_id: str, recipient_id: str, reason: str) -> bool:
        """Mark a recipient attempted without sending and count it as skipped."""
        with self.transaction() as conn:
            cur = conn.execute(
                "UPDATE campaign_recipients SET attempted = 1 WHERE id = ? AND attempted = 0",
                (recipient_id,))
            if cur.rowcount == 0:
                return False
            conn.execute("UPDATE campaigns SET skipped_count = skipped_count + 1 WHERE id = ?",
                         (campaign_id,))
            self._log_action(conn, campaign_id, "recipient_skipped",
                             details={"recipient_id": recipient_id, "reason": reason})
        return True

    # ------------------------------------------------------------------
    # Daily quota
    # ------------------------------------------------------------------

    def reserve_quota(self, company_id: str, requested: int, limit: int, day: date) -> int:
        """Atomically take up to ``requested`` sends from today's quota.

        Returns the number granted, 0 when the quota is exhausted.
        """
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT sent_count FROM daily_quota WHERE company_id = ? AND quota_date = ?",
                (company_id, day.isoformat()),
            ).fetchone()
            used = row["sent_count"] if row else 0
            granted = max(0, min(requested, limit - used))
            if granted:
                conn.execute(
                    """INSERT INTO daily_quota (company_id, quota_date, sent_count)
                       VALUES (?, ?, ?)
                       ON CONFLICT (company_id, quota_date)
                       DO UPDATE SET sent_count = sent_count + excluded.sent_count""",
                    (company_id, day.isoformat(), granted),
                )
        return granted

    def release_quota(self, company_id: str, count: int, day: date) -> None:
        """Return unused reservations."""
        if count <= 0:
            return
        with self.transaction() as conn:
            conn.execute(
                """UPDATE daily_quota SET sent_count = MAX(0, sent_count - ?)
                   WHERE company_id = ? AND quota_date = ?""",
                (count, company_id, day.isoformat()),
            )

    def quota_used(self, company_id: str, day: date) -> int:
        rows = self._query(
            "SELECT sent_count FROM daily_quota WHERE company_id = ? AND quota_date = ?",
            (company_id, day.isoformat()))
        return rows[0]["sent_count"] if rows else 0

    # ------------------------------------------------------------------
    # Send logs
    # ------------------------------------------------------------------

    def record_dispatch(
        self,
        report: DeliveryReport,
        campaign_id: str | None = None,
        now: datetime | None = None,
    ) -> Optional[str]:
        """Persist the outcome of one recipient's dispatch.

        Inserts the SendLog, bumps the campaign counter, marks the snapshot
        entry attempted and stamps the reminded invoices, all in one
        transaction.  Returns None when the recipient was already recorded.
        """
        now = now or utcnow()
        r = report.recipient
        outcome = report.outcome
        log_id = str(uuid.uuid4())

        if isinstance(outcome, Sent):
            status, message_id = DeliveryStatus.SENT, outcome.message_id
            error_code = error_message = ""
        else:
            status, message_id = DeliveryStatus.FAILED, None
            error_code, error_message = outcome.code.value, outcome.message

        with self.transaction() as conn:
            if campaign_id and r.id:
                cur = conn.execute(
                    "UPDATE campaign_recipients SET attempted = 1 WHERE id = ? AND attempted = 0",
                    (r.id,))
                if cur.rowcount == 0:
                    logger.warning("Recipient %s of campaign %s already recorded",
                                   r.id, campaign_id)
                    return None

            conn.execute(
                """INSERT INTO send_logs
                   (id, company_id, recipient_email, subject, body_html, status,
                    provider_message_id, campaign_id, recipient_id, invoice_id, customer_id,
                    candidate_ref, invoice_ids, retry_count, error_code, error_message,
                    queued_at, sent_at, failed_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (log_id, r.company_id, r.recipient_email, r.subject, r.body_html,
                 status.value, message_id, campaign_id, r.id, r.invoice_id, r.customer_id,
                 r.candidate_ref, json.dumps(r.invoice_ids), report.retry_count,
                 error_code, error_message, _iso(now),
                 _iso(now) if status == DeliveryStatus.SENT else None,
                 _iso(now) if status == DeliveryStatus.FAILED else None),
            )

            if campaign_id:
                if status == DeliveryStatus.SENT:
                    conn.execute(
                        """UPDATE campaigns SET sent_count = sent_count + 1, last_sent_at = ?
                           WHERE id = ?""",
                        (_iso(now), campaign_id))
                else:
                    conn.execute(
                        "UPDATE campaigns SET failed_count = failed_count + 1 WHERE id = ?",
                        (campaign_id,))

            if status == DeliveryStatus.SENT and r.invoice_ids:
                placeholders = ", ".join("?" * len(r.invoice_ids))
                conn.execute(
                    f"UPDATE invoices SET last_reminder_at = ? WHERE id IN ({placeholders})",
                    [_iso(now), *r.invoice_ids])

            self._log_action(conn, log_id, f"send_{status.value.lower()}", details={
                "campaign_id": campaign_id,
                "recipient": r.recipient_email,
                "retry_count": report.retry_count,
                "error_code": error_code,
            })

        report.send_log_id = log_id
        return log_id

    def get_send_log(self, send_log_id: str) -> Optional[SendLog]:
        rows = self._query("SELECT * FROM send_logs WHERE id = ?", (send_log_id,))
        return _row_to_send_log(rows[0]) if rows else None

    def get_send_log_by_message_id(self, provider_message_id: str) -> Optional[SendLog]:
        rows = self._query("SELECT * FROM send_logs WHERE provider_message_id = ?",
                           (provider_message_id,))
        return _row_to_send_log(rows[0]) if rows else None

    def list_send_logs(self, campaign_id: str) -> list[SendLog]:
        rows = self._query(
            "SELECT * FROM send_logs WHERE campaign_id = ? ORDER BY queued_at, id",
            (campaign_id,))
        return [_row_to_send_log(r) for r in rows]

    # --- connection-level helpers used by the delivery tracker ---

    def fetch_send_log(self, conn: sqlite3.Connection,
                       provider_message_id: str) -> Optional[SendLog]:
        row = conn.execute("SELECT * FROM send_logs WHERE provider_message_id = ?",
                           (provider_message_id,)).fetchone()
        return _row_to_send_log(row) if row else None

    def update_send_log(self, conn: sqlite3.Connection, send_log_id: str,
                        changes: dict[str, Any]) -> None:
        if not changes:
            return
        values = []
        for v in changes.values():
            if isinstance(v, DeliveryStatus):
                v = v.value
            elif isinstance(v, datetime):
                v = _iso(v)
            values.append(v)
        assignments = ", ".join(f"{col} = ?" for col in changes)
        conn.execute(f"UPDATE send_logs SET {assignments} WHERE id = ?",
                     [*values, send_log_id])

    def insert_delivery_event(self, conn: sqlite3.Connection,
                              record: DeliveryEventRecord) -> bool:
        """Append a detail row; False when an identical event was already stored."""
        cur = conn.execute(
            """INSERT OR IGNORE INTO delivery_events
               (send_log_id, event_type, occurred_at, user_agent, ip_address, location,
                link, metadata, recorded_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (record.send_log_id, record.event_type.value, _iso(record.occurred_at),
             record.user_agent, record.ip_address, record.location, record.link,
             json.dumps(record.metadata, default=str), _iso(utcnow())),
        )
        return cur.rowcount == 1

    def list_delivery_events(self, send_log_id: str) -> list[DeliveryEventRecord]:
        rows = self._query(
            "SELECT * FROM delivery_events WHERE send_log_id = ? ORDER BY occurred_at, id",
            (send_log_id,))
        return [_row_to_event(r) for r in rows]

    # ------------------------------------------------------------------
    # Suppression list
    # ------------------------------------------------------------------

    def add_suppression(self, conn: sqlite3.Connection, company_id: str,
                        email: str, reason: str) -> None:
        conn.execute(
            """INSERT OR IGNORE INTO suppressions (company_id, email, reason, created_at)
               VALUES (?, ?, ?, ?)""",
            (company_id, email.strip().lower(), reason, _iso(utcnow())),
        )

    def suppress(self, company_id: str, email: str, reason: str = "manual") -> None:
        with self.transaction() as conn:
            self.add_suppression(conn, company_id, email, reason)

    def is_suppressed(self, company_id: str, email: str) -> bool:
        rows = self._query(
            "SELECT 1 FROM suppressions WHERE company_id = ? AND email = ?",
            (company_id, email.strip().lower()))
        return bool(rows)

    def list_suppressed(self, company_id: str) -> list[str]:
        rows = self._query(
            "SELECT email FROM suppressions WHERE company_id = ? ORDER BY email", (company_id,))
        return [r["email"] for r in rows]

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    def get_audit_log(self, entity_id: str | None = None, limit: int = 200) -> list[dict[str, Any]]:
        if entity_id:
            rows = self._query(
                "SELECT * FROM audit_log WHERE entity_id = ? ORDER BY id DESC LIMIT ?",
                (entity_id, limit))
        else:
            rows = self._query("SELECT * FROM audit_log ORDER BY id DESC LIMIT ?", (limit,))
        return [dict(r) for r in rows]

    def _log_action(
        self,
        conn: sqlite3.Connection,
        entity_id: str,
        action: str,
        actor: str = "system",
        details: dict[str, Any] | None = None,
    ) -> None:
        """Write an audit log entry (internal, must be within a transaction)."""
        conn.execute(
            """INSERT INTO audit_log (entity_id, action, actor, details, timestamp)
               VALUES (?, ?, ?, ?, ?)""",
            (entity_id, action, actor, json.dumps(details or {}, default=str), _iso(utcnow())),
        )
