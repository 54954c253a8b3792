"""
Overdue Reminders -- Configuration Module

Centralizes all configuration for the reminder campaign system.
Loads defaults from dataclasses, then overlays any overrides from config.yaml.

Usage:
    from overdue_reminders.config import get_config
    cfg = get_config()                         # loads config.yaml if present
    cfg = get_config("path/to/custom.yaml")    # loads a specific file
    print(cfg.campaign.batch_size)             # 5
    print(cfg.consolidation.min_invoice_count) # 2
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from .exceptions import ConfigurationError

# ---------------------------------------------------------------------------
# Path constants -- everything relative to the project root
# ---------------------------------------------------------------------------
_THIS_DIR = Path(__file__).resolve().parent          # overdue_reminders/
PROJECT_ROOT = _THIS_DIR.parent
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config.yaml"


# ===================================================================
# 1. Campaign Execution
# ===================================================================

@dataclass
class CampaignSettings:
    """Batching, backpressure and retry settings for campaign sends.

    The defaults match the provider limits the platform was tuned for:
    five messages per batch, three seconds between batches and a daily
    cap of 10,000 messages per company.
    """
    batch_size: int = 5
    batch_delay_seconds: float = 3.0
    max_retries: int = 2                    # additional attempts after the first
    retry_base_delay_seconds: float = 1.0   # doubled on every retry
    estimated_batch_processing_seconds: float = 2.0
    max_daily_emails: int = 10000

    def validate(self) -> None:
        if self.batch_size < 1:
            raise ConfigurationError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.batch_delay_seconds < 0:
            raise ConfigurationError("batch_delay_seconds must not be negative")
        if self.max_retries < 0:
            raise ConfigurationError("max_retries must not be negative")
        if self.retry_base_delay_seconds < 0:
            raise ConfigurationError("retry_base_delay_seconds must not be negative")
        if self.max_daily_emails < 1:
            raise ConfigurationError("max_daily_emails must be >= 1")


# ===================================================================
# 2. Consolidation Policy Defaults
# ===================================================================

@dataclass
class ConsolidationSettings:
    """Company-level defaults for grouping invoices into one reminder."""
    min_invoice_count: int = 2
    min_contact_interval_days: int = 7


# ===================================================================
# 3. Priority Scoring
# ===================================================================

@dataclass
class PriorityWeights:
    """Weights and reference points for the candidate priority score.

    Each factor is normalized to 0-100 against its reference value and
    capped there, then combined with the weights below.
    """
    amount_weight: float = 0.4
    age_weight: float = 0.4
    count_weight: float = 0.2
    reference_amount: float = 100_000.0
    reference_days: int = 180
    reference_count: int = 25


# ===================================================================
# 4. SMTP Settings
# ===================================================================

@dataclass
class SMTPSettings:
    """SMTP relay used by the SMTP transport."""
    host: str = "smtp.gmail.com"
    port: int = 587
    use_tls: bool = True
    timeout_seconds: float = 30.0
    username: str = ""        # set via env var SMTP_USERNAME
    password: str = ""        # set via env var SMTP_PASSWORD

    def __post_init__(self):
        self.username = self.username or os.environ.get("SMTP_USERNAME", "")
        self.password = self.password or os.environ.get("SMTP_PASSWORD", "")


# ===================================================================
# 5. Template Paths
# ===================================================================

@dataclass
class TemplatePaths:
    """Where the HTML Jinja2 templates live."""
    template_dir: str = "overdue_reminders/templates"

    @property
    def resolved_dir(self) -> Path:
        p = Path(self.template_dir)
        if not p.is_absolute():
            p = PROJECT_ROOT / p
        return p


# ===================================================================
# 6. Sender Info
# ===================================================================

@dataclass
class SenderInfo:
    """Default FROM identity for outgoing reminders."""
    name: str = "Accounts Receivable"
    email: str = "noreply@reminder.com"
    company: str = ""


# ===================================================================
# 7. Storage / Output
# ===================================================================

@dataclass
class DatabaseConfig:
    """SQLite database holding campaigns, send logs and delivery history."""
    path: str = "data/reminders.db"

    @property
    def resolved_path(self) -> Path:
        p = Path(self.path)
        if not p.is_absolute():
            p = PROJECT_ROOT / p
        return p


@dataclass
class OutputConfig:
    """Where dry-run .eml files and the log file are written."""
    eml_dir: str = "output/eml"
    log_file: str = "output/reminders.log"

    def resolve(self, rel_path: str) -> Path:
        p = Path(rel_path)
        if not p.is_absolute():
            p = PROJECT_ROOT / p
        return p


# ===================================================================
# 8. Schedule
# ===================================================================

@dataclass
class ScheduleConfig:
    """Time zone used to interpret BucketConfig send hours and weekdays."""
    timezone: str = "Asia/Dubai"


# ===================================================================
# Master Config
# ===================================================================

@dataclass
class ReminderConfig:
    """Top-level configuration container for the reminder system."""
    campaign: CampaignSettings = field(default_factory=CampaignSettings)
    consolidation: ConsolidationSettings = field(default_factory=ConsolidationSettings)
    priority: PriorityWeights = field(default_factory=PriorityWeights)
    smtp: SMTPSettings = field(default_factory=SMTPSettings)
    template_paths: TemplatePaths = field(default_factory=TemplatePaths)
    sender: SenderInfo = field(default_factory=SenderInfo)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)

    def validate(self) -> None:
        """Reject invalid settings before anything is sent."""
        self.campaign.validate()
        if self.consolidation.min_invoice_count < 1:
            raise ConfigurationError("consolidation.min_invoice_count must be >= 1")
        if self.consolidation.min_contact_interval_days < 0:
            raise ConfigurationError("consolidation.min_contact_interval_days must not be negative")


# ===================================================================
# YAML Loading
# ===================================================================

def _apply_yaml_to_config(cfg: ReminderConfig, data: dict) -> None:
    """Apply a parsed YAML dict onto a ReminderConfig instance."""
    _section_map = {
        "campaign": cfg.campaign,
        "consolidation": cfg.consolidation,
        "priority": cfg.priority,
        "smtp": cfg.smtp,
        "template_paths": cfg.template_paths,
        "sender": cfg.sender,
        "database": cfg.database,
        "output": cfg.output,
        "schedule": cfg.schedule,
    }

    for section_key, section_obj in _section_map.items():
        if section_key in data and isinstance(data[section_key], dict):
            for attr, val in data[section_key].items():
                if hasattr(section_obj, attr):
                    setattr(section_obj, attr, val)


def get_config(yaml_path: Optional[str | Path] = None) -> ReminderConfig:
    """Build a ReminderConfig, optionally overlaying values from a YAML file.

    Args:
        yaml_path: Path to a config.yaml file.  If None, looks for the
                   default config.yaml at the project root.  If that file
                   doesn't exist, returns pure defaults.

    Returns:
        Fully populated, validated ReminderConfig instance.

    Raises:
        ConfigurationError: If the file is not a mapping or a value is invalid.
    """
    cfg = ReminderConfig()

    path = Path(yaml_path) if yaml_path else DEFAULT_CONFIG_PATH
    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"{path} must contain a mapping at the top level")
        _apply_yaml_to_config(cfg, data)

    cfg.validate()
    return cfg
