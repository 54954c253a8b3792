"""Shared fixtures for the overdue_reminders test suite."""

import pytest

from helpers import NOW, FakeTransport, RecordingSleep
from overdue_reminders.campaign_engine import CampaignEngine
from overdue_reminders.config import ReminderConfig
from overdue_reminders.store import ReminderStore
from overdue_reminders.template_engine import TemplateEngine


@pytest.fixture
def config(tmp_path):
    cfg = ReminderConfig()
    cfg.campaign.batch_size = 5
    cfg.campaign.batch_delay_seconds = 3.0
    cfg.campaign.max_retries = 2
    cfg.campaign.retry_base_delay_seconds = 1.0
    cfg.campaign.estimated_batch_processing_seconds = 2.0
    cfg.sender.name = "Acme Receivables"
    cfg.sender.email = "ar@acme.example"
    cfg.database.path = str(tmp_path / "reminders.db")
    cfg.output.eml_dir = str(tmp_path / "eml")
    cfg.output.log_file = ""
    return cfg


@pytest.fixture
def store(tmp_path):
    return ReminderStore(tmp_path / "reminders.db")


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest.fixture
def engine(store, transport, config, sleeper):
    return CampaignEngine(store, transport, config, sleep=sleeper, clock=lambda: NOW,
                          run_async=False)


@pytest.fixture
def renderer(config):
    return TemplateEngine(config=config)
