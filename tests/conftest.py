"""Pytest fixtures and configuration for Family Concierge tests.

Provides common fixtures for configuration, the database, and mail and
calendar fakes.
"""

import os
from pathlib import Path
from typing import Any, Generator
from unittest.mock import MagicMock

import pytest

from concierge.config import reset_config
from concierge.config_schema import AppConfig
from concierge.db.store import DatabaseStore


@pytest.fixture(autouse=True)
def reset_config_singleton() -> Generator[None, None, None]:
    """Reset the config singleton before each test."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def temp_config_dir(tmp_path: Path) -> Path:
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def sample_config_yaml() -> str:
    """Return a minimal valid config.yaml content."""
    return """
schema_version: 1

auth:
  client_id: "test-client-id"
  tenant_id: "test-tenant-id"

timezone: "America/New_York"

agent:
  mode: copilot
  interval_minutes: 30

packs:
  - pack_id: school
    sources:
      - name: Waterford
        from_domains: ["*waterford*.org"]
        keywords: ["field trip"]
        label: School/Events
"""


@pytest.fixture
def sample_config_dict() -> dict[str, Any]:
    """Return a minimal valid config as a dictionary."""
    return {
        "schema_version": 1,
        "auth": {
            "client_id": "test-client-id",
            "tenant_id": "test-tenant-id",
        },
        "timezone": "America/New_York",
        "agent": {"mode": "copilot", "interval_minutes": 30, "calendar_id": "primary"},
        "packs": [
            {
                "pack_id": "school",
                "sources": [
                    {
                        "name": "Waterford",
                        "from_domains": ["*waterford*.org"],
                        "keywords": ["field trip"],
                        "label": "School/Events",
                    }
                ],
            }
        ],
        "family": {
            "members": [
                {"name": "Emma", "aliases": ["Emma", "Emmy"], "grade": "4th grade", "groups": ["Orchestra"]},
                {"name": "Jack", "aliases": ["Jack"], "groups": ["Soccer"]},
            ],
        },
    }


@pytest.fixture
def sample_config(sample_config_dict: dict[str, Any]) -> AppConfig:
    return AppConfig(**sample_config_dict)


@pytest.fixture
def config_file(temp_config_dir: Path, sample_config_yaml: str) -> Path:
    config_path = temp_config_dir / "config.yaml"
    config_path.write_text(sample_config_yaml)
    return config_path


@pytest.fixture
def set_config_env(config_file: Path) -> Generator[None, None, None]:
    """Point CONCIERGE_CONFIG_PATH at the temporary config file."""
    old_value = os.environ.get("CONCIERGE_CONFIG_PATH")
    os.environ["CONCIERGE_CONFIG_PATH"] = str(config_file)
    yield
    if old_value is None:
        del os.environ["CONCIERGE_CONFIG_PATH"]
    else:
        os.environ["CONCIERGE_CONFIG_PATH"] = old_value


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    data = tmp_path / "data"
    data.mkdir()
    return data


@pytest.fixture
async def store(data_dir: Path) -> DatabaseStore:
    """Return an initialized DatabaseStore on a fresh SQLite file."""
    s = DatabaseStore(data_dir / "test.db")
    await s.initialize()
    return s


# ---------------------------------------------------------------------------
# Mail and calendar fakes
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_mail() -> MagicMock:
    """A MailSource whose messages are served from ``mock_mail.messages``."""
    mail = MagicMock()
    mail.messages = {}
    mail.attachments = {}
    mail.list_message_ids.side_effect = lambda query, max_results: list(mail.messages)[:max_results]
    mail.get_message.side_effect = lambda message_id: mail.messages.get(message_id)
    mail.get_attachments.side_effect = lambda message: mail.attachments.get(message.id, [])
    mail.forward_message.return_value = None
    mail.add_label.return_value = None
    return mail


@pytest.fixture
def mock_calendar() -> MagicMock:
    """A CalendarSink that returns sequential remote ids."""
    calendar = MagicMock()
    counter = iter(range(1, 1000))
    calendar.create_event.side_effect = lambda calendar_id, intent: {"id": f"cal-{next(counter)}"}
    calendar.update_event.side_effect = lambda calendar_id, event_id, intent: {"id": event_id}
    calendar.get_event.return_value = None
    return calendar
