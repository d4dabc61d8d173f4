"""Pytest fixtures and configuration for mailsync tests.

Provides common fixtures for configuration, the cache database, and fake
collaborators (mail API and sync worker).
"""

import os
from collections.abc import AsyncGenerator, Generator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest

from mailsync.config import reset_config
from mailsync.config_schema import AppConfig
from mailsync.core.errors import WorkerUnavailableError
from mailsync.db.store import MailStore, Message, MessageBody
from mailsync.engine.session import MailSession
from mailsync.remote.messages import MailApi
from mailsync.remote.worker import WorkerClient


@pytest.fixture(autouse=True)
def reset_config_singleton() -> Generator[None, None, None]:
    """Reset the config singleton before each test."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def temp_config_dir(tmp_path: Path) -> Path:
    """Create a temporary config directory."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def sample_config_yaml() -> str:
    """Return a minimal valid config.yaml content."""
    return """
schema_version: 1

account: "alice@example.com"

api:
  base_url: "https://mail.example.com/api/"
  timeout_seconds: 10

storage:
  db_path: "data/test.db"

prefetch:
  limit: 20
  concurrency: 2

poller:
  interval_minutes: 5
  folder: "INBOX"
"""


@pytest.fixture
def sample_config_dict() -> dict[str, Any]:
    """Return a minimal valid config as a dictionary."""
    return {
        "schema_version": 1,
        "account": "alice@example.com",
        "api": {"base_url": "https://mail.example.com/api", "timeout_seconds": 10},
        "storage": {"db_path": "data/test.db"},
        "prefetch": {"limit": 20, "concurrency": 2},
        "poller": {"interval_minutes": 5, "folder": "INBOX"},
    }


@pytest.fixture
def sample_config(sample_config_dict: dict[str, Any]) -> AppConfig:
    """Return a minimal valid AppConfig instance."""
    return AppConfig(**sample_config_dict)


@pytest.fixture
def config_file(temp_config_dir: Path, sample_config_yaml: str) -> Path:
    """Create a temporary config file with valid content."""
    config_path = temp_config_dir / "config.yaml"
    config_path.write_text(sample_config_yaml)
    return config_path


@pytest.fixture
def set_config_env(config_file: Path) -> Generator[None, None, None]:
    """Set the MAILSYNC_CONFIG_PATH environment variable."""
    old_value = os.environ.get("MAILSYNC_CONFIG_PATH")
    os.environ["MAILSYNC_CONFIG_PATH"] = str(config_file)
    yield
    if old_value is None:
        del os.environ["MAILSYNC_CONFIG_PATH"]
    else:
        os.environ["MAILSYNC_CONFIG_PATH"] = old_value


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Create a temporary data directory."""
    data = tmp_path / "data"
    data.mkdir()
    return data


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
async def store(data_dir: Path) -> MailStore:
    """Create an initialized MailStore in the temp directory."""
    mail_store = MailStore(data_dir / "test.db", quota_bytes=10 * 1024 * 1024)
    await mail_store.initialize()
    return mail_store


# =============================================================================
# Fake collaborators
# =============================================================================


class FakeWorker:
    """Scriptable WorkerTransport.

    ``responses`` maps an action to a value, an exception instance, or a
    callable taking the payload. Actions without a response are reported
    unavailable, the same as a missing worker.
    """

    def __init__(self, responses: dict[str, Any] | None = None):
        self.responses: dict[str, Any] = responses or {}
        self.requests: list[tuple[str, dict[str, Any]]] = []
        self.notifications: list[tuple[str, dict[str, Any]]] = []

    def calls(self, action: str) -> list[dict[str, Any]]:
        return [payload for name, payload in self.requests if name == action]

    async def request(self, action: str, payload: dict[str, Any]) -> Any:
        self.requests.append((action, payload))
        if action not in self.responses:
            raise WorkerUnavailableError(f"No response scripted for {action}")
        response = self.responses[action]
        if isinstance(response, Exception):
            raise response
        if callable(response):
            response = response(payload)
            if hasattr(response, "__await__"):
                response = await response
        return response

    def notify(self, action: str, payload: dict[str, Any]) -> None:
        self.notifications.append((action, payload))


@pytest.fixture
def fake_worker() -> FakeWorker:
    return FakeWorker()


@pytest.fixture
def fake_api() -> AsyncMock:
    """MailApi double; every resource method is an AsyncMock."""
    api = AsyncMock(spec=MailApi)
    api.get_message.return_value = {}
    api.list_messages.return_value = []
    api.list_folders.return_value = []
    api.update_message.return_value = {}
    api.delete_message.return_value = {}
    return api


@pytest.fixture
async def session(
    sample_config: AppConfig,
    store: MailStore,
    fake_api: AsyncMock,
    fake_worker: FakeWorker,
) -> AsyncGenerator[MailSession, None]:
    """A MailSession wired to the temp store and fake collaborators."""
    mail_session = MailSession(sample_config, store, fake_api, WorkerClient(fake_worker))
    yield mail_session
    await mail_session.drain()
    mail_session.dispose()


# =============================================================================
# Record builders
# =============================================================================


def make_message(
    message_id: str = "m1",
    *,
    account: str = "alice@example.com",
    folder: str = "INBOX",
    date: datetime | None = None,
    **kwargs: Any,
) -> Message:
    """Build a Message with sensible defaults."""
    return Message(
        id=message_id,
        account=account,
        folder=folder,
        subject=kwargs.pop("subject", f"Subject {message_id}"),
        sender=kwargs.pop("sender", "bob@example.com"),
        date=date or datetime(2026, 1, 15, 12, 0, tzinfo=UTC),
        **kwargs,
    )


def make_body(
    message_id: str = "m1",
    *,
    account: str = "alice@example.com",
    body: str = "<p>Hello</p>",
    **kwargs: Any,
) -> MessageBody:
    """Build a MessageBody that readers treat as complete and sanitized."""
    kwargs.setdefault("folder", "INBOX")
    kwargs.setdefault("raw", body)
    kwargs.setdefault("tracking_pixel_count", 0)
    kwargs.setdefault("blocked_remote_image_count", 0)
    kwargs.setdefault("updated_at", datetime(2026, 1, 15, 12, 0, tzinfo=UTC))
    return MessageBody(id=message_id, account=account, body=body, **kwargs)
