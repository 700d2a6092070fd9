"""
Pytest configuration and fixtures for inbox-tally tests.
Provides a test database, a mock Gmail service and an in-memory mailbox.
"""

from datetime import datetime, timedelta
from typing import AsyncGenerator, Dict, List, Optional, Tuple
from unittest.mock import MagicMock

import pytest
from google.oauth2.credentials import Credentials
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from inbox_tally.db import Base
from inbox_tally.gmail_client import ListingEntry, ListingPage, MessageMetadata
from inbox_tally.models import SeenMail, SenderTally, SyncRun  # noqa: F401


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
async def test_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Create a test database session using SQLite in-memory database.

    Yields:
        AsyncSession: Test database session

    Notes:
        - Database is created fresh for each test
        - All tables are dropped after test completes
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async_session = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with async_session() as session:
        yield session

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


# ============================================================================
# Credential Fixtures
# ============================================================================


def make_credentials(token: str = "access-token", expires_in: int = 3600, scopes=None) -> Credentials:
    """Build real google-auth credentials expiring in expires_in seconds."""
    return Credentials(
        token=token,
        refresh_token="refresh-token",
        token_uri="https://oauth2.googleapis.com/token",
        client_id="client-id.apps.googleusercontent.com",
        client_secret="client-secret",
        scopes=scopes or ["https://www.googleapis.com/auth/gmail.readonly"],
        expiry=datetime.utcnow().replace(microsecond=0) + timedelta(seconds=expires_in),
    )


class StubCredentialManager:
    """Credential manager double recording acquisitions."""

    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.calls: List[bool] = []
        self.generation = 1

    def acquire(self, force_refresh: bool = False):
        self.calls.append(force_refresh)
        if self.error:
            raise self.error
        return make_credentials()


@pytest.fixture
def stub_credentials() -> StubCredentialManager:
    return StubCredentialManager()


# ============================================================================
# Gmail Fixtures
# ============================================================================


@pytest.fixture
def mock_gmail_service():
    """
    Create a mock Gmail API service.

    Returns:
        MagicMock: Mock Gmail service
    """
    service = MagicMock()

    messages = MagicMock()
    service.users.return_value.messages.return_value = messages

    messages.list.return_value.execute.return_value = {
        "messages": [
            {"id": "msg1", "threadId": "thread1"},
            {"id": "msg2", "threadId": "thread2"},
        ],
        "nextPageToken": "page-2",
        "resultSizeEstimate": 2,
    }

    messages.get.return_value.execute.return_value = {
        "id": "msg1",
        "threadId": "thread1",
        "labelIds": ["INBOX"],
        "payload": {
            "headers": [
                {"name": "From", "value": "Test Sender <Test@Example.com>"},
                {"name": "Subject", "value": "Test Email"},
                {"name": "Date", "value": "Mon, 1 Jan 2024 12:00:00 +0000"},
            ],
        },
    }

    return service


class FakeGmailClient:
    """
    In-memory mailbox with the GmailClient interface.

    Messages are (id, sender) pairs listed in order, page_size per page.
    Failures queued in `failures` under ("list", cursor) or ("get", id) are
    raised one per call before the call succeeds.
    """

    def __init__(self, messages: List[Tuple[str, str]], page_size: int = 2, credential_manager=None):
        self.messages = list(messages)
        self.page_size = page_size
        self.credential_manager = credential_manager or StubCredentialManager()
        self.failures: Dict[tuple, List[Exception]] = {}
        self.list_calls: List[Optional[str]] = []
        self.metadata_calls: List[str] = []
        self.resets = 0
        self.on_metadata = None

    def fail(self, key: tuple, *errors: Exception) -> None:
        self.failures.setdefault(key, []).extend(errors)

    def _maybe_fail(self, key: tuple) -> None:
        queued = self.failures.get(key)
        if queued:
            raise queued.pop(0)

    async def list_page(self, cursor: Optional[str] = None) -> ListingPage:
        self.list_calls.append(cursor)
        self._maybe_fail(("list", cursor))

        start = int(cursor) if cursor else 0
        end = start + self.page_size
        chunk = self.messages[start:end]
        return ListingPage(
            entries=[ListingEntry(id=message_id) for message_id, _ in chunk],
            next_cursor=str(end) if end < len(self.messages) else None,
        )

    async def get_metadata(self, message_id: str) -> MessageMetadata:
        self.metadata_calls.append(message_id)
        self._maybe_fail(("get", message_id))
        if self.on_metadata:
            self.on_metadata(message_id)
        sender = dict(self.messages)[message_id]
        return MessageMetadata(id=message_id, sender=sender)

    def reset_service(self) -> None:
        self.resets += 1


@pytest.fixture
def sample_messages() -> List[Tuple[str, str]]:
    """Five messages: three from alice, two from bob."""
    return [
        ("m1", "alice@example.com"),
        ("m2", "bob@example.org"),
        ("m3", "alice@example.com"),
        ("m4", "alice@example.com"),
        ("m5", "bob@example.org"),
    ]


@pytest.fixture
def fake_gmail(sample_messages) -> FakeGmailClient:
    return FakeGmailClient(sample_messages, page_size=2)
