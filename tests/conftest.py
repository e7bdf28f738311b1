"""Shared test fixtures for the inboxsync test suite."""

from __future__ import annotations

import base64
from collections import defaultdict
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.pool import StaticPool

from inboxsync.blob import S3BlobStore
from inboxsync.config import (
    DatabaseConfig,
    GmailConfig,
    IngestionConfig,
    RetryConfig,
    S3Config,
    Settings,
)
from inboxsync.credentials import CredentialStore
from inboxsync.db.engine import Database
from inboxsync.dedup import IdempotencyGuard
from inboxsync.errors import ProviderAuthError, ProviderNotFound
from inboxsync.interface import MailProvider
from inboxsync.models import Credential, MessageEnvelope
from inboxsync.orchestrator import IngestionOrchestrator

OWNER_ID = "owner-1"
OWNER_EMAIL = "owner@example.com"
GOOD_TOKEN = "good-token"
GOOD_REFRESH = "good-refresh"


# ------------------------------------------------------------------
# Config
# ------------------------------------------------------------------


@pytest.fixture
def retry_config() -> RetryConfig:
    return RetryConfig(
        max_attempts=3,
        initial_wait_seconds=0,
        max_wait_seconds=0,
        multiplier=0,
    )


@pytest.fixture
def s3_config() -> S3Config:
    return S3Config(bucket="test-bucket", prefix="documents/gmail", region="us-east-1")


@pytest.fixture
def settings(retry_config: RetryConfig, s3_config: S3Config) -> Settings:
    return Settings(
        gmail=GmailConfig(
            client_id="client-id",
            client_secret="client-secret",
            api_base_url="https://gmail.test/gmail/v1/users/me",
            token_url="https://oauth.test/token",
        ),
        s3=s3_config,
        database=DatabaseConfig(url="sqlite+aiosqlite://"),
        retry=retry_config,
        ingestion=IngestionConfig(),
    )


# ------------------------------------------------------------------
# Database
# ------------------------------------------------------------------


@pytest_asyncio.fixture
async def db():
    database = Database("sqlite+aiosqlite://", poolclass=StaticPool)
    await database.create_all()
    yield database
    await database.close()


@pytest.fixture
def credential_store(db: Database) -> CredentialStore:
    return CredentialStore(db.session)


def make_credential(
    *,
    owner_id: str = OWNER_ID,
    access_token: str = GOOD_TOKEN,
    refresh_token: str | None = GOOD_REFRESH,
    expires_at: datetime | None = None,
    email_address: str | None = OWNER_EMAIL,
) -> Credential:
    return Credential(
        owner_id=owner_id,
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=expires_at,
        email_address=email_address,
    )


# ------------------------------------------------------------------
# Gmail message builders
# ------------------------------------------------------------------


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def attachment_part(
    part_id: str,
    filename: str,
    mime_type: str = "application/pdf",
    *,
    attachment_id: str | None = None,
    size: int = 1024,
) -> dict[str, Any]:
    return {
        "partId": part_id,
        "mimeType": mime_type,
        "filename": filename,
        "headers": [{"name": "Content-Disposition", "value": f'attachment; filename="{filename}"'}],
        "body": {"attachmentId": attachment_id or f"att-{part_id}", "size": size},
    }


def gmail_message(
    message_id: str,
    *,
    subject: str = "Invoice - Acme Corp",
    sender: str = "Billing <billing@acme.com>",
    date: str = "Mon, 5 Feb 2024 10:00:00 +0000",
    attachments: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """Build a ``users.messages.get`` (format=full) response."""
    text_part = {
        "partId": "0",
        "mimeType": "text/plain",
        "filename": "",
        "body": {"size": 5, "data": b64url(b"hello")},
    }
    return {
        "id": message_id,
        "threadId": f"thread-{message_id}",
        "historyId": "1999",
        "labelIds": ["INBOX", "UNREAD"],
        "payload": {
            "partId": "",
            "mimeType": "multipart/mixed",
            "filename": "",
            "headers": [
                {"name": "Subject", "value": subject},
                {"name": "From", "value": sender},
                {"name": "Date", "value": date},
            ],
            "body": {"size": 0},
            "parts": [text_part, *(attachments or [])],
        },
    }


class FakeMailProvider(MailProvider):
    """In-memory mailbox implementing the provider capability."""

    def __init__(self) -> None:
        self.messages: dict[str, dict[str, Any]] = {}
        self.attachments: dict[tuple[str, str], bytes] = {}
        self.history: list[dict[str, Any]] = []
        self.history_id = "2000"
        self.unread: list[str] = []
        self.valid_tokens = {GOOD_TOKEN}
        self.unknown_cursor = False
        self.history_errors: list[Exception] = []
        self.failing_messages: set[str] = set()
        self.calls: defaultdict[str, int] = defaultdict(int)
        self.history_cursors: list[str] = []
        self.watch_error: Exception | None = None

    def add_message(
        self,
        message: dict[str, Any],
        payloads: dict[str, bytes] | None = None,
        *,
        in_history: bool = True,
        unread: bool = True,
    ) -> None:
        """Register *message*; *payloads* maps attachmentId to its bytes."""
        message_id = message["id"]
        self.messages[message_id] = message
        for attachment_id, data in (payloads or {}).items():
            self.attachments[(message_id, attachment_id)] = data
        if in_history:
            # each added message moves the mailbox historyId forward
            self.history_id = str(int(self.history_id) + 1)
            self.history.append(
                {"id": self.history_id, "messagesAdded": [{"message": {"id": message_id}}]}
            )
        if unread:
            self.unread.insert(0, message_id)

    def _check(self, credential: Credential) -> None:
        if credential.access_token not in self.valid_tokens:
            raise ProviderAuthError("Invalid Credentials", status_code=401)

    async def get_profile(self, credential: Credential) -> dict[str, Any]:
        self.calls["get_profile"] += 1
        self._check(credential)
        return {"emailAddress": OWNER_EMAIL, "historyId": self.history_id}

    async def list_history(
        self,
        credential: Credential,
        start_history_id: str,
        *,
        max_results: int = 100,
        page_token: str | None = None,
    ) -> dict[str, Any]:
        self.calls["list_history"] += 1
        self.history_cursors.append(start_history_id)
        self._check(credential)
        if self.history_errors:
            raise self.history_errors.pop(0)
        if self.unknown_cursor:
            raise ProviderNotFound("Requested entity was not found.", status_code=404)
        # Gmail returns only the records after the start cursor
        records = [r for r in self.history if int(r["id"]) > int(start_history_id)]
        return {"history": records, "historyId": self.history_id}

    async def list_recent_unread(self, credential: Credential, max_results: int = 10) -> list[str]:
        self.calls["list_recent_unread"] += 1
        self._check(credential)
        return self.unread[:max_results]

    async def get_message(self, credential: Credential, message_id: str) -> MessageEnvelope:
        self.calls["get_message"] += 1
        self._check(credential)
        if message_id in self.failing_messages or message_id not in self.messages:
            raise ProviderNotFound(f"Message {message_id} not found", status_code=404)
        return MessageEnvelope.model_validate(self.messages[message_id])

    async def get_attachment_bytes(
        self, credential: Credential, message_id: str, attachment_id: str
    ) -> bytes:
        self.calls["get_attachment_bytes"] += 1
        self._check(credential)
        try:
            return self.attachments[(message_id, attachment_id)]
        except KeyError:
            raise ProviderNotFound(f"Attachment {attachment_id} not found", status_code=404) from None

    async def refresh_access_token(self, credential: Credential) -> Credential:
        self.calls["refresh_access_token"] += 1
        if credential.refresh_token != GOOD_REFRESH:
            raise ProviderAuthError("invalid_grant", status_code=400)
        self.valid_tokens.add("refreshed-token")
        return credential.model_copy(
            update={
                "access_token": "refreshed-token",
                "expires_at": datetime.now(UTC) + timedelta(hours=1),
            }
        )

    async def watch(
        self, credential: Credential, topic_name: str, label_ids: list[str]
    ) -> dict[str, Any]:
        self.calls["watch"] += 1
        self._check(credential)
        if self.watch_error is not None:
            raise self.watch_error
        return {"historyId": self.history_id, "expiration": "1767225600000"}


@pytest.fixture
def provider() -> FakeMailProvider:
    return FakeMailProvider()


# ------------------------------------------------------------------
# Blob store and orchestrator
# ------------------------------------------------------------------


@pytest.fixture
def s3_client() -> MagicMock:
    return MagicMock()


@pytest.fixture
def blob_store(s3_config: S3Config, s3_client: MagicMock) -> S3BlobStore:
    store = S3BlobStore(s3_config)
    store._client = s3_client
    return store


@pytest.fixture
def guard() -> IdempotencyGuard:
    return IdempotencyGuard(message_capacity=100, attachment_capacity=100)


@pytest.fixture
def orchestrator(
    settings: Settings,
    db: Database,
    provider: FakeMailProvider,
    blob_store: S3BlobStore,
    guard: IdempotencyGuard,
) -> IngestionOrchestrator:
    return IngestionOrchestrator.create(settings, db.session, provider, blob_store, guard=guard)
