"""Pydantic models for credentials, Gmail wire payloads and ingestion results."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class NotificationKind(str, Enum):
    """Category of a user-facing notification."""

    EMAIL = "email"
    DOCUMENT = "document"
    SYSTEM = "system"


class Credential(BaseModel):
    """OAuth tokens for one tenant's mailbox."""

    owner_id: str = Field(description="Tenant user that owns the integration")
    access_token: str = Field(description="Current OAuth access token")
    refresh_token: str | None = Field(default=None, description="OAuth refresh token")
    expires_at: datetime | None = Field(default=None, description="Access token expiry (UTC)")
    email_address: str | None = Field(default=None, description="Mailbox address, if known")

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)
        return expires_at <= (now or datetime.now(UTC))


# ----------------------------------------------------------------------
# Gmail wire shapes (users.messages.get, format=full)
# ----------------------------------------------------------------------


class _GmailModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class MessageHeader(_GmailModel):
    name: str
    value: str = ""


class MessagePartBody(_GmailModel):
    attachment_id: str | None = Field(default=None, alias="attachmentId")
    size: int = 0
    data: str | None = None


class MessagePart(_GmailModel):
    """One node of the Gmail MIME part tree."""

    part_id: str = Field(default="", alias="partId")
    mime_type: str = Field(default="", alias="mimeType")
    filename: str = ""
    headers: list[MessageHeader] = Field(default_factory=list)
    body: MessagePartBody = Field(default_factory=MessagePartBody)
    parts: list[MessagePart] = Field(default_factory=list)

    @property
    def attachment_id(self) -> str | None:
        return self.body.attachment_id

    @property
    def size_bytes(self) -> int:
        return self.body.size

    @property
    def attachment_key(self) -> str:
        """Stable key for this attachment within its message.

        Gmail re-issues ``attachmentId`` values between fetches of the same
        message, while ``partId`` is stable, so the part id is preferred.
        """
        return self.part_id or self.attachment_id or self.filename


MessagePart.model_rebuild()


class MessageEnvelope(_GmailModel):
    """A fetched Gmail message: headers plus the part tree."""

    id: str
    thread_id: str | None = Field(default=None, alias="threadId")
    history_id: str | None = Field(default=None, alias="historyId")
    label_ids: list[str] = Field(default_factory=list, alias="labelIds")
    payload: MessagePart = Field(default_factory=MessagePart)

    def header(self, name: str) -> str:
        """Return the first header called *name* (case-insensitive), or ``""``."""
        wanted = name.lower()
        for header in self.payload.headers:
            if header.name.lower() == wanted:
                return header.value
        return ""

    @property
    def headers(self) -> dict[str, str]:
        return {h.name: h.value for h in self.payload.headers}

    @property
    def subject(self) -> str:
        return self.header("Subject")

    @property
    def sender(self) -> str:
        return self.header("From")

    @property
    def date(self) -> str:
        return self.header("Date")


# ----------------------------------------------------------------------
# Pipeline values
# ----------------------------------------------------------------------


class PushNotification(BaseModel):
    """Decoded webhook payload."""

    history_id: str = Field(description="Mailbox historyId announced by the push")
    email_address: str | None = Field(default=None, description="Mailbox the push is about")


class HistoryDelta(BaseModel):
    """Newly added message IDs since a cursor."""

    message_ids: list[str] = Field(default_factory=list)
    new_cursor: str | None = Field(default=None, description="Provider historyId after the delta")
    used_fallback: bool = Field(
        default=False,
        description="True when the recent-unread scan replaced the delta query",
    )


class ResolvedCompany(BaseModel):
    """Company identity inferred from message headers."""

    name: str
    email: str


class IngestionReport(BaseModel):
    """Counters for one webhook invocation."""

    integrations_processed: int = 0
    integrations_skipped: int = 0
    messages_processed: int = 0
    messages_skipped: int = 0
    messages_failed: int = 0
    documents_stored: int = 0
    attachments_skipped: int = 0
    attachments_failed: int = 0


# ----------------------------------------------------------------------
# HTTP request bodies
# ----------------------------------------------------------------------


class SubscribeRequest(BaseModel):
    owner_id: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None


class DeactivateRequest(BaseModel):
    owner_id: str
