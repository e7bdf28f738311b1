"""MailProvider: the ABC the ingestion pipeline talks to."""

from __future__ import annotations

import abc
from typing import Any

from .models import Credential, MessageEnvelope


class MailProvider(abc.ABC):
    """Abstract mail-provider capability.

    The pipeline never talks to Gmail directly; it goes through this
    interface so tests can substitute an in-memory mailbox.  All methods
    raise :class:`~inboxsync.errors.ProviderError` subclasses on failure.
    """

    @abc.abstractmethod
    async def get_profile(self, credential: Credential) -> dict[str, Any]:
        """Return mailbox profile (``emailAddress``, ``historyId``).

        Used as the lightweight probe that tells whether the access
        token still works.
        """
        ...

    @abc.abstractmethod
    async def list_history(
        self,
        credential: Credential,
        start_history_id: str,
        *,
        max_results: int = 100,
        page_token: str | None = None,
    ) -> dict[str, Any]:
        """Return one page of history records since *start_history_id*.

        Shape: ``{"history": [...], "historyId": str, "nextPageToken": str}``.
        Raises :class:`~inboxsync.errors.ProviderNotFound` for an unknown cursor.
        """
        ...

    @abc.abstractmethod
    async def list_recent_unread(self, credential: Credential, max_results: int = 10) -> list[str]:
        """Return IDs of the most recent unread messages."""
        ...

    @abc.abstractmethod
    async def get_message(self, credential: Credential, message_id: str) -> MessageEnvelope: ...

    @abc.abstractmethod
    async def get_attachment_bytes(
        self, credential: Credential, message_id: str, attachment_id: str
    ) -> bytes: ...

    @abc.abstractmethod
    async def refresh_access_token(self, credential: Credential) -> Credential:
        """Exchange the refresh token; return the credential with new tokens."""
        ...

    async def watch(
        self, credential: Credential, topic_name: str, label_ids: list[str]
    ) -> dict[str, Any]:
        """Register push notifications for the mailbox.

        Override in providers that support push.  The default raises
        ``NotImplementedError``.
        """
        raise NotImplementedError(f"{type(self).__name__} does not support watch")
