"""Async Gmail REST client over httpx.

Covers the slice of the Gmail API the ingestion pipeline needs: profile,
history, message listing, message and attachment fetch, mailbox watch,
and the OAuth refresh exchange.  HTTP failures are mapped onto the
:mod:`inboxsync.errors` provider hierarchy.
"""

from __future__ import annotations

import base64
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import structlog

from .config import GmailConfig
from .errors import ProviderAuthError, ProviderError, ProviderNotFound
from .interface import MailProvider
from .models import Credential, MessageEnvelope

logger = structlog.get_logger()

DEFAULT_TOKEN_LIFETIME_SECONDS = 3600


def _google_error_detail(response: httpx.Response) -> str:
    """Pull ``error.message`` out of a Google error body, falling back to the reason phrase."""
    try:
        body = response.json()
    except ValueError:
        return response.reason_phrase or str(response.status_code)
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return str(error.get("message") or error.get("status") or response.status_code)
    if isinstance(error, str):
        return body.get("error_description") or error
    return response.reason_phrase or str(response.status_code)


def _raise_for_status(response: httpx.Response) -> None:
    if response.is_success:
        return
    detail = _google_error_detail(response)
    status = response.status_code
    if status in (401, 403):
        raise ProviderAuthError(detail, status_code=status)
    if status == 404:
        raise ProviderNotFound(detail, status_code=status)
    raise ProviderError(detail, status_code=status)


def decode_base64url(data: str) -> bytes:
    """Decode Gmail's unpadded base64url payloads."""
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


class GmailClient(MailProvider):
    """Mail-provider capability used by the pipeline.

    Every call takes the :class:`Credential` to act as, so one client
    instance serves all tenants.
    """

    def __init__(self, config: GmailConfig) -> None:
        self._config = config
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(self._config.timeout_seconds))
        logger.info("gmail_client_started", api_base_url=self._config.api_base_url)

    async def stop(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("gmail_client_stopped")

    async def _request(
        self,
        method: str,
        path: str,
        credential: Credential,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        assert self._client is not None, "Gmail client not started"
        url = f"{self._config.api_base_url}{path}"
        try:
            response = await self._client.request(
                method,
                url,
                params=params,
                json=json,
                headers={"Authorization": f"Bearer {credential.access_token}"},
            )
        except httpx.HTTPError as exc:
            raise ProviderError(f"{method} {path} failed: {exc}") from exc
        _raise_for_status(response)
        return response.json()

    # ------------------------------------------------------------------
    # Mailbox reads
    # ------------------------------------------------------------------

    async def get_profile(self, credential: Credential) -> dict[str, Any]:
        """Return ``{"emailAddress", "historyId", ...}`` for the mailbox."""
        return await self._request("GET", "/profile", credential)

    async def list_history(
        self,
        credential: Credential,
        start_history_id: str,
        *,
        max_results: int = 100,
        page_token: str | None = None,
    ) -> dict[str, Any]:
        """One page of ``users.history.list`` restricted to ``messageAdded`` events."""
        params: dict[str, Any] = {
            "startHistoryId": start_history_id,
            "historyTypes": "messageAdded",
            "maxResults": max_results,
        }
        if page_token:
            params["pageToken"] = page_token
        return await self._request("GET", "/history", credential, params=params)

    async def list_recent_unread(self, credential: Credential, max_results: int = 10) -> list[str]:
        data = await self._request(
            "GET",
            "/messages",
            credential,
            params={"q": "is:unread", "maxResults": max_results},
        )
        return [m["id"] for m in data.get("messages", []) if m.get("id")]

    async def get_message(self, credential: Credential, message_id: str) -> MessageEnvelope:
        data = await self._request(
            "GET",
            f"/messages/{message_id}",
            credential,
            params={"format": "full"},
        )
        return MessageEnvelope.model_validate(data)

    async def get_attachment_bytes(
        self, credential: Credential, message_id: str, attachment_id: str
    ) -> bytes:
        data = await self._request(
            "GET",
            f"/messages/{message_id}/attachments/{attachment_id}",
            credential,
        )
        encoded = data.get("data")
        if not encoded:
            raise ProviderError(f"No data in attachment response for {attachment_id}")
        return decode_base64url(encoded)

    # ------------------------------------------------------------------
    # Mailbox watch
    # ------------------------------------------------------------------

    async def watch(
        self, credential: Credential, topic_name: str, label_ids: list[str]
    ) -> dict[str, Any]:
        """Register push notifications.  Returns ``{"historyId", "expiration"}``."""
        return await self._request(
            "POST",
            "/watch",
            credential,
            json={"topicName": topic_name, "labelIds": label_ids},
        )

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    async def refresh_access_token(self, credential: Credential) -> Credential:
        """Exchange the refresh token for a new access token.

        Raises :class:`ProviderAuthError` when the token endpoint rejects
        the grant.
        """
        assert self._client is not None, "Gmail client not started"
        if not credential.refresh_token:
            raise ProviderAuthError("No refresh token available")

        try:
            response = await self._client.post(
                self._config.token_url,
                data={
                    "client_id": self._config.client_id,
                    "client_secret": self._config.client_secret.get_secret_value(),
                    "refresh_token": credential.refresh_token,
                    "grant_type": "refresh_token",
                },
            )
        except httpx.HTTPError as exc:
            raise ProviderError(f"token refresh failed: {exc}") from exc

        if response.status_code in (400, 401):
            raise ProviderAuthError(_google_error_detail(response), status_code=response.status_code)
        _raise_for_status(response)

        token_data = response.json()
        expires_in = int(token_data.get("expires_in") or DEFAULT_TOKEN_LIFETIME_SECONDS)
        return credential.model_copy(
            update={
                "access_token": token_data["access_token"],
                "refresh_token": token_data.get("refresh_token") or credential.refresh_token,
                "expires_at": datetime.now(UTC) + timedelta(seconds=expires_in),
            }
        )
