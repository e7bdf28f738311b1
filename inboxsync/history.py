"""HistoryReconciler: turn a history cursor into newly added message IDs."""

from __future__ import annotations

from typing import Any

import structlog

from .config import IngestionConfig, RetryConfig
from .errors import HistoryFetchFailed, ProviderAuthError, ProviderError, ProviderNotFound
from .interface import MailProvider
from .models import Credential, HistoryDelta
from .retry import with_retry

logger = structlog.get_logger()


def added_message_ids(history: list[dict[str, Any]]) -> list[str]:
    """Collect ``messagesAdded`` IDs from history records, first-seen order, no repeats.

    Deletions and label changes are ignored.
    """
    seen: dict[str, None] = {}
    for record in history:
        for added in record.get("messagesAdded") or []:
            message_id = (added.get("message") or {}).get("id")
            if message_id:
                seen.setdefault(message_id, None)
    return list(seen)


class HistoryReconciler:
    """Query the history delta API, falling back to a recent-unread scan.

    The fallback runs when the provider reports no deltas or does not
    know the cursor (404).  Transient provider errors are retried within
    the :class:`RetryConfig` budget; exhausting it raises
    :class:`HistoryFetchFailed`.
    """

    def __init__(
        self,
        provider: MailProvider,
        ingestion: IngestionConfig,
        retry: RetryConfig,
    ) -> None:
        self._provider = provider
        self._config = ingestion
        self._retry = retry

    async def changed_message_ids(self, credential: Credential, since_cursor: str) -> HistoryDelta:
        try:
            records, new_cursor = await self._fetch_history(credential, since_cursor)
        except ProviderNotFound:
            logger.warning(
                "history_cursor_unknown",
                owner_id=credential.owner_id,
                cursor=since_cursor,
            )
            return await self._fallback(credential)
        except ProviderError as exc:
            logger.error(
                "history_fetch_failed",
                owner_id=credential.owner_id,
                cursor=since_cursor,
                error=str(exc),
            )
            raise HistoryFetchFailed(str(exc)) from exc

        message_ids = added_message_ids(records)
        if not records:
            logger.info("history_empty", owner_id=credential.owner_id, cursor=since_cursor)
            delta = await self._fallback(credential)
            delta.new_cursor = new_cursor
            return delta

        logger.info(
            "history_fetched",
            owner_id=credential.owner_id,
            cursor=since_cursor,
            records=len(records),
            messages_added=len(message_ids),
            new_cursor=new_cursor,
        )
        return HistoryDelta(message_ids=message_ids, new_cursor=new_cursor)

    async def _fetch_history(
        self, credential: Credential, since_cursor: str
    ) -> tuple[list[dict[str, Any]], str | None]:
        """Follow ``nextPageToken`` for at most ``history_max_pages`` pages."""

        @with_retry(
            self._retry,
            retryable_exceptions=(ProviderError,),
            non_retryable_exceptions=(ProviderNotFound, ProviderAuthError),
        )
        async def _page(page_token: str | None) -> dict[str, Any]:
            return await self._provider.list_history(
                credential,
                since_cursor,
                max_results=self._config.history_max_results,
                page_token=page_token,
            )

        records: list[dict[str, Any]] = []
        new_cursor: str | None = None
        page_token: str | None = None
        for page_number in range(self._config.history_max_pages):
            try:
                page = await _page(page_token)
            except ProviderNotFound:
                # only an unknown start cursor warrants the unread scan
                if page_number == 0:
                    raise
                logger.warning(
                    "history_page_not_found",
                    owner_id=credential.owner_id,
                    page=page_number + 1,
                    records=len(records),
                )
                break
            records.extend(page.get("history") or [])
            new_cursor = page.get("historyId") or new_cursor
            page_token = page.get("nextPageToken")
            if not page_token:
                break
        else:
            logger.warning(
                "history_page_limit_reached",
                owner_id=credential.owner_id,
                pages=self._config.history_max_pages,
            )
        return records, new_cursor

    async def _fallback(self, credential: Credential) -> HistoryDelta:
        """Scan the most recent unread messages instead of the delta."""
        try:
            message_ids = await self._provider.list_recent_unread(
                credential, self._config.fallback_max_messages
            )
        except ProviderError as exc:
            logger.error("recent_unread_fallback_failed", owner_id=credential.owner_id, error=str(exc))
            raise HistoryFetchFailed(str(exc)) from exc

        logger.info(
            "recent_unread_fallback",
            owner_id=credential.owner_id,
            messages=len(message_ids),
        )
        return HistoryDelta(message_ids=message_ids, used_fallback=True)
