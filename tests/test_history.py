"""Tests for inboxsync.history."""

from __future__ import annotations

import pytest

from inboxsync.config import IngestionConfig, RetryConfig
from inboxsync.errors import HistoryFetchFailed, ProviderAuthError, ProviderError, ProviderNotFound
from inboxsync.history import HistoryReconciler, added_message_ids
from tests.conftest import gmail_message, make_credential


@pytest.fixture
def reconciler(provider, retry_config: RetryConfig) -> HistoryReconciler:
    return HistoryReconciler(provider, IngestionConfig(), retry_config)


class TestAddedMessageIds:
    def test_order_preserved_and_deduplicated(self):
        history = [
            {"id": "1", "messagesAdded": [{"message": {"id": "m1"}}, {"message": {"id": "m2"}}]},
            {"id": "2", "labelsAdded": [{"message": {"id": "m9"}}]},
            {"id": "3", "messagesAdded": [{"message": {"id": "m1"}}, {"message": {"id": "m3"}}]},
        ]
        assert added_message_ids(history) == ["m1", "m2", "m3"]

    def test_empty(self):
        assert added_message_ids([]) == []


class TestHistoryReconciler:
    @pytest.mark.asyncio
    async def test_delta_returned(self, reconciler: HistoryReconciler, provider):
        provider.add_message(gmail_message("m1"))
        provider.add_message(gmail_message("m2"))

        delta = await reconciler.changed_message_ids(make_credential(), "1000")

        assert delta.message_ids == ["m1", "m2"]
        assert delta.new_cursor == "2002"
        assert delta.used_fallback is False
        assert provider.history_cursors == ["1000"]

    @pytest.mark.asyncio
    async def test_only_records_after_cursor(self, reconciler: HistoryReconciler, provider):
        provider.add_message(gmail_message("m1"))
        provider.add_message(gmail_message("m2"))

        delta = await reconciler.changed_message_ids(make_credential(), "2001")

        assert delta.message_ids == ["m2"]
        assert delta.new_cursor == "2002"

    @pytest.mark.asyncio
    async def test_unknown_cursor_falls_back_to_recent_unread(
        self, reconciler: HistoryReconciler, provider
    ):
        provider.add_message(gmail_message("m1"))
        provider.unknown_cursor = True

        delta = await reconciler.changed_message_ids(make_credential(), "1")

        assert delta.used_fallback is True
        assert delta.message_ids == ["m1"]
        assert provider.calls["list_history"] == 1

    @pytest.mark.asyncio
    async def test_empty_history_falls_back_and_keeps_cursor(
        self, reconciler: HistoryReconciler, provider
    ):
        provider.add_message(gmail_message("m1"), in_history=False)

        delta = await reconciler.changed_message_ids(make_credential(), "1999")

        assert delta.used_fallback is True
        assert delta.message_ids == ["m1"]
        assert delta.new_cursor == "2000"

    @pytest.mark.asyncio
    async def test_transient_errors_retried(self, reconciler: HistoryReconciler, provider):
        provider.add_message(gmail_message("m1"))
        provider.history_errors = [ProviderError("backend error", status_code=503)]

        delta = await reconciler.changed_message_ids(make_credential(), "1000")

        assert delta.message_ids == ["m1"]
        assert provider.calls["list_history"] == 2

    @pytest.mark.asyncio
    async def test_retry_budget_exhausted(self, reconciler: HistoryReconciler, provider):
        provider.history_errors = [ProviderError("backend error", status_code=503)] * 3

        with pytest.raises(HistoryFetchFailed):
            await reconciler.changed_message_ids(make_credential(), "1000")
        assert provider.calls["list_history"] == 3

    @pytest.mark.asyncio
    async def test_auth_error_not_retried(self, reconciler: HistoryReconciler, provider):
        provider.history_errors = [ProviderAuthError("Invalid Credentials", status_code=401)]

        with pytest.raises(HistoryFetchFailed):
            await reconciler.changed_message_ids(make_credential(), "1000")
        assert provider.calls["list_history"] == 1

    @pytest.mark.asyncio
    async def test_follows_page_tokens(self, reconciler: HistoryReconciler, provider):
        pages = [
            {"history": [{"messagesAdded": [{"message": {"id": "m1"}}]}], "nextPageToken": "p2", "historyId": "10"},
            {"history": [{"messagesAdded": [{"message": {"id": "m2"}}]}], "historyId": "11"},
        ]
        tokens = []

        async def _list_history(credential, start, *, max_results=100, page_token=None):
            tokens.append(page_token)
            return pages[len(tokens) - 1]

        provider.list_history = _list_history
        delta = await reconciler.changed_message_ids(make_credential(), "5")

        assert tokens == [None, "p2"]
        assert delta.message_ids == ["m1", "m2"]
        assert delta.new_cursor == "11"

    @pytest.mark.asyncio
    async def test_later_page_not_found_keeps_gathered_records(
        self, reconciler: HistoryReconciler, provider
    ):
        first_page = {
            "history": [{"messagesAdded": [{"message": {"id": "m1"}}]}],
            "nextPageToken": "p2",
            "historyId": "10",
        }

        async def _list_history(credential, start, *, max_results=100, page_token=None):
            if page_token is None:
                return first_page
            raise ProviderNotFound("Requested entity was not found.", status_code=404)

        provider.list_history = _list_history
        delta = await reconciler.changed_message_ids(make_credential(), "5")

        assert delta.used_fallback is False
        assert delta.message_ids == ["m1"]
        assert delta.new_cursor == "10"
        assert provider.calls["list_recent_unread"] == 0

    @pytest.mark.asyncio
    async def test_fallback_failure_raises(self, reconciler: HistoryReconciler, provider):
        provider.unknown_cursor = True

        async def _boom(credential, max_results=10):
            raise ProviderError("backend error", status_code=500)

        provider.list_recent_unread = _boom
        with pytest.raises(HistoryFetchFailed):
            await reconciler.changed_message_ids(make_credential(), "1")
