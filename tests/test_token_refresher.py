"""Tests for inboxsync.token_refresher."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from inboxsync.credentials import CredentialStore
from inboxsync.errors import CredentialExpired, ProviderError
from inboxsync.token_refresher import TokenRefresher
from tests.conftest import make_credential


@pytest.fixture
def refresher(provider, credential_store: CredentialStore) -> TokenRefresher:
    return TokenRefresher(provider, credential_store)


class TestEnsureValid:
    @pytest.mark.asyncio
    async def test_valid_token_passes_probe(self, refresher: TokenRefresher, provider):
        credential = make_credential()
        assert await refresher.ensure_valid(credential) is credential
        assert provider.calls["refresh_access_token"] == 0

    @pytest.mark.asyncio
    async def test_rejected_token_refreshed_and_persisted(
        self, refresher: TokenRefresher, provider, credential_store: CredentialStore
    ):
        await credential_store.upsert("owner-1", make_credential(access_token="stale"))

        refreshed = await refresher.ensure_valid(make_credential(access_token="stale"))

        assert refreshed.access_token == "refreshed-token"
        assert provider.calls["refresh_access_token"] == 1
        stored = await credential_store.get("owner-1")
        assert stored is not None
        assert stored.access_token == "refreshed-token"
        assert stored.refresh_token == "good-refresh"

    @pytest.mark.asyncio
    async def test_locally_expired_token_skips_probe(self, refresher: TokenRefresher, provider):
        expired = make_credential(
            access_token="stale", expires_at=datetime.now(UTC) - timedelta(minutes=5)
        )
        refreshed = await refresher.ensure_valid(expired)
        assert refreshed.access_token == "refreshed-token"
        assert provider.calls["get_profile"] == 0

    @pytest.mark.asyncio
    async def test_no_refresh_token_raises(self, refresher: TokenRefresher):
        with pytest.raises(CredentialExpired):
            await refresher.ensure_valid(make_credential(access_token="stale", refresh_token=None))

    @pytest.mark.asyncio
    async def test_refresh_rejected_raises_once(self, refresher: TokenRefresher, provider):
        with pytest.raises(CredentialExpired):
            await refresher.ensure_valid(
                make_credential(access_token="stale", refresh_token="revoked")
            )
        assert provider.calls["refresh_access_token"] == 1

    @pytest.mark.asyncio
    async def test_non_auth_probe_failure_propagates(self, refresher: TokenRefresher, provider):
        async def _boom(credential):
            raise ProviderError("backend error", status_code=500)

        provider.get_profile = _boom
        with pytest.raises(ProviderError):
            await refresher.ensure_valid(make_credential())
        assert provider.calls["refresh_access_token"] == 0
