"""TokenRefresher: probe a credential and refresh it once if the provider rejects it."""

from __future__ import annotations

import structlog

from .credentials import CredentialStore
from .errors import CredentialExpired, ProviderAuthError, ProviderError
from .interface import MailProvider
from .models import Credential

logger = structlog.get_logger()


class TokenRefresher:
    """Guarantees a working access token for one integration per cycle.

    The refresh exchange is attempted at most once per call; if it
    fails the integration is skipped until the next webhook.
    """

    def __init__(self, provider: MailProvider, store: CredentialStore) -> None:
        self._provider = provider
        self._store = store

    async def ensure_valid(self, credential: Credential) -> Credential:
        """Return a credential that passed the profile probe.

        Raises :class:`CredentialExpired` when the access token is rejected
        and there is no refresh token, or the refresh exchange fails.
        Non-auth probe failures propagate as :class:`ProviderError`.
        """
        if credential.is_expired() and credential.refresh_token:
            logger.info("access_token_expired", owner_id=credential.owner_id)
            return await self.refresh(credential)

        try:
            await self._provider.get_profile(credential)
            return credential
        except ProviderAuthError as exc:
            logger.info(
                "access_token_rejected",
                owner_id=credential.owner_id,
                status_code=exc.status_code,
            )

        return await self.refresh(credential)

    async def refresh(self, credential: Credential) -> Credential:
        """Run the refresh exchange and persist the new tokens."""
        if not credential.refresh_token:
            logger.error("refresh_token_missing", owner_id=credential.owner_id)
            raise CredentialExpired(f"No refresh token for owner {credential.owner_id}")

        try:
            refreshed = await self._provider.refresh_access_token(credential)
        except ProviderError as exc:
            logger.error(
                "access_token_refresh_failed",
                owner_id=credential.owner_id,
                error=str(exc),
            )
            raise CredentialExpired(f"Token refresh failed for owner {credential.owner_id}") from exc

        await self._store.update_tokens(credential.owner_id, refreshed)
        logger.info(
            "access_token_refreshed",
            owner_id=credential.owner_id,
            expires_at=refreshed.expires_at.isoformat() if refreshed.expires_at else None,
        )
        return refreshed
