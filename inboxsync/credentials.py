"""CredentialStore: per-owner Gmail integration records."""

from __future__ import annotations

from datetime import datetime

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .db.tables import GmailIntegration
from .models import Credential

logger = structlog.get_logger()


def credential_from_integration(integration: GmailIntegration) -> Credential:
    return Credential(
        owner_id=integration.owner_id,
        access_token=integration.access_token,
        refresh_token=integration.refresh_token,
        expires_at=integration.expires_at,
        email_address=integration.email_address,
    )


def is_newer_cursor(candidate: str | None, current: str | None) -> bool:
    """Return True if *candidate* is strictly ahead of *current*.

    Gmail historyIds are decimal strings; they are compared numerically.
    A non-numeric pair falls back to "any different value is newer".
    """
    if not candidate:
        return False
    if not current:
        return True
    if candidate.isdigit() and current.isdigit():
        return int(candidate) > int(current)
    return candidate != current


class CredentialStore:
    """Reads and writes :class:`GmailIntegration` rows.

    Upserts are keyed by ``owner_id`` (unique column), so an owner never
    ends up with two integration rows.  Each call runs in its own
    session and commits a single row.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @staticmethod
    async def _find(session: AsyncSession, owner_id: str) -> GmailIntegration | None:
        result = await session.execute(
            select(GmailIntegration).where(GmailIntegration.owner_id == owner_id)
        )
        return result.scalar_one_or_none()

    async def get(self, owner_id: str) -> Credential | None:
        """Return the active credential for *owner_id*, if any."""
        integration = await self.get_integration(owner_id)
        if integration is None or not integration.is_active:
            return None
        return credential_from_integration(integration)

    async def get_integration(self, owner_id: str) -> GmailIntegration | None:
        async with self._session_factory() as session:
            return await self._find(session, owner_id)

    async def list_active(self) -> list[GmailIntegration]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(GmailIntegration)
                .where(GmailIntegration.is_active.is_(True))
                .order_by(GmailIntegration.created_at)
            )
            return list(result.scalars().all())

    async def upsert(
        self,
        owner_id: str,
        credential: Credential,
        *,
        history_id: str | None = None,
        subscription_expires_at: datetime | None = None,
    ) -> GmailIntegration:
        """Create or update the owner's integration and mark it active.

        A concurrent insert for the same owner surfaces as an
        :class:`IntegrityError`; the winner row is re-fetched and updated.
        """
        async with self._session_factory() as session:
            integration = await self._find(session, owner_id)
            if integration is None:
                integration = GmailIntegration(
                    owner_id=owner_id,
                    email_address=credential.email_address,
                    access_token=credential.access_token,
                    refresh_token=credential.refresh_token,
                    expires_at=credential.expires_at,
                    last_history_id=history_id,
                    subscription_expires_at=subscription_expires_at,
                    is_active=True,
                )
                session.add(integration)
                try:
                    await session.commit()
                    logger.info("integration_created", owner_id=owner_id)
                    return integration
                except IntegrityError:
                    await session.rollback()
                    logger.info("integration_upsert_conflict", owner_id=owner_id)
                    integration = await self._find(session, owner_id)
                    if integration is None:
                        raise

            integration.access_token = credential.access_token
            if credential.refresh_token:
                integration.refresh_token = credential.refresh_token
            integration.expires_at = credential.expires_at
            if credential.email_address:
                integration.email_address = credential.email_address
            if is_newer_cursor(history_id, integration.last_history_id):
                integration.last_history_id = history_id
            if subscription_expires_at is not None:
                integration.subscription_expires_at = subscription_expires_at
            integration.is_active = True
            await session.commit()
            logger.info("integration_updated", owner_id=owner_id)
            return integration

    async def update_tokens(self, owner_id: str, credential: Credential) -> None:
        """Persist refreshed tokens, keeping the stored refresh token if none was issued."""
        async with self._session_factory() as session:
            integration = await self._find(session, owner_id)
            if integration is None:
                logger.warning("integration_missing_on_token_update", owner_id=owner_id)
                return
            integration.access_token = credential.access_token
            if credential.refresh_token:
                integration.refresh_token = credential.refresh_token
            integration.expires_at = credential.expires_at
            await session.commit()
            logger.info("integration_tokens_updated", owner_id=owner_id)

    async def advance_cursor(self, owner_id: str, cursor: str | None) -> str | None:
        """Move ``last_history_id`` forward; never backwards.  Returns the stored cursor."""
        async with self._session_factory() as session:
            integration = await self._find(session, owner_id)
            if integration is None:
                return None
            if is_newer_cursor(cursor, integration.last_history_id):
                integration.last_history_id = cursor
                await session.commit()
                logger.debug("history_cursor_advanced", owner_id=owner_id, cursor=cursor)
            return integration.last_history_id

    async def deactivate(self, owner_id: str) -> bool:
        async with self._session_factory() as session:
            integration = await self._find(session, owner_id)
            if integration is None:
                return False
            integration.is_active = False
            await session.commit()
            logger.info("integration_deactivated", owner_id=owner_id)
            return True
