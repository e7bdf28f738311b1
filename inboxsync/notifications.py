"""NotificationSink: user-facing notification records."""

from __future__ import annotations

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .db.tables import Notification
from .errors import NotificationFailed
from .models import NotificationKind

logger = structlog.get_logger()


class NotificationSink:
    """Writes notification rows.

    Any storage failure is raised as :class:`NotificationFailed`; the
    orchestrator swallows it so ingestion never fails on a notification.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def emit(self, owner_id: str, kind: NotificationKind, title: str, message: str) -> None:
        try:
            async with self._session_factory() as session:
                session.add(
                    Notification(owner_id=owner_id, title=title, message=message, kind=kind.value)
                )
                await session.commit()
        except Exception as exc:
            raise NotificationFailed(f"{kind.value} notification for {owner_id}: {exc}") from exc
        logger.debug("notification_added", owner_id=owner_id, kind=kind.value)

    async def email_received(self, owner_id: str, subject: str, company_name: str) -> None:
        await self.emit(
            owner_id,
            NotificationKind.EMAIL,
            "New Email Received",
            f"{subject} from {company_name}",
        )

    async def document_stored(self, owner_id: str, filename: str, company_name: str) -> None:
        await self.emit(
            owner_id,
            NotificationKind.DOCUMENT,
            "New Document",
            f"{filename} from {company_name}",
        )
