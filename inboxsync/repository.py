"""Company and document persistence with idempotent upserts."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .db.tables import Company, Document
from .errors import DocumentPersistFailed
from .models import ResolvedCompany

logger = structlog.get_logger()


def canonicalize_email(email: str) -> str:
    return email.strip().lower()


class CompanyStore:
    """Lookup-or-create keyed by ``(owner_id, canonical_email)``.

    The stored name is the one inferred from the first qualifying message;
    later contacts only refresh ``last_activity_at``.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @staticmethod
    async def _find(session: AsyncSession, owner_id: str, email: str) -> Company | None:
        result = await session.execute(
            select(Company).where(
                Company.owner_id == owner_id,
                Company.canonical_email == email,
            )
        )
        return result.scalar_one_or_none()

    async def get(self, owner_id: str, email: str) -> Company | None:
        async with self._session_factory() as session:
            return await self._find(session, owner_id, canonicalize_email(email))

    async def list_for_owner(self, owner_id: str) -> list[Company]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Company).where(Company.owner_id == owner_id).order_by(Company.created_at)
            )
            return list(result.scalars().all())

    async def lookup_or_create(
        self,
        owner_id: str,
        resolved: ResolvedCompany,
        *,
        metadata: dict[str, Any] | None = None,
    ) -> tuple[Company, bool]:
        """Return ``(company, created)``."""
        email = canonicalize_email(resolved.email)
        now = datetime.now(UTC)

        async with self._session_factory() as session:
            company = await self._find(session, owner_id, email)
            if company is None:
                company = Company(
                    owner_id=owner_id,
                    name=resolved.name,
                    canonical_email=email,
                    details=metadata or {},
                    last_activity_at=now,
                )
                session.add(company)
                try:
                    await session.commit()
                    logger.info(
                        "company_created",
                        owner_id=owner_id,
                        company_id=str(company.id),
                        name=company.name,
                        email=email,
                    )
                    return company, True
                except IntegrityError:
                    await session.rollback()
                    logger.info("company_create_conflict", owner_id=owner_id, email=email)
                    company = await self._find(session, owner_id, email)
                    if company is None:
                        raise

            company.last_activity_at = now
            await session.commit()
            logger.debug("company_activity_touched", company_id=str(company.id), name=company.name)
            return company, False


class DocumentStore:
    """Document records, unique on ``(company_id, storage_ref)``."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @staticmethod
    async def _find(
        session: AsyncSession, company_id: uuid.UUID, storage_ref: str
    ) -> Document | None:
        result = await session.execute(
            select(Document).where(
                Document.company_id == company_id,
                Document.storage_ref == storage_ref,
            )
        )
        return result.scalar_one_or_none()

    async def list_for_company(self, company_id: uuid.UUID) -> list[Document]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Document)
                .where(Document.company_id == company_id)
                .order_by(Document.uploaded_at)
            )
            return list(result.scalars().all())

    async def insert(
        self,
        *,
        company_id: uuid.UUID,
        filename: str,
        mime_type: str,
        size_bytes: int,
        storage_ref: str,
        uploaded_by: str | None,
        source_metadata: dict[str, Any],
    ) -> tuple[Document, bool]:
        """Insert a document, or return the existing one for the same key.

        Returns ``(document, created)``.  Database errors are raised as
        :class:`DocumentPersistFailed`.
        """
        try:
            return await self._insert(
                company_id=company_id,
                filename=filename,
                mime_type=mime_type,
                size_bytes=size_bytes,
                storage_ref=storage_ref,
                uploaded_by=uploaded_by,
                source_metadata=source_metadata,
            )
        except SQLAlchemyError as exc:
            raise DocumentPersistFailed(f"Document for {storage_ref} not written: {exc}") from exc

    async def _insert(
        self,
        *,
        company_id: uuid.UUID,
        filename: str,
        mime_type: str,
        size_bytes: int,
        storage_ref: str,
        uploaded_by: str | None,
        source_metadata: dict[str, Any],
    ) -> tuple[Document, bool]:
        async with self._session_factory() as session:
            existing = await self._find(session, company_id, storage_ref)
            if existing is not None:
                return existing, False

            document = Document(
                company_id=company_id,
                filename=filename,
                mime_type=mime_type,
                size_bytes=size_bytes,
                storage_ref=storage_ref,
                uploaded_by=uploaded_by,
                source_metadata=source_metadata,
            )
            session.add(document)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                existing = await self._find(session, company_id, storage_ref)
                if existing is None:
                    raise
                return existing, False

            logger.info(
                "document_created",
                document_id=str(document.id),
                company_id=str(company_id),
                filename=filename,
                storage_ref=storage_ref,
            )
            return document, True
