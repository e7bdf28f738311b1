"""IngestionOrchestrator: webhook push to stored documents.

One invocation walks every active integration, reconciles its history
cursor, and for each new message resolves a company and stores the
eligible attachments.  Failures are isolated at the smallest unit of
work (attachment < message < integration); the invocation itself only
fails on an unexpected error outside those scopes.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
from collections import defaultdict
from collections.abc import Awaitable
from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .attachments import AttachmentFilter
from .blob import S3BlobStore
from .company import CompanyResolver
from .config import RetryConfig, Settings
from .credentials import CredentialStore, credential_from_integration, is_newer_cursor
from .db.tables import Company, GmailIntegration
from .dedup import IdempotencyGuard
from .errors import (
    AttachmentIneligible,
    BlobUploadFailed,
    CompanyNameUnresolved,
    CredentialExpired,
    DecodeError,
    DocumentPersistFailed,
    HistoryFetchFailed,
    MessageFetchFailed,
    ProviderError,
)
from .history import HistoryReconciler
from .interface import MailProvider
from .logging import ingestion_context
from .models import (
    Credential,
    IngestionReport,
    MessageEnvelope,
    MessagePart,
    PushNotification,
)
from .notifications import NotificationSink
from .repository import CompanyStore, DocumentStore
from .retry import with_retry
from .token_refresher import TokenRefresher

logger = structlog.get_logger()


# ------------------------------------------------------------------
# Push payload decoding
# ------------------------------------------------------------------


def _decode_envelope_data(data: str) -> dict[str, Any]:
    """Decode the base64 JSON carried in a Pub/Sub ``message.data`` field."""
    padded = data + "=" * (-len(data) % 4)
    try:
        raw = base64.b64decode(padded, validate=True)
    except (binascii.Error, ValueError):
        try:
            raw = base64.urlsafe_b64decode(padded)
        except (binascii.Error, ValueError) as exc:
            raise DecodeError(f"message.data is not base64: {exc}") from exc

    try:
        payload = json.loads(raw)
    except (UnicodeDecodeError, ValueError) as exc:
        raise DecodeError(f"message.data is not JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise DecodeError("message.data does not hold a JSON object")
    return payload


def decode_push_payload(body: Any) -> PushNotification:
    """Turn a webhook body into a :class:`PushNotification`.

    Accepts the Pub/Sub envelope ``{"message": {"data": <base64 JSON>}}``
    and the raw ``{"historyId": ...}`` form.  Raises :class:`DecodeError`
    for anything else.
    """
    if not isinstance(body, dict):
        raise DecodeError(f"Expected a JSON object, got {type(body).__name__}")

    envelope = body.get("message")
    if isinstance(envelope, dict) and isinstance(envelope.get("data"), str):
        payload = _decode_envelope_data(envelope["data"])
    elif "historyId" in body:
        payload = body
    else:
        raise DecodeError("Body carries neither message.data nor historyId")

    history_id = payload.get("historyId")
    if isinstance(history_id, bool) or not isinstance(history_id, (str, int)):
        raise DecodeError(f"Invalid historyId: {history_id!r}")
    history_id = str(history_id).strip()
    if not history_id:
        raise DecodeError("Empty historyId")

    email_address = payload.get("emailAddress")
    return PushNotification(
        history_id=history_id,
        email_address=email_address if isinstance(email_address, str) and email_address else None,
    )


# ------------------------------------------------------------------
# Orchestrator
# ------------------------------------------------------------------


class IngestionOrchestrator:
    """Drives one webhook invocation across all active integrations.

    Integrations, messages and attachments are processed sequentially.
    A per-owner :class:`asyncio.Lock` keeps concurrent invocations from
    interleaving on the same owner's cursor and company records.
    """

    def __init__(
        self,
        *,
        credentials: CredentialStore,
        provider: MailProvider,
        refresher: TokenRefresher,
        reconciler: HistoryReconciler,
        guard: IdempotencyGuard,
        attachment_filter: AttachmentFilter,
        company_resolver: CompanyResolver,
        companies: CompanyStore,
        documents: DocumentStore,
        blob_store: S3BlobStore,
        notifications: NotificationSink,
        retry: RetryConfig,
    ) -> None:
        self._credentials = credentials
        self._provider = provider
        self._refresher = refresher
        self._reconciler = reconciler
        self._guard = guard
        self._filter = attachment_filter
        self._resolver = company_resolver
        self._companies = companies
        self._documents = documents
        self._blob_store = blob_store
        self._notifications = notifications
        self._retry = retry
        self._owner_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @classmethod
    def create(
        cls,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        provider: MailProvider,
        blob_store: S3BlobStore,
        *,
        guard: IdempotencyGuard | None = None,
    ) -> IngestionOrchestrator:
        """Wire the default collaborators from *settings*."""
        ingestion = settings.ingestion
        credentials = CredentialStore(session_factory)
        if guard is None:
            guard = IdempotencyGuard(
                message_capacity=ingestion.processed_messages_capacity,
                attachment_capacity=ingestion.processed_attachments_capacity,
            )
        return cls(
            credentials=credentials,
            provider=provider,
            refresher=TokenRefresher(provider, credentials),
            reconciler=HistoryReconciler(provider, ingestion, settings.retry),
            guard=guard,
            attachment_filter=AttachmentFilter(
                ingestion.max_attachment_bytes, ingestion.allowed_mime_types
            ),
            company_resolver=CompanyResolver(),
            companies=CompanyStore(session_factory),
            documents=DocumentStore(session_factory),
            blob_store=blob_store,
            notifications=NotificationSink(session_factory),
            retry=settings.retry,
        )

    @property
    def credentials(self) -> CredentialStore:
        return self._credentials

    @property
    def refresher(self) -> TokenRefresher:
        return self._refresher

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def handle_webhook(self, body: Any) -> IngestionReport | None:
        """Decode *body* and run ingestion.  Returns ``None`` for ignorable bodies."""
        try:
            push = decode_push_payload(body)
        except DecodeError as exc:
            logger.info("webhook_payload_ignored", reason=str(exc))
            return None

        logger.info(
            "webhook_received",
            history_id=push.history_id,
            email_address=push.email_address,
        )
        report = await self.handle_notification(push)
        logger.info("webhook_processed", history_id=push.history_id, **report.model_dump())
        return report

    async def handle_notification(self, push: PushNotification) -> IngestionReport:
        report = IngestionReport()

        @with_retry(self._retry)
        async def _list_active() -> list[GmailIntegration]:
            return await self._credentials.list_active()

        try:
            integrations = await _list_active()
        except Exception:
            logger.exception("integration_list_failed", history_id=push.history_id)
            return report

        if not integrations:
            logger.info("no_active_integrations", history_id=push.history_id)

        for integration in integrations:
            if not _matches_mailbox(integration, push.email_address):
                continue
            owner_id = integration.owner_id
            async with self._owner_locks[owner_id]:
                with ingestion_context(owner_id=owner_id, history_id=push.history_id):
                    await self._run_integration(owner_id, push, report)
        return report

    # ------------------------------------------------------------------
    # Integration scope
    # ------------------------------------------------------------------

    async def _run_integration(
        self, owner_id: str, push: PushNotification, report: IngestionReport
    ) -> None:
        try:
            # re-read under the lock; a concurrent invocation may have moved the cursor
            integration = await self._credentials.get_integration(owner_id)
            if integration is None or not integration.is_active:
                logger.info("integration_no_longer_active")
                report.integrations_skipped += 1
                return
            await self._process_integration(integration, push, report)
            report.integrations_processed += 1
        except (CredentialExpired, HistoryFetchFailed) as exc:
            logger.warning("integration_skipped", reason=type(exc).__name__, error=str(exc))
            report.integrations_skipped += 1
        except ProviderError as exc:
            logger.error(
                "integration_provider_error",
                status_code=exc.status_code,
                error=str(exc),
            )
            report.integrations_skipped += 1
        except Exception:
            logger.exception("integration_processing_failed")
            report.integrations_skipped += 1

    async def _process_integration(
        self,
        integration: GmailIntegration,
        push: PushNotification,
        report: IngestionReport,
    ) -> None:
        credential = await self._refresher.ensure_valid(credential_from_integration(integration))

        start_cursor = integration.last_history_id or push.history_id
        delta = await self._reconciler.changed_message_ids(credential, start_cursor)
        logger.info(
            "history_reconciled",
            start_cursor=start_cursor,
            messages=len(delta.message_ids),
            used_fallback=delta.used_fallback,
        )

        for message_id in delta.message_ids:
            await self._process_message(credential, message_id, report)

        newest = delta.new_cursor if is_newer_cursor(delta.new_cursor, push.history_id) else push.history_id
        await self._credentials.advance_cursor(integration.owner_id, newest)

    # ------------------------------------------------------------------
    # Message scope
    # ------------------------------------------------------------------

    async def _process_message(
        self, credential: Credential, message_id: str, report: IngestionReport
    ) -> None:
        if self._guard.already_seen_message(message_id):
            logger.debug("message_already_processed", message_id=message_id)
            report.messages_skipped += 1
            return

        with ingestion_context(message_id=message_id):
            try:
                await self._ingest_message(credential, message_id, report)
            except MessageFetchFailed as exc:
                logger.warning("message_fetch_failed", error=str(exc))
                report.messages_failed += 1
            except CompanyNameUnresolved as exc:
                logger.info("message_skipped_unresolved_company", reason=str(exc))
                self._guard.mark_message_seen(message_id)
                report.messages_skipped += 1
            except Exception:
                logger.exception("message_processing_failed")
                report.messages_failed += 1

    async def _ingest_message(
        self, credential: Credential, message_id: str, report: IngestionReport
    ) -> None:
        try:
            message = await self._provider.get_message(credential, message_id)
        except ProviderError as exc:
            raise MessageFetchFailed(f"Message {message_id}: {exc}") from exc

        parts = self._filter.attachments(message)
        if not parts:
            logger.debug("message_without_attachments")
            self._guard.mark_message_seen(message_id)
            report.messages_skipped += 1
            return

        resolved = self._resolver.resolve(message.headers)
        company, created = await self._companies.lookup_or_create(
            credential.owner_id,
            resolved,
            metadata={
                "source": "gmail",
                "firstEmailSubject": message.subject,
                "firstEmailDate": message.date,
            },
        )
        logger.info(
            "message_resolved",
            company_id=str(company.id),
            company_name=company.name,
            company_created=created,
            attachments=len(parts),
        )
        if not self._guard.already_notified(message_id):
            await self._notify(
                self._notifications.email_received(
                    credential.owner_id, message.subject or "(no subject)", company.name
                )
            )
            self._guard.mark_notified(message_id)

        failures_before = report.attachments_failed
        for part in parts:
            with ingestion_context(attachment_key=part.attachment_key, filename=part.filename):
                try:
                    await self._process_attachment(credential, message, part, company, report)
                except Exception:
                    logger.exception("attachment_processing_failed")
                    report.attachments_failed += 1

        # leave the message unmarked so a redelivery retries the failed attachments
        if report.attachments_failed == failures_before:
            self._guard.mark_message_seen(message_id)
        report.messages_processed += 1

    # ------------------------------------------------------------------
    # Attachment scope
    # ------------------------------------------------------------------

    async def _process_attachment(
        self,
        credential: Credential,
        message: MessageEnvelope,
        part: MessagePart,
        company: Company,
        report: IngestionReport,
    ) -> None:
        key = part.attachment_key
        if self._guard.already_seen_attachment(message.id, key):
            logger.debug("attachment_already_processed")
            report.attachments_skipped += 1
            return

        try:
            self._filter.ensure_eligible(part)
        except AttachmentIneligible as exc:
            logger.info("attachment_skipped", reason=str(exc))
            self._guard.mark_attachment_seen(message.id, key)
            report.attachments_skipped += 1
            return

        assert part.attachment_id is not None
        try:
            data = await self._provider.get_attachment_bytes(credential, message.id, part.attachment_id)
        except ProviderError as exc:
            logger.warning("attachment_fetch_failed", error=str(exc))
            report.attachments_failed += 1
            return

        # the part header size can under-report; check what was actually downloaded
        try:
            self._filter.check_size(part.filename, len(data))
        except AttachmentIneligible as exc:
            logger.info("attachment_skipped", reason=str(exc))
            self._guard.mark_attachment_seen(message.id, key)
            report.attachments_skipped += 1
            return

        storage_ref = self._blob_store.generate_upload_target(
            credential.owner_id, message.id, key, part.filename
        )
        try:
            await self._blob_store.upload(storage_ref, data, part.mime_type)
        except BlobUploadFailed as exc:
            logger.error("blob_upload_failed", storage_ref=storage_ref, error=str(exc))
            report.attachments_failed += 1
            return

        try:
            document, created = await self._documents.insert(
                company_id=company.id,
                filename=part.filename,
                mime_type=part.mime_type,
                size_bytes=len(data),
                storage_ref=storage_ref,
                uploaded_by=company.canonical_email,
                source_metadata={
                    "source": "gmail",
                    "messageId": message.id,
                    "attachmentId": part.attachment_id,
                    "partId": part.part_id,
                    "processedAt": datetime.now(UTC).isoformat(),
                },
            )
        except DocumentPersistFailed as exc:
            logger.error("document_persist_failed_blob_orphaned", storage_ref=storage_ref, error=str(exc))
            report.attachments_failed += 1
            return

        self._guard.mark_attachment_seen(message.id, key)
        if not created:
            logger.info("document_already_stored", document_id=str(document.id))
            return

        report.documents_stored += 1
        await self._notify(
            self._notifications.document_stored(credential.owner_id, part.filename, company.name)
        )

    async def _notify(self, notification: Awaitable[None]) -> None:
        try:
            await notification
        except Exception as exc:
            logger.warning("notification_failed", error=str(exc))


def _matches_mailbox(integration: GmailIntegration, email_address: str | None) -> bool:
    if not email_address or not integration.email_address:
        return True
    return integration.email_address.strip().lower() == email_address.strip().lower()
