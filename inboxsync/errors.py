"""Error taxonomy for the Gmail ingestion pipeline.

Each error is scoped to the smallest unit of work it invalidates
(attachment < message < integration < invocation).  Callers catch at
that scope and carry on with the next unit.
"""

from __future__ import annotations


class IngestionError(Exception):
    """Base class for every pipeline error."""


# ----------------------------------------------------------------------
# Mail provider
# ----------------------------------------------------------------------


class ProviderError(IngestionError):
    """A Gmail API or OAuth call failed."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProviderAuthError(ProviderError):
    """The provider rejected the access token (401/403)."""


class ProviderNotFound(ProviderError):
    """The requested resource or history cursor is unknown to the provider (404)."""


# ----------------------------------------------------------------------
# Invocation scope
# ----------------------------------------------------------------------


class DecodeError(IngestionError):
    """Webhook body is not a recognisable push notification."""


# ----------------------------------------------------------------------
# Integration scope
# ----------------------------------------------------------------------


class CredentialExpired(IngestionError):
    """No usable access token and no way to refresh it."""


class HistoryFetchFailed(IngestionError):
    """History delta query failed after the retry budget."""


# ----------------------------------------------------------------------
# Message scope
# ----------------------------------------------------------------------


class MessageFetchFailed(IngestionError):
    """The message could not be retrieved from the provider."""


class CompanyNameUnresolved(IngestionError):
    """None of the company-name rules produced a name."""


# ----------------------------------------------------------------------
# Attachment scope
# ----------------------------------------------------------------------


class AttachmentIneligible(IngestionError):
    """Attachment is oversized or of a disallowed MIME type."""


class BlobUploadFailed(IngestionError):
    """Attachment bytes could not be written to the blob store."""


class DocumentPersistFailed(IngestionError):
    """Blob was stored but the Document record could not be written."""


class NotificationFailed(IngestionError):
    """A user notification could not be written."""
