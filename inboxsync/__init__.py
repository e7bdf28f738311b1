"""InboxSync: Gmail push notifications to stored, company-filed documents.

Public API re-exported here for convenience::

    from inboxsync import IngestionOrchestrator, Settings, setup_logging
"""

from .attachments import AttachmentFilter
from .blob import S3BlobStore
from .company import CompanyResolver
from .config import (
    DatabaseConfig,
    GmailConfig,
    IngestionConfig,
    RetryConfig,
    S3Config,
    Settings,
)
from .credentials import CredentialStore
from .dedup import BoundedSeenSet, IdempotencyGuard
from .gmail_client import GmailClient
from .history import HistoryReconciler
from .interface import MailProvider
from .logging import setup_logging
from .models import (
    Credential,
    HistoryDelta,
    IngestionReport,
    MessageEnvelope,
    PushNotification,
    ResolvedCompany,
)
from .notifications import NotificationSink
from .orchestrator import IngestionOrchestrator, decode_push_payload
from .repository import CompanyStore, DocumentStore
from .retry import with_retry
from .token_refresher import TokenRefresher

__all__ = [
    "AttachmentFilter",
    "BoundedSeenSet",
    "CompanyResolver",
    "CompanyStore",
    "Credential",
    "CredentialStore",
    "DatabaseConfig",
    "DocumentStore",
    "GmailClient",
    "GmailConfig",
    "HistoryDelta",
    "HistoryReconciler",
    "IdempotencyGuard",
    "IngestionConfig",
    "IngestionOrchestrator",
    "IngestionReport",
    "MailProvider",
    "MessageEnvelope",
    "NotificationSink",
    "PushNotification",
    "ResolvedCompany",
    "RetryConfig",
    "S3BlobStore",
    "S3Config",
    "Settings",
    "TokenRefresher",
    "decode_push_payload",
    "setup_logging",
    "with_retry",
]
