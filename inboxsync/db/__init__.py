"""Metadata persistence: ORM tables and the async engine."""

from .engine import Database
from .tables import Base, Company, Document, GmailIntegration, Notification

__all__ = [
    "Base",
    "Company",
    "Database",
    "Document",
    "GmailIntegration",
    "Notification",
]
