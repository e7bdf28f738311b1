"""FastAPI dependency-injection helpers."""

from __future__ import annotations

from fastapi import Request

from inboxsync.config import Settings
from inboxsync.interface import MailProvider
from inboxsync.orchestrator import IngestionOrchestrator


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_orchestrator(request: Request) -> IngestionOrchestrator:
    return request.app.state.orchestrator


def get_provider(request: Request) -> MailProvider:
    return request.app.state.provider
