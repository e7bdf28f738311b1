"""FastAPI application factory."""

from __future__ import annotations

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from inboxsync.blob import S3BlobStore
from inboxsync.config import Settings
from inboxsync.db.engine import Database
from inboxsync.gmail_client import GmailClient
from inboxsync.orchestrator import IngestionOrchestrator

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: database, Gmail client, blob store, orchestrator.  Shutdown: close them."""
    settings: Settings = app.state.settings
    db = Database.from_config(settings.database)
    await db.create_all()
    app.state.db = db
    logger.info("database_engine_created")

    provider = GmailClient(settings.gmail)
    await provider.start()
    app.state.provider = provider

    blob_store = S3BlobStore(settings.s3)
    await blob_store.start()
    app.state.blob_store = blob_store

    app.state.orchestrator = IngestionOrchestrator.create(settings, db.session, provider, blob_store)
    logger.info("ingestion_service_started", gmail_configured=settings.gmail.is_configured)
    yield
    await blob_store.stop()
    await provider.stop()
    await db.close()
    logger.info("shutdown_complete")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build and return the FastAPI application."""
    if settings is None:
        settings = Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="InboxSync Gmail Ingestion",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    from inboxsync.routers.gmail import router as gmail_router

    app.include_router(gmail_router)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "inboxsync"}

    return app
