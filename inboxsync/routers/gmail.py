"""Gmail webhook, subscription and status endpoints."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from inboxsync.config import Settings
from inboxsync.deps import get_orchestrator, get_provider, get_settings
from inboxsync.errors import CredentialExpired, ProviderAuthError, ProviderError
from inboxsync.interface import MailProvider
from inboxsync.models import Credential, DeactivateRequest, SubscribeRequest
from inboxsync.orchestrator import IngestionOrchestrator

logger = structlog.get_logger()

router = APIRouter(prefix="/gmail", tags=["gmail"])


@router.post("/webhook", name="gmail_webhook")
async def webhook(
    request: Request,
    orchestrator: Annotated[IngestionOrchestrator, Depends(get_orchestrator)],
):
    """Acknowledge a push and ingest synchronously.

    Returns 200 for every body that could be dispatched, including ones
    that turn out to be probes; 500 only when dispatch itself raises.
    """
    try:
        body = await request.json()
    except ValueError:
        logger.info("webhook_body_not_json")
        return {"success": True}

    try:
        await orchestrator.handle_webhook(body)
    except Exception as exc:
        logger.exception("webhook_dispatch_failed")
        return JSONResponse(
            {"error": "Internal server error", "message": str(exc)},
            status_code=500,
        )
    return {"success": True}


@router.post("/subscribe")
async def subscribe(
    body: SubscribeRequest,
    orchestrator: Annotated[IngestionOrchestrator, Depends(get_orchestrator)],
    provider: Annotated[MailProvider, Depends(get_provider)],
    settings: Annotated[Settings, Depends(get_settings)],
):
    if not body.owner_id or not body.access_token:
        raise HTTPException(status_code=400, detail="owner_id and access_token are required")

    credential = Credential(
        owner_id=body.owner_id,
        access_token=body.access_token,
        refresh_token=body.refresh_token,
    )
    try:
        try:
            profile = await provider.get_profile(credential)
        except ProviderAuthError:
            credential = await orchestrator.refresher.refresh(credential)
            profile = await provider.get_profile(credential)
    except (CredentialExpired, ProviderAuthError) as exc:
        logger.warning("subscribe_credential_rejected", owner_id=body.owner_id, error=str(exc))
        raise HTTPException(status_code=401, detail="Gmail credential is invalid or expired") from exc
    except ProviderError as exc:
        logger.error("subscribe_profile_failed", owner_id=body.owner_id, error=str(exc))
        raise HTTPException(status_code=500, detail=f"Failed to read Gmail profile: {exc}") from exc

    email_address = profile.get("emailAddress")
    credential = credential.model_copy(update={"email_address": email_address})

    watch: dict[str, Any] = {}
    local_mode = not settings.gmail.pubsub_topic
    if not local_mode:
        try:
            watch = await provider.watch(
                credential, settings.gmail.pubsub_topic, settings.gmail.watch_label_ids
            )
        except ProviderError as exc:
            if "topic" not in str(exc).lower():
                logger.error("gmail_watch_failed", owner_id=body.owner_id, error=str(exc))
                raise HTTPException(status_code=500, detail=f"Failed to set up Gmail watch: {exc}") from exc
            logger.warning("gmail_watch_topic_unavailable", owner_id=body.owner_id, error=str(exc))
            local_mode = True

    history_id = str(watch["historyId"]) if watch.get("historyId") else None
    expiration = _expiration_from_millis(watch.get("expiration"))
    await orchestrator.credentials.upsert(
        body.owner_id,
        credential,
        history_id=history_id,
        subscription_expires_at=expiration,
    )

    if local_mode:
        logger.info("gmail_connected_without_push", owner_id=body.owner_id, email=email_address)
        message = "Gmail connected (push notifications not configured)"
    else:
        logger.info("gmail_watch_registered", owner_id=body.owner_id, history_id=history_id)
        message = "Gmail watch registered"

    return {
        "success": True,
        "message": message,
        "email": email_address,
        "historyId": history_id,
        "expiration": expiration.isoformat() if expiration else None,
    }


@router.post("/deactivate")
async def deactivate(
    body: DeactivateRequest,
    orchestrator: Annotated[IngestionOrchestrator, Depends(get_orchestrator)],
):
    deactivated = await orchestrator.credentials.deactivate(body.owner_id)
    return {"success": True, "deactivated": deactivated}


@router.get("/status")
async def status(
    request: Request,
    settings: Annotated[Settings, Depends(get_settings)],
):
    return {
        "status": "active",
        "configured": settings.gmail.is_configured,
        "webhookUrl": str(request.url_for("gmail_webhook")),
        "timestamp": datetime.now(UTC).isoformat(),
    }


def _expiration_from_millis(value: Any) -> datetime | None:
    """Gmail returns the watch expiration as epoch milliseconds, usually as a string."""
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=UTC)
    except (TypeError, ValueError):
        logger.warning("gmail_watch_expiration_unparseable", value=value)
        return None
