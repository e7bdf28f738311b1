"""Structured logging setup using structlog."""

from __future__ import annotations

import logging
import sys

import structlog

SERVICE_NAME = "inboxsync"

_SECRET_KEYS = frozenset({"access_token", "refresh_token", "client_secret", "authorization"})


def add_service_name(_logger: object, _method: str, event_dict: dict) -> dict:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def redact_secrets(_logger: object, _method: str, event_dict: dict) -> dict:
    """Mask OAuth tokens that end up in an event by accident."""
    for key in _SECRET_KEYS.intersection(event_dict):
        event_dict[key] = "***"
    return event_dict


def setup_logging(*, json: bool = True, level: str = "INFO") -> None:
    """Configure structlog for the ingestion service.

    Every event carries ``service=inboxsync``; OAuth token fields are masked.

    Parameters
    ----------
    json:
        If *True* (the default, suitable for production), output JSON
        lines.  If *False*, use a human-friendly console renderer.
    level:
        Root log level name (e.g. ``"DEBUG"``, ``"INFO"``).
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        add_service_name,
        redact_secrets,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())

    # httpx emits one INFO record per provider request
    logging.getLogger("httpx").setLevel(logging.WARNING)


def ingestion_context(**values: object):
    """Bind identifiers (owner, message, attachment) to every log line in scope.

    Usage::

        with ingestion_context(owner_id=owner_id, message_id=message_id):
            ...
    """
    return structlog.contextvars.bound_contextvars(
        **{key: value for key, value in values.items() if value is not None}
    )
