"""Attachment discovery and eligibility rules over the Gmail part tree."""

from __future__ import annotations

from collections.abc import Iterable, Iterator

import structlog

from .config import DEFAULT_ALLOWED_MIME_TYPES, DEFAULT_MAX_ATTACHMENT_BYTES
from .errors import AttachmentIneligible
from .models import MessageEnvelope, MessagePart

logger = structlog.get_logger()

MAX_PART_DEPTH = 20


def _walk(part: MessagePart, depth: int = 0) -> Iterator[MessagePart]:
    if depth > MAX_PART_DEPTH:
        logger.warning("part_tree_depth_exceeded", max_depth=MAX_PART_DEPTH)
        return
    yield part
    for child in part.parts:
        yield from _walk(child, depth + 1)


def is_attachment_part(part: MessagePart) -> bool:
    return bool(part.filename and part.attachment_id)


def iter_attachment_parts(message: MessageEnvelope) -> Iterator[MessagePart]:
    """Yield every part, at any nesting depth, carrying a filename and an attachment ID."""
    for part in _walk(message.payload):
        if is_attachment_part(part):
            yield part


class AttachmentFilter:
    """Message-level gate and per-attachment eligibility.

    A message with no attachment part is dropped before any company is
    created.  Individual attachments must fit under the size cap and have
    an allow-listed MIME type.
    """

    def __init__(
        self,
        max_size_bytes: int = DEFAULT_MAX_ATTACHMENT_BYTES,
        allowed_mime_types: Iterable[str] = DEFAULT_ALLOWED_MIME_TYPES,
    ) -> None:
        self.max_size_bytes = max_size_bytes
        self.allowed_mime_types = frozenset(t.lower() for t in allowed_mime_types)

    def has_qualifying_attachment(self, message: MessageEnvelope) -> bool:
        return next(iter_attachment_parts(message), None) is not None

    def attachments(self, message: MessageEnvelope) -> list[MessagePart]:
        return list(iter_attachment_parts(message))

    def check_size(self, filename: str, size_bytes: int) -> None:
        if size_bytes > self.max_size_bytes:
            raise AttachmentIneligible(
                f"{filename}: {size_bytes} bytes exceeds the {self.max_size_bytes} byte cap"
            )

    def ensure_eligible(self, part: MessagePart) -> None:
        """Raise :class:`AttachmentIneligible` if *part* must be skipped."""
        self.check_size(part.filename, part.size_bytes)
        if part.mime_type.lower() not in self.allowed_mime_types:
            raise AttachmentIneligible(f"{part.filename}: MIME type {part.mime_type!r} not allowed")

    def is_eligible_attachment(self, part: MessagePart) -> bool:
        try:
            self.ensure_eligible(part)
        except AttachmentIneligible:
            return False
        return True
