"""S3 blob store for ingested attachment bytes.

All boto3 calls are wrapped with ``asyncio.to_thread()`` to avoid blocking.
"""

from __future__ import annotations

import asyncio
import hashlib
import re

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from .config import S3Config
from .errors import BlobUploadFailed

logger = structlog.get_logger()


class S3BlobStore:
    """Generate upload targets and write attachment bytes to S3.

    Targets are derived from ``(owner, message, attachment)`` so the same
    attachment always lands on the same key; a redelivered webhook
    overwrites the object instead of creating a second one.
    """

    def __init__(self, config: S3Config) -> None:
        self._config = config
        self._client = None  # type: ignore[assignment]

    async def start(self) -> None:
        """Create the boto3 S3 client."""
        kwargs: dict = {"region_name": self._config.region}
        if self._config.endpoint_url:
            kwargs["endpoint_url"] = self._config.endpoint_url
        self._client = await asyncio.to_thread(boto3.client, "s3", **kwargs)
        logger.info("blob_store_started", bucket=self._config.bucket)

    async def stop(self) -> None:
        """Clean up the boto3 client."""
        self._client = None
        logger.info("blob_store_stopped")

    def generate_upload_target(
        self,
        owner_id: str,
        message_id: str,
        attachment_key: str,
        filename: str,
    ) -> str:
        """Return the ``s3://`` reference an attachment will be stored under."""
        key_hash = hashlib.sha256(attachment_key.encode("utf-8")).hexdigest()[:12]
        key = (
            f"{self._config.prefix}/{_sanitize(owner_id)}/{_sanitize(message_id)}/"
            f"{key_hash}_{_sanitize(filename)}"
        )
        return f"s3://{self._config.bucket}/{key}"

    async def upload(self, ref: str, data: bytes, mime_type: str) -> None:
        """Write *data* to *ref*.  Raises :class:`BlobUploadFailed` on any S3 error."""
        assert self._client is not None, "S3 client not started"
        bucket, key = _parse_s3_uri(ref)
        try:
            await asyncio.to_thread(
                self._client.put_object,
                Bucket=bucket,
                Key=key,
                Body=data,
                ContentType=mime_type or "application/octet-stream",
            )
        except (BotoCoreError, ClientError) as exc:
            raise BlobUploadFailed(f"Upload to {ref} failed: {exc}") from exc
        logger.debug("blob_uploaded", ref=ref, size=len(data), mime_type=mime_type)


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _parse_s3_uri(uri: str) -> tuple[str, str]:
    """Parse ``s3://bucket/key`` into (bucket, key)."""
    if not uri.startswith("s3://"):
        raise ValueError(f"Invalid S3 URI: {uri}")
    without_scheme = uri[5:]
    bucket, _, key = without_scheme.partition("/")
    return bucket, key


def _sanitize(name: str) -> str:
    """Remove characters unsafe for S3 keys."""
    return re.sub(r"[^\w.\-]", "_", name)
