"""S3 blob store for HTML bodies and attachment payloads."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote, unquote, urlparse

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..core.config import BlobSettings
from ..core.errors import StorageError
from ..core.interfaces import BlobStore

LOGGER = logging.getLogger(__name__)


def email_body_path(user_id: str, gmail_id: str) -> str:
    """Object key for the HTML body of a mirrored email."""
    return f"emails/{user_id}/{gmail_id}.html"


def attachment_path(user_id: str, email_id: str, filename: str) -> str:
    """Object key for an attachment payload."""
    return f"attachments/{user_id}/{email_id}/{filename}"


class S3BlobStore(BlobStore):
    """Store blobs in an S3 bucket, addressed by public-style object URLs."""

    def __init__(self, settings: BlobSettings, client: Any | None = None) -> None:
        """Initialise with bucket settings; ``client`` overrides the boto3 client."""
        if not settings.bucket:
            raise StorageError("Blob bucket is not configured")
        self._settings = settings
        self._bucket = settings.bucket
        self._client = client or boto3.client(
            "s3",
            region_name=settings.region,
            endpoint_url=settings.endpoint_url,
        )

    def upload(self, path: str, data: bytes, content_type: str) -> str:
        """Put ``data`` at ``path`` and return the object's locator URL."""
        LOGGER.debug("Uploading %d bytes to s3://%s/%s", len(data), self._bucket, path)
        try:
            self._client.put_object(
                Bucket=self._bucket,
                Key=path,
                Body=data,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to upload blob {path}") from exc
        return self.locator_for(path)

    def download(self, locator: str) -> bytes:
        """Return the bytes stored at ``locator``."""
        key = self.key_for(locator)
        try:
            response = self._client.get_object(Bucket=self._bucket, Key=key)
            return response["Body"].read()
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to download blob {key}") from exc

    def delete(self, locator: str) -> None:
        """Delete the object at ``locator``; errors are logged, not raised."""
        try:
            key = self.key_for(locator)
            self._client.delete_object(Bucket=self._bucket, Key=key)
        except (BotoCoreError, ClientError, ValueError) as exc:
            LOGGER.error("Failed to delete blob at %s: %s", locator, exc)

    def locator_for(self, path: str) -> str:
        """Build the URL recorded in the database for an object key."""
        if self._settings.endpoint_url:
            base = self._settings.endpoint_url.rstrip("/")
            return f"{base}/{self._bucket}/{quote(path)}"
        return f"https://{self._bucket}.s3.{self._settings.region}.amazonaws.com/{quote(path)}"

    def key_for(self, locator: str) -> str:
        """Recover the object key from a locator URL."""
        parsed = urlparse(locator)
        key = unquote(parsed.path.lstrip("/"))
        if self._settings.endpoint_url:
            key = key.removeprefix(f"{self._bucket}/")
        if not key:
            raise ValueError(f"Locator {locator!r} has no object key")
        return key

    def close(self) -> None:
        """Release the underlying HTTP connection pool."""
        closer = getattr(self._client, "close", None)
        if callable(closer):
            closer()


__all__ = ["S3BlobStore", "attachment_path", "email_body_path"]
