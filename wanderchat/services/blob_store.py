"""
Blob store client for releasing media referenced by deleted messages.

Objects are addressed as ``<bucket>/<folder>/<file>``; the folder and file are
the last two path segments of the public media URL.
"""
import asyncio
import logging
from typing import Dict, Optional
from urllib.parse import urlparse

import httpx

from wanderchat.core.config import settings
from wanderchat.core.exceptions import UpstreamError

logger = logging.getLogger(__name__)


class BlobStore:
    """HTTP client for the object storage service."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        bucket: str = "wanderchat-media",
        token: Optional[str] = None,
        timeout_seconds: float = 10.0,
        retry_attempts: int = 2,
        backoff_seconds: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url
        self.bucket = bucket
        self.token = token
        self.timeout_seconds = timeout_seconds
        self.retry_attempts = retry_attempts
        self.backoff_seconds = backoff_seconds
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url)

    @staticmethod
    def object_key(url: str) -> str:
        """Derive the storage key (folder/file) from a media URL."""
        segments = [segment for segment in urlparse(url).path.split("/") if segment]
        return "/".join(segments[-2:])

    def _headers(self) -> Dict[str, str]:
        if self.token:
            return {"Authorization": f"Bearer {self.token}"}
        return {}

    async def delete_object(self, url: str) -> bool:
        """
        Delete the object behind ``url``.

        Returns:
            True if the object was deleted or was already gone.

        Raises:
            UpstreamError: the store could not be reached after all retries.
        """
        if not self.is_configured:
            logger.warning(f"Blob store not configured; skipping delete of {url}")
            return False

        key = self.object_key(url)
        if not key:
            logger.warning(f"Cannot derive blob key from {url}")
            return False

        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout_seconds,
            headers=self._headers(),
            transport=self._transport,
        ) as client:
            for attempt in range(self.retry_attempts + 1):
                try:
                    response = await client.delete(f"/{self.bucket}/{key}")
                except httpx.RequestError as e:
                    if attempt < self.retry_attempts:
                        await asyncio.sleep(self.backoff_seconds * 2 ** attempt)
                        continue
                    raise UpstreamError(f"Blob store unreachable while deleting {key}") from e

                # Server error (5xx), retry if attempts remaining
                if response.status_code >= 500 and attempt < self.retry_attempts:
                    await asyncio.sleep(self.backoff_seconds * 2 ** attempt)
                    continue
                break

        if response.status_code in (200, 202, 204, 404):
            logger.info(f"Released blob {key}")
            return True

        logger.error(f"Blob store refused delete of {key}: HTTP {response.status_code}")
        return False


def get_blob_store() -> BlobStore:
    """FastAPI dependency returning the configured blob store."""
    return blob_store


# Global blob store instance
blob_store = BlobStore(
    base_url=settings.blob_store_base_url,
    bucket=settings.blob_store_bucket,
    token=settings.blob_store_token,
    timeout_seconds=settings.blob_store_timeout_seconds,
)
