"""Opus Convert Service - Blob store client.

Proxies a published output file to the remote storage API and returns the
handle it assigns.
"""

from __future__ import annotations

import logging
from typing import Any, BinaryIO

import httpx

from app.config import STORAGE_TIMEOUT_SECONDS, STORAGE_TOKEN, STORAGE_URL

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """The storage API rejected or failed a request."""

    def __init__(self, message: str, status_code: int | None = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class BlobStoreClient:
    """Client for the remote blob store.

    Args:
        base_url: Storage API root URL.
        token: Value sent in the Authorization header.
        timeout: Request timeout in seconds.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        base_url: str = STORAGE_URL,
        token: str = STORAGE_TOKEN,
        timeout: float = STORAGE_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.transport = transport

    async def store(self, name: str, stream: BinaryIO) -> dict[str, Any]:
        """Upload a named file.

        Args:
            name: File name sent with the multipart part.
            stream: Open binary stream with the file contents.

        Returns:
            The storage API's JSON response (the stored file's handle).

        Raises:
            StorageError: On transport errors, non-200 responses or invalid JSON.
        """
        headers = {"Authorization": self.token} if self.token else {}
        url = f"{self.base_url}/upload"

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.post(url, files={"file": (name, stream)}, headers=headers)
        except httpx.HTTPError as e:
            raise StorageError(f"Storage request failed: {e}") from e

        if resp.status_code != 200:
            logger.warning("Storage upload of %s failed: %d", name, resp.status_code)
            raise StorageError(
                f"Storage upload failed: {resp.status_code} {resp.reason_phrase}",
                status_code=resp.status_code,
            )

        try:
            return resp.json()
        except ValueError as e:
            raise StorageError("Storage returned invalid JSON") from e
