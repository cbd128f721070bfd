"""Image storage for receipts, bill logos and avatars.

The API only needs two calls from an object store, ``upload`` returning a
stable id plus a URL and ``delete`` by id. Cloudinary is the production
implementation.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

import cloudinary
import cloudinary.exceptions
import cloudinary.uploader
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from fintrack.config import (
    CLOUDINARY_API_KEY,
    CLOUDINARY_API_SECRET,
    CLOUDINARY_CLOUD_NAME,
    CLOUDINARY_FOLDER,
)
from fintrack.errors import BlobStoreError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class StoredBlob:
    id: str
    url: str


class BlobStore(Protocol):
    def upload(self, data: bytes, folder: str) -> StoredBlob:
        ...

    def delete(self, blob_id: str) -> None:
        ...


class CloudinaryBlobStore:
    def __init__(
        self,
        cloud_name: str = CLOUDINARY_CLOUD_NAME,
        api_key: str = CLOUDINARY_API_KEY,
        api_secret: str = CLOUDINARY_API_SECRET,
        root_folder: str = CLOUDINARY_FOLDER,
    ) -> None:
        self._cloud_name = cloud_name
        self._api_key = api_key
        self._api_secret = api_secret
        self._root_folder = root_folder
        self._configured = False

    def _configure(self) -> None:
        if self._configured:
            return
        if not (self._cloud_name and self._api_key and self._api_secret):
            raise BlobStoreError("Cloudinary is not configured.", status_code=503)
        cloudinary.config(
            cloud_name=self._cloud_name,
            api_key=self._api_key,
            api_secret=self._api_secret,
            secure=True,
        )
        self._configured = True

    def upload(self, data: bytes, folder: str) -> StoredBlob:
        self._configure()
        target_folder = f"{self._root_folder}/{folder}" if self._root_folder else folder
        try:
            result = self._upload_with_retry(data, target_folder)
        except cloudinary.exceptions.Error as exc:
            logger.error("blob_store.upload_failed", folder=target_folder, error=str(exc))
            raise BlobStoreError(f"Cloudinary upload failed: {exc}") from exc

        public_id = result.get("public_id")
        url = result.get("secure_url") or result.get("url")
        if not public_id or not url:
            raise BlobStoreError("Cloudinary returned no id or URL.")
        logger.info("blob_store.uploaded", blob_id=public_id, size=len(data))
        return StoredBlob(id=public_id, url=url)

    def delete(self, blob_id: str) -> None:
        self._configure()
        try:
            cloudinary.uploader.destroy(blob_id, resource_type="image")
        except cloudinary.exceptions.Error as exc:
            raise BlobStoreError(f"Cloudinary delete failed: {exc}") from exc
        logger.info("blob_store.deleted", blob_id=blob_id)

    @retry(
        retry=retry_if_exception_type(cloudinary.exceptions.Error),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def _upload_with_retry(self, data: bytes, folder: str) -> dict:
        return cloudinary.uploader.upload(data, folder=folder, resource_type="image")


def discard_blob(store: BlobStore, blob_id: Optional[str]) -> None:
    """Delete a replaced or orphaned blob; failures are logged, never raised."""
    if not blob_id:
        return
    try:
        store.delete(blob_id)
    except Exception:
        logger.exception("blob_store.discard_failed", blob_id=blob_id)
