"""
Receipt Storage Module

Blob storage for proof-of-payment files. The hosted store is an object bucket
behind a REST API; files are written once and served from a public URL.
"""

import httpx
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, Optional
from urllib.parse import quote

from .config import TrackerConfig
from .exceptions import ProofUploadError
from .logging_config import get_logger

logger = get_logger("loan_tracker.receipts")


def file_extension(filename: str) -> str:
    """Lower-cased extension of a filename, "jpg" when it has none"""
    if "." not in filename:
        return "jpg"
    return filename.rsplit(".", 1)[1].lower() or "jpg"


def proof_key(user_id: str, loan_id: str, filename: str,
              now: Optional[datetime] = None) -> str:
    """Per-user, per-loan, timestamp-qualified object key"""
    now = now or datetime.now(timezone.utc)
    epoch_ms = int(now.timestamp() * 1000)
    return f"{user_id}/loan-{loan_id}-{epoch_ms}.{file_extension(filename)}"


class ReceiptStore(ABC):
    """Write-once blob store returning public URLs"""

    @abstractmethod
    async def upload(self, data: bytes, content_type: str, key: str) -> str:
        """
        Upload data under key without overwriting

        Returns:
            Public URL of the stored object

        Raises:
            ProofUploadError: If the object could not be stored
        """
        pass

    @abstractmethod
    def public_url(self, key: str) -> str:
        pass

    async def close(self) -> None:
        pass


class InMemoryReceiptStore(ReceiptStore):
    """Receipt store for tests and offline use"""

    def __init__(self, base_url: str = "memory://receipts"):
        self.base_url = base_url.rstrip("/")
        self.objects: Dict[str, bytes] = {}
        self.content_types: Dict[str, str] = {}

    async def upload(self, data: bytes, content_type: str, key: str) -> str:
        if key in self.objects:
            raise ProofUploadError(f"Receipt {key} already exists")
        self.objects[key] = bytes(data)
        self.content_types[key] = content_type
        return self.public_url(key)

    def public_url(self, key: str) -> str:
        return f"{self.base_url}/{key}"


class HTTPReceiptStore(ReceiptStore):
    """REST client for a hosted storage bucket"""

    def __init__(
        self,
        base_url: str,
        bucket: str = "receipts",
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.bucket = bucket
        self.api_key = api_key
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def _object_path(self, key: str) -> str:
        return f"{self.bucket}/{quote(key, safe='/')}"

    def public_url(self, key: str) -> str:
        return f"{self.base_url}/storage/v1/object/public/{self._object_path(key)}"

    async def upload(self, data: bytes, content_type: str, key: str) -> str:
        headers = {
            "Content-Type": content_type,
            "x-upsert": "false"
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            response = await self._client.post(
                f"{self.base_url}/storage/v1/object/{self._object_path(key)}",
                content=data,
                headers=headers
            )
        except httpx.HTTPError as e:
            logger.error(f"Receipt upload failed for {key}: {e}")
            raise ProofUploadError(f"Failed to upload payment proof: {e}") from e

        if response.status_code not in (200, 201):
            logger.warning(f"Receipt store returned {response.status_code}: {response.text}")
            raise ProofUploadError(
                f"Failed to upload payment proof: storage returned {response.status_code}"
            )

        return self.public_url(key)

    async def close(self) -> None:
        await self._client.aclose()


def create_receipt_store(config: TrackerConfig) -> ReceiptStore:
    """Hosted store when a base URL is configured, in-memory otherwise"""
    if not config.receipts_base_url:
        return InMemoryReceiptStore()
    return HTTPReceiptStore(
        base_url=config.receipts_base_url,
        bucket=config.receipts_bucket,
        api_key=config.receipts_api_key or None,
        timeout=config.request_timeout_seconds
    )
