"""
Tests for proof-of-payment receipt storage

The hosted store is exercised against httpx.MockTransport so no network is
needed.
"""

import pytest
import httpx
from datetime import datetime, timezone

from loan_tracker.config import TrackerConfig
from loan_tracker.exceptions import ProofUploadError
from loan_tracker.receipts import (
    HTTPReceiptStore, InMemoryReceiptStore, create_receipt_store, file_extension, proof_key
)


class TestProofKey:
    """Test object key generation"""

    def test_key_layout(self):
        now = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
        key = proof_key("user-1", "loan-9", "Receipt.PNG", now)

        assert key == f"user-1/loan-loan-9-{int(now.timestamp() * 1000)}.png"

    def test_file_extension(self):
        assert file_extension("scan.jpeg") == "jpeg"
        assert file_extension("archive.tar.gz") == "gz"
        assert file_extension("noextension") == "jpg"
        assert file_extension("trailingdot.") == "jpg"


class TestInMemoryReceiptStore:
    """Test the in-memory store"""

    @pytest.mark.asyncio
    async def test_upload(self):
        store = InMemoryReceiptStore()
        url = await store.upload(b"data", "image/png", "user-1/loan-1-1.png")

        assert url == "memory://receipts/user-1/loan-1-1.png"
        assert store.objects["user-1/loan-1-1.png"] == b"data"
        assert store.content_types["user-1/loan-1-1.png"] == "image/png"

    @pytest.mark.asyncio
    async def test_no_overwrite(self):
        store = InMemoryReceiptStore()
        await store.upload(b"first", "image/png", "key.png")

        with pytest.raises(ProofUploadError):
            await store.upload(b"second", "image/png", "key.png")
        assert store.objects["key.png"] == b"first"


class TestHTTPReceiptStore:
    """Test the hosted bucket client"""

    def _store(self, handler, api_key="secret"):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return HTTPReceiptStore("https://storage.example.com/", bucket="receipts",
                                api_key=api_key, client=client)

    @pytest.mark.asyncio
    async def test_upload_request(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen['method'] = request.method
            seen['url'] = str(request.url)
            seen['headers'] = dict(request.headers)
            seen['body'] = request.content
            return httpx.Response(200, json={"Key": "receipts/user-1/loan-1-5.png"})

        store = self._store(handler)
        url = await store.upload(b"png-bytes", "image/png", "user-1/loan-1-5.png")
        await store.close()

        assert seen['method'] == "POST"
        assert seen['url'] == "https://storage.example.com/storage/v1/object/receipts/user-1/loan-1-5.png"
        assert seen['headers']['x-upsert'] == "false"
        assert seen['headers']['authorization'] == "Bearer secret"
        assert seen['headers']['content-type'] == "image/png"
        assert seen['body'] == b"png-bytes"
        assert url == "https://storage.example.com/storage/v1/object/public/receipts/user-1/loan-1-5.png"

    @pytest.mark.asyncio
    async def test_no_auth_header_without_key(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen['headers'] = dict(request.headers)
            return httpx.Response(201)

        store = self._store(handler, api_key=None)
        await store.upload(b"x", "image/jpeg", "k.jpg")

        assert 'authorization' not in seen['headers']

    @pytest.mark.asyncio
    async def test_error_status(self):
        store = self._store(lambda request: httpx.Response(409, json={"error": "Duplicate"}))

        with pytest.raises(ProofUploadError, match="409"):
            await store.upload(b"x", "image/png", "k.png")

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        store = self._store(handler)
        with pytest.raises(ProofUploadError, match="connection refused"):
            await store.upload(b"x", "image/png", "k.png")


class TestCreateReceiptStore:
    def test_in_memory_without_base_url(self):
        assert isinstance(create_receipt_store(TrackerConfig(receipts_base_url="")), InMemoryReceiptStore)

    def test_http_with_base_url(self):
        store = create_receipt_store(TrackerConfig(
            receipts_base_url="https://storage.example.com",
            receipts_bucket="proofs",
            receipts_api_key="k",
            request_timeout_seconds=5
        ))

        assert isinstance(store, HTTPReceiptStore)
        assert store.bucket == "proofs"
        assert store.api_key == "k"
        assert store.public_url("a/b.png") == "https://storage.example.com/storage/v1/object/public/proofs/a/b.png"
