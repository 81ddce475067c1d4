import json
from http.server import BaseHTTPRequestHandler
from urllib.parse import parse_qs, urlparse

import pytest

from seal_gateway.errors import NotFound, StorageWriteFailure
from seal_gateway.storage import (
    BlobNotFoundError,
    BlobStoreAdapter,
    BlobStoreError,
    InMemoryBlobStore,
    WalrusHttpBlobStore,
    content_blob_id,
)


@pytest.mark.asyncio
async def test_in_memory_store_roundtrip_and_retention():
    store = InMemoryBlobStore()
    adapter = BlobStoreAdapter(store, epochs=3)

    handle = await adapter.write(b"envelope-bytes")
    assert handle == content_blob_id(b"envelope-bytes")
    assert await adapter.read(handle) == b"envelope-bytes"

    store.advance_epoch(2)
    assert await adapter.read(handle) == b"envelope-bytes"

    # Past the retention horizon the blob is gone.
    store.advance_epoch(1)
    with pytest.raises(NotFound):
        await adapter.read(handle)


@pytest.mark.asyncio
async def test_unknown_handle_is_not_found():
    adapter = BlobStoreAdapter(InMemoryBlobStore())
    with pytest.raises(NotFound):
        await adapter.read("does-not-exist")


@pytest.mark.asyncio
async def test_adapter_does_not_interpret_bytes():
    adapter = BlobStoreAdapter(InMemoryBlobStore())
    blob = bytes(range(256))
    assert await adapter.read(await adapter.write(blob)) == blob


@pytest.mark.asyncio
async def test_write_failure_and_read_failure_mapping():
    store = InMemoryBlobStore()
    adapter = BlobStoreAdapter(store)
    handle = await adapter.write(b"x")

    store.available = False
    with pytest.raises(StorageWriteFailure) as ei:
        await adapter.write(b"y")
    assert ei.value.retryable is True
    with pytest.raises(NotFound):
        await adapter.read(handle)


def test_adapter_rejects_non_positive_epochs():
    with pytest.raises(ValueError):
        BlobStoreAdapter(InMemoryBlobStore(), epochs=0)


class _WalrusStub(BaseHTTPRequestHandler):
    blobs = {}
    last_query = None
    reply_already_certified = False

    def do_PUT(self):  # noqa: N802
        length = int(self.headers.get("Content-Length", "0") or "0")
        body = self.rfile.read(length)
        _WalrusStub.last_query = parse_qs(urlparse(self.path).query)
        blob_id = content_blob_id(body)
        _WalrusStub.blobs[blob_id] = body
        if _WalrusStub.reply_already_certified:
            doc = {"alreadyCertified": {"blobId": blob_id, "endEpoch": 10}}
        else:
            doc = {"newlyCreated": {"blobObject": {"blobId": blob_id, "size": len(body)}}}
        out = json.dumps(doc).encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(out)))
        self.end_headers()
        self.wfile.write(out)

    def do_GET(self):  # noqa: N802
        blob_id = self.path.rsplit("/", 1)[-1]
        body = _WalrusStub.blobs.get(blob_id)
        if body is None:
            self.send_response(404)
            self.end_headers()
            return
        self.send_response(200)
        self.send_header("Content-Type", "application/octet-stream")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):  # noqa: A003
        return


@pytest.mark.asyncio
async def test_walrus_http_store(http_stub):
    url = http_stub(_WalrusStub)
    adapter = BlobStoreAdapter(WalrusHttpBlobStore(url, url, timeout_seconds=2), epochs=3, deletable=False)

    handle = await adapter.write(b"sealed")
    assert _WalrusStub.last_query == {"epochs": ["3"]}
    assert await adapter.read(handle) == b"sealed"

    with pytest.raises(NotFound):
        await adapter.read("missing")


@pytest.mark.asyncio
async def test_walrus_deletable_and_already_certified(http_stub):
    url = http_stub(_WalrusStub)
    store = WalrusHttpBlobStore(url, url, timeout_seconds=2)

    _WalrusStub.reply_already_certified = True
    try:
        blob_id = await store.write_blob(b"again", deletable=True, epochs=5)
    finally:
        _WalrusStub.reply_already_certified = False
    assert blob_id == content_blob_id(b"again")
    assert _WalrusStub.last_query == {"epochs": ["5"], "deletable": ["true"]}


@pytest.mark.asyncio
async def test_walrus_unreachable():
    store = WalrusHttpBlobStore("http://127.0.0.1:9", "http://127.0.0.1:9", timeout_seconds=1)
    with pytest.raises(BlobStoreError):
        await store.write_blob(b"x", deletable=False, epochs=1)
    with pytest.raises(BlobStoreError) as ei:
        await store.read_blob("abc")
    assert not isinstance(ei.value, BlobNotFoundError)


@pytest.mark.asyncio
async def test_walrus_malformed_http_maps_to_gateway_errors(garbage_http_server):
    adapter = BlobStoreAdapter(WalrusHttpBlobStore(garbage_http_server, garbage_http_server, timeout_seconds=2))
    with pytest.raises(StorageWriteFailure):
        await adapter.write(b"sealed")
    with pytest.raises(NotFound):
        await adapter.read("abc")
