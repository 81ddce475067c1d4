"""Blob storage for encrypted envelopes.

The adapter is a pass-through: it never looks inside the bytes it stores.
Handles are opaque strings chosen by the store. Stored blobs live for a
number of storage epochs (the retention horizon); reads past that horizon
fail as not found.

Walrus HTTP API used by `WalrusHttpBlobStore`:
    PUT <publisher>/v1/blobs?epochs=N[&deletable=true]   body: raw bytes
        -> {"newlyCreated": {"blobObject": {"blobId": ...}}}
         | {"alreadyCertified": {"blobId": ...}}
    GET <aggregator>/v1/blobs/<blobId>                    -> raw bytes
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import http.client
import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Dict, Protocol

from .errors import NotFound, StorageWriteFailure

logger = logging.getLogger("seal_gateway.storage")

DEFAULT_EPOCHS = 3


class BlobStoreError(Exception):
    """Store rejected the request or could not be reached."""


class BlobNotFoundError(BlobStoreError):
    """Unknown blob id, or the blob is past its retention horizon."""


class BlobStoreClient(Protocol):
    async def write_blob(self, blob: bytes, *, deletable: bool, epochs: int) -> str:
        ...

    async def read_blob(self, blob_id: str) -> bytes:
        ...


def content_blob_id(blob: bytes) -> str:
    digest = hashlib.blake2b(blob, digest_size=32).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


@dataclass
class _StoredBlob:
    data: bytes
    end_epoch: int
    deletable: bool


class InMemoryBlobStore:
    """Content-addressed in-process store with an epoch clock."""

    def __init__(self):
        self.current_epoch = 0
        self.available = True
        self._blobs: Dict[str, _StoredBlob] = {}

    def advance_epoch(self, n: int = 1) -> int:
        self.current_epoch += int(n)
        return self.current_epoch

    async def write_blob(self, blob: bytes, *, deletable: bool = False, epochs: int = DEFAULT_EPOCHS) -> str:
        if not self.available:
            raise BlobStoreError("blob store unavailable")
        if epochs < 1:
            raise BlobStoreError(f"epochs must be positive, got {epochs}")
        blob_id = content_blob_id(blob)
        end_epoch = self.current_epoch + int(epochs)
        existing = self._blobs.get(blob_id)
        if existing is not None:
            end_epoch = max(end_epoch, existing.end_epoch)
        self._blobs[blob_id] = _StoredBlob(bytes(blob), end_epoch, bool(deletable))
        return blob_id

    async def read_blob(self, blob_id: str) -> bytes:
        if not self.available:
            raise BlobStoreError("blob store unavailable")
        stored = self._blobs.get(blob_id)
        if stored is None or self.current_epoch >= stored.end_epoch:
            raise BlobNotFoundError(f"blob {blob_id} not found")
        return stored.data


class WalrusHttpBlobStore:
    """Walrus publisher/aggregator client. Blocking I/O runs in a worker thread."""

    def __init__(self, publisher_url: str, aggregator_url: str, *, timeout_seconds: float = 30.0):
        self.publisher_url = publisher_url.rstrip("/")
        self.aggregator_url = aggregator_url.rstrip("/")
        self.timeout_seconds = float(timeout_seconds)

    def _put(self, blob: bytes, deletable: bool, epochs: int) -> str:
        query = {"epochs": str(int(epochs))}
        if deletable:
            query["deletable"] = "true"
        req = urllib.request.Request(
            f"{self.publisher_url}/v1/blobs?{urllib.parse.urlencode(query)}",
            data=bytes(blob),
            headers={"Content-Type": "application/octet-stream"},
            method="PUT",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                doc = json.loads(resp.read().decode("utf-8"))
        except urllib.error.HTTPError as e:
            raise BlobStoreError(f"publisher HTTP {e.code}") from e
        except (urllib.error.URLError, http.client.HTTPException, OSError, ValueError) as e:
            raise BlobStoreError(f"publisher request failed: {type(e).__name__}: {e}") from e

        if not isinstance(doc, dict):
            raise BlobStoreError("publisher returned non-object JSON")
        if isinstance(doc.get("newlyCreated"), dict):
            blob_id = (doc["newlyCreated"].get("blobObject") or {}).get("blobId")
        elif isinstance(doc.get("alreadyCertified"), dict):
            blob_id = doc["alreadyCertified"].get("blobId")
        else:
            blob_id = None
        if not isinstance(blob_id, str) or not blob_id:
            raise BlobStoreError("publisher response has no blobId")
        return blob_id

    def _get(self, blob_id: str) -> bytes:
        url = f"{self.aggregator_url}/v1/blobs/{urllib.parse.quote(blob_id, safe='')}"
        try:
            with urllib.request.urlopen(url, timeout=self.timeout_seconds) as resp:
                return resp.read()
        except urllib.error.HTTPError as e:
            if e.code == 404:
                raise BlobNotFoundError(f"blob {blob_id} not found") from e
            raise BlobStoreError(f"aggregator HTTP {e.code}") from e
        except (urllib.error.URLError, http.client.HTTPException, OSError) as e:
            raise BlobStoreError(f"aggregator request failed: {type(e).__name__}: {e}") from e

    async def write_blob(self, blob: bytes, *, deletable: bool = False, epochs: int = DEFAULT_EPOCHS) -> str:
        return await asyncio.to_thread(self._put, blob, deletable, epochs)

    async def read_blob(self, blob_id: str) -> bytes:
        return await asyncio.to_thread(self._get, blob_id)


class BlobStoreAdapter:
    """Stores and retrieves envelope bytes without interpreting them."""

    def __init__(self, client: BlobStoreClient, *, epochs: int = DEFAULT_EPOCHS, deletable: bool = False):
        if epochs < 1:
            raise ValueError("epochs must be >= 1")
        self.client = client
        self.epochs = int(epochs)
        self.deletable = bool(deletable)

    async def write(self, envelope_bytes: bytes) -> str:
        try:
            handle = await self.client.write_blob(envelope_bytes, deletable=self.deletable, epochs=self.epochs)
        except BlobStoreError as e:
            logger.warning("Blob write failed: %s", e)
            raise StorageWriteFailure(f"blob store write failed: {e}") from e
        logger.debug("Stored %d bytes as %s for %d epochs", len(envelope_bytes), handle, self.epochs)
        return handle

    async def read(self, handle: str) -> bytes:
        try:
            return await self.client.read_blob(handle)
        except BlobNotFoundError as e:
            raise NotFound(f"blob {handle} not found", blob_id=handle) from e
        except BlobStoreError as e:
            logger.warning("Blob read failed for %s: %s", handle, e)
            raise NotFound(f"blob {handle} could not be read", blob_id=handle) from e
