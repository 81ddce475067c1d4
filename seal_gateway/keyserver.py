"""Key servers.

Each key server holds one X25519 private key. For a request it:

1. verifies the session certificate (signer signature, address binding)
2. checks the validity window against its own clock
3. verifies the session key's signature over the request
4. checks that the proof only calls `seal_approve*` in the credential's
   package with the requested identifier as first argument
5. simulates the proof on the ledger as the credential's address
6. only if approved, derives its wrapping key for the identifier and
   returns it sealed to the requester's response key

Any failed step withholds the share with a `KeyServerError`. The gateway
counts every such error as non-approval.

`LocalKeyServer` runs in process; `create_key_server_app` serves one over
HTTP and `HttpKeyServerClient` talks to a remote one. Both clients expose
`object_id`, `service_info()` and `fetch_key()`.
"""

from __future__ import annotations

import asyncio
import binascii
import http.client
import json
import logging
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Protocol

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .crypto import (
    X25519KeyPair,
    _now_utc,
    _safe_hash_encode,
    aead_open,
    aead_seal,
    b64d,
    b64e,
    from_hex,
    hkdf_sha256,
    normalize_hex,
    to_object_id,
    verify_ed25519,
)
from .errors import (
    KeyServerError,
    SEAL_E_KS_DENIED,
    SEAL_E_KS_EXPIRED,
    SEAL_E_KS_INVALID_CREDENTIAL,
    SEAL_E_KS_INVALID_PROOF,
    SEAL_E_KS_UNAVAILABLE,
    key_server_error,
)
from .ledger import LedgerClient, LedgerError
from .session import SessionCredential, key_request_payload
from .threshold import derive_wrapping_key
from .transactions import PureInput, parse_transaction_kind

logger = logging.getLogger("seal_gateway.keyserver")

RESPONSE_DOMAIN = "seal-gateway/key-response/v1"
APPROVE_PREFIX = "seal_approve"


@dataclass(frozen=True)
class KeyServerInfo:
    object_id: str
    public_key: bytes


@dataclass(frozen=True)
class KeyRequest:
    object_id: str
    ephemeral_public_key: bytes
    tx_kind: bytes
    certificate: Dict[str, Any]
    request_signature: bytes
    response_public_key: bytes

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.object_id,
            "ephemeral_public_key": b64e(self.ephemeral_public_key),
            "tx_kind": b64e(self.tx_kind),
            "certificate": self.certificate,
            "request_signature": b64e(self.request_signature),
            "response_public_key": b64e(self.response_public_key),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KeyRequest":
        try:
            certificate = data["certificate"]
            if not isinstance(certificate, dict):
                raise ValueError("certificate must be an object")
            return cls(
                object_id=normalize_hex(data["id"]),
                ephemeral_public_key=b64d(data["ephemeral_public_key"]),
                tx_kind=b64d(data["tx_kind"]),
                certificate=certificate,
                request_signature=b64d(data["request_signature"]),
                response_public_key=b64d(data["response_public_key"]),
            )
        except (KeyError, TypeError, binascii.Error) as e:
            raise ValueError(f"malformed key request: {e}") from e


@dataclass(frozen=True)
class KeyResponse:
    object_id: str
    nonce: bytes
    wrapped_key: bytes

    def to_dict(self) -> Dict[str, Any]:
        return {"object_id": self.object_id, "nonce": b64e(self.nonce), "wrapped_key": b64e(self.wrapped_key)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KeyResponse":
        try:
            return cls(
                object_id=to_object_id(data["object_id"]),
                nonce=b64d(data["nonce"]),
                wrapped_key=b64d(data["wrapped_key"]),
            )
        except (KeyError, TypeError, binascii.Error) as e:
            raise ValueError(f"malformed key response: {e}") from e


class KeyServerClient(Protocol):
    object_id: str

    async def service_info(self) -> KeyServerInfo:
        ...

    async def fetch_key(self, request: KeyRequest) -> KeyResponse:
        ...


def _response_info(server_object_id: str, object_id: str) -> bytes:
    return _safe_hash_encode([RESPONSE_DOMAIN, server_object_id, object_id])


def unwrap_key_response(
    response: KeyResponse,
    *,
    response_key: X25519KeyPair,
    server_public_key: bytes,
    object_id: str,
) -> bytes:
    """Requester side: recover the wrapping key a server released."""
    secret = response_key.exchange(server_public_key)
    key = hkdf_sha256(secret, _response_info(response.object_id, object_id))
    return aead_open(key, response.nonce, response.wrapped_key, from_hex(object_id))


def check_proof(tx_kind: bytes, package_id: str, object_id: str) -> None:
    """Raise ValueError unless the proof only approves `object_id` in `package_id`."""
    tx = parse_transaction_kind(tx_kind)
    id_bytes = from_hex(object_id)
    for call in tx.commands:
        if call.package != package_id:
            raise ValueError(f"call targets package {call.package}, credential is for {package_id}")
        if not call.function.startswith(APPROVE_PREFIX):
            raise ValueError(f"function {call.function} is not an approval entry point")
        if not call.arguments:
            raise ValueError("approval call has no identifier argument")
        first = tx.inputs[call.arguments[0]]
        if not isinstance(first, PureInput) or first.value != id_bytes:
            raise ValueError("approval call does not reference the requested identifier")


class LocalKeyServer:
    """Reference key server holding one X25519 master key."""

    def __init__(
        self,
        object_id: str,
        ledger: LedgerClient,
        key: Optional[X25519KeyPair] = None,
        *,
        clock: Callable[[], datetime] = _now_utc,
    ):
        self.object_id = to_object_id(object_id)
        self.ledger = ledger
        self.key = key or X25519KeyPair.generate()
        self.clock = clock
        self.available = True
        self.requests = 0

    @property
    def public_key(self) -> bytes:
        return self.key.public_key_bytes

    async def service_info(self) -> KeyServerInfo:
        if not self.available:
            raise key_server_error(SEAL_E_KS_UNAVAILABLE, "key server unavailable", http_status=503)
        return KeyServerInfo(object_id=self.object_id, public_key=self.public_key)

    async def fetch_key(self, request: KeyRequest) -> KeyResponse:
        self.requests += 1
        if not self.available:
            raise key_server_error(SEAL_E_KS_UNAVAILABLE, "key server unavailable", http_status=503)

        try:
            credential = SessionCredential.from_certificate(request.certificate)
        except ValueError as e:
            raise key_server_error(SEAL_E_KS_INVALID_CREDENTIAL, str(e), http_status=400) from e
        if not credential.verify():
            raise key_server_error(SEAL_E_KS_INVALID_CREDENTIAL, "session certificate signature invalid")

        if credential.is_expired(self.clock()):
            raise key_server_error(SEAL_E_KS_EXPIRED, "session credential expired")

        payload = key_request_payload(
            object_id=request.object_id,
            tx_kind=request.tx_kind,
            ephemeral_public_key=request.ephemeral_public_key,
            response_public_key=request.response_public_key,
        )
        if not verify_ed25519(credential.session_public_key, payload, request.request_signature):
            raise key_server_error(SEAL_E_KS_INVALID_CREDENTIAL, "request signature invalid")

        try:
            check_proof(request.tx_kind, credential.package_id, request.object_id)
        except ValueError as e:
            raise key_server_error(SEAL_E_KS_INVALID_PROOF, str(e), http_status=400) from e

        try:
            result = await self.ledger.simulate(request.tx_kind, credential.address)
        except LedgerError as e:
            raise key_server_error(SEAL_E_KS_UNAVAILABLE, f"policy simulation failed: {e}", http_status=503) from e
        if not result.approved:
            raise key_server_error(SEAL_E_KS_DENIED, "policy denied access", reason=result.error or "")

        try:
            wrapping_key = derive_wrapping_key(
                self.key, request.ephemeral_public_key, credential.package_id, request.object_id, self.object_id
            )
            response_secret = self.key.exchange(request.response_public_key)
        except ValueError as e:
            raise key_server_error(SEAL_E_KS_INVALID_CREDENTIAL, f"bad public key: {e}", http_status=400) from e
        key = hkdf_sha256(response_secret, _response_info(self.object_id, request.object_id))
        nonce, wrapped = aead_seal(key, wrapping_key, from_hex(request.object_id))
        return KeyResponse(object_id=self.object_id, nonce=nonce, wrapped_key=wrapped)


class HttpKeyServerClient:
    """Client for a key server served by `create_key_server_app`."""

    def __init__(self, object_id: str, url: str, *, timeout_seconds: float = 10.0):
        self.object_id = to_object_id(object_id)
        self.url = url.rstrip("/")
        self.timeout_seconds = float(timeout_seconds)

    def _call(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        data = json.dumps(payload, separators=(",", ":")).encode("utf-8") if payload is not None else None
        req = urllib.request.Request(
            f"{self.url}{path}",
            data=data,
            headers={"Content-Type": "application/json"},
            method=method,
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                decoded = json.loads(resp.read().decode("utf-8"))
        except urllib.error.HTTPError as e:
            raw = e.read().decode("utf-8", errors="replace")
            try:
                detail = json.loads(raw)
            except ValueError:
                detail = {}
            if isinstance(detail, dict) and "code" in detail:
                raise KeyServerError(str(detail["code"]), str(detail.get("message", "")), http_status=int(e.code)) from e
            raise key_server_error(SEAL_E_KS_UNAVAILABLE, f"HTTP {e.code}", http_status=int(e.code)) from e
        except (urllib.error.URLError, http.client.HTTPException, OSError, ValueError) as e:
            raise key_server_error(SEAL_E_KS_UNAVAILABLE, f"{type(e).__name__}: {e}", http_status=503) from e
        if not isinstance(decoded, dict):
            raise key_server_error(SEAL_E_KS_UNAVAILABLE, "key server returned non-object JSON", http_status=502)
        return decoded

    async def service_info(self) -> KeyServerInfo:
        out = await asyncio.to_thread(self._call, "GET", "/v1/service")
        try:
            info = KeyServerInfo(object_id=to_object_id(out["object_id"]), public_key=from_hex(out["public_key"]))
        except (KeyError, TypeError, ValueError) as e:
            raise key_server_error(SEAL_E_KS_UNAVAILABLE, f"invalid service info: {e}", http_status=502) from e
        if info.object_id != self.object_id:
            raise key_server_error(SEAL_E_KS_UNAVAILABLE, "key server reports a different object id", http_status=502)
        return info

    async def fetch_key(self, request: KeyRequest) -> KeyResponse:
        out = await asyncio.to_thread(self._call, "POST", "/v1/fetch_key", request.to_dict())
        try:
            return KeyResponse.from_dict(out)
        except ValueError as e:
            raise key_server_error(SEAL_E_KS_UNAVAILABLE, str(e), http_status=502) from e


class FetchKeyBody(BaseModel):
    id: str
    ephemeral_public_key: str
    tx_kind: str
    certificate: Dict[str, Any]
    request_signature: str
    response_public_key: str


def create_key_server_app(server: LocalKeyServer) -> FastAPI:
    """Serve a LocalKeyServer over HTTP."""
    app = FastAPI(title="Seal Key Server", description=f"Key server {server.object_id}")

    @app.exception_handler(KeyServerError)
    async def _ks_error_handler(request: Request, exc: KeyServerError):
        return JSONResponse(status_code=int(exc.http_status or 403), content={"code": exc.code, "message": exc.message})

    @app.get("/v1/service")
    async def service():
        info = await server.service_info()
        return {"object_id": info.object_id, "public_key": info.public_key.hex()}

    @app.post("/v1/fetch_key")
    async def fetch_key(body: FetchKeyBody):
        try:
            request = KeyRequest.from_dict(body.model_dump())
        except ValueError as e:
            raise key_server_error(SEAL_E_KS_INVALID_CREDENTIAL, str(e), http_status=400) from e
        response = await server.fetch_key(request)
        logger.info("Released key share for %s", request.object_id)
        return response.to_dict()

    return app
