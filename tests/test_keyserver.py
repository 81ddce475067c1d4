from __future__ import annotations

import dataclasses
import json
from datetime import timedelta
from http.server import BaseHTTPRequestHandler
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from seal_gateway.crypto import Ed25519KeyPair, X25519KeyPair, _now_utc
from seal_gateway.errors import (
    KeyServerError,
    SEAL_E_KS_DENIED,
    SEAL_E_KS_EXPIRED,
    SEAL_E_KS_INVALID_CREDENTIAL,
    SEAL_E_KS_INVALID_PROOF,
    SEAL_E_KS_UNAVAILABLE,
)
from seal_gateway.keyserver import (
    HttpKeyServerClient,
    KeyRequest,
    LocalKeyServer,
    create_key_server_app,
    unwrap_key_response,
)
from seal_gateway.ledger import InMemoryLedger
from seal_gateway.policy import PolicyCapabilityBuilder
from seal_gateway.session import SessionCredentialManager, key_request_payload
from seal_gateway.signing import FileEd25519Signer
from seal_gateway.threshold import ThresholdCipher, derive_wrapping_key
from seal_gateway.transactions import TransactionKind


@pytest.fixture
def world():
    ledger = InMemoryLedger()
    package_id = ledger.publish_package()
    signer = FileEd25519Signer(Ed25519KeyPair.generate("gw"))
    allowlist = ledger.create_allowlist(package_id, members=[signer.address])
    server = LocalKeyServer("0x" + "51" * 32, ledger)
    return SimpleNamespace(ledger=ledger, package_id=package_id, signer=signer, allowlist=allowlist, server=server)


async def _request(world, *, object_id=None, tx_kind=None, ttl=10):
    ns = world.allowlist.object_id
    object_id = object_id or ns[2:] + "0102030405"
    env = ThresholdCipher().encrypt(
        package_id=world.package_id,
        object_id=object_id,
        threshold=1,
        plaintext=b"hello",
        server_public_keys=[(world.server.object_id, world.server.public_key)],
    )
    cred = await SessionCredentialManager(world.signer, world.ledger, world.package_id).issue(
        world.signer.address, ns, ttl
    )
    if tx_kind is None:
        tx_kind = (await PolicyCapabilityBuilder(world.ledger, world.package_id).build(object_id, ns)).tx_kind
    response_key = X25519KeyPair.generate()
    payload = key_request_payload(
        object_id=env.id,
        tx_kind=tx_kind,
        ephemeral_public_key=env.ephemeral_public_key,
        response_public_key=response_key.public_key_bytes,
    )
    request = KeyRequest(
        object_id=env.id,
        ephemeral_public_key=env.ephemeral_public_key,
        tx_kind=tx_kind,
        certificate=cred.to_certificate(),
        request_signature=cred.sign_request(payload),
        response_public_key=response_key.public_key_bytes,
    )
    return env, request, response_key


@pytest.mark.asyncio
async def test_approved_request_releases_wrapping_key(world):
    env, request, response_key = await _request(world)

    response = await world.server.fetch_key(request)
    key = unwrap_key_response(
        response,
        response_key=response_key,
        server_public_key=world.server.public_key,
        object_id=env.id,
    )
    assert key == derive_wrapping_key(world.server.key, env.ephemeral_public_key, world.package_id, env.id, world.server.object_id)
    assert ThresholdCipher().decrypt(env, {world.server.object_id: key}) == b"hello"


@pytest.mark.asyncio
async def test_response_only_opens_for_requester(world):
    env, request, _ = await _request(world)
    response = await world.server.fetch_key(request)
    with pytest.raises(ValueError):
        unwrap_key_response(
            response,
            response_key=X25519KeyPair.generate(),
            server_public_key=world.server.public_key,
            object_id=env.id,
        )


@pytest.mark.asyncio
async def test_non_member_is_denied(world):
    env, request, _ = await _request(world)
    world.ledger.remove_member(world.allowlist.object_id, world.signer.address)

    with pytest.raises(KeyServerError) as ei:
        await world.server.fetch_key(request)
    assert ei.value.code == SEAL_E_KS_DENIED


@pytest.mark.asyncio
async def test_identifier_outside_namespace_is_denied(world):
    # The proof is well formed but the id does not carry the allowlist prefix.
    env, request, _ = await _request(world, object_id="ab" * 37)
    with pytest.raises(KeyServerError) as ei:
        await world.server.fetch_key(request)
    assert ei.value.code == SEAL_E_KS_DENIED


@pytest.mark.asyncio
async def test_expired_credential_rejected_by_server_clock(world):
    env, request, _ = await _request(world, ttl=1)
    world.server.clock = lambda: _now_utc() + timedelta(minutes=2)

    with pytest.raises(KeyServerError) as ei:
        await world.server.fetch_key(request)
    assert ei.value.code == SEAL_E_KS_EXPIRED
    # Expiry is decided before the policy is consulted.
    assert world.ledger.simulations == 0


@pytest.mark.asyncio
async def test_fresh_credential_accepted_after_expired_one(world):
    _, old_request, _ = await _request(world, ttl=1)
    world.server.clock = lambda: _now_utc() + timedelta(minutes=2)
    with pytest.raises(KeyServerError):
        await world.server.fetch_key(old_request)

    world.server.clock = _now_utc
    _, fresh_request, _ = await _request(world, ttl=1)
    await world.server.fetch_key(fresh_request)


@pytest.mark.asyncio
async def test_tampered_request_signature_rejected(world):
    _, request, _ = await _request(world)
    forged = dataclasses.replace(request, response_public_key=X25519KeyPair.generate().public_key_bytes)
    with pytest.raises(KeyServerError) as ei:
        await world.server.fetch_key(forged)
    assert ei.value.code == SEAL_E_KS_INVALID_CREDENTIAL


@pytest.mark.asyncio
async def test_forged_certificate_rejected(world):
    _, request, _ = await _request(world)
    cert = dict(request.certificate, ttl_minutes=30)
    with pytest.raises(KeyServerError) as ei:
        await world.server.fetch_key(dataclasses.replace(request, certificate=cert))
    assert ei.value.code == SEAL_E_KS_INVALID_CREDENTIAL


@pytest.mark.asyncio
async def test_proof_for_other_function_is_invalid(world):
    ns = world.allowlist.object_id
    object_id = ns[2:] + "0102030405"
    tx = TransactionKind()
    a = tx.pure_bytes(bytes.fromhex(object_id))
    b = tx.object(ns, world.allowlist.version, world.allowlist.digest)
    tx.move_call(f"{world.package_id}::allowlist::add", [a, b])

    _, request, _ = await _request(world, object_id=object_id, tx_kind=tx.build())
    with pytest.raises(KeyServerError) as ei:
        await world.server.fetch_key(request)
    assert ei.value.code == SEAL_E_KS_INVALID_PROOF


@pytest.mark.asyncio
async def test_proof_for_other_identifier_is_invalid(world):
    ns = world.allowlist.object_id
    other_proof = await PolicyCapabilityBuilder(world.ledger, world.package_id).build(ns[2:] + "ffffffffff", ns)
    _, request, _ = await _request(world, tx_kind=other_proof.tx_kind)
    with pytest.raises(KeyServerError) as ei:
        await world.server.fetch_key(request)
    assert ei.value.code == SEAL_E_KS_INVALID_PROOF


@pytest.mark.asyncio
async def test_unavailable_server_and_ledger(world):
    _, request, _ = await _request(world)

    world.ledger.available = False
    with pytest.raises(KeyServerError) as ei:
        await world.server.fetch_key(request)
    assert ei.value.code == SEAL_E_KS_UNAVAILABLE

    world.ledger.available = True
    world.server.available = False
    with pytest.raises(KeyServerError) as ei:
        await world.server.fetch_key(request)
    assert ei.value.code == SEAL_E_KS_UNAVAILABLE


@pytest.mark.asyncio
async def test_key_server_app_serves_service_and_fetch(world):
    env, request, response_key = await _request(world)
    client = TestClient(create_key_server_app(world.server))

    info = client.get("/v1/service").json()
    assert info == {"object_id": world.server.object_id, "public_key": world.server.public_key.hex()}

    r = client.post("/v1/fetch_key", json=request.to_dict())
    assert r.status_code == 200
    assert r.json()["object_id"] == world.server.object_id

    world.ledger.remove_member(world.allowlist.object_id, world.signer.address)
    r = client.post("/v1/fetch_key", json=request.to_dict())
    assert r.status_code == 403
    assert r.json()["code"] == SEAL_E_KS_DENIED

    r = client.post("/v1/fetch_key", json=dict(request.to_dict(), tx_kind="@@@"))
    assert r.status_code == 400


class _KeyServerStub(BaseHTTPRequestHandler):
    public_key_hex = "00" * 32
    object_id = "0x" + "61" * 32
    fetch_status = 403
    fetch_body = {"code": SEAL_E_KS_DENIED, "message": "policy denied access"}

    def _send(self, status, doc):
        body = json.dumps(doc).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def do_GET(self):  # noqa: N802
        self._send(200, {"object_id": self.object_id, "public_key": self.public_key_hex})

    def do_POST(self):  # noqa: N802
        length = int(self.headers.get("Content-Length", "0") or "0")
        self.rfile.read(length)
        self._send(_KeyServerStub.fetch_status, _KeyServerStub.fetch_body)

    def log_message(self, format, *args):  # noqa: A003
        return


@pytest.mark.asyncio
async def test_http_client_maps_remote_errors(http_stub, world):
    url = http_stub(_KeyServerStub)
    _, request, _ = await _request(world)
    client = HttpKeyServerClient(_KeyServerStub.object_id, url, timeout_seconds=2)

    info = await client.service_info()
    assert info.public_key == b"\x00" * 32

    _KeyServerStub.fetch_status, _KeyServerStub.fetch_body = 403, {"code": SEAL_E_KS_DENIED, "message": "no"}
    with pytest.raises(KeyServerError) as ei:
        await client.fetch_key(request)
    assert ei.value.code == SEAL_E_KS_DENIED

    _KeyServerStub.fetch_status, _KeyServerStub.fetch_body = 502, ["gateway"]
    with pytest.raises(KeyServerError) as ei:
        await client.fetch_key(request)
    assert ei.value.code == SEAL_E_KS_UNAVAILABLE

    _KeyServerStub.fetch_status, _KeyServerStub.fetch_body = 200, {"object_id": "0x1"}
    with pytest.raises(KeyServerError) as ei:
        await client.fetch_key(request)
    assert ei.value.code == SEAL_E_KS_UNAVAILABLE


@pytest.mark.asyncio
async def test_http_client_unreachable_server_is_unavailable(world):
    _, request, _ = await _request(world)
    client = HttpKeyServerClient("0x" + "62" * 32, "http://127.0.0.1:9", timeout_seconds=1)
    with pytest.raises(KeyServerError) as ei:
        await client.fetch_key(request)
    assert ei.value.code == SEAL_E_KS_UNAVAILABLE


@pytest.mark.asyncio
async def test_http_client_rejects_service_with_other_object_id(http_stub):
    url = http_stub(_KeyServerStub)
    client = HttpKeyServerClient("0x" + "63" * 32, url, timeout_seconds=2)
    with pytest.raises(KeyServerError):
        await client.service_info()


@pytest.mark.asyncio
async def test_http_client_malformed_http_is_unavailable(world, garbage_http_server):
    _, request, _ = await _request(world)
    client = HttpKeyServerClient("0x" + "64" * 32, garbage_http_server, timeout_seconds=2)
    with pytest.raises(KeyServerError) as ei:
        await client.fetch_key(request)
    assert ei.value.code == SEAL_E_KS_UNAVAILABLE
    with pytest.raises(KeyServerError):
        await client.service_info()
