"""seal_gateway.ledger

Ledger client interface.

The gateway needs two things from the ledger:

* `get_object(object_id)` - resolve an object reference (id, version,
  digest, type); used to confirm the policy package exists before issuing a
  session credential and to reference the allowlist in a capability proof.
* `simulate(tx_kind, sender)` - dry-run a transaction kind as `sender`
  without committing state; used by key servers to evaluate a proof.

Two implementations are provided:

* `InMemoryLedger` - holds packages and allowlists in process and evaluates
  `allowlist::seal_approve` itself (tests, local development).
* `HttpLedgerClient` - JSON over HTTP to a ledger gateway service.

Request bodies for the HTTP client:
    POST <url>/v1/objects/get  {"objectId": "0x..."}
    POST <url>/v1/simulate     {"network": "...", "sender": "0x...", "txKind": "<base64>"}

Every failure is a `LedgerError`; callers decide what it means.
"""

from __future__ import annotations

import asyncio
import http.client
import json
import secrets
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol, Set

from .crypto import _sha256_hex, b64e, from_hex, to_object_id
from .transactions import ObjectInput, PureInput, parse_transaction_kind

NETWORKS = ("testnet", "mainnet", "devnet", "localnet")

# Move abort codes of the allowlist module
E_NO_ACCESS = 1
E_INVALID_CALL = 2


class LedgerError(Exception):
    """Generic ledger transport / lookup failure."""


@dataclass(frozen=True)
class ObjectRef:
    object_id: str
    version: int
    digest: str
    type: str = ""


@dataclass(frozen=True)
class SimulationResult:
    approved: bool
    error: Optional[str] = None


class LedgerClient(Protocol):
    network: str

    async def get_object(self, object_id: str) -> ObjectRef:
        ...

    async def simulate(self, tx_kind: bytes, sender: str) -> SimulationResult:
        ...


@dataclass
class _Allowlist:
    ref: ObjectRef
    package_id: str
    members: Set[str] = field(default_factory=set)


class InMemoryLedger:
    """In-process ledger with allowlist policy semantics.

    `seal_approve(id, allowlist)` approves when the id starts with the
    allowlist object's bytes and the simulating sender is a member.
    """

    def __init__(self, network: str = "localnet"):
        self.network = network
        self.available = True
        self._objects: Dict[str, ObjectRef] = {}
        self._allowlists: Dict[str, _Allowlist] = {}
        self._packages: Set[str] = set()
        self.simulations = 0

    def _new_ref(self, object_id: Optional[str], type_: str) -> ObjectRef:
        oid = to_object_id(object_id or secrets.token_hex(32))
        ref = ObjectRef(object_id=oid, version=1, digest=_sha256_hex(oid.encode("ascii"))[:44], type=type_)
        self._objects[oid] = ref
        return ref

    def publish_package(self, package_id: Optional[str] = None) -> str:
        ref = self._new_ref(package_id, "package")
        self._packages.add(ref.object_id)
        return ref.object_id

    def create_allowlist(self, package_id: str, allowlist_id: Optional[str] = None, members=()) -> ObjectRef:
        pkg = to_object_id(package_id)
        if pkg not in self._packages:
            raise LedgerError(f"package {pkg} not published")
        ref = self._new_ref(allowlist_id, f"{pkg}::allowlist::Allowlist")
        self._allowlists[ref.object_id] = _Allowlist(ref=ref, package_id=pkg, members={m.lower() for m in members})
        return ref

    def add_member(self, allowlist_id: str, address: str) -> None:
        self._allowlists[to_object_id(allowlist_id)].members.add(address.lower())

    def remove_member(self, allowlist_id: str, address: str) -> None:
        self._allowlists[to_object_id(allowlist_id)].members.discard(address.lower())

    def _check_available(self) -> None:
        if not self.available:
            raise LedgerError("ledger unavailable")

    async def get_object(self, object_id: str) -> ObjectRef:
        self._check_available()
        try:
            oid = to_object_id(object_id)
        except ValueError as e:
            raise LedgerError(str(e)) from e
        ref = self._objects.get(oid)
        if ref is None:
            raise LedgerError(f"object {oid} not found")
        return ref

    async def simulate(self, tx_kind: bytes, sender: str) -> SimulationResult:
        self._check_available()
        self.simulations += 1
        try:
            tx = parse_transaction_kind(tx_kind)
        except ValueError as e:
            return SimulationResult(False, f"invalid transaction: {e}")

        for call in tx.commands:
            if call.package not in self._packages:
                return SimulationResult(False, f"package {call.package} not found")
            if (call.module, call.function) != ("allowlist", "seal_approve") or len(call.arguments) != 2:
                return SimulationResult(False, f"MoveAbort({E_INVALID_CALL})")
            id_input = tx.inputs[call.arguments[0]]
            list_input = tx.inputs[call.arguments[1]]
            if not isinstance(id_input, PureInput) or not isinstance(list_input, ObjectInput):
                return SimulationResult(False, f"MoveAbort({E_INVALID_CALL})")
            allowlist = self._allowlists.get(list_input.object_id)
            if allowlist is None or allowlist.package_id != call.package:
                return SimulationResult(False, f"object {list_input.object_id} is not an allowlist")
            if not id_input.value.startswith(from_hex(allowlist.ref.object_id)):
                return SimulationResult(False, f"MoveAbort({E_NO_ACCESS})")
            if sender.lower() not in allowlist.members:
                return SimulationResult(False, f"MoveAbort({E_NO_ACCESS})")
        return SimulationResult(True)


class HttpLedgerClient:
    """JSON/HTTP ledger gateway client. Blocking I/O runs in a worker thread."""

    def __init__(self, url: str, *, network: str = "testnet", timeout_seconds: float = 10.0):
        self.url = url.rstrip("/")
        self.network = network
        self.timeout_seconds = float(timeout_seconds)

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        req = urllib.request.Request(
            f"{self.url}{path}",
            data=body,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                decoded = json.loads(resp.read().decode("utf-8"))
        except urllib.error.HTTPError as e:
            raise LedgerError(f"ledger HTTP {e.code} on {path}") from e
        except (urllib.error.URLError, http.client.HTTPException, OSError, ValueError) as e:
            raise LedgerError(f"ledger request failed: {type(e).__name__}: {e}") from e
        if not isinstance(decoded, dict):
            raise LedgerError(f"ledger returned non-object JSON on {path}")
        return decoded

    async def get_object(self, object_id: str) -> ObjectRef:
        out = await asyncio.to_thread(self._post, "/v1/objects/get", {"objectId": object_id})
        try:
            return ObjectRef(
                object_id=to_object_id(out["objectId"]),
                version=int(out["version"]),
                digest=str(out["digest"]),
                type=str(out.get("type", "")),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise LedgerError(f"invalid object response: {e}") from e

    async def simulate(self, tx_kind: bytes, sender: str) -> SimulationResult:
        out = await asyncio.to_thread(
            self._post,
            "/v1/simulate",
            {"network": self.network, "sender": sender, "txKind": b64e(tx_kind)},
        )
        approved = out.get("approved")
        if not isinstance(approved, bool):
            raise LedgerError("simulation response missing boolean 'approved'")
        error = out.get("error")
        return SimulationResult(approved=approved, error=str(error) if error else None)
