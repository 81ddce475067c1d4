"""Key-server quorum.

Holds the configured key servers and their X25519 public keys, encrypts to
all of them through the threshold primitive, and collects wrapping keys for
a download.

A server may carry a weight w, in which case it holds w of the shares and
the threshold counts shares rather than servers.

Key fetches run concurrently. The only deadline is the credential's expiry:
once servers holding `threshold` shares have answered the remaining requests
are cancelled, and once enough servers have refused that `threshold` is out
of reach the fetch stops early. Nothing is retried.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from datetime import datetime
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from . import metrics
from .crypto import X25519KeyPair, _now_utc, to_object_id
from .envelope import EncryptedEnvelope
from .errors import (
    EncryptionFailure,
    InsufficientKeyShares,
    KeyServerError,
    SEAL_E_KS_DENIED,
    SEAL_E_KS_EXPIRED,
    SEAL_E_KS_INVALID_CREDENTIAL,
    SEAL_E_KS_INVALID_PROOF,
    SEAL_E_KS_UNAVAILABLE,
    key_server_error,
)
from .keyserver import KeyRequest, KeyServerClient, unwrap_key_response
from .policy import CapabilityProof
from .session import SessionCredential, key_request_payload
from .threshold import ThresholdCipher

logger = logging.getLogger("seal_gateway.quorum")

OUTCOME_APPROVED = "approved"
OUTCOME_TIMEOUT = "timeout"
OUTCOME_UNAVAILABLE = "unavailable"

_OUTCOMES = {
    SEAL_E_KS_DENIED: "denied",
    SEAL_E_KS_EXPIRED: "expired",
    SEAL_E_KS_INVALID_PROOF: "invalid_proof",
    SEAL_E_KS_INVALID_CREDENTIAL: "invalid_credential",
    SEAL_E_KS_UNAVAILABLE: OUTCOME_UNAVAILABLE,
}


def classify_key_server_error(err: KeyServerError) -> str:
    return _OUTCOMES.get(err.code, OUTCOME_UNAVAILABLE)


class KeyServerQuorum:
    """The configured key servers, addressed by object id."""

    def __init__(
        self,
        servers: Sequence[KeyServerClient],
        public_keys: Optional[Dict[str, bytes]] = None,
        *,
        weights: Optional[Mapping[str, int]] = None,
        verify_key_servers: bool = False,
        cipher: Optional[ThresholdCipher] = None,
        clock: Callable[[], datetime] = _now_utc,
    ):
        self.servers: Dict[str, KeyServerClient] = {}
        for server in servers:
            if server.object_id in self.servers:
                raise ValueError(f"duplicate key server {server.object_id}")
            self.servers[server.object_id] = server
        self.public_keys: Dict[str, bytes] = {to_object_id(k): bytes(v) for k, v in (public_keys or {}).items()}
        self.weights: Dict[str, int] = {}
        for oid, weight in (weights or {}).items():
            oid = to_object_id(oid)
            if oid not in self.servers:
                raise ValueError(f"weight given for unknown key server {oid}")
            if isinstance(weight, bool) or not isinstance(weight, int) or weight < 1:
                raise ValueError(f"weight of {oid} must be a positive integer, got {weight!r}")
            self.weights[oid] = weight
        self.verify_key_servers = bool(verify_key_servers)
        self.cipher = cipher or ThresholdCipher()
        self.clock = clock
        self._verified = False

    def __len__(self) -> int:
        return len(self.servers)

    def weight_of(self, object_id: str) -> int:
        return self.weights.get(object_id, 1)

    @property
    def total_weight(self) -> int:
        return sum(self.weight_of(oid) for oid in self.servers)

    async def _load_key(self, server: KeyServerClient) -> Tuple[str, bytes]:
        info = await server.service_info()
        configured = self.public_keys.get(server.object_id)
        if configured is not None and configured != info.public_key:
            raise key_server_error(
                SEAL_E_KS_UNAVAILABLE,
                "key server public key does not match configuration",
                http_status=502,
                key_server=server.object_id,
            )
        return server.object_id, info.public_key

    async def ensure_public_keys(self) -> Dict[str, bytes]:
        """Fetch missing public keys (and re-check configured ones when verifying).

        Raises KeyServerError if a server cannot be reached or reports a
        different key than configured.
        """
        if self.verify_key_servers and not self._verified:
            targets = list(self.servers.values())
        else:
            targets = [s for oid, s in self.servers.items() if oid not in self.public_keys]
        if targets:
            for oid, pk in await asyncio.gather(*(self._load_key(s) for s in targets)):
                self.public_keys[oid] = pk
        self._verified = True
        return dict(self.public_keys)

    async def encrypt(self, *, package_id: str, object_id: str, threshold: int, plaintext: bytes) -> EncryptedEnvelope:
        """Encrypt to every configured key server.

        Raises EncryptionFailure if the threshold exceeds the total weight of
        the configured servers, a public key is unavailable, or the primitive
        rejects the request.
        """
        n = self.total_weight
        if not isinstance(threshold, int) or threshold < 1 or threshold > n:
            raise EncryptionFailure(
                f"threshold {threshold} is not satisfiable with {n} key shares",
                threshold=threshold,
                key_servers=len(self.servers),
                total_weight=n,
            )
        try:
            keys = await self.ensure_public_keys()
        except KeyServerError as e:
            raise EncryptionFailure(f"key server public keys unavailable: {e.message}") from e
        try:
            return self.cipher.encrypt(
                package_id=to_object_id(package_id),
                object_id=object_id,
                threshold=threshold,
                plaintext=plaintext,
                server_public_keys=[(oid, keys[oid]) for oid in self.servers],
                weights=self.weights,
            )
        except ValueError as e:
            raise EncryptionFailure(f"threshold encryption failed: {e}") from e

    async def _fetch_one(
        self, server: KeyServerClient, request: KeyRequest, response_key: X25519KeyPair
    ) -> Tuple[str, bytes]:
        response = await server.fetch_key(request)
        if response.object_id != server.object_id:
            raise key_server_error(SEAL_E_KS_UNAVAILABLE, "response from unexpected key server", http_status=502)
        server_pk = self.public_keys.get(server.object_id)
        if server_pk is None:
            _, server_pk = await self._load_key(server)
            self.public_keys[server.object_id] = server_pk
        try:
            key = unwrap_key_response(
                response,
                response_key=response_key,
                server_public_key=server_pk,
                object_id=request.object_id,
            )
        except ValueError as e:
            raise key_server_error(SEAL_E_KS_UNAVAILABLE, f"key response did not open: {e}", http_status=502) from e
        return server.object_id, key

    async def fetch_keys(
        self,
        envelope: EncryptedEnvelope,
        credential: SessionCredential,
        proof: CapabilityProof,
        threshold: int,
    ) -> Tuple[Dict[str, bytes], Dict[str, int]]:
        """Collect wrapping keys covering at least `threshold` shares of `envelope`.

        A server counts for as many shares as it holds in the envelope.
        Returns (wrapping keys by server id, outcome counts). Raises
        InsufficientKeyShares (with outcome counts in `details`) if too few
        shares are released before the credential expires.
        """
        candidates: List[KeyServerClient] = [self.servers[oid] for oid in envelope.key_server_ids if oid in self.servers]
        reachable = sum(envelope.weight_of(s.object_id) for s in candidates)
        outcomes: Counter = Counter()

        remaining = credential.remaining_seconds(self.clock())
        if remaining <= 0:
            outcomes["expired"] = len(candidates)
            logger.warning("Session credential expired before key fetch for %s", envelope.id)
            raise InsufficientKeyShares(approved=0, required=threshold, outcomes=dict(outcomes))
        if reachable < threshold:
            logger.warning(
                "Only %d of %d envelope key shares are held by configured servers (threshold %d)",
                reachable, len(envelope.shares), threshold,
            )
            raise InsufficientKeyShares(approved=0, required=threshold, outcomes=dict(outcomes))

        response_key = X25519KeyPair.generate()
        payload = key_request_payload(
            object_id=envelope.id,
            tx_kind=proof.tx_kind,
            ephemeral_public_key=envelope.ephemeral_public_key,
            response_public_key=response_key.public_key_bytes,
        )
        request = KeyRequest(
            object_id=envelope.id,
            ephemeral_public_key=envelope.ephemeral_public_key,
            tx_kind=proof.tx_kind,
            certificate=credential.to_certificate(),
            request_signature=credential.sign_request(payload),
            response_public_key=response_key.public_key_bytes,
        )

        loop = asyncio.get_running_loop()
        deadline = loop.time() + remaining
        pending = {
            asyncio.ensure_future(self._fetch_one(server, request, response_key)): server.object_id
            for server in candidates
        }
        keys: Dict[str, bytes] = {}
        approved = 0
        timed_out = False
        try:
            while pending and approved < threshold:
                if approved + sum(envelope.weight_of(oid) for oid in pending.values()) < threshold:
                    break
                timeout = deadline - loop.time()
                if timeout > 0:
                    done, _ = await asyncio.wait(pending, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
                else:
                    done = set()
                if not done:
                    timed_out = True
                    break
                for task in done:
                    server_id = pending.pop(task)
                    try:
                        oid, key = task.result()
                    except KeyServerError as e:
                        outcome = classify_key_server_error(e)
                        outcomes[outcome] += 1
                        metrics.record_key_fetch(outcome)
                        logger.warning("Key server %s withheld share (%s): %s", server_id, outcome, e.message)
                        continue
                    except Exception as e:
                        # Unexpected client errors count as one unavailable server.
                        outcomes[OUTCOME_UNAVAILABLE] += 1
                        metrics.record_key_fetch(OUTCOME_UNAVAILABLE)
                        logger.warning("Key server %s failed: %s: %s", server_id, type(e).__name__, e)
                        continue
                    keys[oid] = key
                    approved += envelope.weight_of(oid)
                    outcomes[OUTCOME_APPROVED] += 1
                    metrics.record_key_fetch(OUTCOME_APPROVED)
        finally:
            if pending:
                if timed_out:
                    outcomes[OUTCOME_TIMEOUT] += len(pending)
                    for server_id in pending.values():
                        metrics.record_key_fetch(OUTCOME_TIMEOUT)
                        logger.warning("Key server %s did not answer before the credential expired", server_id)
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        if approved < threshold:
            raise InsufficientKeyShares(approved=approved, required=threshold, outcomes=dict(outcomes))
        return keys, dict(outcomes)
