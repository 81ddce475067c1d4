"""Encryption and decryption orchestrators.

Upload:   derive id -> threshold-encrypt through the key-server quorum.
Download: parse envelope -> fetch key shares concurrently -> recombine.

Each download is tracked by a `DownloadTrace` walking the states

    FETCHED -> CREDENTIAL_ISSUED -> PROOF_BUILT -> AWAITING_SHARES
            -> DECRYPTED | DENIED | EXPIRED | FAILED

Any non-terminal state may fall to FAILED. DENIED and EXPIRED are told
apart in logs and metrics only; callers get InsufficientKeyShares for both.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from . import metrics
from .envelope import EncryptedEnvelope, parse_envelope
from .errors import (
    DecryptionFailure,
    EncryptionFailure,
    InsufficientKeyShares,
    MalformedEnvelope,
    ProofConstructionFailure,
)
from .identifiers import DEFAULT_NONCE_BYTES, derive_object_id
from .policy import CapabilityProof
from .quorum import KeyServerQuorum
from .session import SessionCredential

logger = logging.getLogger("seal_gateway.orchestrator")


class DownloadState(str, Enum):
    FETCHED = "fetched"
    CREDENTIAL_ISSUED = "credential_issued"
    PROOF_BUILT = "proof_built"
    AWAITING_SHARES = "awaiting_shares"
    DECRYPTED = "decrypted"
    DENIED = "denied"
    EXPIRED = "expired"
    FAILED = "failed"


TERMINAL_STATES: FrozenSet[DownloadState] = frozenset(
    {DownloadState.DECRYPTED, DownloadState.DENIED, DownloadState.EXPIRED, DownloadState.FAILED}
)

_NEXT: Dict[Optional[DownloadState], FrozenSet[DownloadState]] = {
    None: frozenset({DownloadState.FETCHED, DownloadState.FAILED}),
    DownloadState.FETCHED: frozenset({DownloadState.CREDENTIAL_ISSUED, DownloadState.FAILED}),
    DownloadState.CREDENTIAL_ISSUED: frozenset({DownloadState.PROOF_BUILT, DownloadState.FAILED}),
    DownloadState.PROOF_BUILT: frozenset({DownloadState.AWAITING_SHARES, DownloadState.FAILED}),
    DownloadState.AWAITING_SHARES: TERMINAL_STATES,
}


@dataclass
class DownloadTrace:
    """State of one download request."""
    blob_id: str
    state: Optional[DownloadState] = None
    history: List[DownloadState] = field(default_factory=list)

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def advance(self, state: DownloadState) -> None:
        if state not in _NEXT.get(self.state, frozenset()):
            raise RuntimeError(f"illegal download transition {self.state} -> {state}")
        logger.debug("download %s: %s -> %s", self.blob_id, self.state.value if self.state else "start", state.value)
        self.state = state
        self.history.append(state)
        if state in TERMINAL_STATES:
            metrics.record_download(state.value)

    def fail(self) -> None:
        if not self.finished:
            self.advance(DownloadState.FAILED)


def terminal_state_for(err: InsufficientKeyShares) -> DownloadState:
    """EXPIRED when the credential ran out and no server denied, else DENIED."""
    outcomes = err.details.get("outcomes") or {}
    if outcomes.get("denied"):
        return DownloadState.DENIED
    if outcomes.get("expired") or outcomes.get("timeout"):
        return DownloadState.EXPIRED
    return DownloadState.DENIED


class EncryptionOrchestrator:
    def __init__(
        self,
        quorum: KeyServerQuorum,
        package_id: str,
        *,
        nonce_bytes: int = DEFAULT_NONCE_BYTES,
        max_upload_bytes: Optional[int] = None,
    ):
        self.quorum = quorum
        self.package_id = package_id
        self.nonce_bytes = int(nonce_bytes)
        self.max_upload_bytes = max_upload_bytes

    async def encrypt(self, policy_namespace: str, threshold: int, plaintext: bytes) -> EncryptedEnvelope:
        """
        Encrypt `plaintext` under a fresh identifier in `policy_namespace`.

        Raises EncryptionFailure if the namespace or nonce width is unusable,
        the threshold cannot be met by the configured key servers, the payload
        is over the upload bound, or the threshold primitive rejects the
        request. Nothing is retried.
        """
        if self.max_upload_bytes is not None and len(plaintext) > self.max_upload_bytes:
            raise EncryptionFailure(
                "payload exceeds the upload bound",
                size=len(plaintext),
                max_upload_bytes=self.max_upload_bytes,
            )
        try:
            object_id = derive_object_id(policy_namespace, self.nonce_bytes)
        except ValueError as e:
            raise EncryptionFailure(f"cannot derive an identifier: {e}") from e
        envelope = await self.quorum.encrypt(
            package_id=self.package_id,
            object_id=object_id,
            threshold=threshold,
            plaintext=plaintext,
        )
        logger.info("Encrypted %d bytes as %s (threshold %d of %d shares)", len(plaintext), object_id, threshold, self.quorum.total_weight)
        return envelope


class DecryptionOrchestrator:
    def __init__(self, quorum: KeyServerQuorum):
        self.quorum = quorum

    async def decrypt(
        self,
        envelope_bytes: bytes,
        credential: SessionCredential,
        proof: CapabilityProof,
        threshold: int,
        trace: Optional[DownloadTrace] = None,
    ) -> bytes:
        """
        Recover the plaintext of a stored envelope.

        All or nothing: returns the full plaintext or raises. Raises
        MalformedEnvelope, InsufficientKeyShares (denial, expiry and
        unavailability alike) or DecryptionFailure.
        """
        envelope = parse_envelope(envelope_bytes)
        if envelope.package_id != credential.package_id:
            raise MalformedEnvelope(
                "envelope belongs to a different policy package",
                envelope_package=envelope.package_id,
            )
        if proof.object_id != envelope.id:
            raise ProofConstructionFailure("capability proof was built for a different identifier", id=envelope.id)

        required = max(int(threshold), envelope.threshold)
        if required != threshold:
            logger.warning(
                "Requested threshold %s is below the envelope threshold %d for %s",
                threshold, envelope.threshold, envelope.id,
            )

        if trace is not None:
            trace.advance(DownloadState.AWAITING_SHARES)
        try:
            keys, outcomes = await self.quorum.fetch_keys(envelope, credential, proof, required)
        except InsufficientKeyShares as e:
            state = terminal_state_for(e)
            logger.warning("Download of %s ended %s: %s", envelope.id, state.value, e.details)
            if trace is not None:
                trace.advance(state)
            raise InsufficientKeyShares() from e

        try:
            plaintext = self.quorum.cipher.decrypt(envelope, keys)
        except ValueError as e:
            if trace is not None:
                trace.advance(DownloadState.FAILED)
            raise DecryptionFailure(f"could not recombine key shares: {e}", id=envelope.id) from e

        if trace is not None:
            trace.advance(DownloadState.DECRYPTED)
        logger.info("Decrypted %s with %d key shares (%s)", envelope.id, len(keys), outcomes)
        return plaintext
