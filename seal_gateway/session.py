"""
Session credentials for key release.

A session credential says: "address A asks for keys of package P, for the
next `ttl` minutes starting at `issued_at`, using session key S". The
deployment signer signs that statement; the ephemeral session key S then
signs each key request so key servers can tie a request to the credential
without seeing the deployment key.

Security properties:
- Address bound: the signer's public key must hash to `address`
- Time boxed: valid only in [issued_at, issued_at + ttl)
- Held in memory for one request; the session private key is never
  serialized (`to_certificate()` carries public material only)

Expiry is enforced by each key server against its own clock.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from .crypto import (
    Ed25519KeyPair,
    _now_utc,
    _parse_iso_utc,
    _safe_hash_encode,
    b64d,
    b64e,
    derive_address,
    to_object_id,
    verify_ed25519,
)
from .errors import CredentialIssuanceFailure
from .ledger import LedgerClient, LedgerError
from .signing import Signer, coerce_signer

logger = logging.getLogger("seal_gateway.session")

SESSION_DOMAIN = "seal-gateway/session/v1"
REQUEST_DOMAIN = "seal-gateway/key-request/v1"
MIN_TTL_MINUTES = 1
MAX_TTL_MINUTES = 30


@dataclass
class SessionCredential:
    """Time-boxed, address-bound authorization for one download."""
    address: str
    package_id: str
    policy_namespace: str
    issued_at: str  # ISO timestamp (UTC)
    ttl_minutes: int
    session_public_key: bytes
    signer_public_key: bytes
    signature: bytes = b""
    _session_key: Optional[Ed25519KeyPair] = field(default=None, repr=False, compare=False)

    @property
    def expires_at(self) -> datetime:
        issued = _parse_iso_utc(self.issued_at)
        if issued is None:
            raise ValueError(f"invalid issued_at: {self.issued_at!r}")
        return issued + timedelta(minutes=self.ttl_minutes)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or _now_utc()
        try:
            issued = _parse_iso_utc(self.issued_at)
            return issued is None or now < issued or now >= self.expires_at
        except ValueError:
            return True  # Fail closed

    def remaining_seconds(self, now: Optional[datetime] = None) -> float:
        if self.is_expired(now):
            return 0.0
        return (self.expires_at - (now or _now_utc())).total_seconds()

    def compute_signature_payload(self) -> bytes:
        """Canonical payload the deployment signer attests."""
        return _safe_hash_encode([
            SESSION_DOMAIN,
            self.address,
            self.package_id,
            self.policy_namespace,
            self.issued_at,
            str(self.ttl_minutes),
            self.session_public_key.hex(),
        ])

    def verify(self) -> bool:
        """Check the signer signature and that the signer owns `address`."""
        if not self.signature or derive_address(self.signer_public_key) != self.address:
            return False
        return verify_ed25519(self.signer_public_key, self.compute_signature_payload(), self.signature)

    def sign_request(self, payload: bytes) -> bytes:
        if self._session_key is None:
            raise ValueError("credential has no session key (certificate only)")
        return self._session_key.sign(payload)

    def to_certificate(self) -> Dict[str, Any]:
        """Public part presented to key servers."""
        return {
            "address": self.address,
            "package_id": self.package_id,
            "policy_namespace": self.policy_namespace,
            "issued_at": self.issued_at,
            "ttl_minutes": self.ttl_minutes,
            "session_public_key": b64e(self.session_public_key),
            "signer_public_key": b64e(self.signer_public_key),
            "signature": b64e(self.signature),
        }

    @classmethod
    def from_certificate(cls, data: Dict[str, Any]) -> "SessionCredential":
        """Rebuild a verify-only credential. Raises ValueError if malformed."""
        try:
            ttl = data["ttl_minutes"]
            if not isinstance(ttl, int) or isinstance(ttl, bool):
                raise ValueError("ttl_minutes must be an integer")
            return cls(
                address=str(data["address"]).lower(),
                package_id=to_object_id(data["package_id"]),
                policy_namespace=to_object_id(data["policy_namespace"]),
                issued_at=str(data["issued_at"]),
                ttl_minutes=ttl,
                session_public_key=b64d(data["session_public_key"]),
                signer_public_key=b64d(data["signer_public_key"]),
                signature=b64d(data["signature"]),
            )
        except (KeyError, TypeError) as e:
            raise ValueError(f"malformed session certificate: {e}") from e


def key_request_payload(
    *,
    object_id: str,
    tx_kind: bytes,
    ephemeral_public_key: bytes,
    response_public_key: bytes,
) -> bytes:
    """Bytes the session key signs for each key request."""
    return _safe_hash_encode([
        REQUEST_DOMAIN,
        object_id,
        b64e(tx_kind),
        ephemeral_public_key.hex(),
        response_public_key.hex(),
    ])


class SessionCredentialManager:
    """
    Issues session credentials signed by the deployment signer.

    The signer and ledger client are passed in rather than looked up, so the
    manager can be exercised with fakes.
    """

    def __init__(self, signer: Signer, ledger: LedgerClient, package_id: str):
        self.signer = coerce_signer(signer)
        self.ledger = ledger
        self.package_id = to_object_id(package_id)

    async def issue(self, address: str, policy_namespace: str, ttl_minutes: int) -> SessionCredential:
        """
        Issue a credential for `address` valid for `ttl_minutes` from now.

        Raises CredentialIssuanceFailure if the ttl is out of range, the
        address is not the signer's, the package cannot be looked up on the
        ledger, or the signer fails.
        """
        if not MIN_TTL_MINUTES <= int(ttl_minutes) <= MAX_TTL_MINUTES:
            raise CredentialIssuanceFailure(
                f"ttl must be between {MIN_TTL_MINUTES} and {MAX_TTL_MINUTES} minutes",
                ttl_minutes=ttl_minutes,
            )
        address = str(address or "").lower()
        if address != self.signer.address:
            raise CredentialIssuanceFailure("address does not belong to the configured signer", address=address)

        try:
            namespace = to_object_id(policy_namespace)
        except ValueError as e:
            raise CredentialIssuanceFailure(f"invalid policy namespace: {e}") from e

        try:
            ref = await self.ledger.get_object(self.package_id)
        except LedgerError as e:
            raise CredentialIssuanceFailure(f"package lookup failed: {e}", package_id=self.package_id) from e
        if ref.type and ref.type != "package":
            raise CredentialIssuanceFailure("policy package id does not name a package", package_id=self.package_id)

        session_key = Ed25519KeyPair.generate("session")
        credential = SessionCredential(
            address=address,
            package_id=self.package_id,
            policy_namespace=namespace,
            issued_at=_now_utc().isoformat(),
            ttl_minutes=int(ttl_minutes),
            session_public_key=session_key.public_key_bytes,
            signer_public_key=self.signer.public_key_bytes,
            _session_key=session_key,
        )

        try:
            credential.signature = await asyncio.to_thread(self.signer.sign, credential.compute_signature_payload())
        except (RuntimeError, ValueError, OSError) as e:
            logger.warning("Signer unavailable while issuing session credential: %s", e)
            raise CredentialIssuanceFailure(f"signer unavailable: {e}") from e

        logger.debug("Issued session credential for %s (ttl=%dm)", address, credential.ttl_minutes)
        return credential
