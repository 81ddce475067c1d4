"""
Seal Gateway Cryptography Module

Primitives shared by the gateway, the reference key server and the
threshold cipher:

- Ed25519 key pairs for the deployment signer and per-request session keys
- Sui-style address derivation (BLAKE2b-256 over flag || public key)
- X25519 + HKDF-SHA256 key agreement for share wrapping
- AES-256-GCM for payloads and wrapped shares
- Length-prefixed hash encoding and canonical JSON for signing payloads

All private material stays in process memory; nothing here persists keys.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, List, Optional

from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF


ED25519_FLAG = 0x00
AES_KEY_BYTES = 32
GCM_NONCE_BYTES = 12


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _parse_iso_utc(ts: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp into a timezone-aware UTC datetime.

    Returns None if parsing fails or input is empty.
    """
    if not ts:
        return None
    try:
        s = str(ts).strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    except ValueError:
        return None


def _sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _safe_hash_encode(components: List[str]) -> bytes:
    """
    Length-prefixed encoding for signing inputs.
    Prevents delimiter collision attacks.
    """
    result = b""
    for component in components:
        encoded = component.encode("utf-8")
        result += len(encoded).to_bytes(8, byteorder="big") + encoded
    return result


def canonical_json_dumps(obj: Any) -> str:
    """Canonical JSON: sorted keys, no whitespace, UTF-8 preserved."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def b64e(data: bytes) -> str:
    return base64.b64encode(bytes(data)).decode("ascii")


def b64d(data: str) -> bytes:
    return base64.b64decode(str(data).encode("ascii"), validate=True)


def normalize_hex(value: str) -> str:
    """Lower-case hex without a `0x` prefix. Raises ValueError if not hex."""
    s = str(value or "").strip().lower()
    if s.startswith("0x"):
        s = s[2:]
    if not s:
        raise ValueError("empty hex string")
    if len(s) % 2:
        s = "0" + s
    try:
        bytes.fromhex(s)
    except ValueError as e:
        raise ValueError(f"invalid hex string: {value!r}") from e
    return s


def from_hex(value: str) -> bytes:
    return bytes.fromhex(normalize_hex(value))


def to_object_id(value: str) -> str:
    """Normalize an on-ledger object id to `0x` + 64 hex chars."""
    raw = normalize_hex(value)
    if len(raw) > 64:
        raise ValueError(f"object id longer than 32 bytes: {value!r}")
    return "0x" + raw.rjust(64, "0")


def derive_address(public_key_bytes: bytes, flag: int = ED25519_FLAG) -> str:
    """Ledger address of an Ed25519 public key: blake2b-256(flag || pk)."""
    digest = hashlib.blake2b(bytes([flag]) + bytes(public_key_bytes), digest_size=32).hexdigest()
    return "0x" + digest


@dataclass
class Ed25519KeyPair:
    """
    Ed25519 key pair for signing and verification.

    The deployment signer and every session key use this type. A pair built
    with `from_public_key` can only verify.
    """
    key_id: str
    public_key_bytes: bytes
    private_key_bytes: Optional[bytes] = None

    @classmethod
    def generate(cls, key_id: str) -> "Ed25519KeyPair":
        """Generate a new Ed25519 key pair."""
        return cls.from_seed(secrets.token_bytes(32), key_id)

    @classmethod
    def from_public_key(cls, key_id: str, public_key_hex: str) -> "Ed25519KeyPair":
        """Create key pair with public key only (for verification)."""
        return cls(key_id=key_id, public_key_bytes=from_hex(public_key_hex))

    @classmethod
    def from_seed(cls, seed: bytes, key_id: str) -> "Ed25519KeyPair":
        """Create key pair from a 32-byte seed."""
        if len(seed) != 32:
            raise ValueError(f"Seed must be 32 bytes, got {len(seed)}")
        private_key = Ed25519PrivateKey.from_private_bytes(seed)
        public_bytes = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        return cls(key_id=key_id, public_key_bytes=public_bytes, private_key_bytes=bytes(seed))

    @property
    def public_key_hex(self) -> str:
        return self.public_key_bytes.hex()

    @property
    def address(self) -> str:
        return derive_address(self.public_key_bytes)

    def can_sign(self) -> bool:
        return self.private_key_bytes is not None

    def sign(self, message: bytes) -> bytes:
        if not self.can_sign():
            raise ValueError(f"Key {self.key_id} has no private key - cannot sign")
        private_key = Ed25519PrivateKey.from_private_bytes(self.private_key_bytes)
        return private_key.sign(message)

    def verify(self, message: bytes, signature: bytes) -> bool:
        return verify_ed25519(self.public_key_bytes, message, signature)


def verify_ed25519(public_key_bytes: bytes, message: bytes, signature: bytes) -> bool:
    """Verify an Ed25519 signature; any malformed input verifies as False."""
    try:
        Ed25519PublicKey.from_public_bytes(bytes(public_key_bytes)).verify(bytes(signature), bytes(message))
        return True
    except (InvalidSignature, ValueError, TypeError):
        return False


def decode_private_key(material: str, key_id: str = "gateway") -> Ed25519KeyPair:
    """Decode deployment signing material into an Ed25519 key pair.

    Accepted forms:
    - 64 hex chars (raw 32-byte seed, optional 0x prefix)
    - base64 of flag || seed (33 bytes, flag 0x00 = Ed25519), the legacy
      keystore export format

    Bech32 `suiprivkey1...` strings must be converted to one of these first.
    """
    s = (material or "").strip()
    if not s:
        raise ValueError("signing key material is empty")
    if s.startswith("suiprivkey"):
        raise ValueError("bech32 suiprivkey strings are not supported; export the key as hex or base64")

    hex_candidate = s[2:] if s.lower().startswith("0x") else s
    if len(hex_candidate) == 64:
        try:
            return Ed25519KeyPair.from_seed(bytes.fromhex(hex_candidate), key_id)
        except ValueError:
            pass

    try:
        raw = b64d(s)
    except (binascii.Error, ValueError) as e:
        raise ValueError("signing key must be 64 hex chars or base64(flag || seed)") from e
    if len(raw) == 33:
        if raw[0] != ED25519_FLAG:
            raise ValueError(f"unsupported key scheme flag: {raw[0]}")
        raw = raw[1:]
    if len(raw) != 32:
        raise ValueError(f"decoded signing key must be 32 bytes, got {len(raw)}")
    return Ed25519KeyPair.from_seed(raw, key_id)


# ---------------------------
# Key agreement / AEAD
# ---------------------------

@dataclass
class X25519KeyPair:
    """X25519 key pair used for share wrapping and response wrapping."""
    private_key_bytes: bytes
    public_key_bytes: bytes

    @classmethod
    def generate(cls) -> "X25519KeyPair":
        return cls.from_private_bytes(secrets.token_bytes(32))

    @classmethod
    def from_private_bytes(cls, private_bytes: bytes) -> "X25519KeyPair":
        sk = X25519PrivateKey.from_private_bytes(bytes(private_bytes))
        pk = sk.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        return cls(private_key_bytes=bytes(private_bytes), public_key_bytes=pk)

    @property
    def public_key_hex(self) -> str:
        return self.public_key_bytes.hex()

    def exchange(self, peer_public_bytes: bytes) -> bytes:
        sk = X25519PrivateKey.from_private_bytes(self.private_key_bytes)
        return sk.exchange(X25519PublicKey.from_public_bytes(bytes(peer_public_bytes)))


def hkdf_sha256(secret: bytes, info: bytes, length: int = AES_KEY_BYTES) -> bytes:
    return HKDF(algorithm=hashes.SHA256(), length=length, salt=None, info=info).derive(secret)


def aead_seal(key: bytes, plaintext: bytes, aad: bytes) -> tuple[bytes, bytes]:
    """AES-256-GCM encrypt. Returns (nonce, ciphertext_with_tag)."""
    nonce = secrets.token_bytes(GCM_NONCE_BYTES)
    return nonce, AESGCM(key).encrypt(nonce, bytes(plaintext), bytes(aad))


def aead_open(key: bytes, nonce: bytes, ciphertext: bytes, aad: bytes) -> bytes:
    """AES-256-GCM decrypt. Raises ValueError on any authentication failure."""
    try:
        return AESGCM(key).decrypt(bytes(nonce), bytes(ciphertext), bytes(aad))
    except InvalidTag as e:
        raise ValueError("AEAD authentication failed") from e
