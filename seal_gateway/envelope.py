"""Self-describing encrypted envelope.

Wire format (UTF-8 canonical JSON):

    {
        "version": 1,
        "package_id": "0x...",
        "id": "<hex object identifier>",
        "threshold": 2,
        "ephemeral_public_key": "<base64 X25519 public key>",
        "shares": [
            {"object_id": "0x...", "index": 1, "nonce": "<b64>", "ciphertext": "<b64>"}
        ],
        "payload": {"aead": "AES-256-GCM", "nonce": "<b64>", "ciphertext": "<b64>"}
    }

A key server with weight w holds w shares (distinct indices, same
`object_id`); `threshold` counts shares, not servers.

`parse_envelope` validates structure only; it never needs key material, so
the identifier can always be recovered from stored bytes.
"""

from __future__ import annotations

import binascii
import json
from dataclasses import dataclass
from typing import Any, Dict, List

from .crypto import b64d, b64e, canonical_json_dumps, normalize_hex, to_object_id
from .errors import MalformedEnvelope

ENVELOPE_VERSION = 1
PAYLOAD_AEAD = "AES-256-GCM"
MAX_SHARES = 255


@dataclass(frozen=True)
class EncryptedShare:
    """One Shamir share of the data key, sealed for one key server."""
    object_id: str
    index: int
    nonce: bytes
    ciphertext: bytes

    def to_dict(self) -> Dict[str, Any]:
        return {
            "object_id": self.object_id,
            "index": self.index,
            "nonce": b64e(self.nonce),
            "ciphertext": b64e(self.ciphertext),
        }


@dataclass(frozen=True)
class EncryptedEnvelope:
    package_id: str
    id: str
    threshold: int
    ephemeral_public_key: bytes
    shares: tuple
    payload_nonce: bytes
    payload_ciphertext: bytes
    version: int = ENVELOPE_VERSION

    @property
    def key_server_ids(self) -> List[str]:
        """Key servers holding shares, in share order, each listed once."""
        return list(dict.fromkeys(s.object_id for s in self.shares))

    def weight_of(self, object_id: str) -> int:
        """Number of shares sealed for `object_id`."""
        return sum(1 for s in self.shares if s.object_id == object_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "package_id": self.package_id,
            "id": self.id,
            "threshold": self.threshold,
            "ephemeral_public_key": b64e(self.ephemeral_public_key),
            "shares": [s.to_dict() for s in self.shares],
            "payload": {
                "aead": PAYLOAD_AEAD,
                "nonce": b64e(self.payload_nonce),
                "ciphertext": b64e(self.payload_ciphertext),
            },
        }

    def to_bytes(self) -> bytes:
        return canonical_json_dumps(self.to_dict()).encode("utf-8")


def _require(cond: bool, message: str, **details: Any) -> None:
    if not cond:
        raise MalformedEnvelope(message, **details)


def _parse_share(raw: Any, pos: int) -> EncryptedShare:
    _require(isinstance(raw, dict), "share entry must be an object", position=pos)
    index = raw.get("index")
    _require(isinstance(index, int) and not isinstance(index, bool) and 1 <= index <= MAX_SHARES,
             "share index out of range", position=pos)
    try:
        return EncryptedShare(
            object_id=to_object_id(raw.get("object_id", "")),
            index=index,
            nonce=b64d(raw.get("nonce", "")),
            ciphertext=b64d(raw.get("ciphertext", "")),
        )
    except (binascii.Error, ValueError, TypeError) as e:
        raise MalformedEnvelope(f"invalid share encoding: {e}", position=pos) from e


def parse_envelope(data: bytes) -> EncryptedEnvelope:
    """Parse envelope bytes. Raises MalformedEnvelope on any structural error."""
    try:
        doc = json.loads(bytes(data).decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedEnvelope(f"envelope is not valid JSON: {e}") from e
    _require(isinstance(doc, dict), "envelope must be a JSON object")
    _require(doc.get("version") == ENVELOPE_VERSION, "unsupported envelope version", version=doc.get("version"))

    try:
        obj_id = normalize_hex(doc.get("id", ""))
        package_id = to_object_id(doc.get("package_id", ""))
    except ValueError as e:
        raise MalformedEnvelope(f"invalid identifier: {e}") from e

    raw_shares = doc.get("shares")
    _require(isinstance(raw_shares, list) and 0 < len(raw_shares) <= MAX_SHARES, "shares must be a non-empty list")
    shares = tuple(_parse_share(s, i) for i, s in enumerate(raw_shares))
    _require(len({s.index for s in shares}) == len(shares), "duplicate share index")

    threshold = doc.get("threshold")
    _require(isinstance(threshold, int) and not isinstance(threshold, bool) and 1 <= threshold <= len(shares),
             "threshold out of range", threshold=threshold, shares=len(shares))

    payload = doc.get("payload")
    _require(isinstance(payload, dict) and payload.get("aead") == PAYLOAD_AEAD, "unsupported payload encryption")
    try:
        ephemeral = b64d(doc.get("ephemeral_public_key", ""))
        payload_nonce = b64d(payload.get("nonce", ""))
        payload_ciphertext = b64d(payload.get("ciphertext", ""))
    except (binascii.Error, ValueError, TypeError) as e:
        raise MalformedEnvelope(f"invalid payload encoding: {e}") from e
    _require(len(ephemeral) == 32, "ephemeral public key must be 32 bytes")

    return EncryptedEnvelope(
        package_id=package_id,
        id=obj_id,
        threshold=threshold,
        ephemeral_public_key=ephemeral,
        shares=shares,
        payload_nonce=payload_nonce,
        payload_ciphertext=payload_ciphertext,
    )
