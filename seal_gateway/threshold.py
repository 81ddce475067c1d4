"""Reference threshold encryption primitive.

Construction:

1. A random 256-bit data key encrypts the plaintext with AES-256-GCM,
   AAD = object identifier bytes.
2. The data key is split with Shamir secret sharing over GF(256), one share
   per key server, any `threshold` of which reconstruct it.
3. Share i is sealed with AES-256-GCM under a wrapping key
   HKDF-SHA256(X25519(ephemeral, server_i_public), info) where info binds
   the package id, the identifier and the key server object id.

A key server re-derives its wrapping key from the envelope's ephemeral
public key with its X25519 private key. Because the identifier is part of
the HKDF info, a key released for one identifier opens nothing else.

GF(256) uses x^8 + x^4 + x^3 + x^2 + 1 (0x11D), for which 2 generates the
multiplicative group.
"""

from __future__ import annotations

import secrets
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from .crypto import (
    AES_KEY_BYTES,
    X25519KeyPair,
    _safe_hash_encode,
    aead_open,
    aead_seal,
    from_hex,
    hkdf_sha256,
)
from .envelope import EncryptedEnvelope, EncryptedShare, MAX_SHARES

SHARE_INFO_DOMAIN = "seal-gateway/share/v1"

_GF_EXP = [0] * 512
_GF_LOG = [0] * 256


def _init_gf() -> None:
    x = 1
    for i in range(255):
        _GF_EXP[i] = x
        _GF_LOG[x] = i
        x <<= 1
        if x & 0x100:
            x ^= 0x11D
    for i in range(255, 512):
        _GF_EXP[i] = _GF_EXP[i - 255]


_init_gf()


def _gf_mul(a: int, b: int) -> int:
    if a == 0 or b == 0:
        return 0
    return _GF_EXP[_GF_LOG[a] + _GF_LOG[b]]


def _gf_div(a: int, b: int) -> int:
    if b == 0:
        raise ZeroDivisionError("division by zero in GF(256)")
    if a == 0:
        return 0
    return _GF_EXP[(_GF_LOG[a] - _GF_LOG[b]) % 255]


def split_secret(secret: bytes, shares: int, threshold: int) -> List[Tuple[int, bytes]]:
    """Split `secret` into `shares` points (x = 1..shares), any `threshold` recover it."""
    if not 1 <= threshold <= shares <= MAX_SHARES:
        raise ValueError(f"need 1 <= threshold ({threshold}) <= shares ({shares}) <= {MAX_SHARES}")
    out = [bytearray(len(secret)) for _ in range(shares)]
    for pos, byte in enumerate(secret):
        coeffs = [byte] + list(secrets.token_bytes(threshold - 1))
        for i in range(shares):
            x = i + 1
            # Horner evaluation, highest coefficient first
            y = 0
            for c in reversed(coeffs):
                y = _gf_mul(y, x) ^ c
            out[i][pos] = y
    return [(i + 1, bytes(s)) for i, s in enumerate(out)]


def combine_shares(points: Sequence[Tuple[int, bytes]]) -> bytes:
    """Lagrange interpolation at x = 0. Shares may arrive in any order."""
    if not points:
        raise ValueError("no shares to combine")
    xs = [x for x, _ in points]
    if len(set(xs)) != len(xs) or any(not 1 <= x <= MAX_SHARES for x in xs):
        raise ValueError("share indices must be distinct and in 1..255")
    length = len(points[0][1])
    if any(len(y) != length for _, y in points):
        raise ValueError("shares have different lengths")

    basis = []
    for i, xi in enumerate(xs):
        num, den = 1, 1
        for j, xj in enumerate(xs):
            if i != j:
                num = _gf_mul(num, xj)
                den = _gf_mul(den, xj ^ xi)
        basis.append(_gf_div(num, den))

    secret = bytearray(length)
    for (_, y), li in zip(points, basis):
        for pos in range(length):
            secret[pos] ^= _gf_mul(y[pos], li)
    return bytes(secret)


def share_info(package_id: str, object_id: str, server_object_id: str) -> bytes:
    return _safe_hash_encode([SHARE_INFO_DOMAIN, package_id, object_id, server_object_id])


def derive_wrapping_key(
    server_key: X25519KeyPair,
    ephemeral_public_key: bytes,
    package_id: str,
    object_id: str,
    server_object_id: str,
) -> bytes:
    """Key-server side: wrapping key for its share of `object_id`."""
    shared = server_key.exchange(ephemeral_public_key)
    return hkdf_sha256(shared, share_info(package_id, object_id, server_object_id))


def _share_aad(object_id: str, index: int) -> bytes:
    return from_hex(object_id) + bytes([index])


class ThresholdCipher:
    """Encrypts to, and decrypts from, a set of key servers."""

    def encrypt(
        self,
        *,
        package_id: str,
        object_id: str,
        threshold: int,
        plaintext: bytes,
        server_public_keys: Sequence[Tuple[str, bytes]],
        weights: Optional[Mapping[str, int]] = None,
    ) -> EncryptedEnvelope:
        """Seal `plaintext` under `object_id` for the given (object_id, x25519 pk) servers.

        A server with weight w gets w shares; `threshold` is a number of
        shares. Servers missing from `weights` have weight 1.
        """
        if len({sid for sid, _ in server_public_keys}) != len(server_public_keys):
            raise ValueError("duplicate key server")
        weights = weights or {}
        holders: List[Tuple[str, bytes]] = []
        for server_id, server_pk in server_public_keys:
            w = weights.get(server_id, 1)
            if not isinstance(w, int) or w < 1:
                raise ValueError(f"weight of {server_id} must be a positive integer, got {w!r}")
            holders.extend([(server_id, server_pk)] * w)
        n = len(holders)
        if threshold < 1 or threshold > n:
            raise ValueError(f"threshold {threshold} is not satisfiable with {n} key shares")

        id_bytes = from_hex(object_id)
        object_id = id_bytes.hex()
        data_key = secrets.token_bytes(AES_KEY_BYTES)
        payload_nonce, payload_ct = aead_seal(data_key, plaintext, id_bytes)

        ephemeral = X25519KeyPair.generate()
        points = split_secret(data_key, n, threshold)
        wrap_keys: Dict[str, bytes] = {}
        sealed = []
        for (server_id, server_pk), (index, share) in zip(holders, points):
            if server_id not in wrap_keys:
                shared = ephemeral.exchange(server_pk)
                wrap_keys[server_id] = hkdf_sha256(shared, share_info(package_id, object_id, server_id))
            nonce, ct = aead_seal(wrap_keys[server_id], share, _share_aad(object_id, index))
            sealed.append(EncryptedShare(object_id=server_id, index=index, nonce=nonce, ciphertext=ct))

        return EncryptedEnvelope(
            package_id=package_id,
            id=object_id,
            threshold=threshold,
            ephemeral_public_key=ephemeral.public_key_bytes,
            shares=tuple(sealed),
            payload_nonce=payload_nonce,
            payload_ciphertext=payload_ct,
        )

    def decrypt(self, envelope: EncryptedEnvelope, wrapping_keys: Dict[str, bytes]) -> bytes:
        """Open `envelope` with wrapping keys released by key servers.

        Raises ValueError if fewer than `threshold` shares open or the payload
        fails authentication. Never returns partial plaintext.
        """
        points = []
        for share in envelope.shares:
            key = wrapping_keys.get(share.object_id)
            if key is None:
                continue
            points.append((share.index, aead_open(key, share.nonce, share.ciphertext, _share_aad(envelope.id, share.index))))
            if len(points) == envelope.threshold:
                break
        if len(points) < envelope.threshold:
            raise ValueError(f"need {envelope.threshold} shares, opened {len(points)}")

        data_key = combine_shares(points)
        return aead_open(data_key, envelope.payload_nonce, envelope.payload_ciphertext, from_hex(envelope.id))
