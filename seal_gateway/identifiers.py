"""Object identifiers for encrypted payloads.

An identifier is `namespace_bytes || nonce`, hex encoded. The namespace is
the allowlist object id, so the allowlist policy can check that an id
belongs to it by prefix. The nonce is drawn fresh from `secrets` for every
upload and never depends on shared state, so concurrent uploads cannot
collide except by chance.

With the default 5-byte nonce the birthday bound reaches 1e-6 collision
probability at roughly 1.5k uploads per namespace; raise SEAL_NONCE_BYTES
for larger deployments.
"""

from __future__ import annotations

import secrets

from .crypto import from_hex, normalize_hex

DEFAULT_NONCE_BYTES = 5


def derive_object_id(policy_namespace: str, nonce_bytes: int = DEFAULT_NONCE_BYTES) -> str:
    """Return hex(namespace || random nonce) for a new payload.

    Raises ValueError for a non-hex namespace or a nonce width below one.
    """
    if nonce_bytes < 1:
        raise ValueError(f"nonce width must be at least one byte, got {nonce_bytes}")
    try:
        namespace = from_hex(policy_namespace)
    except ValueError as e:
        raise ValueError(f"invalid policy namespace: {e}") from e
    return (namespace + secrets.token_bytes(nonce_bytes)).hex()


def namespace_of(object_id: str, policy_namespace: str) -> bool:
    """True if `object_id` was derived under `policy_namespace`."""
    try:
        return normalize_hex(object_id).startswith(normalize_hex(policy_namespace))
    except ValueError:
        return False
