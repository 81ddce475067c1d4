"""Stable error taxonomy for the Seal gateway.

This module defines machine-readable error codes and the exception types
raised by the upload/download protocol components.

Design goals:
- Stable `code` string suitable for programmatic handling.
- `http_status` so the HTTP layer maps failures without inspecting messages.
- Structured `details` for operator logs; never echoed for share denials.
- No component retries; `retryable` only tells the caller whether a fresh
  request may succeed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


# Upload input
SEAL_E_INPUT = "SEAL_E_INPUT"

# Upload path
SEAL_E_ENCRYPTION_FAILURE = "SEAL_E_ENCRYPTION_FAILURE"
SEAL_E_STORAGE_WRITE = "SEAL_E_STORAGE_WRITE"

# Download path
SEAL_E_NOT_FOUND = "SEAL_E_NOT_FOUND"
SEAL_E_CREDENTIAL_ISSUANCE = "SEAL_E_CREDENTIAL_ISSUANCE"
SEAL_E_PROOF_CONSTRUCTION = "SEAL_E_PROOF_CONSTRUCTION"
SEAL_E_INSUFFICIENT_KEY_SHARES = "SEAL_E_INSUFFICIENT_KEY_SHARES"
SEAL_E_MALFORMED_ENVELOPE = "SEAL_E_MALFORMED_ENVELOPE"
SEAL_E_DECRYPTION_FAILURE = "SEAL_E_DECRYPTION_FAILURE"

# Key server responses (collaborator side, never surfaced to gateway callers)
SEAL_E_KS_INVALID_CREDENTIAL = "SEAL_E_KS_INVALID_CREDENTIAL"
SEAL_E_KS_EXPIRED = "SEAL_E_KS_EXPIRED"
SEAL_E_KS_INVALID_PROOF = "SEAL_E_KS_INVALID_PROOF"
SEAL_E_KS_DENIED = "SEAL_E_KS_DENIED"
SEAL_E_KS_UNAVAILABLE = "SEAL_E_KS_UNAVAILABLE"


@dataclass
class SealError(Exception):
    """Base gateway exception with stable error code."""

    code: str
    message: str
    retryable: bool = False
    http_status: int = 500
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
            "http_status": int(self.http_status),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class InputError(SealError):
    """Missing or invalid upload payload (client error, not retried)."""

    def __init__(self, message: str, **details: Any):
        super().__init__(code=SEAL_E_INPUT, message=message, http_status=400, details=details)


class EncryptionFailure(SealError):
    def __init__(self, message: str, **details: Any):
        super().__init__(code=SEAL_E_ENCRYPTION_FAILURE, message=message, details=details)


class StorageWriteFailure(SealError):
    def __init__(self, message: str, **details: Any):
        super().__init__(code=SEAL_E_STORAGE_WRITE, message=message, retryable=True, details=details)


class NotFound(SealError):
    """Blob handle unknown or past the store's retention horizon."""

    def __init__(self, message: str, **details: Any):
        super().__init__(code=SEAL_E_NOT_FOUND, message=message, details=details)


class CredentialIssuanceFailure(SealError):
    def __init__(self, message: str, **details: Any):
        super().__init__(code=SEAL_E_CREDENTIAL_ISSUANCE, message=message, retryable=True, details=details)


class ProofConstructionFailure(SealError):
    def __init__(self, message: str, **details: Any):
        super().__init__(code=SEAL_E_PROOF_CONSTRUCTION, message=message, details=details)


class InsufficientKeyShares(SealError):
    """Key servers released fewer than `threshold` shares.

    Policy denial, credential expiry and unreachable servers all land here.
    The message stays generic so callers learn nothing about the policy evaluator.
    """

    def __init__(self, message: str = "not enough key servers approved the request", **details: Any):
        super().__init__(code=SEAL_E_INSUFFICIENT_KEY_SHARES, message=message, retryable=True, details=details)


class MalformedEnvelope(SealError):
    def __init__(self, message: str, **details: Any):
        super().__init__(code=SEAL_E_MALFORMED_ENVELOPE, message=message, details=details)


class DecryptionFailure(SealError):
    """Enough shares were collected but recombination or AEAD open failed."""

    def __init__(self, message: str, **details: Any):
        super().__init__(code=SEAL_E_DECRYPTION_FAILURE, message=message, details=details)


class KeyServerError(SealError):
    """Raised by a key server (or its client) when it withholds its share."""

    def __init__(self, code: str, message: str, *, http_status: int = 403, **details: Any):
        super().__init__(code=code, message=message, http_status=http_status, details=details)


def key_server_error(code: str, message: str, *, http_status: int = 403, **details: Any) -> KeyServerError:
    return KeyServerError(code, message, http_status=http_status, **details)
