"""
seal_gateway.signing: the deployment key that vouches for session credentials.

Every download starts with a session credential binding a fresh session key
to the gateway's ledger address. Key servers accept the credential only if
it is signed by the key behind that address, so this signer is the one
long-lived secret the gateway uses.

Backends:
- FileEd25519Signer: key decoded from SUI_PRIVATE_KEY, held in process.
- ExternalCommandSigner: SIGNER_MODE=external runs SIGNER_CMD per credential
  so the key can stay in a TPM, HSM or signing daemon. The command reads
  base64(payload) on stdin and prints base64(signature) on stdout.

The address is always derived from the configured public key. A command
that signs with some other key is rejected here rather than at the key
servers. Any signer failure blocks credential issuance.
"""

from __future__ import annotations

import base64
import binascii
import os
import shlex
import subprocess
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from .crypto import Ed25519KeyPair, derive_address, verify_ed25519

DEFAULT_SIGNER_TIMEOUT_SECONDS = 2.0
_FILE_MODES = ("file", "inproc", "in-process", "software")
_EXTERNAL_MODES = ("external", "cmd", "command")


@runtime_checkable
class Signer(Protocol):
    key_id: str
    public_key_bytes: bytes

    @property
    def address(self) -> str: ...

    def sign(self, message: bytes) -> bytes: ...


@dataclass
class FileEd25519Signer:
    keypair: Ed25519KeyPair

    @property
    def key_id(self) -> str:
        return self.keypair.key_id

    @property
    def public_key_bytes(self) -> bytes:
        return self.keypair.public_key_bytes

    @property
    def address(self) -> str:
        return self.keypair.address

    def sign(self, message: bytes) -> bytes:
        return self.keypair.sign(message)

    def __repr__(self) -> str:
        return f"FileEd25519Signer(key_id={self.key_id!r}, address={self.address!r})"


@dataclass
class ExternalCommandSigner:
    """Signs credential payloads by running `signing_cmd` once per payload."""
    key_id: str
    public_key_bytes: bytes
    signing_cmd: str
    timeout_seconds: float = DEFAULT_SIGNER_TIMEOUT_SECONDS

    @property
    def address(self) -> str:
        return derive_address(self.public_key_bytes)

    def _run(self, message: bytes) -> str:
        argv = shlex.split(str(self.signing_cmd or ""))
        if not argv:
            raise ValueError("external signer has no command")
        try:
            proc = subprocess.run(
                argv,
                input=base64.b64encode(message) + b"\n",
                capture_output=True,
                timeout=float(self.timeout_seconds),
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise RuntimeError(f"signer command timed out after {self.timeout_seconds}s") from e
        except OSError as e:
            raise RuntimeError(f"signer command could not start: {e}") from e
        if proc.returncode != 0:
            err = proc.stderr.decode("utf-8", errors="ignore").strip()
            raise RuntimeError(f"signer command exited {proc.returncode}: {err}")
        return proc.stdout.decode("utf-8", errors="ignore").strip()

    def sign(self, message: bytes) -> bytes:
        message = bytes(message)
        out = self._run(message)
        try:
            sig = base64.b64decode(out.encode("ascii"), validate=True)
        except (binascii.Error, ValueError) as e:
            raise RuntimeError("signer command did not print base64(signature)") from e
        if len(sig) != 64:
            raise RuntimeError(f"signer command returned a {len(sig)}-byte signature, expected 64")
        if not verify_ed25519(self.public_key_bytes, message, sig):
            raise RuntimeError(f"signer command signed with a key other than {self.address}")
        return sig


def coerce_signer(obj: Any) -> Signer:
    """Accept a key pair, a signer, or any object satisfying `Signer`."""
    if obj is None:
        raise TypeError("signer is None")
    if isinstance(obj, Ed25519KeyPair):
        return FileEd25519Signer(obj)
    if isinstance(obj, Signer):
        return obj
    raise TypeError(f"Unsupported signer type: {type(obj)}")


def build_signer_from_env(
    base_signer: Any,
    *,
    mode_env: str = "SIGNER_MODE",
    cmd_env: str = "SIGNER_CMD",
    timeout_env: str = "SIGNER_TIMEOUT_SECONDS",
) -> Signer:
    """Pick the credential signer from SIGNER_MODE.

    `base_signer` supplies the public key and so the gateway address in both
    modes; in external mode its private half is never used.
    """
    mode = (os.getenv(mode_env, "") or "file").strip().lower()
    s = coerce_signer(base_signer)

    if mode in _FILE_MODES:
        return s
    if mode not in _EXTERNAL_MODES:
        raise RuntimeError(f"Unsupported {mode_env}={mode!r}; expected file|external")

    cmd = (os.getenv(cmd_env, "") or "").strip()
    if not cmd:
        raise RuntimeError(f"{cmd_env} must be set when {mode_env}=external")
    raw_timeout = (os.getenv(timeout_env, "") or "").strip()
    try:
        timeout = float(raw_timeout) if raw_timeout else DEFAULT_SIGNER_TIMEOUT_SECONDS
    except ValueError as e:
        raise RuntimeError(f"{timeout_env} must be a number (seconds)") from e
    return ExternalCommandSigner(
        key_id=s.key_id,
        public_key_bytes=s.public_key_bytes,
        signing_cmd=cmd,
        timeout_seconds=timeout,
    )
