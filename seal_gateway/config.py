"""Deployment configuration loaded from environment variables.

Configuration is read once at startup and is read-only afterwards. Present
but malformed values raise RuntimeError (fail closed) rather than falling
back to defaults.

Backends:
    SEAL_BACKEND=http    (default) HTTP key servers, ledger gateway and Walrus
    SEAL_BACKEND=memory  in-process ledger, key servers and blob store for
                         local development; ids and keys are generated
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

from .crypto import from_hex, to_object_id
from .identifiers import DEFAULT_NONCE_BYTES
from .ledger import NETWORKS
from .session import MAX_TTL_MINUTES, MIN_TTL_MINUTES
from .storage import DEFAULT_EPOCHS

logger = logging.getLogger("seal_gateway.config")

BACKENDS = ("http", "memory")
DOWNLOAD_FORMATS = ("raw", "json")
DEFAULT_THRESHOLD = 2
DEFAULT_TTL_MINUTES = 10
DEFAULT_MAX_UPLOAD_BYTES = 10 * 1024 * 1024
LOCALNET_LEDGER_URL = "http://127.0.0.1:9000"

WALRUS_ENDPOINTS: Dict[str, Tuple[str, str]] = {
    "testnet": (
        "https://publisher.walrus-testnet.walrus.space",
        "https://aggregator.walrus-testnet.walrus.space",
    ),
}


def _get(env: Mapping[str, str], name: str, default: str = "") -> str:
    return (env.get(name, default) or "").strip()


def _int(env: Mapping[str, str], name: str, default: int, minimum: int = 1) -> int:
    raw = _get(env, name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from e
    if value < minimum:
        raise RuntimeError(f"{name} must be >= {minimum}, got {value}")
    return value


def _bool(env: Mapping[str, str], name: str, default: bool = False) -> bool:
    raw = _get(env, name).lower()
    if not raw:
        return default
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    raise RuntimeError(f"{name} must be a boolean, got {raw!r}")


def _object_id(env: Mapping[str, str], name: str) -> str:
    raw = _get(env, name)
    if not raw:
        raise RuntimeError(f"{name} is required")
    try:
        return to_object_id(raw)
    except ValueError as e:
        raise RuntimeError(f"{name} is not a valid object id: {e}") from e


def _key_server_entries(raw: str) -> List[Tuple[str, int, str]]:
    entries = []
    seen = set()
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        head, sep, url = entry.partition("=")
        if not sep or not url.strip():
            raise RuntimeError(f"SEAL_KEY_SERVERS entry must be object_id[:weight]=url, got {entry!r}")
        oid, _, weight = head.partition(":")
        try:
            oid = to_object_id(oid.strip())
        except ValueError as e:
            raise RuntimeError(f"SEAL_KEY_SERVERS has an invalid object id: {e}") from e
        try:
            w = int(weight) if weight.strip() else 1
        except ValueError as e:
            raise RuntimeError(f"SEAL_KEY_SERVERS weight for {oid} must be an integer, got {weight!r}") from e
        if w < 1:
            raise RuntimeError(f"SEAL_KEY_SERVERS weight for {oid} must be at least 1")
        if oid in seen:
            raise RuntimeError(f"SEAL_KEY_SERVERS lists {oid} twice")
        seen.add(oid)
        entries.append((oid, w, url.strip()))
    if not entries:
        raise RuntimeError("SEAL_KEY_SERVERS is required")
    return entries


def parse_key_servers(raw: str) -> Tuple[Tuple[str, str], ...]:
    """Parse `object_id[:weight]=url,...` into (object_id, url) pairs."""
    return tuple((oid, url) for oid, _, url in _key_server_entries(raw))


def parse_key_server_weights(raw: str) -> Dict[str, int]:
    """Weights from the same `object_id[:weight]=url` list; unweighted entries count 1."""
    return {oid: w for oid, w, _ in _key_server_entries(raw)}


def parse_key_server_keys(raw: str) -> Dict[str, bytes]:
    if not raw:
        return {}
    try:
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("must be a JSON object")
        keys = {to_object_id(str(k)): from_hex(str(v)) for k, v in data.items()}
    except ValueError as e:
        raise RuntimeError(f"SEAL_KEY_SERVER_KEYS_JSON is invalid: {e}") from e
    for oid, pk in keys.items():
        if len(pk) != 32:
            raise RuntimeError(f"SEAL_KEY_SERVER_KEYS_JSON key for {oid} must be 32 bytes")
    return keys


@dataclass(frozen=True)
class GatewayConfig:
    backend: str = "http"
    allowlist_id: str = ""
    package_id: str = ""
    key_servers: Tuple[Tuple[str, str], ...] = ()
    key_server_keys: Dict[str, bytes] = field(default_factory=dict)
    key_server_weights: Dict[str, int] = field(default_factory=dict)
    threshold: int = DEFAULT_THRESHOLD
    ttl_minutes: int = DEFAULT_TTL_MINUTES
    nonce_bytes: int = DEFAULT_NONCE_BYTES
    verify_key_servers: bool = False
    private_key: str = field(default="", repr=False)
    network: str = "testnet"
    ledger_url: str = ""
    walrus_publisher_url: str = ""
    walrus_aggregator_url: str = ""
    walrus_epochs: int = DEFAULT_EPOCHS
    walrus_deletable: bool = False
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES
    download_format: str = "raw"
    metrics_token: str = field(default="", repr=False)
    upload_root: Optional[str] = None

    @classmethod
    def load_from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "GatewayConfig":
        env = os.environ if environ is None else environ

        backend = _get(env, "SEAL_BACKEND", "http").lower()
        if backend not in BACKENDS:
            raise RuntimeError(f"SEAL_BACKEND must be one of {BACKENDS}, got {backend!r}")
        network = _get(env, "SEAL_NETWORK", "testnet").lower()
        if network not in NETWORKS:
            raise RuntimeError(f"SEAL_NETWORK must be one of {NETWORKS}, got {network!r}")
        download_format = _get(env, "SEAL_DOWNLOAD_FORMAT", "raw").lower()
        if download_format not in DOWNLOAD_FORMATS:
            raise RuntimeError(f"SEAL_DOWNLOAD_FORMAT must be one of {DOWNLOAD_FORMATS}, got {download_format!r}")

        ttl_minutes = _int(env, "SEAL_TTL_MIN", DEFAULT_TTL_MINUTES)
        if not MIN_TTL_MINUTES <= ttl_minutes <= MAX_TTL_MINUTES:
            raise RuntimeError(f"SEAL_TTL_MIN must be between {MIN_TTL_MINUTES} and {MAX_TTL_MINUTES}")

        common = dict(
            backend=backend,
            threshold=_int(env, "SEAL_THRESHOLD", DEFAULT_THRESHOLD),
            ttl_minutes=ttl_minutes,
            nonce_bytes=_int(env, "SEAL_NONCE_BYTES", DEFAULT_NONCE_BYTES),
            private_key=_get(env, "SUI_PRIVATE_KEY"),
            network=network,
            walrus_epochs=_int(env, "WALRUS_EPOCHS", DEFAULT_EPOCHS),
            walrus_deletable=_bool(env, "WALRUS_DELETABLE"),
            max_upload_bytes=_int(env, "SEAL_MAX_UPLOAD_BYTES", DEFAULT_MAX_UPLOAD_BYTES),
            download_format=download_format,
            metrics_token=_get(env, "SEAL_METRICS_TOKEN"),
            upload_root=_get(env, "SEAL_UPLOAD_ROOT") or None,
        )
        if backend == "memory":
            return cls(**common)

        if not common["private_key"]:
            raise RuntimeError("SUI_PRIVATE_KEY is required")

        raw_servers = _get(env, "SEAL_KEY_SERVERS")
        key_servers = parse_key_servers(raw_servers)
        weights = parse_key_server_weights(raw_servers)
        if common["threshold"] > sum(weights.values()):
            # Not rejected here: encryption fails deterministically instead.
            logger.warning(
                "SEAL_THRESHOLD=%d exceeds the %d key shares held by configured servers; uploads will fail",
                common["threshold"], sum(weights.values()),
            )

        ledger_url = _get(env, "SEAL_LEDGER_URL") or (LOCALNET_LEDGER_URL if network == "localnet" else "")
        if not ledger_url:
            raise RuntimeError(f"SEAL_LEDGER_URL is required on {network}")

        publisher, aggregator = WALRUS_ENDPOINTS.get(network, ("", ""))
        publisher = _get(env, "WALRUS_PUBLISHER_URL") or publisher
        aggregator = _get(env, "WALRUS_AGGREGATOR_URL") or aggregator
        if not publisher or not aggregator:
            raise RuntimeError(f"WALRUS_PUBLISHER_URL and WALRUS_AGGREGATOR_URL are required on {network}")

        return cls(
            allowlist_id=_object_id(env, "SEAL_ALLOWLIST_ID"),
            package_id=_object_id(env, "SEAL_PACKAGE_ID"),
            key_servers=key_servers,
            key_server_weights=weights,
            key_server_keys=parse_key_server_keys(_get(env, "SEAL_KEY_SERVER_KEYS_JSON")),
            verify_key_servers=_bool(env, "SEAL_VERIFY_KEY_SERVERS"),
            ledger_url=ledger_url,
            walrus_publisher_url=publisher,
            walrus_aggregator_url=aggregator,
            **common,
        )
