"""Seal gateway package.

Access-controlled encryption over threshold key servers:

- Uploads are encrypted under an identifier in the allowlist's namespace and
  stored as an opaque envelope in a blob store
- Downloads issue a short-lived session credential, build an unsigned
  capability proof for the allowlist policy, and collect key shares from at
  least `threshold` key servers before decrypting

Convenience imports
------------------
The package avoids import-time side effects. These are available as
top-level imports and are loaded lazily:

    from seal_gateway import SealGateway, create_app, build_dev_gateway
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version discovery for dev/test environments.

    The project version is a simple `version = "..."` field in
    `pyproject.toml`, so a regex parse is enough.
    """

    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
        m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
        return m.group(1) if m else None
    except OSError:
        return None


__version__ = _read_version_from_pyproject() or "0.3.0"

__all__ = [
    "__version__",
    "SealGateway",
    "UploadResult",
    "build_dev_gateway",
    "create_app",
    "GatewayConfig",
    "SealError",
]

# Lazy export map: name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "SealGateway": ("seal_gateway.gateway", "SealGateway"),
    "UploadResult": ("seal_gateway.gateway", "UploadResult"),
    "build_dev_gateway": ("seal_gateway.gateway", "build_dev_gateway"),
    "create_app": ("seal_gateway.server", "create_app"),
    "GatewayConfig": ("seal_gateway.config", "GatewayConfig"),
    "SealError": ("seal_gateway.errors", "SealError"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        module = import_module(module_name)
        value = getattr(module, attr)
        globals()[name] = value
        return value
    raise AttributeError(f"module 'seal_gateway' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
