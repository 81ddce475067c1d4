"""
Seal Gateway Server

FastAPI front end for upload and download.

    POST /upload               multipart file (first file field), or a
                               `filePath` field naming a file under SEAL_UPLOAD_ROOT
    GET  /download/{blob_id}   decrypted bytes (or {"data": base64})
    GET  /v1/health            gateway id, signer address, threshold
    GET  /metrics              Prometheus exposition

Failures of the protocol components map to {"error": message} with the
status carried by the SealError (400 for missing input, 500 otherwise).
"""

from __future__ import annotations

import asyncio
import base64
import logging
import os
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from starlette.datastructures import UploadFile

from .config import GatewayConfig
from .errors import InputError, SealError
from .gateway import SealGateway
from .metrics import instrument_fastapi

logger = logging.getLogger("seal_gateway.server")


def _read_local_file(path: str, upload_root: Optional[str]) -> bytes:
    if upload_root is None:
        raise InputError("filePath uploads are disabled; set SEAL_UPLOAD_ROOT to enable them")
    p = Path(path).expanduser().resolve()
    root = Path(upload_root).expanduser().resolve()
    if root != p and root not in p.parents:
        raise InputError("filePath is outside the upload root")
    if not p.is_file():
        raise InputError("filePath does not name a readable file")
    return p.read_bytes()


async def _extract_upload(request: Request, upload_root: Optional[str]) -> bytes:
    """First uploaded file, else the file named by `filePath`."""
    content_type = (request.headers.get("content-type") or "").lower()
    file_path = None
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except ValueError as e:
            raise InputError("request body is not valid JSON") from e
        if isinstance(body, dict) and isinstance(body.get("filePath"), str):
            file_path = body["filePath"]
    elif content_type.startswith(("multipart/form-data", "application/x-www-form-urlencoded")):
        form = await request.form()
        for _, value in form.multi_items():
            if isinstance(value, UploadFile):
                return await value.read()
        raw = form.get("filePath")
        if isinstance(raw, str):
            file_path = raw

    if not file_path:
        raise InputError("No file uploaded")
    return await asyncio.to_thread(_read_local_file, file_path, upload_root)


def create_app(gateway: Optional[SealGateway] = None, config: Optional[GatewayConfig] = None) -> FastAPI:
    """Create the FastAPI application. Loads config from env when not given."""
    from . import __version__ as seal_version

    if config is None:
        config = GatewayConfig.load_from_env()
    if gateway is None:
        gateway = SealGateway.from_config(config)

    app = FastAPI(
        title="Seal Gateway",
        description="Access-controlled encryption gateway",
        version=seal_version,
    )
    app.state.gateway = gateway

    @app.exception_handler(SealError)
    async def _seal_error_handler(request: Request, exc: SealError):
        return JSONResponse(status_code=int(exc.http_status or 500), content={"error": exc.message})

    @app.exception_handler(Exception)
    async def _unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s", request.url.path)
        return JSONResponse(status_code=500, content={"error": "internal error"})

    # ---------------------------
    # Observability (/metrics)
    # ---------------------------
    metrics_token = config.metrics_token

    def _authorize_metrics(req: Request) -> bool:
        # Authorization: Bearer <token>  OR  X-Metrics-Token: <token>
        if not metrics_token:
            return True
        authz = (req.headers.get("Authorization") or "").strip()
        if authz.lower().startswith("bearer ") and authz.split(" ", 1)[1].strip() == metrics_token:
            return True
        return (req.headers.get("X-Metrics-Token") or "").strip() == metrics_token

    instrument_fastapi(app, authorize=_authorize_metrics)

    # Request body size limit (checks Content-Length; multipart framing gets 64 KiB of slack).
    max_request_bytes = config.max_upload_bytes + 64 * 1024

    @app.middleware("http")
    async def _limit_request_size(req: Request, call_next):
        cl = req.headers.get("content-length")
        if cl is not None:
            try:
                too_large = int(cl) > max_request_bytes
            except ValueError:
                return JSONResponse(status_code=400, content={"error": "bad Content-Length"})
            if too_large:
                return JSONResponse(status_code=413, content={"error": "request too large"})
        return await call_next(req)

    @app.post("/upload")
    async def upload(request: Request):
        plaintext = await _extract_upload(request, config.upload_root)
        result = await gateway.upload(plaintext)
        return result.to_dict()

    @app.get("/download/{blob_id}")
    async def download(blob_id: str):
        plaintext = await gateway.download(blob_id)
        if config.download_format == "json":
            return {"data": base64.b64encode(plaintext).decode("ascii")}
        return Response(content=plaintext, media_type="application/octet-stream")

    @app.get("/v1/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "gateway_id": gateway.gateway_id,
            "address": gateway.address,
            "threshold": gateway.threshold,
            "key_servers": len(gateway.quorum),
        }

    return app


def main():
    """
    Main entry point for the seal-gateway CLI.

    Usage:
        seal-gateway                    # Start on default port 3000
        seal-gateway --port 9000        # Start on custom port
        seal-gateway --host 127.0.0.1   # Bind to localhost only
    """
    import argparse

    parser = argparse.ArgumentParser(
        description="Seal Gateway - access-controlled encryption over threshold key servers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
    SEAL_ALLOWLIST_ID   Allowlist object id (policy namespace)
    SEAL_PACKAGE_ID     Policy package id
    SEAL_KEY_SERVERS    Comma-separated object_id=url key servers
    SUI_PRIVATE_KEY     Deployment signing key
    SEAL_BACKEND        http (default) or memory for local development
        """,
    )
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=int(os.getenv("PORT", "3000") or "3000"), help="Port to bind (default: 3000)")
    parser.add_argument("--log-level", default="info", help="Log level (default: info)")
    args = parser.parse_args()

    import uvicorn

    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        app = create_app()
    except RuntimeError as e:
        print(f"ERROR: {e}")
        return 1

    print(f"Starting Seal Gateway on {args.host}:{args.port}")
    print("  Endpoints:")
    print("    POST /upload               - Encrypt and store a file")
    print("    GET  /download/{blob_id}   - Fetch and decrypt a file")
    print("    GET  /v1/health            - Health check")
    print()

    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
