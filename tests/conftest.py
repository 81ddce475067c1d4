from __future__ import annotations

import socketserver
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer

import pytest

from seal_gateway.gateway import build_dev_gateway


@pytest.fixture
def dev_gateway():
    """Gateway over in-process ledger, 3 key servers and blob store (threshold 2)."""
    return build_dev_gateway()


@pytest.fixture
def http_stub():
    """Start a threaded HTTP server for a handler class; yields its base URL."""
    servers = []

    def _start(handler: type[BaseHTTPRequestHandler]) -> str:
        httpd = HTTPServer(("127.0.0.1", 0), handler)
        t = threading.Thread(target=httpd.serve_forever, daemon=True)
        t.start()
        servers.append((httpd, t))
        host, port = httpd.server_address
        return f"http://{host}:{port}"

    try:
        yield _start
    finally:
        for httpd, t in servers:
            httpd.shutdown()
            httpd.server_close()
            t.join(timeout=2)


class _GarbageHandler(socketserver.StreamRequestHandler):
    """Answers every connection with a line that is not an HTTP status line."""

    def handle(self):
        self.rfile.readline()
        self.wfile.write(b"GARBAGE\r\n\r\n")


@pytest.fixture
def garbage_http_server():
    """TCP server speaking broken HTTP; yields its base URL."""
    server = socketserver.ThreadingTCPServer(("127.0.0.1", 0), _GarbageHandler)
    server.daemon_threads = True
    t = threading.Thread(target=server.serve_forever, daemon=True)
    t.start()
    host, port = server.server_address
    try:
        yield f"http://{host}:{port}"
    finally:
        server.shutdown()
        server.server_close()
        t.join(timeout=2)
