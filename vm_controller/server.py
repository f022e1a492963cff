"""Health, diagnostics and metrics endpoint."""

import json
import logging
import threading
from typing import Callable, Iterable

from prometheus_client import CollectorRegistry, make_wsgi_app
from werkzeug.serving import BaseWSGIServer, make_server

from .config import HEALTH_HOST, HEALTH_PORT
from .metrics import Diagnostics

logger = logging.getLogger(__name__)


def create_app(registry: CollectorRegistry, diagnostics: Diagnostics) -> Callable:
    """WSGI app serving /health, /diagnostics and /metrics."""
    metrics_app = make_wsgi_app(registry)

    def _json(start_response, status: str, body: dict) -> Iterable[bytes]:
        payload = json.dumps(body).encode("utf-8")
        start_response(status, [
            ("Content-Type", "application/json"),
            ("Content-Length", str(len(payload))),
        ])
        return [payload]

    def app(environ, start_response):
        path = environ.get("PATH_INFO", "/")
        if environ.get("REQUEST_METHOD", "GET") != "GET":
            return _json(start_response, "405 Method Not Allowed", {"error": "method not allowed"})
        if path == "/health":
            return _json(start_response, "200 OK", {"healthy": True})
        if path == "/diagnostics":
            return _json(start_response, "200 OK", diagnostics.snapshot())
        if path == "/metrics":
            return metrics_app(environ, start_response)
        return _json(start_response, "404 Not Found", {"error": "not found"})

    return app


def start_server(registry: CollectorRegistry, diagnostics: Diagnostics,
                 host: str = HEALTH_HOST, port: int = HEALTH_PORT) -> BaseWSGIServer:
    """Serve the health app on a background thread; call shutdown() to stop."""
    server = make_server(host, port, create_app(registry, diagnostics), threaded=True)
    thread = threading.Thread(target=server.serve_forever, name="health-server", daemon=True)
    thread.start()
    logger.info(f"listening on {host}:{server.port}")
    return server
