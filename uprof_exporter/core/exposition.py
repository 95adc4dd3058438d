"""
Exposition Endpoint
-------------------
Serves the registry in the Prometheus text format:

    • GET /metrics   -> 200, current snapshot
    • GET /          -> same as /metrics
    • anything else  -> 404

Rendering only reads the registry.
"""

from __future__ import annotations

import threading
from typing import Callable, Iterable, Tuple
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

from loguru import logger
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest, make_wsgi_app
from prometheus_client.exposition import ThreadingWSGIServer

from uprof_exporter.core.registry import MetricsRegistry

METRICS_PATHS = ("/metrics", "/")
CONTENT_TYPE = CONTENT_TYPE_LATEST

WSGIApp = Callable[[dict, Callable], Iterable[bytes]]


def render(registry: MetricsRegistry) -> bytes:
    """Current snapshot in the text exposition format."""
    return generate_latest(registry.collector_registry)


def make_app(registry: MetricsRegistry) -> WSGIApp:
    metrics_app = make_wsgi_app(registry.collector_registry)

    def app(environ: dict, start_response: Callable) -> Iterable[bytes]:
        path = environ.get("PATH_INFO") or "/"
        if path not in METRICS_PATHS:
            start_response("404 Not Found", [("Content-Type", "text/plain; charset=utf-8")])
            return [b"not found"]
        return metrics_app(environ, start_response)

    return app


class _QuietHandler(WSGIRequestHandler):
    def log_message(self, format, *args):  # noqa: A002 - signature fixed by BaseHTTPRequestHandler
        logger.trace("{} - {}", self.address_string(), format % args)


def serve(registry: MetricsRegistry, host: str = "0.0.0.0", port: int = 9100) -> Tuple[WSGIServer, threading.Thread]:
    """Start the HTTP server on a daemon thread.

    Each request is handled on its own thread. Returns the server (call
    ``shutdown()`` to stop it) and the serving thread.
    """
    httpd = make_server(host, port, make_app(registry), ThreadingWSGIServer, handler_class=_QuietHandler)
    thread = threading.Thread(target=httpd.serve_forever, name="metrics-http", daemon=True)
    thread.start()
    logger.info("Metrics HTTP server listening on {}:{}", host, httpd.server_port)
    return httpd, thread
