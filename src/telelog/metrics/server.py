"""HTTP endpoint for Prometheus scrapes and a delivery health check."""

import threading
from collections.abc import Callable
from typing import Any
from wsgiref.simple_server import WSGIRequestHandler, make_server

import structlog
from prometheus_client import make_wsgi_app

log = structlog.get_logger()

_server_lock = threading.Lock()
_server_thread: threading.Thread | None = None

StartResponse = Callable[[str, list[tuple[str, str]]], Any]
HealthCheck = Callable[[], bool]


class _QuietHandler(WSGIRequestHandler):
    """Keep scrapes out of the log."""

    def log_message(self, format: str, *args: object) -> None:
        pass


def build_app(health_check: HealthCheck | None = None) -> Callable[..., list[bytes]]:
    """WSGI app: /metrics from prometheus_client, /health from ``health_check``.

    /health answers 503 while the check returns False, e.g. while failed
    blocks are piling up faster than they can be delivered.
    """
    metrics = make_wsgi_app()

    def app(environ: dict[str, Any], start_response: StartResponse) -> list[bytes]:
        path = environ.get("PATH_INFO", "/")
        if path == "/health":
            healthy = health_check() if health_check else True
            status = "200 OK" if healthy else "503 Service Unavailable"
            start_response(status, [("Content-Type", "text/plain")])
            return [b"ok" if healthy else b"degraded"]
        if path == "/metrics":
            return metrics(environ, start_response)
        start_response("404 Not Found", [("Content-Type", "text/plain")])
        return [b"Not Found"]

    return app


def start_metrics_server(
    port: int,
    host: str = "0.0.0.0",
    health_check: HealthCheck | None = None,
) -> threading.Thread:
    """Serve metrics from a daemon thread.

    Idempotent: a second call returns the thread already running.
    """
    global _server_thread
    with _server_lock:
        if _server_thread is not None and _server_thread.is_alive():
            return _server_thread

        server = make_server(host, port, build_app(health_check), handler_class=_QuietHandler)

        def serve_forever() -> None:
            try:
                server.serve_forever()
            except Exception:
                log.exception("Metrics server failed unexpectedly")

        _server_thread = threading.Thread(target=serve_forever, name="telelog-metrics", daemon=True)
        _server_thread.start()
        log.info("Metrics server listening", host=host, port=port)
        return _server_thread
