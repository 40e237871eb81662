from __future__ import annotations

from socketserver import ThreadingMixIn
from typing import Any, Callable, Dict, List, Tuple
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest

from .poller import PollingOrchestrator

Response = Tuple[str, str, bytes]

TEXT = "text/plain; charset=utf-8"


class ExporterHTTPServer(ThreadingMixIn, WSGIServer):
    daemon_threads = True
    allow_reuse_address = True


class SilentRequestHandler(WSGIRequestHandler):
    def log_message(self, format: str, *args: Any) -> None:
        return


def readiness(orchestrator: PollingOrchestrator) -> Response:
    """503 until a poll cycle finished within the grace period.

    The body carries the last cycle number and its age.
    """
    age = orchestrator.last_cycle_age()
    if age is None:
        return "503 Service Unavailable", TEXT, b"not_ready cycle=0 age=never\n"
    body = f"cycle={orchestrator.cycles} age={age:.1f}s grace={orchestrator.ready_grace_seconds:.0f}s\n"
    if orchestrator.is_ready():
        return "200 OK", TEXT, ("ready " + body).encode()
    return "503 Service Unavailable", TEXT, ("not_ready " + body).encode()


def make_app(registry: CollectorRegistry, telemetry_path: str, orchestrator: PollingOrchestrator):
    routes: Dict[str, Callable[[], Response]] = {
        telemetry_path: lambda: ("200 OK", CONTENT_TYPE_LATEST, generate_latest(registry)),
        "/-/healthy": lambda: ("200 OK", TEXT, b"ok\n"),
        "/-/ready": lambda: readiness(orchestrator),
    }
    routes.setdefault("/", routes[telemetry_path])

    def app(environ, start_response) -> List[bytes]:
        handler = routes.get(environ.get("PATH_INFO", ""))
        if handler is None:
            status, content_type, body = "404 Not Found", TEXT, b"not found\n"
        else:
            status, content_type, body = handler()
        start_response(status, [("Content-Type", content_type), ("Content-Length", str(len(body)))])
        return [body]

    return app


def make_http_server(host: str, port: int, app) -> ExporterHTTPServer:
    return make_server(host, port, app, server_class=ExporterHTTPServer, handler_class=SilentRequestHandler)
