"""Liveness and readiness probes and the HTTP server that exposes them."""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Optional
from wsgiref.simple_server import WSGIRequestHandler, make_server

DEFAULT_LIVENESS_PATH = "/healthz"
DEFAULT_READINESS_PATH = "/readyz"


@dataclass
class Check:
    name: str
    status: str
    error: str = ""

    def to_dict(self) -> dict:
        result = {"name": self.name, "status": self.status}
        if self.error:
            result["error"] = self.error
        return result


@dataclass
class HealthStatus:
    ok: bool
    checks: list[Check] = field(default_factory=list)

    def to_dict(self) -> dict:
        result: dict = {"ok": self.ok}
        if self.checks:
            result["checks"] = [c.to_dict() for c in self.checks]
        return result


def _is_connected(conn: Any) -> bool:
    state = conn.is_connected
    return bool(state() if callable(state) else state)


class HealthChecker:
    """Runs health probes against the NATS connection, metadata store and S3."""

    def __init__(self, nats_conn: Any = None, meta_store: Any = None, s3_client: Any = None) -> None:
        self.nats_conn = nats_conn
        self.meta = meta_store
        self.s3_client = s3_client

    def liveness(self) -> HealthStatus:
        return HealthStatus(ok=True)

    def readiness(self) -> HealthStatus:
        status = HealthStatus(ok=True)

        if self.nats_conn is not None and not _is_connected(self.nats_conn):
            status.ok = False
            status.checks.append(Check("nats", "disconnected"))
        else:
            status.checks.append(Check("nats", "connected"))

        for name, dependency in (("metadata", self.meta), ("s3", self.s3_client)):
            if dependency is None:
                continue
            try:
                dependency.ping()
            except Exception as err:
                status.ok = False
                status.checks.append(Check(name, "error", str(err) or type(err).__name__))
            else:
                status.checks.append(Check(name, "ok"))

        return status


def build_health_handler(
    checker: HealthChecker, liveness_path: str = "", readiness_path: str = ""
) -> Callable:
    """A WSGI application serving the two probes as JSON."""
    routes = {
        liveness_path or DEFAULT_LIVENESS_PATH: checker.liveness,
        readiness_path or DEFAULT_READINESS_PATH: checker.readiness,
    }

    def app(environ, start_response):
        probe = routes.get(environ.get("PATH_INFO", ""))
        if probe is None:
            start_response("404 Not Found", [("Content-Type", "text/plain; charset=utf-8")])
            return [b"404 page not found\n"]
        status = probe()
        body = (json.dumps(status.to_dict()) + "\n").encode("utf-8")
        code = "200 OK" if status.ok else "503 Service Unavailable"
        start_response(code, [("Content-Type", "application/json"), ("Content-Length", str(len(body)))])
        return [body]

    return app


def _split_listen(listen: str) -> tuple[str, int]:
    host, sep, port = listen.rpartition(":")
    if not sep:
        raise ValueError(f"listen address {listen!r} has no port")
    try:
        return host, int(port)
    except ValueError:
        raise ValueError(f"invalid port in listen address {listen!r}") from None


class _QuietHandler(WSGIRequestHandler):
    def log_message(self, format, *args) -> None:
        pass


def run_health_server(
    checker: HealthChecker,
    listen: str,
    liveness_path: str = "",
    readiness_path: str = "",
    stop: Optional[threading.Event] = None,
) -> None:
    """Serve the probes on listen ("host:port") until stop is set."""
    host, port = _split_listen(listen)
    app = build_health_handler(checker, liveness_path, readiness_path)
    with make_server(host, port, app, handler_class=_QuietHandler) as server:
        if stop is None:
            server.serve_forever()
            return
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        try:
            stop.wait()
        finally:
            server.shutdown()
            thread.join()