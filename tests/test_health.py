import json

import pytest

from natstier.meta.store import BoltStore
from natstier.metrics.health import (
    Check,
    HealthChecker,
    HealthStatus,
    build_health_handler,
    run_health_server,
)


class _Conn:
    def __init__(self, connected):
        self.is_connected = connected


class _S3:
    def __init__(self, error=None):
        self.error = error

    def ping(self):
        if self.error:
            raise self.error


@pytest.fixture
def meta_store(tmp_path):
    store = BoltStore(tmp_path / "test.db")
    yield store
    store.close()


def call(app, path):
    captured = {}

    def start_response(status, headers):
        captured["status"] = status
        captured["headers"] = dict(headers)

    body = b"".join(app({"PATH_INFO": path, "REQUEST_METHOD": "GET"}, start_response))
    return captured["status"], captured["headers"], body


def checks_by_name(status):
    return {c.name: c for c in status.checks}


def test_liveness():
    assert HealthChecker().liveness().ok is True


def test_readiness_all_ok(meta_store):
    status = HealthChecker(_Conn(True), meta_store).readiness()
    assert status.ok
    checks = checks_by_name(status)
    assert checks["nats"].status == "connected"
    assert checks["metadata"].status == "ok"


def test_readiness_nats_down():
    status = HealthChecker(_Conn(False)).readiness()
    assert not status.ok
    assert checks_by_name(status)["nats"].status == "disconnected"


def test_readiness_callable_connection_state():
    conn = _Conn(lambda: False)
    assert HealthChecker(conn).readiness().ok is False


def test_readiness_meta_error(meta_store):
    meta_store.close()
    status = HealthChecker(None, meta_store).readiness()
    assert not status.ok
    metadata = checks_by_name(status)["metadata"]
    assert metadata.status == "error"
    assert metadata.error != ""


def test_readiness_s3_error():
    status = HealthChecker(None, None, _S3(OSError("bucket gone"))).readiness()
    assert not status.ok
    assert checks_by_name(status)["s3"].error == "bucket gone"


def test_readiness_s3_ok():
    status = HealthChecker(None, None, _S3()).readiness()
    assert status.ok
    assert checks_by_name(status)["s3"].status == "ok"


def test_readiness_nil_deps():
    status = HealthChecker().readiness()
    assert status.ok
    assert [c.name for c in status.checks] == ["nats"]


def test_status_to_dict_omits_empty_fields():
    assert HealthStatus(ok=True).to_dict() == {"ok": True}
    status = HealthStatus(ok=False, checks=[Check("nats", "disconnected")])
    assert status.to_dict() == {"ok": False, "checks": [{"name": "nats", "status": "disconnected"}]}


def test_server_endpoints(meta_store):
    app = build_health_handler(HealthChecker(_Conn(True), meta_store), "/healthz", "/readyz")

    code, headers, body = call(app, "/healthz")
    assert code.startswith("200")
    assert headers["Content-Type"] == "application/json"
    assert json.loads(body)["ok"] is True

    code, _, body = call(app, "/readyz")
    assert code.startswith("200")
    assert json.loads(body)["ok"] is True


def test_readiness_endpoint_unavailable():
    app = build_health_handler(HealthChecker(_Conn(False)))
    code, _, body = call(app, "/readyz")
    assert code.startswith("503")
    assert json.loads(body)["checks"][0]["status"] == "disconnected"


def test_unknown_path_is_404():
    app = build_health_handler(HealthChecker())
    code, _, _ = call(app, "/nope")
    assert code.startswith("404")


@pytest.mark.parametrize("listen", ["localhost", "localhost:abc"])
def test_run_health_server_rejects_bad_listen(listen):
    with pytest.raises(ValueError):
        run_health_server(HealthChecker(), listen)