import asyncio

from sqlalchemy.exc import OperationalError

from sitswap.infra.metrics import Metrics
from sitswap.jobs.heartbeat import record_heartbeat
from sitswap.main import app


class _BrokenSessionFactory:
    def __call__(self):
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))


def _swap_state(name: str, value):
    missing = object()
    previous = getattr(app.state, name, missing)
    setattr(app.state, name, value)

    def restore():
        if previous is missing:
            delattr(app.state, name)
        else:
            setattr(app.state, name, previous)

    return restore


def test_healthz(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert response.headers["X-Request-ID"]


def test_request_id_is_echoed(client):
    response = client.get("/healthz", headers={"X-Request-ID": "req-123"})

    assert response.headers["X-Request-ID"] == "req-123"


def test_readyz_reports_worker_heartbeat(client, async_session_maker):
    restore = _swap_state("db_session_factory", async_session_maker)
    try:
        before = client.get("/readyz")
        asyncio.run(record_heartbeat(async_session_maker, runner_id="worker-test"))
        after = client.get("/readyz")
    finally:
        restore()

    assert before.status_code == 200
    assert before.json() == {"status": "ok", "database": "ok", "worker_heartbeat": None}
    assert after.status_code == 200
    assert after.json()["worker_heartbeat"].endswith("+00:00")


def test_readyz_unavailable_when_database_fails(client):
    restore = _swap_state("db_session_factory", _BrokenSessionFactory())
    try:
        response = client.get("/readyz")
    finally:
        restore()

    assert response.status_code == 503
    assert response.json()["status"] == "unavailable"
    assert response.json()["database"] == "error"


def test_metrics_endpoint_exposes_counters(client):
    client.get("/healthz")
    app.state.metrics.record_settlement("paid")

    response = client.get("/metrics")

    assert response.status_code == 200
    assert "http_request_latency_seconds" in response.text
    assert 'settlements_total{outcome="paid"}' in response.text


def test_metrics_endpoint_hidden_when_disabled(client):
    restore = _swap_state("metrics", Metrics(enabled=False))
    try:
        response = client.get("/metrics")
    finally:
        restore()

    assert response.status_code == 404


def test_disabled_metrics_ignore_records():
    disabled = Metrics(enabled=False)
    disabled.record_job("email.notification", "succeeded")
    disabled.record_http_latency("GET", "/healthz", 200, 0.01)

    assert disabled.render()[0] == b"metrics_disabled 1\n"
