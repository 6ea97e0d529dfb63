"""
HTTP surface: submit, poll, heartbeat and error mapping.
The in-process queue is drained by a background task after each POST,
so a GET issued after the POST returns sees the final state.
"""
import logging

import pytest
from fastapi.testclient import TestClient

from jobmaster.core.errors import QueueUnavailableError
from jobmaster.core.limiter import limiter
from jobmaster.main import create_app
from jobmaster.runtime import WorkerRuntime
from jobmaster.services.job_service import JobServices
from jobmaster.services.queue import InMemoryQueueAdapter
from conftest import FakeUpstream, linear_history

EMAIL = "ada@example.com"


class BrokenQueue:
    def enqueue(self, topic, payload, policy=None):
        raise QueueUnavailableError("Broker unavailable: connection refused")

    def subscribe(self, topic, handler, on_exhausted=None):
        pass

    def close(self):
        pass


@pytest.fixture(autouse=True)
def no_rate_limit(monkeypatch):
    monkeypatch.setattr(limiter, "enabled", False)


@pytest.fixture
def fake():
    return FakeUpstream(
        portfolio=[{"symbol": "AAPL", "quantity": 3}],
        histories={"AAPL": linear_history(12)},
    )


def build_client(settings, services):
    return TestClient(create_app(settings, services=services))


@pytest.fixture
def client(settings, db, fake):
    queue = InMemoryQueueAdapter(sleep=lambda _: None)
    runtime = WorkerRuntime(settings, queue, db=db, upstream=fake.client(settings))
    with build_client(settings, JobServices(db, queue, settings, runtime=runtime)) as c:
        yield c
    runtime.stop()


def test_submit_then_poll(client, fake):
    response = client.post("/job", json={"type": "ESTIMATE_GAINS", "data": {"userEmail": EMAIL}})
    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "PENDING"
    assert body["message"] == "Job created successfully"
    job_id = body["jobId"]

    view = client.get(f"/job/{job_id}").json()
    assert view["jobId"] == job_id
    assert view["status"] == "COMPLETED"
    assert view["result"]["summary"]["stocksAnalyzed"] == 1
    assert view["result"]["estimations"][0]["symbol"] == "AAPL"
    assert view["completedAt"] is not None
    assert "error" not in view
    assert fake.callbacks[0]["jobId"] == job_id


def test_failed_job_reports_error(settings, db):
    fake = FakeUpstream(portfolio=[])
    queue = InMemoryQueueAdapter(sleep=lambda _: None)
    runtime = WorkerRuntime(settings, queue, db=db, upstream=fake.client(settings))
    with build_client(settings, JobServices(db, queue, settings, runtime=runtime)) as client:
        job_id = client.post("/job", json={"type": "ESTIMATE_GAINS", "data": {"userEmail": EMAIL}}).json()["jobId"]
        view = client.get(f"/job/{job_id}").json()

    assert view["status"] == "FAILED"
    assert "no holdings" in view["error"]
    assert "result" not in view


@pytest.mark.parametrize("payload", [
    {},
    {"type": "ESTIMATE_GAINS"},
    {"data": {"userEmail": EMAIL}},
    {"type": "ESTIMATE_GAINS", "data": {}},
    {"type": "ESTIMATE_GAINS", "data": {"userEmail": "   "}},
    {"type": "ESTIMATE_GAINS", "data": "ada@example.com"},
    {"type": "SOMETHING_ELSE", "data": {"userEmail": EMAIL}},
])
def test_invalid_submission(client, db, payload):
    response = client.post("/job", json=payload)
    assert response.status_code == 400
    assert "error" in response.json()

    with db.connect() as conn:
        assert conn.execute("SELECT COUNT(*) FROM jobs").fetchone()[0] == 0


def test_malformed_body(client):
    response = client.post("/job", content="not json", headers={"Content-Type": "application/json"})
    assert response.status_code == 400


def test_unknown_job(client):
    response = client.get("/job/does-not-exist")
    assert response.status_code == 404
    assert response.json() == {"error": "Job does-not-exist not found"}


def test_queue_unavailable(settings, db):
    with build_client(settings, JobServices(db, BrokenQueue(), settings)) as client:
        response = client.post("/job", json={"type": "ESTIMATE_GAINS", "data": {"userEmail": EMAIL}})

    assert response.status_code == 503
    assert "Broker unavailable" in response.json()["error"]
    with db.connect() as conn:
        row = conn.execute("SELECT status, error FROM jobs").fetchone()
    assert row["status"] == "FAILED"
    assert row["error"].startswith("Job could not be queued")


def test_heartbeat(client):
    body = client.get("/heartbeat").json()
    assert body["status"] is True
    assert body["service"] == "JobMaster"
    assert body["timestamp"].endswith("Z")


@pytest.fixture
def request_log():
    records = []
    handler = logging.Handler()
    handler.emit = records.append
    log = logging.getLogger("jobmaster.main")
    previous = log.level
    log.addHandler(handler)
    log.setLevel(logging.INFO)
    yield records
    log.removeHandler(handler)
    log.setLevel(previous)


def test_requests_are_logged(client, request_log):
    client.get("/heartbeat")
    client.get("/job/does-not-exist")

    lines = [r.getMessage() for r in request_log]
    assert any(line.startswith("GET /heartbeat 200 ") for line in lines)
    assert any(line.startswith("GET /job/does-not-exist 404 ") for line in lines)
