import asyncio

import pytest
from fastapi.testclient import TestClient

from reliability.clock import ManualClock
from reliability.config import Settings
from reliability.main import create_app
from reliability.runtime import Runtime


@pytest.fixture
def runtime():
    rt = Runtime(Settings(), clock=ManualClock())
    rt.queue.register_handler("generate-export", lambda payload: {"file": "export.csv"})
    return rt


@pytest.fixture
def client(runtime):
    with TestClient(create_app(runtime, manage_lifecycle=False)) as c:
        yield c


def test_healthz(client):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.json() == {"ok": True, "breakers": "HEALTHY"}


def test_submit_and_fetch_job(client):
    r = client.post(
        "/jobs",
        json={"job_type": "generate-export", "payload": {"format": "pdf"}, "priority": "HIGH", "max_retries": 3},
    )
    assert r.status_code == 202
    job_id = r.json()["job_id"]

    job = client.get(f"/jobs/{job_id}").json()
    assert job["state"] == "PENDING"
    assert job["priority"] == "HIGH"
    assert job["payload"] == {"format": "pdf"}
    assert job["attempts"] == 0


def test_submit_unknown_job_type_is_rejected(client):
    r = client.post("/jobs", json={"job_type": "mystery"})
    assert r.status_code == 400
    assert "mystery" in r.json()["detail"]


def test_submit_bad_priority_is_rejected(client):
    r = client.post("/jobs", json={"job_type": "generate-export", "priority": "urgent"})
    assert r.status_code == 400


def test_unknown_job_is_404(client):
    assert client.get("/jobs/nope").status_code == 404


def test_replay_requires_dead_letter(client):
    job_id = client.post("/jobs", json={"job_type": "generate-export"}).json()["job_id"]
    assert client.post(f"/jobs/{job_id}/replay").status_code == 409


def test_list_jobs_by_state(client):
    client.post("/jobs", json={"job_type": "generate-export"})
    client.post("/jobs", json={"job_type": "generate-export"})
    assert len(client.get("/jobs", params={"state": "PENDING"}).json()["jobs"]) == 2
    assert client.get("/jobs", params={"state": "DEAD_LETTER"}).json()["jobs"] == []


def test_status_export_lists_counts_and_breakers(client):
    client.post("/jobs", json={"job_type": "generate-export"})
    status = client.get("/status").json()
    assert status["jobs"]["by_type"] == {"generate-export": {"PENDING": 1}}
    assert status["breakers"]["slack"]["state"] == "CLOSED"
    assert status["health"]["status"] == "HEALTHY"
    assert status["workers"]["running"] is False


def test_metrics_are_prometheus_text(client):
    client.post("/jobs", json={"job_type": "generate-export"})
    r = client.get("/metrics")
    assert r.status_code == 200
    body = r.text
    assert 'jobs_enqueued_total{job_type="generate-export"} 1.0' in body
    assert "queue_depth 1.0" in body
    assert 'circuit_breaker_state{breaker="slack"} 0.0' in body


def test_breaker_endpoints(client, runtime):
    assert client.get("/breakers/email").json()["config"]["failure_threshold"] == 3
    assert client.get("/breakers/unknown").status_code == 404

    async def smtp_down():
        raise ConnectionError("smtp timeout")

    for _ in range(3):
        with pytest.raises(ConnectionError):
            asyncio.run(runtime.breakers.execute("email", smtp_down))
    assert client.get("/breakers").json()["health"]["status"] == "DEGRADED"

    r = client.post("/breakers/email/reset")
    assert r.json()["state"] == "CLOSED"
    assert client.get("/healthz").json()["breakers"] == "HEALTHY"
