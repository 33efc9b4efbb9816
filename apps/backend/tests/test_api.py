"""
API tests for the scraping trigger, cleanup and operations endpoints.
"""
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from app.config import RatePolicy, Settings
from core.memory_store import InMemoryStore
from core.models import JobPosting
from main import create_app
from orchestrator import PipelineOrchestrator
from security.auth import ROLE_ADMIN, ROLE_RECRUITER, ROLE_USER, create_access_token

SECRET = "test-secret"


def bearer(role: str, user: str = "u-1") -> dict:
    return {"Authorization": f"Bearer {create_access_token(user, role, SECRET)}"}


ADMIN = bearer(ROLE_ADMIN, "admin-1")
RECRUITER = bearer(ROLE_RECRUITER, "recruiter-1")

SCRAPE_BODY = {
    "searchQuery": "python developer",
    "location": "Berlin",
    "sources": ["alpha", "beta"],
    "limit": 20,
}


@pytest.fixture(autouse=True)
def auth_env(monkeypatch):
    monkeypatch.setenv("JOBLINK_AUTH_SECRET", SECRET)
    monkeypatch.delenv("JOBLINK_ENV", raising=False)


@pytest.fixture
def pipeline(registry, broadcaster, clock):
    return PipelineOrchestrator(
        store=InMemoryStore(),
        registry=registry,
        broadcaster=broadcaster,
        config=Settings(),
        clock=clock,
    )


@pytest.fixture
def client(pipeline):
    app = create_app(orchestrator=pipeline, start_background=False)
    with TestClient(app) as client:
        yield client


def test_trigger_requires_staff_role(client):
    assert client.post("/api/scraping", json=SCRAPE_BODY).status_code == 401
    response = client.post("/api/scraping", json=SCRAPE_BODY, headers=bearer(ROLE_USER))
    assert response.status_code == 403
    assert response.json() == {"success": False, "error": "Insufficient permissions"}


def test_trigger_runs_scrape(client, pipeline):
    response = client.post("/api/scraping", json=SCRAPE_BODY, headers=RECRUITER)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["jobsCreated"] == 3
    assert body["message"] == "Scraped 3 jobs (3 new, 0 updated)"
    assert response.headers["X-RateLimit-Limit"] == "10"
    assert response.headers["X-RateLimit-Remaining"] == "9"
    assert len(pipeline.store.all_postings()) == 3


@pytest.mark.parametrize("patch", [
    {"limit": 0},
    {"limit": 501},
    {"sources": []},
    {"searchQuery": "   "},
    {"priority": "urgent"},
    {"schedule": "every day"},
])
def test_trigger_validation_errors(client, patch):
    response = client.post("/api/scraping", json={**SCRAPE_BODY, **patch}, headers=RECRUITER)
    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["error"] == "Validation error"
    assert body["details"]


def test_trigger_rejects_unknown_source(client):
    response = client.post(
        "/api/scraping",
        json={**SCRAPE_BODY, "sources": ["alpha", "monster"]},
        headers=RECRUITER,
    )
    assert response.status_code == 400
    assert "monster" in response.json()["details"][0]["msg"]


def test_rejected_requests_do_not_consume_quota(client, pipeline):
    pipeline.rate_limiter.policies["scraping"] = RatePolicy("scraping", "1/hour")

    bad_source = {**SCRAPE_BODY, "sources": ["monster"]}
    for _ in range(3):
        assert client.post("/api/scraping", json=bad_source, headers=RECRUITER).status_code == 400
    assert client.post("/api/scraping", json={**SCRAPE_BODY, "limit": 0}, headers=RECRUITER).status_code == 400

    response = client.post("/api/scraping", json=SCRAPE_BODY, headers=RECRUITER)
    assert response.status_code == 200
    assert response.headers["X-RateLimit-Remaining"] == "0"


def test_trigger_is_rate_limited(client, pipeline, clock):
    pipeline.rate_limiter.policies["scraping"] = RatePolicy("scraping", "2/hour")

    for _ in range(2):
        assert client.post("/api/scraping", json=SCRAPE_BODY, headers=RECRUITER).status_code == 200

    response = client.post("/api/scraping", json=SCRAPE_BODY, headers=RECRUITER)
    assert response.status_code == 429
    body = response.json()
    assert body["success"] is False
    assert body["error"] == "Rate limit exceeded. Please try again later."
    assert body["retryAfter"] == 3600
    assert body["resetTime"] == (clock() + timedelta(hours=1)).isoformat()
    assert response.headers["Retry-After"] == "3600"

    stats = client.get("/api/rate-limits/stats", headers=ADMIN).json()["data"]
    assert stats["totalRequests"] == 3
    assert stats["blockedRequests"] == 1

    status = client.get("/api/rate-limits/testclient", headers=ADMIN).json()["data"]
    assert status["scraping"]["used"] == 2


def test_trigger_with_schedule_enqueues_task(client, pipeline):
    response = client.post(
        "/api/scraping",
        json={**SCRAPE_BODY, "schedule": "0 6 * * *", "priority": "high"},
        headers=ADMIN,
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["type"] == "scheduled"
    assert data["scheduledFor"].startswith("2026-03-03T06:00:00")

    task = client.get(f"/api/queue/{data['taskId']}", headers=ADMIN).json()["data"]
    assert task["status"] == "PENDING"
    assert task["priority"] == 10
    assert pipeline.store.all_postings() == []


def test_schedule_rejected_when_queue_full(client, pipeline):
    pipeline.queue.hard_limit = 0
    response = client.post(
        "/api/scraping",
        json={**SCRAPE_BODY, "schedule": "0 6 * * *"},
        headers=ADMIN,
    )
    assert response.status_code == 503
    assert response.headers["Retry-After"] == "60"


def test_scraping_status_and_sources(client):
    client.post("/api/scraping", json=SCRAPE_BODY, headers=RECRUITER)

    status = client.get("/api/scraping", headers=RECRUITER).json()["data"]
    assert status["scraping"]["totalJobs"] == 3
    assert status["queue"]["pending"] == 0

    sources = client.get("/api/scraping/sources", headers=RECRUITER).json()["data"]
    assert [s["name"] for s in sources] == ["alpha", "beta"]
    assert all(s["isActive"] for s in sources)


def test_deactivate_source(client):
    response = client.patch("/api/scraping/sources/beta", json={"isActive": False}, headers=ADMIN)
    assert response.status_code == 200
    assert response.json()["data"]["isActive"] is False

    body = client.post("/api/scraping", json=SCRAPE_BODY, headers=RECRUITER).json()
    assert body["data"]["jobsCreated"] == 2
    assert body["data"]["errors"][0]["source"] == "beta"

    assert client.patch("/api/scraping/sources/beta", json={"isActive": True}, headers=RECRUITER).status_code == 403
    assert client.patch("/api/scraping/sources/monster", json={"isActive": True}, headers=ADMIN).status_code == 404


def test_cleanup_dry_run_and_run(client, pipeline, clock):
    source = pipeline.store.ensure_source("alpha")
    for i in range(3):
        pipeline.store.insert_posting(JobPosting(
            title=f"Expired {i}", company_name="Acme", location="Berlin",
            is_scraped=True, source_id=source.id, expires_at=clock() - timedelta(days=1),
        ))
    for i in range(2):
        pipeline.store.insert_posting(JobPosting(
            title=f"Closed {i}", company_name="Acme", location="Berlin",
            is_scraped=True, source_id=source.id, expires_at=clock() + timedelta(days=10),
            application_deadline=clock() - timedelta(days=1),
        ))

    assert client.post("/api/jobs/cleanup", json={"dryRun": True}, headers=RECRUITER).status_code == 403

    response = client.post("/api/jobs/cleanup", json={"dryRun": True}, headers=ADMIN)
    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "Would remove 5 jobs (3 expired, 2 invalid)"
    assert body["data"]["jobsRemoved"] == 5
    assert len(pipeline.store.all_postings()) == 5

    response = client.post("/api/jobs/cleanup", headers=ADMIN)
    assert response.json()["message"] == "Removed 5 jobs (3 expired, 2 invalid)"
    assert len(pipeline.store.all_postings()) == 2

    stats = client.get("/api/jobs/cleanup", headers=RECRUITER).json()["data"]
    assert stats["totalJobs"] == 2
    assert stats["invalidJobs"] == 2
    assert stats["activeJobs"] == 0


def test_queue_endpoints(client, pipeline):
    assert client.get("/api/queue/missing", headers=ADMIN).status_code == 404
    assert client.get("/api/queue/stats", headers=RECRUITER).status_code == 403

    response = client.post(
        "/api/scraping",
        json={**SCRAPE_BODY, "schedule": "*/30 * * * *"},
        headers=ADMIN,
    )
    task_id = response.json()["data"]["taskId"]

    assert client.get("/api/queue/stats", headers=ADMIN).json()["data"]["pending"] == 1
    assert client.post(f"/api/queue/{task_id}/retry", headers=ADMIN).status_code == 409
    assert client.post(f"/api/queue/{task_id}/cancel", headers=ADMIN).status_code == 200
    assert client.post(f"/api/queue/{task_id}/cancel", headers=ADMIN).status_code == 409

    tasks = client.get("/api/queue/tasks", params={"type": "scheduled_scraping"}, headers=ADMIN).json()["data"]
    assert [t["status"] for t in tasks] == ["CANCELLED"]
    assert client.post("/api/queue/cleanup", json={"daysOld": 7}, headers=ADMIN).json()["data"]["removed"] == 0


def test_monitoring_start_stop(client, pipeline):
    status = client.get("/api/monitoring/status", headers=ADMIN).json()["data"]
    assert status["monitor"]["running"] is False

    assert client.post("/api/monitoring/start", headers=ADMIN).json()["message"] == "Monitoring started"
    assert client.post("/api/monitoring/start", headers=ADMIN).json()["message"] == "Monitoring already running"
    assert client.post("/api/monitoring/stop", headers=ADMIN).json()["message"] == "Monitoring stopped"
    assert pipeline.monitor.running is False


def test_healthz(client):
    response = client.get("/api/healthz")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "amber"
    assert body["components"]["store"] == "memory"
    assert body["components"]["scheduler"] is False
