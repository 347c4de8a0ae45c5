import pytest
from fastapi.testclient import TestClient

from entitlement_sync.auth import dependencies as auth_dependencies
from entitlement_sync.auth.jwt import create_super_admin_token
from entitlement_sync.config import QueueOptions, settings
from entitlement_sync.main import app
from entitlement_sync.services.audit import AuditLog
from entitlement_sync.services.installations import InstallationRegistry
from entitlement_sync.services.jobs import WebhookJobQueue
from entitlement_sync.services.runtime import (
    get_audit_log,
    get_engine,
    get_installation_registry,
    get_job_queue,
)

from fakes import FIXED_NOW, FakeSupabase


def test_webhook_jobs_list_requires_super_admin_token():
    client = TestClient(app)
    response = client.get("/api/webhooks/jobs")
    assert response.status_code == 401


def test_webhook_job_detail_requires_super_admin_token():
    client = TestClient(app)
    response = client.get("/api/webhooks/jobs/job-1")
    assert response.status_code == 401


def test_webhook_job_retry_requires_super_admin_token():
    client = TestClient(app)
    response = client.post("/api/webhooks/jobs/job-1/retry")
    assert response.status_code == 401


def test_webhook_jobs_reject_malformed_and_foreign_tokens():
    client = TestClient(app)
    assert client.get("/api/webhooks/jobs", headers={"Authorization": "Token abc"}).status_code == 401
    assert client.get("/api/webhooks/jobs", headers={"Authorization": "Bearer not-a-jwt"}).status_code == 401


def test_webhook_jobs_reject_token_for_deleted_operator(monkeypatch):
    monkeypatch.setattr(auth_dependencies, "supabase", FakeSupabase({"super_admins": []}))
    client = TestClient(app)
    token = create_super_admin_token("sa-gone")

    response = client.get("/api/webhooks/jobs", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 401
    assert response.json()["detail"] == "Super-admin not found"


def test_internal_endpoints_unavailable_without_configured_secret(monkeypatch):
    monkeypatch.setattr(settings, "internal_scheduler_secret", None)
    client = TestClient(app)

    assert client.post("/api/internal/webhook-jobs/run").status_code == 503
    assert client.get("/api/internal/entitlements/user-1").status_code == 503


def test_internal_endpoints_reject_wrong_secret(monkeypatch):
    monkeypatch.setattr(settings, "internal_scheduler_secret", "sched-secret")
    client = TestClient(app)
    headers = {"X-Internal-Scheduler-Secret": "guess"}

    assert client.post("/api/internal/webhook-jobs/run").status_code == 401
    assert client.post("/api/internal/webhook-jobs/run", headers=headers).status_code == 401
    assert client.get("/api/internal/entitlements/user-1", headers=headers).status_code == 401


@pytest.fixture
def scheduler_client(monkeypatch, installation, engine):
    monkeypatch.setattr(settings, "internal_scheduler_secret", "sched-secret")
    db = FakeSupabase({"amember_installations": [installation.model_dump()], "amember_webhook_jobs": []})
    queue = WebhookJobQueue(db, "amember_webhook_jobs", QueueOptions(worker_slots=1), clock=lambda: FIXED_NOW)
    app.dependency_overrides[get_job_queue] = lambda: queue
    app.dependency_overrides[get_installation_registry] = lambda: InstallationRegistry(db, "amember_installations")
    app.dependency_overrides[get_audit_log] = lambda: AuditLog(db, "amember_webhook_logs")
    app.dependency_overrides[get_engine] = lambda: engine
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_scheduler_run_with_valid_secret(scheduler_client):
    response = scheduler_client.post(
        "/api/internal/webhook-jobs/run",
        json={"limit": 10},
        headers={"X-Internal-Scheduler-Secret": "sched-secret"},
    )

    assert response.status_code == 200
    assert response.json() == {
        "claimed": 0,
        "reclaimed": 0,
        "processed": 0,
        "retried": 0,
        "failed": 0,
        "discarded": 0,
        "crashed": 0,
    }


def test_scheduler_run_rejects_out_of_range_limit(scheduler_client):
    response = scheduler_client.post(
        "/api/internal/webhook-jobs/run",
        json={"limit": 0},
        headers={"X-Internal-Scheduler-Secret": "sched-secret"},
    )

    assert response.status_code == 422
