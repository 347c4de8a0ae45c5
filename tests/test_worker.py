import threading

from entitlement_sync import worker
from entitlement_sync.config import QueueOptions
from entitlement_sync.services.jobs import WebhookJobQueue

from fakes import FIXED_NOW, FakeSupabase


def _wire(monkeypatch, db):
    queue = WebhookJobQueue(db, "amember_webhook_jobs", QueueOptions(poll_seconds=0.1), clock=lambda: FIXED_NOW)
    monkeypatch.setattr(worker, "get_job_queue", lambda: queue)
    monkeypatch.setattr(worker, "get_installation_registry", lambda: object())
    monkeypatch.setattr(worker, "get_engine", lambda: object())
    monkeypatch.setattr(worker, "get_audit_log", lambda: None)
    return queue


def test_worker_stops_after_max_iterations(monkeypatch):
    _wire(monkeypatch, FakeSupabase({"amember_webhook_jobs": []}))

    assert worker.run_worker(threading.Event(), max_iterations=2) == 2


def test_worker_does_not_run_when_already_stopped(monkeypatch):
    _wire(monkeypatch, FakeSupabase({"amember_webhook_jobs": []}))
    stop = threading.Event()
    stop.set()

    assert worker.run_worker(stop) == 0


def test_worker_survives_unreachable_queue_table(monkeypatch):
    db = FakeSupabase({"amember_webhook_jobs": []})
    db.fail_tables.add("amember_webhook_jobs")
    _wire(monkeypatch, db)

    assert worker.run_worker(threading.Event(), max_iterations=2) == 2
