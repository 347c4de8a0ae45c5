from __future__ import annotations

import json
import logging
from collections import Counter
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from pydantic import ValidationError

from entitlement_sync.config import QueueOptions
from entitlement_sync.domain.errors import WebhookError
from entitlement_sync.models.events import CanonicalEvent, canonical_event_adapter
from entitlement_sync.observability import incr_metric, log_event
from entitlement_sync.services.audit import AuditLog
from entitlement_sync.services.installations import InstallationRegistry
from entitlement_sync.services.reconciliation import ReconciliationEngine


JOB_STATUSES = ("queued", "processing", "processed", "failed", "discarded")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WebhookJobQueue:
    """Durable queue of canonical events in the webhook jobs table.

    Ownership of a job moves through conditional updates (`status` and `attempts` must still
    match what the claimer read), so two worker slots never run the same attempt.
    """

    def __init__(
        self,
        client: Any,
        table_name: str,
        options: QueueOptions,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._client = client
        self._table = table_name
        self.options = options
        self._clock = clock

    def _now_iso(self) -> str:
        return self._clock().isoformat()

    def _query(self) -> Any:
        return self._client.table(self._table)

    def enqueue(
        self,
        *,
        installation_id: str,
        declared_event: str | None,
        event: CanonicalEvent,
        snapshot: dict[str, Any],
        request_id: str | None = None,
    ) -> dict[str, Any]:
        now_iso = self._now_iso()
        row = {
            "queue_name": self.options.queue_name,
            "installation_id": installation_id,
            "declared_event": declared_event,
            "kind": event.kind,
            "event": event.model_dump(mode="json"),
            "snapshot": snapshot,
            "status": "queued",
            "attempts": 0,
            "max_attempts": self.options.max_attempts,
            "available_at": now_iso,
            "claimed_at": None,
            "last_error": None,
            "request_id": request_id,
            "created_at": now_iso,
            "updated_at": now_iso,
        }
        result = self._query().insert(row).execute()
        job = result.data[0] if result.data else row
        incr_metric("webhook.jobs.enqueued", kind=event.kind)
        return job

    def reclaim_stale(self) -> int:
        """Release jobs whose worker stopped reporting back.

        A stale job that already used its last attempt is failed instead of re-queued, so a
        job that keeps killing its worker cannot loop forever.
        """
        cutoff = (self._clock() - timedelta(seconds=self.options.visibility_timeout_seconds)).isoformat()
        stale = (
            self._query()
            .select("id, claimed_at, attempts, max_attempts, request_id")
            .eq("queue_name", self.options.queue_name)
            .eq("status", "processing")
            .lt("claimed_at", cutoff)
            .limit(self.options.batch_size)
            .execute()
        )
        reclaimed = 0
        exhausted = 0
        for row in stale.data or []:
            now_iso = self._now_iso()
            attempts = int(row.get("attempts") or 0)
            max_attempts = int(row.get("max_attempts") or self.options.max_attempts)
            if attempts >= max_attempts:
                values = {
                    "status": "failed",
                    "last_error": "visibility_timeout_exhausted",
                    "claimed_at": None,
                    "finished_at": now_iso,
                    "updated_at": now_iso,
                }
            else:
                values = {"status": "queued", "claimed_at": None, "updated_at": now_iso}
            updated = (
                self._query()
                .update(values)
                .eq("id", row["id"])
                .eq("status", "processing")
                .eq("claimed_at", row["claimed_at"])
                .execute()
            )
            if not updated.data:
                continue
            if values["status"] == "failed":
                exhausted += 1
                log_event(
                    "webhook_job_failed",
                    level=logging.ERROR,
                    request_id=row.get("request_id"),
                    job_id=row["id"],
                    attempts=attempts,
                    reason="visibility_timeout_exhausted",
                )
            else:
                reclaimed += 1
        if exhausted:
            incr_metric("webhook.jobs.failed", value=exhausted, reason="visibility_timeout_exhausted")
        if reclaimed:
            incr_metric("webhook.jobs.reclaimed", value=reclaimed)
            log_event("webhook_jobs_reclaimed", level=logging.WARNING, count=reclaimed)
        return reclaimed

    def claim_due(self, limit: int | None = None) -> list[dict[str, Any]]:
        due = (
            self._query()
            .select("*")
            .eq("queue_name", self.options.queue_name)
            .eq("status", "queued")
            .lte("available_at", self._now_iso())
            .order("available_at")
            .limit(limit or self.options.batch_size)
            .execute()
        )
        claimed: list[dict[str, Any]] = []
        for row in due.data or []:
            attempts = int(row.get("attempts") or 0)
            now_iso = self._now_iso()
            updated = (
                self._query()
                .update(
                    {
                        "status": "processing",
                        "attempts": attempts + 1,
                        "claimed_at": now_iso,
                        "updated_at": now_iso,
                    }
                )
                .eq("id", row["id"])
                .eq("status", "queued")
                .eq("attempts", attempts)
                .execute()
            )
            if updated.data:
                claimed.append(updated.data[0])
        return claimed

    def _finish(self, job: dict[str, Any], status: str, *, error: str | None = None, **extra: Any) -> None:
        now_iso = self._now_iso()
        values = {
            "status": status,
            "last_error": error,
            "claimed_at": None,
            "updated_at": now_iso,
            **extra,
        }
        if status in {"processed", "failed", "discarded"}:
            values["finished_at"] = now_iso
        self._query().update(values).eq("id", job["id"]).execute()

    def mark_processed(self, job: dict[str, Any]) -> None:
        self._finish(job, "processed")

    def mark_retry(self, job: dict[str, Any], error: str) -> datetime:
        available_at = self._clock() + timedelta(seconds=self.options.retry_delay_seconds)
        self._finish(job, "queued", error=error, available_at=available_at.isoformat())
        return available_at

    def mark_failed(self, job: dict[str, Any], error: str) -> None:
        self._finish(job, "failed", error=error)

    def mark_discarded(self, job: dict[str, Any], reason: str) -> None:
        self._finish(job, "discarded", error=reason)

    def list_jobs(self, *, status: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
        bounded_limit = max(1, min(limit, 200))
        query = self._query().select("*").eq("queue_name", self.options.queue_name)
        if status:
            query = query.eq("status", status)
        result = query.order("created_at", desc=True).limit(bounded_limit).execute()
        return result.data or []

    def get_job(self, job_id: str) -> dict[str, Any] | None:
        result = self._query().select("*").eq("id", job_id).execute()
        return result.data[0] if result.data else None

    def requeue(self, job_id: str, *, reset_attempts: bool = True) -> dict[str, Any] | None:
        """Put a failed or discarded job back on the queue for operator-driven retry."""
        job = self.get_job(job_id)
        if job is None or job.get("status") not in {"failed", "discarded"}:
            return None
        now_iso = self._now_iso()
        values: dict[str, Any] = {
            "status": "queued",
            "available_at": now_iso,
            "claimed_at": None,
            "finished_at": None,
            "updated_at": now_iso,
        }
        if reset_attempts:
            values["attempts"] = 0
        updated = (
            self._query()
            .update(values)
            .eq("id", job_id)
            .eq("status", job["status"])
            .execute()
        )
        incr_metric("webhook.jobs.requeued")
        return updated.data[0] if updated.data else None


def process_job(
    job: dict[str, Any],
    *,
    queue: WebhookJobQueue,
    registry: InstallationRegistry,
    engine: ReconciliationEngine,
    audit: AuditLog | None = None,
) -> str:
    """Run one claimed job through the engine and record its outcome. Returns the new status."""
    req_id = job.get("request_id")
    kind = job.get("kind")
    installation = registry.get_by_id(job["installation_id"])
    if installation is None:
        queue.mark_discarded(job, "installation_missing")
        incr_metric("webhook.jobs.discarded", reason="installation_missing")
        log_event(
            "webhook_job_discarded",
            level=logging.WARNING,
            request_id=req_id,
            job_id=job["id"],
            installation_id=job["installation_id"],
            reason="installation_missing",
        )
        return "discarded"

    try:
        event = canonical_event_adapter.validate_python(job.get("event") or {})
    except ValidationError as exc:
        # A stored event that no longer parses can never succeed.
        queue.mark_failed(job, f"invalid_job_event: {exc.error_count()} errors")
        incr_metric("webhook.jobs.failed", kind=kind, reason="invalid_job_event")
        log_event(
            "webhook_job_failed",
            level=logging.ERROR,
            request_id=req_id,
            job_id=job["id"],
            reason="invalid_job_event",
        )
        return "failed"

    try:
        engine.apply(installation, event, snapshot=job.get("snapshot") or {}, request_id=req_id)
    except Exception as exc:
        reason = exc.reason if isinstance(exc, WebhookError) else "unexpected_error"
        error = f"{reason}: {exc}"
        attempts = int(job.get("attempts") or 1)
        max_attempts = int(job.get("max_attempts") or queue.options.max_attempts)
        if attempts < max_attempts:
            available_at = queue.mark_retry(job, error)
            incr_metric("webhook.jobs.retried", kind=event.kind, reason=reason)
            log_event(
                "webhook_job_retry_scheduled",
                level=logging.WARNING,
                request_id=req_id,
                job_id=job["id"],
                kind=event.kind,
                attempts=attempts,
                max_attempts=max_attempts,
                available_at=available_at.isoformat(),
                error=str(exc),
            )
            return "queued"
        queue.mark_failed(job, error)
        incr_metric("webhook.jobs.failed", kind=event.kind, reason=reason)
        log_event(
            "webhook_job_failed",
            level=logging.ERROR,
            request_id=req_id,
            job_id=job["id"],
            kind=event.kind,
            attempts=attempts,
            error=str(exc),
        )
        if audit is not None:
            audit.record(
                event_type=job.get("declared_event"),
                status="error",
                payload=json.dumps(job.get("snapshot") or {}, sort_keys=True, default=str),
                message=f"Job {job['id']} failed after {attempts} attempts: {error}",
                installation_id=installation.id,
                request_id=req_id,
            )
        return "failed"

    queue.mark_processed(job)
    incr_metric("webhook.jobs.processed", kind=event.kind)
    log_event(
        "webhook_job_processed",
        request_id=req_id,
        job_id=job["id"],
        kind=event.kind,
        attempts=job.get("attempts"),
    )
    if audit is not None:
        audit.record(
            event_type=job.get("declared_event"),
            status="processed",
            payload=json.dumps(job.get("snapshot") or {}, sort_keys=True, default=str),
            message=f"Job {job['id']} processed",
            installation_id=installation.id,
            request_id=req_id,
        )
    return "processed"


def run_pending_jobs(
    *,
    queue: WebhookJobQueue,
    registry: InstallationRegistry,
    engine: ReconciliationEngine,
    audit: AuditLog | None = None,
    limit: int | None = None,
    request_id: str | None = None,
) -> dict[str, int]:
    """Drain due jobs once with one job per worker slot at a time."""
    reclaimed = queue.reclaim_stale()
    jobs = queue.claim_due(limit)
    outcomes: Counter[str] = Counter()
    if jobs:
        workers = max(1, min(queue.options.worker_slots, len(jobs)))

        def _work(job: dict[str, Any]) -> str:
            try:
                return process_job(job, queue=queue, registry=registry, engine=engine, audit=audit)
            except Exception as exc:
                # Bookkeeping itself failed; the job stays in processing until reclaimed.
                log_event(
                    "webhook_job_crashed",
                    level=logging.ERROR,
                    request_id=job.get("request_id"),
                    job_id=job.get("id"),
                    error=str(exc),
                )
                return "crashed"

        with ThreadPoolExecutor(max_workers=workers) as executor:
            pending: set[Future[str]] = set()
            idx = 0
            while idx < len(jobs) or pending:
                while idx < len(jobs) and len(pending) < workers:
                    pending.add(executor.submit(_work, jobs[idx]))
                    idx += 1
                done, pending = wait(pending, return_when=FIRST_COMPLETED)
                for future in done:
                    outcomes[future.result()] += 1

    summary = {
        "claimed": len(jobs),
        "reclaimed": reclaimed,
        "processed": outcomes["processed"],
        "retried": outcomes["queued"],
        "failed": outcomes["failed"],
        "discarded": outcomes["discarded"],
        "crashed": outcomes["crashed"],
    }
    log_event("webhook_jobs_run_completed", request_id=request_id, **summary)
    return summary
