from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.concurrency import run_in_threadpool

from entitlement_sync.auth import SuperAdminContext, get_current_super_admin
from entitlement_sync.config import settings
from entitlement_sync.domain.errors import (
    MalformedPayloadError,
    SignatureRejectedError,
    UnknownSenderError,
    WebhookError,
    webhook_error_detail,
    webhook_error_http_status,
)
from entitlement_sync.domain.normalization import extract_event_name, normalize_webhook
from entitlement_sync.domain.payloads import parse_webhook_body
from entitlement_sync.models.webhooks import (
    JobStatus,
    WebhookAck,
    WebhookJobDetailResponse,
    WebhookJobListItem,
    WebhookJobRetryResponse,
)
from entitlement_sync.observability import incr_metric, log_event
from entitlement_sync.services.audit import AuditLog
from entitlement_sync.services.installations import InstallationRegistry
from entitlement_sync.services.jobs import WebhookJobQueue
from entitlement_sync.services.reconciliation import ReconciliationEngine
from entitlement_sync.services.runtime import (
    get_audit_log,
    get_engine,
    get_installation_registry,
    get_job_queue,
)
from entitlement_sync.services.signatures import verify_signature


INGEST_PATH = "/" + settings.webhook_route_prefix.strip("/")

ingest_router = APIRouter(tags=["amember-webhooks"])
router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


def _sender_address(request: Request) -> str | None:
    if settings.webhook_trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


def _reject(exc: WebhookError, *, request_id: str | None, **context: Any) -> HTTPException:
    incr_metric("webhook.events.rejected", reason=exc.reason)
    return HTTPException(
        status_code=webhook_error_http_status(exc),
        detail=webhook_error_detail(exc=exc, request_id=request_id, **context),
    )


@ingest_router.post(INGEST_PATH, response_model=WebhookAck)
async def ingest_amember_webhook(
    request: Request,
    registry: InstallationRegistry = Depends(get_installation_registry),
    audit: AuditLog = Depends(get_audit_log),
    queue: WebhookJobQueue = Depends(get_job_queue),
    engine: ReconciliationEngine = Depends(get_engine),
):
    raw_body = await request.body()
    # Everything after the body read is blocking I/O (supabase, psycopg2, bcrypt, redis).
    return await run_in_threadpool(
        _ingest,
        request,
        raw_body,
        registry=registry,
        audit=audit,
        queue=queue,
        engine=engine,
    )


def _ingest(
    request: Request,
    raw_body: bytes,
    *,
    registry: InstallationRegistry,
    audit: AuditLog,
    queue: WebhookJobQueue,
    engine: ReconciliationEngine,
) -> WebhookAck:
    req_id = _request_id(request)
    raw_text = raw_body.decode("utf-8", errors="replace")
    sender = _sender_address(request)
    incr_metric("webhook.events.received")

    installation = registry.resolve_by_sender(sender, request_id=req_id)
    if installation is None:
        log_event("webhook_unknown_sender", level=logging.WARNING, request_id=req_id, sender_address=sender)
        audit.record(
            event_type=None,
            status="failed",
            payload=raw_text,
            message="Unknown installation",
            sender_address=sender,
            request_id=req_id,
        )
        raise _reject(UnknownSenderError("Unknown installation", reason="unknown_sender"), request_id=req_id)

    signature = request.headers.get(settings.webhook_signature_header)
    if installation.is_unsecured:
        incr_metric("webhook.signature.unsecured", installation_id=installation.id)
        log_event(
            "webhook_signature_unsecured",
            level=logging.WARNING,
            request_id=req_id,
            installation_id=installation.id,
            installation=installation.slug,
        )
    elif not verify_signature(raw_body, signature, installation):
        reason = "invalid_signature" if signature else "missing_signature"
        log_event(
            "webhook_signature_rejected",
            level=logging.WARNING,
            request_id=req_id,
            installation_id=installation.id,
            reason=reason,
        )
        audit.record(
            event_type=None,
            status="failed",
            payload=raw_text,
            message="Invalid signature",
            sender_address=sender,
            installation_id=installation.id,
            request_id=req_id,
        )
        raise _reject(SignatureRejectedError("Invalid signature", reason=reason), request_id=req_id)

    declared_name: str | None = None
    try:
        payload = parse_webhook_body(raw_body, request.headers.get("content-type"))
        declared_name = extract_event_name(payload)
        normalized = normalize_webhook(declared_name, payload)
    except MalformedPayloadError as exc:
        log_event(
            "webhook_malformed",
            level=logging.WARNING,
            request_id=req_id,
            installation_id=installation.id,
            event_type=declared_name,
            reason=exc.reason,
            error=str(exc),
        )
        audit.record(
            event_type=declared_name,
            status="failed",
            payload=raw_text,
            message=str(exc),
            sender_address=sender,
            installation_id=installation.id,
            request_id=req_id,
        )
        raise _reject(exc, request_id=req_id, event_type=declared_name)

    if settings.debug_webhooks:
        log_event(
            "webhook_payload",
            level=logging.DEBUG,
            request_id=req_id,
            installation_id=installation.id,
            event_type=declared_name,
            payload=payload,
        )

    if normalized.is_unknown:
        incr_metric("webhook.events.ignored", event_type=declared_name)
        log_event("webhook_ignored", request_id=req_id, installation_id=installation.id, event_type=declared_name)
        audit.record(
            event_type=declared_name,
            status="ignored",
            payload=raw_text,
            message=f"Unknown event type: {declared_name}",
            sender_address=sender,
            installation_id=installation.id,
            request_id=req_id,
        )
        return WebhookAck(status="ignored", event_type=declared_name)

    event = normalized.event
    audit.record(
        event_type=declared_name,
        status="received",
        payload=raw_text,
        message=f"Event: {declared_name} from {installation.name}",
        sender_address=sender,
        installation_id=installation.id,
        request_id=req_id,
    )
    log_event(
        "webhook_received",
        request_id=req_id,
        installation_id=installation.id,
        event_type=declared_name,
        kind=event.kind,
    )

    if settings.webhook_use_queue:
        try:
            job = queue.enqueue(
                installation_id=installation.id,
                declared_event=declared_name,
                event=event,
                snapshot=normalized.snapshot,
                request_id=req_id,
            )
        except Exception as exc:
            incr_metric("webhook.events.failed", stage="enqueue")
            log_event(
                "webhook_enqueue_failed",
                level=logging.ERROR,
                request_id=req_id,
                installation_id=installation.id,
                event_type=declared_name,
                error=str(exc),
            )
            audit.record(
                event_type=declared_name,
                status="error",
                payload=raw_text,
                message=f"Enqueue failed: {exc}",
                sender_address=sender,
                installation_id=installation.id,
                request_id=req_id,
            )
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Webhook could not be queued",
            ) from exc
        job_id = str(job.get("id")) if job.get("id") is not None else None
        audit.record(
            event_type=declared_name,
            status="queued",
            payload=raw_text,
            message=f"Queued as job {job_id}",
            sender_address=sender,
            installation_id=installation.id,
            request_id=req_id,
        )
        incr_metric("webhook.events.queued", kind=event.kind)
        return WebhookAck(status="queued", event_type=declared_name, job_id=job_id)

    try:
        result = engine.apply(installation, event, snapshot=normalized.snapshot, request_id=req_id)
    except WebhookError as exc:
        incr_metric("webhook.events.failed", stage="inline", reason=exc.reason)
        log_event(
            "webhook_failed",
            level=logging.ERROR,
            request_id=req_id,
            installation_id=installation.id,
            event_type=declared_name,
            reason=exc.reason,
            error=str(exc),
        )
        audit.record(
            event_type=declared_name,
            status="error",
            payload=raw_text,
            message=str(exc),
            sender_address=sender,
            installation_id=installation.id,
            request_id=req_id,
        )
        raise HTTPException(
            status_code=webhook_error_http_status(exc),
            detail=webhook_error_detail(exc=exc, request_id=req_id, event_type=declared_name),
        ) from exc
    except Exception as exc:
        incr_metric("webhook.events.failed", stage="inline", reason="unexpected_error")
        log_event(
            "webhook_failed",
            level=logging.ERROR,
            request_id=req_id,
            installation_id=installation.id,
            event_type=declared_name,
            error=str(exc),
        )
        audit.record(
            event_type=declared_name,
            status="error",
            payload=raw_text,
            message=str(exc),
            sender_address=sender,
            installation_id=installation.id,
            request_id=req_id,
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Processing failed",
        ) from exc

    audit.record(
        event_type=declared_name,
        status="processed",
        payload=raw_text,
        message=f"Successfully processed {declared_name}",
        sender_address=sender,
        installation_id=installation.id,
        request_id=req_id,
    )
    incr_metric("webhook.events.processed", kind=event.kind)
    return WebhookAck(status="processed", event_type=declared_name, action=result.action)


@router.get("/jobs", response_model=list[WebhookJobListItem])
async def list_webhook_jobs(
    status_filter: JobStatus | None = Query(default=None, alias="status"),
    limit: int = 50,
    queue: WebhookJobQueue = Depends(get_job_queue),
    ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    rows = queue.list_jobs(status=status_filter, limit=limit)
    return sorted(rows, key=lambda row: row.get("created_at") or "", reverse=True)


@router.get("/jobs/{job_id}", response_model=WebhookJobDetailResponse)
async def get_webhook_job(
    job_id: str,
    queue: WebhookJobQueue = Depends(get_job_queue),
    ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    job = queue.get_job(job_id)
    if not job:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Webhook job not found")
    return job


@router.post("/jobs/{job_id}/retry", response_model=WebhookJobRetryResponse)
async def retry_webhook_job(
    job_id: str,
    request: Request,
    queue: WebhookJobQueue = Depends(get_job_queue),
    ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    job = queue.get_job(job_id)
    if not job:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Webhook job not found")
    previous_status = job.get("status")
    if previous_status not in {"failed", "discarded"}:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Only failed or discarded jobs can be retried (status={previous_status})",
        )
    requeued = queue.requeue(job_id)
    if not requeued:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Webhook job changed while retrying")
    log_event(
        "webhook_job_requeued",
        request_id=_request_id(request),
        job_id=job_id,
        previous_status=previous_status,
        super_admin_id=ctx.super_admin_id,
    )
    return WebhookJobRetryResponse(status="requeued", job_id=job_id, previous_status=previous_status)
