from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from entitlement_sync.auth import InternalCallerContext, require_internal_secret
from entitlement_sync.models.entitlements import EntitlementCheckResponse
from entitlement_sync.models.webhooks import WebhookJobRunRequest, WebhookJobRunResponse
from entitlement_sync.observability import incr_metric
from entitlement_sync.services.access import EntitlementAccess
from entitlement_sync.services.audit import AuditLog
from entitlement_sync.services.installations import InstallationRegistry
from entitlement_sync.services.jobs import WebhookJobQueue, run_pending_jobs
from entitlement_sync.services.reconciliation import ReconciliationEngine
from entitlement_sync.services.runtime import (
    get_audit_log,
    get_engine,
    get_entitlement_access,
    get_installation_registry,
    get_job_queue,
)


router = APIRouter(prefix="/api/internal", tags=["internal"])


@router.post("/webhook-jobs/run", response_model=WebhookJobRunResponse)
async def run_webhook_jobs(
    data: WebhookJobRunRequest | None = None,
    caller: InternalCallerContext = Depends(require_internal_secret),
    queue: WebhookJobQueue = Depends(get_job_queue),
    registry: InstallationRegistry = Depends(get_installation_registry),
    engine: ReconciliationEngine = Depends(get_engine),
    audit: AuditLog = Depends(get_audit_log),
):
    summary = run_pending_jobs(
        queue=queue,
        registry=registry,
        engine=engine,
        audit=audit,
        limit=data.limit if data else None,
        request_id=caller.request_id,
    )
    incr_metric("webhook.jobs.scheduled_runs")
    return WebhookJobRunResponse(**summary)


@router.get("/entitlements/{user_id}", response_model=EntitlementCheckResponse)
async def check_user_entitlements(
    user_id: str,
    product_id: list[str] | None = Query(default=None),
    caller: InternalCallerContext = Depends(require_internal_secret),
    access: EntitlementAccess = Depends(get_entitlement_access),
):
    user = access.load_user(user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    subscriptions = access.subscriptions(user)
    active = [record for record in subscriptions if record.status == "active"]
    has_product_access: bool | None = None
    if product_id:
        wanted = set(product_id)
        has_product_access = any(record.product_id in wanted for record in active)
    return EntitlementCheckResponse(
        user_id=user.id,
        has_active_subscription=bool(active),
        subscriptions=subscriptions,
        product_ids=product_id or [],
        has_product_access=has_product_access,
    )
