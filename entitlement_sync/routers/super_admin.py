import logging
from datetime import datetime
from fastapi import APIRouter, Depends, HTTPException, Request, status
import bcrypt as bcrypt_lib
from pydantic import BaseModel, EmailStr
from entitlement_sync.auth import SuperAdminContext, get_current_super_admin, create_super_admin_token
from entitlement_sync.config import settings
from entitlement_sync.db import supabase
from entitlement_sync.observability import (
    METRIC_SNAPSHOT_TABLE,
    log_event,
    metrics_snapshot,
    persist_metrics_snapshot,
)

logger = logging.getLogger(__name__)


def hash_password(password: str) -> str:
    """Hash password using bcrypt."""
    return bcrypt_lib.hashpw(password.encode(), bcrypt_lib.gensalt()).decode()


def verify_password(password: str, password_hash: str) -> bool:
    """Verify password against hash."""
    return bcrypt_lib.checkpw(password.encode(), password_hash.encode())


router = APIRouter(prefix="/api/super-admin", tags=["super-admin"])


# --- Request/Response Models ---

class SuperAdminLoginRequest(BaseModel):
    email: EmailStr
    password: str


class SuperAdminLoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class SuperAdminMeResponse(BaseModel):
    super_admin_id: str
    email: str


class MetricsSnapshotRecord(BaseModel):
    id: str
    source: str
    request_id: str | None = None
    counters: dict
    created_at: datetime


class MetricsSnapshotFlushRequest(BaseModel):
    source: str = "super_admin_flush"
    reset_after_persist: bool = False


class MetricsSnapshotFlushResponse(BaseModel):
    persisted: bool
    source: str
    counter_count: int


# --- Login (no auth required) ---

@router.post("/login", response_model=SuperAdminLoginResponse)
async def super_admin_login(data: SuperAdminLoginRequest):
    """Login as operator, returns JWT with type 'super_admin'."""
    try:
        result = supabase.table("super_admins").select(
            "id, email, password_hash"
        ).eq("email", data.email).execute()
    except Exception as e:
        logger.error(f"Database error during super-admin login: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Database connection failed: {type(e).__name__}"
        )

    if not result.data:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password"
        )

    super_admin = result.data[0]

    try:
        password_ok = verify_password(data.password, super_admin["password_hash"])
    except ValueError as e:
        # Stored hash is not a bcrypt hash.
        logger.error(f"Password verification error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Password verification failed: {type(e).__name__}"
        )
    if not password_ok:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password"
        )

    token = create_super_admin_token(super_admin_id=super_admin["id"])
    return SuperAdminLoginResponse(access_token=token)


# --- Me ---

@router.get("/me", response_model=SuperAdminMeResponse)
async def get_me(ctx: SuperAdminContext = Depends(get_current_super_admin)):
    """Get current operator info."""
    return SuperAdminMeResponse(
        super_admin_id=ctx.super_admin_id,
        email=ctx.email,
    )


# --- Observability ---

@router.get("/observability/metrics-snapshots", response_model=list[MetricsSnapshotRecord])
async def list_metrics_snapshots(
    limit: int = 50,
    offset: int = 0,
    ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    bounded_limit = max(1, min(limit, 200))
    bounded_offset = max(0, offset)
    result = (
        supabase.table(METRIC_SNAPSHOT_TABLE)
        .select("id, source, request_id, counters, created_at")
        .execute()
    )
    rows = result.data or []
    rows = sorted(rows, key=lambda row: row.get("created_at") or "", reverse=True)
    return rows[bounded_offset:bounded_offset + bounded_limit]


@router.post("/observability/metrics-snapshots/flush", response_model=MetricsSnapshotFlushResponse)
async def flush_metrics_snapshot(
    data: MetricsSnapshotFlushRequest,
    request: Request,
    ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    request_id = getattr(request.state, "request_id", None)
    counter_count = len(metrics_snapshot())
    persisted = persist_metrics_snapshot(
        supabase_client=supabase,
        source=data.source,
        request_id=request_id,
        reset_after_persist=data.reset_after_persist,
        export_url=settings.observability_export_url,
        export_bearer_token=settings.observability_export_bearer_token,
        export_timeout_seconds=settings.observability_export_timeout_seconds,
    )
    log_event(
        "metrics_snapshot_flush_requested",
        request_id=request_id,
        super_admin_id=ctx.super_admin_id,
        persisted=persisted,
    )
    return MetricsSnapshotFlushResponse(
        persisted=persisted,
        source=data.source,
        counter_count=counter_count,
    )
