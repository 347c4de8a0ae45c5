import hmac
from fastapi import Header, HTTPException, Request, status
from entitlement_sync.auth.context import InternalCallerContext, SuperAdminContext
from entitlement_sync.auth.jwt import decode_super_admin_token
from entitlement_sync.config import settings
from entitlement_sync.db import supabase
from entitlement_sync.observability import incr_metric, log_event


def _extract_bearer_token(authorization: str | None) -> str | None:
    """Extract token from 'Bearer <token>' header."""
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


async def get_current_super_admin(authorization: str | None = Header(None)) -> SuperAdminContext:
    """
    Operator JWT auth. Validates token type is 'super_admin' and the account still exists.
    """
    token = _extract_bearer_token(authorization)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization header",
        )

    payload = decode_super_admin_token(token)
    if not payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired super-admin token",
        )

    result = supabase.table("super_admins").select("id, email").eq(
        "id", payload["sub"]
    ).execute()

    if not result.data:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Super-admin not found",
        )

    super_admin = result.data[0]
    return SuperAdminContext(
        super_admin_id=super_admin["id"],
        email=super_admin["email"],
    )


async def require_internal_secret(
    request: Request,
    x_internal_scheduler_secret: str | None = Header(default=None),
) -> InternalCallerContext:
    """Shared-secret guard for scheduler and service-to-service endpoints."""
    request_id = getattr(request.state, "request_id", None)
    configured_secret = settings.internal_scheduler_secret
    if not configured_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="internal scheduler secret is not configured",
        )
    if not x_internal_scheduler_secret or not hmac.compare_digest(
        x_internal_scheduler_secret,
        configured_secret,
    ):
        incr_metric("internal.auth_failed", path=request.url.path)
        log_event("internal_auth_failed", request_id=request_id, path=request.url.path)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid scheduler secret",
        )
    incr_metric("internal.auth_succeeded", path=request.url.path)
    return InternalCallerContext(request_id=request_id)
