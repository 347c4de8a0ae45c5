from entitlement_sync.auth.context import InternalCallerContext, SuperAdminContext
from entitlement_sync.auth.dependencies import get_current_super_admin, require_internal_secret
from entitlement_sync.auth.jwt import create_super_admin_token, decode_super_admin_token

__all__ = [
    "InternalCallerContext",
    "SuperAdminContext",
    "get_current_super_admin",
    "require_internal_secret",
    "create_super_admin_token",
    "decode_super_admin_token",
]
