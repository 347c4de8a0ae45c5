from __future__ import annotations

from pydantic import BaseModel

from entitlement_sync.models.subscriptions import EntitlementRecord


class EntitlementCheckResponse(BaseModel):
    user_id: str
    has_active_subscription: bool
    subscriptions: list[EntitlementRecord]
    product_ids: list[str] = []
    has_product_access: bool | None = None
