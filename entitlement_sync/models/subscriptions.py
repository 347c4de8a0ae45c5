from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


SubscriptionStatus = Literal["pending", "active", "expired"]


class Installation(BaseModel):
    id: str
    name: str
    slug: str
    api_url: str
    ip_address: str | None = None
    login_url: str | None = None
    button_text: str | None = None
    api_key: str = Field(default="", repr=False)
    webhook_secret: str | None = Field(default=None, repr=False)
    is_active: bool = True
    notes: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_unsecured(self) -> bool:
        return not self.webhook_secret


class LocalUser(BaseModel):
    id: str
    email: str
    name: str | None = None
    username: str | None = None
    external_user_id: str | None = None
    installation_id: str | None = None


class EntitlementUpsert(BaseModel):
    installation_id: str
    access_id: str
    user_id: str | None = None
    local_user_id: str | None = None
    product_id: str | None = None
    begin_date: datetime | None = None
    expire_date: datetime | None = None
    status: SubscriptionStatus
    data: dict[str, Any] = Field(default_factory=dict)


class EntitlementRecord(EntitlementUpsert):
    id: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ProductMapping(BaseModel):
    id: str
    installation_id: str
    product_id: str
    title: str | None = None
    tier: str | None = None
    display_name: str | None = None
    slug: str | None = None
    mappable_type: str | None = None
    mappable_id: str | None = None
    features: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True

    def has_feature(self, feature: str) -> bool:
        return bool(self.features.get(feature))
