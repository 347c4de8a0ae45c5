from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter


class ExternalUser(BaseModel):
    """User fields as sent by the installation. Any of them may be missing."""

    user_id: str | None = None
    email: str | None = None
    login: str | None = None
    username: str | None = None
    name: str | None = None
    name_f: str | None = None
    name_l: str | None = None


class _AccessChange(BaseModel):
    access_id: str | None = None
    user_id: str | None = None
    product_id: str | None = None
    begin_date: datetime | None = None
    expire_date: datetime | None = None
    user: ExternalUser = Field(default_factory=ExternalUser)


class AccessGranted(_AccessChange):
    kind: Literal["access_granted"] = "access_granted"


class AccessUpdated(_AccessChange):
    kind: Literal["access_updated"] = "access_updated"


class AccessRevoked(BaseModel):
    kind: Literal["access_revoked"] = "access_revoked"
    access_id: str | None = None
    user_id: str | None = None
    product_id: str | None = None
    user: ExternalUser = Field(default_factory=ExternalUser)


class UserCreated(BaseModel):
    kind: Literal["user_created"] = "user_created"
    user: ExternalUser = Field(default_factory=ExternalUser)


class UserUpdated(BaseModel):
    kind: Literal["user_updated"] = "user_updated"
    user: ExternalUser = Field(default_factory=ExternalUser)


class PaymentReceived(BaseModel):
    kind: Literal["payment_received"] = "payment_received"
    payment_id: str | None = None
    invoice_id: str | None = None
    amount: str | None = None
    currency: str | None = None
    user: ExternalUser = Field(default_factory=ExternalUser)


class PaymentRefunded(BaseModel):
    kind: Literal["payment_refunded"] = "payment_refunded"
    refund_id: str | None = None
    payment_id: str | None = None
    amount: str | None = None
    user: ExternalUser = Field(default_factory=ExternalUser)


class UnknownEvent(BaseModel):
    kind: Literal["unknown"] = "unknown"
    declared_name: str | None = None


CanonicalEvent = Annotated[
    Union[
        AccessGranted,
        AccessUpdated,
        AccessRevoked,
        UserCreated,
        UserUpdated,
        PaymentReceived,
        PaymentRefunded,
    ],
    Field(discriminator="kind"),
]

canonical_event_adapter: TypeAdapter[CanonicalEvent] = TypeAdapter(CanonicalEvent)

NormalizedEvent = Annotated[
    Union[
        AccessGranted,
        AccessUpdated,
        AccessRevoked,
        UserCreated,
        UserUpdated,
        PaymentReceived,
        PaymentRefunded,
        UnknownEvent,
    ],
    Field(discriminator="kind"),
]


class NormalizedWebhook(BaseModel):
    """Result of normalizing one inbound request.

    `snapshot` is the raw sub-object preserved for audit and for the entitlement record;
    it never travels inside the canonical event itself.
    """

    declared_name: str | None
    event: NormalizedEvent
    snapshot: dict = Field(default_factory=dict)

    @property
    def is_unknown(self) -> bool:
        return isinstance(self.event, UnknownEvent)
