from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Final

from entitlement_sync.domain.errors import MalformedPayloadError
from entitlement_sync.models.events import (
    AccessGranted,
    AccessRevoked,
    AccessUpdated,
    ExternalUser,
    NormalizedWebhook,
    PaymentReceived,
    PaymentRefunded,
    UnknownEvent,
    UserCreated,
    UserUpdated,
)


# Sender event name (lowercased) -> canonical kind. New sender versions only add rows here.
EVENT_KIND_BY_NAME: Final[dict[str, str]] = {
    "accessafterinsert": "access_granted",
    "subscriptionadded": "access_granted",
    "subscription.added": "access_granted",
    "accessafterupdate": "access_updated",
    "subscription.updated": "access_updated",
    "accessafterdelete": "access_revoked",
    "subscriptiondeleted": "access_revoked",
    "subscription.deleted": "access_revoked",
    "userafterinsert": "user_created",
    "userafterupdate": "user_updated",
    "paymentafterinsert": "payment_received",
    "payment.completed": "payment_received",
    "invoicepaymentrefund": "payment_refunded",
    "payment.refunded": "payment_refunded",
}

_EVENT_NAME_KEYS: Final[tuple[str, ...]] = ("am-event", "event", "event_type")
_EMPTY_DATES: Final[set[str]] = {"0000-00-00", "0000-00-00 00:00:00"}


def extract_event_name(payload: dict[str, Any]) -> str | None:
    for key in _EVENT_NAME_KEYS:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def canonical_kind(declared_name: str | None) -> str | None:
    if not declared_name:
        return None
    return EVENT_KIND_BY_NAME.get(declared_name.strip().lower())


def parse_external_datetime(value: Any, *, field: str) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if not text or text in _EMPTY_DATES:
            return None
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError as exc:
            raise MalformedPayloadError(f"Unparseable {field}: {text}", reason="invalid_date") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _section(payload: dict[str, Any], name: str) -> dict[str, Any]:
    value = payload.get(name)
    return value if isinstance(value, dict) else {}


def _external_user(raw: dict[str, Any], fallback_user_id: str | None = None) -> ExternalUser:
    return ExternalUser(
        user_id=_text(raw.get("user_id")) or fallback_user_id,
        email=_text(raw.get("email")),
        login=_text(raw.get("login")),
        username=_text(raw.get("username")),
        name=_text(raw.get("name")),
        name_f=_text(raw.get("name_f")),
        name_l=_text(raw.get("name_l")),
    )


def _access_fields(payload: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    legacy = _section(payload, "data")
    access = _section(payload, "access") or legacy
    product = _section(payload, "product")
    user_raw = _section(payload, "user") or legacy
    access_user_id = _text(access.get("user_id"))
    user = _external_user(user_raw, fallback_user_id=access_user_id)
    fields = {
        "access_id": _text(access.get("access_id")),
        "user_id": access_user_id or user.user_id,
        "product_id": _text(access.get("product_id")) or _text(product.get("product_id")),
        "user": user,
    }
    if access:
        snapshot = dict(access)
    else:
        snapshot = {key: value for key, value in (("user", user_raw), ("product", product)) if value}
    return fields, snapshot


def _access_change(model: type[AccessGranted] | type[AccessUpdated]) -> Callable[[dict[str, Any]], tuple[Any, dict]]:
    def _build(payload: dict[str, Any]) -> tuple[Any, dict]:
        fields, snapshot = _access_fields(payload)
        source = _section(payload, "access") or _section(payload, "data")
        fields["begin_date"] = parse_external_datetime(source.get("begin_date"), field="begin_date")
        fields["expire_date"] = parse_external_datetime(source.get("expire_date"), field="expire_date")
        return model(**fields), snapshot

    return _build


def _access_revoked(payload: dict[str, Any]) -> tuple[AccessRevoked, dict]:
    fields, snapshot = _access_fields(payload)
    return AccessRevoked(**fields), snapshot


def _user_change(model: type[UserCreated] | type[UserUpdated]) -> Callable[[dict[str, Any]], tuple[Any, dict]]:
    def _build(payload: dict[str, Any]) -> tuple[Any, dict]:
        user_raw = _section(payload, "user") or _section(payload, "data")
        return model(user=_external_user(user_raw)), dict(user_raw)

    return _build


def _payment_received(payload: dict[str, Any]) -> tuple[PaymentReceived, dict]:
    legacy = _section(payload, "data")
    payment = _section(payload, "payment") or legacy
    user = _external_user(_section(payload, "user") or legacy, fallback_user_id=_text(payment.get("user_id")))
    event = PaymentReceived(
        payment_id=_text(payment.get("payment_id")),
        invoice_id=_text(payment.get("invoice_id")),
        amount=_text(payment.get("amount")),
        currency=_text(payment.get("currency")),
        user=user,
    )
    return event, dict(payment)


def _payment_refunded(payload: dict[str, Any]) -> tuple[PaymentRefunded, dict]:
    legacy = _section(payload, "data")
    refund = _section(payload, "refund") or legacy
    user = _external_user(_section(payload, "user") or legacy, fallback_user_id=_text(refund.get("user_id")))
    event = PaymentRefunded(
        refund_id=_text(refund.get("refund_id")),
        payment_id=_text(refund.get("payment_id")),
        amount=_text(refund.get("amount")),
        user=user,
    )
    return event, dict(refund)


_BUILDERS: Final[dict[str, Callable[[dict[str, Any]], tuple[Any, dict]]]] = {
    "access_granted": _access_change(AccessGranted),
    "access_updated": _access_change(AccessUpdated),
    "access_revoked": _access_revoked,
    "user_created": _user_change(UserCreated),
    "user_updated": _user_change(UserUpdated),
    "payment_received": _payment_received,
    "payment_refunded": _payment_refunded,
}


def normalize_webhook(declared_name: str | None, payload: dict[str, Any]) -> NormalizedWebhook:
    if not declared_name:
        raise MalformedPayloadError("Webhook payload has no event name", reason="missing_event_name")
    kind = canonical_kind(declared_name)
    if kind is None:
        return NormalizedWebhook(
            declared_name=declared_name,
            event=UnknownEvent(declared_name=declared_name),
        )
    event, snapshot = _BUILDERS[kind](payload)
    return NormalizedWebhook(declared_name=declared_name, event=event, snapshot=snapshot)
