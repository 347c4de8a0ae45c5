from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable

from entitlement_sync.models.subscriptions import EntitlementRecord, Installation, LocalUser, ProductMapping
from entitlement_sync.observability import incr_metric, log_event


@dataclass(frozen=True)
class SubscriptionAdded:
    installation: Installation
    user: LocalUser | None
    record: EntitlementRecord | None
    product: ProductMapping | None = None
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SubscriptionUpdated:
    installation: Installation
    user: LocalUser | None
    record: EntitlementRecord | None
    product: ProductMapping | None = None
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SubscriptionDeleted:
    installation: Installation
    user: LocalUser | None
    records: tuple[EntitlementRecord, ...] = ()
    access_id: str | None = None
    product: ProductMapping | None = None
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class UserCreated:
    installation: Installation
    user: LocalUser
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class UserUpdated:
    installation: Installation
    user: LocalUser
    changed_fields: tuple[str, ...] = ()
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PaymentReceived:
    installation: Installation
    user: LocalUser | None
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PaymentRefunded:
    installation: Installation
    user: LocalUser | None
    payload: dict[str, Any] = field(default_factory=dict)


Handler = Callable[[Any], None]


class NotificationBus:
    """In-process fan-out of domain notifications to subscribed handlers.

    Delivery happens after the reconciliation transaction commits; a failing handler is
    logged and does not affect other handlers or the event outcome.
    """

    def __init__(self) -> None:
        self._handlers: dict[type, list[Handler]] = defaultdict(list)
        self._lock = Lock()

    def subscribe(self, notification_type: type, handler: Handler) -> None:
        with self._lock:
            self._handlers[notification_type].append(handler)

    def handlers_for(self, notification_type: type) -> list[Handler]:
        with self._lock:
            return list(self._handlers.get(notification_type, ()))

    def emit(self, notification: Any, *, request_id: str | None = None) -> int:
        name = type(notification).__name__
        delivered = 0
        for handler in self.handlers_for(type(notification)):
            try:
                handler(notification)
            except Exception as exc:
                incr_metric("notifications.handler_failed", notification=name)
                log_event(
                    "notification_handler_failed",
                    level=logging.ERROR,
                    request_id=request_id,
                    notification=name,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    error=str(exc),
                )
                continue
            delivered += 1
        incr_metric("notifications.emitted", notification=name)
        return delivered
