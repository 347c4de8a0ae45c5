from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

import bcrypt as bcrypt_lib

from entitlement_sync.config import ReconciliationOptions
from entitlement_sync.domain.errors import MalformedPayloadError
from entitlement_sync.domain.status import derive_status
from entitlement_sync.models import events
from entitlement_sync.models.events import CanonicalEvent, ExternalUser
from entitlement_sync.models.subscriptions import (
    EntitlementRecord,
    EntitlementUpsert,
    Installation,
    LocalUser,
    ProductMapping,
)
from entitlement_sync.observability import incr_metric, log_event
from entitlement_sync.services import notifications
from entitlement_sync.services.cache import EntitlementCache
from entitlement_sync.services.notifications import NotificationBus
from entitlement_sync.services.store import ReconciliationStore, StoreSession


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def random_password_hash() -> str:
    """Credential for auto-created users: a bcrypt hash of a secret nobody ever sees."""
    return bcrypt_lib.hashpw(secrets.token_urlsafe(32).encode(), bcrypt_lib.gensalt()).decode()


def display_name_for(user: ExternalUser, fallback: str) -> str:
    if user.name:
        return user.name
    joined = " ".join(part for part in (user.name_f, user.name_l) if part)
    return joined or fallback


def username_base_for(user: ExternalUser) -> str:
    if user.username:
        return user.username
    if user.login:
        return user.login
    return (user.email or "").split("@", 1)[0] or "user"


@dataclass(frozen=True)
class ReconciliationResult:
    kind: str
    action: str
    local_user_id: str | None = None
    record: EntitlementRecord | None = None
    deleted_count: int = 0
    user_created: bool = False


class ReconciliationEngine:
    """Applies one canonical event to persisted state.

    The same engine runs inline from the ingestion endpoint and from queue workers. Every
    user + entitlement write for an event happens in one store transaction; cache
    invalidation and notifications follow the commit and never fail the event.
    """

    def __init__(
        self,
        *,
        store: ReconciliationStore,
        cache: EntitlementCache | None,
        bus: NotificationBus,
        options: ReconciliationOptions,
        clock: Callable[[], datetime] = _utcnow,
        password_hasher: Callable[[], str] = random_password_hash,
    ) -> None:
        self._store = store
        self._cache = cache
        self._bus = bus
        self._options = options
        self._clock = clock
        self._password_hasher = password_hasher
        self._handlers: dict[str, Callable[..., ReconciliationResult]] = {
            "access_granted": self._apply_access_change,
            "access_updated": self._apply_access_change,
            "access_revoked": self._apply_access_revoked,
            "user_created": self._apply_user_change,
            "user_updated": self._apply_user_change,
            "payment_received": self._apply_payment,
            "payment_refunded": self._apply_payment,
        }

    def apply(
        self,
        installation: Installation,
        event: CanonicalEvent,
        *,
        snapshot: dict[str, Any] | None = None,
        request_id: str | None = None,
    ) -> ReconciliationResult:
        handler = self._handlers.get(event.kind)
        if handler is None:
            raise MalformedPayloadError(f"No reconciliation for event kind {event.kind}", reason="unsupported_kind")
        result = handler(installation, event, snapshot=snapshot or {}, request_id=request_id)
        incr_metric("reconciliation.applied", kind=event.kind, action=result.action)
        log_event(
            "reconciliation_applied",
            request_id=request_id,
            installation_id=installation.id,
            kind=event.kind,
            action=result.action,
            local_user_id=result.local_user_id,
            access_id=getattr(event, "access_id", None),
            deleted_count=result.deleted_count,
            user_created=result.user_created,
        )
        return result

    # -- event handlers -------------------------------------------------------

    def _apply_access_change(
        self,
        installation: Installation,
        event: events.AccessGranted | events.AccessUpdated,
        *,
        snapshot: dict[str, Any],
        request_id: str | None,
    ) -> ReconciliationResult:
        record: EntitlementRecord | None = None
        product: ProductMapping | None = None
        with self._store.transaction() as session:
            user, created = self._resolve_or_create_user(session, installation, event.user, request_id=request_id)
            if event.access_id:
                status = derive_status(self._clock(), event.begin_date, event.expire_date)
                record = session.upsert_subscription(
                    EntitlementUpsert(
                        installation_id=installation.id,
                        access_id=event.access_id,
                        user_id=event.user_id or user.external_user_id,
                        local_user_id=user.id,
                        product_id=event.product_id,
                        begin_date=event.begin_date,
                        expire_date=event.expire_date,
                        status=status,
                        data=snapshot,
                    )
                )
            if event.product_id:
                product = session.find_product_mapping(installation.id, event.product_id)

        self._invalidate(user.id, request_id=request_id)
        notification_type = (
            notifications.SubscriptionAdded if event.kind == "access_granted" else notifications.SubscriptionUpdated
        )
        self._bus.emit(
            notification_type(installation=installation, user=user, record=record, product=product, payload=snapshot),
            request_id=request_id,
        )
        return ReconciliationResult(
            kind=event.kind,
            action="upserted" if record else "user_resolved",
            local_user_id=user.id,
            record=record,
            user_created=created,
        )

    def _apply_access_revoked(
        self,
        installation: Installation,
        event: events.AccessRevoked,
        *,
        snapshot: dict[str, Any],
        request_id: str | None,
    ) -> ReconciliationResult:
        if not event.access_id and not (event.user_id and event.product_id):
            raise MalformedPayloadError(
                "Revoke needs an access id or a user id and product id",
                reason="missing_revoke_key",
            )
        with self._store.transaction() as session:
            if event.access_id:
                removed = session.delete_subscription(installation.id, event.access_id)
                deleted = [removed] if removed else []
            else:
                deleted = session.delete_subscriptions_for_product(installation.id, event.user_id, event.product_id)
            external_user_id = event.user_id or (deleted[0].user_id if deleted else None)
            user = self._find_user(session, installation, event.user, external_user_id=external_user_id)
            product_id = event.product_id or (deleted[0].product_id if deleted else None)
            product = session.find_product_mapping(installation.id, product_id) if product_id else None

        if not deleted:
            # Duplicate or reordered delivery; nothing to remove.
            incr_metric("reconciliation.revoke.absent")
        if user:
            self._invalidate(user.id, request_id=request_id)
        self._bus.emit(
            notifications.SubscriptionDeleted(
                installation=installation,
                user=user,
                records=tuple(deleted),
                access_id=event.access_id,
                product=product,
                payload=snapshot,
            ),
            request_id=request_id,
        )
        return ReconciliationResult(
            kind=event.kind,
            action="deleted" if deleted else "noop",
            local_user_id=user.id if user else None,
            deleted_count=len(deleted),
        )

    def _apply_user_change(
        self,
        installation: Installation,
        event: events.UserCreated | events.UserUpdated,
        *,
        snapshot: dict[str, Any],
        request_id: str | None,
    ) -> ReconciliationResult:
        if not self._options.user_creation_enabled:
            log_event(
                "reconciliation_user_event_skipped",
                request_id=request_id,
                installation_id=installation.id,
                kind=event.kind,
                external_user_id=event.user.user_id,
            )
            return ReconciliationResult(kind=event.kind, action="skipped")

        changed: tuple[str, ...] = ()
        with self._store.transaction() as session:
            user, created = self._resolve_or_create_user(session, installation, event.user, request_id=request_id)
            if self._options.sync_user_data and not created:
                user, changed = self._sync_user_fields(session, user, event.user)

        self._invalidate(user.id, request_id=request_id)
        if event.kind == "user_created":
            notification: Any = notifications.UserCreated(installation=installation, user=user, payload=snapshot)
        else:
            notification = notifications.UserUpdated(
                installation=installation,
                user=user,
                changed_fields=changed,
                payload=snapshot,
            )
        self._bus.emit(notification, request_id=request_id)
        if changed:
            action = "user_synced"
        elif created:
            action = "user_created"
        else:
            action = "user_resolved"
        return ReconciliationResult(kind=event.kind, action=action, local_user_id=user.id, user_created=created)

    def _apply_payment(
        self,
        installation: Installation,
        event: events.PaymentReceived | events.PaymentRefunded,
        *,
        snapshot: dict[str, Any],
        request_id: str | None,
    ) -> ReconciliationResult:
        with self._store.transaction() as session:
            user = self._find_user(session, installation, event.user, external_user_id=event.user.user_id)

        if user:
            self._invalidate(user.id, request_id=request_id)
        notification_type = (
            notifications.PaymentReceived if event.kind == "payment_received" else notifications.PaymentRefunded
        )
        self._bus.emit(
            notification_type(installation=installation, user=user, payload=snapshot),
            request_id=request_id,
        )
        return ReconciliationResult(kind=event.kind, action="notified", local_user_id=user.id if user else None)

    # -- user matching --------------------------------------------------------

    def _find_user(
        self,
        session: StoreSession,
        installation: Installation,
        external: ExternalUser,
        *,
        external_user_id: str | None,
    ) -> LocalUser | None:
        if external_user_id:
            user = session.find_user_by_external_id(external_user_id, installation.id)
            if user:
                return user
        if external.email:
            return session.find_user_by_email(external.email)
        return None

    def _resolve_or_create_user(
        self,
        session: StoreSession,
        installation: Installation,
        external: ExternalUser,
        *,
        request_id: str | None,
    ) -> tuple[LocalUser, bool]:
        """First match wins: external id + installation, then email, then a new user."""
        if not external.email:
            raise MalformedPayloadError("Email required in webhook user data", reason="missing_email")

        if external.user_id:
            user = session.find_user_by_external_id(external.user_id, installation.id)
            if user:
                return user, False

        user = session.find_user_by_email(external.email)
        if user:
            backfill = self._link_backfill(user, installation, external)
            if backfill is None:
                log_event(
                    "reconciliation_user_link_conflict",
                    request_id=request_id,
                    installation_id=installation.id,
                    local_user_id=user.id,
                    linked_installation_id=user.installation_id,
                )
            elif backfill:
                user = session.update_user(user.id, backfill)
                log_event(
                    "reconciliation_user_linked",
                    request_id=request_id,
                    installation_id=installation.id,
                    local_user_id=user.id,
                    fields=sorted(backfill),
                )
            return user, False

        base = username_base_for(external)
        username = self._unique_username(session, base)
        user = session.create_user(
            email=external.email,
            name=display_name_for(external, base),
            username=username,
            password_hash=self._password_hasher(),
            external_user_id=external.user_id,
            installation_id=installation.id,
        )
        incr_metric("reconciliation.users.created")
        log_event(
            "reconciliation_user_created",
            request_id=request_id,
            installation_id=installation.id,
            local_user_id=user.id,
            username=username,
        )
        return user, True

    @staticmethod
    def _link_backfill(user: LocalUser, installation: Installation, external: ExternalUser) -> dict[str, Any] | None:
        """Missing link columns to fill in, or None when the user's link points elsewhere.

        A half-set link only gets completed when the half that is set agrees with this event.
        """
        if user.installation_id and user.installation_id != installation.id:
            return None
        if user.external_user_id and user.external_user_id != external.user_id:
            return None
        backfill: dict[str, Any] = {}
        if not user.external_user_id and external.user_id:
            backfill["external_user_id"] = external.user_id
        if not user.installation_id:
            backfill["installation_id"] = installation.id
        return backfill

    @staticmethod
    def _unique_username(session: StoreSession, base: str) -> str:
        candidate = base
        suffix = 1
        while session.username_exists(candidate):
            candidate = f"{base}-{suffix}"
            suffix += 1
        return candidate

    def _sync_user_fields(
        self,
        session: StoreSession,
        user: LocalUser,
        external: ExternalUser,
    ) -> tuple[LocalUser, tuple[str, ...]]:
        syncable = set(self._options.syncable_fields)
        updates: dict[str, Any] = {}
        if "email" in syncable and external.email and external.email != user.email:
            updates["email"] = external.email
        wanted_name: str | None = None
        if syncable & {"name_f", "name_l"}:
            wanted_name = " ".join(part for part in (external.name_f, external.name_l) if part) or None
        if not wanted_name and "name" in syncable:
            wanted_name = external.name
        if wanted_name and wanted_name != user.name:
            updates["name"] = wanted_name
        if not updates:
            return user, ()
        return session.update_user(user.id, updates), tuple(sorted(updates))

    def _invalidate(self, local_user_id: str, *, request_id: str | None) -> None:
        if self._cache is not None:
            self._cache.invalidate(local_user_id, request_id=request_id)
