from __future__ import annotations

from functools import lru_cache

from entitlement_sync.config import settings
from entitlement_sync.db import get_pg_pool, supabase
from entitlement_sync.services.access import EntitlementAccess
from entitlement_sync.services.audit import AuditLog
from entitlement_sync.services.cache import EntitlementCache
from entitlement_sync.services.installations import InstallationRegistry
from entitlement_sync.services.jobs import WebhookJobQueue
from entitlement_sync.services.notifications import NotificationBus
from entitlement_sync.services.reconciliation import ReconciliationEngine
from entitlement_sync.services.store import PostgresReconciliationStore


# Process-wide collaborators built once from settings. Tests replace these getters.


@lru_cache(maxsize=1)
def get_installation_registry() -> InstallationRegistry:
    return InstallationRegistry(supabase, settings.table_names().installations)


@lru_cache(maxsize=1)
def get_audit_log() -> AuditLog:
    return AuditLog(supabase, settings.table_names().webhook_logs)


@lru_cache(maxsize=1)
def get_job_queue() -> WebhookJobQueue:
    return WebhookJobQueue(supabase, settings.table_names().webhook_jobs, settings.queue_options())


@lru_cache(maxsize=1)
def get_store() -> PostgresReconciliationStore:
    return PostgresReconciliationStore(get_pg_pool, settings.table_names())


@lru_cache(maxsize=1)
def get_cache() -> EntitlementCache:
    return EntitlementCache(
        redis_url=settings.redis_url,
        ttl_seconds=settings.cache_ttl_seconds,
        enabled=settings.cache_enabled,
    )


@lru_cache(maxsize=1)
def get_notification_bus() -> NotificationBus:
    return NotificationBus()


@lru_cache(maxsize=1)
def get_engine() -> ReconciliationEngine:
    return ReconciliationEngine(
        store=get_store(),
        cache=get_cache(),
        bus=get_notification_bus(),
        options=settings.reconciliation_options(),
    )


@lru_cache(maxsize=1)
def get_entitlement_access() -> EntitlementAccess:
    return EntitlementAccess(store=get_store(), cache=get_cache())
