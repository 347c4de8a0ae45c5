from __future__ import annotations

from threading import Lock
from typing import Any

from psycopg2.pool import ThreadedConnectionPool
from supabase import Client, create_client

from entitlement_sync.config import settings


_client_lock = Lock()
_client: Client | None = None
_pool: ThreadedConnectionPool | None = None


def get_supabase_client() -> Client:
    global _client
    with _client_lock:
        if _client is None:
            _client = create_client(settings.supabase_url, settings.supabase_service_role_key)
        return _client


def get_pg_pool() -> ThreadedConnectionPool:
    """Connection pool for the transactional reconciliation store.

    Sized so every worker slot can hold a connection while the API keeps a few spare.
    """
    global _pool
    with _client_lock:
        if _pool is None:
            _pool = ThreadedConnectionPool(
                minconn=1,
                maxconn=settings.webhook_worker_slots + 4,
                dsn=settings.database_url,
            )
        return _pool


class _LazySupabase:
    """Module-level handle that creates the client on first use."""

    def table(self, table_name: str) -> Any:
        return get_supabase_client().table(table_name)

    def __getattr__(self, name: str) -> Any:
        return getattr(get_supabase_client(), name)


supabase = _LazySupabase()
