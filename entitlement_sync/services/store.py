from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Callable, Iterator, Protocol

import psycopg2
from psycopg2 import sql
from psycopg2.extras import Json, RealDictCursor
from psycopg2.pool import ThreadedConnectionPool

from entitlement_sync.config import TableNames
from entitlement_sync.domain.errors import TransientError
from entitlement_sync.models.subscriptions import (
    EntitlementRecord,
    EntitlementUpsert,
    LocalUser,
    ProductMapping,
)


class StoreSession(Protocol):
    """Reads and writes inside one reconciliation transaction."""

    def find_user_by_external_id(self, external_user_id: str, installation_id: str) -> LocalUser | None: ...

    def find_user_by_email(self, email: str) -> LocalUser | None: ...

    def get_user(self, user_id: str) -> LocalUser | None: ...

    def username_exists(self, username: str) -> bool: ...

    def create_user(
        self,
        *,
        email: str,
        name: str,
        username: str,
        password_hash: str,
        external_user_id: str | None,
        installation_id: str,
    ) -> LocalUser: ...

    def update_user(self, user_id: str, fields: dict[str, Any]) -> LocalUser: ...

    def upsert_subscription(self, record: EntitlementUpsert) -> EntitlementRecord: ...

    def delete_subscription(self, installation_id: str, access_id: str) -> EntitlementRecord | None: ...

    def delete_subscriptions_for_product(
        self, installation_id: str, user_id: str, product_id: str
    ) -> list[EntitlementRecord]: ...

    def find_product_mapping(self, installation_id: str, product_id: str) -> ProductMapping | None: ...

    def list_subscriptions_for_user(self, user: LocalUser) -> list[EntitlementRecord]: ...


class ReconciliationStore(Protocol):
    def transaction(self) -> Any:
        """Context manager yielding a StoreSession; commits on clean exit, rolls back on error."""
        ...


# Local attribute -> users table column.
_USER_COLUMNS = {
    "email": "email",
    "name": "name",
    "username": "username",
    "external_user_id": "amember_user_id",
    "installation_id": "amember_installation_id",
}

_USER_SELECT = sql.SQL(
    "SELECT id::text AS id, email, name, username, amember_user_id AS external_user_id, "
    "amember_installation_id::text AS installation_id FROM {table}"
)

_SUBSCRIPTION_RETURNING = sql.SQL(
    "id::text AS id, installation_id::text AS installation_id, access_id, user_id, "
    "local_user_id::text AS local_user_id, product_id, "
    "begin_date, expire_date, status, data, created_at, updated_at"
)

_TRANSIENT_ERRORS = (psycopg2.OperationalError, psycopg2.InterfaceError, psycopg2.IntegrityError)


class _PostgresSession:
    def __init__(self, cursor: Any, tables: TableNames) -> None:
        self._cur = cursor
        self._users = sql.Identifier(tables.users)
        self._subscriptions = sql.Identifier(tables.subscriptions)
        self._products = sql.Identifier(tables.products)

    def _one_user(self, where: sql.Composable, params: tuple[Any, ...]) -> LocalUser | None:
        query = sql.SQL("{select} WHERE {where} LIMIT 1").format(
            select=_USER_SELECT.format(table=self._users),
            where=where,
        )
        self._cur.execute(query, params)
        row = self._cur.fetchone()
        return LocalUser(**row) if row else None

    def find_user_by_external_id(self, external_user_id: str, installation_id: str) -> LocalUser | None:
        return self._one_user(
            sql.SQL("amember_user_id = %s AND amember_installation_id = %s"),
            (external_user_id, installation_id),
        )

    def find_user_by_email(self, email: str) -> LocalUser | None:
        return self._one_user(sql.SQL("lower(email) = lower(%s)"), (email,))

    def get_user(self, user_id: str) -> LocalUser | None:
        return self._one_user(sql.SQL("id = %s"), (user_id,))

    def username_exists(self, username: str) -> bool:
        self._cur.execute(
            sql.SQL("SELECT 1 FROM {table} WHERE username = %s LIMIT 1").format(table=self._users),
            (username,),
        )
        return self._cur.fetchone() is not None

    def create_user(
        self,
        *,
        email: str,
        name: str,
        username: str,
        password_hash: str,
        external_user_id: str | None,
        installation_id: str,
    ) -> LocalUser:
        self._cur.execute(
            sql.SQL(
                "INSERT INTO {table} (email, name, username, password, amember_user_id, "
                "amember_installation_id, created_at, updated_at) "
                "VALUES (%s, %s, %s, %s, %s, %s, NOW(), NOW()) RETURNING id::text AS id"
            ).format(table=self._users),
            (email, name, username, password_hash, external_user_id, installation_id),
        )
        row = self._cur.fetchone()
        return LocalUser(
            id=row["id"],
            email=email,
            name=name,
            username=username,
            external_user_id=external_user_id,
            installation_id=installation_id,
        )

    def update_user(self, user_id: str, fields: dict[str, Any]) -> LocalUser:
        unknown = set(fields) - set(_USER_COLUMNS)
        if unknown:
            raise ValueError(f"Unsupported user fields: {sorted(unknown)}")
        if fields:
            assignments = sql.SQL(", ").join(
                sql.SQL("{} = %s").format(sql.Identifier(_USER_COLUMNS[key])) for key in fields
            )
            self._cur.execute(
                sql.SQL("UPDATE {table} SET {assignments}, updated_at = NOW() WHERE id = %s").format(
                    table=self._users,
                    assignments=assignments,
                ),
                (*fields.values(), user_id),
            )
        user = self.get_user(user_id)
        if user is None:
            raise LookupError(f"User {user_id} disappeared during update")
        return user

    def upsert_subscription(self, record: EntitlementUpsert) -> EntitlementRecord:
        self._cur.execute(
            sql.SQL(
                "INSERT INTO {table} (installation_id, access_id, user_id, product_id, begin_date, "
                "expire_date, status, data, local_user_id, created_at, updated_at) "
                "VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, NOW(), NOW()) "
                "ON CONFLICT (installation_id, access_id) DO UPDATE SET "
                "user_id = EXCLUDED.user_id, product_id = EXCLUDED.product_id, "
                "begin_date = EXCLUDED.begin_date, expire_date = EXCLUDED.expire_date, "
                "status = EXCLUDED.status, data = EXCLUDED.data, "
                "local_user_id = COALESCE(EXCLUDED.local_user_id, {table}.local_user_id), updated_at = NOW() "
                "RETURNING {returning}"
            ).format(table=self._subscriptions, returning=_SUBSCRIPTION_RETURNING),
            (
                record.installation_id,
                record.access_id,
                record.user_id,
                record.product_id,
                record.begin_date,
                record.expire_date,
                record.status,
                Json(record.data),
                record.local_user_id,
            ),
        )
        return EntitlementRecord(**self._cur.fetchone())

    def delete_subscription(self, installation_id: str, access_id: str) -> EntitlementRecord | None:
        self._cur.execute(
            sql.SQL(
                "DELETE FROM {table} WHERE installation_id = %s AND access_id = %s RETURNING {returning}"
            ).format(table=self._subscriptions, returning=_SUBSCRIPTION_RETURNING),
            (installation_id, access_id),
        )
        row = self._cur.fetchone()
        return EntitlementRecord(**row) if row else None

    def delete_subscriptions_for_product(
        self, installation_id: str, user_id: str, product_id: str
    ) -> list[EntitlementRecord]:
        self._cur.execute(
            sql.SQL(
                "DELETE FROM {table} WHERE installation_id = %s AND user_id = %s AND product_id = %s "
                "RETURNING {returning}"
            ).format(table=self._subscriptions, returning=_SUBSCRIPTION_RETURNING),
            (installation_id, user_id, product_id),
        )
        return [EntitlementRecord(**row) for row in self._cur.fetchall()]

    def find_product_mapping(self, installation_id: str, product_id: str) -> ProductMapping | None:
        self._cur.execute(
            sql.SQL(
                "SELECT id::text AS id, installation_id::text AS installation_id, product_id, title, tier, "
                "display_name, slug, mappable_type, mappable_id::text AS mappable_id, "
                "coalesce(features, '{{}}'::jsonb) AS features, coalesce(metadata, '{{}}'::jsonb) AS metadata, "
                "is_active FROM {table} WHERE installation_id = %s AND product_id = %s LIMIT 1"
            ).format(table=self._products),
            (installation_id, product_id),
        )
        row = self._cur.fetchone()
        return ProductMapping(**row) if row else None

    def list_subscriptions_for_user(self, user: LocalUser) -> list[EntitlementRecord]:
        """Records owned by the local user, from any installation.

        Rows written before `local_user_id` existed are still found through the user's link.
        """
        where = sql.SQL("local_user_id = %s")
        params: tuple[Any, ...] = (user.id,)
        if user.external_user_id and user.installation_id:
            where = sql.SQL("local_user_id = %s OR (installation_id = %s AND user_id = %s)")
            params = (user.id, user.installation_id, user.external_user_id)
        self._cur.execute(
            sql.SQL("SELECT {returning} FROM {table} WHERE {where} ORDER BY created_at").format(
                table=self._subscriptions,
                returning=_SUBSCRIPTION_RETURNING,
                where=where,
            ),
            params,
        )
        return [EntitlementRecord(**row) for row in self._cur.fetchall()]


class PostgresReconciliationStore:
    """One psycopg2 transaction per reconciled event.

    `with conn:` commits on clean exit and rolls back on any exception, so the user write and
    the entitlement write land together or not at all.
    """

    def __init__(self, pool_factory: Callable[[], ThreadedConnectionPool], tables: TableNames) -> None:
        self._pool_factory = pool_factory
        self._tables = tables

    @contextmanager
    def transaction(self) -> Iterator[_PostgresSession]:
        try:
            pool = self._pool_factory()
            conn = pool.getconn()
        except psycopg2.Error as exc:
            raise TransientError(f"Reconciliation store unavailable: {exc}", reason="storage_unavailable") from exc
        try:
            with conn:
                with conn.cursor(cursor_factory=RealDictCursor) as cur:
                    yield _PostgresSession(cur, self._tables)
        except _TRANSIENT_ERRORS as exc:
            raise TransientError(f"Reconciliation write failed: {exc}", reason="storage_error") from exc
        finally:
            pool.putconn(conn, close=bool(conn.closed))
