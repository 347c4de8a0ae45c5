from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Iterable

from entitlement_sync.domain.status import derive_status
from entitlement_sync.models.subscriptions import EntitlementRecord, LocalUser
from entitlement_sync.services.cache import EntitlementCache
from entitlement_sync.services.store import ReconciliationStore


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EntitlementAccess:
    """Access checks over the local entitlement records.

    Stored status is a snapshot from the last write; checks re-derive it from the dates so an
    expiry that passed since then is honored without waiting for another webhook.
    """

    def __init__(
        self,
        *,
        store: ReconciliationStore,
        cache: EntitlementCache | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._cache = cache
        self._clock = clock

    def load_user(self, local_user_id: str) -> LocalUser | None:
        with self._store.transaction() as session:
            return session.get_user(local_user_id)

    def subscriptions(self, user: LocalUser) -> list[EntitlementRecord]:
        generation: str | None = None
        if self._cache is not None:
            cached, generation = self._cache.get(user.id)
            if cached is not None:
                return self._with_live_status(cached)
        with self._store.transaction() as session:
            records = session.list_subscriptions_for_user(user)
        if self._cache is not None:
            self._cache.set(user.id, records, generation=generation)
        return self._with_live_status(records)

    def active_subscriptions(self, user: LocalUser) -> list[EntitlementRecord]:
        return [record for record in self.subscriptions(user) if record.status == "active"]

    def has_product_access(self, user: LocalUser, product_ids: str | Iterable[str]) -> bool:
        wanted = {product_ids} if isinstance(product_ids, str) else {str(p) for p in product_ids}
        if not wanted:
            return False
        return any(record.product_id in wanted for record in self.active_subscriptions(user))

    def has_active_subscription(self, user: LocalUser) -> bool:
        return bool(self.active_subscriptions(user))

    def _with_live_status(self, records: list[EntitlementRecord]) -> list[EntitlementRecord]:
        now = self._clock()
        return [
            record.model_copy(update={"status": derive_status(now, record.begin_date, record.expire_date)})
            for record in records
        ]
