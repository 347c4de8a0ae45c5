from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from entitlement_sync.config import settings
from entitlement_sync.main import app
from entitlement_sync.models.events import AccessGranted, AccessRevoked, ExternalUser
from entitlement_sync.models.subscriptions import EntitlementUpsert
from entitlement_sync.observability import metric_total, metrics_snapshot
from entitlement_sync.services.access import EntitlementAccess
from entitlement_sync.services.cache import cache_key
from entitlement_sync.services.runtime import get_entitlement_access

from fakes import FIXED_NOW


def _seed(store, user, *, access_id, product_id, begin=None, expire=None, status="active"):
    with store.transaction() as session:
        return session.upsert_subscription(
            EntitlementUpsert(
                installation_id=user.installation_id,
                access_id=access_id,
                user_id=user.external_user_id,
                product_id=product_id,
                begin_date=begin,
                expire_date=expire,
                status=status,
            )
        )


@pytest.fixture
def user(store):
    return store.add_user(email="john@example.com", username="john", external_user_id="77", installation_id="inst-x")


@pytest.fixture
def access(store, cache):
    return EntitlementAccess(store=store, cache=cache, clock=lambda: FIXED_NOW)


def test_product_access_requires_active_record(access, store, user):
    _seed(store, user, access_id="1", product_id="50", expire=FIXED_NOW + timedelta(days=30))
    _seed(store, user, access_id="2", product_id="60", begin=FIXED_NOW + timedelta(days=1), status="pending")

    assert access.has_product_access(user, "50")
    assert access.has_product_access(user, ["60", "50"])
    assert not access.has_product_access(user, "60")
    assert not access.has_product_access(user, [])
    assert access.has_active_subscription(user)


def test_status_is_rederived_when_expiry_passed_since_write(access, store, user):
    # stored as active, but the expiry is already behind the clock
    _seed(store, user, access_id="1", product_id="50", expire=FIXED_NOW - timedelta(seconds=1), status="active")

    [record] = access.subscriptions(user)

    assert record.status == "expired"
    assert not access.has_active_subscription(user)


def test_unlinked_user_without_records_has_no_subscriptions(access, store):
    unlinked = store.add_user(email="plain@example.com")

    assert access.subscriptions(unlinked) == []
    assert not access.has_active_subscription(unlinked)


def test_subscriptions_are_served_from_cache_after_first_read(access, store, user, fake_redis):
    _seed(store, user, access_id="1", product_id="50")

    access.subscriptions(user)
    transactions_after_first = store.transactions
    access.subscriptions(user)

    assert cache_key(user.id) in fake_redis.values
    assert store.transactions == transactions_after_first
    snapshot = metrics_snapshot()
    assert metric_total(snapshot, "cache.miss") == 1
    assert metric_total(snapshot, "cache.hit") == 1


def test_reconciliation_invalidates_cached_view(store, cache, engine, installation, user, fake_redis):
    access = EntitlementAccess(store=store, cache=cache, clock=lambda: FIXED_NOW)
    _seed(store, user, access_id="1", product_id="50")
    assert access.has_product_access(user, "50")

    engine.apply(installation, AccessRevoked(access_id="1", user_id="77"))

    assert cache_key(user.id) not in fake_redis.values
    assert not access.has_product_access(user, "50")


def test_redis_outage_falls_back_to_store(access, store, user, fake_redis):
    _seed(store, user, access_id="1", product_id="50")
    fake_redis.fail = True

    assert access.has_product_access(user, "50")
    assert metric_total(metrics_snapshot(), "cache.errors") == 1
    assert fake_redis.values == {}


def _grant_for(external_user_id, product_id, *, access_id="3911"):
    return AccessGranted(
        access_id=access_id,
        user_id=external_user_id,
        product_id=product_id,
        user=ExternalUser(user_id=external_user_id, email="john@example.com"),
    )


def test_grants_from_two_installations_reach_one_email_matched_user(
    store, cache, engine, installation, other_installation
):
    engine.apply(installation, _grant_for("7", "50"))
    engine.apply(other_installation, _grant_for("42", "60"))

    [user] = store.users()
    access = EntitlementAccess(store=store, cache=cache, clock=lambda: FIXED_NOW)

    assert (user.installation_id, user.external_user_id) == ("inst-x", "7")
    assert access.has_product_access(user, "50")
    assert access.has_product_access(user, "60")
    assert sorted((record.installation_id, record.product_id) for record in access.subscriptions(user)) == [
        ("inst-x", "50"),
        ("inst-y", "60"),
    ]


class _CommitAfterRead:
    """Store wrapper that runs `on_read` once, after the first read and before the caller continues."""

    def __init__(self, store, on_read):
        self._store = store
        self._on_read = on_read

    @contextmanager
    def transaction(self):
        with self._store.transaction() as session:
            yield session
        hook, self._on_read = self._on_read, None
        if hook is not None:
            hook()


def test_grant_committed_during_a_read_is_not_hidden_by_cache(store, cache, engine, installation, user):
    racing = _CommitAfterRead(store, lambda: engine.apply(installation, _grant_for("77", "50")))
    access = EntitlementAccess(store=racing, cache=cache, clock=lambda: FIXED_NOW)

    # this read started before the grant committed
    assert not access.has_active_subscription(user)

    assert access.has_product_access(user, "50")
    assert [record.access_id for record in access.subscriptions(user)] == ["3911"]
    snapshot = metrics_snapshot()
    assert metric_total(snapshot, "cache.stale") == 1
    assert metric_total(snapshot, "cache.hit") == 1


def test_view_stamped_before_invalidation_is_ignored(access, store, user, cache):
    _seed(store, user, access_id="1", product_id="50")
    _, generation_before = cache.get(user.id)
    cache.invalidate(user.id)
    cache.set(user.id, [], generation=generation_before)

    assert [record.access_id for record in access.subscriptions(user)] == ["1"]
    assert metric_total(metrics_snapshot(), "cache.stale") == 1


def test_access_without_cache(store, user):
    access = EntitlementAccess(store=store, clock=lambda: FIXED_NOW)
    _seed(store, user, access_id="1", product_id="50")

    assert access.has_product_access(user, "50")


@pytest.fixture
def client(monkeypatch, access):
    monkeypatch.setattr(settings, "internal_scheduler_secret", "sched-secret")
    app.dependency_overrides[get_entitlement_access] = lambda: access
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_internal_entitlement_check(client, store, user):
    _seed(store, user, access_id="1", product_id="50", expire=datetime(2037, 12, 31, tzinfo=timezone.utc))

    response = client.get(
        f"/api/internal/entitlements/{user.id}",
        params={"product_id": ["50", "99"]},
        headers={"X-Internal-Scheduler-Secret": "sched-secret"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["user_id"] == user.id
    assert body["has_active_subscription"] is True
    assert body["has_product_access"] is True
    assert body["product_ids"] == ["50", "99"]
    assert [row["access_id"] for row in body["subscriptions"]] == ["1"]


def test_internal_entitlement_check_without_product_filter(client, user):
    response = client.get(
        f"/api/internal/entitlements/{user.id}",
        headers={"X-Internal-Scheduler-Secret": "sched-secret"},
    )

    assert response.status_code == 200
    assert response.json()["has_active_subscription"] is False
    assert response.json()["has_product_access"] is None


def test_internal_entitlement_check_unknown_user(client):
    response = client.get(
        "/api/internal/entitlements/user-missing",
        headers={"X-Internal-Scheduler-Secret": "sched-secret"},
    )

    assert response.status_code == 404
