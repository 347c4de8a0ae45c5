from datetime import datetime, timezone

import pytest

from entitlement_sync.domain.errors import MalformedPayloadError, TransientError
from entitlement_sync.domain.normalization import normalize_webhook
from entitlement_sync.models.events import (
    AccessGranted,
    AccessRevoked,
    ExternalUser,
    PaymentReceived,
    UserCreated,
    UserUpdated,
)
from entitlement_sync.observability import metric_total, metrics_snapshot
from entitlement_sync.services import notifications
from entitlement_sync.services.cache import cache_key
from entitlement_sync.services.reconciliation import display_name_for, username_base_for


JOHN = {"user_id": "77", "email": "john@example.com", "login": "john", "name_f": "John", "name_l": "Doe"}


def _grant(name="accessAfterInsert", *, access_id="3911", product_id="50", expire="2037-12-31", user=None):
    payload = {
        "am-event": name,
        "access": {
            "access_id": access_id,
            "user_id": (user or JOHN)["user_id"],
            "product_id": product_id,
            "begin_date": "2025-10-20",
            "expire_date": expire,
        },
        "user": user or JOHN,
    }
    normalized = normalize_webhook(name, payload)
    return normalized.event, normalized.snapshot


def test_grant_creates_user_and_active_record(engine, store, installation):
    event, snapshot = _grant()

    result = engine.apply(installation, event, snapshot=snapshot, request_id="req-1")

    assert result.action == "upserted"
    assert result.user_created is True
    [user] = store.users()
    assert user.email == "john@example.com"
    assert user.username == "john"
    assert user.name == "John Doe"
    assert (user.external_user_id, user.installation_id) == ("77", "inst-x")
    assert store.password_hash_for(user.id) == "hashed-random-credential"
    [record] = store.subscriptions()
    assert (record.installation_id, record.access_id, record.user_id, record.product_id) == ("inst-x", "3911", "77", "50")
    assert record.status == "active"
    assert record.expire_date == datetime(2037, 12, 31, tzinfo=timezone.utc)
    assert record.data == snapshot
    assert result.local_user_id == user.id


def test_second_grant_for_same_access_updates_in_place(engine, store, installation):
    event, snapshot = _grant()
    engine.apply(installation, event, snapshot=snapshot)

    update, update_snapshot = _grant("accessAfterUpdate", expire="2030-01-01")
    result = engine.apply(installation, update, snapshot=update_snapshot)

    assert result.action == "upserted"
    assert result.user_created is False
    [record] = store.subscriptions()
    assert record.expire_date == datetime(2030, 1, 1, tzinfo=timezone.utc)
    assert record.status == "active"
    assert len(store.users()) == 1


def test_replaying_the_same_event_is_idempotent(engine, store, installation):
    event, snapshot = _grant()

    engine.apply(installation, event, snapshot=snapshot)
    first = store.subscriptions()
    engine.apply(installation, event, snapshot=snapshot)

    assert len(store.users()) == 1
    assert len(store.subscriptions()) == 1
    assert store.subscriptions()[0].id == first[0].id


def test_update_before_insert_creates_the_record(engine, store, installation):
    update, snapshot = _grant("accessAfterUpdate")

    result = engine.apply(installation, update, snapshot=snapshot)

    assert result.action == "upserted"
    [record] = store.subscriptions()
    assert record.access_id == "3911"
    assert record.status == "active"


def test_update_with_past_expiry_is_expired(engine, store, installation):
    update, snapshot = _grant("accessAfterUpdate", expire="2025-12-31")

    engine.apply(installation, update, snapshot=snapshot)

    assert store.subscriptions()[0].status == "expired"


def test_grant_with_future_begin_is_pending(engine, store, installation):
    event = AccessGranted(
        access_id="9",
        product_id="50",
        begin_date=datetime(2027, 1, 1, tzinfo=timezone.utc),
        user=ExternalUser(user_id="77", email="john@example.com"),
    )

    engine.apply(installation, event)

    assert store.subscriptions()[0].status == "pending"


def test_grant_without_access_id_only_resolves_user(engine, store, installation):
    event = AccessGranted(product_id="50", user=ExternalUser(user_id="77", email="john@example.com"))

    result = engine.apply(installation, event)

    assert result.action == "user_resolved"
    assert result.record is None
    assert store.subscriptions() == []
    assert len(store.users()) == 1


def test_same_access_id_from_two_installations_stays_separate(engine, store, installation, other_installation):
    event, snapshot = _grant()
    other_user = {**JOHN, "email": "john@other.example.com"}
    other_event, other_snapshot = _grant(user=other_user)

    engine.apply(installation, event, snapshot=snapshot)
    engine.apply(other_installation, other_event, snapshot=other_snapshot)

    records = store.subscriptions()
    assert sorted(record.installation_id for record in records) == ["inst-x", "inst-y"]
    assert len(store.users()) == 2

    engine.apply(installation, AccessRevoked(access_id="3911"))

    [remaining] = store.subscriptions()
    assert remaining.installation_id == "inst-y"


def test_revoke_removes_record_and_invalidates_cache(engine, store, installation, fake_redis):
    event, snapshot = _grant()
    granted = engine.apply(installation, event, snapshot=snapshot)
    engine.apply(installation, _grant(access_id="4000", product_id="60")[0])
    fake_redis.deleted.clear()

    result = engine.apply(installation, AccessRevoked(access_id="3911", user_id="77"))

    assert result.action == "deleted"
    assert result.deleted_count == 1
    assert result.local_user_id == granted.local_user_id
    assert [record.access_id for record in store.subscriptions()] == ["4000"]
    assert fake_redis.deleted == [cache_key(granted.local_user_id)]


def test_revoke_of_absent_record_is_a_noop(engine, store, installation):
    result = engine.apply(installation, AccessRevoked(access_id="404"))

    assert result.action == "noop"
    assert result.deleted_count == 0
    assert metric_total(metrics_snapshot(), "reconciliation.revoke.absent") == 1


def test_revoke_by_user_and_product(engine, store, installation):
    engine.apply(installation, _grant(access_id="1")[0])
    engine.apply(installation, _grant(access_id="2")[0])
    engine.apply(installation, _grant(access_id="3", product_id="60")[0])

    result = engine.apply(installation, AccessRevoked(user_id="77", product_id="50"))

    assert result.deleted_count == 2
    assert [record.access_id for record in store.subscriptions()] == ["3"]


def test_revoke_without_any_key_is_malformed(engine, installation):
    with pytest.raises(MalformedPayloadError) as exc_info:
        engine.apply(installation, AccessRevoked(user_id="77"))
    assert exc_info.value.reason == "missing_revoke_key"


def test_existing_link_wins_over_email(engine, store, installation):
    linked = store.add_user(email="old@example.com", username="linked", external_user_id="77", installation_id="inst-x")
    store.add_user(email="john@example.com", username="john")

    result = engine.apply(installation, _grant()[0])

    assert result.local_user_id == linked.id
    assert result.user_created is False


def test_email_match_backfills_missing_link(engine, store, installation):
    existing = store.add_user(email="John@Example.com", username="johnny")

    result = engine.apply(installation, _grant()[0])

    assert result.local_user_id == existing.id
    [user] = store.users()
    assert (user.external_user_id, user.installation_id) == ("77", "inst-x")


def test_email_match_keeps_link_to_other_installation(engine, store, installation):
    existing = store.add_user(email="john@example.com", username="john", external_user_id="5", installation_id="inst-y")

    result = engine.apply(installation, _grant()[0])

    assert result.local_user_id == existing.id
    [user] = store.users()
    assert (user.external_user_id, user.installation_id) == ("5", "inst-y")


def test_email_match_never_completes_a_half_link_with_another_id(engine, store, installation):
    # installation link was cleared, the external id still belongs to another installation
    existing = store.add_user(email="john@example.com", username="john", external_user_id="7")
    event, snapshot = _grant(user={**JOHN, "user_id": "99"})

    result = engine.apply(installation, event, snapshot=snapshot)

    assert result.local_user_id == existing.id
    [user] = store.users()
    assert (user.installation_id, user.external_user_id) == (None, "7")
    [record] = store.subscriptions()
    assert (record.user_id, record.local_user_id) == ("99", existing.id)


def test_email_match_completes_a_half_link_that_agrees(engine, store, installation):
    existing = store.add_user(email="john@example.com", username="john", external_user_id="77")

    engine.apply(installation, _grant()[0])

    [user] = store.users()
    assert user.id == existing.id
    assert (user.installation_id, user.external_user_id) == ("inst-x", "77")


def test_revoke_without_access_id_still_reports_product(engine, store, installation, bus):
    store.add_product(installation_id="inst-x", product_id="50", title="Gold", tier="gold")
    engine.apply(installation, _grant()[0])

    engine.apply(installation, AccessRevoked(user_id="77", product_id="50"))

    deleted = bus.recorded[-1]
    assert isinstance(deleted, notifications.SubscriptionDeleted)
    assert deleted.product.product_id == "50"
    assert [record.access_id for record in deleted.records] == ["3911"]


def test_username_collision_gets_numeric_suffix(engine, store, installation):
    store.add_user(email="a@example.com", username="john")
    store.add_user(email="b@example.com", username="john-1")

    engine.apply(installation, _grant()[0])

    created = [user for user in store.users() if user.email == "john@example.com"]
    assert created[0].username == "john-2"


def test_missing_email_is_malformed_and_writes_nothing(engine, store, installation):
    event = AccessGranted(access_id="3911", product_id="50", user=ExternalUser(user_id="77"))

    with pytest.raises(MalformedPayloadError) as exc_info:
        engine.apply(installation, event)

    assert exc_info.value.reason == "missing_email"
    assert store.users() == []
    assert store.subscriptions() == []


def test_failed_write_rolls_back_user_creation(engine, store, installation, bus, fake_redis):
    store.fail_on["upsert_subscription"] = TransientError("connection reset")

    with pytest.raises(TransientError):
        engine.apply(installation, _grant()[0])

    assert store.rollbacks == 1
    assert store.users() == []
    assert store.subscriptions() == []
    assert bus.recorded == []
    assert fake_redis.deleted == []


def test_user_created_event_creates_user(engine, store, installation):
    result = engine.apply(installation, UserCreated(user=ExternalUser(user_id="77", email="john@example.com", login="john")))

    assert result.action == "user_created"
    assert result.user_created is True
    assert store.users()[0].username == "john"


def test_user_events_are_skipped_when_creation_disabled(make_engine, store, installation, bus):
    engine = make_engine(user_creation_enabled=False)

    created = engine.apply(installation, UserCreated(user=ExternalUser(user_id="77", email="john@example.com")))
    updated = engine.apply(installation, UserUpdated(user=ExternalUser(user_id="77", email="john@example.com")))

    assert created.action == "skipped"
    assert updated.action == "skipped"
    assert store.users() == []
    assert bus.recorded == []


def test_access_events_still_create_users_when_creation_disabled(make_engine, store, installation):
    engine = make_engine(user_creation_enabled=False)

    result = engine.apply(installation, _grant()[0])

    assert result.user_created is True
    assert len(store.users()) == 1


def test_user_update_syncs_changed_fields(engine, store, installation, bus):
    existing = store.add_user(
        email="john@example.com",
        name="John Doe",
        username="john",
        external_user_id="77",
        installation_id="inst-x",
    )
    event = UserUpdated(
        user=ExternalUser(user_id="77", email="johnny@example.com", name_f="Johnny", name_l="Doe")
    )

    result = engine.apply(installation, event)

    assert result.action == "user_synced"
    [user] = store.users()
    assert user.id == existing.id
    assert user.email == "johnny@example.com"
    assert user.name == "Johnny Doe"
    [notification] = bus.recorded
    assert isinstance(notification, notifications.UserUpdated)
    assert notification.changed_fields == ("email", "name")


def test_user_update_without_changes_resolves(engine, store, installation):
    store.add_user(email="john@example.com", name="John Doe", external_user_id="77", installation_id="inst-x")

    result = engine.apply(
        installation,
        UserUpdated(user=ExternalUser(user_id="77", email="john@example.com", name_f="John", name_l="Doe")),
    )

    assert result.action == "user_resolved"


def test_user_sync_can_be_disabled(make_engine, store, installation):
    engine = make_engine(sync_user_data=False)
    store.add_user(email="john@example.com", name="John Doe", external_user_id="77", installation_id="inst-x")

    result = engine.apply(installation, UserUpdated(user=ExternalUser(user_id="77", email="new@example.com")))

    assert result.action == "user_resolved"
    assert store.users()[0].email == "john@example.com"


def test_payment_notifies_without_creating_users(engine, store, installation, bus):
    result = engine.apply(installation, PaymentReceived(payment_id="p-1", user=ExternalUser(user_id="77")))

    assert result.action == "notified"
    assert result.local_user_id is None
    assert store.users() == []
    [notification] = bus.recorded
    assert isinstance(notification, notifications.PaymentReceived)
    assert notification.user is None


def test_payment_for_known_user_invalidates_cache(engine, store, installation, fake_redis):
    user = store.add_user(email="john@example.com", external_user_id="77", installation_id="inst-x")

    result = engine.apply(installation, PaymentReceived(payment_id="p-1", user=ExternalUser(user_id="77")))

    assert result.local_user_id == user.id
    assert fake_redis.deleted == [cache_key(user.id)]


def test_notifications_follow_each_access_change(engine, store, installation, bus):
    store.add_product(installation_id="inst-x", product_id="50", title="Gold", tier="gold")

    engine.apply(installation, _grant()[0])
    engine.apply(installation, _grant("accessAfterUpdate")[0])
    engine.apply(installation, AccessRevoked(access_id="3911"))

    kinds = [type(notification) for notification in bus.recorded]
    assert kinds == [notifications.SubscriptionAdded, notifications.SubscriptionUpdated, notifications.SubscriptionDeleted]
    assert bus.recorded[0].product.tier == "gold"
    assert bus.recorded[0].record.access_id == "3911"
    assert len(bus.recorded[2].records) == 1
    assert bus.recorded[2].product.tier == "gold"


def test_failing_notification_handler_does_not_fail_event(engine, store, installation, bus):
    def _explode(_notification):
        raise RuntimeError("handler bug")

    bus.subscribe(notifications.SubscriptionAdded, _explode)

    result = engine.apply(installation, _grant()[0])

    assert result.action == "upserted"
    assert len(store.subscriptions()) == 1
    assert metric_total(metrics_snapshot(), "notifications.handler_failed") == 1


def test_redis_outage_does_not_fail_event(engine, store, installation, fake_redis):
    fake_redis.fail = True

    result = engine.apply(installation, _grant()[0])

    assert result.action == "upserted"
    assert metric_total(metrics_snapshot(), "cache.errors") == 1


def test_display_name_and_username_fallbacks():
    assert display_name_for(ExternalUser(name="Full Name", name_f="A"), "x") == "Full Name"
    assert display_name_for(ExternalUser(name_f="Ann"), "x") == "Ann"
    assert display_name_for(ExternalUser(), "fallback") == "fallback"
    assert username_base_for(ExternalUser(username="u", login="l")) == "u"
    assert username_base_for(ExternalUser(login="l", email="e@example.com")) == "l"
    assert username_base_for(ExternalUser(email="mail@example.com")) == "mail"
    assert username_base_for(ExternalUser()) == "user"
