from datetime import datetime, timedelta, timezone

from entitlement_sync.domain.status import derive_status, is_active


NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)
ONE_SECOND = timedelta(seconds=1)


def test_open_ended_record_is_active():
    assert derive_status(NOW, None, None) == "active"


def test_future_begin_is_pending():
    assert derive_status(NOW, NOW + ONE_SECOND, None) == "pending"
    assert derive_status(NOW, NOW + timedelta(days=30), NOW + timedelta(days=60)) == "pending"


def test_begin_instant_is_already_active():
    assert derive_status(NOW, NOW, None) == "active"


def test_expiry_instant_is_still_active():
    assert derive_status(NOW, None, NOW) == "active"
    assert derive_status(NOW, None, NOW - ONE_SECOND) == "expired"


def test_past_window_is_expired():
    assert derive_status(NOW, NOW - timedelta(days=60), NOW - timedelta(days=1)) == "expired"


def test_pending_wins_over_expired_for_inverted_window():
    # begin after expire: not started yet, so not expired either
    assert derive_status(NOW, NOW + timedelta(days=1), NOW - timedelta(days=1)) == "pending"


def test_is_active_follows_status():
    assert is_active(NOW, NOW - timedelta(days=1), NOW + timedelta(days=1))
    assert not is_active(NOW, NOW + timedelta(days=1), None)
    assert not is_active(NOW, None, NOW - timedelta(days=1))
