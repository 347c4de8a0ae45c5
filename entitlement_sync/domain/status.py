from __future__ import annotations

from datetime import datetime

from entitlement_sync.models.subscriptions import SubscriptionStatus


def derive_status(
    now: datetime,
    begin_date: datetime | None,
    expire_date: datetime | None,
) -> SubscriptionStatus:
    """Status is a function of the dates alone.

    The begin instant is already active; the expiry instant is still active.
    A missing begin date means access started in the past; a missing expiry never ends.
    """
    if begin_date is not None and now < begin_date:
        return "pending"
    if expire_date is not None and now > expire_date:
        return "expired"
    return "active"


def is_active(now: datetime, begin_date: datetime | None, expire_date: datetime | None) -> bool:
    return derive_status(now, begin_date, expire_date) == "active"
