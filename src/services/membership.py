from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Sequence

from src.schemas.entitlements import CreditPackageInstance, FrequencyLimit, SubscriptionInstance

ACTIVE_STATUS = "active"


def period_window_key(period: str, moment: datetime) -> str:
    if period == "day":
        return moment.strftime("%Y-%m-%d")
    if period == "week":
        year, week, _ = moment.isocalendar()
        return f"{year}-W{week:02d}"
    if period == "month":
        return moment.strftime("%Y-%m")
    raise ValueError(f"Unsupported frequency period: {period}")


def usage_in_period(subscription: SubscriptionInstance, limit: FrequencyLimit, moment: datetime) -> int:
    """Bookings already counted against the limit for the window containing ``moment``.

    Tracking is keyed either by calendar window (``2026-W42``) or by the bare
    period name with a reset date.
    """
    tracking = subscription.frequency_tracking
    window = tracking.get(period_window_key(limit.period, moment))
    if window is not None:
        return window.count
    window = tracking.get(limit.period)
    if window is not None and (window.reset_date is None or window.reset_date > moment):
        return window.count
    return 0


def is_subscription_usable(
    subscription: SubscriptionInstance,
    now: datetime,
    *,
    class_id: Optional[str] = None,
    session_start: Optional[datetime] = None,
) -> bool:
    if subscription.status != ACTIVE_STATUS:
        return False
    # No end date is treated as open-ended.
    if subscription.end_date is not None and subscription.end_date <= now:
        return False
    moment = session_start or now
    if subscription.start_date is not None and subscription.start_date > moment:
        return False
    if subscription.plan is not None and not subscription.plan.covers_class(class_id):
        return False
    limit = subscription.frequency_limit
    if limit is not None and usage_in_period(subscription, limit, moment) >= limit.count:
        return False
    return True


def is_package_usable(package: CreditPackageInstance, now: datetime) -> bool:
    return package.status == ACTIVE_STATUS and package.remaining_credits > 0 and package.expiry_date > now


def package_priority(package: CreditPackageInstance) -> tuple:
    """Soonest expiry first, then the package closest to running out."""
    return (package.expiry_date, package.remaining_credits, package.id)


def usable_packages(packages: Iterable[CreditPackageInstance], now: datetime) -> List[CreditPackageInstance]:
    return sorted((package for package in packages if is_package_usable(package, now)), key=package_priority)


def usable_subscriptions(
    subscriptions: Iterable[SubscriptionInstance],
    now: datetime,
    *,
    class_id: Optional[str] = None,
    session_start: Optional[datetime] = None,
) -> List[SubscriptionInstance]:
    return [
        subscription
        for subscription in subscriptions
        if is_subscription_usable(subscription, now, class_id=class_id, session_start=session_start)
    ]


@dataclass(frozen=True)
class MembershipStatus:
    has_active_credits: bool
    has_active_subscription: bool
    active_credits_count: int
    active_subscriptions_count: int
    total_credits_remaining: int

    @property
    def has_any_active_membership(self) -> bool:
        return self.has_active_credits or self.has_active_subscription

    @property
    def can_book(self) -> bool:
        return self.has_any_active_membership


def summarize_membership(
    packages: Sequence[CreditPackageInstance],
    subscriptions: Sequence[SubscriptionInstance],
    now: datetime,
) -> MembershipStatus:
    credits = usable_packages(packages, now)
    plans = usable_subscriptions(subscriptions, now)
    return MembershipStatus(
        has_active_credits=bool(credits),
        has_active_subscription=bool(plans),
        active_credits_count=len(credits),
        active_subscriptions_count=len(plans),
        total_credits_remaining=sum(package.remaining_credits for package in credits),
    )
