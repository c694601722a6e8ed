"""Pure subscription period transitions applied when a payment settles."""
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from paysettle.models.subscription import Subscription, SubscriptionStatus
from paysettle.utils.time import ensure_utc


@dataclass(frozen=True)
class SubscriptionState:
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None

    @classmethod
    def from_model(cls, subscription: Subscription) -> "SubscriptionState":
        return cls(
            status=SubscriptionStatus(subscription.status),
            current_period_start=ensure_utc(subscription.current_period_start),
            current_period_end=ensure_utc(subscription.current_period_end),
            cancel_at_period_end=bool(subscription.cancel_at_period_end),
            canceled_at=ensure_utc(subscription.canceled_at),
        )

    def apply_to(self, subscription: Subscription) -> Subscription:
        subscription.status = self.status
        subscription.current_period_start = self.current_period_start
        subscription.current_period_end = self.current_period_end
        subscription.cancel_at_period_end = self.cancel_at_period_end
        subscription.canceled_at = self.canceled_at
        return subscription


def apply_payment(
    current: SubscriptionState | None,
    *,
    now: datetime,
    plan_duration: timedelta,
) -> SubscriptionState:
    """Return the subscription state after one successful payment of ``plan_duration``.

    An active subscription is extended from ``max(now, current_period_end)`` so early
    renewals keep the remaining paid time and lapsed ones are not backdated.
    """

    if plan_duration <= timedelta(0):
        raise ValueError("plan_duration must be positive")
    now = ensure_utc(now)

    if current is None:
        return SubscriptionState(
            status=SubscriptionStatus.ACTIVE,
            current_period_start=now,
            current_period_end=now + plan_duration,
        )

    if current.status == SubscriptionStatus.ACTIVE:
        anchor = max(now, ensure_utc(current.current_period_end))
        return replace(current, current_period_end=anchor + plan_duration)

    return SubscriptionState(
        status=SubscriptionStatus.ACTIVE,
        current_period_start=now,
        current_period_end=now + plan_duration,
        cancel_at_period_end=False,
        canceled_at=None,
    )


__all__ = ["SubscriptionState", "apply_payment"]
