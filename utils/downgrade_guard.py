"""Veto for downgrades that are probably an overreaction to a webhook race."""
from dataclasses import dataclass
from datetime import datetime, timedelta

from core.config import (
    MANUAL_ACTIVATION_GRACE_DAYS,
    MANUAL_ACTIVATION_PERIOD_DAYS,
    PENDING_DOWNGRADE_TOLERANCE_DAYS,
    RECENT_PAYMENT_PROTECTION_HOURS,
    SUBSCRIPTION_PERIOD_DAYS,
)
from utils.event_names import DOWNGRADE_EVENTS, FINANCIAL_LOSS_EVENTS, CanonicalEvent
from utils.offers import PlanTier
from utils.subscription_records import UserSubscriptionRecord, as_utc


@dataclass(frozen=True)
class DowngradePolicy:
    tolerance_window: timedelta = timedelta(days=3)
    manual_activation_grace: timedelta = timedelta(days=30)
    recent_payment_window: timedelta = timedelta(hours=24)
    subscription_period: timedelta = timedelta(days=30)
    manual_activation_period: timedelta = timedelta(days=34)

    @classmethod
    def from_config(cls) -> "DowngradePolicy":
        return cls(
            tolerance_window=timedelta(days=PENDING_DOWNGRADE_TOLERANCE_DAYS),
            manual_activation_grace=timedelta(days=MANUAL_ACTIVATION_GRACE_DAYS),
            recent_payment_window=timedelta(hours=RECENT_PAYMENT_PROTECTION_HOURS),
            subscription_period=timedelta(days=SUBSCRIPTION_PERIOD_DAYS),
            manual_activation_period=timedelta(days=MANUAL_ACTIVATION_PERIOD_DAYS),
        )


@dataclass(frozen=True)
class GuardDecision:
    allowed: bool
    reason: str


def may_downgrade(
    user: UserSubscriptionRecord,
    event: CanonicalEvent,
    now: datetime,
    policy: DowngradePolicy = DowngradePolicy(),
) -> GuardDecision:
    """Decide whether ``event`` may take the user's paid plan away.

    Rules, first match decides:
      1. already on the free tier -> no
      2. refund or chargeback -> yes, always
      3. manual activation younger than the grace period -> no
      4. successful purchase recorded within the recent-payment window -> no
      5. purchase or subscription cancellation -> yes
    Refunds and chargebacks are checked before the two protections because money
    already left; the protections exist for cancellations racing an approval.
    """
    if user.plan is PlanTier.FREE:
        return GuardDecision(False, "already free")

    if event in FINANCIAL_LOSS_EVENTS:
        return GuardDecision(True, f"{event.value}: financial loss, downgrade immediately")

    if event not in DOWNGRADE_EVENTS:
        return GuardDecision(False, f"{event.value} is not a downgrade event")

    activated_at = as_utc(user.manual_activation_date)
    if user.is_manual_activation and activated_at is not None:
        age = now - activated_at
        if age < policy.manual_activation_grace:
            return GuardDecision(
                False,
                f"manual activation {age.days} day(s) ago by {user.manual_activation_by or 'admin'} is protected",
            )

    last = user.last_event
    if last is not None and last.kind == CanonicalEvent.PURCHASE_APPROVED.value:
        since = now - as_utc(last.timestamp)
        if since < policy.recent_payment_window:
            hours = int(since.total_seconds() // 3600)
            return GuardDecision(False, f"purchase approved {hours}h ago; cancellation likely out of order")

    return GuardDecision(True, f"{event.value}: downgrade allowed")
