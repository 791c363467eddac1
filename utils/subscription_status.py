"""Read-only subscription health report used by the admin dashboards."""
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from core.config import logger
from utils.offers import PlanTier
from utils.subscription_records import SubscriptionStatus, UserSubscriptionRecord, as_utc

CATEGORIES = ("all", "active", "expiring_soon", "expired", "pending_cancellation", "free")


@dataclass
class SubscriptionAnalysis:
    is_active: bool = False
    is_expired: bool = False
    is_pending_cancellation: bool = False
    days_until_expiry: Optional[int] = None
    status_reason: str = ""
    recommendations: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "isActive": self.is_active,
            "isExpired": self.is_expired,
            "isPendingCancellation": self.is_pending_cancellation,
            "daysUntilExpiry": self.days_until_expiry,
            "statusReason": self.status_reason,
            "recommendations": list(self.recommendations),
        }


def _days_until(moment: datetime, now: datetime) -> int:
    return math.ceil((moment - now).total_seconds() / 86400)


def _analyze(
    user: UserSubscriptionRecord,
    now: datetime,
    tolerance: timedelta,
    expiring_soon_days: int,
) -> SubscriptionAnalysis:
    out = SubscriptionAnalysis()
    status = user.subscription_status

    if user.plan is PlanTier.FREE:
        if status is SubscriptionStatus.PAYMENT_FAILED:
            out.is_expired = True
            out.status_reason = "critical: payment refunded or charged back, plan revoked"
            out.recommendations.append("Review the refund with the customer before restoring the previous plan")
        else:
            out.status_reason = "free plan"
            out.recommendations.append("Upgrade to a paid plan to raise the upload limit")
        return out

    if status is not SubscriptionStatus.ACTIVE:
        if status is SubscriptionStatus.PENDING_CANCELLATION:
            out.is_pending_cancellation = True
            out.status_reason = f"cancellation received, downgrade after the {tolerance.days}-day tolerance window"
        elif status is SubscriptionStatus.PAYMENT_FAILED:
            out.is_expired = True
            out.status_reason = "critical: payment failed"
        else:
            out.status_reason = f"status {status.value}"

    end = as_utc(user.subscription_end_date)
    if end is not None:
        days = _days_until(end, now)
        out.days_until_expiry = days
        if days <= 0:
            out.is_expired = True
            out.status_reason = out.status_reason or f"expired {abs(days)} day(s) ago"
            out.recommendations.append("Subscription period ended; ask the customer to renew")
        elif not out.is_expired:
            out.is_active = True
            out.status_reason = out.status_reason or "active"
            if days <= expiring_soon_days:
                out.recommendations.append(f"Renews or expires in {days} day(s)")
    elif status is SubscriptionStatus.ACTIVE:
        out.is_active = True
        out.status_reason = "active, no end date"

    pending = user.pending_downgrade
    if pending is not None:
        scheduled = as_utc(pending.scheduled_for)
        out.is_pending_cancellation = True
        out.days_until_expiry = _days_until(scheduled, now)
        out.status_reason = f"pending downgrade ({pending.reason}) scheduled for {scheduled.isoformat()}"
        out.recommendations.append("A new approved payment before the scheduled date keeps the plan")
    return out


def analyze_subscription(
    user: UserSubscriptionRecord,
    now: datetime,
    tolerance: timedelta = timedelta(days=3),
    expiring_soon_days: int = 7,
) -> SubscriptionAnalysis:
    """Pure report of ``user`` at ``now``; never raises."""
    try:
        return _analyze(user, now, tolerance, expiring_soon_days)
    except Exception as ex:
        logger.warning(f"[subscriptions.status] analysis failed for {getattr(user, 'email', '?')}: {ex}")
        return SubscriptionAnalysis(status_reason=f"analysis failed: {ex}")


def categorize(
    user: UserSubscriptionRecord,
    analysis: SubscriptionAnalysis,
    expiring_soon_days: int = 7,
) -> list[str]:
    cats = ["all"]
    if analysis.is_active:
        cats.append("active")
        if analysis.days_until_expiry is not None and analysis.days_until_expiry <= expiring_soon_days:
            cats.append("expiring_soon")
    if analysis.is_expired:
        cats.append("expired")
    if analysis.is_pending_cancellation:
        cats.append("pending_cancellation")
    if user.plan is PlanTier.FREE:
        cats.append("free")
    return cats
