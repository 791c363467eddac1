"""Plain records the subscription engine reads and writes.

The user store maps these to and from the ``users`` table; everything else in the
engine works on these records only.
"""
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from utils.offers import PlanTier


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PENDING_CANCELLATION = "pending_cancellation"
    PAYMENT_FAILED = "payment_failed"
    INACTIVE = "inactive"


@dataclass(frozen=True)
class PendingDowngrade:
    scheduled_for: datetime
    reason: str
    original_plan: Optional[PlanTier]


@dataclass(frozen=True)
class LastEvent:
    kind: str
    timestamp: datetime

    def to_json(self) -> dict:
        return {"kind": self.kind, "timestamp": self.timestamp.isoformat()}

    @classmethod
    def from_json(cls, data: Any) -> Optional["LastEvent"]:
        if not isinstance(data, dict):
            return None
        kind = data.get("kind") or data.get("type")
        ts = parse_datetime(data.get("timestamp"))
        if not kind or ts is None:
            return None
        return cls(kind=str(kind), timestamp=ts)


@dataclass(frozen=True)
class UserSubscriptionRecord:
    id: str
    email: str
    name: str = ""
    phone: str = ""
    plan: PlanTier = PlanTier.FREE
    subscription_status: SubscriptionStatus = SubscriptionStatus.INACTIVE
    subscription_start_date: Optional[datetime] = None
    subscription_end_date: Optional[datetime] = None
    subscription_id: Optional[str] = None
    upload_limit: int = 10
    pending_downgrade: Optional[PendingDowngrade] = None
    previous_plan: Optional[PlanTier] = None
    is_manual_activation: bool = False
    manual_activation_date: Optional[datetime] = None
    manual_activation_by: Optional[str] = None
    last_event: Optional[LastEvent] = None
    version: int = 1

    def with_changes(self, changes: dict) -> "UserSubscriptionRecord":
        return replace(self, **changes)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "phone": self.phone,
            "plan": self.plan.value,
            "subscriptionStatus": self.subscription_status.value,
            "subscriptionStartDate": _iso(self.subscription_start_date),
            "subscriptionEndDate": _iso(self.subscription_end_date),
            "subscriptionId": self.subscription_id,
            "uploadLimit": self.upload_limit,
            "pendingDowngrade": {
                "scheduledFor": _iso(self.pending_downgrade.scheduled_for),
                "reason": self.pending_downgrade.reason,
                "originalPlan": self.pending_downgrade.original_plan.value if self.pending_downgrade.original_plan else None,
            } if self.pending_downgrade else None,
            "previousPlan": self.previous_plan.value if self.previous_plan else None,
            "isManualActivation": self.is_manual_activation,
            "manualActivationDate": _iso(self.manual_activation_date),
            "manualActivationBy": self.manual_activation_by,
            "lastEvent": self.last_event.to_json() if self.last_event else None,
        }


class InvariantViolation(ValueError):
    pass


def check_invariants(record: UserSubscriptionRecord) -> None:
    """pendingDowngrade exists only while the status is pending_cancellation."""
    pending = record.subscription_status is SubscriptionStatus.PENDING_CANCELLATION
    if record.pending_downgrade is not None and not pending:
        raise InvariantViolation(
            f"pending downgrade set while status={record.subscription_status.value} for {record.email}"
        )
    if pending and record.pending_downgrade is None:
        raise InvariantViolation(f"pending_cancellation without a scheduled downgrade for {record.email}")


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes coming back from the database are UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, str) and value.strip():
        try:
            return as_utc(datetime.fromisoformat(value.strip().replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
