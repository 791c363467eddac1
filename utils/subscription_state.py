"""Subscription state machine.

Every function here is pure: it reads a ``UserSubscriptionRecord`` and returns a
``Transition`` describing the full set of field changes. The engine commits those
changes in one store update, or commits nothing.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from utils.downgrade_guard import DowngradePolicy, may_downgrade
from utils.event_names import CANCELLATION_EVENTS, FINANCIAL_LOSS_EVENTS, CanonicalEvent
from utils.offers import PLAN_CATALOG, PlanTier, ResolvedOffer
from utils.subscription_records import (
    InvariantViolation,
    LastEvent,
    PendingDowngrade,
    SubscriptionStatus,
    UserSubscriptionRecord,
    check_invariants,
)

__all__ = [
    "InvariantViolation",
    "LastEvent",
    "PendingDowngrade",
    "SubscriptionState",
    "SubscriptionStatus",
    "Transition",
    "UserSubscriptionRecord",
    "apply_transition",
    "current_state",
    "decide",
    "expire_manual_activation",
    "expire_pending",
    "manual_activation",
    "restore_previous_plan",
]

APPLIED = "applied"
NOOP = "noop"
NO_VALID_OFFER = "no_valid_offer"
UNSUPPORTED = "unsupported_event"


class SubscriptionState(str, Enum):
    FREE = "Free"
    ACTIVE = "Active"
    PENDING_CANCELLATION = "PendingCancellation"
    PAYMENT_FAILED = "PaymentFailed"


@dataclass(frozen=True)
class Transition:
    next_state: SubscriptionState
    changes: dict = field(default_factory=dict)
    outcome: str = NOOP
    message: str = ""

    @property
    def mutates(self) -> bool:
        return bool(self.changes)


def current_state(user: UserSubscriptionRecord) -> SubscriptionState:
    if user.subscription_status is SubscriptionStatus.PAYMENT_FAILED:
        return SubscriptionState.PAYMENT_FAILED
    if user.plan is PlanTier.FREE:
        return SubscriptionState.FREE
    if user.subscription_status is SubscriptionStatus.PENDING_CANCELLATION:
        return SubscriptionState.PENDING_CANCELLATION
    return SubscriptionState.ACTIVE


def _noop(user: UserSubscriptionRecord, message: str, outcome: str = NOOP) -> Transition:
    return Transition(current_state(user), {}, outcome, message)


def _activation_changes(plan: PlanTier, now: datetime, policy: DowngradePolicy) -> dict:
    return {
        "plan": plan,
        "subscription_status": SubscriptionStatus.ACTIVE,
        "subscription_start_date": now,
        "subscription_end_date": now + policy.subscription_period,
        "upload_limit": PLAN_CATALOG[plan].upload_limit,
        "pending_downgrade": None,
    }


def decide(
    user: UserSubscriptionRecord,
    event: CanonicalEvent,
    offer: ResolvedOffer,
    now: datetime,
    policy: DowngradePolicy = DowngradePolicy(),
) -> Transition:
    """Compute the transition for one canonical event against the current record."""
    state = current_state(user)

    if event is CanonicalEvent.PURCHASE_APPROVED:
        if not offer.resolved:
            why = "test offer" if offer.is_test_offer else "no valid commercial offer"
            return _noop(user, f"approval ignored: {why}", NO_VALID_OFFER)
        changes = _activation_changes(offer.plan_tier, now, policy)
        changes["previous_plan"] = None
        changes["last_event"] = LastEvent(event.value, now)
        verb = "regularized" if state is SubscriptionState.PENDING_CANCELLATION else "activated"
        return Transition(SubscriptionState.ACTIVE, changes, APPLIED, f"plan {offer.plan_tier.value} {verb}")

    if event in FINANCIAL_LOSS_EVENTS:
        if state in (SubscriptionState.FREE, SubscriptionState.PAYMENT_FAILED):
            return _noop(user, "already free")
        decision = may_downgrade(user, event, now, policy)
        if not decision.allowed:
            return _noop(user, decision.reason)
        changes = {
            "plan": PlanTier.FREE,
            "subscription_status": SubscriptionStatus.PAYMENT_FAILED,
            "upload_limit": PLAN_CATALOG[PlanTier.FREE].upload_limit,
            "previous_plan": user.plan,
            "pending_downgrade": None,
            "last_event": LastEvent(event.value, now),
        }
        return Transition(SubscriptionState.PAYMENT_FAILED, changes, APPLIED, decision.reason)

    if event in CANCELLATION_EVENTS:
        if state in (SubscriptionState.FREE, SubscriptionState.PAYMENT_FAILED):
            return _noop(user, "already free")
        if state is SubscriptionState.PENDING_CANCELLATION:
            return _noop(user, "downgrade already scheduled")
        decision = may_downgrade(user, event, now, policy)
        if not decision.allowed:
            return _noop(user, decision.reason)
        pending = PendingDowngrade(
            scheduled_for=now + policy.tolerance_window,
            reason=event.value,
            original_plan=user.plan,
        )
        changes = {
            "subscription_status": SubscriptionStatus.PENDING_CANCELLATION,
            "pending_downgrade": pending,
            "last_event": LastEvent(event.value, now),
        }
        return Transition(
            SubscriptionState.PENDING_CANCELLATION,
            changes,
            APPLIED,
            f"downgrade scheduled for {pending.scheduled_for.isoformat()}",
        )

    return _noop(user, f"{event.value} ignored", UNSUPPORTED)


def expire_pending(user: UserSubscriptionRecord, now: datetime) -> Transition:
    """PendingCancellation -> Free once the tolerance window has run out."""
    pending = user.pending_downgrade
    if current_state(user) is not SubscriptionState.PENDING_CANCELLATION or pending is None:
        return _noop(user, "no pending downgrade")
    if now < pending.scheduled_for:
        return _noop(user, f"pending until {pending.scheduled_for.isoformat()}")
    changes = {
        "plan": PlanTier.FREE,
        "subscription_status": SubscriptionStatus.INACTIVE,
        "upload_limit": PLAN_CATALOG[PlanTier.FREE].upload_limit,
        "pending_downgrade": None,
        "previous_plan": pending.original_plan,
    }
    return Transition(SubscriptionState.FREE, changes, APPLIED, f"tolerance window over ({pending.reason})")


def expire_manual_activation(
    user: UserSubscriptionRecord,
    now: datetime,
    policy: DowngradePolicy = DowngradePolicy(),
) -> Transition:
    """Manual activations lapse to Free after ``policy.manual_activation_period``.

    A purchase approved after the activation means the user now pays; only the
    manual flag is dropped in that case and the plan stays.
    """
    activated_at = user.manual_activation_date
    if not user.is_manual_activation or activated_at is None:
        return _noop(user, "not a manual activation")
    if user.plan is PlanTier.FREE:
        return _noop(user, "already free")
    expires_at = activated_at + policy.manual_activation_period
    if now < expires_at:
        return _noop(user, f"manual activation valid until {expires_at.isoformat()}")

    last = user.last_event
    if last is not None and last.kind == CanonicalEvent.PURCHASE_APPROVED.value and last.timestamp > activated_at:
        return Transition(current_state(user), {"is_manual_activation": False}, APPLIED, "superseded by purchase")

    changes = {
        "plan": PlanTier.FREE,
        "subscription_status": SubscriptionStatus.INACTIVE,
        "upload_limit": PLAN_CATALOG[PlanTier.FREE].upload_limit,
        "pending_downgrade": None,
        "previous_plan": user.plan,
        "is_manual_activation": False,
    }
    return Transition(SubscriptionState.FREE, changes, APPLIED, f"manual activation by {user.manual_activation_by} expired")


def manual_activation(
    user: UserSubscriptionRecord,
    plan: PlanTier,
    activated_by: str,
    now: datetime,
    policy: DowngradePolicy = DowngradePolicy(),
) -> Transition:
    if plan is PlanTier.FREE:
        raise ValueError("manual activation needs a paid plan")
    changes = _activation_changes(plan, now, policy)
    changes.update(
        is_manual_activation=True,
        manual_activation_date=now,
        manual_activation_by=activated_by,
    )
    return Transition(SubscriptionState.ACTIVE, changes, APPLIED, f"plan {plan.value} activated by {activated_by}")


def restore_previous_plan(
    user: UserSubscriptionRecord,
    activated_by: str,
    now: datetime,
    policy: DowngradePolicy = DowngradePolicy(),
) -> Transition:
    previous: Optional[PlanTier] = user.previous_plan
    if previous is None or previous is PlanTier.FREE:
        raise ValueError(f"no previous paid plan stored for {user.email}")
    transition = manual_activation(user, previous, activated_by, now, policy)
    transition.changes["previous_plan"] = None
    return transition


def apply_transition(user: UserSubscriptionRecord, transition: Transition) -> UserSubscriptionRecord:
    """In-memory result of a transition; raises InvariantViolation on a broken record."""
    updated = user.with_changes(transition.changes)
    check_invariants(updated)
    return updated
