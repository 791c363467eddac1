from datetime import timedelta

import pytest

from scripts.expire_pending_downgrades import expire_manual_activations, expire_pending_downgrades
from utils import webhook_processor
from utils.offers import PlanTier
from utils.subscription_records import PendingDowngrade, SubscriptionStatus

from conftest import T0


@pytest.fixture
def pending_user(sql_store, monkeypatch):
    monkeypatch.setattr(webhook_processor, "_engine", None)
    return sql_store.create({
        "email": "leaving@studio.com",
        "plan": PlanTier.BASIC,
        "subscription_status": SubscriptionStatus.PENDING_CANCELLATION,
        "upload_limit": 1500,
        "pending_downgrade": PendingDowngrade(T0 + timedelta(days=3), "SubscriptionCanceled", PlanTier.BASIC),
    })


def test_dry_run_changes_nothing(pending_user, sql_store):
    assert expire_pending_downgrades(dry_run=True) == ["leaving@studio.com"]
    assert sql_store.get_by_id(pending_user.id).plan is PlanTier.BASIC


def test_live_run_downgrades(pending_user, sql_store):
    assert expire_pending_downgrades(dry_run=False) == ["leaving@studio.com"]
    user = sql_store.get_by_id(pending_user.id)
    assert user.plan is PlanTier.FREE
    assert user.subscription_status is SubscriptionStatus.INACTIVE
    assert user.previous_plan is PlanTier.BASIC


@pytest.fixture
def gifted_user(sql_store, monkeypatch):
    monkeypatch.setattr(webhook_processor, "_engine", None)
    return sql_store.create({
        "email": "gift@studio.com",
        "plan": PlanTier.STANDARD,
        "subscription_status": SubscriptionStatus.ACTIVE,
        "upload_limit": 5000,
        "is_manual_activation": True,
        "manual_activation_date": T0 - timedelta(days=35),
        "manual_activation_by": "ops",
    })


def test_manual_activations_dry_run(gifted_user, sql_store):
    assert expire_manual_activations(dry_run=True) == ["gift@studio.com"]
    assert sql_store.get_by_id(gifted_user.id).plan is PlanTier.STANDARD


def test_manual_activations_live_run(gifted_user, sql_store):
    assert expire_manual_activations(dry_run=False) == ["gift@studio.com"]
    user = sql_store.get_by_id(gifted_user.id)
    assert user.plan is PlanTier.FREE
    assert not user.is_manual_activation
