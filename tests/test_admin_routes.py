from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

import main
from routers import admin
from utils.offers import PlanTier
from utils.subscription_records import PendingDowngrade, SubscriptionStatus
from utils.webhook_processor import get_engine

SECRET = "admin-test-secret"
AUTH = {"X-Admin-Secret": SECRET}


@pytest.fixture(autouse=True)
def admin_env(monkeypatch):
    monkeypatch.setenv("ADMIN_SECRET", SECRET)
    monkeypatch.setattr(admin, "check_admin_rate_limit", lambda ip: (True, ""))
    monkeypatch.setattr(admin, "ADMIN_ALLOWLIST_IPS", [])


@pytest.fixture
def client(engine):
    main.app.dependency_overrides[get_engine] = lambda: engine
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def seeded(store, make_user, clock):
    store.put(make_user())
    store.put(make_user(id="u2", email="free@x.com", plan=PlanTier.FREE,
                        subscription_status=SubscriptionStatus.INACTIVE, upload_limit=10, last_event=None))
    store.put(make_user(
        id="u3",
        email="leaving@x.com",
        subscription_status=SubscriptionStatus.PENDING_CANCELLATION,
        pending_downgrade=PendingDowngrade(clock() - timedelta(minutes=5), "PurchaseCanceled", PlanTier.STANDARD),
    ))
    store.put(make_user(id="u4", email="refunded@x.com", plan=PlanTier.FREE,
                        subscription_status=SubscriptionStatus.PAYMENT_FAILED, upload_limit=10,
                        previous_plan=PlanTier.PROFESSIONAL))
    return store


class TestAccess:
    def test_not_configured(self, client, monkeypatch):
        monkeypatch.delenv("ADMIN_SECRET")
        assert client.get("/api/admin/subscriptions", headers=AUTH).status_code == 503

    def test_missing_secret(self, client):
        assert client.get("/api/admin/subscriptions").status_code == 401

    def test_wrong_secret(self, client):
        assert client.get("/api/admin/subscriptions", headers={"X-Admin-Secret": "nope"}).status_code == 401

    def test_query_secret(self, client):
        assert client.get(f"/api/admin/subscriptions?secret={SECRET}").status_code == 200

    def test_ip_allowlist(self, client, monkeypatch):
        monkeypatch.setattr(admin, "ADMIN_ALLOWLIST_IPS", ["10.0.0.1"])
        assert client.get("/api/admin/subscriptions", headers=AUTH).status_code == 403
        ok = client.get("/api/admin/subscriptions", headers={**AUTH, "X-Forwarded-For": "10.0.0.1, 172.16.0.9"})
        assert ok.status_code == 200

    def test_rate_limited(self, client, monkeypatch):
        monkeypatch.setattr(admin, "check_admin_rate_limit", lambda ip: (False, "slow down"))
        res = client.get("/api/admin/subscriptions", headers=AUTH)
        assert res.status_code == 429
        assert res.json() == {"error": "slow down"}


class TestListing:
    def test_all(self, client, seeded):
        res = client.get("/api/admin/subscriptions", headers=AUTH)
        data = res.json()
        assert data["count"] == 4
        assert {u["email"] for u in data["users"]} == {"ana@studio.com", "free@x.com", "leaving@x.com", "refunded@x.com"}
        assert all("analysis" in u for u in data["users"])

    def test_filtered(self, client, seeded):
        data = client.get("/api/admin/subscriptions?category=pending_cancellation", headers=AUTH).json()
        assert [u["email"] for u in data["users"]] == ["leaving@x.com"]
        assert data["users"][0]["pendingDowngrade"]["reason"] == "PurchaseCanceled"

    def test_invalid_category(self, client, seeded):
        res = client.get("/api/admin/subscriptions?category=vip", headers=AUTH)
        assert res.status_code == 400
        assert "free" in res.json()["categories"]

    def test_summary(self, client, seeded):
        counts = client.get("/api/admin/subscriptions/summary", headers=AUTH).json()["counts"]
        assert counts["all"] == 4
        assert counts["free"] == 2
        assert counts["pending_cancellation"] == 1
        assert counts["expired"] == 1

    def test_single_user(self, client, seeded):
        data = client.get("/api/admin/subscriptions/ana@studio.com", headers=AUTH).json()
        assert data["plan"] == "standard"
        assert data["analysis"]["isActive"] is True

    def test_single_user_not_found(self, client, seeded):
        assert client.get("/api/admin/subscriptions/ghost@x.com", headers=AUTH).status_code == 404


class TestOverrides:
    def test_activate(self, client, seeded, store):
        res = client.post(
            "/api/admin/subscriptions/activate",
            json={"email": "free@x.com", "plan": "professional", "activated_by": "ops@photoproof.app"},
            headers=AUTH,
        )
        assert res.status_code == 200
        assert res.json()["user"]["plan"] == "professional"
        user = store.get_by_email("free@x.com")
        assert user.is_manual_activation
        assert user.manual_activation_by == "ops@photoproof.app"
        assert store.events[-1]["provider"] == "admin"

    def test_activate_defaults_operator_to_client_ip(self, client, seeded, store):
        client.post("/api/admin/subscriptions/activate", json={"email": "free@x.com", "plan": "basic"}, headers=AUTH)
        assert store.get_by_email("free@x.com").manual_activation_by == "admin@testclient"

    def test_activate_unknown_user(self, client, seeded):
        res = client.post("/api/admin/subscriptions/activate", json={"email": "ghost@x.com", "plan": "basic"}, headers=AUTH)
        assert res.status_code == 404

    def test_activate_bad_plan(self, client, seeded):
        res = client.post("/api/admin/subscriptions/activate", json={"email": "free@x.com", "plan": "free"}, headers=AUTH)
        assert res.status_code == 400

    def test_restore(self, client, seeded, store):
        res = client.post("/api/admin/subscriptions/restore", json={"email": "refunded@x.com"}, headers=AUTH)
        assert res.status_code == 200
        assert store.get_by_email("refunded@x.com").plan is PlanTier.PROFESSIONAL

    def test_restore_without_previous_plan(self, client, seeded):
        res = client.post("/api/admin/subscriptions/restore", json={"email": "free@x.com"}, headers=AUTH)
        assert res.status_code == 400

    def test_sweep(self, client, seeded, store):
        res = client.post("/api/admin/subscriptions/sweep", headers=AUTH)
        assert res.json() == {"ok": True, "downgraded": ["leaving@x.com"], "manualActivationsExpired": []}
        assert store.get_by_email("leaving@x.com").plan is PlanTier.FREE

    def test_sweep_lapses_old_manual_activations(self, client, store, make_user, clock):
        store.put(make_user(id="u5", email="gift@x.com", plan=PlanTier.BASIC, upload_limit=1500, last_event=None,
                            is_manual_activation=True, manual_activation_date=clock() - timedelta(days=35)))
        res = client.post("/api/admin/subscriptions/sweep", headers=AUTH)
        assert res.json() == {"ok": True, "downgraded": [], "manualActivationsExpired": ["gift@x.com"]}
        assert store.get_by_email("gift@x.com").plan is PlanTier.FREE
