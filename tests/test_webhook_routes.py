import json

import pytest
from fastapi.testclient import TestClient

import main
from routers import pricing_webhook
from utils.offers import PlanTier
from utils.webhook_processor import get_engine, hmac_hex


@pytest.fixture
def client(engine):
    main.app.dependency_overrides[get_engine] = lambda: engine
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def _post(client, path, payload, headers=None):
    body = json.dumps(payload).encode()
    return client.post(path, content=body, headers={"Content-Type": "application/json", **(headers or {})})


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"ok": True}
    assert res.headers["X-Content-Type-Options"] == "nosniff"


def test_hotmart_approval(client, store, hotmart_payload):
    res = _post(client, "/api/pricing/webhook/hotmart", hotmart_payload())
    assert res.status_code == 200
    assert res.json() == {"accepted": True, "message": "account created on plan standard", "outcome": "created"}
    assert store.get_by_email("ana@studio.com").plan is PlanTier.STANDARD


def test_legacy_route(client, store, hotmart_payload):
    res = _post(client, "/api/webhooks/hotmart", hotmart_payload(offer="BASIC123"))
    assert res.json()["outcome"] == "created"
    assert store.get_by_email("ana@studio.com").plan is PlanTier.BASIC


def test_unknown_provider(client, hotmart_payload):
    res = _post(client, "/api/pricing/webhook/paypal", hotmart_payload())
    assert res.status_code == 404


def test_dodo_payment(client, store):
    payload = {
        "type": "payment.succeeded",
        "data": {
            "object": {
                "payment_id": "pay_123",
                "product_id": "BASIC123",
                "customer": {"email": "Bia@Studio.com", "name": "Bia Lima"},
            }
        },
    }
    res = _post(client, "/api/pricing/webhook/dodo", payload)
    assert res.json()["outcome"] == "created"
    user = store.get_by_email("bia@studio.com")
    assert user.plan is PlanTier.BASIC
    assert user.name == "Bia Lima"


def test_malformed_body(client):
    res = client.post("/api/pricing/webhook/hotmart", content=b"{oops", headers={"Content-Type": "application/json"})
    assert res.status_code == 400
    assert res.json()["outcome"] == "malformed_payload"


def test_ignored_event_still_answers_200(client, hotmart_payload):
    res = _post(client, "/api/pricing/webhook/hotmart", hotmart_payload(event="PURCHASE_BILLET_PRINTED"))
    assert res.status_code == 200
    assert res.json()["accepted"] is True
    assert res.json()["outcome"] == "unsupported_event"


class TestSignedDeliveries:
    SECRET = "route-secret"

    @pytest.fixture(autouse=True)
    def secret(self, monkeypatch):
        monkeypatch.setattr(pricing_webhook, "HOTMART_WEBHOOK_SECRET", self.SECRET)

    def test_valid_signature_header(self, client, hotmart_payload):
        body = json.dumps(hotmart_payload()).encode()
        res = client.post(
            "/api/pricing/webhook/hotmart",
            content=body,
            headers={"X-Hotmart-Hmac-Sha256": hmac_hex(self.SECRET, body)},
        )
        assert res.status_code == 200
        assert res.json()["outcome"] == "created"

    def test_alternate_header(self, client, hotmart_payload):
        body = json.dumps(hotmart_payload()).encode()
        res = client.post(
            "/api/webhooks/hotmart",
            content=body,
            headers={"X-Hub-Signature-256": "sha256=" + hmac_hex(self.SECRET, body)},
        )
        assert res.json()["outcome"] == "created"

    def test_bad_signature(self, client, store, hotmart_payload):
        res = _post(client, "/api/pricing/webhook/hotmart", hotmart_payload(), {"X-Signature": "0" * 64})
        assert res.status_code == 401
        assert res.json()["outcome"] == "invalid_signature"
        assert store.list_all() == []
