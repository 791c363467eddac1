import dataclasses
import os
import threading
import uuid
from datetime import datetime, timedelta, timezone

# Must be set before core.config / core.database are imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("WEBHOOK_STRICT_SIGNATURES", "0")

import pytest

from utils.billing_errors import ConcurrentUpdate
from utils.idempotency import IdempotencyLedger
from utils.offers import PlanTier
from utils.subscription_records import LastEvent, SubscriptionStatus, UserSubscriptionRecord
from utils.user_store import hash_password
from utils.webhook_processor import SubscriptionEngine

T0 = datetime(2025, 11, 28, 12, 0, tzinfo=timezone.utc)
RECORD_FIELDS = {f.name for f in dataclasses.fields(UserSubscriptionRecord)}


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class InMemoryUserStore:
    """Same contract as SqlUserStore, backed by a dict."""

    def __init__(self):
        self._users: dict[str, UserSubscriptionRecord] = {}
        self._lock = threading.Lock()
        self.password_hashes: dict[str, str] = {}
        self.events: list[dict] = []
        self.update_calls = 0

    def put(self, record: UserSubscriptionRecord) -> UserSubscriptionRecord:
        with self._lock:
            self._users[record.id] = record
        return record

    def get_by_email(self, email):
        em = (email or "").strip().lower()
        with self._lock:
            for u in self._users.values():
                if u.email == em:
                    return u
        return None

    def get_by_id(self, user_id):
        with self._lock:
            return self._users.get(user_id)

    def create(self, data):
        email = data["email"].strip().lower()
        fields = {k: v for k, v in data.items() if k in RECORD_FIELDS and k not in ("id", "email", "version")}
        with self._lock:
            if any(u.email == email for u in self._users.values()):
                raise ValueError(f"duplicate email {email}")
            rec = UserSubscriptionRecord(id=data.get("id") or uuid.uuid4().hex, email=email, **fields)
            self._users[rec.id] = rec
            self.password_hashes[rec.id] = hash_password(data["password"]) if data.get("password") else None
        return rec

    def update(self, user_id, fields, expected_version=None):
        with self._lock:
            cur = self._users.get(user_id)
            if cur is None:
                raise LookupError(user_id)
            if expected_version is not None and cur.version != expected_version:
                raise ConcurrentUpdate(user_id, expected_version, cur.version)
            new = cur.with_changes(dict(fields, version=cur.version + 1))
            self._users[user_id] = new
            self.update_calls += 1
            return new

    def list_all(self):
        with self._lock:
            return list(self._users.values())

    def list_pending_downgrades(self, now):
        return [
            u for u in self.list_all()
            if u.subscription_status is SubscriptionStatus.PENDING_CANCELLATION
            and u.pending_downgrade is not None
            and u.pending_downgrade.scheduled_for <= now
        ]

    def list_manual_activations(self):
        return [u for u in self.list_all() if u.is_manual_activation]

    def log_event(self, user_id, provider, event_type, event_id, outcome, payload):
        self.events.append({
            "user_id": user_id,
            "provider": provider,
            "event_type": event_type,
            "event_id": event_id,
            "outcome": outcome,
        })


class RecordingNotifier:
    def __init__(self):
        self.sent: list[tuple] = []

    def send_welcome(self, email, name, temporary_credential, plan_name=""):
        self.sent.append((email, name, temporary_credential, plan_name))


def build_user(**overrides) -> UserSubscriptionRecord:
    base = dict(
        id="u1",
        email="ana@studio.com",
        name="Ana Souza",
        plan=PlanTier.STANDARD,
        subscription_status=SubscriptionStatus.ACTIVE,
        subscription_start_date=T0 - timedelta(days=10),
        subscription_end_date=T0 + timedelta(days=20),
        upload_limit=5000,
        last_event=LastEvent("PurchaseApproved", T0 - timedelta(days=10)),
    )
    base.update(overrides)
    return UserSubscriptionRecord(**base)


def build_hotmart_payload(
    event="PURCHASE_APPROVED",
    email="ana@studio.com",
    offer="tpfhcllk",
    transaction="HP0001",
    name="Ana Souza",
    offer_name=None,
):
    purchase = {"transaction": transaction, "status": "APPROVED"}
    if offer is not None or offer_name is not None:
        purchase["offer"] = {}
        if offer is not None:
            purchase["offer"]["code"] = offer
        if offer_name is not None:
            purchase["offer"]["name"] = offer_name
    return {
        "id": f"evt-{transaction}",
        "event": event,
        "version": "2.0.0",
        "data": {
            "product": {"id": 4521, "name": "Photoproof"},
            "buyer": {"email": email, "name": name, "checkout_phone": "+55 11 98765-4321"},
            "purchase": purchase,
        },
    }


@pytest.fixture
def now():
    return T0


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_user():
    return build_user


@pytest.fixture
def hotmart_payload():
    return build_hotmart_payload


@pytest.fixture
def store():
    return InMemoryUserStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def engine(store, notifier, clock):
    return SubscriptionEngine(
        store=store,
        notifier=notifier,
        ledger=IdempotencyLedger(clock=clock),
        clock=clock,
    )


@pytest.fixture
def sql_store():
    from core.database import Base, SessionLocal, engine as db_engine, init_db
    from utils.user_store import SqlUserStore

    init_db()
    yield SqlUserStore(SessionLocal)
    Base.metadata.drop_all(bind=db_engine)
