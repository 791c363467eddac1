"""SQLAlchemy-backed user store for the subscription engine.

All reads return ``UserSubscriptionRecord``s; ``update`` is an optimistic
compare-and-swap on ``users.version``.
"""
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Optional

import bcrypt
from sqlalchemy.orm import Session

from core.config import logger
from core.database import SessionLocal
from models.pricing import PricingEvent
from models.user import User
from utils.billing_errors import ConcurrentUpdate
from utils.offers import PLAN_CATALOG, PlanTier, normalize_plan
from utils.subscription_records import (
    LastEvent,
    PendingDowngrade,
    SubscriptionStatus,
    UserSubscriptionRecord,
    as_utc,
)

# Record fields that map 1:1 onto a column
_PLAIN_FIELDS = (
    "name",
    "phone",
    "subscription_start_date",
    "subscription_end_date",
    "subscription_id",
    "upload_limit",
    "is_manual_activation",
    "manual_activation_date",
    "manual_activation_by",
)


def hash_password(password: str) -> str:
    return bcrypt.hashpw((password or "").encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def check_password(password: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw((password or "").encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def _status(value: Any) -> SubscriptionStatus:
    try:
        return SubscriptionStatus(str(value or "").strip().lower())
    except ValueError:
        return SubscriptionStatus.INACTIVE


def row_to_record(u: User) -> UserSubscriptionRecord:
    plan = normalize_plan(u.plan) or PlanTier.FREE
    stored_plan = normalize_plan(u.original_plan_before_downgrade)
    pending_at = as_utc(u.pending_downgrade_date)
    pending = None
    previous = stored_plan
    # The same column holds the plan to restore after a refund, or the plan a scheduled
    # downgrade will take away.
    if pending_at is not None:
        pending = PendingDowngrade(pending_at, u.pending_downgrade_reason or "", stored_plan)
        previous = None
    return UserSubscriptionRecord(
        id=u.id,
        email=u.email,
        name=u.name or "",
        phone=u.phone or "",
        plan=plan,
        subscription_status=_status(u.subscription_status),
        subscription_start_date=as_utc(u.subscription_start_date),
        subscription_end_date=as_utc(u.subscription_end_date),
        subscription_id=u.subscription_id,
        upload_limit=u.upload_limit if u.upload_limit is not None else PLAN_CATALOG[plan].upload_limit,
        pending_downgrade=pending,
        previous_plan=previous,
        is_manual_activation=bool(u.is_manual_activation),
        manual_activation_date=as_utc(u.manual_activation_date),
        manual_activation_by=u.manual_activation_by,
        last_event=LastEvent.from_json(u.last_event),
        version=u.version or 1,
    )


def fields_to_columns(fields: dict) -> dict:
    """Translate record-level changes into ``users`` column values."""
    cols: dict = {}
    for key in _PLAIN_FIELDS:
        if key in fields:
            cols[key] = fields[key]
    if "plan" in fields:
        cols["plan"] = PlanTier(fields["plan"]).value
    if "subscription_status" in fields:
        cols["subscription_status"] = SubscriptionStatus(fields["subscription_status"]).value
    if "pending_downgrade" in fields:
        pending: Optional[PendingDowngrade] = fields["pending_downgrade"]
        cols["pending_downgrade_date"] = pending.scheduled_for if pending else None
        cols["pending_downgrade_reason"] = pending.reason if pending else None
        if pending is not None:
            cols["original_plan_before_downgrade"] = pending.original_plan.value if pending.original_plan else None
    if "previous_plan" in fields:
        prev = fields["previous_plan"]
        cols["original_plan_before_downgrade"] = PlanTier(prev).value if prev else None
    if "last_event" in fields:
        last = fields["last_event"]
        cols["last_event"] = last.to_json() if last else None
    return cols


class SqlUserStore:
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    @contextmanager
    def _session(self):
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def get_by_email(self, email: str) -> Optional[UserSubscriptionRecord]:
        em = (email or "").strip().lower()
        if not em:
            return None
        with self._session() as db:
            u = db.query(User).filter(User.email == em).first()
            return row_to_record(u) if u else None

    def get_by_id(self, user_id: str) -> Optional[UserSubscriptionRecord]:
        with self._session() as db:
            u = db.query(User).filter(User.id == user_id).first()
            return row_to_record(u) if u else None

    def create(self, data: dict) -> UserSubscriptionRecord:
        """Insert a user; ``data`` holds record-level fields plus ``email`` and an optional plaintext ``password``."""
        email = str(data.get("email") or "").strip().lower()
        if not email:
            raise ValueError("email is required")
        cols = fields_to_columns(data)
        cols.setdefault("plan", PlanTier.FREE.value)
        cols.setdefault("subscription_status", SubscriptionStatus.INACTIVE.value)
        cols.setdefault("upload_limit", PLAN_CATALOG[normalize_plan(cols["plan"]) or PlanTier.FREE].upload_limit)
        user = User(
            id=str(data.get("id") or uuid.uuid4().hex),
            email=email,
            password_hash=hash_password(data["password"]) if data.get("password") else None,
            version=1,
            **cols,
        )
        with self._session() as db:
            db.add(user)
            db.flush()
            db.refresh(user)
            record = row_to_record(user)
        logger.info(f"[subscriptions.store] created user {record.id} <{email}> plan={record.plan.value}")
        return record

    def update(self, user_id: str, fields: dict, expected_version: Optional[int] = None) -> UserSubscriptionRecord:
        """Apply ``fields`` in one statement; bumps ``version``.

        With ``expected_version`` the write only lands if nobody else updated the row
        since it was read; otherwise ``ConcurrentUpdate`` is raised and nothing changes.
        """
        cols = fields_to_columns(fields)
        with self._session() as db:
            q = db.query(User).filter(User.id == user_id)
            if expected_version is not None:
                q = q.filter(User.version == expected_version)
            cols["version"] = User.version + 1
            count = q.update(cols, synchronize_session=False)
            if count == 0:
                current = db.query(User.version).filter(User.id == user_id).scalar()
                if current is None:
                    raise LookupError(f"user {user_id} not found")
                raise ConcurrentUpdate(user_id, expected_version, current)
            db.flush()
            u = db.query(User).filter(User.id == user_id).populate_existing().first()
            return row_to_record(u)

    def list_all(self, batch_size: int = 500) -> list[UserSubscriptionRecord]:
        """Every user, newest first, read in pages of ``batch_size`` rows."""
        size = max(1, int(batch_size))
        records: list[UserSubscriptionRecord] = []
        offset = 0
        while True:
            with self._session() as db:
                rows = (
                    db.query(User)
                    .order_by(User.created_at.desc(), User.id)
                    .offset(offset)
                    .limit(size)
                    .all()
                )
                records.extend(row_to_record(u) for u in rows)
            if len(rows) < size:
                return records
            offset += size

    def list_manual_activations(self) -> list[UserSubscriptionRecord]:
        with self._session() as db:
            rows = db.query(User).filter(User.is_manual_activation.is_(True)).all()
            return [row_to_record(u) for u in rows]

    def list_pending_downgrades(self, now: datetime) -> list[UserSubscriptionRecord]:
        with self._session() as db:
            rows = (
                db.query(User)
                .filter(User.subscription_status == SubscriptionStatus.PENDING_CANCELLATION.value)
                .filter(User.pending_downgrade_date.isnot(None))
                .all()
            )
            records = [row_to_record(u) for u in rows]
        # compared in Python: SQLite drops the tz offset on storage
        return [r for r in records if r.pending_downgrade and r.pending_downgrade.scheduled_for <= now]

    def log_event(
        self,
        user_id: Optional[str],
        provider: str,
        event_type: str,
        event_id: Optional[str],
        outcome: str,
        payload: Any,
    ) -> None:
        with self._session() as db:
            db.add(
                PricingEvent(
                    user_id=user_id,
                    provider=provider,
                    event_type=event_type or "unknown",
                    event_id=event_id,
                    outcome=outcome,
                    payload=payload if isinstance(payload, (dict, list)) else {"raw": str(payload)},
                )
            )
