"""Subscription engine: one entry point per inbound payment webhook.

Flow of ``process_webhook``:
  signature -> JSON -> canonical event -> customer email -> offer -> idempotency
  claim -> per-customer read/decide/write -> ledger record -> welcome email -> audit row

Every mutation (webhooks, the pending-downgrade sweep, admin overrides) goes through
``_mutate``: a per-email lock around read, pure decision, and one versioned update.
"""
import hashlib
import hmac
import json
import secrets
import threading
import zlib
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Union

from standardwebhooks import Webhook, WebhookVerificationError

from core.config import (
    EXPIRING_SOON_DAYS,
    IDEMPOTENCY_CAPACITY,
    IDEMPOTENCY_RETENTION_HOURS,
    OFFER_PLAN_MAP,
    WEBHOOK_STRICT_SIGNATURES,
    logger,
)
from utils.billing_errors import (
    ConcurrentUpdate,
    DuplicateDelivery,
    IdentityNotFound,
    MalformedPayload,
    NoValidOffer,
    PersistenceFailure,
    SignatureRejected,
    UnsupportedEvent,
    WebhookError,
)
from utils.downgrade_guard import DowngradePolicy
from utils.event_names import CanonicalEvent, extract_event_name, normalize_event
from utils.idempotency import IdempotencyLedger, make_idempotency_key, utcnow
from utils.offers import PLAN_CATALOG, OfferResolver, PlanTier, ResolvedOffer, load_offer_table, normalize_plan
from utils.payload_scan import find_customer_name, find_email, find_phone, find_transaction_id
from utils.subscription_records import UserSubscriptionRecord
from utils.subscription_state import (
    Transition,
    apply_transition,
    decide,
    expire_manual_activation,
    expire_pending,
    manual_activation,
    restore_previous_plan,
)
from utils.subscription_status import CATEGORIES, SubscriptionAnalysis, analyze_subscription, categorize

SIGNATURE_PREFIX = "sha256="
# Fixed pool of per-email locks; two emails may share a stripe
LOCK_STRIPES = 64


@dataclass(frozen=True)
class WebhookResult:
    accepted: bool
    message: str
    outcome: str
    status_code: int = 200
    retryable: bool = False

    def to_dict(self) -> dict:
        return {"accepted": self.accepted, "message": self.message, "outcome": self.outcome}


def hmac_hex(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: str, secret: str, headers: Optional[dict] = None) -> bool:
    """HMAC-SHA256 hex over the raw body, or Standard Webhooks when the secret is ``whsec_...``."""
    if secret.startswith("whsec_"):
        hdrs = {str(k).lower(): v for k, v in (headers or {}).items()}
        hdrs.setdefault("webhook-signature", signature)
        try:
            Webhook(secret).verify(body, hdrs)
            return True
        except WebhookVerificationError:
            return False
    provided = signature.strip()
    if provided.lower().startswith(SIGNATURE_PREFIX):
        provided = provided[len(SIGNATURE_PREFIX):]
    return hmac.compare_digest(hmac_hex(secret, body), provided.lower())


class SubscriptionEngine:
    def __init__(
        self,
        store,
        notifier=None,
        ledger: Optional[IdempotencyLedger] = None,
        resolver: Optional[OfferResolver] = None,
        policy: Optional[DowngradePolicy] = None,
        clock: Callable[[], datetime] = utcnow,
        strict_signatures: bool = False,
        expiring_soon_days: int = 7,
        max_update_attempts: int = 3,
    ):
        self.store = store
        self.notifier = notifier
        self.ledger = ledger or IdempotencyLedger(clock=clock)
        self.resolver = resolver or OfferResolver()
        self.policy = policy or DowngradePolicy()
        self.clock = clock
        self.strict_signatures = strict_signatures
        self.expiring_soon_days = expiring_soon_days
        self.max_update_attempts = max(1, max_update_attempts)
        self._user_locks = tuple(threading.RLock() for _ in range(LOCK_STRIPES))

    # --- Webhooks ---

    def process_webhook(
        self,
        raw_body: Union[bytes, str],
        signature: Optional[str] = None,
        secret: Optional[str] = None,
        provider: str = "hotmart",
        headers: Optional[dict] = None,
    ) -> WebhookResult:
        try:
            return self._process(raw_body, signature, secret, provider, headers)
        except WebhookError as ex:
            return WebhookResult(
                accepted=ex.accepted,
                message=ex.message,
                outcome=ex.outcome,
                status_code=ex.status_code,
                retryable=ex.retryable,
            )
        except Exception as ex:
            logger.exception(f"[pricing.webhook] {provider}: processing error: {ex}")
            return WebhookResult(False, f"processing error: {ex}", "processing_error")

    def _process(self, raw_body, signature, secret, provider, headers) -> WebhookResult:
        body = raw_body.encode("utf-8") if isinstance(raw_body, str) else bytes(raw_body or b"")
        self._verify(body, signature, secret, provider, headers)
        payload = self._parse(body, provider)

        raw_event = extract_event_name(payload)
        event = normalize_event(raw_event)
        if not event.supported:
            logger.info(f"[pricing.webhook] {provider}: unsupported event {event.raw!r} ignored")
            raise UnsupportedEvent(f"event {event.raw or '<missing>'} ignored")

        email = find_email(payload)
        if not email:
            logger.warning(
                f"[pricing.webhook] {provider}: no customer email in {event.raw}; payload={json.dumps(payload, default=str)}"
            )
            raise IdentityNotFound("customer email not found in payload")

        offer = self.resolver.resolve(payload, event.kind)
        if event.kind is CanonicalEvent.PURCHASE_APPROVED and not offer.resolved:
            why = "test offer" if offer.is_test_offer else "no valid commercial offer"
            logger.info(
                f"[pricing.webhook] {provider}: approval for {email} ignored ({why}; offer={offer.offer_id} name={offer.offer_name})"
            )
            raise NoValidOffer(f"approval ignored: {why}")

        key = make_idempotency_key(event.kind.value, email, find_transaction_id(payload), payload)
        won, existing = self.ledger.claim(key)
        if not won:
            logger.info(f"[pricing.webhook] {provider}: duplicate delivery {key} (original outcome {existing.outcome})")
            raise DuplicateDelivery(f"duplicate delivery, original outcome: {existing.outcome}")

        try:
            user_id, outcome, message = self._apply(email, event.kind, offer, payload)
        except Exception as ex:
            self.ledger.release(key)
            logger.exception(f"[pricing.webhook] {provider}: persisting {key} failed: {ex}")
            raise PersistenceFailure(f"could not persist subscription change: {ex}") from ex

        self.ledger.record(key, outcome)
        logger.info(f"[pricing.webhook] {provider}: {event.kind.value} for {email}: {outcome} ({message})")
        self._audit(user_id, provider, event.raw, key, outcome, payload)
        return WebhookResult(True, message, outcome)

    def _verify(self, body: bytes, signature, secret, provider, headers) -> None:
        secret = (secret or "").strip()
        sig = (signature or "").strip()
        if secret.startswith("whsec_") and not sig:
            sig = str({str(k).lower(): v for k, v in (headers or {}).items()}.get("webhook-signature") or "").strip()
        if not secret:
            return
        if not sig:
            if self.strict_signatures:
                logger.warning(f"[pricing.webhook] {provider}: unsigned delivery refused")
                raise SignatureRejected("missing signature")
            logger.warning(f"[pricing.webhook] {provider}: unsigned delivery accepted (strict signatures off)")
            return
        if not verify_signature(body, sig, secret, headers):
            logger.warning(f"[pricing.webhook] {provider}: invalid signature")
            raise SignatureRejected("invalid signature")

    def _parse(self, body: bytes, provider: str) -> dict:
        try:
            payload = json.loads(body)
        except ValueError as ex:
            logger.warning(f"[pricing.webhook] {provider}: invalid JSON: {ex}")
            raise MalformedPayload("invalid JSON") from ex
        if not isinstance(payload, dict):
            raise MalformedPayload("payload must be a JSON object")
        return payload

    def _apply(
        self,
        email: str,
        event: CanonicalEvent,
        offer: ResolvedOffer,
        payload: dict,
    ) -> tuple[Optional[str], str, str]:
        now = self.clock()
        with self._lock_for(email):
            if self.store.get_by_email(email) is None:
                if event is CanonicalEvent.PURCHASE_APPROVED:
                    user = self._create_customer(email, offer, payload, now)
                    return user.id, "created", f"account created on plan {user.plan.value}"
                return None, "noop", "no account for this customer"
            user, transition = self._mutate(email, lambda u: decide(u, event, offer, now, self.policy))
            return user.id, transition.outcome, transition.message

    def _create_customer(self, email: str, offer: ResolvedOffer, payload: dict, now: datetime) -> UserSubscriptionRecord:
        temporary = secrets.token_hex(8)
        blank = UserSubscriptionRecord(id="", email=email)
        transition = decide(blank, CanonicalEvent.PURCHASE_APPROVED, offer, now, self.policy)
        apply_transition(blank, transition)
        name = find_customer_name(payload) or ""
        data = dict(transition.changes)
        data.update(
            email=email,
            name=name,
            phone=find_phone(payload) or "",
            password=temporary,
        )
        user = self.store.create(data)
        self._notify_welcome(user, temporary)
        return user

    def _notify_welcome(self, user: UserSubscriptionRecord, temporary: str) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.send_welcome(user.email, user.name, temporary, PLAN_CATALOG[user.plan].display_name)
        except Exception as ex:
            logger.warning(f"[pricing.webhook] welcome notification for {user.email} failed: {ex}")

    def _audit(self, user_id, provider, event_type, event_id, outcome, payload) -> None:
        log_event = getattr(self.store, "log_event", None)
        if log_event is None:
            return
        try:
            log_event(user_id, provider, event_type, event_id, outcome, payload)
        except Exception as ex:
            logger.warning(f"[pricing.webhook] audit write failed for {event_id}: {ex}")

    # --- Single mutation path ---

    def _lock_for(self, email: str) -> threading.RLock:
        key = (email or "").strip().lower()
        return self._user_locks[zlib.crc32(key.encode("utf-8")) % len(self._user_locks)]

    def _mutate(
        self,
        email: str,
        compute: Callable[[UserSubscriptionRecord], Transition],
    ) -> tuple[UserSubscriptionRecord, Transition]:
        last_error: Optional[ConcurrentUpdate] = None
        with self._lock_for(email):
            for _ in range(self.max_update_attempts):
                user = self.store.get_by_email(email)
                if user is None:
                    raise LookupError(f"user {email} not found")
                transition = compute(user)
                if not transition.mutates:
                    return user, transition
                apply_transition(user, transition)
                try:
                    updated = self.store.update(user.id, transition.changes, expected_version=user.version)
                except ConcurrentUpdate as ex:
                    # another writer (other process) got there first; re-read and decide again
                    logger.warning(f"[subscriptions] {ex}; retrying")
                    last_error = ex
                    continue
                return updated, transition
        raise last_error

    # --- Pending downgrade sweep ---

    def run_expiry_sweep(self, now: Optional[datetime] = None) -> list[str]:
        now = now or self.clock()
        expired: list[str] = []
        for user in self.store.list_pending_downgrades(now):
            try:
                updated, transition = self._mutate(user.email, lambda u: expire_pending(u, now))
            except Exception as ex:
                logger.warning(f"[subscriptions.sweep] {user.email}: {ex}")
                continue
            if transition.mutates:
                expired.append(updated.email)
                logger.info(f"[subscriptions.sweep] {updated.email} downgraded to free: {transition.message}")
                self._audit(updated.id, "system", "PendingDowngradeExpired", None, transition.outcome, {"email": updated.email})
        return expired

    def run_manual_activation_sweep(self, now: Optional[datetime] = None) -> list[str]:
        """Lapse manual activations older than the policy period; returns the emails moved to free."""
        now = now or self.clock()
        expired: list[str] = []
        for user in self.store.list_manual_activations():
            try:
                updated, transition = self._mutate(
                    user.email, lambda u: expire_manual_activation(u, now, self.policy)
                )
            except Exception as ex:
                logger.warning(f"[subscriptions.sweep] {user.email}: {ex}")
                continue
            if not transition.mutates:
                continue
            logger.info(f"[subscriptions.sweep] {updated.email}: {transition.message}")
            self._audit(updated.id, "system", "ManualActivationExpired", None, transition.outcome, {"email": updated.email})
            if updated.plan is PlanTier.FREE:
                expired.append(updated.email)
        return expired

    # --- Admin ---

    def analyze(self, email: str, now: Optional[datetime] = None) -> Optional[SubscriptionAnalysis]:
        user = self.store.get_by_email(email)
        if user is None:
            return None
        return analyze_subscription(user, now or self.clock(), self.policy.tolerance_window, self.expiring_soon_days)

    def list_users_by_category(
        self, category: str = "all", now: Optional[datetime] = None
    ) -> list[tuple[UserSubscriptionRecord, SubscriptionAnalysis]]:
        cat = (category or "all").strip().lower()
        if cat not in CATEGORIES:
            raise ValueError(f"unknown category {category!r}; expected one of {', '.join(CATEGORIES)}")
        now = now or self.clock()
        out = []
        for user in self.store.list_all():
            analysis = analyze_subscription(user, now, self.policy.tolerance_window, self.expiring_soon_days)
            if cat in categorize(user, analysis, self.expiring_soon_days):
                out.append((user, analysis))
        return out

    def activate_manually(
        self, email: str, plan: Union[str, PlanTier], activated_by: str, now: Optional[datetime] = None
    ) -> UserSubscriptionRecord:
        tier = normalize_plan(plan)
        if tier is None or tier is PlanTier.FREE:
            raise ValueError(f"invalid plan {plan!r}")
        now = now or self.clock()
        updated, transition = self._mutate(
            email, lambda u: manual_activation(u, tier, activated_by, now, self.policy)
        )
        logger.info(f"[admin.subscriptions] {email}: {transition.message}")
        self._audit(updated.id, "admin", "ManualActivation", None, transition.outcome, {"plan": tier.value, "by": activated_by})
        return updated

    def restore_previous_plan(self, email: str, activated_by: str, now: Optional[datetime] = None) -> UserSubscriptionRecord:
        now = now or self.clock()
        updated, transition = self._mutate(
            email, lambda u: restore_previous_plan(u, activated_by, now, self.policy)
        )
        logger.info(f"[admin.subscriptions] {email}: previous plan restored, {transition.message}")
        self._audit(updated.id, "admin", "RestorePreviousPlan", None, transition.outcome, {"by": activated_by})
        return updated


_engine: Optional[SubscriptionEngine] = None
_engine_lock = threading.Lock()


def get_engine() -> SubscriptionEngine:
    """Process-wide engine wired from configuration (FastAPI dependency)."""
    global _engine
    if _engine is None:
        with _engine_lock:
            if _engine is None:
                from utils.notifier import EmailNotifier
                from utils.user_store import SqlUserStore

                _engine = SubscriptionEngine(
                    store=SqlUserStore(),
                    notifier=EmailNotifier(),
                    ledger=IdempotencyLedger(
                        capacity=IDEMPOTENCY_CAPACITY,
                        retention=timedelta(hours=IDEMPOTENCY_RETENTION_HOURS),
                    ),
                    resolver=OfferResolver(load_offer_table(OFFER_PLAN_MAP)),
                    policy=DowngradePolicy.from_config(),
                    strict_signatures=WEBHOOK_STRICT_SIGNATURES,
                    expiring_soon_days=EXPIRING_SOON_DAYS,
                )
    return _engine
