"""Provider event names -> canonical event kinds.

New spellings are added to EVENT_ALIASES only; nothing downstream changes.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any


class CanonicalEvent(str, Enum):
    PURCHASE_APPROVED = "PurchaseApproved"
    PURCHASE_REFUNDED = "PurchaseRefunded"
    PURCHASE_CHARGEBACK = "PurchaseChargeback"
    PURCHASE_CANCELED = "PurchaseCanceled"
    SUBSCRIPTION_CANCELED = "SubscriptionCanceled"
    UNSUPPORTED = "Unsupported"


FINANCIAL_LOSS_EVENTS = frozenset({CanonicalEvent.PURCHASE_REFUNDED, CanonicalEvent.PURCHASE_CHARGEBACK})
CANCELLATION_EVENTS = frozenset({CanonicalEvent.PURCHASE_CANCELED, CanonicalEvent.SUBSCRIPTION_CANCELED})
# Events that may take a paid plan away
DOWNGRADE_EVENTS = FINANCIAL_LOSS_EVENTS | CANCELLATION_EVENTS


EVENT_ALIASES: dict[str, CanonicalEvent] = {
    # Hotmart
    "PURCHASE_APPROVED": CanonicalEvent.PURCHASE_APPROVED,
    "PURCHASE_COMPLETE": CanonicalEvent.PURCHASE_APPROVED,
    "PURCHASE_REFUNDED": CanonicalEvent.PURCHASE_REFUNDED,
    "PURCHASE_CHARGEBACK": CanonicalEvent.PURCHASE_CHARGEBACK,
    "PURCHASE_PROTEST": CanonicalEvent.PURCHASE_CHARGEBACK,
    "PURCHASE_CANCELED": CanonicalEvent.PURCHASE_CANCELED,
    "PURCHASE_CANCELLED": CanonicalEvent.PURCHASE_CANCELED,
    "PURCHASE_EXPIRED": CanonicalEvent.PURCHASE_CANCELED,
    "SUBSCRIPTION_CANCELLATION": CanonicalEvent.SUBSCRIPTION_CANCELED,
    "SUBSCRIPTION_CANCELED": CanonicalEvent.SUBSCRIPTION_CANCELED,
    "SUBSCRIPTION_CANCELLED": CanonicalEvent.SUBSCRIPTION_CANCELED,
    # Dotted vocabulary (legacy Hotmart v1, Dodo, generic gateways)
    "purchase.approved": CanonicalEvent.PURCHASE_APPROVED,
    "purchase.complete": CanonicalEvent.PURCHASE_APPROVED,
    "purchase.completed": CanonicalEvent.PURCHASE_APPROVED,
    "payment.approved": CanonicalEvent.PURCHASE_APPROVED,
    "payment.succeeded": CanonicalEvent.PURCHASE_APPROVED,
    "payment.completed": CanonicalEvent.PURCHASE_APPROVED,
    "subscription.active": CanonicalEvent.PURCHASE_APPROVED,
    "subscription.renewed": CanonicalEvent.PURCHASE_APPROVED,
    "checkout.completed": CanonicalEvent.PURCHASE_APPROVED,
    "invoice.paid": CanonicalEvent.PURCHASE_APPROVED,
    "purchase.refunded": CanonicalEvent.PURCHASE_REFUNDED,
    "payment.refunded": CanonicalEvent.PURCHASE_REFUNDED,
    "refund.succeeded": CanonicalEvent.PURCHASE_REFUNDED,
    "charge.refunded": CanonicalEvent.PURCHASE_REFUNDED,
    "purchase.chargeback": CanonicalEvent.PURCHASE_CHARGEBACK,
    "dispute.opened": CanonicalEvent.PURCHASE_CHARGEBACK,
    "dispute.lost": CanonicalEvent.PURCHASE_CHARGEBACK,
    "charge.dispute.created": CanonicalEvent.PURCHASE_CHARGEBACK,
    "purchase.canceled": CanonicalEvent.PURCHASE_CANCELED,
    "purchase.cancelled": CanonicalEvent.PURCHASE_CANCELED,
    "purchase.expired": CanonicalEvent.PURCHASE_CANCELED,
    "payment.cancelled": CanonicalEvent.PURCHASE_CANCELED,
    "payment.canceled": CanonicalEvent.PURCHASE_CANCELED,
    "subscription.canceled": CanonicalEvent.SUBSCRIPTION_CANCELED,
    "subscription.cancelled": CanonicalEvent.SUBSCRIPTION_CANCELED,
    "subscription.cancellation": CanonicalEvent.SUBSCRIPTION_CANCELED,
    "subscription.expired": CanonicalEvent.SUBSCRIPTION_CANCELED,
    "customer.subscription.deleted": CanonicalEvent.SUBSCRIPTION_CANCELED,
    # Portuguese spellings seen from regional gateways
    "compra_aprovada": CanonicalEvent.PURCHASE_APPROVED,
    "compra_completa": CanonicalEvent.PURCHASE_APPROVED,
    "pagamento_aprovado": CanonicalEvent.PURCHASE_APPROVED,
    "compra_reembolsada": CanonicalEvent.PURCHASE_REFUNDED,
    "reembolso": CanonicalEvent.PURCHASE_REFUNDED,
    "chargeback": CanonicalEvent.PURCHASE_CHARGEBACK,
    "compra_cancelada": CanonicalEvent.PURCHASE_CANCELED,
    "assinatura_cancelada": CanonicalEvent.SUBSCRIPTION_CANCELED,
    "cancelamento_de_assinatura": CanonicalEvent.SUBSCRIPTION_CANCELED,
}

EVENT_NAME_KEYS = ("event", "type", "event_type", "eventType", "event_name")


@dataclass(frozen=True)
class NormalizedEvent:
    kind: CanonicalEvent
    raw: str

    @property
    def supported(self) -> bool:
        return self.kind is not CanonicalEvent.UNSUPPORTED


def normalize_event(raw_event_name: Any) -> NormalizedEvent:
    """Map a raw provider event name to its canonical kind.

    Lookup tries the name as given, then upper-cased, then lower-cased.
    Unknown names come back as UNSUPPORTED with the raw name kept for logs.
    """
    raw = str(raw_event_name or "").strip()
    for candidate in (raw, raw.upper(), raw.lower()):
        kind = EVENT_ALIASES.get(candidate)
        if kind is not None:
            return NormalizedEvent(kind=kind, raw=raw)
    return NormalizedEvent(kind=CanonicalEvent.UNSUPPORTED, raw=raw)


def extract_event_name(payload: Any) -> str:
    if not isinstance(payload, dict):
        return ""
    for key in EVENT_NAME_KEYS:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""
