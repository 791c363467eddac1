"""Offer identifiers -> internal plan tiers."""
import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Optional

from core.config import logger
from utils.event_names import CanonicalEvent
from utils.payload_scan import deep_find_first, extract_offer_param, find_offer_id, get_path


class PlanTier(str, Enum):
    FREE = "free"
    BASIC = "basic"
    STANDARD = "standard"
    PROFESSIONAL = "professional"


@dataclass(frozen=True)
class PlanInfo:
    tier: PlanTier
    display_name: str
    upload_limit: int


PLAN_CATALOG: dict[PlanTier, PlanInfo] = {
    PlanTier.FREE: PlanInfo(PlanTier.FREE, "Gratuito", 10),
    PlanTier.BASIC: PlanInfo(PlanTier.BASIC, "Básico", 1500),
    PlanTier.STANDARD: PlanInfo(PlanTier.STANDARD, "Padrão", 5000),
    PlanTier.PROFESSIONAL: PlanInfo(PlanTier.PROFESSIONAL, "Profissional", 999999),
}


@dataclass(frozen=True)
class KnownOffer:
    offer_id: str
    tier: PlanTier
    name: str = ""


DEFAULT_OFFERS = (
    KnownOffer("tpfhcllk", PlanTier.STANDARD, "Plano Padrão - Black Friday"),
    KnownOffer("BASIC123", PlanTier.BASIC, "Plano Básico"),
    KnownOffer("STANDARD456", PlanTier.STANDARD, "Plano Padrão"),
    KnownOffer("PRO789", PlanTier.PROFESSIONAL, "Plano Profissional"),
)

DEFAULT_TEST_KEYWORDS = ("teste", "test", "sandbox")

# Where providers put the offer code when they follow their own docs
DIRECT_OFFER_PATHS = (
    "data.purchase.offer.code",
    "data.purchase.offer.off",
    "data.purchase.offer.id",
    "data.offer.code",
    "data.offer.id",
    "data.offer_id",
    "purchase.offer.code",
    "offer.code",
    "offer.id",
    "offer_id",
    "data.object.price_id",
    "data.object.product_id",
    "data.product_id",
    "product_id",
)
# String fields that tend to carry checkout URLs with an off=<id> parameter
URL_FIELD_KEYS = (
    "checkout_url",
    "payment_link",
    "checkout_link",
    "url",
    "link",
    "transaction",
    "sck",
    "src",
    "origin",
    "referer",
)
OFFER_NAME_PATHS = (
    "data.purchase.offer.name",
    "data.offer.name",
    "offer.name",
    "data.purchase.plan.name",
    "data.subscription.plan.name",
    "data.subscription.plan",
    "data.product.name",
    "product.name",
    "plan.name",
)
DEEP_OFFER_NAME_KEYS = ("offer_name", "plan_name", "product_name")


def plan_from_text(text: Any) -> Optional[PlanTier]:
    """Keyword heuristic for free-text plan or offer names."""
    t = str(text or "").strip().lower()
    if not t:
        return None
    if "basic" in t or "básico" in t or "basico" in t:
        return PlanTier.BASIC
    if "standard" in t or "padrão" in t or "padrao" in t:
        return PlanTier.STANDARD
    if "professional" in t or "profissional" in t or re.search(r"(?<![a-z])pro(?![a-z])", t):
        return PlanTier.PROFESSIONAL
    return None


def normalize_plan(value: Any) -> Optional[PlanTier]:
    p = str(value or "").strip().lower().replace("-", "_")
    if not p:
        return None
    if p.endswith("_v2"):
        p = p[:-3]
    for tier in PlanTier:
        if p == tier.value:
            return tier
    if p in ("gratuito", "gratis", "grátis"):
        return PlanTier.FREE
    return plan_from_text(p)


def load_offer_table(raw_json: str = "", base: Iterable[KnownOffer] = DEFAULT_OFFERS) -> dict[str, KnownOffer]:
    """Built-in offers, extended or overridden by a JSON object.

    Accepts ``{"<offer id>": "<plan>"}`` or ``{"<offer id>": {"plan": "<plan>", "name": "<name>"}}``.
    """
    table = {o.offer_id.lower(): o for o in base}
    if not raw_json:
        return table
    try:
        extra = json.loads(raw_json)
    except ValueError as ex:
        logger.warning(f"[pricing.offers] OFFER_PLAN_MAP is not valid JSON: {ex}")
        return table
    if not isinstance(extra, dict):
        logger.warning("[pricing.offers] OFFER_PLAN_MAP must be a JSON object")
        return table
    for offer_id, entry in extra.items():
        name = ""
        plan_raw = entry
        if isinstance(entry, dict):
            plan_raw = entry.get("plan")
            name = str(entry.get("name") or "")
        tier = normalize_plan(plan_raw)
        if not tier or not str(offer_id).strip():
            logger.warning(f"[pricing.offers] ignoring offer {offer_id!r}: unknown plan {plan_raw!r}")
            continue
        oid = str(offer_id).strip()
        table[oid.lower()] = KnownOffer(oid, tier, name)
    return table


@dataclass(frozen=True)
class ResolvedOffer:
    plan_tier: Optional[PlanTier]
    is_test_offer: bool = False
    offer_id: Optional[str] = None
    offer_name: Optional[str] = None
    source: str = "none"

    @property
    def resolved(self) -> bool:
        return self.plan_tier is not None and not self.is_test_offer


class OfferResolver:
    def __init__(self, offers: Optional[dict[str, KnownOffer]] = None, test_keywords: Iterable[str] = DEFAULT_TEST_KEYWORDS):
        self.offers = offers if offers is not None else load_offer_table()
        self._test_keywords = tuple(kw.strip().lower() for kw in test_keywords if kw and kw.strip())

    def _known(self, value: Any) -> Optional[KnownOffer]:
        if isinstance(value, bool) or value is None:
            return None
        return self.offers.get(str(value).strip().lower())

    def _is_test_text(self, text: str) -> bool:
        t = (text or "").lower()
        # substring match: "OfertaTeste" and "ofertatest" are test offers too
        return any(kw in t for kw in self._test_keywords)

    def _offer_names(self, payload: Any) -> list[str]:
        names: list[str] = []
        for path in OFFER_NAME_PATHS:
            value = get_path(payload, path)
            if isinstance(value, str) and value.strip() and value.strip() not in names:
                names.append(value.strip())
        deep = deep_find_first(payload, DEEP_OFFER_NAME_KEYS)
        if deep and deep not in names:
            names.append(deep)
        return names

    def _lookup_offer(self, payload: Any) -> tuple[Optional[KnownOffer], str]:
        # 1. well-known direct locations
        for path in DIRECT_OFFER_PATHS:
            offer = self._known(get_path(payload, path))
            if offer:
                return offer, f"direct:{path}"

        # 2. off=<id> inside a URL or transaction string
        def from_url(value: Any) -> Optional[str]:
            embedded = extract_offer_param(value)
            if embedded and self._known(embedded):
                return embedded
            return None

        embedded = deep_find_first(payload, URL_FIELD_KEYS, from_url)
        if embedded:
            return self._known(embedded), "url_param"

        # 3. generic deep scan
        found = find_offer_id(payload, [o.offer_id for o in self.offers.values()])
        if found:
            return self._known(found), "deep_scan"
        return None, "none"

    def resolve(self, payload: Any, event: CanonicalEvent) -> ResolvedOffer:
        offer, source = self._lookup_offer(payload)
        names = self._offer_names(payload)

        tier = offer.tier if offer else None
        offer_name = (offer.name if offer and offer.name else None) or (names[0] if names else None)

        # 4. free-text name as last resort
        if tier is None:
            for nm in names:
                tier = plan_from_text(nm)
                if tier:
                    source = "name_keyword"
                    break

        # 5. test purchases never provision a plan, whatever matched before
        test_texts = list(names)
        if offer and offer.name:
            test_texts.append(offer.name)
        if any(self._is_test_text(t) for t in test_texts):
            logger.info(f"[pricing.offers] test offer detected: names={test_texts} event={event.value}")
            return ResolvedOffer(
                plan_tier=None,
                is_test_offer=True,
                offer_id=offer.offer_id if offer else None,
                offer_name=offer_name,
                source=source,
            )

        if tier is PlanTier.FREE:
            tier = None
        return ResolvedOffer(
            plan_tier=tier,
            offer_id=offer.offer_id if offer else None,
            offer_name=offer_name,
            source=source,
        )
