"""Deep search helpers for provider webhook payloads.

Payment providers send JSON of unpredictable shape: the buyer's email may sit at
``data.buyer.email`` for one provider, ``customer.email`` for another, or inside a
list of contacts for a third. These helpers walk the whole JSON tree and return the
first value that looks right.

Search order is part of the contract:
  1. Named fields first, over the whole tree (depth-first, keys in insertion order,
     arrays in index order). Each object node checks its known field names in
     priority order; names are matched exactly but case-insensitively and may be
     dotted paths (``contact.email``).
  2. Only when no named field matched anywhere, a value-shape pass over the same
     traversal order (an email-like string, a phone-like string, an ``off=<id>``
     fragment in a URL, ...).

None of these functions raise on malformed input; "not found" is ``None``.
"""
import re
from typing import Any, Callable, Iterable, Optional

MAX_SCAN_DEPTH = 15

EMAIL_RE = re.compile(r"^[A-Za-z0-9._%+\-]+@[A-Za-z0-9\-]+(\.[A-Za-z0-9\-]+)*\.[A-Za-z]{2,}$")
PHONE_RE = re.compile(r"^\+?[\d\s().\-]+$")
OFFER_PARAM_RE = re.compile(r"(?:^|[?&#;/\s])off=([A-Za-z0-9_\-]+)", re.IGNORECASE)

EMAIL_KEYS = (
    "email",
    "buyer_email",
    "customer_email",
    "contact.email",
    "email_address",
    "emailAddress",
    "payer_email",
    "user_email",
    "subscriber_email",
)
PHONE_KEYS = (
    "phone",
    "phone_number",
    "phoneNumber",
    "checkout_phone",
    "contact.phone",
    "mobile",
    "mobile_phone",
    "cellphone",
    "telephone",
)
NAME_CONTAINERS = ("buyer", "customer", "subscriber", "user", "contact", "billing", "payer", "client")
NAME_KEYS = ("name", "full_name", "fullName")
DEEP_NAME_KEYS = ("customer_name", "buyer_name", "subscriber_name", "full_name", "fullName")
OFFER_KEYS = (
    "off",
    "offer_id",
    "offerId",
    "offer_code",
    "offerCode",
    "code",
    "price_id",
    "priceId",
    "product_id",
    "productId",
)
TRANSACTION_KEYS = (
    "transaction",
    "transaction_id",
    "transactionId",
    "payment_id",
    "paymentId",
    "order_id",
    "orderId",
    "invoice_id",
    "subscription_id",
)

_MISSING = object()


def _key_lookup(node: dict, key: str) -> Any:
    """Exact, case-insensitive key match on a single object level."""
    if key in node:
        return node[key]
    wanted = key.lower()
    for k, v in node.items():
        if isinstance(k, str) and k.lower() == wanted:
            return v
    return _MISSING


def get_path(node: Any, path: str) -> Any:
    """Resolve a dotted path (``data.purchase.offer.code``) or return None."""
    current = node
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = _key_lookup(current, part)
        if current is _MISSING:
            return None
    return current


def _walk(node: Any, visit: Callable[[Any], Optional[str]], depth: int = 0, seen: Optional[set] = None) -> Optional[str]:
    if depth > MAX_SCAN_DEPTH:
        return None
    if not isinstance(node, (dict, list)):
        return None
    if seen is None:
        seen = set()
    node_id = id(node)
    if node_id in seen:
        return None
    seen.add(node_id)

    got = visit(node)
    if got is not None:
        return got

    children = node.values() if isinstance(node, dict) else node
    for child in children:
        if isinstance(child, (dict, list)):
            got = _walk(child, visit, depth + 1, seen)
            if got is not None:
                return got
    return None


def _scalars(node: Any) -> Iterable[Any]:
    if isinstance(node, dict):
        return node.values()
    if isinstance(node, list):
        return node
    return ()


def _first_match(payload: Any, *visitors: Callable[[Any], Optional[str]]) -> Optional[str]:
    for visit in visitors:
        got = _walk(payload, visit)
        if got is not None:
            return got
    return None


def _named_visitor(keys: tuple[str, ...], accept: Callable[[Any], Optional[str]]) -> Callable[[Any], Optional[str]]:
    def visit(node: Any) -> Optional[str]:
        if not isinstance(node, dict):
            return None
        for key in keys:
            value = get_path(node, key) if "." in key else _key_lookup(node, key)
            if value is _MISSING or value is None:
                continue
            got = accept(value)
            if got is not None:
                return got
        return None
    return visit


def _shape_visitor(accept: Callable[[Any], Optional[str]]) -> Callable[[Any], Optional[str]]:
    def visit(node: Any) -> Optional[str]:
        for value in _scalars(node):
            got = accept(value)
            if got is not None:
                return got
        return None
    return visit


def _non_empty_str(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _as_email(value: Any) -> Optional[str]:
    if isinstance(value, str):
        candidate = value.strip()
        if EMAIL_RE.match(candidate):
            return candidate.lower()
    return None


def _as_phone(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        value = str(value)
    if not isinstance(value, str):
        return None
    candidate = value.strip()
    if not candidate or not PHONE_RE.match(candidate):
        return None
    digits = sum(1 for ch in candidate if ch.isdigit())
    if 8 <= digits <= 15:
        return candidate
    return None


def _combine_name(first: str, last: str) -> str:
    f = (first or "").strip()
    l = (last or "").strip()
    if f and l:
        return f"{f} {l}"
    return f or l


def deep_find_first(payload: Any, keys: tuple[str, ...], accept: Optional[Callable[[Any], Optional[str]]] = None) -> Optional[str]:
    """First value under any of ``keys`` anywhere in the payload that ``accept`` takes.

    Defaults to the first non-empty string (numbers are stringified).
    """
    return _walk(payload, _named_visitor(keys, accept or _non_empty_str))


def find_email(payload: Any) -> Optional[str]:
    """First email in traversal order, lowercased.

    When several candidates exist the first one found wins. That is a heuristic,
    not proof of the buyer's identity.
    """
    return _first_match(payload, _named_visitor(EMAIL_KEYS, _as_email), _shape_visitor(_as_email))


def find_phone(payload: Any) -> Optional[str]:
    return _first_match(payload, _named_visitor(PHONE_KEYS, _as_phone), _shape_visitor(_as_phone))


def find_customer_name(payload: Any) -> Optional[str]:
    def person(node: Any) -> Optional[str]:
        if not isinstance(node, dict):
            return None
        for container in NAME_CONTAINERS:
            sub = _key_lookup(node, container)
            if not isinstance(sub, dict):
                continue
            for key in NAME_KEYS:
                nm = _key_lookup(sub, key)
                if isinstance(nm, str) and nm.strip():
                    return nm.strip()
            first = _key_lookup(sub, "first_name")
            if first is _MISSING:
                first = _key_lookup(sub, "firstName")
            last = _key_lookup(sub, "last_name")
            if last is _MISSING:
                last = _key_lookup(sub, "lastName")
            combined = _combine_name(
                first if isinstance(first, str) else "",
                last if isinstance(last, str) else "",
            )
            if combined:
                return combined
        return None

    return _first_match(payload, person, _named_visitor(DEEP_NAME_KEYS, _non_empty_str))


def extract_offer_param(value: Any) -> Optional[str]:
    """The ``<id>`` of an ``off=<id>`` fragment inside a URL-like string."""
    if not isinstance(value, str) or "off=" not in value.lower():
        return None
    m = OFFER_PARAM_RE.search(value)
    return m.group(1) if m else None


def find_offer_id(payload: Any, known_offer_ids: Iterable[str]) -> Optional[str]:
    """First known offer identifier in the payload.

    Only identifiers present in ``known_offer_ids`` count (compared case-insensitively);
    the returned value is the spelling from ``known_offer_ids``.
    """
    known = {str(k).strip().lower(): str(k) for k in known_offer_ids if str(k).strip()}
    if not known:
        return None

    def accept(value: Any) -> Optional[str]:
        candidate = _non_empty_str(value)
        if candidate is None:
            return None
        hit = known.get(candidate.lower())
        if hit is not None:
            return hit
        embedded = extract_offer_param(candidate)
        if embedded is not None:
            return known.get(embedded.lower())
        return None

    return _first_match(payload, _named_visitor(OFFER_KEYS, accept), _shape_visitor(accept))


def find_transaction_id(payload: Any) -> Optional[str]:
    return deep_find_first(payload, TRANSACTION_KEYS)
